from __future__ import annotations

import math
import time
import uuid
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Callable, Dict, List, Optional

from .contracts import (
    AuditEvent,
    ClassSession,
    DetectionEvent,
    Detections,
    FeltStressful,
    OverallState,
    UserFeedback,
)


class SessionAlreadyEndedError(RuntimeError):
    def __init__(self, session_id: str):
        super().__init__(f"Session already ended: {session_id}")
        self.session_id = session_id


def _iso_from_ts(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


class InMemorySessionStore:
    """Class sessions keyed by id; readers always get deep copies."""

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.time
        self._lock = RLock()
        self._sessions: Dict[str, Dict[str, Any]] = {}

    def create_session(self, user_id: str) -> ClassSession:
        session_id = uuid.uuid4().hex
        now = self._clock()
        session = ClassSession(
            session_id=session_id,
            user_id=user_id,
            started_at=_iso_from_ts(now),
        )
        with self._lock:
            self._sessions[session_id] = {
                "session": session,
                "started_ts": now,
            }
            return session.model_copy(deep=True)

    def _require(self, session_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        record = self._sessions.get(session_id)
        if record is None:
            raise KeyError(f"Unknown session_id: {session_id}")
        if user_id is not None and record["session"].user_id != user_id:
            raise KeyError(f"Unknown session_id for user: {session_id}")
        return record

    def get_session(self, session_id: str, user_id: Optional[str] = None) -> ClassSession:
        with self._lock:
            return self._require(session_id, user_id)["session"].model_copy(deep=True)

    def list_user_sessions(self, user_id: str, limit: int = 20) -> List[ClassSession]:
        with self._lock:
            records = [r for r in self._sessions.values() if r["session"].user_id == user_id]
            records.sort(key=lambda r: r["started_ts"], reverse=True)
            return [r["session"].model_copy(deep=True) for r in records[: max(0, limit)]]

    def list_user_sessions_since(self, user_id: str, since: datetime) -> List[ClassSession]:
        """Every session the user started at or after `since`, newest first."""
        since_ts = since.timestamp()
        with self._lock:
            records = [
                r
                for r in self._sessions.values()
                if r["session"].user_id == user_id and r["started_ts"] >= since_ts
            ]
            records.sort(key=lambda r: r["started_ts"], reverse=True)
            return [r["session"].model_copy(deep=True) for r in records]

    def _end_locked(self, record: Dict[str, Any]) -> None:
        now = self._clock()
        session: ClassSession = record["session"]
        session.ended_at = _iso_from_ts(now)
        session.duration_sec = int(math.floor(max(0.0, now - record["started_ts"])))

    def end_session(self, session_id: str, user_id: Optional[str] = None) -> ClassSession:
        with self._lock:
            record = self._require(session_id, user_id)
            if not record["session"].is_active:
                raise SessionAlreadyEndedError(session_id)
            self._end_locked(record)
            return record["session"].model_copy(deep=True)

    def record_feedback(
        self,
        session_id: str,
        felt_stressful: FeltStressful,
        notes: Optional[str],
        user_id: Optional[str] = None,
    ) -> ClassSession:
        with self._lock:
            record = self._require(session_id, user_id)
            session: ClassSession = record["session"]
            session.user_feedback = UserFeedback(felt_stressful=felt_stressful, notes=notes)
            if session.is_active:
                self._end_locked(record)
            return session.model_copy(deep=True)

    def record_intervention(
        self, session_id: str, intervention_type: str, user_id: Optional[str] = None
    ) -> ClassSession:
        with self._lock:
            session: ClassSession = self._require(session_id, user_id)["session"]
            used = session.interventions_used
            if intervention_type == "breathe":
                used.breathe_used = True
            elif intervention_type == "journal":
                used.journal_used = True
            # Every intervention is paired with a haptic cue on the device.
            used.haptic_sent = True
            return session.model_copy(deep=True)

    def add_detection_event(
        self,
        session_id: str,
        event: DetectionEvent,
        overall_state: Optional[OverallState] = None,
        user_id: Optional[str] = None,
    ) -> ClassSession:
        with self._lock:
            session: ClassSession = self._require(session_id, user_id)["session"]
            session.detections.events.append(event)
            if overall_state is not None:
                session.detections.overall_state = overall_state
            return session.model_copy(deep=True)

    def record_calm_minute(self, session_id: str, user_id: Optional[str] = None) -> ClassSession:
        with self._lock:
            session: ClassSession = self._require(session_id, user_id)["session"]
            session.calm_minutes += 1
            session.detections.overall_state = "calm"
            return session.model_copy(deep=True)

    def set_analysis(
        self,
        session_id: str,
        *,
        transcript: str,
        detections: Detections,
        haptic_sent: bool,
        calm_minutes: int,
    ) -> ClassSession:
        with self._lock:
            session: ClassSession = self._require(session_id)["session"]
            session.transcript = transcript
            session.detections = detections.model_copy(deep=True)
            session.interventions_used.haptic_sent = haptic_sent
            session.calm_minutes = calm_minutes
            return session.model_copy(deep=True)

    def append_audit_event(self, session_id: str, event: AuditEvent) -> None:
        with self._lock:
            self._require(session_id)["session"].audit_events.append(event)

    def session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

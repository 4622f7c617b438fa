from __future__ import annotations

"""
Per-connection runtime state for the context listener.

Design intent:
- Gate audio with a streaming flag that is read on every frame.
- Open the gate before audio is expected; close it before any teardown.
- Keep counters/status readable from a plain REST route.
"""

import time
import uuid
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Dict, Literal, Optional

from whisperlite.audio.pcm import StreamFormat, level_dbfs, to_pcm16_bytes
from whisperlite.speech.base import RealtimeTranscriber
from whisperlite.transcript.live_assembler import LiveTranscriptAssembler
from whisperlite.transcript.models import Speaker

ListenMode = Literal["idle", "streaming", "chunked"]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class LiveListeningSession:
    def __init__(self, live_session_id: str, *, user_id: Optional[str] = None, max_recent_events: int = 10) -> None:
        self.live_session_id = live_session_id
        self.user_id = user_id
        self.status = "connected"
        self.mode: ListenMode = "idle"
        self.stream_format: Optional[StreamFormat] = None
        self.transcriber: Optional[RealtimeTranscriber] = None
        self.assembler = LiveTranscriptAssembler(max_recent_events=max_recent_events)
        self.speakers: list[Speaker] = []
        self.last_context: Optional[Dict[str, Any]] = None
        self.last_context_at: Optional[float] = None
        self.last_level_dbfs: Optional[float] = None
        self.frames_forwarded = 0
        self.frames_dropped = 0
        self.bytes_forwarded = 0
        self.chunks_processed = 0
        self.updated_at = _utc_now_iso()
        self._streaming = False

    @property
    def is_streaming(self) -> bool:
        return self._streaming

    def touch(self) -> None:
        self.updated_at = _utc_now_iso()

    def reset_for_new_session(self) -> None:
        self.assembler.clear()
        self.speakers = []
        self.last_context = None
        self.last_context_at = None
        self.last_level_dbfs = None
        self.frames_forwarded = 0
        self.frames_dropped = 0
        self.bytes_forwarded = 0
        self.chunks_processed = 0
        self.status = "session_active"
        self.touch()

    def open_stream(self, fmt: StreamFormat, transcriber: RealtimeTranscriber) -> None:
        self.stream_format = fmt
        self.transcriber = transcriber
        self.mode = "streaming"
        self.status = "streaming"
        self._streaming = True
        self.touch()

    def close_stream(self) -> Optional[RealtimeTranscriber]:
        """Close the gate and hand back the transcriber for teardown."""
        self._streaming = False
        transcriber = self.transcriber
        self.transcriber = None
        if self.mode == "streaming":
            self.mode = "idle"
        self.status = "stopped"
        self.touch()
        return transcriber

    def accept_audio_frame(self, frame: bytes) -> Optional[bytes]:
        if not frame:
            return None
        if not self._streaming or self.stream_format is None:
            self.frames_dropped += 1
            return None
        pcm16 = to_pcm16_bytes(frame, self.stream_format)
        self.frames_forwarded += 1
        self.bytes_forwarded += len(pcm16)
        self.last_level_dbfs = level_dbfs(pcm16)
        return pcm16

    def context_due(self, now: float, interval_sec: float) -> bool:
        if self.last_context_at is None:
            return True
        return (now - self.last_context_at) >= interval_sec

    def mark_context(self, now: float, context: Dict[str, Any]) -> None:
        self.last_context_at = now
        self.last_context = context
        self.touch()

    def to_status(self) -> Dict[str, Any]:
        return {
            "liveSessionId": self.live_session_id,
            "userId": self.user_id,
            "status": self.status,
            "mode": self.mode,
            "streaming": self._streaming,
            "encoding": self.stream_format.encoding if self.stream_format else None,
            "sampleRateHz": self.stream_format.sample_rate_hz if self.stream_format else None,
            "provider": self.transcriber.name() if self.transcriber else None,
            "framesForwarded": self.frames_forwarded,
            "framesDropped": self.frames_dropped,
            "bytesForwarded": self.bytes_forwarded,
            "chunksProcessed": self.chunks_processed,
            "lastLevelDbfs": self.last_level_dbfs,
            "transcript": self.assembler.live_text,
            "recentEvents": [event.to_wire() for event in self.assembler.recent_events],
            "lastContext": self.last_context,
            "updatedAt": self.updated_at,
        }


_FINISHED_STATUSES = frozenset({"ended", "disconnected"})


class LiveSessionRegistry:
    """Live sessions by id; finished ones are evicted oldest-first past `max_sessions`."""

    def __init__(self, max_recent_events: int = 10, max_sessions: int = 200) -> None:
        self._lock = RLock()
        self._sessions: Dict[str, LiveListeningSession] = {}
        self._max_recent_events = max_recent_events
        self._max_sessions = max(1, int(max_sessions))

    def create(self, user_id: Optional[str]) -> LiveListeningSession:
        live_session_id = f"live_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
        session = LiveListeningSession(
            live_session_id,
            user_id=user_id,
            max_recent_events=self._max_recent_events,
        )
        with self._lock:
            self._sessions[live_session_id] = session
            self._evict_finished_locked()
        return session

    def _evict_finished_locked(self) -> None:
        overflow = len(self._sessions) - self._max_sessions
        if overflow <= 0:
            return
        # Sessions still attached to a socket are never evicted.
        finished = [sid for sid, s in self._sessions.items() if s.status in _FINISHED_STATUSES]
        for live_session_id in finished[:overflow]:
            del self._sessions[live_session_id]

    def get(self, live_session_id: str) -> LiveListeningSession:
        with self._lock:
            session = self._sessions.get(live_session_id)
            if session is None:
                raise KeyError(f"Unknown live_session_id: {live_session_id}")
            return session

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

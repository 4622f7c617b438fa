from __future__ import annotations

import datetime as _dt
import logging
from typing import Mapping, Optional

from .contracts import AuditEvent, AuditEventType
from .session_store import InMemorySessionStore

logger = logging.getLogger(__name__)

MAX_DETAIL_CHARS = 200


def format_detail(fields: Mapping[str, object]) -> str:
    """Render audit fields as `key=value` pairs on one capped line."""
    # Callers pass counts and codes only; transcript text and audio never go here.
    parts = []
    for key, value in fields.items():
        text = str(value).replace("\r", " ").replace("\n", " ").strip()
        parts.append(f"{key}={text}")
    detail = " ".join(parts)
    if len(detail) > MAX_DETAIL_CHARS:
        detail = detail[: MAX_DETAIL_CHARS - 1] + "…"
    return detail


def record_audit(
    store: InMemorySessionStore,
    session_id: str,
    event_type: AuditEventType,
    code: str,
    *,
    duration_ms: Optional[int] = None,
    **fields: object,
) -> bool:
    """Append one audit event; returns False when the session is unknown."""
    event = AuditEvent(
        ts_iso=_dt.datetime.now(_dt.timezone.utc).isoformat(),
        session_id=session_id,
        type=event_type,
        code=code,
        detail=format_detail(fields),
        duration_ms=duration_ms,
    )
    try:
        store.append_audit_event(session_id, event)
    except KeyError:
        logger.warning("audit_dropped session_id=%s type=%s code=%s", session_id, event_type, code)
        return False
    logger.info("audit session_id=%s type=%s code=%s %s", session_id, event_type, code, event.detail)
    return True

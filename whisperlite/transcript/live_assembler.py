from __future__ import annotations

"""
Assemble realtime transcript events into one live transcript.

Design intent:
- Append committed (final) text once and never revise it.
- Hold at most one pending partial; each new partial replaces the previous one.
- Surface inline audio tags as one-shot audio events per listening session.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from whisperlite.transcript.audio_tags import find_audio_tags, interpret_audio_event
from whisperlite.transcript.models import AudioEvent, RealtimeMessage

_WS_RE = re.compile(r"\s+")
_TAG_CONFIDENCE = 0.8


def _normalize_ws(text: str) -> str:
    return _WS_RE.sub(" ", (text or "").strip())


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class AssemblyUpdate:
    text: str
    is_final: bool
    live_text: str
    new_events: list[AudioEvent] = field(default_factory=list)


class LiveTranscriptAssembler:
    def __init__(
        self,
        *,
        max_recent_events: int = 10,
        now_iso: Callable[[], str] = _utc_now_iso,
    ) -> None:
        self._max_recent_events = max(1, int(max_recent_events))
        self._now_iso = now_iso
        self._segments: list[str] = []
        self._partial = ""
        self._seen_tags: set[str] = set()
        self._recent_events: list[AudioEvent] = []

    def clear(self) -> None:
        self._segments = []
        self._partial = ""
        self._seen_tags = set()
        self._recent_events = []

    @property
    def committed_text(self) -> str:
        return _normalize_ws(" ".join(self._segments))

    @property
    def partial_text(self) -> str:
        return self._partial

    @property
    def live_text(self) -> str:
        parts = list(self._segments)
        if self._partial:
            parts.append(self._partial)
        return _normalize_ws(" ".join(parts))

    @property
    def recent_events(self) -> list[AudioEvent]:
        return list(self._recent_events)

    @property
    def seen_tags(self) -> list[str]:
        return sorted(self._seen_tags)

    def apply(self, message: RealtimeMessage) -> AssemblyUpdate | None:
        if not message.is_transcript:
            return None

        text = _normalize_ws(message.text)
        if message.is_final:
            if text:
                self._segments.append(text)
            self._partial = ""
        else:
            self._partial = text

        new_events = self._collect_tag_events(text)
        return AssemblyUpdate(
            text=text,
            is_final=message.is_final,
            live_text=self.live_text,
            new_events=new_events,
        )

    def replace_transcript(self, text: str) -> None:
        normalized = _normalize_ws(text)
        self._segments = [normalized] if normalized else []
        self._partial = ""

    def note_audio_event(self, tag: str) -> AudioEvent | None:
        """Record an audio event once per session; repeats return None."""
        if not tag or tag in self._seen_tags:
            return None
        self._seen_tags.add(tag)
        event = AudioEvent(
            event=tag,
            interpretation=interpret_audio_event(tag),
            confidence=_TAG_CONFIDENCE,
            timestamp=self._now_iso(),
        )
        self._recent_events.insert(0, event)
        del self._recent_events[self._max_recent_events :]
        return event

    def _collect_tag_events(self, text: str) -> list[AudioEvent]:
        new_events: list[AudioEvent] = []
        for tag in find_audio_tags(text):
            event = self.note_audio_event(tag)
            if event is not None:
                new_events.append(event)
        return new_events

from __future__ import annotations

"""
Typed transcript contracts shared by the realtime adapter and the live listener.

Design intent:
- Give every upstream message one normalized shape before it touches state.
- Keep word timings optional; the live transcript only needs text.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, model_validator

RealtimeKind = Literal["session_started", "partial", "final", "error", "ignored"]


class TranscriptWord(BaseModel):
    text: str
    start: float | None = Field(default=None, ge=0.0)
    end: float | None = Field(default=None, ge=0.0)
    speaker_id: str | None = None

    @model_validator(mode="after")
    def _validate_window(self) -> "TranscriptWord":
        if self.start is not None and self.end is not None and self.end < self.start:
            raise ValueError("TranscriptWord.end must be >= TranscriptWord.start")
        return self


class RealtimeMessage(BaseModel):
    kind: RealtimeKind
    text: str = ""
    words: list[TranscriptWord] = Field(default_factory=list)
    error_type: str | None = None
    error_message: str | None = None
    raw_type: str | None = None

    @property
    def is_transcript(self) -> bool:
        return self.kind in {"partial", "final"}

    @property
    def is_final(self) -> bool:
        return self.kind == "final"


class AudioEvent(BaseModel):
    event: str
    interpretation: str
    confidence: float = Field(ge=0.0, le=1.0)
    timestamp: str

    def to_wire(self) -> dict[str, object]:
        return {
            "event": self.event,
            "interpretation": self.interpretation,
            "confidence": self.confidence,
            "timestamp": self.timestamp,
        }


class Speaker(BaseModel):
    id: str
    label: str
    segments: int = 0


def word_from_payload(item: Any) -> TranscriptWord | None:
    """Build a word from one vendor word entry; None for spacing or unusable timings."""
    if not isinstance(item, dict) or item.get("type") not in (None, "word"):
        return None
    text = str(item.get("text") or "").strip()
    if not text:
        return None
    start = item.get("start")
    end = item.get("end")
    try:
        return TranscriptWord(
            text=text,
            start=float(start) if isinstance(start, (int, float)) else None,
            end=float(end) if isinstance(end, (int, float)) else None,
            speaker_id=str(item["speaker_id"]) if item.get("speaker_id") is not None else None,
        )
    except ValidationError:
        return None


def words_from_payload(raw_words: Any) -> list[TranscriptWord]:
    if not isinstance(raw_words, list):
        return []
    words = (word_from_payload(item) for item in raw_words)
    return [word for word in words if word is not None]

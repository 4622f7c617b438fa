from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for payloads exchanged with the app; camelCase on the wire."""

    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


Mood = Literal["calm", "neutral", "stressed"]
FeltStressful = Literal["yes", "no", "not_sure"]
OverallState = Literal["calm", "stressor_detected", "unknown"]
StressLevel = Literal["calm", "mild", "moderate", "high"]
UiState = Literal["green", "amber"]

DetectionType = Literal[
    "fast_speech",
    "laughter_spike",
    "harsh_tone",
    "sarcasm_likely",
    "crowd_noise",
    "urgent_tone",
    "frustrated_tone",
]

DETECTION_TYPES: frozenset[str] = frozenset(
    {
        "fast_speech",
        "laughter_spike",
        "harsh_tone",
        "sarcasm_likely",
        "crowd_noise",
        "urgent_tone",
        "frustrated_tone",
    }
)


class DetectionEvent(WireModel):
    t: float
    type: DetectionType
    confidence: float = Field(ge=0.0, le=1.0)
    note: str = ""


class Detections(WireModel):
    overall_state: OverallState = "unknown"
    events: List[DetectionEvent] = Field(default_factory=list)


class InterventionsUsed(WireModel):
    haptic_sent: bool = False
    breathe_used: bool = False
    journal_used: bool = False


class UserFeedback(WireModel):
    felt_stressful: FeltStressful
    notes: Optional[str] = None


AuditEventType = Literal[
    "SESSION_STARTED",
    "STRESS_CHECKED",
    "INTERVENTION_LOGGED",
    "FEEDBACK_SAVED",
    "SESSION_ENDED",
    "AUDIO_ANALYZED",
    "ERROR",
]


class AuditEvent(WireModel):
    ts_iso: str
    session_id: str
    type: AuditEventType
    code: str
    detail: str
    duration_ms: Optional[int] = None


class ClassSession(WireModel):
    session_id: str
    user_id: str
    started_at: str
    ended_at: Optional[str] = None
    duration_sec: Optional[int] = None
    transcript: Optional[str] = None
    detections: Detections = Field(default_factory=Detections)
    interventions_used: InterventionsUsed = Field(default_factory=InterventionsUsed)
    user_feedback: Optional[UserFeedback] = None
    calm_minutes: int = 0
    audit_events: List[AuditEvent] = Field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.ended_at is None


def felt_stressful_for_mood(mood: str) -> FeltStressful:
    if mood == "stressed":
        return "yes"
    if mood == "calm":
        return "no"
    return "not_sure"

from __future__ import annotations

"""
Stress analysis for class sessions.

Design intent:
- Volume checks ask Gemini first and degrade to fixed dB thresholds.
- Transcript checks keep Gemini output inside the known detection types.
- Every note shown to the student stays reassuring.
"""

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional, Sequence

from whisperlite.analysis import gemini
from whisperlite.analysis.gemini import GeminiAdapterError
from whisperlite.internal_core.contracts import (
    DETECTION_TYPES,
    DetectionEvent,
    DetectionType,
    Detections,
    OverallState,
    StressLevel,
    UiState,
)

logger = logging.getLogger(__name__)

Sensitivity = Literal["low", "med", "high"]

CALMING_PROMPTS: tuple[str, ...] = (
    "You're safe. This isn't about you.",
    "Breathe with me. In… out…",
    "It's okay to pause. You're doing your best.",
    "Confusing moments happen. You're not in trouble.",
    "Take your time. There's no rush.",
    "You're doing great. Keep going.",
    "This moment will pass. You've got this.",
    "It's okay to feel unsure. That's normal.",
)

SENSITIVITY_THRESHOLDS: dict[str, str] = {
    "low": "Only flag very obvious and severe stressors",
    "med": "Flag moderate to severe stressors, balanced approach",
    "high": "Flag subtle emotional cues and potential stressors",
}

STRESS_LEVELS: frozenset[str] = frozenset({"calm", "mild", "moderate", "high"})
DEFAULT_EVENT_NOTE = "Analysis detected this pattern."
DEFAULT_EVENT_CONFIDENCE = 0.5
FALLBACK_CONFIDENCE = 0.6


@dataclass(frozen=True)
class StressAssessment:
    level: StressLevel
    confidence: float
    triggers: list[str] = field(default_factory=list)
    reasoning: str = ""
    source: Literal["gemini", "volume_fallback"] = "gemini"


def _clamp01(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return max(0.0, min(1.0, float(value)))


def build_volume_prompt(volume_db: float, *, has_audio_data: bool, when: datetime) -> str:
    return (
        "You are analyzing classroom audio for a neurodivergent student to detect stress triggers.\n\n"
        "Current audio metrics:\n"
        f"- Volume: {volume_db} dB\n"
        f"- Audio frequency data: {'Available' if has_audio_data else 'Not available'}\n"
        f"- Time: {when.strftime('%H:%M:%S')}\n\n"
        "Based on these metrics, analyze:\n"
        "1. Is there a stressor present? (sudden loud noise, multiple overlapping voices, harsh tones)\n"
        "2. What is the stress level? (calm, mild, moderate, high)\n"
        "3. What might be triggering this?\n\n"
        "Respond ONLY with valid JSON in this exact format:\n"
        '{"level": "calm" | "mild" | "moderate" | "high", "confidence": 0.0-1.0, '
        '"triggers": ["trigger1", "trigger2"], "reasoning": "brief explanation"}\n\n'
        "Consider:\n"
        "- Volume > 80dB = potential stressor\n"
        "- Volume > 90dB = likely stressor\n"
        "- Rapid changes = potential anxiety trigger\n"
        "- Sustained high volume = definite stressor"
    )


def fallback_stress_level(volume_db: float) -> StressAssessment:
    if volume_db > 90:
        level: StressLevel = "high"
    elif volume_db > 80:
        level = "moderate"
    elif volume_db > 70:
        level = "mild"
    else:
        level = "calm"
    triggers = ["loud_environment"] if volume_db > 80 else []
    return StressAssessment(
        level=level,
        confidence=FALLBACK_CONFIDENCE,
        triggers=triggers,
        reasoning="Estimated from volume only.",
        source="volume_fallback",
    )


def assess_volume_stress(
    volume_db: float,
    *,
    has_audio_data: bool,
    api_key: str,
    model_name: str,
    when: Optional[datetime] = None,
) -> StressAssessment:
    """Gemini assessment of one volume sample; never raises."""
    prompt = build_volume_prompt(volume_db, has_audio_data=has_audio_data, when=when or datetime.now())
    try:
        data = gemini.generate_json(prompt, api_key=api_key, model_name=model_name)
    except GeminiAdapterError as exc:
        logger.warning("stress_check_fallback volume_db=%s reason=%s", volume_db, exc)
        return fallback_stress_level(volume_db)

    level = str(data.get("level", "")).strip().lower()
    if level not in STRESS_LEVELS:
        logger.warning("stress_check_fallback volume_db=%s reason=invalid_level:%s", volume_db, level)
        return fallback_stress_level(volume_db)

    raw_triggers = data.get("triggers")
    triggers = [str(item) for item in raw_triggers] if isinstance(raw_triggers, list) else []
    return StressAssessment(
        level=level,  # type: ignore[arg-type]
        confidence=_clamp01(data.get("confidence"), FALLBACK_CONFIDENCE),
        triggers=triggers,
        reasoning=str(data.get("reasoning") or ""),
        source="gemini",
    )


def detection_type_for_triggers(triggers: Sequence[str]) -> DetectionType:
    lowered = [str(item).lower() for item in triggers]
    if any("loud" in item for item in lowered):
        return "crowd_noise"
    if any("harsh" in item for item in lowered):
        return "harsh_tone"
    return "urgent_tone"


def detection_from_assessment(assessment: StressAssessment, t: float) -> Optional[DetectionEvent]:
    if assessment.level == "calm":
        return None
    return DetectionEvent(
        t=t,
        type=detection_type_for_triggers(assessment.triggers),
        confidence=assessment.confidence,
        note=assessment.reasoning,
    )


def overall_state_for_level(level: StressLevel) -> Optional[OverallState]:
    if level in {"high", "moderate"}:
        return "stressor_detected"
    if level == "calm":
        return "calm"
    return None


@dataclass(frozen=True)
class TranscriptAnalysis:
    detections: Detections
    suggested_prompt: str
    ui_state: UiState
    transcript: str

    def to_wire(self) -> dict[str, Any]:
        return {
            "detections": self.detections.model_dump(by_alias=True),
            "suggestedPrompt": self.suggested_prompt,
            "uiState": self.ui_state,
            "transcript": self.transcript,
        }


def build_transcript_system_prompt(sensitivity: str) -> str:
    threshold = SENSITIVITY_THRESHOLDS.get(sensitivity, SENSITIVITY_THRESHOLDS["med"])
    return (
        "You are an empathetic AI assistant helping neurodivergent students understand classroom audio.\n"
        "Your task is to analyze the transcript and identify potential emotional stressors.\n\n"
        f"Sensitivity level: {threshold}\n\n"
        "Analyze for:\n"
        "1. Teacher tone (calm, urgent, frustrated)\n"
        "2. Fast speech patterns\n"
        "3. Sudden laughter or crowd noise\n"
        "4. Sarcasm or harsh tones\n"
        "5. Emotionally loaded phrases\n\n"
        "IMPORTANT:\n"
        "- Never use alarming language\n"
        "- Frame everything supportively\n"
        '- If nothing concerning, return overallState: "calm" with empty events array\n'
        '- Notes should be reassuring, e.g., "The teacher sounds busy, not mad at you"\n\n'
        "Return JSON with:\n"
        '- overallState: "calm" | "stressor_detected" | "unknown"\n'
        f"- events: array of {{ type, confidence, note }} where type is one of: {', '.join(sorted(DETECTION_TYPES))}"
    )


def detections_from_payload(data: dict[str, Any] | None) -> Detections:
    if not data:
        return Detections(overall_state="calm", events=[])

    events: list[DetectionEvent] = []
    raw_events = data.get("events")
    if isinstance(raw_events, list):
        for item in raw_events:
            if not isinstance(item, dict):
                continue
            event_type = str(item.get("type", "")).strip()
            if event_type not in DETECTION_TYPES:
                logger.info("transcript_event_dropped type=%s", event_type)
                continue
            events.append(
                DetectionEvent(
                    t=float(len(events)),
                    type=event_type,  # type: ignore[arg-type]
                    confidence=_clamp01(item.get("confidence"), DEFAULT_EVENT_CONFIDENCE),
                    note=str(item.get("note") or DEFAULT_EVENT_NOTE),
                )
            )

    state = str(data.get("overallState", "")).strip()
    if state not in {"calm", "stressor_detected", "unknown"}:
        state = "stressor_detected" if events else "calm"
    return Detections(overall_state=state, events=events)  # type: ignore[arg-type]


def analyze_transcript(
    transcript: str,
    sensitivity: str = "med",
    *,
    api_key: str,
    model_name: str,
    rng: random.Random | None = None,
) -> TranscriptAnalysis:
    """Classify stressors in a transcript; raises GeminiAdapterError when Gemini cannot be reached."""
    raw = gemini.generate_text(
        f'Analyze this classroom transcript:\n\n"{transcript}"',
        api_key=api_key,
        model_name=model_name,
        system_instruction=build_transcript_system_prompt(sensitivity),
        temperature=0.3,
    )
    data = gemini.parse_json_object(raw)
    if data is None:
        logger.warning("transcript_analysis_unparsable chars=%s", len(raw))
    detections = detections_from_payload(data)

    has_stressors = bool(detections.events)
    chooser = rng or random
    return TranscriptAnalysis(
        detections=detections,
        suggested_prompt=chooser.choice(CALMING_PROMPTS) if has_stressors else "",
        ui_state="amber" if has_stressors else "green",
        transcript=transcript,
    )

from __future__ import annotations

"""
Social-context interpretation of classroom audio.

Design intent:
- Turn transcript + audio events into a calm, non-alarming explanation.
- Default to friendly/neutral readings; only the model may call a room tense.
- Always return a usable result; failures fall back to a safe summary.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Sequence

from whisperlite.analysis import gemini
from whisperlite.analysis.gemini import GeminiAdapterError
from whisperlite.transcript.audio_tags import interpret_audio_event
from whisperlite.transcript.models import Speaker

logger = logging.getLogger(__name__)

Assessment = Literal["friendly", "neutral", "tense", "unknown"]

SOCIAL_CONTEXT_SYSTEM_PROMPT = """You are a compassionate AI assistant helping students with social anxiety understand their classroom environment. Your role is to interpret audio context and provide calming, reassuring explanations.

IMPORTANT GUIDELINES:
1. NEVER use alarming or scary language
2. ALWAYS frame observations supportively
3. Assume positive intent unless clearly negative
4. Provide brief, clear explanations (1-2 sentences)
5. Focus on helping the user feel safe and understood
6. Normalize common classroom sounds and behaviors

AUDIO EVENT INTERPRETATIONS:
- Laughter: Usually means someone told a joke or something funny happened - NOT directed at the user
- Multiple_Voices: Normal classroom chatter, group discussion, or transition time
- Fast_Speech: Teacher may be excited about the topic or running short on time - not anger
- Loud_Voice: Could be emphasis for importance, not necessarily frustration
- Silence: Natural pauses, thinking time, or individual work time

RESPONSE FORMAT:
Provide a JSON response with:
- assessment: 'friendly' | 'neutral' | 'tense' (be conservative - default to 'friendly' or 'neutral')
- summary: A brief, calming explanation (1-2 sentences max)
- triggers: Array of potential anxiety triggers detected (empty if none)
- confidence: 0-1 confidence level
- recommendations: 1-2 brief coping suggestions if needed"""

FAILURE_SUMMARY = (
    "I couldn't fully analyze the audio, but classrooms typically have normal sounds "
    "that aren't directed at you."
)
FAILURE_RECOMMENDATIONS = ("Take a deep breath", "Focus on your own space")
DEFAULT_CONFIDENCE = 0.7


@dataclass(frozen=True)
class SocialContextResult:
    success: bool
    assessment: Assessment
    summary: str
    triggers: list[str] = field(default_factory=list)
    confidence: float = 0.0
    recommendations: list[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "assessment": self.assessment,
            "summary": self.summary,
            "triggers": list(self.triggers),
            "confidence": self.confidence,
            "recommendations": list(self.recommendations),
        }
        if self.error:
            payload["error"] = self.error
        return payload


def validate_assessment(value: Any) -> Assessment:
    if value in {"friendly", "neutral", "tense"}:
        return value
    return "neutral"


def default_summary(audio_events: Sequence[str], transcript: str) -> str:
    if "Laughter" in audio_events:
        return "There's laughter in the room - likely someone shared something funny. It's not about you."
    if "Multiple_Voices" in audio_events:
        return "Multiple people are talking - this is normal classroom discussion or transition time."
    if "Fast_Speech" in audio_events:
        return "Someone is speaking quickly - they may be excited about the topic or have a lot to share."
    if "Silence" in audio_events:
        return "It's quiet right now - this is normal thinking or working time."
    if transcript:
        return "The classroom sounds normal. Focus on your own work and take things one step at a time."
    return "The environment seems calm. You're doing fine."


def quick_event_interpretation(event: str) -> str:
    return interpret_audio_event(event)


def build_user_prompt(
    transcript: str,
    audio_events: Sequence[str],
    speakers: Sequence[Speaker],
    decibels: Optional[float],
) -> str:
    if speakers:
        speaker_info = f"Speakers detected: {len(speakers)} ({', '.join(s.label for s in speakers)})"
    else:
        speaker_info = "Speaker information not available"
    volume_info = f"Volume level: {decibels} dB" if decibels is not None else ""
    return (
        "Analyze this classroom audio context for a student with social anxiety:\n\n"
        f"AUDIO EVENTS DETECTED: {', '.join(audio_events) if audio_events else 'None'}\n\n"
        f'TRANSCRIPT: "{transcript or "No speech detected"}"\n\n'
        f"{speaker_info}\n"
        f"{volume_info}\n\n"
        "Provide a calming interpretation. Remember:\n"
        "- The student may be worried that sounds are directed at them\n"
        "- Help them understand the context is likely normal/safe\n"
        "- Be reassuring but honest\n\n"
        "Respond in JSON format with: assessment, summary, triggers, confidence, recommendations"
    )


def analyze_social_context(
    transcript: str,
    audio_events: Sequence[str],
    speakers: Sequence[Speaker] = (),
    decibels: Optional[float] = None,
    *,
    api_key: str,
    model_name: str,
) -> SocialContextResult:
    if not str(api_key or "").strip():
        return SocialContextResult(
            success=False,
            assessment="unknown",
            summary="Analysis unavailable - please configure a Gemini API key",
            confidence=0.0,
            error="Gemini API key not configured",
        )

    try:
        raw = gemini.generate_text(
            build_user_prompt(transcript, audio_events, speakers, decibels),
            api_key=api_key,
            model_name=model_name,
            system_instruction=SOCIAL_CONTEXT_SYSTEM_PROMPT,
            temperature=0.3,
        )
    except GeminiAdapterError as exc:
        logger.warning("social_context_fallback reason=%s", exc)
        return SocialContextResult(
            success=False,
            assessment="neutral",
            summary=FAILURE_SUMMARY,
            confidence=0.3,
            recommendations=list(FAILURE_RECOMMENDATIONS),
            error=str(exc),
        )

    data = gemini.parse_json_object(raw) or {}
    if not data:
        logger.warning("social_context_unparsable chars=%s", len(raw))

    confidence = data.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = DEFAULT_CONFIDENCE
    triggers = data.get("triggers")
    recommendations = data.get("recommendations")
    result = SocialContextResult(
        success=True,
        assessment=validate_assessment(data.get("assessment")),
        summary=str(data.get("summary") or default_summary(audio_events, transcript)),
        triggers=[str(t) for t in triggers] if isinstance(triggers, list) else [],
        confidence=max(0.0, min(1.0, float(confidence))),
        recommendations=[str(r) for r in recommendations] if isinstance(recommendations, list) else [],
    )
    logger.info("social_context assessment=%s confidence=%.2f", result.assessment, result.confidence)
    return result

import json
import random

import pytest

from whisperlite.analysis import gemini
from whisperlite.analysis.gemini import GeminiAdapterError, parse_json_object
from whisperlite.analysis.stress import (
    CALMING_PROMPTS,
    StressAssessment,
    analyze_transcript,
    assess_volume_stress,
    detection_from_assessment,
    detection_type_for_triggers,
    detections_from_payload,
    fallback_stress_level,
    overall_state_for_level,
)


@pytest.mark.parametrize(
    ("volume_db", "level"),
    [(95.0, "high"), (90.0, "moderate"), (85.0, "moderate"), (80.0, "mild"), (75.0, "mild"), (70.0, "calm")],
)
def test_fallback_thresholds_are_strict(volume_db: float, level: str) -> None:
    assessment = fallback_stress_level(volume_db)
    assert assessment.level == level
    assert assessment.confidence == 0.6
    assert assessment.source == "volume_fallback"


def test_fallback_marks_loud_environment_above_80() -> None:
    assert fallback_stress_level(81.0).triggers == ["loud_environment"]
    assert fallback_stress_level(80.0).triggers == []


def test_assess_volume_stress_falls_back_without_key() -> None:
    assessment = assess_volume_stress(92.0, has_audio_data=False, api_key="", model_name="m")
    assert assessment.level == "high"
    assert assessment.source == "volume_fallback"


def test_assess_volume_stress_uses_gemini_reply(monkeypatch) -> None:
    def fake_generate_text(prompt, **kwargs):
        assert "Volume: 85.0 dB" in prompt
        return '```json\n{"level": "moderate", "confidence": 1.7, "triggers": ["harsh voice"], "reasoning": "r"}\n```'

    monkeypatch.setattr(gemini, "generate_text", fake_generate_text)
    assessment = assess_volume_stress(85.0, has_audio_data=True, api_key="k", model_name="m")

    assert assessment.source == "gemini"
    assert assessment.level == "moderate"
    assert assessment.confidence == 1.0
    assert assessment.triggers == ["harsh voice"]


def test_assess_volume_stress_invalid_level_falls_back(monkeypatch) -> None:
    monkeypatch.setattr(gemini, "generate_text", lambda prompt, **kwargs: '{"level": "panic"}')
    assessment = assess_volume_stress(60.0, has_audio_data=False, api_key="k", model_name="m")
    assert assessment.source == "volume_fallback"
    assert assessment.level == "calm"


def test_detection_type_matching_uses_substrings() -> None:
    assert detection_type_for_triggers(["Very LOUD room"]) == "crowd_noise"
    assert detection_type_for_triggers(["harsh tone"]) == "harsh_tone"
    assert detection_type_for_triggers(["sudden change"]) == "urgent_tone"
    assert detection_type_for_triggers([]) == "urgent_tone"


def test_detection_from_assessment_skips_calm() -> None:
    calm = StressAssessment(level="calm", confidence=0.9)
    assert detection_from_assessment(calm, t=1.0) is None

    high = StressAssessment(level="high", confidence=0.8, triggers=["loud"], reasoning="noisy")
    event = detection_from_assessment(high, t=5.0)
    assert event is not None
    assert event.type == "crowd_noise"
    assert event.note == "noisy"
    assert overall_state_for_level("high") == "stressor_detected"
    assert overall_state_for_level("mild") is None


def test_detections_from_payload_drops_unknown_types() -> None:
    detections = detections_from_payload(
        {
            "overallState": "stressor_detected",
            "events": [
                {"type": "fast_speech", "confidence": 0.9, "note": "Quick talker"},
                {"type": "yelling", "confidence": 0.9},
                {"type": "harsh_tone"},
            ],
        }
    )
    assert [event.type for event in detections.events] == ["fast_speech", "harsh_tone"]
    assert [event.t for event in detections.events] == [0.0, 1.0]
    assert detections.events[1].confidence == 0.5
    assert detections.events[1].note == "Analysis detected this pattern."


def test_detections_from_empty_payload_is_calm() -> None:
    detections = detections_from_payload(None)
    assert detections.overall_state == "calm"
    assert detections.events == []


def test_analyze_transcript_picks_prompt_when_stressed(monkeypatch) -> None:
    reply = {"overallState": "stressor_detected", "events": [{"type": "sarcasm_likely", "confidence": 0.7}]}
    monkeypatch.setattr(gemini, "generate_text", lambda prompt, **kwargs: json.dumps(reply))

    analysis = analyze_transcript("Oh great, another quiz.", "high", api_key="k", model_name="m", rng=random.Random(3))

    assert analysis.ui_state == "amber"
    assert analysis.suggested_prompt in CALMING_PROMPTS
    wire = analysis.to_wire()
    assert wire["uiState"] == "amber"
    assert wire["detections"]["overallState"] == "stressor_detected"


def test_analyze_transcript_unparsable_reply_is_calm(monkeypatch) -> None:
    monkeypatch.setattr(gemini, "generate_text", lambda prompt, **kwargs: "not json at all")
    analysis = analyze_transcript("Hello.", api_key="k", model_name="m")
    assert analysis.ui_state == "green"
    assert analysis.suggested_prompt == ""


def test_analyze_transcript_propagates_gemini_errors() -> None:
    with pytest.raises(GeminiAdapterError):
        analyze_transcript("Hello.", api_key="", model_name="m")


def test_parse_json_object_tolerates_chatter() -> None:
    assert parse_json_object('Sure! {"a": {"b": "}"}} trailing') == {"a": {"b": "}"}}
    assert parse_json_object("[1, 2]") is None
    assert parse_json_object("") is None

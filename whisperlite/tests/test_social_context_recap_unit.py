import json

import pytest

from whisperlite.analysis import gemini
from whisperlite.analysis.gemini import GeminiAdapterError
from whisperlite.analysis.recap import (
    MISSING_SUMMARY,
    RecapResult,
    RecapStore,
    build_recap_system_prompt,
    clamp_reading_level,
    generate_recap,
)
from whisperlite.analysis.social_context import (
    FAILURE_SUMMARY,
    analyze_social_context,
    build_user_prompt,
    default_summary,
    validate_assessment,
)
from whisperlite.transcript.models import Speaker


def test_social_context_without_key_is_unknown() -> None:
    result = analyze_social_context("hello", [], api_key="", model_name="m")
    assert result.success is False
    assert result.assessment == "unknown"
    assert result.to_wire()["error"] == "Gemini API key not configured"


def test_social_context_gemini_failure_is_neutral(monkeypatch) -> None:
    def boom(prompt, **kwargs):
        raise GeminiAdapterError("timeout")

    monkeypatch.setattr(gemini, "generate_text", boom)
    result = analyze_social_context("hello", ["Laughter"], api_key="k", model_name="m")

    assert result.success is False
    assert result.assessment == "neutral"
    assert result.summary == FAILURE_SUMMARY
    assert result.confidence == 0.3
    assert result.recommendations == ["Take a deep breath", "Focus on your own space"]


def test_social_context_normalizes_reply(monkeypatch) -> None:
    captured: dict = {}

    def fake_generate_text(prompt, **kwargs):
        captured["prompt"] = prompt
        return json.dumps({"assessment": "hostile", "triggers": ["noise"], "confidence": 3})

    monkeypatch.setattr(gemini, "generate_text", fake_generate_text)
    result = analyze_social_context(
        "ha ha",
        ["Laughter"],
        [Speaker(id="0", label="Speaker_1")],
        72.5,
        api_key="k",
        model_name="m",
    )

    assert result.success is True
    assert result.assessment == "neutral"
    assert result.confidence == 1.0
    assert result.summary.startswith("There's laughter in the room")
    assert "AUDIO EVENTS DETECTED: Laughter" in captured["prompt"]
    assert "Speakers detected: 1 (Speaker_1)" in captured["prompt"]
    assert "Volume level: 72.5 dB" in captured["prompt"]


def test_social_context_default_confidence(monkeypatch) -> None:
    monkeypatch.setattr(gemini, "generate_text", lambda prompt, **kwargs: '{"assessment": "friendly"}')
    result = analyze_social_context("", [], api_key="k", model_name="m")
    assert result.assessment == "friendly"
    assert result.confidence == 0.7
    assert result.summary == "The environment seems calm. You're doing fine."


def test_default_summary_priority_and_prompt_fallbacks() -> None:
    assert default_summary(["Silence", "Multiple_Voices"], "").startswith("Multiple people")
    assert default_summary([], "words").startswith("The classroom sounds normal")
    assert validate_assessment("tense") == "tense"
    prompt = build_user_prompt("", [], [], None)
    assert "AUDIO EVENTS DETECTED: None" in prompt
    assert 'TRANSCRIPT: "No speech detected"' in prompt
    assert "Speaker information not available" in prompt


def test_clamp_reading_level() -> None:
    assert clamp_reading_level(None) == 7
    assert clamp_reading_level(3) == 6
    assert clamp_reading_level(12) == 10
    assert "Grade 6" in build_recap_system_prompt(6)


def test_generate_recap_parses_key_terms(monkeypatch) -> None:
    reply = {
        "summaryText": "Today we learned about cells.",
        "keyTerms": [{"term": "Cell", "explanation": "The smallest unit of life."}, {"explanation": "no term"}],
    }
    monkeypatch.setattr(gemini, "generate_text", lambda prompt, **kwargs: json.dumps(reply))
    result = generate_recap("cells are small", 8, api_key="k", model_name="m")
    assert result.summary_text == "Today we learned about cells."
    assert [term.term for term in result.key_terms] == ["Cell"]


def test_generate_recap_unparsable_and_missing_summary(monkeypatch) -> None:
    monkeypatch.setattr(gemini, "generate_text", lambda prompt, **kwargs: "x" * 600)
    assert generate_recap("t", 7, api_key="k", model_name="m").summary_text == "x" * 500

    monkeypatch.setattr(gemini, "generate_text", lambda prompt, **kwargs: '{"keyTerms": []}')
    assert generate_recap("t", 7, api_key="k", model_name="m").summary_text == MISSING_SUMMARY


def test_generate_recap_raises_without_key() -> None:
    with pytest.raises(GeminiAdapterError):
        generate_recap("t", 7, api_key="", model_name="m")


def test_recap_store_lookup_and_listing() -> None:
    store = RecapStore()
    first = store.save(
        user_id="u1",
        session_id="s1",
        transcript="t",
        reading_level_grade=7,
        result=RecapResult(summary_text="one"),
        audio_url=None,
    )
    store.save(
        user_id="u1",
        session_id="s1",
        transcript="t",
        reading_level_grade=9,
        result=RecapResult(summary_text="two"),
        audio_url="data:audio/mpeg;base64,AA==",
    )
    generated = store.save(
        user_id="u2",
        session_id=None,
        transcript="t",
        reading_level_grade=7,
        result=RecapResult(summary_text="three"),
        audio_url=None,
    )

    assert generated["sessionId"].startswith("session_")
    assert store.latest_for_session("s1")["summaryText"] == "two"
    assert store.latest_for_session("s1", 7)["recapId"] == first["recapId"]
    assert [r["summaryText"] for r in store.list_for_user("u1")] == ["two", "one"]
    assert len(store.list_for_user("u1", limit=1)) == 1
    with pytest.raises(KeyError):
        store.latest_for_session("s1", 10)

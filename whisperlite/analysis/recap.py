from __future__ import annotations

"""
Lesson recaps at a chosen reading level.

Design intent:
- Summarize a class transcript in short, warm sentences with key terms.
- Keep partial model output instead of failing the whole recap.
- Store recaps in memory for session and per-user lookups.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Dict, List, Optional

from whisperlite.analysis import gemini

logger = logging.getLogger(__name__)

MIN_READING_LEVEL = 6
MAX_READING_LEVEL = 10
DEFAULT_READING_LEVEL = 7
MISSING_SUMMARY = "Summary could not be generated."


@dataclass(frozen=True)
class KeyTerm:
    term: str
    explanation: str


@dataclass(frozen=True)
class RecapResult:
    summary_text: str
    key_terms: list[KeyTerm] = field(default_factory=list)


def clamp_reading_level(grade: Optional[int]) -> int:
    if grade is None:
        return DEFAULT_READING_LEVEL
    return max(MIN_READING_LEVEL, min(MAX_READING_LEVEL, int(grade)))


def reading_level_guidelines(grade: int) -> str:
    if grade <= 6:
        return (
            "Guidelines for Grade 6:\n"
            "- Use very simple words (1-2 syllables preferred)\n"
            "- Short sentences only\n"
            "- Define ALL subject-specific words\n"
            "- Use concrete examples\n"
            "- Very encouraging tone"
        )
    if grade <= 8:
        return (
            "Guidelines for Grade 7-8:\n"
            "- Use common vocabulary\n"
            "- Medium-length sentences\n"
            "- Define technical terms\n"
            "- Include main concepts\n"
            "- Supportive tone"
        )
    return (
        "Guidelines for Grade 9-10:\n"
        "- More varied vocabulary okay\n"
        "- Can use slightly complex sentences\n"
        "- Define only specialized terms\n"
        "- Include key details\n"
        "- Professional but warm tone"
    )


def sentence_word_limit(grade: int) -> str:
    if grade <= 6:
        return "5-8"
    if grade <= 8:
        return "8-12"
    return "10-15"


def build_recap_system_prompt(grade: int) -> str:
    return (
        "You are a friendly, supportive assistant creating class recaps for neurodivergent students.\n\n"
        f"Reading Level: Grade {grade}\n"
        f"{reading_level_guidelines(grade)}\n\n"
        "Create a summary that:\n"
        f"1. Uses short, clear sentences ({sentence_word_limit(grade)} words max)\n"
        "2. Has a warm, encouraging tone\n"
        "3. Avoids sarcasm, jokes, or confusing idioms\n"
        "4. Defines any difficult words\n"
        "5. Ends with ONE gentle encouragement (not over the top)\n\n"
        "IMPORTANT:\n"
        "- Be genuinely supportive, not patronizing\n"
        "- Focus on what was learned, not what was missed\n"
        "- Keep it brief - no more than 100 words in the summary\n\n"
        "Return JSON with:\n"
        "- summaryText: the recap summary\n"
        "- keyTerms: array of { term: string, explanation: string }"
    )


def _key_terms_from_payload(raw: Any) -> list[KeyTerm]:
    terms: list[KeyTerm] = []
    if not isinstance(raw, list):
        return terms
    for item in raw:
        if not isinstance(item, dict):
            continue
        term = str(item.get("term") or "").strip()
        if not term:
            continue
        terms.append(KeyTerm(term=term, explanation=str(item.get("explanation") or "").strip()))
    return terms


def generate_recap(transcript: str, reading_level_grade: int, *, api_key: str, model_name: str) -> RecapResult:
    """Raises GeminiAdapterError when Gemini cannot be reached."""
    grade = clamp_reading_level(reading_level_grade)
    raw = gemini.generate_text(
        f'Create a recap for this class transcript:\n\n"{transcript}"',
        api_key=api_key,
        model_name=model_name,
        system_instruction=build_recap_system_prompt(grade),
        temperature=0.7,
    )
    data = gemini.parse_json_object(raw)
    if data is None:
        logger.warning("recap_unparsable chars=%s", len(raw))
        data = {"summaryText": raw[:500], "keyTerms": []}

    return RecapResult(
        summary_text=str(data.get("summaryText") or MISSING_SUMMARY),
        key_terms=_key_terms_from_payload(data.get("keyTerms")),
    )


class RecapStore:
    def __init__(self) -> None:
        self._lock = RLock()
        self._recaps: List[Dict[str, Any]] = []

    def save(
        self,
        *,
        user_id: str,
        session_id: Optional[str],
        transcript: str,
        reading_level_grade: int,
        result: RecapResult,
        audio_url: Optional[str],
    ) -> Dict[str, Any]:
        record = {
            "recapId": uuid.uuid4().hex,
            "userId": user_id,
            "sessionId": session_id or f"session_{uuid.uuid4().hex[:12]}",
            "transcript": transcript,
            "readingLevelGrade": reading_level_grade,
            "summaryText": result.summary_text,
            "keyTerms": [{"term": t.term, "explanation": t.explanation} for t in result.key_terms],
            "audioUrl": audio_url,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            self._recaps.append(record)
        return dict(record)

    def latest_for_session(self, session_id: str, reading_level_grade: Optional[int] = None) -> Dict[str, Any]:
        with self._lock:
            for record in reversed(self._recaps):
                if record["sessionId"] != session_id:
                    continue
                if reading_level_grade is not None and record["readingLevelGrade"] != reading_level_grade:
                    continue
                return dict(record)
        raise KeyError(f"No recap for session_id: {session_id}")

    def list_for_user(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        with self._lock:
            records = [dict(r) for r in reversed(self._recaps) if r["userId"] == user_id]
        return records[: max(0, limit)]

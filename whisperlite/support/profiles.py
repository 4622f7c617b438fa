from __future__ import annotations

"""
Student profiles: display preferences, reading level and the trusted adult.

Design intent:
- Unknown students get a friendly demo profile instead of an error.
- Normalize preferences on write so readers never see out-of-range values.
- Alerts read the stored trusted adult before any request-supplied one.
"""

import logging
from datetime import datetime, timezone
from threading import RLock
from typing import Dict, List, Literal, Optional

from pydantic import Field

from whisperlite.analysis.recap import DEFAULT_READING_LEVEL, clamp_reading_level
from whisperlite.internal_core.contracts import WireModel
from whisperlite.support.alerts import TrustedAdult

logger = logging.getLogger(__name__)

AgeRange = Literal["13-15", "16-19"]
Sensitivity = Literal["low", "med", "high"]
Role = Literal["student", "teacher"]

DEFAULT_DISPLAY_NAME = "Friend"
_AGE_RANGES = frozenset({"13-15", "16-19"})
_SENSITIVITIES = frozenset({"low", "med", "high"})


class TrustedAdultContact(WireModel):
    name: str = Field(min_length=1, max_length=128)
    channel: Literal["sms", "email", "push"]
    address: str = Field(min_length=1, max_length=256)

    def to_trusted_adult(self) -> TrustedAdult:
        return TrustedAdult(name=self.name.strip(), channel=self.channel, address=self.address.strip())


class StudentProfile(WireModel):
    user_id: str
    display_name: str = DEFAULT_DISPLAY_NAME
    age_range: AgeRange = "13-15"
    pronouns: Optional[str] = None
    reading_level_grade: int = DEFAULT_READING_LEVEL
    sensitivity: Sensitivity = "med"
    trusted_adult: Optional[TrustedAdultContact] = None
    focus_moments: int = 0
    journal_prompts: List[str] = Field(default_factory=list)
    role: Role = "student"
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


def default_profile(user_id: str) -> StudentProfile:
    return StudentProfile(user_id=user_id)


def normalize_profile(
    user_id: str,
    *,
    display_name: Optional[str] = None,
    age_range: Optional[str] = None,
    pronouns: Optional[str] = None,
    reading_level_grade: Optional[int] = None,
    sensitivity: Optional[str] = None,
    trusted_adult: Optional[TrustedAdultContact] = None,
    focus_moments: Optional[int] = None,
    journal_prompts: Optional[List[str]] = None,
    role: Optional[str] = None,
) -> StudentProfile:
    return StudentProfile(
        user_id=user_id,
        display_name=(display_name or "").strip() or DEFAULT_DISPLAY_NAME,
        age_range=age_range if age_range in _AGE_RANGES else "13-15",
        pronouns=(pronouns or "").strip() or None,
        # 0 and missing both mean "not set".
        reading_level_grade=clamp_reading_level(reading_level_grade or None),
        sensitivity=sensitivity if sensitivity in _SENSITIVITIES else "med",
        trusted_adult=trusted_adult,
        focus_moments=max(0, int(focus_moments or 0)),
        journal_prompts=[p for p in (journal_prompts or []) if str(p).strip()],
        role="teacher" if role == "teacher" else "student",
    )


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryProfileStore:
    def __init__(self) -> None:
        self._lock = RLock()
        self._profiles: Dict[str, StudentProfile] = {}

    def get(self, user_id: str) -> StudentProfile:
        with self._lock:
            profile = self._profiles.get(user_id)
            if profile is None:
                raise KeyError(f"Unknown user_id: {user_id}")
            return profile.model_copy(deep=True)

    def get_or_default(self, user_id: str) -> StudentProfile:
        try:
            return self.get(user_id)
        except KeyError:
            return default_profile(user_id)

    def upsert(self, profile: StudentProfile) -> StudentProfile:
        now = _utc_now_iso()
        with self._lock:
            existing = self._profiles.get(profile.user_id)
            stored = profile.model_copy(
                deep=True,
                update={"created_at": existing.created_at if existing else now, "updated_at": now},
            )
            self._profiles[profile.user_id] = stored
        logger.info("profile_saved user_id=%s created=%s", profile.user_id, existing is None)
        return stored.model_copy(deep=True)

    def increment_focus_moments(self, user_id: str, increment: int = 1) -> int:
        with self._lock:
            profile = self._profiles.get(user_id)
            if profile is None:
                raise KeyError(f"Unknown user_id: {user_id}")
            profile.focus_moments = max(0, profile.focus_moments + int(increment))
            profile.updated_at = _utc_now_iso()
            return profile.focus_moments

    def delete(self, user_id: str) -> bool:
        with self._lock:
            removed = self._profiles.pop(user_id, None) is not None
        logger.info("profile_deleted user_id=%s existed=%s", user_id, removed)
        return removed

    def trusted_adult_for(self, user_id: str) -> Optional[TrustedAdult]:
        with self._lock:
            profile = self._profiles.get(user_id)
            if profile is None or profile.trusted_adult is None:
                return None
            return profile.trusted_adult.to_trusted_adult()

from __future__ import annotations

import re

LIVE_AUDIO_TAGS: tuple[str, ...] = (
    "Laughter",
    "Applause",
    "Music",
    "Silence",
    "Coughing",
    "Background_Noise",
)
BATCH_AUDIO_TAGS: tuple[str, ...] = LIVE_AUDIO_TAGS + ("Sneezing",)

_CANONICAL_BY_LOWER = {tag.lower(): tag for tag in BATCH_AUDIO_TAGS}


def _tag_pattern(tags: tuple[str, ...]) -> re.Pattern[str]:
    return re.compile(r"\[(" + "|".join(tags) + r")\]", flags=re.IGNORECASE)


_LIVE_TAG_RE = _tag_pattern(LIVE_AUDIO_TAGS)
_BATCH_TAG_RE = _tag_pattern(BATCH_AUDIO_TAGS)

_INTERPRETATIONS = {
    "Laughter": "The class laughed - likely at a joke or something funny. Not at you.",
    "Applause": "People are clapping - probably celebrating something positive!",
    "Multiple_Voices": "Several people talking - normal group activity or discussion.",
    "Fast_Speech": "Quick talking - excitement or enthusiasm, not anger.",
    "Loud_Voice": "Louder voice - probably for emphasis. Teachers do this to make points clear.",
    "Silence": "Quiet moment - normal pause for thinking or individual work.",
    "Music": "Music playing - probably a planned activity or break time.",
    "Coughing": "Someone coughed - just a normal body thing, nothing to worry about.",
    "Background_Noise": "Some background noise - typical classroom sounds.",
}


def find_audio_tags(text: str, *, include_batch_tags: bool = False) -> list[str]:
    """Return canonical tag names in order of first appearance, without repeats."""
    pattern = _BATCH_TAG_RE if include_batch_tags else _LIVE_TAG_RE
    found: list[str] = []
    for match in pattern.finditer(text or ""):
        tag = _CANONICAL_BY_LOWER[match.group(1).lower()]
        if tag not in found:
            found.append(tag)
    return found


def interpret_audio_event(event: str) -> str:
    return _INTERPRETATIONS.get(event, f"{event} detected - this is likely a normal classroom sound.")

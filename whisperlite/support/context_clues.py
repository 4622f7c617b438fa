from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from threading import RLock
from typing import Dict, List, Optional


@dataclass(frozen=True)
class ContextClue:
    id: str
    phrase: str
    meaning: str
    examples: list[str] = field(default_factory=list)
    category: str = "general"

    def to_wire(self) -> dict[str, object]:
        return {
            "id": self.id,
            "phrase": self.phrase,
            "meaning": self.meaning,
            "examples": list(self.examples),
            "category": self.category,
        }


DEFAULT_CLUES: tuple[ContextClue, ...] = (
    ContextClue(
        "default-1",
        "We'll talk later",
        "They may be busy right now, not mad at you",
        ["Teacher says this when class is busy"],
        "classroom",
    ),
    ContextClue(
        "default-2",
        "You're wrong",
        "Your answer wasn't correct, but that's okay - mistakes help us learn",
        ["During class discussion"],
        "feedback",
    ),
    ContextClue(
        "default-3",
        "See me after class",
        "The teacher wants to talk privately, it could be about anything - not necessarily bad",
        ["Could be about extra help or a question you had"],
        "classroom",
    ),
    ContextClue(
        "default-4",
        "That's interesting...",
        "They're thinking about what you said - this is usually neutral or positive",
        ["Response to sharing an idea"],
        "social",
    ),
    ContextClue(
        "default-5",
        "We need to talk",
        "Someone wants to have a conversation with you - try not to assume the worst",
        ["Could be about plans, help, or just checking in"],
        "social",
    ),
    ContextClue(
        "default-6",
        "Quiet down, everyone",
        "The whole class is being asked to be quieter - it's not directed at you specifically",
        ["Class is getting loud"],
        "classroom",
    ),
    ContextClue(
        "default-7",
        "Pay attention",
        "A reminder to focus - everyone gets distracted sometimes",
        ["During a lesson"],
        "classroom",
    ),
    ContextClue(
        "default-8",
        "That's not what I meant",
        "There was a misunderstanding - this happens and can be cleared up",
        ["During a conversation"],
        "social",
    ),
    ContextClue(
        "default-9",
        "Whatever",
        "They might be frustrated or done with the topic - it's usually not about you",
        ["End of an argument"],
        "social",
    ),
    ContextClue(
        "default-10",
        "I'm disappointed",
        "They had expectations that weren't met - this is about the situation, not your worth",
        ["After a test or assignment"],
        "feedback",
    ),
)

MAX_RESULTS = 50


def _matches(clue: ContextClue, needle: str) -> bool:
    return needle in clue.phrase.lower() or needle in clue.meaning.lower()


class ContextClueCatalog:
    """Built-in clues plus clues added at runtime; user clues are listed first."""

    def __init__(self, defaults: tuple[ContextClue, ...] = DEFAULT_CLUES) -> None:
        self._lock = RLock()
        self._defaults = defaults
        self._custom: Dict[str, ContextClue] = {}

    def _all(self) -> List[ContextClue]:
        return list(self._custom.values()) + list(self._defaults)

    def list_clues(self, q: Optional[str] = None, category: Optional[str] = None) -> List[ContextClue]:
        needle = str(q or "").strip().lower()
        with self._lock:
            clues = self._all()
        if category:
            clues = [c for c in clues if c.category == category]
        if needle:
            clues = [c for c in clues if _matches(c, needle)]
        if not clues and not needle:
            return list(self._defaults)
        return clues[:MAX_RESULTS]

    def search(self, q: str) -> List[ContextClue]:
        needle = str(q or "").strip().lower()
        if not needle:
            raise ValueError("Search query is required")
        with self._lock:
            return [c for c in self._all() if _matches(c, needle)][:MAX_RESULTS]

    def get(self, clue_id: str) -> ContextClue:
        with self._lock:
            for clue in self._all():
                if clue.id == clue_id:
                    return clue
        raise KeyError(f"Unknown context clue: {clue_id}")

    def add(self, phrase: str, meaning: str, examples: Optional[List[str]] = None, category: Optional[str] = None) -> ContextClue:
        phrase = str(phrase or "").strip()
        meaning = str(meaning or "").strip()
        if not phrase or not meaning:
            raise ValueError("Phrase and meaning are required")
        clue = ContextClue(
            id=uuid.uuid4().hex,
            phrase=phrase,
            meaning=meaning,
            examples=[str(e) for e in (examples or [])],
            category=str(category or "general"),
        )
        with self._lock:
            self._custom[clue.id] = clue
        return clue

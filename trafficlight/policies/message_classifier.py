"""Keyword-based tiering of messages typed into AI tools.

Lists are checked in priority order red -> yellow -> green and the first
list with a substring hit decides. Text that matches nothing is Yellow:
an unrecognised request to an AI tool is treated with caution, not waved
through.
"""

from collections.abc import Iterable, Mapping
from typing import Optional

from trafficlight.models import Tier

# Requests to have the AI do graded work
RED_KEYWORDS = [
    "write my essay",
    "write an essay for me",
    "write my paper",
    "do my homework",
    "do my assignment",
    "complete my assignment",
    "complete this assignment",
    "solve my homework",
    "answer this quiz",
    "quiz answers",
    "exam answers",
    "test answers",
    "answer key",
    "take my exam",
    "take my test",
    "write my lab report",
    "write my thesis",
    "rewrite this so it is not detected",
    "bypass turnitin",
    "avoid plagiarism detection",
    "make it undetectable",
    "paraphrase this essay",
]

# Help with coursework that may or may not be legitimate
YELLOW_KEYWORDS = [
    "homework",
    "assignment",
    "essay",
    "summarize",
    "summarise",
    "paraphrase",
    "rewrite",
    "solve",
    "answer",
    "quiz",
    "exam",
    "due tomorrow",
    "word count",
]

# Learning-oriented use
GREEN_KEYWORDS = [
    "explain",
    "help me understand",
    "why does",
    "how does",
    "what is",
    "what are",
    "give me an example",
    "study tips",
    "study plan",
    "practice problems",
    "check my understanding",
    "quiz me",
    "define",
]

# Words that mark a page as a grading or submission context
GRADING_KEYWORDS = [
    "submit",
    "grade",
    "grading",
    "assignment",
    "quiz",
    "test",
    "exam",
    "turn in",
    "upload",
    "assessment",
    "rubric",
    "score",
    "marking",
]

DEFAULT_TIER = Tier.YELLOW


class MessageClassifier:
    """Classifies free text into a Tier by keyword lists.

    Stateless apart from its keyword lists; safe to share.
    """

    def __init__(
        self,
        red: Optional[Iterable[str]] = None,
        yellow: Optional[Iterable[str]] = None,
        green: Optional[Iterable[str]] = None,
    ) -> None:
        self._lists: list[tuple[Tier, list[str]]] = [
            (Tier.RED, _normalize(red if red is not None else RED_KEYWORDS)),
            (Tier.YELLOW, _normalize(yellow if yellow is not None else YELLOW_KEYWORDS)),
            (Tier.GREEN, _normalize(green if green is not None else GREEN_KEYWORDS)),
        ]

    @classmethod
    def from_config(cls, keywords: Mapping[str, Iterable[str]]) -> "MessageClassifier":
        """Build from a ``{"red": [...], "yellow": [...], "green": [...]}`` mapping.

        Missing tiers fall back to the built-in lists.
        """
        return cls(
            red=keywords.get("red"),
            yellow=keywords.get("yellow"),
            green=keywords.get("green"),
        )

    def classify(self, text: str) -> Tier:
        """Return the tier of the first keyword list that hits, else Yellow."""
        return self.match(text)[0]

    def match(self, text: str) -> tuple[Tier, Optional[str]]:
        """Classify and also report which keyword decided.

        Returns:
            Tuple of (tier, keyword) - keyword is None for the default
        """
        text_lower = (text or "").lower()

        for tier, keywords in self._lists:
            for keyword in keywords:
                if keyword in text_lower:
                    return tier, keyword

        return DEFAULT_TIER, None

    def keywords(self) -> dict[str, list[str]]:
        return {tier.value: list(words) for tier, words in self._lists}


def detect_grading_context(
    page_text: str,
    keywords: Optional[Iterable[str]] = None,
) -> bool:
    """Check whether page text looks like a grading or submission page."""
    text_lower = (page_text or "").lower()
    return any(keyword in text_lower for keyword in _normalize(keywords or GRADING_KEYWORDS))


def _normalize(words: Iterable[str]) -> list[str]:
    return [w.lower() for w in words if w and w.strip()]

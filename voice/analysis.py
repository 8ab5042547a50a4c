"""
Transcript analysis — speech-quality signals from recognized user text.

- Filler detection for English and Indonesian ("um", "you know", "anu", ...)
- Hesitation detection: trailing dots, doubled spaces, hesitation sounds,
  immediately repeated words ("I I think")
- Confidence and clarity estimates derived from the two
"""
from __future__ import annotations

import re
from dataclasses import dataclass


# Common filler words; multi-word entries match as phrases
FILLER_WORDS = ("um", "uh", "er", "ah", "like", "you know", "eung", "anu", "uhm")

HESITATION_SOUNDS = ("um", "uh", "er", "ah", "eung", "anu")

_FILLER_PATTERNS = {
    filler: re.compile(r"\b" + re.escape(filler) + r"\b", re.IGNORECASE)
    for filler in FILLER_WORDS
}
_HESITATION_PATTERNS = (
    re.compile(r"\.{2,}|…"),                                         # trailing off
    re.compile(r"\S\s{2,}\S"),                                       # long gaps
    re.compile(r"\b(?:" + "|".join(HESITATION_SOUNDS) + r")\b", re.IGNORECASE),
    re.compile(r"\b(\w+)\s+\1\b", re.IGNORECASE),                   # "I I think"
)


def detect_fillers(text: str) -> list[str]:
    """Distinct filler words/phrases present in ``text``."""
    return [f for f, pattern in _FILLER_PATTERNS.items() if pattern.search(text)]


def count_fillers(text: str) -> int:
    """Total filler occurrences (each repeat counts)."""
    return sum(len(pattern.findall(text)) for pattern in _FILLER_PATTERNS.values())


def detect_hesitation(text: str) -> bool:
    return any(p.search(text) for p in _HESITATION_PATTERNS)


def count_words(text: str) -> int:
    return len(text.split())


def words_per_minute(words: int, duration_s: float) -> float:
    if duration_s <= 0:
        return 0.0
    return words / (duration_s / 60.0)


@dataclass
class UtteranceAnalysis:
    words: int
    fillers: int
    hesitant: bool

    @property
    def confidence(self) -> float:
        value = 100 - self.fillers * 10 - (15 if self.hesitant else 0)
        return float(max(0, min(100, value)))

    @property
    def clarity(self) -> float:
        return float(max(0, min(100, 100 - self.fillers * 5)))


def analyze_utterance(text: str) -> UtteranceAnalysis:
    return UtteranceAnalysis(
        words=count_words(text),
        fillers=count_fillers(text),
        hesitant=detect_hesitation(text),
    )

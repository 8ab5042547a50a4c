"""
Scoring — pace, performance, final score and letter grade.
"""
from __future__ import annotations

from models.schemas import Emotion, SessionMetrics

OPTIMAL_PACE_WPM = (150.0, 180.0)
MAX_FILLER_PENALTY = 50.0
FILLER_PENALTY_EACH = 5.0

GRADE_BANDS = (
    (95, "A+"),
    (90, "A"),
    (85, "A-"),
    (80, "B+"),
    (75, "B"),
    (70, "B-"),
    (65, "C+"),
    (60, "C"),
    (55, "C-"),
    (50, "D"),
)

EMOTIONAL_INTENSITY = {
    Emotion.NEUTRAL: 0.0,
    Emotion.HAPPY: 0.6,
    Emotion.FRUSTRATED: 0.8,
    Emotion.HOSTILE: 1.0,
    Emotion.ANXIOUS: 0.7,
}


def pace_score(pace: float) -> float:
    """100 inside the optimal band, linear to 0 below it, half-rate decay above it."""
    low, high = OPTIMAL_PACE_WPM
    if pace <= 0:
        return 0.0
    if low <= pace <= high:
        return 100.0
    if pace < low:
        return max(0.0, pace / low * 100.0)
    return max(0.0, 100.0 - (pace - high) / high * 50.0)


def performance_score(metrics: SessionMetrics) -> float:
    """Mean of pace score, confidence and clarity."""
    return (pace_score(metrics.pace) + metrics.confidence + metrics.clarity) / 3.0


def overall_score(metrics: SessionMetrics) -> int:
    """Performance score minus a filler penalty (5 per filler, capped at 50), in [0, 100]."""
    penalty = min(MAX_FILLER_PENALTY, metrics.filler_word_count * FILLER_PENALTY_EACH)
    return int(round(max(0.0, min(100.0, performance_score(metrics) - penalty))))


def letter_grade(score: float) -> str:
    for floor, grade in GRADE_BANDS:
        if score >= floor:
            return grade
    return "F"


def emotional_intensity(emotion: Emotion | str) -> float:
    try:
        return EMOTIONAL_INTENSITY[Emotion(emotion)]
    except ValueError:
        return 0.0

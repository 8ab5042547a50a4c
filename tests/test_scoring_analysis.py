"""
Tests for transcript analysis and session scoring.

Coverage:
- Filler and hesitation detection (English and Indonesian)
- Confidence / clarity estimates
- Pace score curve, filler penalty cap, letter grades
"""
import pytest

from core.scoring import (
    emotional_intensity, letter_grade, overall_score, pace_score, performance_score,
)
from models.schemas import Emotion, SessionMetrics
from voice.analysis import (
    analyze_utterance, count_fillers, count_words, detect_fillers, detect_hesitation,
    words_per_minute,
)


class TestFillers:
    def test_english_fillers(self):
        assert set(detect_fillers("Um, you know, I was like thinking")) == {"um", "you know", "like"}

    def test_indonesian_fillers(self):
        assert detect_fillers("Saya anu... eung, mau tanya") == ["eung", "anu"]

    def test_whole_words_only(self):
        assert detect_fillers("The umbrella was erased") == []

    def test_repeats_counted(self):
        assert count_fillers("um um uh") == 3


class TestHesitation:
    @pytest.mark.parametrize("text", [
        "I was going to...",
        "Well  maybe",
        "Uh sure",
        "I I think so",
    ])
    def test_hesitant(self, text):
        assert detect_hesitation(text)

    def test_fluent(self):
        assert not detect_hesitation("I can deliver the report by Friday.")


class TestUtteranceAnalysis:
    def test_confidence_and_clarity(self):
        result = analyze_utterance("um I think")
        assert result.words == 3
        assert result.fillers == 1
        assert result.hesitant
        assert result.confidence == 75.0
        assert result.clarity == 95.0

    def test_clean_utterance(self):
        result = analyze_utterance("Thank you for calling today.")
        assert result.confidence == 100.0
        assert result.clarity == 100.0

    def test_floor_at_zero(self):
        result = analyze_utterance(" ".join(["um"] * 15))
        assert result.confidence == 0.0
        assert result.clarity == 25.0

    def test_word_helpers(self):
        assert count_words("  one two   three ") == 3
        assert words_per_minute(30, 12) == pytest.approx(150.0)
        assert words_per_minute(30, 0) == 0.0


class TestPaceScore:
    @pytest.mark.parametrize("pace, expected", [
        (0, 0.0),
        (75, 50.0),
        (150, 100.0),
        (165, 100.0),
        (180, 100.0),
        (270, 75.0),
        (360, 50.0),
        (1000, 0.0),
    ])
    def test_curve(self, pace, expected):
        assert pace_score(pace) == pytest.approx(expected)


class TestOverallScore:
    def test_perfect_session(self):
        metrics = SessionMetrics(pace=165, confidence=100, clarity=100)
        assert performance_score(metrics) == pytest.approx(100.0)
        assert overall_score(metrics) == 100

    def test_filler_penalty_capped(self):
        metrics = SessionMetrics(pace=165, confidence=100, clarity=100, filler_word_count=20)
        assert overall_score(metrics) == 50

    def test_never_negative(self):
        metrics = SessionMetrics(pace=0, confidence=0, clarity=0, filler_word_count=3)
        assert overall_score(metrics) == 0

    def test_is_integer(self):
        metrics = SessionMetrics(pace=100, confidence=70, clarity=80)
        assert isinstance(overall_score(metrics), int)


class TestLetterGrade:
    @pytest.mark.parametrize("score, grade", [
        (100, "A+"), (95, "A+"), (94, "A"), (85, "A-"), (82, "B+"),
        (75, "B"), (70, "B-"), (67, "C+"), (60, "C"), (55, "C-"),
        (50, "D"), (49, "F"), (0, "F"),
    ])
    def test_bands(self, score, grade):
        assert letter_grade(score) == grade


class TestEmotionalIntensity:
    def test_known_and_unknown(self):
        assert emotional_intensity(Emotion.HOSTILE) == 1.0
        assert emotional_intensity("frustrated") == 0.8
        assert emotional_intensity("bored") == 0.0

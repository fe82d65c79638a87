"""
Unit tests for the skip number progression.

Pure function, no state: every case is a single calculate_skip_number call.
"""

import pytest

from src.liveaid.errors import ErrorCode, InvalidInputError
from src.liveaid.models import SessionResult
from src.liveaid.skip_progression import (
    SKIP_SEQUENCE,
    SkipProgressionCalculator,
    calculate_skip_number,
)

PERFECT = SessionResult(correct_count=20, total_count=20)
NEAR_MISS = SessionResult(correct_count=19, total_count=20)


class TestAdvancement:
    @pytest.mark.parametrize(
        "current,expected",
        [(4, 8), (8, 15), (15, 30), (30, 100), (100, 1000)],
    )
    def test_perfect_session_advances_one_step(self, current, expected):
        calc = calculate_skip_number(current, 0, PERFECT)

        assert calc.next_skip_number == expected
        assert calc.is_advancement is True
        assert calc.is_reset is False

    def test_consecutive_perfect_increments(self):
        calc = calculate_skip_number(8, 3, PERFECT)
        assert calc.consecutive_perfect == 4

    def test_reaching_ceiling_marks_retired(self):
        calc = calculate_skip_number(100, 4, PERFECT)

        assert calc.next_skip_number == 1000
        assert calc.is_retired is True
        assert calc.was_already_retired is False

    def test_retired_stitch_stays_retired(self):
        calc = calculate_skip_number(1000, 5, PERFECT)

        assert calc.next_skip_number == 1000
        assert calc.is_advancement is False
        assert calc.is_retired is True
        assert calc.was_already_retired is True
        assert calc.consecutive_perfect == 6


class TestReset:
    @pytest.mark.parametrize("current", SKIP_SEQUENCE)
    def test_any_miss_resets_to_four(self, current):
        calc = calculate_skip_number(current, 7, NEAR_MISS)

        assert calc.next_skip_number == 4
        assert calc.is_reset is True
        assert calc.consecutive_perfect == 0

    def test_zero_score_resets(self):
        calc = calculate_skip_number(30, 2, SessionResult(correct_count=0, total_count=20))
        assert calc.next_skip_number == 4

    def test_reasoning_mentions_score(self):
        calc = calculate_skip_number(15, 1, NEAR_MISS)
        assert "19/20" in calc.reasoning


class TestValidation:
    @pytest.mark.parametrize("bad", [0, 3, 5, 16, 999, 1001])
    def test_unknown_skip_number_rejected(self, bad):
        with pytest.raises(InvalidInputError) as exc_info:
            calculate_skip_number(bad, 0, PERFECT)
        assert exc_info.value.code == ErrorCode.INVALID_SKIP_NUMBER

    @pytest.mark.parametrize(
        "correct,total",
        [(21, 20), (-1, 20), (0, 0), (5, -3)],
    )
    def test_invalid_session_result(self, correct, total):
        with pytest.raises(InvalidInputError) as exc_info:
            SessionResult(correct_count=correct, total_count=total)
        assert exc_info.value.code == ErrorCode.INVALID_PERFORMANCE_DATA

    def test_negative_consecutive_perfect_rejected(self):
        with pytest.raises(InvalidInputError) as exc_info:
            calculate_skip_number(4, -1, PERFECT)
        assert exc_info.value.code == ErrorCode.INVALID_PERFORMANCE_DATA

    def test_calculator_is_deterministic(self):
        calculator = SkipProgressionCalculator()
        first = calculator.calculate_skip_number(15, 2, PERFECT)
        second = calculator.calculate_skip_number(15, 2, PERFECT)
        assert first == second

    def test_partial_sessions_count_as_perfect_when_all_correct(self):
        calc = calculate_skip_number(4, 0, SessionResult(correct_count=5, total_count=5))
        assert calc.next_skip_number == 8

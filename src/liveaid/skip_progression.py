"""
Skip number progression.

A stitch's skip number controls how many other presentations happen before it
comes round again. It walks a fixed sequence:

    4 -> 8 -> 15 -> 30 -> 100 -> 1000

Rules:
- Perfect session (every item correct): advance one step. 1000 is the ceiling
  and a retired stitch stays there.
- Anything less: back to 4, with no partial credit.
"""

from __future__ import annotations

from .errors import ErrorCode, InvalidInputError
from .models import SessionResult, SkipCalculation

SKIP_SEQUENCE: tuple[int, ...] = (4, 8, 15, 30, 100, 1000)
INITIAL_SKIP_NUMBER = SKIP_SEQUENCE[0]
RETIRED_SKIP_NUMBER = SKIP_SEQUENCE[-1]


class SkipProgressionCalculator:
    """Pure, deterministic skip number progression."""

    def __init__(self, sequence: tuple[int, ...] = SKIP_SEQUENCE):
        self.sequence = sequence

    def validate(self, skip_number: int) -> int:
        """Return the index of skip_number in the sequence."""
        try:
            return self.sequence.index(skip_number)
        except ValueError:
            raise InvalidInputError(
                ErrorCode.INVALID_SKIP_NUMBER,
                f"Skip number {skip_number} is not one of {list(self.sequence)}",
                skip_number=skip_number,
            ) from None

    def calculate_skip_number(
        self,
        current: int,
        consecutive_perfect: int,
        session_result: SessionResult,
    ) -> SkipCalculation:
        """
        Calculate the next skip number after a session.

        Args:
            current: Skip number before the session
            consecutive_perfect: Perfect sessions in a row before this one
            session_result: The completed session

        Returns:
            SkipCalculation describing the step
        """
        index = self.validate(current)
        if consecutive_perfect < 0:
            raise InvalidInputError(
                ErrorCode.INVALID_PERFORMANCE_DATA,
                f"consecutive_perfect cannot be negative ({consecutive_perfect})",
            )

        ceiling = self.sequence[-1]
        was_retired = current == ceiling

        if not session_result.is_perfect:
            return SkipCalculation(
                next_skip_number=self.sequence[0],
                is_advancement=False,
                is_reset=True,
                consecutive_perfect=0,
                is_retired=False,
                was_already_retired=was_retired,
                reasoning=(
                    f"{session_result.correct_count}/{session_result.total_count} is not perfect: "
                    f"reset {current} -> {self.sequence[0]}"
                ),
            )

        if was_retired:
            return SkipCalculation(
                next_skip_number=ceiling,
                is_advancement=False,
                is_reset=False,
                consecutive_perfect=consecutive_perfect + 1,
                is_retired=True,
                was_already_retired=True,
                reasoning=f"Perfect score on a retired stitch: stays at {ceiling}",
            )

        next_skip = self.sequence[index + 1]
        return SkipCalculation(
            next_skip_number=next_skip,
            is_advancement=True,
            is_reset=False,
            consecutive_perfect=consecutive_perfect + 1,
            is_retired=next_skip == ceiling,
            was_already_retired=False,
            reasoning=f"Perfect score: advance {current} -> {next_skip}",
        )


def calculate_skip_number(
    current: int,
    consecutive_perfect: int,
    session_result: SessionResult,
) -> SkipCalculation:
    """Module-level shortcut using the standard sequence."""
    return SkipProgressionCalculator().calculate_skip_number(current, consecutive_perfect, session_result)

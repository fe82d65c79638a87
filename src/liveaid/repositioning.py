"""
Stitch Repositioning Algorithm.

After a completed session the stitch is moved back in its tube so it comes
round again after exactly ``skip`` other presentations:

1. Temporarily vacate the stitch's position.
2. Shift every stitch between the old position and the target one slot
   towards the front (2 -> 1, 3 -> 2, 4 -> 3, ...).
3. Drop the stitch into the slot this opens at position ``skip``.

Only perfect sessions move a stitch. A miss leaves it where it is (still the
active stitch) and resets its skip number to 4.

The target slot is the skip number in force when the session completed, i.e.
the interval earned by the previous session; the progression step then sets
the interval for the next one. A fresh stitch therefore lands at 4, then 8,
15, 30, 100 and finally 1000.
"""

from __future__ import annotations

from collections.abc import Mapping

from loguru import logger

from .errors import ContentionError, ErrorCode, RetiredStitchError
from .locks import TubeLocks
from .models import MAX_BOUNDARY_LEVEL, RepositionResult, SessionResult, StitchProgress, TubeId, utcnow
from .skip_progression import SkipProgressionCalculator
from .state import UserStateRegistry


def shift_into_slot(mapping: Mapping[int, str], current: int, target: int) -> dict[int, str]:
    """
    Move the stitch at ``current`` to ``target``, shifting the stitches in between.

    Stitches outside the closed range between the two positions keep their
    slots, so gaps elsewhere in the map are untouched.
    """
    stitch_id = mapping[current]
    moved: dict[int, str] = {}

    for position, other in mapping.items():
        if position == current:
            continue
        if current < target and current < position <= target:
            moved[position - 1] = other
        elif target < current and target <= position < current:
            moved[position + 1] = other
        else:
            moved[position] = other

    moved[target] = stitch_id
    return moved


class RepositioningEngine:
    """Applies the repositioning algorithm to one tube at a time."""

    def __init__(
        self,
        registry: UserStateRegistry,
        locks: TubeLocks,
        calculator: SkipProgressionCalculator | None = None,
    ):
        self.registry = registry
        self.locks = locks
        self.calculator = calculator or SkipProgressionCalculator()

    def reposition_stitch(
        self,
        user_id: str,
        tube_id: TubeId,
        stitch_id: str,
        session_result: SessionResult,
        expect_movement: bool = False,
    ) -> RepositionResult:
        """
        Reposition a stitch after a completed session.

        Args:
            user_id: Owner of the tube
            tube_id: Tube holding the stitch
            stitch_id: The completed stitch
            session_result: Score for the session
            expect_movement: Raise instead of re-filing when the stitch is
                already retired

        Returns:
            RepositionResult

        Raises:
            NotFoundError: STITCH_NOT_FOUND / USER_NOT_FOUND
            InvalidInputError: INVALID_SKIP_NUMBER on corrupt progress
            ContentionError: REPOSITIONING_FAILED on a concurrent write
            RetiredStitchError: expect_movement on a retired stitch
        """
        state = self.registry.get(user_id)
        store = state.tube(tube_id)

        with self.locks.hold(user_id, tube_id, ErrorCode.REPOSITIONING_FAILED):
            read_version = store.version
            previous_position = store.position_of(stitch_id)
            progress = state.progress_for(stitch_id)

            calc = self.calculator.calculate_skip_number(
                progress.skip_number,
                progress.consecutive_perfect,
                session_result,
            )

            if calc.was_already_retired and session_result.is_perfect and expect_movement:
                raise RetiredStitchError(stitch_id)

            updated = self._next_progress(progress, session_result, calc.next_skip_number, calc.consecutive_perfect)

            if session_result.is_perfect:
                target = progress.skip_number
                mapping = shift_into_slot(store.snapshot(), previous_position, target)
                try:
                    store.replace(mapping, expected_version=read_version)
                except ContentionError as exc:
                    raise ContentionError(
                        ErrorCode.REPOSITIONING_FAILED,
                        f"{tube_id.value} changed while repositioning '{stitch_id}'",
                        stitch_id=stitch_id,
                        tube_id=tube_id.value,
                    ) from exc
                new_position = target
            else:
                new_position = previous_position

            state.progress[stitch_id] = updated

        result = RepositionResult(
            stitch_id=stitch_id,
            tube_id=tube_id,
            previous_position=previous_position,
            new_position=new_position,
            skip_number=progress.skip_number,
            next_skip_number=updated.skip_number,
            boundary_level=updated.boundary_level,
            boundary_level_changed=updated.boundary_level != progress.boundary_level,
            moved=new_position != previous_position,
            timestamp=updated.last_completed_at,
        )

        logger.info(
            "Repositioned {} in {}/{}: {} -> {} (skip {} -> {}, {})",
            stitch_id,
            user_id,
            tube_id.value,
            previous_position,
            new_position,
            progress.skip_number,
            updated.skip_number,
            calc.reasoning,
        )
        return result

    @staticmethod
    def _next_progress(
        progress: StitchProgress,
        session_result: SessionResult,
        next_skip: int,
        consecutive_perfect: int,
    ) -> StitchProgress:
        updated = progress.copy()
        updated.skip_number = next_skip
        updated.consecutive_perfect = consecutive_perfect
        updated.completions += 1
        updated.last_completed_at = session_result.completed_at or utcnow()
        # Boundary level only ratchets up
        if session_result.is_perfect:
            updated.boundary_level = min(MAX_BOUNDARY_LEVEL, progress.boundary_level + 1)
        return updated

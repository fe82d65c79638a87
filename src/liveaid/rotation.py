"""
Live Aid tube rotation.

At any moment one tube is LIVE (being studied), one is READY (content
assembled, next up) and one is PREPARING (content assembling in the
background). Finishing the LIVE tube's session rotates all three at once:

    LIVE      -> PREPARING
    READY     -> LIVE
    PREPARING -> READY

A broken assignment is reported as ROTATION_FAILED and left as found.
"""

from __future__ import annotations

import threading
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType

from loguru import logger

from .errors import ConcurrentRotationError, ErrorCode, RotationError, SchedulerError
from .models import LiveAidRotationResult, TubeId, TubeStatus, TubeTransition, utcnow
from .state import UserStateRegistry

SESSION_COMPLETE = "session_complete"
MANUAL = "manual"

ROTATION_CYCLE: Mapping[TubeStatus, TubeStatus] = MappingProxyType(
    {
        TubeStatus.LIVE: TubeStatus.PREPARING,
        TubeStatus.READY: TubeStatus.LIVE,
        TubeStatus.PREPARING: TubeStatus.READY,
    }
)

INITIAL_ASSIGNMENT: Mapping[TubeId, TubeStatus] = MappingProxyType(
    {
        TubeId.TUBE1: TubeStatus.LIVE,
        TubeId.TUBE2: TubeStatus.READY,
        TubeId.TUBE3: TubeStatus.PREPARING,
    }
)

# Called with (user_id, tube_id); returns True when a preparation was queued
PreparationRequester = Callable[[str, TubeId], bool]


@dataclass
class RotationMetrics:
    rotations: int = 0
    failures: int = 0
    concurrent_rejections: int = 0
    total_seconds: float = 0.0

    @property
    def average_rotation_ms(self) -> float:
        return (self.total_seconds / self.rotations) * 1000 if self.rotations else 0.0


def validate_assignment(user_id: str, statuses: Mapping[TubeId, TubeStatus]) -> None:
    """Raise ROTATION_FAILED unless statuses map the three tubes onto the three roles."""
    if set(statuses) != set(TubeId) or set(statuses.values()) != set(TubeStatus):
        raise RotationError(
            f"Tube states for {user_id} are not a live/ready/preparing assignment",
            user_id=user_id,
            statuses={tube.value: status.value for tube, status in statuses.items()},
        )


class TubeRotationController:
    """Owns the Live Aid tube assignment for every user."""

    def __init__(
        self,
        registry: UserStateRegistry,
        request_preparation: PreparationRequester | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.request_preparation = request_preparation
        self.clock = clock
        self._rotating: set[str] = set()
        self._guard = threading.Lock()
        self.metrics = RotationMetrics()

    def initialize_user(self, user_id: str) -> Mapping[TubeId, TubeStatus]:
        """Assign tube1 LIVE, tube2 READY, tube3 PREPARING and start preparing tube3."""
        state = self.registry.get(user_id)
        if state.tube_statuses:
            raise RotationError(f"Tube states for {user_id} are already initialized", user_id=user_id)

        state.tube_statuses = INITIAL_ASSIGNMENT
        state.rotation_count = 0
        logger.info("Initialized Live Aid tubes for {}", user_id)
        self._request_preparation(user_id, TubeId.TUBE3)
        return state.tube_statuses

    def get_tube_states(self, user_id: str) -> Mapping[TubeId, TubeStatus]:
        statuses = self.registry.get(user_id).tube_statuses
        validate_assignment(user_id, statuses)
        return statuses

    def tube_with_status(self, user_id: str, status: TubeStatus) -> TubeId:
        for tube_id, current in self.get_tube_states(user_id).items():
            if current == status:
                return tube_id
        # Unreachable after validation
        raise RotationError(f"No {status.value} tube for {user_id}", user_id=user_id)

    def live_tube(self, user_id: str) -> TubeId:
        return self.tube_with_status(user_id, TubeStatus.LIVE)

    def ready_tube(self, user_id: str) -> TubeId:
        return self.tube_with_status(user_id, TubeStatus.READY)

    def preparing_tube(self, user_id: str) -> TubeId:
        return self.tube_with_status(user_id, TubeStatus.PREPARING)

    def should_rotate(self, user_id: str, trigger_reason: str, tube_id: TubeId | None = None) -> bool:
        """A manual trigger always rotates; a session completion only on the LIVE tube."""
        if trigger_reason == MANUAL:
            return True
        if trigger_reason == SESSION_COMPLETE:
            return tube_id is not None and tube_id == self.live_tube(user_id)
        return False

    def rotate_tubes(self, user_id: str, trigger_reason: str = SESSION_COMPLETE) -> LiveAidRotationResult:
        """
        Rotate the three tube roles atomically.

        Args:
            user_id: User whose tubes rotate
            trigger_reason: Why the rotation happened (session_complete, manual, ...)

        Returns:
            LiveAidRotationResult with one transition per tube

        Raises:
            NotFoundError: USER_NOT_FOUND
            RotationError: broken assignment
            ConcurrentRotationError: a rotation for the user is already in flight
        """
        with self._guard:
            if user_id in self._rotating:
                self.metrics.concurrent_rejections += 1
                raise ConcurrentRotationError(f"Rotation already in progress for {user_id}", user_id=user_id)
            self._rotating.add(user_id)

        started = time.perf_counter()
        try:
            state = self.registry.get(user_id)
            current = state.tube_statuses
            validate_assignment(user_id, current)

            now = self.clock()
            updated = {tube_id: ROTATION_CYCLE[status] for tube_id, status in current.items()}
            validate_assignment(user_id, updated)

            transitions = tuple(
                TubeTransition(
                    tube_id=tube_id,
                    from_status=current[tube_id],
                    to_status=updated[tube_id],
                    timestamp=now,
                    trigger_reason=trigger_reason,
                )
                for tube_id in TubeId
            )
            previous_live = next(t for t, s in current.items() if s == TubeStatus.LIVE)
            new_live = next(t for t, s in updated.items() if s == TubeStatus.LIVE)
            new_preparing = next(t for t, s in updated.items() if s == TubeStatus.PREPARING)

            state.tube_statuses = MappingProxyType(updated)
            state.rotation_count += 1
            rotation_number = state.rotation_count
        except RotationError:
            self.metrics.failures += 1
            raise
        finally:
            with self._guard:
                self._rotating.discard(user_id)

        self.metrics.rotations += 1
        self.metrics.total_seconds += time.perf_counter() - started

        logger.info(
            "Rotation #{} for {} ({}): live {} -> {}",
            rotation_number,
            user_id,
            trigger_reason,
            previous_live.value,
            new_live.value,
        )

        requested = self._request_preparation(user_id, new_preparing)
        return LiveAidRotationResult(
            rotation_id=str(uuid.uuid4()),
            user_id=user_id,
            previous_live=previous_live,
            new_live=new_live,
            transitions=transitions,
            rotation_number=rotation_number,
            timestamp=now,
            preparation_requested=requested,
        )

    def _request_preparation(self, user_id: str, tube_id: TubeId) -> bool:
        if self.request_preparation is None:
            return False
        try:
            return self.request_preparation(user_id, tube_id)
        except (SchedulerError, RuntimeError) as exc:
            code = exc.code.value if isinstance(exc, SchedulerError) else ErrorCode.PREPARATION_FAILED.value
            logger.error("Could not request preparation for {}/{}: {} ({})", user_id, tube_id.value, exc, code)
            return False

"""
In-memory working set of scheduler state per user.

A UserState bundles the three position maps, the stitch catalogue, the
per-stitch progress and the Live Aid tube assignment. The registry holding
them is an ordinary object passed to each engine; persistence happens through
the state stores in ``persistence``.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from .errors import ContentionError, ErrorCode, NotFoundError
from .models import Stitch, StitchProgress, TubeId, TubeStatus
from .position_store import PositionStore
from .skip_progression import INITIAL_SKIP_NUMBER


@dataclass
class UserState:
    """Everything the scheduler knows about one user."""

    user_id: str
    tubes: dict[TubeId, PositionStore]
    stitches: dict[str, Stitch] = field(default_factory=dict)
    progress: dict[str, StitchProgress] = field(default_factory=dict)
    tube_statuses: Mapping[TubeId, TubeStatus] = field(default_factory=lambda: MappingProxyType({}))
    rotation_count: int = 0
    version: int = 0

    @classmethod
    def empty(cls, user_id: str) -> UserState:
        return cls(user_id=user_id, tubes={tube: PositionStore(tube) for tube in TubeId})

    def tube(self, tube_id: TubeId) -> PositionStore:
        try:
            return self.tubes[tube_id]
        except KeyError:
            raise NotFoundError(
                ErrorCode.TUBE_NOT_FOUND,
                f"User {self.user_id} has no {tube_id}",
                tube_id=str(tube_id),
            ) from None

    def stitch(self, stitch_id: str) -> Stitch:
        try:
            return self.stitches[stitch_id]
        except KeyError:
            raise NotFoundError(
                ErrorCode.STITCH_NOT_FOUND,
                f"Stitch '{stitch_id}' not found for user {self.user_id}",
                stitch_id=stitch_id,
            ) from None

    def find_tube(self, stitch_id: str) -> TubeId:
        """Tube currently holding the stitch."""
        for tube_id, store in self.tubes.items():
            if stitch_id in store:
                return tube_id
        raise NotFoundError(
            ErrorCode.STITCH_NOT_FOUND,
            f"Stitch '{stitch_id}' is not positioned in any tube for user {self.user_id}",
            stitch_id=stitch_id,
        )

    def progress_for(self, stitch_id: str) -> StitchProgress:
        """Progress record, created with defaults on first encounter."""
        progress = self.progress.get(stitch_id)
        if progress is None:
            progress = StitchProgress(user_id=self.user_id, stitch_id=stitch_id, skip_number=INITIAL_SKIP_NUMBER)
            self.progress[stitch_id] = progress
        return progress

    def add_stitch(self, stitch: Stitch, position: int | None = None) -> int:
        """Register a stitch and position it in its tube."""
        if stitch.id in self.stitches:
            raise ContentionError(
                ErrorCode.POSITION_OCCUPIED,
                f"Stitch '{stitch.id}' already registered for user {self.user_id}",
                stitch_id=stitch.id,
            )
        store = self.tube(stitch.tube_id)
        if position is None:
            position = store.append(stitch.id)
        else:
            store.place(stitch.id, position)
        self.stitches[stitch.id] = stitch
        return position


class UserStateRegistry:
    """Holds live UserState objects keyed by user id."""

    def __init__(self) -> None:
        self._users: dict[str, UserState] = {}
        self._guard = threading.Lock()

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._users

    def get(self, user_id: str) -> UserState:
        try:
            return self._users[user_id]
        except KeyError:
            raise NotFoundError(
                ErrorCode.USER_NOT_FOUND,
                f"User {user_id} has not been initialized",
                user_id=user_id,
            ) from None

    def create(self, user_id: str) -> UserState:
        return self.register(UserState.empty(user_id))

    def register(self, state: UserState) -> UserState:
        """Add a fully built state; POSITION_OCCUPIED if the user is already present."""
        with self._guard:
            if state.user_id in self._users:
                raise ContentionError(
                    ErrorCode.POSITION_OCCUPIED,
                    f"User {state.user_id} is already initialized",
                    user_id=state.user_id,
                )
            self._users[state.user_id] = state
            return state

    def put(self, state: UserState) -> None:
        with self._guard:
            self._users[state.user_id] = state

    def discard(self, user_id: str) -> None:
        with self._guard:
            self._users.pop(user_id, None)

    def user_ids(self) -> list[str]:
        return sorted(self._users)

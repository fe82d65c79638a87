"""
Persistence boundary for scheduler state.

A UserSnapshot is the durable form of a UserState: position maps with their
stitches, per-stitch progress, the tube assignment and the rotation counter.
Every save names the version it was based on; a mismatch raises
VERSION_CONFLICT and nothing is written.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Protocol

from loguru import logger
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from src.db.models import StitchProgressRow, TubePositionRow, TubeStateRow, UserStateVersion

from .errors import ContentionError, ErrorCode, NotFoundError
from .models import Stitch, StitchProgress, TubeId, TubeStatus
from .position_store import PositionStore
from .state import UserState


@dataclass
class UserSnapshot:
    user_id: str
    version: int = 0
    rotation_count: int = 0
    tube_statuses: dict[TubeId, TubeStatus] = field(default_factory=dict)
    positions: dict[TubeId, dict[int, Stitch]] = field(default_factory=dict)
    progress: dict[str, StitchProgress] = field(default_factory=dict)

    @classmethod
    def from_state(cls, state: UserState) -> UserSnapshot:
        positions = {
            tube_id: {position: state.stitch(stitch_id) for position, stitch_id in store.ordered()}
            for tube_id, store in state.tubes.items()
        }
        return cls(
            user_id=state.user_id,
            version=state.version,
            rotation_count=state.rotation_count,
            tube_statuses=dict(state.tube_statuses),
            positions=positions,
            progress={stitch_id: p.copy() for stitch_id, p in state.progress.items()},
        )

    def to_state(self) -> UserState:
        tubes = {tube_id: PositionStore(tube_id) for tube_id in TubeId}
        stitches: dict[str, Stitch] = {}
        for tube_id, placements in self.positions.items():
            tubes[tube_id] = PositionStore(tube_id, {pos: s.id for pos, s in placements.items()})
            for stitch in placements.values():
                stitches[stitch.id] = stitch
        return UserState(
            user_id=self.user_id,
            tubes=tubes,
            stitches=stitches,
            progress={stitch_id: p.copy() for stitch_id, p in self.progress.items()},
            tube_statuses=MappingProxyType(dict(self.tube_statuses)),
            rotation_count=self.rotation_count,
            version=self.version,
        )


def _version_conflict(user_id: str, expected: int, actual: int | None) -> ContentionError:
    return ContentionError(
        ErrorCode.VERSION_CONFLICT,
        f"State for {user_id} is at version {actual}, not {expected}",
        user_id=user_id,
        expected_version=expected,
        actual_version=actual,
    )


def _user_not_found(user_id: str) -> NotFoundError:
    return NotFoundError(ErrorCode.USER_NOT_FOUND, f"No stored state for user {user_id}", user_id=user_id)


class StateStore(Protocol):
    def exists(self, user_id: str) -> bool:
        ...

    def load_user(self, user_id: str) -> UserSnapshot:
        ...

    def save_user(self, snapshot: UserSnapshot, expected_version: int) -> int:
        ...


# =============================================================================
# In-memory store
# =============================================================================


class InMemoryStateStore:
    """Dict-backed store with the same version semantics as the SQL store."""

    def __init__(self) -> None:
        self._snapshots: dict[str, UserSnapshot] = {}
        self._lock = threading.Lock()

    def exists(self, user_id: str) -> bool:
        return user_id in self._snapshots

    def load_user(self, user_id: str) -> UserSnapshot:
        with self._lock:
            snapshot = self._snapshots.get(user_id)
            if snapshot is None:
                raise _user_not_found(user_id)
            # Round-trip through state to hand out an independent copy
            return UserSnapshot.from_state(snapshot.to_state())

    def save_user(self, snapshot: UserSnapshot, expected_version: int) -> int:
        with self._lock:
            current = self._snapshots.get(snapshot.user_id)
            actual = current.version if current else 0
            if actual != expected_version:
                raise _version_conflict(snapshot.user_id, expected_version, actual)

            stored = UserSnapshot.from_state(snapshot.to_state())
            stored.version = expected_version + 1
            self._snapshots[snapshot.user_id] = stored
            return stored.version


# =============================================================================
# SQL store
# =============================================================================


class SqlStateStore:
    """SQLAlchemy-backed store."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def exists(self, user_id: str) -> bool:
        with self.session_factory() as session:
            return session.get(UserStateVersion, user_id) is not None

    def load_user(self, user_id: str) -> UserSnapshot:
        with self.session_factory() as session:
            header = session.get(UserStateVersion, user_id)
            if header is None:
                raise _user_not_found(user_id)

            snapshot = UserSnapshot(
                user_id=user_id,
                version=header.version,
                rotation_count=header.rotation_count,
            )

            for row in session.scalars(select(TubeStateRow).where(TubeStateRow.user_id == user_id)):
                snapshot.tube_statuses[TubeId(row.tube_id)] = TubeStatus(row.status)

            position_rows = session.scalars(
                select(TubePositionRow)
                .where(TubePositionRow.user_id == user_id)
                .order_by(TubePositionRow.tube_id, TubePositionRow.logical_position)
            )
            for row in position_rows:
                tube_id = TubeId(row.tube_id)
                snapshot.positions.setdefault(tube_id, {})[row.logical_position] = Stitch(
                    id=row.stitch_id,
                    tube_id=tube_id,
                    concept_code=row.concept_code,
                    creation_order=row.creation_order,
                    concept_name=row.concept_name,
                )

            for row in session.scalars(select(StitchProgressRow).where(StitchProgressRow.user_id == user_id)):
                snapshot.progress[row.stitch_id] = StitchProgress(
                    user_id=user_id,
                    stitch_id=row.stitch_id,
                    skip_number=row.skip_number,
                    boundary_level=row.boundary_level,
                    completions=row.completions,
                    consecutive_perfect=row.consecutive_perfect,
                    last_completed_at=row.last_completed_at,
                )

        logger.debug("Loaded {} at version {}", user_id, snapshot.version)
        return snapshot

    def save_user(self, snapshot: UserSnapshot, expected_version: int) -> int:
        """
        Write a snapshot if the stored version still equals ``expected_version``.

        Returns:
            The new stored version

        Raises:
            ContentionError: VERSION_CONFLICT
        """
        user_id = snapshot.user_id
        new_version = expected_version + 1

        with self.session_factory() as session:
            try:
                if expected_version == 0:
                    session.add(
                        UserStateVersion(
                            user_id=user_id,
                            version=new_version,
                            rotation_count=snapshot.rotation_count,
                        )
                    )
                    session.flush()
                else:
                    result = session.execute(
                        update(UserStateVersion)
                        .where(
                            UserStateVersion.user_id == user_id,
                            UserStateVersion.version == expected_version,
                        )
                        .values(version=new_version, rotation_count=snapshot.rotation_count)
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        header = session.get(UserStateVersion, user_id)
                        raise _version_conflict(user_id, expected_version, header.version if header else None)

                for model in (TubeStateRow, TubePositionRow, StitchProgressRow):
                    session.execute(delete(model).where(model.user_id == user_id))

                session.add_all(
                    TubeStateRow(user_id=user_id, tube_id=tube_id.value, status=status.value)
                    for tube_id, status in snapshot.tube_statuses.items()
                )
                session.add_all(
                    TubePositionRow(
                        user_id=user_id,
                        tube_id=tube_id.value,
                        logical_position=position,
                        stitch_id=stitch.id,
                        concept_code=stitch.concept_code,
                        concept_name=stitch.concept_name,
                        creation_order=stitch.creation_order,
                    )
                    for tube_id, placements in snapshot.positions.items()
                    for position, stitch in placements.items()
                )
                session.add_all(
                    StitchProgressRow(
                        user_id=user_id,
                        stitch_id=p.stitch_id,
                        skip_number=p.skip_number,
                        boundary_level=p.boundary_level,
                        completions=p.completions,
                        consecutive_perfect=p.consecutive_perfect,
                        last_completed_at=p.last_completed_at,
                    )
                    for p in snapshot.progress.values()
                )
                session.commit()
            except IntegrityError:
                session.rollback()
                raise _version_conflict(user_id, expected_version, None) from None

        logger.debug("Saved {} at version {}", user_id, new_version)
        return new_version

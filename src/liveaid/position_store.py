"""
Sparse logical-position map for one tube.

Positions exist independently of the stitches assigned to them: the map is a
sparse ``position -> stitch_id`` dictionary where gaps are allowed and only
ordering matters. The lowest occupied position holds the tube's active stitch.

Writers replace the whole mapping in one assignment, so readers holding a
snapshot never observe a half-applied shift.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from types import MappingProxyType

from loguru import logger

from .errors import ContentionError, ErrorCode, InvalidInputError, NotFoundError
from .models import TubeId


class PositionStore:
    """Per user x tube mapping from logical position to stitch id."""

    def __init__(
        self,
        tube_id: TubeId,
        mapping: Mapping[int, str] | None = None,
        version: int = 0,
    ):
        self.tube_id = tube_id
        self._positions: dict[int, str] = {}
        self._index: dict[str, int] = {}
        self.version = version

        if mapping:
            self._load(mapping)

    def _load(self, mapping: Mapping[int, str]) -> None:
        positions, index = self._validated(mapping)
        self._positions = positions
        self._index = index

    def _validated(self, mapping: Mapping[int, str]) -> tuple[dict[int, str], dict[str, int]]:
        positions: dict[int, str] = {}
        index: dict[str, int] = {}
        for position, stitch_id in sorted(mapping.items()):
            position = int(position)
            if position < 1:
                raise InvalidInputError(
                    ErrorCode.INVALID_POSITION_RANGE,
                    f"Position {position} is below 1 in {self.tube_id.value}",
                    position=position,
                )
            if stitch_id in index:
                raise ContentionError(
                    ErrorCode.POSITION_OCCUPIED,
                    f"Stitch '{stitch_id}' would occupy both {index[stitch_id]} and {position}",
                    stitch_id=stitch_id,
                )
            positions[position] = stitch_id
            index[stitch_id] = position
        return positions, index

    # =========================================================================
    # Reads
    # =========================================================================

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, stitch_id: object) -> bool:
        return stitch_id in self._index

    def position_of(self, stitch_id: str) -> int:
        try:
            return self._index[stitch_id]
        except KeyError:
            raise NotFoundError(
                ErrorCode.STITCH_NOT_FOUND,
                f"Stitch '{stitch_id}' not found in {self.tube_id.value}",
                stitch_id=stitch_id,
                tube_id=self.tube_id.value,
            ) from None

    def stitch_at(self, position: int) -> str:
        try:
            return self._positions[position]
        except KeyError:
            raise NotFoundError(
                ErrorCode.POSITION_NOT_FOUND,
                f"No stitch at position {position} in {self.tube_id.value}",
                position=position,
                tube_id=self.tube_id.value,
            ) from None

    def active_stitch(self) -> str | None:
        """Stitch at the lowest occupied position, or None for an empty tube."""
        if not self._positions:
            return None
        return self._positions[min(self._positions)]

    def ordered(self) -> list[tuple[int, str]]:
        return sorted(self._positions.items())

    def stitch_ids(self) -> list[str]:
        return [stitch_id for _, stitch_id in self.ordered()]

    def snapshot(self) -> Mapping[int, str]:
        """Read-only view of the current mapping version."""
        return MappingProxyType(dict(self._positions))

    def max_position(self) -> int:
        return max(self._positions, default=0)

    def gaps(self) -> list[int]:
        """Unoccupied positions between 1 and the highest occupied one."""
        occupied = self._positions
        return [p for p in range(1, self.max_position() + 1) if p not in occupied]

    def next_available_position(self) -> int:
        """First gap, else one past the end."""
        gaps = self.gaps()
        if gaps:
            return gaps[0]
        return self.max_position() + 1

    # =========================================================================
    # Writes
    # =========================================================================

    def place(self, stitch_id: str, position: int) -> None:
        """Assign a stitch to an empty position."""
        if position < 1:
            raise InvalidInputError(
                ErrorCode.INVALID_POSITION_RANGE,
                f"Position {position} is below 1 in {self.tube_id.value}",
                position=position,
            )
        if position in self._positions:
            raise ContentionError(
                ErrorCode.POSITION_OCCUPIED,
                f"Position {position} in {self.tube_id.value} is already occupied "
                f"by '{self._positions[position]}'",
                position=position,
            )
        if stitch_id in self._index:
            raise ContentionError(
                ErrorCode.POSITION_OCCUPIED,
                f"Stitch '{stitch_id}' already sits at position {self._index[stitch_id]}",
                stitch_id=stitch_id,
            )

        mapping = dict(self._positions)
        mapping[position] = stitch_id
        self.replace(mapping)

    def append(self, stitch_id: str) -> int:
        position = self.next_available_position()
        self.place(stitch_id, position)
        return position

    def remove(self, stitch_id: str) -> int:
        position = self.position_of(stitch_id)
        mapping = dict(self._positions)
        del mapping[position]
        self.replace(mapping)
        return position

    def replace(self, mapping: Mapping[int, str], expected_version: int | None = None) -> int:
        """
        Swap in a complete new mapping.

        Args:
            mapping: The full position map to install
            expected_version: If given, the swap only happens when the store
                is still at this version

        Returns:
            The new version number
        """
        if expected_version is not None and expected_version != self.version:
            raise ContentionError(
                ErrorCode.VERSION_CONFLICT,
                f"{self.tube_id.value} changed (expected v{expected_version}, found v{self.version})",
                expected_version=expected_version,
                actual_version=self.version,
            )
        positions, index = self._validated(mapping)
        self._positions = positions
        self._index = index
        self.version += 1
        logger.debug("{} position map now v{} ({} stitches)", self.tube_id.value, self.version, len(positions))
        return self.version

    @classmethod
    def from_pairs(cls, tube_id: TubeId, pairs: Iterable[tuple[int, str]], version: int = 0) -> PositionStore:
        return cls(tube_id, dict(pairs), version=version)

    def __repr__(self) -> str:
        return f"<PositionStore {self.tube_id.value} v{self.version} stitches={len(self)}>"

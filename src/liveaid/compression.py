"""
Position compression.

Repositioning leaves gaps behind (a stitch filed at 1000 in a tube of 30
stitches). Compression renumbers the occupied positions 1..n in their
existing order; it never touches progress, skip numbers or boundary levels.
"""

from __future__ import annotations

from collections.abc import Mapping

from loguru import logger

from .errors import ContentionError, ErrorCode
from .locks import TubeLocks
from .models import CompressionResult, TubeId
from .position_store import PositionStore
from .state import UserStateRegistry


def compressed_mapping(mapping: Mapping[int, str]) -> dict[int, str]:
    return {index: stitch_id for index, (_, stitch_id) in enumerate(sorted(mapping.items()), start=1)}


def preserves_order(before: Mapping[int, str], after: Mapping[int, str]) -> bool:
    """True when both maps list the same stitches in the same order."""
    old_order = [stitch_id for _, stitch_id in sorted(before.items())]
    new_order = [stitch_id for _, stitch_id in sorted(after.items())]
    return old_order == new_order


class PositionCompressor:
    """Removes gaps from a tube's position map."""

    def __init__(self, registry: UserStateRegistry, locks: TubeLocks, gap_threshold: int = 10):
        self.registry = registry
        self.locks = locks
        self.gap_threshold = gap_threshold

    def should_compress(self, store: PositionStore) -> bool:
        """Opportunistic trigger: too many gaps in the occupied span."""
        return len(store.gaps()) > self.gap_threshold

    def compress_tube_positions(
        self,
        user_id: str,
        tube_id: TubeId,
        dry_run: bool = False,
        expected_version: int | None = None,
    ) -> CompressionResult:
        """
        Compress one tube's positions to 1..n.

        Args:
            user_id: Owner of the tube
            tube_id: Tube to compress
            dry_run: Compute the result without mutating the store
            expected_version: Position map version the caller last read

        Raises:
            ContentionError: COMPRESSION_WOULD_BREAK_ORDERING when the map moved
                under the caller or the result would reorder stitches
        """
        store = self.registry.get(user_id).tube(tube_id)

        with self.locks.hold(user_id, tube_id, ErrorCode.COMPRESSION_WOULD_BREAK_ORDERING):
            if expected_version is not None and expected_version != store.version:
                raise ContentionError(
                    ErrorCode.COMPRESSION_WOULD_BREAK_ORDERING,
                    f"{tube_id.value} moved from v{expected_version} to v{store.version}; refetch and retry",
                    expected_version=expected_version,
                    actual_version=store.version,
                )

            before = store.snapshot()
            after = compressed_mapping(before)
            if not preserves_order(before, after):
                raise ContentionError(
                    ErrorCode.COMPRESSION_WOULD_BREAK_ORDERING,
                    f"Compressing {tube_id.value} would reorder stitches",
                )

            original_span = max(before, default=0)
            gaps_removed = original_span - len(before)

            if not dry_run and gaps_removed > 0:
                store.replace(after, expected_version=store.version)

        ratio = (len(after) / original_span) if original_span else 1.0
        result = CompressionResult(
            tube_id=tube_id,
            original_count=original_span,
            compressed_count=len(after),
            gaps_removed=gaps_removed,
            ratio=round(ratio, 4),
            dry_run=dry_run,
            mapping=after,
        )

        if gaps_removed:
            logger.info(
                "{}compressed {}/{}: span {} -> {} ({} gaps)",
                "[dry run] " if dry_run else "",
                user_id,
                tube_id.value,
                original_span,
                len(after),
                gaps_removed,
            )
        return result

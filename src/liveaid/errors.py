"""
Scheduler error taxonomy.

Every failure carries an ErrorCode so callers can branch on the code without
parsing messages. Classes group codes by how a caller should react:

- NotFoundError: stale reference or caller error, never retried
- InvalidInputError: input rejected entirely, nothing was mutated
- ContentionError: safe to retry after re-reading state
- RetiredStitchError: informational, skip number ceiling reached
- RotationError: tube states were inconsistent, surfaced as-is
  (ConcurrentRotationError: another rotation held the user, states intact)
- CacheError: ready content absent, expired or still being prepared
- PreparationError: recorded on the preparation process
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable error codes shared by every scheduler component."""

    # Not found
    STITCH_NOT_FOUND = "STITCH_NOT_FOUND"
    TUBE_NOT_FOUND = "TUBE_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    POSITION_NOT_FOUND = "POSITION_NOT_FOUND"
    PROCESS_NOT_FOUND = "PROCESS_NOT_FOUND"

    # Validation
    INVALID_SKIP_NUMBER = "INVALID_SKIP_NUMBER"
    INVALID_PERFORMANCE_DATA = "INVALID_PERFORMANCE_DATA"
    INVALID_POSITION_RANGE = "INVALID_POSITION_RANGE"

    # Contention
    REPOSITIONING_FAILED = "REPOSITIONING_FAILED"
    COMPRESSION_WOULD_BREAK_ORDERING = "COMPRESSION_WOULD_BREAK_ORDERING"
    POSITION_OCCUPIED = "POSITION_OCCUPIED"
    VERSION_CONFLICT = "VERSION_CONFLICT"
    WARMING_IN_PROGRESS = "WARMING_IN_PROGRESS"

    # Domain boundary
    STITCH_ALREADY_RETIRED = "STITCH_ALREADY_RETIRED"

    # Rotation
    ROTATION_FAILED = "ROTATION_FAILED"

    # Cache
    CACHE_MISS = "CACHE_MISS"
    CACHE_EXPIRED = "CACHE_EXPIRED"
    STITCH_NOT_READY = "STITCH_NOT_READY"

    # Preparation
    PREPARATION_FAILED = "PREPARATION_FAILED"
    INSUFFICIENT_FACTS = "INSUFFICIENT_FACTS"
    PREPARATION_TIMEOUT = "PREPARATION_TIMEOUT"


class SchedulerError(Exception):
    """Base class for all scheduler errors."""

    retryable: bool = False

    def __init__(self, code: ErrorCode, message: str, **details: Any):
        super().__init__(f"{code.value}: {message}")
        self.code = code
        self.message = message
        self.details = details


class NotFoundError(SchedulerError):
    """A referenced user, tube, stitch, position or process does not exist."""


class InvalidInputError(SchedulerError):
    """Input failed validation; the operation had no effect."""


class ContentionError(SchedulerError):
    """Concurrent change detected; re-read state and retry."""

    retryable = True


class RetiredStitchError(SchedulerError):
    """The stitch already sits at the top of the skip sequence."""

    def __init__(self, stitch_id: str):
        super().__init__(
            ErrorCode.STITCH_ALREADY_RETIRED,
            f"Stitch '{stitch_id}' is retired and cannot advance further",
            stitch_id=stitch_id,
        )


class RotationError(SchedulerError):
    """Tube states violated the live/ready/preparing bijection."""

    def __init__(self, message: str, **details: Any):
        super().__init__(ErrorCode.ROTATION_FAILED, message, **details)


class ConcurrentRotationError(RotationError):
    """Another rotation for the same user is still in flight; tube states are intact."""

    retryable = True


class CacheError(SchedulerError):
    """No usable ready content for a (user, tube)."""


class PreparationError(SchedulerError):
    """Background content assembly failed, timed out or was rejected."""


class InsufficientFactsError(PreparationError):
    """The fact pool cannot support the requested question count."""

    def __init__(self, concept_code: str, available: int, required: int):
        super().__init__(
            ErrorCode.INSUFFICIENT_FACTS,
            f"Only {available} facts available for concept {concept_code} (need {required})",
            concept_code=concept_code,
            available=available,
            required=required,
        )

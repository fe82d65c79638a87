"""
Ready-content cache.

Holds at most one fully assembled ReadyContent per (user, tube). Entries are
stored and invalidated whole; an invalidated or aged-out entry stays around
as stale content so the service can serve it in degraded mode.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from loguru import logger

from .errors import CacheError, ErrorCode
from .models import ReadyContent, TubeId, utcnow


@dataclass
class CacheEntry:
    content: ReadyContent
    cached_at: datetime
    valid_until: datetime
    invalidated: bool = False

    def is_expired(self, now: datetime) -> bool:
        return self.invalidated or now >= self.valid_until


@dataclass(frozen=True)
class Availability:
    is_ready: bool
    preparation_in_flight: bool
    stitch_id: str | None = None


@dataclass(frozen=True)
class InvalidationResult:
    user_id: str
    invalidated_tubes: tuple[TubeId, ...]
    reason: str
    timestamp: datetime


@dataclass
class CacheMetrics:
    hits: int = 0
    misses: int = 0
    invalidations: int = 0
    stale_served: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


@dataclass
class _UserCache:
    entries: dict[TubeId, CacheEntry] = field(default_factory=dict)
    preparing: dict[TubeId, str] = field(default_factory=dict)


class ContentReadyCache:
    """Thread-safe whole-entry cache of ready content."""

    def __init__(self, max_age_seconds: float = 86400, clock: Callable[[], datetime] = utcnow):
        self.max_age = timedelta(seconds=max_age_seconds)
        self.clock = clock
        self.metrics = CacheMetrics()
        self._users: dict[str, _UserCache] = {}
        self._lock = threading.RLock()

    def _user(self, user_id: str) -> _UserCache:
        cache = self._users.get(user_id)
        if cache is None:
            cache = _UserCache()
            self._users[user_id] = cache
        return cache

    # =========================================================================
    # Writes
    # =========================================================================

    def store(self, user_id: str, tube_id: TubeId, content: ReadyContent) -> CacheEntry:
        """Replace the tube's entry with freshly assembled content."""
        now = self.clock()
        entry = CacheEntry(content=content, cached_at=now, valid_until=now + self.max_age)
        with self._lock:
            cache = self._user(user_id)
            cache.entries[tube_id] = entry
            cache.preparing.pop(tube_id, None)
        logger.debug(
            "Cached {} questions for {}/{} ({})",
            content.question_count,
            user_id,
            tube_id.value,
            content.stitch_id,
        )
        return entry

    def mark_preparing(self, user_id: str, tube_id: TubeId, stitch_id: str) -> None:
        with self._lock:
            self._user(user_id).preparing[tube_id] = stitch_id

    def clear_preparing(self, user_id: str, tube_id: TubeId) -> None:
        with self._lock:
            cache = self._users.get(user_id)
            if cache is not None:
                cache.preparing.pop(tube_id, None)

    def clear_user(self, user_id: str) -> None:
        with self._lock:
            self._users.pop(user_id, None)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_ready_stitch(self, user_id: str, tube_id: TubeId) -> ReadyContent:
        """
        Return the tube's ready content.

        Raises:
            CacheError: STITCH_NOT_READY while a preparation is in flight,
                CACHE_EXPIRED for an aged or invalidated entry, CACHE_MISS
                when nothing was ever cached
        """
        with self._lock:
            cache = self._users.get(user_id)
            entry = cache.entries.get(tube_id) if cache else None
            preparing = cache.preparing.get(tube_id) if cache else None

            if entry is None:
                self.metrics.misses += 1
                if preparing is not None:
                    raise CacheError(
                        ErrorCode.STITCH_NOT_READY,
                        f"{tube_id.value} is still preparing '{preparing}'",
                        user_id=user_id,
                        tube_id=tube_id.value,
                        stitch_id=preparing,
                    )
                raise CacheError(
                    ErrorCode.CACHE_MISS,
                    f"No ready content for {user_id}/{tube_id.value}",
                    user_id=user_id,
                    tube_id=tube_id.value,
                )

            if entry.is_expired(self.clock()):
                self.metrics.misses += 1
                raise CacheError(
                    ErrorCode.CACHE_EXPIRED,
                    f"Ready content for {user_id}/{tube_id.value} has expired",
                    user_id=user_id,
                    tube_id=tube_id.value,
                    stitch_id=entry.content.stitch_id,
                )

            self.metrics.hits += 1
            return entry.content

    def get_best_available(self, user_id: str, tube_id: TubeId) -> ReadyContent | None:
        """Whatever content the tube holds, expired or not."""
        with self._lock:
            cache = self._users.get(user_id)
            entry = cache.entries.get(tube_id) if cache else None
            if entry is None:
                return None
            if entry.is_expired(self.clock()):
                self.metrics.stale_served += 1
            return entry.content

    def check_availability(self, user_id: str, tube_id: TubeId) -> Availability:
        with self._lock:
            cache = self._users.get(user_id)
            if cache is None:
                return Availability(is_ready=False, preparation_in_flight=False)
            entry = cache.entries.get(tube_id)
            preparing = cache.preparing.get(tube_id)
            ready = entry is not None and not entry.is_expired(self.clock())
            return Availability(
                is_ready=ready,
                preparation_in_flight=preparing is not None,
                stitch_id=entry.content.stitch_id if ready else preparing,
            )

    # =========================================================================
    # Invalidation
    # =========================================================================

    def invalidate_cache(
        self,
        user_id: str,
        tube_id: TubeId | None = None,
        *,
        boundary_level_changed: bool | str | None = None,
        max_age: float | None = None,
        force_refresh: bool = False,
    ) -> InvalidationResult:
        """
        Invalidate entries for a user.

        Args:
            user_id: Owner of the entries
            tube_id: Restrict to one tube (default: all tubes)
            boundary_level_changed: A stitch id invalidates entries built for
                that stitch; ``True`` invalidates every entry in scope
            max_age: Invalidate entries cached more than this many seconds ago
            force_refresh: Invalidate every entry in scope

        Returns:
            InvalidationResult listing the tubes whose entry was invalidated
        """
        now = self.clock()
        invalidated: list[TubeId] = []
        reasons: list[str] = []

        with self._lock:
            cache = self._users.get(user_id)
            entries = cache.entries if cache else {}
            in_scope = [t for t in entries if tube_id is None or t == tube_id]

            for tube in in_scope:
                entry = entries[tube]
                if entry.invalidated:
                    continue

                reason = None
                if force_refresh:
                    reason = "force refresh"
                elif boundary_level_changed is True or (
                    isinstance(boundary_level_changed, str) and entry.content.stitch_id == boundary_level_changed
                ):
                    reason = "boundary level changed"
                elif max_age is not None and now - entry.cached_at > timedelta(seconds=max_age):
                    reason = "max age exceeded"

                if reason is not None:
                    entry.invalidated = True
                    invalidated.append(tube)
                    if reason not in reasons:
                        reasons.append(reason)

            self.metrics.invalidations += len(invalidated)

        if invalidated:
            logger.debug(
                "Invalidated {} for {}: {}",
                ", ".join(t.value for t in invalidated),
                user_id,
                "; ".join(reasons),
            )
        return InvalidationResult(
            user_id=user_id,
            invalidated_tubes=tuple(invalidated),
            reason="; ".join(reasons) or "nothing to invalidate",
            timestamp=now,
        )

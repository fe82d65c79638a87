"""
Per-tube writer locks.

Repositioning and compression on one (user, tube) must never overlap. Each
pair gets its own lock; different tubes and different users never contend.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from loguru import logger

from .errors import ContentionError, ErrorCode
from .models import TubeId


class TubeLocks:
    """Lazily created writer locks keyed by (user_id, tube_id)."""

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds
        self._locks: dict[tuple[str, TubeId], threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, user_id: str, tube_id: TubeId) -> threading.Lock:
        key = (user_id, tube_id)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(
        self,
        user_id: str,
        tube_id: TubeId,
        code: ErrorCode = ErrorCode.REPOSITIONING_FAILED,
        timeout: float | None = None,
    ) -> Iterator[None]:
        """
        Hold the writer lock for one tube.

        Raises:
            ContentionError: with ``code`` if the lock is not acquired in time
        """
        lock = self._lock_for(user_id, tube_id)
        wait = self.timeout_seconds if timeout is None else timeout
        if not lock.acquire(timeout=wait):
            logger.warning("Writer lock busy for {}/{} after {:.2f}s", user_id, tube_id.value, wait)
            raise ContentionError(
                code,
                f"Another write is in flight on {tube_id.value} for user {user_id}",
                user_id=user_id,
                tube_id=tube_id.value,
            )
        try:
            yield
        finally:
            lock.release()

    def is_locked(self, user_id: str, tube_id: TubeId) -> bool:
        return self._lock_for(user_id, tube_id).locked()

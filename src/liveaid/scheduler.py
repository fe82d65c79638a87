"""
Scheduler service.

Single entry point tying the engines together. Every collaborator is built
from an explicit SchedulerConfig or passed in; nothing is looked up from a
global registry.

Session completion flow:
    1. Find the tube holding the stitch
    2. Reposition the stitch (skip progression + position shift)
    3. Compress the tube if it has accumulated too many gaps
    4. Invalidate ready content built at the old boundary level
    5. Rotate the Live Aid tubes if the stitch was on the LIVE tube
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from loguru import logger

from config import Settings, get_settings

from .cache import ContentReadyCache
from .compression import PositionCompressor
from .content import FactPoolQuestionGenerator, QuestionGenerator
from .curriculum import build_seed, default_fact_pool
from .errors import CacheError, ConcurrentRotationError, ContentionError, ErrorCode, PreparationError
from .locks import TubeLocks
from .models import (
    CompressionResult,
    LiveAidRotationResult,
    PreparationStatus,
    ReadyContent,
    SessionCompletion,
    SessionOutcome,
    Stitch,
    TubeId,
    TubeStatus,
    utcnow,
)
from .persistence import SqlStateStore, StateStore, UserSnapshot
from .preparation import ContentPreparationCoordinator
from .repositioning import RepositioningEngine
from .rotation import MANUAL, SESSION_COMPLETE, TubeRotationController
from .state import UserState, UserStateRegistry

HEALTH_OPTIMAL = "optimal"
HEALTH_DEGRADED = "degraded"
HEALTH_CRITICAL = "critical"


@dataclass(frozen=True)
class SchedulerConfig:
    """Tunables the engines take by injection."""

    session_size: int = 20
    lock_timeout_seconds: float = 5.0
    compression_gap_threshold: int = 10
    cache_max_age_seconds: float = 86400
    preparation_timeout_seconds: float = 10.0
    emergency_timeout_seconds: float = 3.0
    process_retention_seconds: float = 300.0
    min_facts_per_stitch: int = 20

    @classmethod
    def from_settings(cls, settings: Settings) -> SchedulerConfig:
        return cls(
            session_size=settings.canonical_session_size,
            lock_timeout_seconds=settings.lock_timeout_seconds,
            compression_gap_threshold=settings.compression_gap_threshold,
            cache_max_age_seconds=settings.cache_max_age_seconds,
            preparation_timeout_seconds=settings.preparation_timeout_seconds,
            emergency_timeout_seconds=settings.emergency_timeout_seconds,
            process_retention_seconds=settings.process_retention_seconds,
            min_facts_per_stitch=settings.min_facts_per_stitch,
        )


class SchedulerService:
    """Boundary façade over repositioning, compression, rotation and preparation."""

    def __init__(
        self,
        generator: QuestionGenerator,
        store: StateStore | None = None,
        config: SchedulerConfig | None = None,
        registry: UserStateRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or SchedulerConfig()
        self.store = store
        self.registry = registry or UserStateRegistry()
        self.locks = TubeLocks(self.config.lock_timeout_seconds)
        self.cache = ContentReadyCache(self.config.cache_max_age_seconds, clock=clock)
        self.coordinator = ContentPreparationCoordinator(
            generator,
            self.cache,
            session_size=self.config.session_size,
            timeout_seconds=self.config.preparation_timeout_seconds,
            emergency_timeout_seconds=self.config.emergency_timeout_seconds,
            retention_seconds=self.config.process_retention_seconds,
            clock=clock,
        )
        self.repositioning = RepositioningEngine(self.registry, self.locks)
        self.compressor = PositionCompressor(self.registry, self.locks, self.config.compression_gap_threshold)
        self.rotation = TubeRotationController(self.registry, self._request_preparation, clock=clock)

    # =========================================================================
    # Users
    # =========================================================================

    async def initialize_user(
        self,
        user_id: str,
        seed: dict[TubeId, list[tuple[int, Stitch]]] | None = None,
    ) -> UserState:
        """
        Seed three tubes and start the Live Aid rotation for a new user.

        Raises:
            ContentionError: POSITION_OCCUPIED if the user already exists
            InvalidInputError: INVALID_POSITION_RANGE for a seed position below 1;
                the user is not registered
        """
        if self.store is not None and self.store.exists(user_id):
            raise ContentionError(
                ErrorCode.POSITION_OCCUPIED,
                f"User {user_id} already has stored state",
                user_id=user_id,
            )

        if user_id in self.registry:
            raise ContentionError(
                ErrorCode.POSITION_OCCUPIED,
                f"User {user_id} is already initialized",
                user_id=user_id,
            )

        # Built off-registry: a bad seed leaves no trace of the user
        state = UserState.empty(user_id)
        seed = seed if seed is not None else build_seed()
        for placements in seed.values():
            for position, stitch in placements:
                state.add_stitch(stitch, position)
                state.progress_for(stitch.id)

        self.registry.register(state)
        self.rotation.initialize_user(user_id)
        self._request_preparation(user_id, self.rotation.live_tube(user_id), priority="high")
        self._request_preparation(user_id, self.rotation.ready_tube(user_id))

        logger.info(
            "Initialized {} with {} stitches across {} tubes",
            user_id,
            len(state.stitches),
            len(state.tubes),
        )
        return state

    def ensure_loaded(self, user_id: str) -> UserState:
        """Registry state for the user, loading it from the store if needed."""
        if user_id in self.registry:
            return self.registry.get(user_id)
        return self.load_user(user_id)

    def save_user(self, user_id: str) -> int:
        """Persist the user's state; returns the new version."""
        state = self.registry.get(user_id)
        new_version = self._require_store().save_user(UserSnapshot.from_state(state), expected_version=state.version)
        state.version = new_version
        return new_version

    def load_user(self, user_id: str) -> UserState:
        """Replace the in-memory state with the stored one."""
        state = self._require_store().load_user(user_id).to_state()
        self.registry.put(state)
        self.cache.clear_user(user_id)
        return state

    def _require_store(self) -> StateStore:
        if self.store is None:
            raise RuntimeError("SchedulerService was built without a state store")
        return self.store

    # =========================================================================
    # Session completion
    # =========================================================================

    async def complete_session(self, completion: SessionCompletion) -> SessionOutcome:
        """
        Apply a completed session to the scheduler.

        Args:
            completion: Who completed which stitch and how well

        Returns:
            SessionOutcome with the repositioning, compression and rotation results

        Raises:
            InvalidInputError: INVALID_PERFORMANCE_DATA
            NotFoundError: USER_NOT_FOUND / STITCH_NOT_FOUND
            ContentionError: REPOSITIONING_FAILED
        """
        result = completion.to_result()
        user_id = completion.user_id
        state = self.registry.get(user_id)
        tube_id = state.find_tube(completion.stitch_id)

        reposition = self.repositioning.reposition_stitch(user_id, tube_id, completion.stitch_id, result)

        compression: CompressionResult | None = None
        if self.compressor.should_compress(state.tube(tube_id)):
            compression = self.compressor.compress_tube_positions(user_id, tube_id)

        cache_invalidated = False
        if reposition.boundary_level_changed:
            invalidation = self.cache.invalidate_cache(user_id, boundary_level_changed=completion.stitch_id)
            cache_invalidated = bool(invalidation.invalidated_tubes)

        rotation: LiveAidRotationResult | None = None
        if self.rotation.should_rotate(user_id, SESSION_COMPLETE, tube_id):
            try:
                rotation = self.rotation.rotate_tubes(user_id, SESSION_COMPLETE)
            except ConcurrentRotationError as exc:
                # The repositioning above is already committed
                logger.warning("Rotation skipped after {} for {}: {}", completion.stitch_id, user_id, exc.message)
        elif reposition.moved:
            # Off-rotation session: the tube now leads with a different stitch
            invalidation = self.cache.invalidate_cache(user_id, tube_id, force_refresh=True)
            cache_invalidated = cache_invalidated or bool(invalidation.invalidated_tubes)
            self._request_preparation(user_id, tube_id)

        return SessionOutcome(
            reposition=reposition,
            compression=compression,
            rotation=rotation,
            cache_invalidated=cache_invalidated,
        )

    async def trigger_rotation(self, user_id: str, reason: str = MANUAL) -> LiveAidRotationResult:
        return self.rotation.rotate_tubes(user_id, reason)

    # =========================================================================
    # Content
    # =========================================================================

    async def get_next_content(self, user_id: str) -> ReadyContent:
        """
        Ready content for the LIVE tube.

        Falls back to stale content for the same stitch (degraded mode), then
        to a blocking emergency preparation.

        Raises:
            CacheError: the LIVE tube has no stitches
            PreparationError: emergency preparation failed or timed out
        """
        state = self.registry.get(user_id)
        tube_id = self.rotation.live_tube(user_id)

        try:
            return self.cache.get_ready_stitch(user_id, tube_id)
        except CacheError as exc:
            miss = exc

        active = state.tube(tube_id).active_stitch()
        if active is None:
            raise miss

        stale = self.cache.get_best_available(user_id, tube_id)
        if stale is not None and stale.stitch_id == active:
            logger.warning("Serving stale content for {}/{} ({}): {}", user_id, tube_id.value, active, miss.code.value)
            return stale

        logger.warning("No ready content for {}/{} ({}); preparing now", user_id, tube_id.value, miss.code.value)
        stitch = state.stitch(active)
        try:
            return await self.coordinator.emergency_preparation(
                user_id, tube_id, stitch, state.progress_for(active).boundary_level
            )
        except PreparationError as exc:
            raise exc from miss

    def get_user_status(self, user_id: str) -> dict[str, Any]:
        """Tube roles, active stitches and ordered positions for one user."""
        state = self.registry.get(user_id)
        statuses = self.rotation.get_tube_states(user_id)

        tubes = {}
        for tube_id in TubeId:
            store = state.tube(tube_id)
            availability = self.cache.check_availability(user_id, tube_id)
            last = self.coordinator.last_outcome(user_id, tube_id)
            tubes[tube_id.value] = {
                "status": statuses[tube_id].value,
                "active_stitch": store.active_stitch(),
                "positions": store.ordered(),
                "gaps": len(store.gaps()),
                "content_ready": availability.is_ready,
                "preparing": availability.preparation_in_flight,
                "last_preparation": last.status.value if last else None,
            }

        active = [
            {
                "process_id": p.process_id,
                "tube": p.tube_id.value,
                "stitch_id": p.stitch_id,
                "status": p.status.value,
                "progress": p.progress,
                "priority": p.priority,
            }
            for p in self.coordinator.active_preparations(user_id)
        ]

        return {
            "user_id": user_id,
            "version": state.version,
            "rotation_count": state.rotation_count,
            "live_tube": next(t.value for t, s in statuses.items() if s == TubeStatus.LIVE),
            "health": self.system_health(user_id),
            "active_preparations": active,
            "metrics": self.get_performance_metrics(),
            "tubes": tubes,
        }

    def system_health(self, user_id: str) -> str:
        """
        Derived health of a user's Live Aid pipeline.

        critical: the LIVE tube has no usable content, nothing is preparing it,
        and its last preparation failed (or the tube is empty).
        degraded: the LIVE tube has no ready content, or any tube's last
        preparation failed.
        optimal: otherwise.
        """
        state = self.registry.get(user_id)
        live_tube = self.rotation.live_tube(user_id)
        live = self.cache.check_availability(user_id, live_tube)

        failed = set()
        for tube_id in TubeId:
            last = self.coordinator.last_outcome(user_id, tube_id)
            if last is not None and last.status == PreparationStatus.FAILED:
                failed.add(tube_id)

        if state.tube(live_tube).active_stitch() is None:
            return HEALTH_CRITICAL
        if not live.is_ready and not live.preparation_in_flight and live_tube in failed:
            return HEALTH_CRITICAL
        if not live.is_ready or failed:
            return HEALTH_DEGRADED
        return HEALTH_OPTIMAL

    def get_performance_metrics(self) -> dict[str, Any]:
        """Process-wide counters from the coordinator, cache and rotation controller."""
        preparation = self.coordinator.metrics
        cache = self.cache.metrics
        rotation = self.rotation.metrics
        return {
            "preparations_submitted": preparation.submitted,
            "preparations_completed": preparation.completed,
            "preparations_failed": preparation.failed,
            "preparations_cancelled": preparation.cancelled,
            "emergency_preparations": preparation.emergencies,
            "preparation_success_rate": round(preparation.success_rate, 4),
            "cache_hit_rate": round(cache.hit_rate, 4),
            "stale_served": cache.stale_served,
            "rotations": rotation.rotations,
            "rotation_failures": rotation.failures,
            "concurrent_rotations_rejected": rotation.concurrent_rejections,
            "average_rotation_ms": round(rotation.average_rotation_ms, 3),
        }

    def _request_preparation(self, user_id: str, tube_id: TubeId, priority: str = "normal") -> bool:
        state = self.registry.get(user_id)
        active = state.tube(tube_id).active_stitch()
        if active is None:
            logger.warning("Nothing to prepare on {}/{}: tube is empty", user_id, tube_id.value)
            return False

        try:
            self.coordinator.submit(
                user_id,
                tube_id,
                state.stitch(active),
                state.progress_for(active).boundary_level,
                priority=priority,
            )
        except ContentionError as exc:
            logger.debug("Preparation for {}/{} not queued: {}", user_id, tube_id.value, exc.message)
            return False
        return True


def build_service(
    settings: Settings | None = None,
    generator: QuestionGenerator | None = None,
    store: StateStore | None = None,
) -> SchedulerService:
    """Wire a SchedulerService from settings, defaulting to the SQL store and seed fact pool."""
    settings = settings or get_settings()
    config = SchedulerConfig.from_settings(settings)

    if store is None:
        from src.db.database import get_engine, get_session_factory, init_db

        init_db(get_engine(settings))
        store = SqlStateStore(get_session_factory(settings))

    if generator is None:
        generator = FactPoolQuestionGenerator(default_fact_pool(), min_facts=config.min_facts_per_stitch)

    return SchedulerService(generator, store=store, config=config)


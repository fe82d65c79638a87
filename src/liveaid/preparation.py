"""
Background content preparation.

Assembles the question set for a tube's active stitch while the learner is
busy on another tube, so switching tubes never waits on content generation.

Pipeline (progress reported after each stage):
    fact_selection             0.15
    boundary_level_assessment  0.25
    question_generation        0.65
    shuffle                    0.95
    ready_assembly             1.00

Processes for the same (user, tube) run one at a time; different tubes and
users assemble in parallel. Failed processes are recorded, never retried.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from loguru import logger

from .cache import ContentReadyCache
from .content import QuestionGenerator, seeded_shuffle
from .errors import ContentionError, ErrorCode, NotFoundError, PreparationError
from .models import (
    MAX_BOUNDARY_LEVEL,
    MIN_BOUNDARY_LEVEL,
    PreparationProcess,
    PreparationStage,
    PreparationStatus,
    ReadyContent,
    Stitch,
    TubeId,
    utcnow,
)

STAGE_PROGRESS = (
    ("fact_selection", 0.15),
    ("boundary_level_assessment", 0.25),
    ("question_generation", 0.65),
    ("shuffle", 0.95),
    ("ready_assembly", 1.0),
)

PRIORITIES = ("low", "normal", "high", "emergency")


@dataclass
class PreparationMetrics:
    """Outcome counters across every process the coordinator has run."""

    submitted: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    emergencies: int = 0

    @property
    def success_rate(self) -> float:
        """Completed share of finished non-cancelled processes; 1.0 before any finish."""
        finished = self.completed + self.failed
        return self.completed / finished if finished else 1.0


class ContentPreparationCoordinator:
    """Schedules and tracks background ReadyContent assembly."""

    def __init__(
        self,
        generator: QuestionGenerator,
        cache: ContentReadyCache,
        session_size: int = 20,
        timeout_seconds: float = 10.0,
        emergency_timeout_seconds: float = 3.0,
        retention_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.generator = generator
        self.cache = cache
        self.session_size = session_size
        self.timeout_seconds = timeout_seconds
        self.emergency_timeout_seconds = emergency_timeout_seconds
        self.retention = timedelta(seconds=retention_seconds)
        self.clock = clock

        self._processes: dict[str, PreparationProcess] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._tube_locks: dict[tuple[str, TubeId], asyncio.Lock] = {}
        self.metrics = PreparationMetrics()

    # =========================================================================
    # Submission
    # =========================================================================

    def submit(
        self,
        user_id: str,
        tube_id: TubeId,
        stitch: Stitch,
        boundary_level: int,
        priority: str = "normal",
        timeout: float | None = None,
    ) -> PreparationProcess:
        """
        Queue a preparation on the running event loop and return immediately.

        Unknown priorities are treated as normal.

        Raises:
            ContentionError: WARMING_IN_PROGRESS for a low-priority request on
                a tube that is already preparing
            RuntimeError: when called outside a running event loop
        """
        loop = asyncio.get_running_loop()
        if priority not in PRIORITIES:
            priority = "normal"

        if priority == "low" and self._active_for(user_id, tube_id):
            raise ContentionError(
                ErrorCode.WARMING_IN_PROGRESS,
                f"{tube_id.value} is already preparing for {user_id}",
                user_id=user_id,
                tube_id=tube_id.value,
            )

        process = PreparationProcess(
            process_id=str(uuid.uuid4()),
            user_id=user_id,
            tube_id=tube_id,
            stitch_id=stitch.id,
            priority=priority,
            created_at=self.clock(),
        )
        self._processes[process.process_id] = process
        self.cache.mark_preparing(user_id, tube_id, stitch.id)
        self.metrics.submitted += 1

        wait = self.timeout_seconds if timeout is None else timeout
        self._tasks[process.process_id] = loop.create_task(self._run(process, stitch, boundary_level, wait))
        logger.debug(
            "Queued preparation {} for {}/{} ({}, {} priority)",
            process.process_id,
            user_id,
            tube_id.value,
            stitch.id,
            priority,
        )
        return process

    async def prepare_stitch(
        self,
        user_id: str,
        tube_id: TubeId,
        stitch: Stitch,
        boundary_level: int,
        priority: str = "normal",
        timeout: float | None = None,
    ) -> PreparationProcess:
        """Async entry point for ``submit``."""
        return self.submit(user_id, tube_id, stitch, boundary_level, priority, timeout)

    async def emergency_preparation(
        self,
        user_id: str,
        tube_id: TubeId,
        stitch: Stitch,
        boundary_level: int,
        timeout: float | None = None,
    ) -> ReadyContent:
        """
        Assemble content immediately, bypassing the per-tube queue.

        Returns:
            ReadyContent, also stored in the cache

        Raises:
            PreparationError: PREPARATION_TIMEOUT, PREPARATION_FAILED or
                INSUFFICIENT_FACTS
        """
        process = PreparationProcess(
            process_id=str(uuid.uuid4()),
            user_id=user_id,
            tube_id=tube_id,
            stitch_id=stitch.id,
            priority="emergency",
            created_at=self.clock(),
        )
        self._processes[process.process_id] = process
        wait = self.emergency_timeout_seconds if timeout is None else timeout
        self.metrics.emergencies += 1

        logger.warning("Emergency preparation for {}/{} ({})", user_id, tube_id.value, stitch.id)
        process.status = PreparationStatus.IN_PROGRESS
        try:
            content = await asyncio.wait_for(self._assemble(process, stitch, boundary_level), wait)
        except asyncio.TimeoutError:
            self._fail(process, ErrorCode.PREPARATION_TIMEOUT, f"Emergency preparation exceeded {wait:.1f}s")
            raise PreparationError(
                ErrorCode.PREPARATION_TIMEOUT,
                f"Emergency preparation for {stitch.id} exceeded {wait:.1f}s",
                process_id=process.process_id,
            ) from None
        except PreparationError as exc:
            self._fail(process, exc.code, exc.message)
            raise
        except Exception as exc:
            reason = f"{type(exc).__name__}: {exc}"
            self._fail(process, ErrorCode.PREPARATION_FAILED, reason)
            raise PreparationError(
                ErrorCode.PREPARATION_FAILED,
                f"Emergency preparation for {stitch.id} failed: {reason}",
                process_id=process.process_id,
            ) from exc

        self._commit(process, content)
        process.observed = True
        return content

    # =========================================================================
    # Control & Inspection
    # =========================================================================

    def cancel_preparation(self, process_id: str) -> bool:
        """
        Cancel a queued or running process.

        Returns:
            True if the process is cancelled (now or previously), False if it
            already completed or failed
        """
        process = self._get(process_id)
        if process.status == PreparationStatus.CANCELLED:
            return True
        if process.is_terminal:
            return False

        process.status = PreparationStatus.CANCELLED
        process.finished_at = self.clock()
        self.metrics.cancelled += 1
        task = self._tasks.get(process_id)
        if task is not None and not task.done():
            task.cancel()
        self._release_marker(process)
        logger.info("Cancelled preparation {} ({})", process_id, process.stitch_id)
        return True

    def get_process(self, process_id: str) -> PreparationProcess:
        process = self._get(process_id)
        if process.is_terminal:
            process.observed = True
        return process

    def get_progress(self, user_id: str, tube_id: TubeId | None = None) -> list[PreparationProcess]:
        """Tracked processes for a user, oldest first."""
        processes = [
            p
            for p in self._processes.values()
            if p.user_id == user_id and (tube_id is None or p.tube_id == tube_id)
        ]
        return sorted(processes, key=lambda p: p.created_at)

    def active_preparations(self, user_id: str) -> list[PreparationProcess]:
        """Queued or running processes for a user, oldest first."""
        return [p for p in self.get_progress(user_id) if not p.is_terminal]

    def last_outcome(self, user_id: str, tube_id: TubeId) -> PreparationProcess | None:
        """Most recent finished process for a tube, emergencies included."""
        finished = [p for p in self.get_progress(user_id, tube_id) if p.is_terminal]
        return max(finished, key=lambda p: p.finished_at or p.created_at, default=None)

    async def wait_for(self, process_id: str) -> PreparationProcess:
        """Block until the process reaches a terminal status."""
        process = self._get(process_id)
        task = self._tasks.get(process_id)
        if task is not None and not task.done():
            await asyncio.wait({task})
        return self.get_process(process_id)

    async def drain(self) -> None:
        """Wait for every outstanding process to finish."""
        pending = {task for task in self._tasks.values() if not task.done()}
        if pending:
            await asyncio.wait(pending)

    async def aclose(self) -> None:
        """Cancel everything still running."""
        for process_id, task in list(self._tasks.items()):
            if not task.done():
                self.cancel_preparation(process_id)
        await self.drain()

    def collect_garbage(self, now: datetime | None = None) -> int:
        """Drop terminal processes that were observed or outlived retention."""
        now = now or self.clock()
        doomed = [
            pid
            for pid, p in self._processes.items()
            if p.is_terminal and (p.observed or (p.finished_at is not None and now - p.finished_at >= self.retention))
        ]
        for pid in doomed:
            self._processes.pop(pid, None)
            self._tasks.pop(pid, None)
        if doomed:
            logger.debug("Collected {} finished preparation records", len(doomed))
        return len(doomed)

    def _get(self, process_id: str) -> PreparationProcess:
        try:
            return self._processes[process_id]
        except KeyError:
            raise NotFoundError(
                ErrorCode.PROCESS_NOT_FOUND,
                f"Preparation process '{process_id}' not found",
                process_id=process_id,
            ) from None

    def _active_for(self, user_id: str, tube_id: TubeId) -> bool:
        return any(
            p.user_id == user_id and p.tube_id == tube_id and not p.is_terminal and p.priority != "emergency"
            for p in self._processes.values()
        )

    def _lock_for(self, user_id: str, tube_id: TubeId) -> asyncio.Lock:
        key = (user_id, tube_id)
        lock = self._tube_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._tube_locks[key] = lock
        return lock

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def _run(self, process: PreparationProcess, stitch: Stitch, boundary_level: int, timeout: float) -> None:
        try:
            async with self._lock_for(process.user_id, process.tube_id):
                if process.is_terminal:
                    return
                process.status = PreparationStatus.IN_PROGRESS
                content = await asyncio.wait_for(self._assemble(process, stitch, boundary_level), timeout)
                self._commit(process, content)
        except asyncio.TimeoutError:
            self._fail(process, ErrorCode.PREPARATION_TIMEOUT, f"Preparation exceeded {timeout:.1f}s")
        except PreparationError as exc:
            self._fail(process, exc.code, exc.message)
        except asyncio.CancelledError:
            if not process.is_terminal:
                process.status = PreparationStatus.CANCELLED
                process.finished_at = self.clock()
                self.metrics.cancelled += 1
                self._release_marker(process)
            raise
        except Exception as exc:
            # Any generator exception is a failed process
            self._fail(process, ErrorCode.PREPARATION_FAILED, f"{type(exc).__name__}: {exc}")

    async def _assemble(self, process: PreparationProcess, stitch: Stitch, boundary_level: int) -> ReadyContent:
        count = self.session_size

        with self._stage(process, 0):
            await asyncio.to_thread(self.generator.ensure_facts, stitch, count)

        with self._stage(process, 1):
            level = min(max(boundary_level, MIN_BOUNDARY_LEVEL), MAX_BOUNDARY_LEVEL)

        with self._stage(process, 2):
            questions = await asyncio.to_thread(self.generator.generate, stitch, level, count)
            if len(questions) != count:
                raise PreparationError(
                    ErrorCode.PREPARATION_FAILED,
                    f"Generator returned {len(questions)} questions for {stitch.id} (expected {count})",
                    stitch_id=stitch.id,
                )

        with self._stage(process, 3):
            shuffled = seeded_shuffle(questions, f"{process.user_id}:{stitch.id}")

        with self._stage(process, 4):
            content = ReadyContent(
                user_id=process.user_id,
                tube_id=process.tube_id,
                stitch_id=stitch.id,
                boundary_level=level,
                questions=tuple(shuffled),
                assembled_at=self.clock(),
            )
        return content

    def _stage(self, process: PreparationProcess, index: int) -> _StageRecorder:
        name, progress = STAGE_PROGRESS[index]
        return _StageRecorder(self, process, name, progress)

    def _commit(self, process: PreparationProcess, content: ReadyContent) -> None:
        # Cancelled before the result landed
        if process.is_terminal:
            return
        self.cache.store(process.user_id, process.tube_id, content)
        process.status = PreparationStatus.COMPLETED
        self.metrics.completed += 1
        process.progress = 1.0
        process.finished_at = self.clock()
        logger.info(
            "Prepared {} for {}/{}: {} questions at boundary level {}",
            content.stitch_id,
            process.user_id,
            process.tube_id.value,
            content.question_count,
            content.boundary_level,
        )

    def _fail(self, process: PreparationProcess, code: ErrorCode, reason: str) -> None:
        if process.is_terminal:
            return
        process.status = PreparationStatus.FAILED
        process.failure_code = code
        self.metrics.failed += 1
        process.failure_reason = reason
        process.finished_at = self.clock()
        if process.stages and process.stages[-1].completed_at is None:
            process.stages[-1].error = reason
        self._release_marker(process)
        logger.error(
            "Preparation {} for {}/{} failed at {}: {}",
            process.process_id,
            process.user_id,
            process.tube_id.value,
            process.stage,
            reason,
        )

    def _release_marker(self, process: PreparationProcess) -> None:
        if not self._active_for(process.user_id, process.tube_id):
            self.cache.clear_preparing(process.user_id, process.tube_id)


class _StageRecorder:
    """Context manager recording one pipeline stage on a process."""

    def __init__(self, coordinator: ContentPreparationCoordinator, process: PreparationProcess, name: str, progress: float):
        self.coordinator = coordinator
        self.process = process
        self.name = name
        self.progress = progress

    def __enter__(self) -> PreparationStage:
        stage = PreparationStage(name=self.name, started_at=self.coordinator.clock())
        self.process.stage = self.name
        self.process.stages.append(stage)
        return stage

    def __exit__(self, exc_type, exc, tb) -> None:
        stage = self.process.stages[-1]
        if exc_type is None:
            stage.completed_at = self.coordinator.clock()
            if not self.process.is_terminal:
                self.process.progress = self.progress

"""
Scheduler data model.

Plain dataclasses shared by every component. Positions, progress and tube
assignments are owned by the engines; everything handed back to callers is
either frozen or a copy.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from .errors import ErrorCode, InvalidInputError, NotFoundError

MIN_BOUNDARY_LEVEL = 1
MAX_BOUNDARY_LEVEL = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Tubes
# =============================================================================


class TubeId(str, Enum):
    """The three learning tubes every user owns."""

    TUBE1 = "tube1"
    TUBE2 = "tube2"
    TUBE3 = "tube3"

    @classmethod
    def parse(cls, value: str | TubeId) -> TubeId:
        """Accept 'tube1', '1' or a TubeId."""
        if isinstance(value, TubeId):
            return value
        text = str(value).strip().lower()
        if text.isdigit():
            text = f"tube{text}"
        try:
            return cls(text)
        except ValueError:
            raise NotFoundError(ErrorCode.TUBE_NOT_FOUND, f"Unknown tube '{value}'", tube_id=value) from None


class TubeStatus(str, Enum):
    """Live Aid roles. Exactly one tube holds each role at any time."""

    LIVE = "live"
    READY = "ready"
    PREPARING = "preparing"


# =============================================================================
# Stitches & Progress
# =============================================================================


@dataclass(frozen=True)
class Stitch:
    """Immutable content specification for one learning unit."""

    id: str
    tube_id: TubeId
    concept_code: str
    creation_order: int = 0
    concept_name: str | None = None

    @property
    def key(self) -> tuple[str, str, int]:
        """Composite identity: tube, concept code, creation order."""
        return (self.tube_id.value, self.concept_code, self.creation_order)


@dataclass
class StitchProgress:
    """Per user x stitch progression state."""

    user_id: str
    stitch_id: str
    skip_number: int = 4
    boundary_level: int = MIN_BOUNDARY_LEVEL
    completions: int = 0
    consecutive_perfect: int = 0
    last_completed_at: datetime | None = None

    @property
    def is_retired(self) -> bool:
        return self.skip_number == 1000

    def copy(self) -> StitchProgress:
        return replace(self)


@dataclass(frozen=True)
class SessionResult:
    """Outcome of one completed stitch session."""

    correct_count: int
    total_count: int
    completed_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.total_count <= 0 or self.correct_count < 0 or self.correct_count > self.total_count:
            raise InvalidInputError(
                ErrorCode.INVALID_PERFORMANCE_DATA,
                "correct_count must be within 0..total_count and total_count must be positive",
                correct_count=self.correct_count,
                total_count=self.total_count,
            )

    @property
    def is_perfect(self) -> bool:
        return self.correct_count == self.total_count


@dataclass(frozen=True)
class SessionCompletion:
    """Payload accepted at the session-completion boundary."""

    user_id: str
    stitch_id: str
    correct_count: int
    total_count: int
    completion_timestamp: datetime | None = None

    def to_result(self) -> SessionResult:
        return SessionResult(
            correct_count=self.correct_count,
            total_count=self.total_count,
            completed_at=self.completion_timestamp,
        )


# =============================================================================
# Algorithm Results
# =============================================================================


@dataclass(frozen=True)
class SkipCalculation:
    """Result of one skip-number progression step."""

    next_skip_number: int
    is_advancement: bool
    is_reset: bool
    consecutive_perfect: int
    is_retired: bool
    was_already_retired: bool
    reasoning: str


@dataclass(frozen=True)
class RepositionResult:
    """Result of repositioning one stitch within its tube."""

    stitch_id: str
    tube_id: TubeId
    previous_position: int
    new_position: int
    skip_number: int
    next_skip_number: int
    boundary_level: int
    boundary_level_changed: bool
    moved: bool
    timestamp: datetime


@dataclass(frozen=True)
class CompressionResult:
    """Result of removing gaps from a tube's position map."""

    tube_id: TubeId
    original_count: int
    compressed_count: int
    gaps_removed: int
    ratio: float
    dry_run: bool
    mapping: dict[int, str] = field(default_factory=dict)


@dataclass(frozen=True)
class TubeTransition:
    """One tube's role change during a rotation."""

    tube_id: TubeId
    from_status: TubeStatus
    to_status: TubeStatus
    timestamp: datetime
    trigger_reason: str


@dataclass(frozen=True)
class LiveAidRotationResult:
    """Summary of one Live Aid rotation."""

    rotation_id: str
    user_id: str
    previous_live: TubeId
    new_live: TubeId
    transitions: tuple[TubeTransition, ...]
    rotation_number: int
    timestamp: datetime
    preparation_requested: bool


# =============================================================================
# Ready Content
# =============================================================================


@dataclass(frozen=True)
class ReadyQuestion:
    """One assembled question: a correct answer and a single distractor."""

    id: str
    fact_id: str
    text: str
    correct_answer: str
    distractor: str
    boundary_level: int


@dataclass(frozen=True)
class ReadyContent:
    """Fully assembled, shuffled question set for one stitch."""

    user_id: str
    tube_id: TubeId
    stitch_id: str
    boundary_level: int
    questions: tuple[ReadyQuestion, ...]
    assembled_at: datetime

    @property
    def question_count(self) -> int:
        return len(self.questions)


# =============================================================================
# Preparation
# =============================================================================


class PreparationStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PreparationStatus.COMPLETED, PreparationStatus.FAILED, PreparationStatus.CANCELLED)


@dataclass
class PreparationStage:
    """Progress record for one pipeline stage."""

    name: str
    started_at: datetime
    completed_at: datetime | None = None
    error: str | None = None


@dataclass
class PreparationProcess:
    """Ephemeral tracking record for one background assembly."""

    process_id: str
    user_id: str
    tube_id: TubeId
    stitch_id: str
    priority: str
    status: PreparationStatus = PreparationStatus.QUEUED
    progress: float = 0.0
    stage: str | None = None
    stages: list[PreparationStage] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    failure_code: ErrorCode | None = None
    failure_reason: str | None = None
    observed: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


# =============================================================================
# Service Results
# =============================================================================


@dataclass(frozen=True)
class SessionOutcome:
    """Everything that happened in response to one session completion."""

    reposition: RepositionResult
    compression: CompressionResult | None
    rotation: LiveAidRotationResult | None
    cache_invalidated: bool

"""
Live Aid: spaced-repetition stitch scheduler.

Decides which stitch a learner sees next across three tubes while content
for the following tube is assembled in the background.

Components:
- SkipProgressionCalculator: 4 -> 8 -> 15 -> 30 -> 100 -> 1000 skip sequence
- PositionStore: sparse logical position map for one tube
- RepositioningEngine: moves a completed stitch back by its skip number
- PositionCompressor: renumbers a tube's positions 1..n
- TubeRotationController: LIVE / READY / PREPARING rotation
- ContentPreparationCoordinator: background question assembly
- ContentReadyCache: assembled content per tube
- SchedulerService: façade wiring the above together
- SqlStateStore / InMemoryStateStore: versioned persistence
"""

from .cache import Availability, ContentReadyCache, InvalidationResult
from .compression import PositionCompressor
from .content import Fact, FactPoolQuestionGenerator, QuestionGenerator, seeded_shuffle
from .curriculum import DEFAULT_TUBE_SEED, build_seed, default_fact_pool
from .errors import (
    CacheError,
    ContentionError,
    ErrorCode,
    InsufficientFactsError,
    InvalidInputError,
    NotFoundError,
    PreparationError,
    RetiredStitchError,
    RotationError,
    SchedulerError,
)
from .models import (
    CompressionResult,
    LiveAidRotationResult,
    PreparationProcess,
    PreparationStatus,
    ReadyContent,
    ReadyQuestion,
    RepositionResult,
    SessionCompletion,
    SessionOutcome,
    SessionResult,
    SkipCalculation,
    Stitch,
    StitchProgress,
    TubeId,
    TubeStatus,
    TubeTransition,
)
from .persistence import InMemoryStateStore, SqlStateStore, UserSnapshot
from .position_store import PositionStore
from .preparation import ContentPreparationCoordinator
from .repositioning import RepositioningEngine
from .rotation import TubeRotationController
from .scheduler import SchedulerConfig, SchedulerService, build_service
from .skip_progression import SKIP_SEQUENCE, SkipProgressionCalculator, calculate_skip_number
from .state import UserState, UserStateRegistry

__all__ = [
    # Algorithms
    "SKIP_SEQUENCE",
    "SkipProgressionCalculator",
    "calculate_skip_number",
    "PositionStore",
    "RepositioningEngine",
    "PositionCompressor",
    # Live Aid
    "TubeRotationController",
    "ContentPreparationCoordinator",
    "ContentReadyCache",
    "Availability",
    "InvalidationResult",
    # Content
    "Fact",
    "QuestionGenerator",
    "FactPoolQuestionGenerator",
    "seeded_shuffle",
    "DEFAULT_TUBE_SEED",
    "build_seed",
    "default_fact_pool",
    # Service & persistence
    "SchedulerConfig",
    "SchedulerService",
    "build_service",
    "UserState",
    "UserStateRegistry",
    "UserSnapshot",
    "InMemoryStateStore",
    "SqlStateStore",
    # Models
    "Stitch",
    "StitchProgress",
    "SessionResult",
    "SessionCompletion",
    "SessionOutcome",
    "SkipCalculation",
    "RepositionResult",
    "CompressionResult",
    "TubeTransition",
    "LiveAidRotationResult",
    "ReadyQuestion",
    "ReadyContent",
    "PreparationProcess",
    "PreparationStatus",
    "TubeId",
    "TubeStatus",
    # Errors
    "ErrorCode",
    "SchedulerError",
    "NotFoundError",
    "InvalidInputError",
    "ContentionError",
    "RetiredStitchError",
    "RotationError",
    "CacheError",
    "PreparationError",
    "InsufficientFactsError",
]

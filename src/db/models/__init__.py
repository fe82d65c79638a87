# SQLAlchemy models
from .base import Base
from .scheduler import (
    StitchProgressRow,
    TubePositionRow,
    TubeStateRow,
    UserStateVersion,
)

__all__ = [
    # Base
    "Base",
    # Scheduler state
    "UserStateVersion",
    "TubeStateRow",
    "TubePositionRow",
    "StitchProgressRow",
]

"""Achievement progress and unlocking engine."""

from moments.achievements.engine import AchievementEngine, build_engine
from moments.achievements.errors import (
    AchievementError,
    ConflictError,
    NotFoundError,
    PrerequisiteNotMetError,
    TransientStorageError,
    ValidationError,
)

__all__ = [
    "AchievementEngine",
    "build_engine",
    "AchievementError",
    "ConflictError",
    "NotFoundError",
    "PrerequisiteNotMetError",
    "TransientStorageError",
    "ValidationError",
]

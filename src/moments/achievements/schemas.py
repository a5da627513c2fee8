"""Pydantic models for achievement templates, progress records and results."""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# --- Enums ---


class ConditionType(str, enum.Enum):
    COUNT = "count"
    STREAK = "streak"
    MILESTONE = "milestone"
    LOCATION = "location"
    SOCIAL = "social"
    CUSTOM = "custom"


# Condition types whose progress comes from an externally registered predicate
PREDICATE_CONDITIONS = frozenset({ConditionType.LOCATION, ConditionType.SOCIAL, ConditionType.CUSTOM})


class Timeframe(str, enum.Enum):
    DAY = "day"
    WEEK = "week"


class Difficulty(str, enum.Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"
    LEGENDARY = "legendary"


class TemplateStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DEPRECATED = "deprecated"


class ProgressStatus(str, enum.Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    ACHIEVED = "achieved"


class SkipReason(str, enum.Enum):
    ALREADY_ACHIEVED = "already_achieved"
    PREREQUISITES_NOT_MET = "prerequisites_not_met"
    UNCHANGED = "unchanged"


class LeaderboardMetric(str, enum.Enum):
    TOTAL_POINTS = "total_points"
    ACHIEVEMENT_COUNT = "achievement_count"


class LeaderboardPeriod(str, enum.Enum):
    ALL_TIME = "all_time"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


# --- Templates ---


class TemplateCreate(BaseModel):
    """Administrator input for a new template; invariants checked on construction."""

    name: str = Field(min_length=2, max_length=100)
    description: str = Field(default="", max_length=500)
    condition_type: ConditionType
    target: int = Field(gt=0)
    metric: str = Field(min_length=1, max_length=64)
    timeframe: Timeframe | None = None
    params: dict[str, Any] = Field(default_factory=dict)
    points: int = Field(default=0, ge=0, le=10_000)
    difficulty: Difficulty = Difficulty.EASY
    category: str = Field(default="moments", min_length=1, max_length=32)
    tags: list[str] = Field(default_factory=list)
    prerequisites: list[str] = Field(default_factory=list)
    is_hidden: bool = False
    is_repeatable: bool = False
    status: TemplateStatus = TemplateStatus.ACTIVE
    is_limited: bool = False
    valid_from: datetime | None = None
    valid_to: datetime | None = None

    @field_validator("name", "metric", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("tags")
    @classmethod
    def _check_tags(cls, value: list[str]) -> list[str]:
        tags = [t.strip() for t in value if t.strip()]
        for tag in tags:
            if len(tag) > 30:
                raise ValueError(f"tag '{tag[:30]}...' exceeds 30 characters")
        return tags

    @field_validator("prerequisites")
    @classmethod
    def _dedupe_prerequisites(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    @field_validator("valid_from", "valid_to")
    @classmethod
    def _aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _check_condition(self) -> TemplateCreate:
        if self.condition_type == ConditionType.STREAK and self.timeframe is None:
            raise ValueError("streak conditions require a timeframe")
        if self.condition_type == ConditionType.LOCATION and not self.params.get("location"):
            raise ValueError("location conditions require params.location")
        if self.is_limited:
            if self.valid_from is None or self.valid_to is None:
                raise ValueError("limited templates require valid_from and valid_to")
            if self.valid_from >= self.valid_to:
                raise ValueError("valid_from must be earlier than valid_to")
        return self


class TemplateUpdate(BaseModel):
    """Partial update; unset fields keep their stored value."""

    name: str | None = None
    description: str | None = None
    condition_type: ConditionType | None = None
    target: int | None = None
    metric: str | None = None
    timeframe: Timeframe | None = None
    params: dict[str, Any] | None = None
    points: int | None = None
    difficulty: Difficulty | None = None
    category: str | None = None
    tags: list[str] | None = None
    prerequisites: list[str] | None = None
    is_hidden: bool | None = None
    is_repeatable: bool | None = None
    status: TemplateStatus | None = None
    is_limited: bool | None = None
    valid_from: datetime | None = None
    valid_to: datetime | None = None


class AchievementTemplate(TemplateCreate):
    """A stored achievement rule."""

    id: str = Field(default_factory=_new_id)
    version: int = 1
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _no_self_prerequisite(self) -> AchievementTemplate:
        if self.id in self.prerequisites:
            raise ValueError("a template cannot be its own prerequisite")
        return self

    @property
    def is_active(self) -> bool:
        return self.status == TemplateStatus.ACTIVE

    def is_available(self, now: datetime | None = None) -> bool:
        """Active and, for limited templates, inside the validity window."""
        if not self.is_active:
            return False
        if not self.is_limited:
            return True
        now = now or utcnow()
        return self.valid_from <= now <= self.valid_to  # type: ignore[operator]


class TemplateQuery(BaseModel):
    condition_type: ConditionType | None = None
    category: str | None = None
    difficulty: Difficulty | None = None
    status: TemplateStatus | None = None
    include_hidden: bool = True
    search: str | None = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)


class TemplatePage(BaseModel):
    items: list[AchievementTemplate]
    total: int
    page: int
    limit: int
    pages: int


class TemplateStats(BaseModel):
    template_id: str
    total_users: int = 0
    achieved: int = 0
    in_progress: int = 0
    not_started: int = 0
    completion_rate: float = 0.0


# --- Progress records ---


class Progress(BaseModel):
    current: int = Field(default=0, ge=0)
    target: int = Field(gt=0)
    percentage: int = Field(default=0, ge=0, le=100)

    @property
    def remaining(self) -> int:
        return max(0, self.target - self.current)


class Milestone(BaseModel):
    value: int
    percentage: int
    achieved_at: datetime
    # Set on 100% entries only: points awarded by that unlock
    points: int | None = None


class ProgressHistoryEntry(BaseModel):
    """One write to a progress record and what caused it."""

    value: int
    trigger: str
    related_id: str | None = None
    timestamp: datetime


class StreakState(BaseModel):
    model_config = ConfigDict(frozen=True)

    current_streak: int = 0
    best_streak: int = 0
    last_streak_date: date | None = None


class UserProgressRecord(BaseModel):
    """Progress of one user on one template.

    ``version`` is 0 until the record has been written once; every later
    write must carry the version it was read at.
    """

    user_id: str
    template_id: str
    status: ProgressStatus = ProgressStatus.NOT_STARTED
    progress: Progress
    current_streak: int = 0
    best_streak: int = 0
    last_streak_date: date | None = None
    started_at: datetime | None = None
    unlocked_at: datetime | None = None
    last_unlocked_at: datetime | None = None
    unlock_count: int = 0
    points_awarded: int = 0
    milestones: list[Milestone] = Field(default_factory=list)
    progress_history: list[ProgressHistoryEntry] = Field(default_factory=list)
    grant_reason: str | None = None
    granted_by: str | None = None
    last_activity_at: datetime | None = None
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, template: AchievementTemplate, now: datetime | None = None) -> UserProgressRecord:
        now = now or utcnow()
        return cls(
            user_id=user_id,
            template_id=template.id,
            progress=Progress(target=template.target),
            created_at=now,
            updated_at=now,
        )

    @property
    def is_achieved(self) -> bool:
        return self.status == ProgressStatus.ACHIEVED

    @property
    def has_unlocked(self) -> bool:
        """True once the record has been unlocked at least once (repeatables included)."""
        return self.is_achieved or self.unlock_count > 0

    @property
    def streak(self) -> StreakState:
        return StreakState(
            current_streak=self.current_streak,
            best_streak=self.best_streak,
            last_streak_date=self.last_streak_date,
        )


# --- Events and results ---


class ActivityEvent(BaseModel):
    user_id: str = Field(min_length=1)
    metric: str = Field(min_length=1)
    delta: int = Field(default=1, ge=0)
    event_date: date
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("event_date", mode="before")
    @classmethod
    def _to_utc_date(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            if value.tzinfo is None:
                return value.date()
            return value.astimezone(timezone.utc).date()
        return value


class UnlockResult(BaseModel):
    user_id: str
    template_id: str
    template_name: str
    category: str
    difficulty: Difficulty
    points_awarded: int
    unlock_count: int
    unlocked_at: datetime
    manual: bool = False


class ProgressNotice(BaseModel):
    """Partial milestone crossed (e.g. 50% of target)."""

    user_id: str
    template_id: str
    template_name: str
    percentage: int
    value: int
    target: int


class SkippedTemplate(BaseModel):
    template_id: str
    reason: SkipReason


class TemplateFailure(BaseModel):
    template_id: str
    code: str
    message: str
    retryable: bool


class ApplyEventResult(BaseModel):
    unlocks: list[UnlockResult] = Field(default_factory=list)
    progressed: list[str] = Field(default_factory=list)
    skipped: list[SkippedTemplate] = Field(default_factory=list)
    failures: list[TemplateFailure] = Field(default_factory=list)


class InitializeResult(BaseModel):
    initialized: int
    total: int
    template_ids: list[str] = Field(default_factory=list)


# --- Aggregate stats ---


class RecentUnlock(BaseModel):
    template_id: str
    template_name: str
    points: int
    unlocked_at: datetime


class StatsDelta(BaseModel):
    """Increment-only change applied to AggregateStats for one unlock."""

    user_id: str
    points: int
    category: str
    difficulty: Difficulty
    recent: RecentUnlock


class AggregateStats(BaseModel):
    user_id: str
    total_points: int = 0
    achieved_count: int = 0
    category_counts: dict[str, int] = Field(default_factory=dict)
    difficulty_counts: dict[str, int] = Field(default_factory=dict)
    recent_unlocks: list[RecentUnlock] = Field(default_factory=list)
    rank: int | None = None
    updated_at: datetime | None = None


class UserSummary(BaseModel):
    user_id: str
    total: int
    achieved: int
    in_progress: int
    not_started: int
    total_points: int
    completion_rate: float


class UserAchievementView(BaseModel):
    template: AchievementTemplate
    record: UserProgressRecord | None = None


# --- Leaderboard ---


class UserTotals(BaseModel):
    user_id: str
    total_points: int = 0
    achievement_count: int = 0


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: str
    total_points: int
    achievement_count: int


class Leaderboard(BaseModel):
    metric: LeaderboardMetric
    period: LeaderboardPeriod
    since: datetime | None = None
    generated_at: datetime
    entries: list[LeaderboardEntry]

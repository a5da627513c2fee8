"""ORM models for achievement templates, per-user progress and aggregate stats.

Column layout matches alembic/versions/001_achievement_tables.py.
JSON columns use JSONB on PostgreSQL and plain JSON elsewhere (SQLite in tests).
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from moments.db.base import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


class AchievementTemplateRow(Base):
    """Administrator-defined achievement rule."""

    __tablename__ = "achievement_templates"
    __table_args__ = (
        Index("idx_achievement_templates_metric_status", "metric", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    condition_type: Mapped[str] = mapped_column(String(16), nullable=False)
    metric: Mapped[str] = mapped_column(String(64), nullable=False)
    target: Mapped[int] = mapped_column(Integer, nullable=False)
    timeframe: Mapped[str | None] = mapped_column(String(8), nullable=True)
    params: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    difficulty: Mapped[str] = mapped_column(String(16), nullable=False, default="easy")
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="moments")
    tags: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    prerequisites: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    is_hidden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_repeatable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    is_limited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    valid_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


# ---------------------------------------------------------------------------
# Per-user progress
# ---------------------------------------------------------------------------


class UserAchievementRow(Base):
    """Progress of one user on one template, UNIQUE(user_id, template_id)."""

    __tablename__ = "user_achievements"
    __table_args__ = (
        UniqueConstraint("user_id", "template_id", name="user_achievements_user_template_key"),
        Index("idx_user_achievements_user_status", "user_id", "status"),
        Index("idx_user_achievements_unlocked", "unlocked_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    template_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("achievement_templates.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="not_started")
    progress_current: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_target: Mapped[int] = mapped_column(Integer, nullable=False)
    progress_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    best_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_streak_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    unlocked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_unlocked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    unlock_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    points_awarded: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    milestones: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    progress_history: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    grant_reason: Mapped[str | None] = mapped_column(String(200), nullable=True)
    granted_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


# ---------------------------------------------------------------------------
# Aggregate stats (denormalized, recomputable from user_achievements)
# ---------------------------------------------------------------------------


class AchievementStatsRow(Base):
    """Denormalized achievement summary, one row per user."""

    __tablename__ = "achievement_stats"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    total_points: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    achieved_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AchievementStatsBreakdownRow(Base):
    """Per-user unlock counters by category or difficulty."""

    __tablename__ = "achievement_stats_breakdown"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    dimension: Mapped[str] = mapped_column(String(16), primary_key=True)
    bucket: Mapped[str] = mapped_column(String(32), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class RecentUnlockRow(Base):
    """Bounded per-user list of the latest unlocks (trimmed on insert)."""

    __tablename__ = "achievement_recent_unlocks"
    __table_args__ = (
        Index("idx_recent_unlocks_user_time", "user_id", "unlocked_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    template_id: Mapped[str] = mapped_column(String(36), nullable=False)
    template_name: Mapped[str] = mapped_column(String(100), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unlocked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

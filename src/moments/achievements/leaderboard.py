"""Leaderboard aggregation over unlocked achievements.

Deterministic ranking, ZERO shared ranks: users are ordered by the
requested metric DESC, then the other metric DESC, then user id ASC, and
ranked 1..N in that order.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any

from moments.achievements.errors import ValidationError
from moments.achievements.schemas import (
    Leaderboard,
    LeaderboardEntry,
    LeaderboardMetric,
    LeaderboardPeriod,
    UserTotals,
    utcnow,
)
from moments.achievements.store import AchievementStore

logger = logging.getLogger(__name__)

PERIOD_DAYS: dict[LeaderboardPeriod, int] = {
    LeaderboardPeriod.WEEK: 7,
    LeaderboardPeriod.MONTH: 30,
    LeaderboardPeriod.YEAR: 365,
}


def window_start(period: LeaderboardPeriod, now: datetime | None = None) -> datetime | None:
    """Earliest first-unlock time counted for period; None for all_time."""
    days = PERIOD_DAYS.get(period)
    if days is None:
        return None
    return (now or utcnow()) - timedelta(days=days)


def rank_entries(rows: list[UserTotals], metric: LeaderboardMetric) -> list[LeaderboardEntry]:
    """Rank user totals deterministically (rank = position + 1)."""

    def sort_key(row: UserTotals) -> tuple[int, int, str]:
        if metric == LeaderboardMetric.TOTAL_POINTS:
            return (-row.total_points, -row.achievement_count, row.user_id)
        return (-row.achievement_count, -row.total_points, row.user_id)

    return [
        LeaderboardEntry(
            rank=idx + 1,
            user_id=row.user_id,
            total_points=row.total_points,
            achievement_count=row.achievement_count,
        )
        for idx, row in enumerate(sorted(rows, key=sort_key))
    ]


def _coerce(metric: Any, period: Any, limit: int, max_limit: int) -> tuple[LeaderboardMetric, LeaderboardPeriod]:
    try:
        metric = LeaderboardMetric(metric)
    except ValueError:
        raise ValidationError(
            f"Unknown leaderboard metric '{metric}'.",
            details={"allowed": [m.value for m in LeaderboardMetric]},
        ) from None
    try:
        period = LeaderboardPeriod(period)
    except ValueError:
        raise ValidationError(
            f"Unknown leaderboard period '{period}'.",
            details={"allowed": [p.value for p in LeaderboardPeriod]},
        ) from None
    if not 1 <= limit <= max_limit:
        raise ValidationError(
            f"Leaderboard limit must be between 1 and {max_limit}.",
            details={"limit": limit},
        )
    return metric, period


class LeaderboardCache:
    """Short-lived Redis cache of computed boards. Failures degrade to a miss."""

    def __init__(self, redis: object, ttl_seconds: int = 30) -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(metric: LeaderboardMetric, period: LeaderboardPeriod, limit: int) -> str:
        return f"leaderboard:achievements:{metric.value}:{period.value}:{limit}"

    async def get(self, key: str) -> Leaderboard | None:
        if self.redis is None:
            return None
        try:
            raw = await self.redis.get(key)  # type: ignore[attr-defined]
        except Exception:
            logger.warning("Failed to read leaderboard cache %s", key, exc_info=True)
            return None
        if not raw:
            return None
        return Leaderboard.model_validate(json.loads(raw))

    async def set(self, key: str, board: Leaderboard) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.set(  # type: ignore[attr-defined]
                key,
                json.dumps(board.model_dump(mode="json")),
                ex=self.ttl_seconds,
            )
        except Exception:
            logger.warning("Failed to write leaderboard cache %s", key, exc_info=True)


async def compute_leaderboard(
    store: AchievementStore,
    metric: LeaderboardMetric | str = LeaderboardMetric.TOTAL_POINTS,
    period: LeaderboardPeriod | str = LeaderboardPeriod.ALL_TIME,
    limit: int = 50,
    now: datetime | None = None,
    cache: LeaderboardCache | None = None,
    max_limit: int = 100,
) -> Leaderboard:
    """Rank users by unlocked points or unlock count within a time window.

    Read-only: AggregateStats is never touched.
    """
    metric, period = _coerce(metric, period, limit, max_limit)
    cache_key = LeaderboardCache.key(metric, period, limit)
    if cache is not None:
        cached = await cache.get(cache_key)
        if cached is not None:
            return cached

    now = now or utcnow()
    since = window_start(period, now)
    rows = await store.unlocked_totals(since)
    board = Leaderboard(
        metric=metric,
        period=period,
        since=since,
        generated_at=now,
        entries=rank_entries(rows, metric)[:limit],
    )
    if cache is not None:
        await cache.set(cache_key, board)
    return board

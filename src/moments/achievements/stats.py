"""Per-user aggregate statistics and read-side summaries.

AggregateStats is maintained by increment-only deltas on every unlock and
can always be rebuilt from the progress records with ``recompute_stats``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from moments.achievements.errors import ValidationError
from moments.achievements.schemas import (
    AchievementTemplate,
    AggregateStats,
    ProgressStatus,
    RecentUnlock,
    StatsDelta,
    UnlockResult,
    UserAchievementView,
    UserProgressRecord,
    UserSummary,
    utcnow,
)
from moments.achievements.store import AchievementStore

logger = logging.getLogger(__name__)


def delta_for_unlock(unlock: UnlockResult) -> StatsDelta:
    return StatsDelta(
        user_id=unlock.user_id,
        points=unlock.points_awarded,
        category=unlock.category,
        difficulty=unlock.difficulty,
        recent=RecentUnlock(
            template_id=unlock.template_id,
            template_name=unlock.template_name,
            points=unlock.points_awarded,
            unlocked_at=unlock.unlocked_at,
        ),
    )


async def record_unlock(store: AchievementStore, unlock: UnlockResult, recent_limit: int = 10) -> None:
    await store.apply_stats_delta(delta_for_unlock(unlock), recent_limit)


def build_stats(
    user_id: str,
    records: list[UserProgressRecord],
    templates: dict[str, AchievementTemplate],
    recent_limit: int = 10,
    rank: int | None = None,
    now: datetime | None = None,
) -> AggregateStats:
    """Recompute AggregateStats from progress records.

    Counts follow the incremental path: one per unlock, so a repeatable
    template unlocked three times counts three times. Recent unlocks come
    from the 100% milestones, one per unlock, with the points each awarded.
    """
    stats = AggregateStats(user_id=user_id, rank=rank, updated_at=now or utcnow())
    recent: list[RecentUnlock] = []
    for record in records:
        if record.unlock_count <= 0:
            continue
        stats.total_points += record.points_awarded
        stats.achieved_count += record.unlock_count
        template = templates.get(record.template_id)
        if template is None:
            continue
        category = template.category
        difficulty = template.difficulty.value
        stats.category_counts[category] = stats.category_counts.get(category, 0) + record.unlock_count
        stats.difficulty_counts[difficulty] = stats.difficulty_counts.get(difficulty, 0) + record.unlock_count
        recent.extend(_recent_from_record(record, template))
    recent.sort(key=lambda r: (r.unlocked_at, r.template_id), reverse=True)
    stats.recent_unlocks = recent[:recent_limit]
    return stats


def _recent_from_record(record: UserProgressRecord, template: AchievementTemplate) -> list[RecentUnlock]:
    unlocks = [m for m in record.milestones if m.percentage >= 100]
    if unlocks:
        return [
            RecentUnlock(
                template_id=template.id,
                template_name=template.name,
                points=m.points if m.points is not None else template.points,
                unlocked_at=m.achieved_at,
            )
            for m in unlocks
        ]
    # Record written without an unlock milestone: one entry for the latest unlock
    unlocked_at = record.last_unlocked_at or record.unlocked_at
    if unlocked_at is None:
        return []
    return [RecentUnlock(
        template_id=template.id,
        template_name=template.name,
        points=record.points_awarded // max(1, record.unlock_count),
        unlocked_at=unlocked_at,
    )]


async def get_stats(store: AchievementStore, user_id: str) -> AggregateStats:
    stats = await store.get_stats(user_id)
    return stats if stats is not None else AggregateStats(user_id=user_id)


async def recompute_stats(
    store: AchievementStore,
    user_id: str,
    recent_limit: int = 10,
    now: datetime | None = None,
) -> AggregateStats:
    """Rebuild a user's AggregateStats from scratch, keeping the stored rank."""
    records = await store.list_progress(user_id)
    templates = {t.id: t for t in await store.all_templates()}
    existing = await store.get_stats(user_id)
    stats = build_stats(
        user_id,
        records,
        templates,
        recent_limit=recent_limit,
        rank=existing.rank if existing else None,
        now=now,
    )
    await store.replace_stats(stats)
    logger.debug("Recomputed stats for %s: %d points", user_id, stats.total_points)
    return stats


async def user_summary(store: AchievementStore, user_id: str) -> UserSummary:
    """Status counts and points over every active template; untouched templates count as not started."""
    records = {r.template_id: r for r in await store.list_progress(user_id)}
    templates = [t for t in await store.all_templates() if t.is_active]
    achieved = in_progress = points = 0
    for template in templates:
        record = records.get(template.id)
        if record is None:
            continue
        points += record.points_awarded
        if record.has_unlocked:
            achieved += 1
        elif record.status == ProgressStatus.IN_PROGRESS:
            in_progress += 1
    total = len(templates)
    return UserSummary(
        user_id=user_id,
        total=total,
        achieved=achieved,
        in_progress=in_progress,
        not_started=total - achieved - in_progress,
        total_points=points,
        completion_rate=round(100 * achieved / total, 2) if total else 0.0,
    )


def _unlocked_at(view: UserAchievementView) -> datetime | None:
    return view.record.last_unlocked_at if view.record is not None else None


def _progress_pct(view: UserAchievementView) -> int:
    return view.record.progress.percentage if view.record is not None else 0


def _last_activity(view: UserAchievementView) -> datetime | None:
    return view.record.last_activity_at if view.record is not None else None


SORT_KEYS: dict[str, Callable[[UserAchievementView], Any]] = {
    "unlocked_at": _unlocked_at,
    "progress": _progress_pct,
    "points": lambda v: v.template.points,
    "name": lambda v: v.template.name.lower(),
    "last_activity_at": _last_activity,
}

MAX_PAGE_SIZE = 100


def sort_views(views: list[UserAchievementView], sort_by: str, descending: bool = True) -> list[UserAchievementView]:
    """Sort by one of SORT_KEYS; views without a value for the key go last, ties by name."""
    key = SORT_KEYS.get(sort_by)
    if key is None:
        raise ValidationError(
            f"Unknown sort key '{sort_by}'.",
            details={"allowed": sorted(SORT_KEYS)},
        )
    present = sorted((v for v in views if key(v) is not None), key=lambda v: v.template.name.lower())
    present.sort(key=key, reverse=descending)
    return present + [v for v in views if key(v) is None]


async def list_user_achievements(
    store: AchievementStore,
    user_id: str,
    include_hidden: bool = False,
    status: ProgressStatus | None = None,
    sort_by: str | None = None,
    descending: bool = True,
    page: int = 1,
    limit: int | None = None,
) -> list[UserAchievementView]:
    """Active templates joined with the user's records.

    Hidden templates stay hidden until unlocked unless include_hidden is set.
    Without ``sort_by`` views keep template order. ``limit`` pages the result.
    """
    if page < 1 or (limit is not None and not 1 <= limit <= MAX_PAGE_SIZE):
        raise ValidationError(
            f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}.",
            details={"page": page, "limit": limit},
        )
    records = {r.template_id: r for r in await store.list_progress(user_id)}
    views: list[UserAchievementView] = []
    for template in await store.all_templates():
        record = records.get(template.id)
        unlocked = record is not None and record.has_unlocked
        if not template.is_active and not unlocked:
            continue
        if template.is_hidden and not unlocked and not include_hidden:
            continue
        if status is not None:
            record_status = record.status if record is not None else ProgressStatus.NOT_STARTED
            if record_status != status:
                continue
        views.append(UserAchievementView(template=template, record=record))
    if sort_by is not None:
        views = sort_views(views, sort_by, descending)
    if limit is not None:
        start = (page - 1) * limit
        views = views[start:start + limit]
    return views

"""Achievement arq worker.

Applies activity events and new-user initialization enqueued by the moments
API, and maintains derived data that is too expensive to keep exact per
event: the global rank and a nightly stats rebuild.
"""

from __future__ import annotations

import logging
from datetime import date

import redis.asyncio as aioredis
from arq import cron

from moments.achievements.engine import AchievementEngine, build_engine
from moments.achievements.leaderboard import rank_entries
from moments.achievements.notifier import RedisNotifier
from moments.achievements.schemas import LeaderboardMetric
from moments.achievements.seed import seed_templates
from moments.achievements.sql_store import SqlAchievementStore
from moments.achievements.stats import recompute_stats
from moments.achievements.store import AchievementStore
from moments.config import get_settings
from moments.database import close_db, get_session_factory, init_db
from moments.logging_config import setup_logging

logger = logging.getLogger(__name__)


async def achievements_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize DB + Redis connections on worker startup."""
    settings = get_settings()
    setup_logging(settings, component="achievements-worker")
    await init_db(settings.database_url, settings.db_pool_size, settings.db_max_overflow)

    ctx["redis"] = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    ctx["store"] = SqlAchievementStore(get_session_factory(), timeout=settings.storage_timeout_seconds)
    ctx["engine"] = build_engine(ctx["store"], ctx["redis"], settings)

    if settings.seed_templates_on_startup:
        await seed_templates(ctx["store"])
    logger.info("Achievements worker started")


async def achievements_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    engine: AchievementEngine | None = ctx.get("engine")
    if engine is not None and isinstance(engine.notifier, RedisNotifier):
        await engine.notifier.drain()
    redis_client: aioredis.Redis | None = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Achievements worker shut down")


async def process_activity_event(
    ctx: dict,  # type: ignore[type-arg]
    user_id: str,
    metric: str,
    delta: int = 1,
    event_date: str | None = None,
    payload: dict | None = None,  # type: ignore[type-arg]
) -> dict:  # type: ignore[type-arg]
    """Job: apply one activity event enqueued by the moments API.

    ``event_date`` is an ISO date string.
    """
    engine: AchievementEngine = ctx["engine"]
    result = await engine.apply_event(
        user_id,
        metric,
        delta=delta,
        event_date=date.fromisoformat(event_date) if event_date else None,
        payload=payload,
    )
    if result.failures:
        logger.warning(
            "Activity event %s for %s had %d template failure(s)",
            metric, user_id, len(result.failures),
        )
    return result.model_dump(mode="json")


async def initialize_user_achievements(ctx: dict, user_id: str) -> int:  # type: ignore[type-arg]
    """Job: create not_started records for a newly registered user."""
    engine: AchievementEngine = ctx["engine"]
    result = await engine.initialize_user_templates(user_id)
    return result.initialized


async def refresh_global_ranks(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: recompute the all-time points rank stored on AggregateStats.

    Returns number of users ranked.
    """
    store: AchievementStore = ctx["store"]
    totals = await store.unlocked_totals(None)
    entries = rank_entries(totals, LeaderboardMetric.TOTAL_POINTS)
    await store.set_ranks({e.user_id: e.rank for e in entries})
    logger.info("Refreshed global achievement ranks for %d users", len(entries))
    return len(entries)


async def rebuild_all_stats(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: rebuild every user's AggregateStats from progress records.

    Repairs drift left by stats deltas that failed after a committed unlock.
    """
    store: AchievementStore = ctx["store"]
    limit = get_settings().recent_unlocks_limit
    rebuilt = 0
    for user_id in await store.progress_user_ids():
        await recompute_stats(store, user_id, recent_limit=limit)
        rebuilt += 1
    logger.info("Rebuilt achievement stats for %d users", rebuilt)
    return rebuilt


def _every(minutes: int) -> set[int]:
    return set(range(0, 60, max(1, min(minutes, 60))))


class AchievementWorkerSettings:
    """arq worker settings for achievement maintenance jobs."""

    functions = [process_activity_event, initialize_user_achievements, refresh_global_ranks, rebuild_all_stats]
    cron_jobs = [
        cron(refresh_global_ranks, minute=_every(get_settings().rank_refresh_minutes), run_at_startup=True),
        cron(rebuild_all_stats, hour={3}, minute={30}),  # Daily 03:30 UTC
    ]
    on_startup = achievements_startup
    on_shutdown = achievements_shutdown
    max_jobs = 8
    job_timeout = 600

"""AchievementEngine end to end on the SQL store."""

from __future__ import annotations

from datetime import date

import pytest

from moments.achievements import stats as stats_service
from moments.achievements import templates
from moments.achievements.engine import AchievementEngine
from moments.achievements.schemas import Progress, ProgressStatus, SkipReason
from moments.achievements.sql_store import SqlAchievementStore

pytestmark = pytest.mark.asyncio


class InterleavingStore(SqlAchievementStore):
    """Simulates another writer committing between our read and our write, once."""

    injected = False

    async def get_progress(self, user_id, template_id):
        record = await super().get_progress(user_id, template_id)
        if record is not None and not self.injected:
            self.injected = True
            current = record.progress.current + 1
            bumped = record.model_copy(update={
                "progress": Progress(current=current, target=record.progress.target,
                                     percentage=100 * current // record.progress.target),
            })
            await super().update_progress(bumped, expected_version=record.version)
        return record


class TestEngineOnSql:
    async def test_unlock_and_stats(self, sql_engine, sql_store, new_template):
        t = await sql_store.insert_template(new_template(points=15))

        result = await sql_engine.apply_event("u1", "moments_created")

        assert [u.template_id for u in result.unlocks] == [t.id]
        record = await sql_store.get_progress("u1", t.id)
        assert record.status == ProgressStatus.ACHIEVED
        assert record.unlock_count == 1
        stats = await sql_store.get_stats("u1")
        assert stats.total_points == 15
        assert [r.template_id for r in stats.recent_unlocks] == [t.id]

    async def test_streak_replay_is_idempotent(self, sql_engine, sql_store, new_template):
        t = await sql_store.insert_template(
            new_template(name="Three Days", condition_type="streak", target=3, timeframe="day", metric="journal_day"),
        )
        for day in (2, 3, 4):
            await sql_engine.apply_event("u1", "journal_day", event_date=date(2026, 3, day))
        replay = await sql_engine.apply_event("u1", "journal_day", event_date=date(2026, 3, 3))

        assert replay.skipped[0].reason == SkipReason.ALREADY_ACHIEVED
        record = await sql_store.get_progress("u1", t.id)
        assert record.current_streak == 3
        assert record.last_streak_date == date(2026, 3, 4)

    async def test_prerequisite_gate(self, sql_engine, sql_store, new_template):
        a = await sql_store.insert_template(new_template(name="A"))
        b = await sql_store.insert_template(new_template(name="B", metric="photos_added", target=5, prerequisites=[a.id]))

        await sql_engine.apply_event("u1", "photos_added")
        assert await sql_store.get_progress("u1", b.id) is None

        await sql_engine.apply_event("u1", "moments_created")
        await sql_engine.apply_event("u1", "photos_added")
        assert (await sql_store.get_progress("u1", b.id)).progress.current == 1

    async def test_conflict_is_retried(self, sql_store, settings, clock, new_template):
        store = InterleavingStore(sql_store._session_factory)
        engine = AchievementEngine(store, settings=settings.model_copy(update={"max_parallel_templates": 1}), clock=clock)
        t = await store.insert_template(new_template(target=5))

        await engine.apply_event("u1", "moments_created")
        result = await engine.apply_event("u1", "moments_created")

        assert result.failures == []
        record = await store.get_progress("u1", t.id)
        assert record.progress.current == 3
        assert record.version == 3

    async def test_manual_grant_matches_automatic(self, sql_engine, sql_store, new_template):
        t = await sql_store.insert_template(new_template(points=20, category="photos"))

        await sql_engine.apply_event("auto", "moments_created")
        record = await sql_engine.grant_manually("admin-1", "manual", t.id, "Migrated from legacy badges")

        assert record.grant_reason == "Migrated from legacy badges"
        auto = await sql_store.get_stats("auto")
        manual = await sql_store.get_stats("manual")
        assert (manual.total_points, manual.achieved_count, manual.category_counts) == (
            auto.total_points, auto.achieved_count, auto.category_counts,
        )

    async def test_recompute_matches_incremental(self, sql_engine, sql_store, clock, new_template):
        for name, points in (("A", 5), ("B", 7)):
            await sql_store.insert_template(new_template(name=name, metric=name.lower(), points=points))
        await sql_store.insert_template(new_template(name="R", metric="r", points=2, is_repeatable=True))
        for metric in ("a", "r", "b", "r", "r"):
            clock.advance(minutes=1)
            await sql_engine.apply_event("u1", metric)

        incremental = await sql_store.get_stats("u1")
        rebuilt = await stats_service.recompute_stats(sql_store, "u1", recent_limit=3)
        assert rebuilt.total_points == incremental.total_points == 18
        assert rebuilt.achieved_count == incremental.achieved_count == 5
        assert rebuilt.category_counts == incremental.category_counts
        assert [(r.template_name, r.points) for r in rebuilt.recent_unlocks] == [("R", 2), ("R", 2), ("B", 7)]
        assert rebuilt.recent_unlocks == incremental.recent_unlocks

    async def test_leaderboard(self, sql_engine, sql_store, new_template):
        await sql_store.insert_template(new_template(points=10))
        await sql_store.insert_template(new_template(name="Big", metric="photos_added", points=40))
        await sql_engine.apply_event("bob", "moments_created")
        await sql_engine.apply_event("amy", "photos_added")
        await sql_engine.apply_event("cat", "moments_created")

        board = await sql_engine.compute_leaderboard("total_points", "week")
        assert [(e.rank, e.user_id) for e in board.entries] == [(1, "amy"), (2, "bob"), (3, "cat")]

    async def test_initialize_and_purge(self, sql_engine, sql_store, new_template):
        await sql_store.insert_template(new_template(name="A"))
        await sql_store.insert_template(new_template(name="B", metric="photos_added"))

        result = await sql_engine.initialize_user_templates("u1")
        assert result.initialized == 2
        assert (await sql_engine.initialize_user_templates("u1")).initialized == 0

        assert await sql_engine.purge_user("u1") == 2
        assert await sql_store.list_progress("u1") == []

    async def test_reset_and_delete_restate_stats(self, sql_engine, sql_store, new_template):
        a = await sql_store.insert_template(new_template(name="A", points=10))
        b = await sql_store.insert_template(new_template(name="B", metric="photos_added", points=4))
        await sql_engine.apply_event("u1", "moments_created")
        await sql_engine.apply_event("u1", "photos_added")

        record = await sql_engine.reset_progress("admin-1", "u1", a.id, "Duplicate account merge")
        assert record.unlock_count == 0
        assert (await sql_store.get_stats("u1")).total_points == 4

        await templates.delete_template(sql_store, b.id, recent_limit=3)
        stats = await sql_store.get_stats("u1")
        assert (stats.total_points, stats.achieved_count, stats.recent_unlocks) == (0, 0, [])

"""SqlAchievementStore against in-memory SQLite."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from moments.achievements.errors import ConflictError, TransientStorageError
from moments.achievements.schemas import (
    AggregateStats,
    Milestone,
    Progress,
    ProgressHistoryEntry,
    ProgressStatus,
    RecentUnlock,
    StatsDelta,
    TemplateQuery,
    UserProgressRecord,
)
from moments.achievements.sql_store import SqlAchievementStore

pytestmark = pytest.mark.asyncio

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _delta(user_id, name, points, at, category="moments", difficulty="easy"):
    return StatsDelta(
        user_id=user_id,
        points=points,
        category=category,
        difficulty=difficulty,
        recent=RecentUnlock(template_id=f"id-{name}", template_name=name, points=points, unlocked_at=at),
    )


class TestTemplates:
    async def test_roundtrip(self, sql_store, new_template):
        template = new_template(
            name="Explorer",
            condition_type="location",
            params={"location": {"distinct_places": 3}},
            tags=["travel"],
            is_limited=True,
            valid_from=T0,
            valid_to=T0 + timedelta(days=30),
        )
        inserted = await sql_store.insert_template(template)
        assert inserted.version == 1

        loaded = await sql_store.get_template(template.id)
        assert loaded.name == "Explorer"
        assert loaded.params == {"location": {"distinct_places": 3}}
        assert loaded.tags == ["travel"]
        assert loaded.valid_to == T0 + timedelta(days=30)
        assert (await sql_store.get_template_by_name("Explorer")).id == template.id
        assert await sql_store.get_template("missing") is None

    async def test_duplicate_name(self, sql_store, new_template):
        await sql_store.insert_template(new_template(name="Same"))
        with pytest.raises(ConflictError) as exc_info:
            await sql_store.insert_template(new_template(name="Same"))
        assert exc_info.value.code == "DUPLICATE_NAME"
        assert exc_info.value.retryable is False

    async def test_save_requires_current_version(self, sql_store, new_template):
        t = await sql_store.insert_template(new_template())
        saved = await sql_store.save_template(t.model_copy(update={"points": 99}), expected_version=1)
        assert saved.version == 2
        with pytest.raises(ConflictError):
            await sql_store.save_template(t.model_copy(update={"points": 1}), expected_version=1)
        assert (await sql_store.get_template(t.id)).points == 99

    async def test_list_and_metric_lookup(self, sql_store, new_template):
        for i in range(3):
            await sql_store.insert_template(new_template(name=f"Collector {i}", category="moments"))
        await sql_store.insert_template(new_template(name="Hidden Gem", is_hidden=True, category="secret"))
        await sql_store.insert_template(new_template(name="Retired", status="deprecated", category="old"))

        items, total = await sql_store.list_templates(TemplateQuery(category="moments", limit=2, page=2))
        assert total == 3
        assert [t.name for t in items] == ["Collector 2"]

        items, _ = await sql_store.list_templates(TemplateQuery(include_hidden=False, limit=100))
        assert "Hidden Gem" not in [t.name for t in items]

        items, total = await sql_store.list_templates(TemplateQuery(search="gem"))
        assert [t.name for t in items] == ["Hidden Gem"]

        active = await sql_store.templates_for_metric("moments_created")
        assert "Retired" not in [t.name for t in active]
        assert len(active) == 4

    async def test_delete_cascades(self, sql_store, new_template):
        t = await sql_store.insert_template(new_template())
        await sql_store.insert_progress(UserProgressRecord.new("u1", t, T0))
        await sql_store.insert_progress(UserProgressRecord.new("u2", t, T0))

        assert await sql_store.delete_template(t.id) == 2
        assert await sql_store.get_template(t.id) is None
        assert await sql_store.list_progress("u1") == []


class TestProgressRecords:
    async def test_insert_update_roundtrip(self, sql_store, new_template):
        t = await sql_store.insert_template(new_template(target=10))
        record = UserProgressRecord.new("u1", t, T0)
        inserted = await sql_store.insert_progress(record)
        assert inserted.version == 1

        changed = inserted.model_copy(update={
            "status": ProgressStatus.IN_PROGRESS,
            "progress": Progress(current=5, target=10, percentage=50),
            "current_streak": 2,
            "best_streak": 4,
            "last_streak_date": date(2026, 3, 2),
            "started_at": T0,
            "milestones": [Milestone(value=5, percentage=50, achieved_at=T0)],
            "progress_history": [ProgressHistoryEntry(value=5, trigger="moments_created", related_id="m-9", timestamp=T0)],
        })
        updated = await sql_store.update_progress(changed, expected_version=1)
        assert updated.version == 2

        loaded = await sql_store.get_progress("u1", t.id)
        assert loaded.status == ProgressStatus.IN_PROGRESS
        assert loaded.progress == Progress(current=5, target=10, percentage=50)
        assert loaded.last_streak_date == date(2026, 3, 2)
        assert loaded.started_at == T0
        assert loaded.milestones == [Milestone(value=5, percentage=50, achieved_at=T0)]
        assert loaded.progress_history == [
            ProgressHistoryEntry(value=5, trigger="moments_created", related_id="m-9", timestamp=T0),
        ]
        assert loaded.version == 2

    async def test_duplicate_insert_conflicts(self, sql_store, new_template):
        t = await sql_store.insert_template(new_template())
        await sql_store.insert_progress(UserProgressRecord.new("u1", t, T0))
        with pytest.raises(ConflictError) as exc_info:
            await sql_store.insert_progress(UserProgressRecord.new("u1", t, T0))
        assert exc_info.value.retryable is True

    async def test_stale_update_conflicts(self, sql_store, new_template):
        t = await sql_store.insert_template(new_template(target=10))
        record = await sql_store.insert_progress(UserProgressRecord.new("u1", t, T0))
        first = record.model_copy(update={"progress": Progress(current=1, target=10, percentage=10)})
        await sql_store.update_progress(first, expected_version=1)

        second = record.model_copy(update={"progress": Progress(current=7, target=10, percentage=70)})
        with pytest.raises(ConflictError):
            await sql_store.update_progress(second, expected_version=1)
        assert (await sql_store.get_progress("u1", t.id)).progress.current == 1

    async def test_counts_and_users(self, sql_store, new_template):
        t = await sql_store.insert_template(new_template())
        await sql_store.insert_progress(UserProgressRecord.new("u2", t, T0))
        await sql_store.insert_progress(
            UserProgressRecord.new("u1", t, T0).model_copy(update={"status": ProgressStatus.ACHIEVED}),
        )
        assert await sql_store.count_progress_by_status(t.id) == {"achieved": 1, "not_started": 1}
        assert await sql_store.progress_user_ids() == ["u1", "u2"]
        assert await sql_store.progress_user_ids(t.id) == ["u1", "u2"]
        assert await sql_store.progress_user_ids("other") == []

    async def test_unlocked_totals_window(self, sql_store, new_template):
        a = await sql_store.insert_template(new_template(name="A", points=10))
        b = await sql_store.insert_template(new_template(name="B", points=30))

        def unlocked(user_id, template, at, count=1):
            return UserProgressRecord.new(user_id, template, at).model_copy(update={
                "status": ProgressStatus.ACHIEVED,
                "unlocked_at": at,
                "unlock_count": count,
                "points_awarded": template.points * count,
            })

        await sql_store.insert_progress(unlocked("old", a, T0 - timedelta(days=40)))
        await sql_store.insert_progress(unlocked("new", a, T0))
        await sql_store.insert_progress(unlocked("new", b, T0, count=2))
        await sql_store.insert_progress(UserProgressRecord.new("idle", a, T0))

        totals = {t.user_id: t for t in await sql_store.unlocked_totals()}
        assert set(totals) == {"old", "new"}
        assert totals["new"].total_points == 70
        assert totals["new"].achievement_count == 3

        recent = await sql_store.unlocked_totals(T0 - timedelta(days=7))
        assert [t.user_id for t in recent] == ["new"]


class TestStats:
    async def test_delta_accumulates_and_trims_recent(self, sql_store):
        for i, name in enumerate(["One", "Two", "Three", "Four"]):
            await sql_store.apply_stats_delta(
                _delta("u1", name, 10 * (i + 1), T0 + timedelta(minutes=i), category="photos" if i % 2 else "moments"),
                recent_limit=3,
            )

        stats = await sql_store.get_stats("u1")
        assert stats.total_points == 100
        assert stats.achieved_count == 4
        assert stats.category_counts == {"moments": 2, "photos": 2}
        assert stats.difficulty_counts == {"easy": 4}
        assert [r.template_name for r in stats.recent_unlocks] == ["Four", "Three", "Two"]
        assert stats.recent_unlocks[0].unlocked_at == T0 + timedelta(minutes=3)

    async def test_replace_and_ranks(self, sql_store):
        await sql_store.apply_stats_delta(_delta("u1", "One", 10, T0), recent_limit=5)
        await sql_store.replace_stats(AggregateStats(
            user_id="u1",
            total_points=50,
            achieved_count=2,
            category_counts={"social": 2},
            difficulty_counts={"hard": 2},
            recent_unlocks=[RecentUnlock(template_id="x", template_name="X", points=25, unlocked_at=T0)],
        ))
        stats = await sql_store.get_stats("u1")
        assert stats.total_points == 50
        assert stats.category_counts == {"social": 2}
        assert [r.template_name for r in stats.recent_unlocks] == ["X"]

        await sql_store.set_ranks({"u1": 1, "u2": 2})
        assert (await sql_store.get_stats("u1")).rank == 1
        assert (await sql_store.get_stats("u2")).rank == 2
        await sql_store.set_ranks({"u2": 1})
        assert (await sql_store.get_stats("u1")).rank is None

    async def test_delete_user_progress(self, sql_store, new_template):
        t = await sql_store.insert_template(new_template())
        await sql_store.insert_progress(UserProgressRecord.new("u1", t, T0))
        await sql_store.apply_stats_delta(_delta("u1", "One", 10, T0), recent_limit=5)

        assert await sql_store.delete_user_progress("u1") == 1
        assert await sql_store.get_stats("u1") is None
        assert await sql_store.list_progress("u1") == []


class TestStorageFailures:
    async def test_timeout_is_transient(self, sql_store):
        async def slow(fn):
            await asyncio.sleep(1)

        store = SqlAchievementStore(sql_store._session_factory, timeout=0.01)
        store._transaction = slow
        with pytest.raises(TransientStorageError) as exc_info:
            await store.get_template("t1")
        assert exc_info.value.retryable is True
        assert exc_info.value.details == {"op": "get_template"}

    async def test_unreachable_database_is_transient(self, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'db.sqlite'}")
        store = SqlAchievementStore(async_sessionmaker(engine, expire_on_commit=False))
        try:
            with pytest.raises(TransientStorageError):
                await store.get_template("t1")
        finally:
            await engine.dispose()

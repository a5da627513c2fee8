"""Default template seeding."""

import pytest

from moments.achievements.engine import AchievementEngine
from moments.achievements.predicates import default_predicates
from moments.achievements.seed import TEMPLATE_SEED_DATA, seed_templates

pytestmark = pytest.mark.asyncio


class TestSeed:
    async def test_seeds_all_templates(self, store):
        created = await seed_templates(store)
        assert created == len(TEMPLATE_SEED_DATA)
        assert len(await store.all_templates()) == len(TEMPLATE_SEED_DATA)

    async def test_idempotent(self, store):
        await seed_templates(store)
        assert await seed_templates(store) == 0

    async def test_prerequisites_resolved_to_ids(self, store):
        await seed_templates(store)
        first = await store.get_template_by_name("First Moment")
        collector = await store.get_template_by_name("Moment Collector")
        assert collector.prerequisites == [first.id]
        assert collector.created_by == "system"

    async def test_seeded_chain_gates_progress(self, engine, store):
        await seed_templates(store)
        result = await engine.apply_event("u1", "moments_created")
        unlocked = [u.template_name for u in result.unlocks]
        assert unlocked == ["First Moment"]
        skipped = {s.template_id for s in result.skipped}
        expert = await store.get_template_by_name("Moment Expert")
        assert expert.id in skipped

    async def test_seeded_location_templates_progress(self, store, settings, clock):
        await seed_templates(store)
        engine = AchievementEngine(store, predicates=default_predicates(), settings=settings, clock=clock)
        explorer = await store.get_template_by_name("Explorer")
        traveler = await store.get_template_by_name("Traveler")

        first = await engine.apply_event("u1", "moment_locations")
        assert first.failures == []
        assert [u.template_id for u in first.unlocks] == [explorer.id]

        second = await engine.apply_event("u1", "moment_locations", payload={"distinct_places": 4})
        assert second.failures == []
        assert (await store.get_progress("u1", traveler.id)).progress.current == 4

"""Prerequisite gate."""

import pytest

from moments.achievements.errors import PrerequisiteNotMetError
from moments.achievements.prerequisites import ensure_eligible, first_unmet_prerequisite, is_eligible
from moments.achievements.schemas import ProgressStatus, UserProgressRecord

pytestmark = pytest.mark.asyncio


class TestGate:
    async def test_no_prerequisites(self, store, new_template):
        t = await store.insert_template(new_template())
        assert await is_eligible(store, "u1", t)

    async def test_reports_first_unmet(self, store, new_template):
        a = await store.insert_template(new_template(name="A"))
        b = await store.insert_template(new_template(name="B"))
        c = await store.insert_template(new_template(name="C", prerequisites=[a.id, b.id]))
        await store.insert_progress(
            UserProgressRecord.new("u1", a).model_copy(update={"status": ProgressStatus.ACHIEVED}),
        )

        assert await first_unmet_prerequisite(store, "u1", c) == b.id
        with pytest.raises(PrerequisiteNotMetError) as exc_info:
            await ensure_eligible(store, "u1", c)
        assert exc_info.value.details == {"template_id": c.id, "missing": [b.id]}

    async def test_in_progress_prerequisite_is_unmet(self, store, new_template):
        a = await store.insert_template(new_template(name="A", target=5))
        b = await store.insert_template(new_template(name="B", prerequisites=[a.id]))
        await store.insert_progress(
            UserProgressRecord.new("u1", a).model_copy(update={"status": ProgressStatus.IN_PROGRESS}),
        )
        assert not await is_eligible(store, "u1", b)

    async def test_cycled_repeatable_prerequisite_still_counts(self, engine, store, new_template):
        a = await store.insert_template(new_template(name="A", is_repeatable=True))
        b = await store.insert_template(new_template(name="B", metric="photos_added", prerequisites=[a.id]))
        await engine.apply_event("u1", "moments_created")

        record = await store.get_progress("u1", a.id)
        assert record.status == ProgressStatus.NOT_STARTED
        assert record.unlock_count == 1
        await ensure_eligible(store, "u1", b)

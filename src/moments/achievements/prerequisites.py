"""Prerequisite gate: dependent templates only progress once their prerequisites unlock."""

from __future__ import annotations

from moments.achievements.errors import PrerequisiteNotMetError
from moments.achievements.schemas import AchievementTemplate
from moments.achievements.store import AchievementStore


async def first_unmet_prerequisite(
    store: AchievementStore,
    user_id: str,
    template: AchievementTemplate,
) -> str | None:
    """Id of the first prerequisite the user has not unlocked, or None.

    Read fresh on every call: a prerequisite can unlock concurrently with
    progress on the dependent template.
    """
    for prerequisite_id in template.prerequisites:
        record = await store.get_progress(user_id, prerequisite_id)
        if record is None or not record.has_unlocked:
            return prerequisite_id
    return None


async def is_eligible(store: AchievementStore, user_id: str, template: AchievementTemplate) -> bool:
    """True when the template has no prerequisites or all of them are unlocked."""
    return await first_unmet_prerequisite(store, user_id, template) is None


async def ensure_eligible(store: AchievementStore, user_id: str, template: AchievementTemplate) -> None:
    unmet = await first_unmet_prerequisite(store, user_id, template)
    if unmet is not None:
        raise PrerequisiteNotMetError(template.id, [unmet])

"""Storage contract for templates, progress records and aggregate stats.

Two implementations exist: ``InMemoryAchievementStore`` here (tests and
single-process tooling) and ``SqlAchievementStore`` in ``sql_store``.

Every write of an existing progress record or template carries the
version it was read at. A stale version raises ``ConflictError``; so does
inserting a record for a (user, template) pair that already exists.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from moments.achievements.errors import ConflictError
from moments.achievements.schemas import (
    AchievementTemplate,
    AggregateStats,
    StatsDelta,
    TemplateQuery,
    UserProgressRecord,
    UserTotals,
    utcnow,
)


class AchievementStore(Protocol):
    # --- Templates ---
    async def get_template(self, template_id: str) -> AchievementTemplate | None: ...
    async def get_template_by_name(self, name: str) -> AchievementTemplate | None: ...
    async def list_templates(self, query: TemplateQuery) -> tuple[list[AchievementTemplate], int]: ...
    async def templates_for_metric(self, metric: str) -> list[AchievementTemplate]: ...
    async def all_templates(self) -> list[AchievementTemplate]: ...
    async def insert_template(self, template: AchievementTemplate) -> AchievementTemplate: ...
    async def save_template(self, template: AchievementTemplate, expected_version: int) -> AchievementTemplate: ...
    async def delete_template(self, template_id: str) -> int: ...

    # --- Progress records ---
    async def get_progress(self, user_id: str, template_id: str) -> UserProgressRecord | None: ...
    async def list_progress(self, user_id: str) -> list[UserProgressRecord]: ...
    async def insert_progress(self, record: UserProgressRecord) -> UserProgressRecord: ...
    async def update_progress(self, record: UserProgressRecord, expected_version: int) -> UserProgressRecord: ...
    async def delete_user_progress(self, user_id: str) -> int: ...
    async def count_progress_by_status(self, template_id: str) -> dict[str, int]: ...
    async def progress_user_ids(self, template_id: str | None = None) -> list[str]: ...
    async def unlocked_totals(self, since: datetime | None = None) -> list[UserTotals]: ...

    # --- Aggregate stats ---
    async def apply_stats_delta(self, delta: StatsDelta, recent_limit: int) -> None: ...
    async def get_stats(self, user_id: str) -> AggregateStats | None: ...
    async def replace_stats(self, stats: AggregateStats) -> None: ...
    async def set_ranks(self, ranks: dict[str, int]) -> None: ...


def _matches(template: AchievementTemplate, query: TemplateQuery) -> bool:
    if query.condition_type is not None and template.condition_type != query.condition_type:
        return False
    if query.category is not None and template.category != query.category:
        return False
    if query.difficulty is not None and template.difficulty != query.difficulty:
        return False
    if query.status is not None and template.status != query.status:
        return False
    if not query.include_hidden and template.is_hidden:
        return False
    if query.search:
        needle = query.search.lower()
        if needle not in template.name.lower() and needle not in template.description.lower():
            return False
    return True


class InMemoryAchievementStore:
    """Process-local store. Returns copies so callers never share state with it."""

    def __init__(self) -> None:
        self._templates: dict[str, AchievementTemplate] = {}
        self._progress: dict[tuple[str, str], UserProgressRecord] = {}
        self._stats: dict[str, AggregateStats] = {}

    # --- Templates ---

    async def get_template(self, template_id: str) -> AchievementTemplate | None:
        template = self._templates.get(template_id)
        return template.model_copy(deep=True) if template else None

    async def get_template_by_name(self, name: str) -> AchievementTemplate | None:
        for template in self._templates.values():
            if template.name == name:
                return template.model_copy(deep=True)
        return None

    async def list_templates(self, query: TemplateQuery) -> tuple[list[AchievementTemplate], int]:
        matched = sorted(
            (t for t in self._templates.values() if _matches(t, query)),
            key=lambda t: (t.category, t.name),
        )
        start = (query.page - 1) * query.limit
        page = matched[start:start + query.limit]
        return [t.model_copy(deep=True) for t in page], len(matched)

    async def templates_for_metric(self, metric: str) -> list[AchievementTemplate]:
        return [
            t.model_copy(deep=True)
            for t in sorted(self._templates.values(), key=lambda t: t.name)
            if t.metric == metric and t.is_active
        ]

    async def all_templates(self) -> list[AchievementTemplate]:
        return [t.model_copy(deep=True) for t in sorted(self._templates.values(), key=lambda t: t.name)]

    async def insert_template(self, template: AchievementTemplate) -> AchievementTemplate:
        if template.id in self._templates:
            raise ConflictError(f"Template {template.id} already exists.", code="DUPLICATE_TEMPLATE", retryable=False)
        if any(t.name == template.name for t in self._templates.values()):
            raise ConflictError(f"Template name '{template.name}' already exists.", code="DUPLICATE_NAME", retryable=False)
        stored = template.model_copy(deep=True, update={"version": 1})
        self._templates[stored.id] = stored
        return stored.model_copy(deep=True)

    async def save_template(self, template: AchievementTemplate, expected_version: int) -> AchievementTemplate:
        current = self._templates.get(template.id)
        if current is None or current.version != expected_version:
            raise ConflictError(f"Template {template.id} was modified concurrently.")
        if any(t.name == template.name and t.id != template.id for t in self._templates.values()):
            raise ConflictError(f"Template name '{template.name}' already exists.", code="DUPLICATE_NAME", retryable=False)
        stored = template.model_copy(deep=True, update={"version": expected_version + 1})
        self._templates[stored.id] = stored
        return stored.model_copy(deep=True)

    async def delete_template(self, template_id: str) -> int:
        self._templates.pop(template_id, None)
        keys = [k for k in self._progress if k[1] == template_id]
        for key in keys:
            del self._progress[key]
        return len(keys)

    # --- Progress records ---

    async def get_progress(self, user_id: str, template_id: str) -> UserProgressRecord | None:
        record = self._progress.get((user_id, template_id))
        return record.model_copy(deep=True) if record else None

    async def list_progress(self, user_id: str) -> list[UserProgressRecord]:
        return [
            r.model_copy(deep=True)
            for (uid, _), r in sorted(self._progress.items())
            if uid == user_id
        ]

    async def insert_progress(self, record: UserProgressRecord) -> UserProgressRecord:
        key = (record.user_id, record.template_id)
        if key in self._progress:
            raise ConflictError(f"Progress for {key} already exists.")
        stored = record.model_copy(deep=True, update={"version": 1})
        self._progress[key] = stored
        return stored.model_copy(deep=True)

    async def update_progress(self, record: UserProgressRecord, expected_version: int) -> UserProgressRecord:
        key = (record.user_id, record.template_id)
        current = self._progress.get(key)
        if current is None or current.version != expected_version:
            raise ConflictError(f"Progress for {key} was modified concurrently.")
        stored = record.model_copy(deep=True, update={"version": expected_version + 1})
        self._progress[key] = stored
        return stored.model_copy(deep=True)

    async def delete_user_progress(self, user_id: str) -> int:
        keys = [k for k in self._progress if k[0] == user_id]
        for key in keys:
            del self._progress[key]
        self._stats.pop(user_id, None)
        return len(keys)

    async def count_progress_by_status(self, template_id: str) -> dict[str, int]:
        counts: dict[str, int] = {}
        for (_, tid), record in self._progress.items():
            if tid == template_id:
                counts[record.status.value] = counts.get(record.status.value, 0) + 1
        return counts

    async def progress_user_ids(self, template_id: str | None = None) -> list[str]:
        return sorted({uid for uid, tid in self._progress if template_id is None or tid == template_id})

    async def unlocked_totals(self, since: datetime | None = None) -> list[UserTotals]:
        totals: dict[str, UserTotals] = {}
        for record in self._progress.values():
            if record.unlock_count <= 0 or record.unlocked_at is None:
                continue
            if since is not None and record.unlocked_at < since:
                continue
            entry = totals.setdefault(record.user_id, UserTotals(user_id=record.user_id))
            entry.total_points += record.points_awarded
            entry.achievement_count += record.unlock_count
        return list(totals.values())

    # --- Aggregate stats ---

    async def apply_stats_delta(self, delta: StatsDelta, recent_limit: int) -> None:
        stats = self._stats.setdefault(delta.user_id, AggregateStats(user_id=delta.user_id))
        stats.total_points += delta.points
        stats.achieved_count += 1
        stats.category_counts[delta.category] = stats.category_counts.get(delta.category, 0) + 1
        difficulty = delta.difficulty.value
        stats.difficulty_counts[difficulty] = stats.difficulty_counts.get(difficulty, 0) + 1
        stats.recent_unlocks.insert(0, delta.recent)
        del stats.recent_unlocks[recent_limit:]
        stats.updated_at = utcnow()

    async def get_stats(self, user_id: str) -> AggregateStats | None:
        stats = self._stats.get(user_id)
        return stats.model_copy(deep=True) if stats else None

    async def replace_stats(self, stats: AggregateStats) -> None:
        self._stats[stats.user_id] = stats.model_copy(deep=True)

    async def set_ranks(self, ranks: dict[str, int]) -> None:
        for user_id, stats in self._stats.items():
            stats.rank = ranks.get(user_id)
        for user_id, rank in ranks.items():
            if user_id not in self._stats:
                self._stats[user_id] = AggregateStats(user_id=user_id, rank=rank, updated_at=utcnow())


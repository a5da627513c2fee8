"""Template administration: validation, prerequisite DAG checks and lifecycle."""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any

import pydantic

from moments.achievements.errors import NotFoundError, ValidationError
from moments.achievements.schemas import (
    AchievementTemplate,
    ProgressStatus,
    TemplateCreate,
    TemplatePage,
    TemplateQuery,
    TemplateStats,
    TemplateStatus,
    TemplateUpdate,
    utcnow,
)
from moments.achievements.stats import recompute_stats
from moments.achievements.store import AchievementStore

logger = logging.getLogger(__name__)


def _parse(model: type[pydantic.BaseModel], data: Any, message: str) -> Any:
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ValidationError.from_pydantic(exc, message) from exc


def find_cycle(graph: dict[str, list[str]], start: str) -> list[str] | None:
    """Depth-first search for a prerequisite cycle reachable from start.

    Returns the cycle as a path of ids (first id repeated at the end), or
    None. Edges to ids missing from the graph are ignored.
    """
    visiting: list[str] = []
    on_path: set[str] = set()
    done: set[str] = set()

    def visit(node: str) -> list[str] | None:
        if node in on_path:
            return visiting[visiting.index(node):] + [node]
        if node in done or node not in graph:
            return None
        visiting.append(node)
        on_path.add(node)
        for child in graph[node]:
            cycle = visit(child)
            if cycle is not None:
                return cycle
        visiting.pop()
        on_path.discard(node)
        done.add(node)
        return None

    return visit(start)


async def _validate_prerequisites(store: AchievementStore, candidate: AchievementTemplate) -> None:
    """Prerequisites must exist, and the graph with candidate substituted must stay acyclic."""
    templates = await store.all_templates()
    graph = {t.id: list(t.prerequisites) for t in templates}
    unknown = [p for p in candidate.prerequisites if p not in graph or p == candidate.id]
    if unknown:
        raise ValidationError(
            "Unknown prerequisite templates.",
            details={"prerequisites": unknown},
        )
    graph[candidate.id] = list(candidate.prerequisites)
    cycle = find_cycle(graph, candidate.id)
    if cycle is not None:
        raise ValidationError(
            "Prerequisites would form a cycle.",
            details={"cycle": cycle},
            code="PREREQUISITE_CYCLE",
        )


async def get_template(store: AchievementStore, template_id: str) -> AchievementTemplate:
    template = await store.get_template(template_id)
    if template is None:
        raise NotFoundError("Template", template_id)
    return template


async def create_template(
    store: AchievementStore,
    data: TemplateCreate | dict[str, Any],
    created_by: str | None = None,
    now: datetime | None = None,
) -> AchievementTemplate:
    """Validate and insert a new template. Nothing is written on failure."""
    now = now or utcnow()
    payload = data.model_dump() if isinstance(data, TemplateCreate) else dict(data)
    template = _parse(
        AchievementTemplate,
        {**payload, "created_by": created_by, "created_at": now, "updated_at": now},
        "Invalid achievement template.",
    )
    if await store.get_template_by_name(template.name) is not None:
        raise ValidationError(
            f"Template name '{template.name}' already exists.",
            details={"name": template.name},
            code="DUPLICATE_NAME",
        )
    await _validate_prerequisites(store, template)
    created = await store.insert_template(template)
    logger.info("Created achievement template %s (%s)", created.name, created.id)
    return created


async def update_template(
    store: AchievementStore,
    template_id: str,
    changes: TemplateUpdate | dict[str, Any],
    expected_version: int | None = None,
    now: datetime | None = None,
) -> AchievementTemplate:
    """Apply a partial update, re-validate and bump the version.

    ``expected_version`` defaults to the version just read; pass the one the
    administrator edited to reject updates made on top of a stale copy.
    """
    current = await get_template(store, template_id)
    update = _parse(TemplateUpdate, changes, "Invalid template update.") if isinstance(changes, dict) else changes
    fields = update.model_dump(exclude_unset=True)
    if not fields:
        return current

    merged = {**current.model_dump(), **fields, "updated_at": now or utcnow()}
    candidate = _parse(AchievementTemplate, merged, "Invalid achievement template.")
    if candidate.name != current.name:
        existing = await store.get_template_by_name(candidate.name)
        if existing is not None and existing.id != template_id:
            raise ValidationError(
                f"Template name '{candidate.name}' already exists.",
                details={"name": candidate.name},
                code="DUPLICATE_NAME",
            )
    if "prerequisites" in fields:
        await _validate_prerequisites(store, candidate)

    version = current.version if expected_version is None else expected_version
    saved = await store.save_template(candidate, expected_version=version)
    logger.info("Updated achievement template %s to version %d", saved.id, saved.version)
    return saved


async def deactivate_template(
    store: AchievementStore,
    template_id: str,
    now: datetime | None = None,
) -> AchievementTemplate:
    """Soft delete: mark deprecated. Existing progress records are kept."""
    current = await get_template(store, template_id)
    if current.status == TemplateStatus.DEPRECATED:
        return current
    updated = current.model_copy(update={"status": TemplateStatus.DEPRECATED, "updated_at": now or utcnow()})
    saved = await store.save_template(updated, expected_version=current.version)
    logger.info("Deprecated achievement template %s", template_id)
    return saved


async def delete_template(store: AchievementStore, template_id: str, recent_limit: int = 10) -> int:
    """Hard delete with cascade to progress records. Returns records removed.

    Refused while another template lists this one as a prerequisite. Stats
    of every user who had a record on the template are recomputed.
    """
    await get_template(store, template_id)
    dependents = [t.id for t in await store.all_templates() if template_id in t.prerequisites]
    if dependents:
        raise ValidationError(
            "Template is a prerequisite of other templates.",
            details={"dependents": dependents},
            code="TEMPLATE_IN_USE",
        )
    affected = await store.progress_user_ids(template_id)
    removed = await store.delete_template(template_id)
    for user_id in affected:
        await recompute_stats(store, user_id, recent_limit=recent_limit)
    logger.info(
        "Deleted achievement template %s (%d progress records, %d users restated)",
        template_id, removed, len(affected),
    )
    return removed


async def list_templates(store: AchievementStore, query: TemplateQuery | dict[str, Any] | None = None) -> TemplatePage:
    if query is None:
        query = TemplateQuery()
    elif isinstance(query, dict):
        query = _parse(TemplateQuery, query, "Invalid template query.")
    items, total = await store.list_templates(query)
    return TemplatePage(
        items=items,
        total=total,
        page=query.page,
        limit=query.limit,
        pages=math.ceil(total / query.limit) if total else 0,
    )


async def template_stats(store: AchievementStore, template_id: str) -> TemplateStats:
    await get_template(store, template_id)
    counts = await store.count_progress_by_status(template_id)
    achieved = counts.get(ProgressStatus.ACHIEVED.value, 0)
    in_progress = counts.get(ProgressStatus.IN_PROGRESS.value, 0)
    not_started = counts.get(ProgressStatus.NOT_STARTED.value, 0)
    total = achieved + in_progress + not_started
    return TemplateStats(
        template_id=template_id,
        total_users=total,
        achieved=achieved,
        in_progress=in_progress,
        not_started=not_started,
        completion_rate=round(100 * achieved / total, 2) if total else 0.0,
    )

"""SQLAlchemy-backed achievement store.

Every operation runs in its own session and transaction, bounded by
``timeout`` seconds. Storage failures never leak: a lost version race or
duplicate key becomes ``ConflictError``; timeouts and connection errors
become ``TransientStorageError``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, TypeVar

import structlog
from sqlalchemy import Select, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from moments.achievements.errors import ConflictError, TransientStorageError
from moments.achievements.schemas import (
    AchievementTemplate,
    AggregateStats,
    Milestone,
    Progress,
    ProgressHistoryEntry,
    RecentUnlock,
    StatsDelta,
    TemplateQuery,
    TemplateStatus,
    UserProgressRecord,
    UserTotals,
    utcnow,
)
from moments.db.models import (
    AchievementStatsBreakdownRow,
    AchievementStatsRow,
    AchievementTemplateRow,
    RecentUnlockRow,
    UserAchievementRow,
)

logger = structlog.get_logger()

T = TypeVar("T")

CATEGORY = "category"
DIFFICULTY = "difficulty"


def _utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Row <-> model mapping
# ---------------------------------------------------------------------------


def _template_from_row(row: AchievementTemplateRow) -> AchievementTemplate:
    return AchievementTemplate.model_validate({
        "id": row.id,
        "name": row.name,
        "description": row.description,
        "condition_type": row.condition_type,
        "target": row.target,
        "metric": row.metric,
        "timeframe": row.timeframe,
        "params": row.params or {},
        "points": row.points,
        "difficulty": row.difficulty,
        "category": row.category,
        "tags": row.tags or [],
        "prerequisites": row.prerequisites or [],
        "is_hidden": row.is_hidden,
        "is_repeatable": row.is_repeatable,
        "status": row.status,
        "is_limited": row.is_limited,
        "valid_from": _utc(row.valid_from),
        "valid_to": _utc(row.valid_to),
        "version": row.version,
        "created_by": row.created_by,
        "created_at": _utc(row.created_at),
        "updated_at": _utc(row.updated_at),
    })


def _template_values(template: AchievementTemplate) -> dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "description": template.description,
        "condition_type": template.condition_type.value,
        "target": template.target,
        "metric": template.metric,
        "timeframe": template.timeframe.value if template.timeframe else None,
        "params": template.params,
        "points": template.points,
        "difficulty": template.difficulty.value,
        "category": template.category,
        "tags": template.tags,
        "prerequisites": template.prerequisites,
        "is_hidden": template.is_hidden,
        "is_repeatable": template.is_repeatable,
        "status": template.status.value,
        "is_limited": template.is_limited,
        "valid_from": template.valid_from,
        "valid_to": template.valid_to,
        "created_by": template.created_by,
        "created_at": template.created_at,
        "updated_at": template.updated_at,
    }


def _progress_from_row(row: UserAchievementRow) -> UserProgressRecord:
    return UserProgressRecord(
        user_id=row.user_id,
        template_id=row.template_id,
        status=row.status,
        progress=Progress(
            current=row.progress_current,
            target=row.progress_target,
            percentage=row.progress_percentage,
        ),
        current_streak=row.current_streak,
        best_streak=row.best_streak,
        last_streak_date=row.last_streak_date,
        started_at=_utc(row.started_at),
        unlocked_at=_utc(row.unlocked_at),
        last_unlocked_at=_utc(row.last_unlocked_at),
        unlock_count=row.unlock_count,
        points_awarded=row.points_awarded,
        milestones=[Milestone.model_validate(m) for m in row.milestones or []],
        progress_history=[ProgressHistoryEntry.model_validate(h) for h in row.progress_history or []],
        grant_reason=row.grant_reason,
        granted_by=row.granted_by,
        last_activity_at=_utc(row.last_activity_at),
        version=row.version,
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )


def _progress_values(record: UserProgressRecord) -> dict[str, Any]:
    return {
        "status": record.status.value,
        "progress_current": record.progress.current,
        "progress_target": record.progress.target,
        "progress_percentage": record.progress.percentage,
        "current_streak": record.current_streak,
        "best_streak": record.best_streak,
        "last_streak_date": record.last_streak_date,
        "started_at": record.started_at,
        "unlocked_at": record.unlocked_at,
        "last_unlocked_at": record.last_unlocked_at,
        "unlock_count": record.unlock_count,
        "points_awarded": record.points_awarded,
        "milestones": [m.model_dump(mode="json") for m in record.milestones],
        "progress_history": [h.model_dump(mode="json") for h in record.progress_history],
        "grant_reason": record.grant_reason,
        "granted_by": record.granted_by,
        "last_activity_at": record.last_activity_at,
        "updated_at": record.updated_at,
    }


def _apply_query(stmt: Select, query: TemplateQuery) -> Select:
    if query.condition_type is not None:
        stmt = stmt.where(AchievementTemplateRow.condition_type == query.condition_type.value)
    if query.category is not None:
        stmt = stmt.where(AchievementTemplateRow.category == query.category)
    if query.difficulty is not None:
        stmt = stmt.where(AchievementTemplateRow.difficulty == query.difficulty.value)
    if query.status is not None:
        stmt = stmt.where(AchievementTemplateRow.status == query.status.value)
    if not query.include_hidden:
        stmt = stmt.where(AchievementTemplateRow.is_hidden.is_(False))
    if query.search:
        pattern = f"%{query.search}%"
        stmt = stmt.where(or_(
            AchievementTemplateRow.name.ilike(pattern),
            AchievementTemplateRow.description.ilike(pattern),
        ))
    return stmt


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SqlAchievementStore:
    """AchievementStore over async SQLAlchemy (PostgreSQL in production, SQLite in tests)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], timeout: float = 5.0) -> None:
        self._session_factory = session_factory
        self._timeout = timeout

    async def _transaction(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self._session_factory() as session:
            async with session.begin():
                return await fn(session)

    async def _run(self, op: str, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(self._transaction(fn), timeout=self._timeout)
        except TimeoutError as exc:
            logger.warning("storage_timeout", op=op, timeout=self._timeout)
            raise TransientStorageError(f"{op} timed out after {self._timeout}s", details={"op": op}) from exc
        except IntegrityError as exc:
            raise ConflictError(f"{op} violated a unique constraint", details={"op": op}) from exc
        except (OperationalError, DBAPIError) as exc:
            logger.warning("storage_unavailable", op=op, error=str(exc.orig))
            raise TransientStorageError(f"{op} failed: storage unavailable", details={"op": op}) from exc

    @staticmethod
    def _insert(session: AsyncSession, table: type) -> Any:
        if session.get_bind().dialect.name == "postgresql":
            return pg_insert(table)
        return sqlite_insert(table)

    # --- Templates ---

    async def get_template(self, template_id: str) -> AchievementTemplate | None:
        async def op(session: AsyncSession) -> AchievementTemplate | None:
            row = await session.get(AchievementTemplateRow, template_id)
            return _template_from_row(row) if row else None

        return await self._run("get_template", op)

    async def get_template_by_name(self, name: str) -> AchievementTemplate | None:
        async def op(session: AsyncSession) -> AchievementTemplate | None:
            result = await session.execute(
                select(AchievementTemplateRow).where(AchievementTemplateRow.name == name)
            )
            row = result.scalar_one_or_none()
            return _template_from_row(row) if row else None

        return await self._run("get_template_by_name", op)

    async def list_templates(self, query: TemplateQuery) -> tuple[list[AchievementTemplate], int]:
        async def op(session: AsyncSession) -> tuple[list[AchievementTemplate], int]:
            total = await session.scalar(
                _apply_query(select(func.count()).select_from(AchievementTemplateRow), query)
            )
            stmt = (
                _apply_query(select(AchievementTemplateRow), query)
                .order_by(AchievementTemplateRow.category, AchievementTemplateRow.name)
                .offset((query.page - 1) * query.limit)
                .limit(query.limit)
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [_template_from_row(r) for r in rows], total or 0

        return await self._run("list_templates", op)

    async def templates_for_metric(self, metric: str) -> list[AchievementTemplate]:
        async def op(session: AsyncSession) -> list[AchievementTemplate]:
            result = await session.execute(
                select(AchievementTemplateRow)
                .where(
                    AchievementTemplateRow.metric == metric,
                    AchievementTemplateRow.status == TemplateStatus.ACTIVE.value,
                )
                .order_by(AchievementTemplateRow.name)
            )
            return [_template_from_row(r) for r in result.scalars()]

        return await self._run("templates_for_metric", op)

    async def all_templates(self) -> list[AchievementTemplate]:
        async def op(session: AsyncSession) -> list[AchievementTemplate]:
            result = await session.execute(select(AchievementTemplateRow).order_by(AchievementTemplateRow.name))
            return [_template_from_row(r) for r in result.scalars()]

        return await self._run("all_templates", op)

    async def insert_template(self, template: AchievementTemplate) -> AchievementTemplate:
        async def op(session: AsyncSession) -> AchievementTemplate:
            row = AchievementTemplateRow(**_template_values(template), version=1)
            session.add(row)
            await session.flush()
            return template.model_copy(update={"version": 1})

        try:
            return await self._run("insert_template", op)
        except ConflictError as exc:
            raise ConflictError(
                f"Template '{template.name}' already exists.", code="DUPLICATE_NAME", retryable=False,
            ) from exc

    async def save_template(self, template: AchievementTemplate, expected_version: int) -> AchievementTemplate:
        async def op(session: AsyncSession) -> AchievementTemplate:
            values = _template_values(template)
            values.pop("id")
            values.pop("created_at")
            result = await session.execute(
                update(AchievementTemplateRow)
                .where(
                    AchievementTemplateRow.id == template.id,
                    AchievementTemplateRow.version == expected_version,
                )
                .values(**values, version=expected_version + 1)
            )
            if result.rowcount == 0:
                raise ConflictError(f"Template {template.id} was modified concurrently.")
            return template.model_copy(update={"version": expected_version + 1})

        return await self._run("save_template", op)

    async def delete_template(self, template_id: str) -> int:
        async def op(session: AsyncSession) -> int:
            # Explicit cascade; SQLite does not enforce ON DELETE without PRAGMA foreign_keys
            result = await session.execute(
                delete(UserAchievementRow).where(UserAchievementRow.template_id == template_id)
            )
            await session.execute(delete(AchievementTemplateRow).where(AchievementTemplateRow.id == template_id))
            return result.rowcount or 0

        return await self._run("delete_template", op)

    # --- Progress records ---

    async def get_progress(self, user_id: str, template_id: str) -> UserProgressRecord | None:
        async def op(session: AsyncSession) -> UserProgressRecord | None:
            result = await session.execute(
                select(UserAchievementRow).where(
                    UserAchievementRow.user_id == user_id,
                    UserAchievementRow.template_id == template_id,
                )
            )
            row = result.scalar_one_or_none()
            return _progress_from_row(row) if row else None

        return await self._run("get_progress", op)

    async def list_progress(self, user_id: str) -> list[UserProgressRecord]:
        async def op(session: AsyncSession) -> list[UserProgressRecord]:
            result = await session.execute(
                select(UserAchievementRow)
                .where(UserAchievementRow.user_id == user_id)
                .order_by(UserAchievementRow.template_id)
            )
            return [_progress_from_row(r) for r in result.scalars()]

        return await self._run("list_progress", op)

    async def insert_progress(self, record: UserProgressRecord) -> UserProgressRecord:
        async def op(session: AsyncSession) -> UserProgressRecord:
            row = UserAchievementRow(
                user_id=record.user_id,
                template_id=record.template_id,
                created_at=record.created_at,
                version=1,
                **_progress_values(record),
            )
            session.add(row)
            await session.flush()
            return record.model_copy(update={"version": 1})

        return await self._run("insert_progress", op)

    async def update_progress(self, record: UserProgressRecord, expected_version: int) -> UserProgressRecord:
        async def op(session: AsyncSession) -> UserProgressRecord:
            result = await session.execute(
                update(UserAchievementRow)
                .where(
                    UserAchievementRow.user_id == record.user_id,
                    UserAchievementRow.template_id == record.template_id,
                    UserAchievementRow.version == expected_version,
                )
                .values(**_progress_values(record), version=expected_version + 1)
            )
            if result.rowcount == 0:
                raise ConflictError(
                    f"Progress for ({record.user_id}, {record.template_id}) was modified concurrently.",
                    details={"expected_version": expected_version},
                )
            return record.model_copy(update={"version": expected_version + 1})

        return await self._run("update_progress", op)

    async def delete_user_progress(self, user_id: str) -> int:
        async def op(session: AsyncSession) -> int:
            result = await session.execute(delete(UserAchievementRow).where(UserAchievementRow.user_id == user_id))
            await session.execute(delete(RecentUnlockRow).where(RecentUnlockRow.user_id == user_id))
            await session.execute(
                delete(AchievementStatsBreakdownRow).where(AchievementStatsBreakdownRow.user_id == user_id)
            )
            await session.execute(delete(AchievementStatsRow).where(AchievementStatsRow.user_id == user_id))
            return result.rowcount or 0

        return await self._run("delete_user_progress", op)

    async def count_progress_by_status(self, template_id: str) -> dict[str, int]:
        async def op(session: AsyncSession) -> dict[str, int]:
            result = await session.execute(
                select(UserAchievementRow.status, func.count())
                .where(UserAchievementRow.template_id == template_id)
                .group_by(UserAchievementRow.status)
            )
            return {status: count for status, count in result.all()}

        return await self._run("count_progress_by_status", op)

    async def progress_user_ids(self, template_id: str | None = None) -> list[str]:
        async def op(session: AsyncSession) -> list[str]:
            stmt = select(UserAchievementRow.user_id).distinct().order_by(UserAchievementRow.user_id)
            if template_id is not None:
                stmt = stmt.where(UserAchievementRow.template_id == template_id)
            result = await session.execute(stmt)
            return list(result.scalars())

        return await self._run("progress_user_ids", op)

    async def unlocked_totals(self, since: datetime | None = None) -> list[UserTotals]:
        async def op(session: AsyncSession) -> list[UserTotals]:
            stmt = (
                select(
                    UserAchievementRow.user_id,
                    func.sum(UserAchievementRow.points_awarded),
                    func.sum(UserAchievementRow.unlock_count),
                )
                .where(
                    UserAchievementRow.unlock_count > 0,
                    UserAchievementRow.unlocked_at.is_not(None),
                )
                .group_by(UserAchievementRow.user_id)
            )
            if since is not None:
                stmt = stmt.where(UserAchievementRow.unlocked_at >= since)
            result = await session.execute(stmt)
            return [
                UserTotals(user_id=user_id, total_points=int(points or 0), achievement_count=int(count or 0))
                for user_id, points, count in result.all()
            ]

        return await self._run("unlocked_totals", op)

    # --- Aggregate stats ---

    async def apply_stats_delta(self, delta: StatsDelta, recent_limit: int) -> None:
        async def op(session: AsyncSession) -> None:
            now = utcnow()
            stmt = self._insert(session, AchievementStatsRow).values(
                user_id=delta.user_id,
                total_points=delta.points,
                achieved_count=1,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id"],
                set_={
                    "total_points": AchievementStatsRow.total_points + delta.points,
                    "achieved_count": AchievementStatsRow.achieved_count + 1,
                    "updated_at": now,
                },
            )
            await session.execute(stmt)

            for dimension, bucket in ((CATEGORY, delta.category), (DIFFICULTY, delta.difficulty.value)):
                bstmt = self._insert(session, AchievementStatsBreakdownRow).values(
                    user_id=delta.user_id, dimension=dimension, bucket=bucket, count=1,
                )
                bstmt = bstmt.on_conflict_do_update(
                    index_elements=["user_id", "dimension", "bucket"],
                    set_={"count": AchievementStatsBreakdownRow.count + 1},
                )
                await session.execute(bstmt)

            session.add(RecentUnlockRow(
                user_id=delta.user_id,
                template_id=delta.recent.template_id,
                template_name=delta.recent.template_name,
                points=delta.recent.points,
                unlocked_at=delta.recent.unlocked_at,
            ))
            await session.flush()
            keep = (
                select(RecentUnlockRow.id)
                .where(RecentUnlockRow.user_id == delta.user_id)
                .order_by(RecentUnlockRow.unlocked_at.desc(), RecentUnlockRow.id.desc())
                .limit(recent_limit)
            )
            await session.execute(
                delete(RecentUnlockRow).where(
                    RecentUnlockRow.user_id == delta.user_id,
                    RecentUnlockRow.id.not_in(keep),
                )
            )

        await self._run("apply_stats_delta", op)

    async def get_stats(self, user_id: str) -> AggregateStats | None:
        async def op(session: AsyncSession) -> AggregateStats | None:
            row = await session.get(AchievementStatsRow, user_id)
            if row is None:
                return None
            breakdown = await session.execute(
                select(AchievementStatsBreakdownRow).where(AchievementStatsBreakdownRow.user_id == user_id)
            )
            categories: dict[str, int] = {}
            difficulties: dict[str, int] = {}
            for b in breakdown.scalars():
                (categories if b.dimension == CATEGORY else difficulties)[b.bucket] = b.count
            recent = await session.execute(
                select(RecentUnlockRow)
                .where(RecentUnlockRow.user_id == user_id)
                .order_by(RecentUnlockRow.unlocked_at.desc(), RecentUnlockRow.id.desc())
            )
            return AggregateStats(
                user_id=user_id,
                total_points=row.total_points,
                achieved_count=row.achieved_count,
                category_counts=categories,
                difficulty_counts=difficulties,
                recent_unlocks=[
                    RecentUnlock(
                        template_id=r.template_id,
                        template_name=r.template_name,
                        points=r.points,
                        unlocked_at=_utc(r.unlocked_at),
                    )
                    for r in recent.scalars()
                ],
                rank=row.rank,
                updated_at=_utc(row.updated_at),
            )

        return await self._run("get_stats", op)

    async def replace_stats(self, stats: AggregateStats) -> None:
        async def op(session: AsyncSession) -> None:
            user_id = stats.user_id
            await session.execute(
                delete(AchievementStatsBreakdownRow).where(AchievementStatsBreakdownRow.user_id == user_id)
            )
            await session.execute(delete(RecentUnlockRow).where(RecentUnlockRow.user_id == user_id))
            now = stats.updated_at or utcnow()
            stmt = self._insert(session, AchievementStatsRow).values(
                user_id=user_id,
                total_points=stats.total_points,
                achieved_count=stats.achieved_count,
                rank=stats.rank,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id"],
                set_={
                    "total_points": stats.total_points,
                    "achieved_count": stats.achieved_count,
                    "rank": stats.rank,
                    "updated_at": now,
                },
            )
            await session.execute(stmt)
            for dimension, counts in ((CATEGORY, stats.category_counts), (DIFFICULTY, stats.difficulty_counts)):
                for bucket, count in counts.items():
                    session.add(AchievementStatsBreakdownRow(
                        user_id=user_id, dimension=dimension, bucket=bucket, count=count,
                    ))
            for recent in stats.recent_unlocks:
                session.add(RecentUnlockRow(
                    user_id=user_id,
                    template_id=recent.template_id,
                    template_name=recent.template_name,
                    points=recent.points,
                    unlocked_at=recent.unlocked_at,
                ))

        await self._run("replace_stats", op)

    async def set_ranks(self, ranks: dict[str, int]) -> None:
        async def op(session: AsyncSession) -> None:
            now = utcnow()
            await session.execute(update(AchievementStatsRow).values(rank=None))
            for user_id, rank in ranks.items():
                stmt = self._insert(session, AchievementStatsRow).values(
                    user_id=user_id, total_points=0, achieved_count=0, rank=rank, updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["user_id"],
                    set_={"rank": rank, "updated_at": now},
                )
                await session.execute(stmt)

        await self._run("set_ranks", op)

"""Achievement engine: applies activity events, manual grants and initialization.

Each (user, template) pair is an independent unit of work:

1. Load the progress record, or start a fresh one in memory
2. Skip if already achieved (non-repeatable) or prerequisites are unmet
3. Run the condition evaluator
4. Write with the version read in step 1 as precondition
5. On unlock: stats delta + notification

A version conflict re-runs steps 1-4 up to ``max_conflict_retries`` times.
Failures are reported per template and never abort the rest of the batch.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, TypeVar

import pydantic

from moments.achievements import leaderboard as leaderboard_module
from moments.achievements.errors import (
    AchievementError,
    ConflictError,
    NotFoundError,
    PrerequisiteNotMetError,
    ValidationError,
)
from moments.achievements.evaluator import Evaluation, evaluate, percentage
from moments.achievements.leaderboard import LeaderboardCache
from moments.achievements.notifier import Notifier, RedisNotifier
from moments.achievements.predicates import PredicateRegistry, default_predicates
from moments.achievements.prerequisites import ensure_eligible, is_eligible
from moments.achievements.schemas import (
    AchievementTemplate,
    ActivityEvent,
    ApplyEventResult,
    InitializeResult,
    Leaderboard,
    LeaderboardMetric,
    LeaderboardPeriod,
    Milestone,
    Progress,
    ProgressHistoryEntry,
    ProgressNotice,
    ProgressStatus,
    SkippedTemplate,
    SkipReason,
    TemplateFailure,
    UnlockResult,
    UserProgressRecord,
    utcnow,
)
from moments.achievements.stats import recompute_stats, record_unlock
from moments.achievements.store import AchievementStore
from moments.config import Settings, get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fields whose change means a record actually moved; timestamps alone do not count
_TRACKED_FIELDS = ("status", "progress", "current_streak", "best_streak", "last_streak_date", "unlock_count")


@dataclass
class _Outcome:
    template_id: str
    record: UserProgressRecord | None = None
    unlock: UnlockResult | None = None
    notices: list[ProgressNotice] = field(default_factory=list)
    skipped: SkipReason | None = None


def _changed(before: UserProgressRecord, after: UserProgressRecord) -> bool:
    return any(getattr(before, name) != getattr(after, name) for name in _TRACKED_FIELDS)


def sync_target(record: UserProgressRecord, template: AchievementTemplate) -> UserProgressRecord:
    """Re-sync a record whose template target changed since it was created."""
    if record.progress.target == template.target:
        return record
    current = min(record.progress.current, template.target)
    return record.model_copy(update={
        "progress": Progress(
            current=current,
            target=template.target,
            percentage=percentage(current, template.target),
        ),
    })


def start_new_cycle(record: UserProgressRecord) -> UserProgressRecord:
    """Reset a repeatable record for its next unlock.

    History fields are kept; partial milestones of the finished cycle are dropped.
    """
    return record.model_copy(update={
        "status": ProgressStatus.NOT_STARTED,
        "progress": Progress(current=0, target=record.progress.target, percentage=0),
        "current_streak": 0,
        "started_at": None,
        "milestones": [m for m in record.milestones if m.percentage >= 100],
    })


def append_history(
    record: UserProgressRecord,
    trigger: str,
    now: datetime,
    limit: int,
    related_id: str | None = None,
    value: int | None = None,
) -> UserProgressRecord:
    """Append one progress_history entry, keeping the newest ``limit``.

    ``value`` defaults to the record's current progress; a repeatable that
    just cycled passes the value it reached instead.
    """
    entry = ProgressHistoryEntry(
        value=record.progress.current if value is None else value,
        trigger=trigger,
        related_id=related_id,
        timestamp=now,
    )
    history = [*record.progress_history, entry]
    return record.model_copy(update={"progress_history": history[-max(1, limit):]})


def apply_unlock(
    record: UserProgressRecord,
    template: AchievementTemplate,
    now: datetime,
    manual: bool = False,
    milestone_limit: int = 20,
) -> tuple[UserProgressRecord, UnlockResult]:
    """Transition record to achieved and build the matching UnlockResult.

    Repeatable templates cycle straight back to not_started. Only the newest
    ``milestone_limit`` milestones are kept.
    """
    target = template.target
    unlock_count = record.unlock_count + 1
    milestones = [*record.milestones, Milestone(value=target, percentage=100, achieved_at=now, points=template.points)]
    unlocked = record.model_copy(update={
        "status": ProgressStatus.ACHIEVED,
        "progress": Progress(current=target, target=target, percentage=100),
        "started_at": record.started_at or now,
        "unlocked_at": record.unlocked_at or now,
        "last_unlocked_at": now,
        "unlock_count": unlock_count,
        "points_awarded": record.points_awarded + template.points,
        "milestones": milestones[-max(1, milestone_limit):],
        "updated_at": now,
    })
    if template.is_repeatable and not manual:
        unlocked = start_new_cycle(unlocked)

    result = UnlockResult(
        user_id=record.user_id,
        template_id=template.id,
        template_name=template.name,
        category=template.category,
        difficulty=template.difficulty,
        points_awarded=template.points,
        unlock_count=unlock_count,
        unlocked_at=now,
        manual=manual,
    )
    return unlocked, result


class AchievementEngine:
    """Public entry point: apply_event, grant_manually, compute_leaderboard, initialize_user_templates."""

    def __init__(
        self,
        store: AchievementStore,
        notifier: Notifier | None = None,
        predicates: PredicateRegistry | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
        leaderboard_cache: LeaderboardCache | None = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.predicates = predicates if predicates is not None else PredicateRegistry()
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        self.leaderboard_cache = leaderboard_cache

    @property
    def _milestone_limit(self) -> int:
        # Room for every recent unlock plus the partial milestones of the open cycle
        floor = self.settings.recent_unlocks_limit + len(self.settings.milestone_percentages)
        return max(self.settings.milestone_history_limit, floor)

    # ------------------------------------------------------------------
    # Activity events
    # ------------------------------------------------------------------

    async def apply_event(
        self,
        user_id: str,
        metric: str,
        delta: int = 1,
        event_date: date | datetime | None = None,
        payload: dict[str, Any] | None = None,
    ) -> ApplyEventResult:
        """Advance every active template tracking ``metric`` for one activity event.

        ``delta`` is an increment for count conditions and an absolute
        snapshot for milestone conditions. The caller guarantees
        at-most-once delivery; only streak conditions tolerate replays.
        """
        now = self.clock()
        try:
            event = ActivityEvent(
                user_id=user_id,
                metric=metric,
                delta=delta,
                event_date=event_date if event_date is not None else now.astimezone(timezone.utc).date(),
                payload=payload or {},
            )
        except pydantic.ValidationError as exc:
            raise ValidationError.from_pydantic(exc, "Invalid activity event.") from exc

        templates = [t for t in await self.store.templates_for_metric(metric) if t.is_available(now)]
        result = ApplyEventResult()
        if not templates:
            return result

        semaphore = asyncio.Semaphore(max(1, self.settings.max_parallel_templates))

        async def run(template: AchievementTemplate) -> _Outcome | TemplateFailure:
            async with semaphore:
                try:
                    return await self._with_retries(
                        f"apply_event:{template.id}",
                        lambda: self._apply_to_template(template, event, now),
                    )
                except AchievementError as exc:
                    logger.warning(
                        "Achievement template %s failed for user %s: %s (%s)",
                        template.id, user_id, exc.message, exc.code,
                    )
                    return TemplateFailure(
                        template_id=template.id,
                        code=exc.code,
                        message=exc.message,
                        retryable=exc.retryable,
                    )
                except Exception as exc:
                    logger.exception("Unexpected error on template %s for user %s", template.id, user_id)
                    return TemplateFailure(
                        template_id=template.id,
                        code="INTERNAL_ERROR",
                        message=f"{type(exc).__name__}: {exc}",
                        retryable=False,
                    )

        outcomes = await asyncio.gather(*(run(t) for t in templates))

        for outcome in outcomes:
            if isinstance(outcome, TemplateFailure):
                result.failures.append(outcome)
            elif outcome.skipped is not None:
                result.skipped.append(SkippedTemplate(template_id=outcome.template_id, reason=outcome.skipped))
            else:
                result.progressed.append(outcome.template_id)
                await self._after_write(outcome)
                if outcome.unlock is not None:
                    result.unlocks.append(outcome.unlock)

        if result.unlocks:
            logger.info(
                "User %s unlocked %d achievement(s) on %s",
                user_id, len(result.unlocks), metric,
            )
        return result

    async def _apply_to_template(
        self,
        template: AchievementTemplate,
        event: ActivityEvent,
        now: datetime,
    ) -> _Outcome:
        stored = await self.store.get_progress(event.user_id, template.id)
        record = stored or UserProgressRecord.new(event.user_id, template, now)

        if record.is_achieved:
            if not template.is_repeatable:
                return _Outcome(template.id, skipped=SkipReason.ALREADY_ACHIEVED)
            # Manually granted repeatable: this event opens the next cycle
            record = start_new_cycle(record)

        try:
            await ensure_eligible(self.store, event.user_id, template)
        except PrerequisiteNotMetError:
            return _Outcome(template.id, skipped=SkipReason.PREREQUISITES_NOT_MET)

        record = sync_target(record, template)
        evaluation = evaluate(template, record, event, self.predicates)
        updated, unlock, notices = self._advance(record, template, evaluation, now)
        if stored is not None and not _changed(stored, updated):
            return _Outcome(template.id, skipped=SkipReason.UNCHANGED)

        related_id = event.payload.get("related_id")
        updated = append_history(
            updated,
            event.metric,
            now,
            self.settings.progress_history_limit,
            related_id=related_id if isinstance(related_id, str) else None,
            value=evaluation.progress,
        )

        written = await self._write(stored, updated)
        return _Outcome(template.id, record=written, unlock=unlock, notices=notices)

    def _advance(
        self,
        record: UserProgressRecord,
        template: AchievementTemplate,
        evaluation: Evaluation,
        now: datetime,
    ) -> tuple[UserProgressRecord, UnlockResult | None, list[ProgressNotice]]:
        target = template.target
        old_pct = record.progress.percentage
        new_pct = percentage(evaluation.progress, target)
        moved = evaluation.progress > 0 or evaluation.streak.current_streak > 0

        milestones = list(record.milestones)
        notices: list[ProgressNotice] = []
        if not evaluation.completed:
            for pct in sorted(self.settings.milestone_percentages):
                if old_pct < pct <= new_pct < 100:
                    milestones.append(Milestone(value=evaluation.progress, percentage=pct, achieved_at=now))
                    notices.append(ProgressNotice(
                        user_id=record.user_id,
                        template_id=template.id,
                        template_name=template.name,
                        percentage=pct,
                        value=evaluation.progress,
                        target=target,
                    ))

        updated = record.model_copy(update={
            "status": ProgressStatus.IN_PROGRESS if moved else record.status,
            "progress": Progress(current=evaluation.progress, target=target, percentage=new_pct),
            "current_streak": evaluation.streak.current_streak,
            "best_streak": evaluation.streak.best_streak,
            "last_streak_date": evaluation.streak.last_streak_date,
            "started_at": record.started_at or (now if moved else None),
            "milestones": milestones[-self._milestone_limit:],
            "last_activity_at": now,
            "updated_at": now,
        })

        if not evaluation.completed:
            return updated, None, notices
        unlocked, unlock = apply_unlock(updated, template, now, milestone_limit=self._milestone_limit)
        return unlocked, unlock, notices

    async def _write(self, stored: UserProgressRecord | None, updated: UserProgressRecord) -> UserProgressRecord:
        if stored is None:
            return await self.store.insert_progress(updated)
        return await self.store.update_progress(updated, expected_version=stored.version)

    async def _with_retries(self, label: str, attempt: Callable[[], Awaitable[T]]) -> T:
        retries = max(1, self.settings.max_conflict_retries)
        for n in range(1, retries + 1):
            try:
                return await attempt()
            except ConflictError as exc:
                if not exc.retryable:
                    raise
                logger.debug("Version conflict on %s (attempt %d/%d)", label, n, retries)
        raise ConflictError(
            f"Gave up after {retries} conflicting writes.",
            details={"operation": label, "attempts": retries},
            code="CONFLICT_RETRIES_EXHAUSTED",
        )

    async def _after_write(self, outcome: _Outcome) -> None:
        """Stats delta and notifications for a successfully written record."""
        if outcome.unlock is not None:
            await self._record_stats(outcome.unlock)
            if self.notifier is not None:
                self.notifier.notify(outcome.unlock)
        if self.notifier is not None:
            for notice in outcome.notices:
                self.notifier.notify_progress(notice)

    async def _record_stats(self, unlock: UnlockResult) -> None:
        try:
            await record_unlock(self.store, unlock, self.settings.recent_unlocks_limit)
        except AchievementError:
            # Stats are derived; recompute_stats repairs them from the records
            logger.exception(
                "Failed to apply stats delta for user %s template %s",
                unlock.user_id, unlock.template_id,
            )

    # ------------------------------------------------------------------
    # Manual overrides
    # ------------------------------------------------------------------

    def _check_reason(self, reason: str | None) -> str:
        reason = (reason or "").strip()
        low, high = self.settings.grant_reason_min_length, self.settings.grant_reason_max_length
        if not low <= len(reason) <= high:
            raise ValidationError(
                f"Reason must be between {low} and {high} characters.",
                details={"length": len(reason)},
            )
        return reason

    async def _require_template(self, template_id: str) -> AchievementTemplate:
        template = await self.store.get_template(template_id)
        if template is None:
            raise NotFoundError("Template", template_id)
        return template

    async def grant_manually(
        self,
        admin_id: str,
        user_id: str,
        template_id: str,
        reason: str,
    ) -> UserProgressRecord:
        """Force-unlock a template for a user, bypassing gate and evaluator.

        Raises ConflictError(ALREADY_ACHIEVED) for an achieved non-repeatable
        record, so a template is still unlocked at most once.
        """
        reason = self._check_reason(reason)
        template = await self._require_template(template_id)

        async def attempt() -> tuple[UserProgressRecord, UnlockResult]:
            now = self.clock()
            stored = await self.store.get_progress(user_id, template_id)
            if stored is not None and stored.is_achieved and not template.is_repeatable:
                raise ConflictError(
                    f"User {user_id} already achieved template {template_id}.",
                    details={"user_id": user_id, "template_id": template_id},
                    code="ALREADY_ACHIEVED",
                    retryable=False,
                )
            record = sync_target(stored or UserProgressRecord.new(user_id, template, now), template)
            granted, unlock = apply_unlock(record, template, now, manual=True, milestone_limit=self._milestone_limit)
            granted = granted.model_copy(update={
                "grant_reason": reason,
                "granted_by": admin_id,
                "last_activity_at": now,
            })
            granted = append_history(granted, "manual_grant", now, self.settings.progress_history_limit)
            return await self._write(stored, granted), unlock

        record, unlock = await self._with_retries(f"grant:{template_id}", attempt)
        logger.info("Admin %s granted %s to %s: %s", admin_id, template.name, user_id, reason)
        await self._after_write(_Outcome(template_id, record=record, unlock=unlock))
        return record

    async def set_progress_manually(
        self,
        admin_id: str,
        user_id: str,
        template_id: str,
        value: int,
        reason: str,
    ) -> UserProgressRecord:
        """Administrative override of progress.current, clamped to [0, target].

        Reaching the target unlocks through the same path as an automatic unlock.
        """
        reason = self._check_reason(reason)
        template = await self._require_template(template_id)

        async def attempt() -> tuple[UserProgressRecord, UnlockResult | None]:
            now = self.clock()
            stored = await self.store.get_progress(user_id, template_id)
            if stored is not None and stored.is_achieved and not template.is_repeatable:
                raise ConflictError(
                    f"User {user_id} already achieved template {template_id}.",
                    details={"user_id": user_id, "template_id": template_id},
                    code="ALREADY_ACHIEVED",
                    retryable=False,
                )
            record = stored or UserProgressRecord.new(user_id, template, now)
            if record.is_achieved:
                record = start_new_cycle(record)
            record = sync_target(record, template)
            current = max(0, min(template.target, value))
            record = record.model_copy(update={
                "status": ProgressStatus.IN_PROGRESS if current > 0 else ProgressStatus.NOT_STARTED,
                "progress": Progress(current=current, target=template.target,
                                     percentage=percentage(current, template.target)),
                "started_at": record.started_at or (now if current > 0 else None),
                "grant_reason": reason,
                "granted_by": admin_id,
                "last_activity_at": now,
                "updated_at": now,
            })
            unlock = None
            if current >= template.target:
                record, unlock = apply_unlock(record, template, now, manual=True, milestone_limit=self._milestone_limit)
            record = append_history(record, "manual_set", now, self.settings.progress_history_limit, value=current)
            return await self._write(stored, record), unlock

        record, unlock = await self._with_retries(f"set_progress:{template_id}", attempt)
        logger.info(
            "Admin %s set progress of %s for %s to %d: %s",
            admin_id, template.name, user_id, record.progress.current, reason,
        )
        await self._after_write(_Outcome(template_id, record=record, unlock=unlock))
        return record

    async def reset_progress(
        self,
        admin_id: str,
        user_id: str,
        template_id: str,
        reason: str,
    ) -> UserProgressRecord:
        """Return a record to not_started, withdrawing its unlocks and points.

        The user's AggregateStats are recomputed afterwards.
        """
        reason = self._check_reason(reason)
        template = await self._require_template(template_id)

        async def attempt() -> UserProgressRecord:
            now = self.clock()
            stored = await self.store.get_progress(user_id, template_id)
            if stored is None:
                raise NotFoundError("Progress", f"{user_id}/{template_id}")
            fresh = UserProgressRecord.new(user_id, template, now).model_copy(update={
                "created_at": stored.created_at,
                "grant_reason": reason,
                "granted_by": admin_id,
                "last_activity_at": now,
            })
            fresh = append_history(fresh, "reset", now, self.settings.progress_history_limit)
            return await self.store.update_progress(fresh, expected_version=stored.version)

        record = await self._with_retries(f"reset:{template_id}", attempt)
        logger.info("Admin %s reset %s for %s: %s", admin_id, template.name, user_id, reason)
        await recompute_stats(self.store, user_id, recent_limit=self.settings.recent_unlocks_limit, now=self.clock())
        return record

    # ------------------------------------------------------------------
    # Initialization, leaderboard, lifecycle
    # ------------------------------------------------------------------

    async def initialize_user_templates(self, user_id: str) -> InitializeResult:
        """Create not_started records for every available template the user is eligible for."""
        now = self.clock()
        templates = [t for t in await self.store.all_templates() if t.is_available(now)]
        existing = {r.template_id for r in await self.store.list_progress(user_id)}
        created: list[str] = []
        for template in templates:
            if template.id in existing:
                continue
            if not await is_eligible(self.store, user_id, template):
                continue
            try:
                await self.store.insert_progress(UserProgressRecord.new(user_id, template, now))
            except ConflictError:
                # Created concurrently by an activity event
                logger.debug("Progress for %s/%s already exists", user_id, template.id)
                continue
            created.append(template.id)
        if created:
            logger.info("Initialized %d achievement records for %s", len(created), user_id)
        return InitializeResult(initialized=len(created), total=len(templates), template_ids=created)

    async def compute_leaderboard(
        self,
        metric: LeaderboardMetric | str = LeaderboardMetric.TOTAL_POINTS,
        period: LeaderboardPeriod | str = LeaderboardPeriod.ALL_TIME,
        limit: int | None = None,
    ) -> Leaderboard:
        return await leaderboard_module.compute_leaderboard(
            self.store,
            metric=metric,
            period=period,
            limit=limit if limit is not None else self.settings.leaderboard_default_limit,
            now=self.clock(),
            cache=self.leaderboard_cache,
            max_limit=self.settings.leaderboard_max_limit,
        )

    async def purge_user(self, user_id: str) -> int:
        """Delete every progress record and the stats of a deleted user account."""
        removed = await self.store.delete_user_progress(user_id)
        logger.info("Purged %d achievement records for %s", removed, user_id)
        return removed


def build_engine(
    store: AchievementStore,
    redis: object | None = None,
    settings: Settings | None = None,
    predicates: PredicateRegistry | None = None,
) -> AchievementEngine:
    """Wire an engine from settings: Redis notifier channels, leaderboard cache TTL, default predicates.

    Without a Redis client the engine runs with no notifier and no cache.
    """
    settings = settings or get_settings()
    notifier = None
    cache = None
    if redis is not None:
        notifier = RedisNotifier(
            redis,
            channel=settings.notification_channel,
            progress_channel=settings.progress_channel,
        )
        cache = LeaderboardCache(redis, ttl_seconds=settings.leaderboard_cache_ttl_seconds)
    return AchievementEngine(
        store,
        notifier=notifier,
        predicates=predicates if predicates is not None else default_predicates(),
        settings=settings,
        leaderboard_cache=cache,
    )

"""Condition evaluator: pure progress computation per condition type.

Each condition type maps to exactly one function. None of them touch
storage, so the engine can re-run them freely after a version conflict.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from moments.achievements.errors import AchievementError
from moments.achievements.predicates import PredicateContext, PredicateRegistry
from moments.achievements.schemas import (
    AchievementTemplate,
    ActivityEvent,
    ConditionType,
    StreakState,
    Timeframe,
    UserProgressRecord,
)
from moments.achievements.streaks import advance_streak


@dataclass(frozen=True)
class Evaluation:
    progress: int
    streak: StreakState
    completed: bool


def percentage(current: int, target: int) -> int:
    """floor(100 * current / target), clamped to [0, 100]."""
    if target <= 0:
        return 100
    return max(0, min(100, (100 * current) // target))


def _evaluate_count(
    template: AchievementTemplate,
    record: UserProgressRecord,
    event: ActivityEvent,
    predicates: PredicateRegistry | None,
) -> Evaluation:
    progress = min(template.target, record.progress.current + event.delta)
    return Evaluation(progress=progress, streak=record.streak, completed=progress >= template.target)


def _evaluate_milestone(
    template: AchievementTemplate,
    record: UserProgressRecord,
    event: ActivityEvent,
    predicates: PredicateRegistry | None,
) -> Evaluation:
    # delta is an absolute snapshot of the metric; reporting it twice is a no-op
    progress = min(template.target, max(record.progress.current, event.delta))
    return Evaluation(progress=progress, streak=record.streak, completed=progress >= template.target)


def _evaluate_streak(
    template: AchievementTemplate,
    record: UserProgressRecord,
    event: ActivityEvent,
    predicates: PredicateRegistry | None,
) -> Evaluation:
    streak = advance_streak(record.streak, event.event_date, template.timeframe or Timeframe.DAY)
    progress = max(record.progress.current, min(template.target, streak.current_streak))
    return Evaluation(progress=progress, streak=streak, completed=streak.current_streak >= template.target)


def _evaluate_predicate(
    template: AchievementTemplate,
    record: UserProgressRecord,
    event: ActivityEvent,
    predicates: PredicateRegistry | None,
) -> Evaluation:
    registry = predicates if predicates is not None else PredicateRegistry()
    fn = registry.get(template.id, template.condition_type)
    ctx = PredicateContext(
        user_id=event.user_id,
        metric=event.metric,
        delta=event.delta,
        event_date=event.event_date,
        record=record,
        payload=event.payload,
    )
    try:
        outcome = fn(ctx, template.params)
    except AchievementError:
        raise
    except Exception as exc:
        raise AchievementError(
            f"Predicate for template {template.id} failed: {exc}",
            details={"template_id": template.id},
            code="PREDICATE_FAILED",
        ) from exc

    current = record.progress.current
    if isinstance(outcome, bool):
        progress = template.target if outcome else current
    elif isinstance(outcome, int):
        progress = min(template.target, current + max(0, outcome))
    else:
        raise AchievementError(
            f"Predicate for template {template.id} returned {type(outcome).__name__}, expected bool or int.",
            details={"template_id": template.id},
            code="PREDICATE_INVALID_RESULT",
        )
    return Evaluation(progress=progress, streak=record.streak, completed=progress >= template.target)


_Evaluator = Callable[
    [AchievementTemplate, UserProgressRecord, ActivityEvent, PredicateRegistry | None],
    Evaluation,
]

EVALUATORS: dict[ConditionType, _Evaluator] = {
    ConditionType.COUNT: _evaluate_count,
    ConditionType.STREAK: _evaluate_streak,
    ConditionType.MILESTONE: _evaluate_milestone,
    ConditionType.LOCATION: _evaluate_predicate,
    ConditionType.SOCIAL: _evaluate_predicate,
    ConditionType.CUSTOM: _evaluate_predicate,
}


def evaluate(
    template: AchievementTemplate,
    record: UserProgressRecord,
    event: ActivityEvent,
    predicates: PredicateRegistry | None = None,
) -> Evaluation:
    """Compute new progress and streak state for one event.

    Progress never exceeds the template target and never goes below the
    record's current value.
    """
    return EVALUATORS[template.condition_type](template, record, event, predicates)

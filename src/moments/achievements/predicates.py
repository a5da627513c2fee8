"""Externally supplied predicates for location, social and custom conditions.

A predicate is a plain callable registered against one template id:

    registry = PredicateRegistry()

    @registry.register("3f2a...")
    def visited_three_cities(ctx: PredicateContext, params: dict) -> int:
        return 1 if ctx.payload.get("city") in params["cities"] else 0

It returns ``True``/``False`` (target reached or not) or an ``int``
progress increment. The engine treats the value opaquely.

A registry may also hold one fallback per condition type, used for any
template of that type with no predicate of its own. ``default_predicates``
ships the fallback for location templates.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from moments.achievements.errors import NotFoundError, ValidationError
from moments.achievements.schemas import ConditionType, UserProgressRecord

PredicateResult = bool | int


@dataclass(frozen=True)
class PredicateContext:
    user_id: str
    metric: str
    delta: int
    event_date: date
    record: UserProgressRecord
    payload: dict[str, Any] = field(default_factory=dict)


Predicate = Callable[[PredicateContext, dict[str, Any]], PredicateResult]


class PredicateRegistry:
    """Template id -> predicate. Owned by whoever builds the engine."""

    def __init__(self) -> None:
        self._predicates: dict[str, Predicate] = {}
        self._fallbacks: dict[ConditionType, Predicate] = {}

    def register(self, template_id: str, fn: Predicate | None = None) -> Any:
        """Register fn for template_id. Usable directly or as a decorator."""
        if fn is not None:
            self._predicates[template_id] = fn
            return fn

        def decorator(func: Predicate) -> Predicate:
            self._predicates[template_id] = func
            return func

        return decorator

    def register_fallback(self, condition_type: ConditionType, fn: Predicate) -> Predicate:
        self._fallbacks[ConditionType(condition_type)] = fn
        return fn

    def unregister(self, template_id: str) -> None:
        self._predicates.pop(template_id, None)

    def get(self, template_id: str, condition_type: ConditionType | None = None) -> Predicate:
        fn = self._predicates.get(template_id)
        if fn is None and condition_type is not None:
            fn = self._fallbacks.get(condition_type)
        if fn is None:
            raise NotFoundError("Predicate", template_id)
        return fn

    def __contains__(self, template_id: object) -> bool:
        return template_id in self._predicates

    def __len__(self) -> int:
        return len(self._predicates)


def distinct_places(ctx: PredicateContext, params: dict[str, Any]) -> int:
    """Location progress from the user's distinct place count.

    The event carries the count as ``payload["distinct_places"]``, or as
    ``delta`` when the payload has none. It is a snapshot like a milestone
    metric, so the increment is whatever the count gained over the record.
    """
    try:
        wanted = int(params["location"]["distinct_places"])
    except (KeyError, TypeError, ValueError):
        raise ValidationError(
            "Location template needs params.location.distinct_places.",
            details={"params": params},
        ) from None
    seen = ctx.payload.get("distinct_places", ctx.delta)
    if not isinstance(seen, int) or isinstance(seen, bool):
        raise ValidationError(
            "distinct_places must be an integer.",
            details={"distinct_places": seen},
        )
    return max(0, min(seen, wanted) - ctx.record.progress.current)


def default_predicates() -> PredicateRegistry:
    """Registry with the fallbacks that match the shipped template seed."""
    registry = PredicateRegistry()
    registry.register_fallback(ConditionType.LOCATION, distinct_places)
    return registry

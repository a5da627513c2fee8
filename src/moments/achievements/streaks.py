"""Streak bookkeeping over calendar days and ISO weeks."""

from __future__ import annotations

from datetime import date, timedelta

from moments.achievements.schemas import StreakState, Timeframe


def get_monday(d: date) -> date:
    """Get the Monday of the ISO week containing d."""
    return d - timedelta(days=d.weekday())


def get_week_iso(d: date) -> str:
    """Get ISO week string e.g. '2026-W09'. Uses %G-W%V (ISO year + ISO week)."""
    return d.strftime("%G-W%V")


def unit_index(d: date, timeframe: Timeframe) -> int:
    """Monotonic index of the streak unit containing d.

    Consecutive units differ by exactly one, which keeps year boundaries
    (and ISO week 53) out of the comparison.
    """
    if timeframe == Timeframe.WEEK:
        # date(1, 1, 1) is a Monday, ordinal 1
        return (get_monday(d).toordinal() - 1) // 7
    return d.toordinal()


def advance_streak(state: StreakState, event_date: date, timeframe: Timeframe) -> StreakState:
    """Apply one qualifying activity on event_date to a streak.

    Same unit as the last activity: unchanged.
    Next unit: current + 1.
    Later unit (gap) or no previous activity: restart at 1.
    Earlier unit: ignored, a late event never rewinds the streak.
    """
    if state.last_streak_date is None:
        current = 1
    else:
        gap = unit_index(event_date, timeframe) - unit_index(state.last_streak_date, timeframe)
        if gap <= 0:
            return state
        current = state.current_streak + 1 if gap == 1 else 1

    return StreakState(
        current_streak=current,
        best_streak=max(state.best_streak, current),
        last_streak_date=event_date,
    )

"""Streak unit tests: day and ISO week boundaries."""

from datetime import date

from moments.achievements.schemas import StreakState, Timeframe
from moments.achievements.streaks import advance_streak, get_monday, get_week_iso, unit_index


class TestWeekISO:
    """Test ISO week string generation."""

    def test_monday_is_new_week(self):
        assert get_week_iso(date(2026, 2, 23)) == "2026-W09"

    def test_sunday_is_same_week(self):
        assert get_week_iso(date(2026, 3, 1)) == "2026-W09"

    def test_year_boundary_week(self):
        """Dec 29, 2025 is W01 of 2026."""
        assert get_week_iso(date(2025, 12, 29)) == "2026-W01"

    def test_get_monday(self):
        assert get_monday(date(2026, 2, 27)) == date(2026, 2, 23)
        assert get_monday(date(2026, 2, 23)) == date(2026, 2, 23)


class TestUnitIndex:
    """Consecutive units differ by exactly one."""

    def test_days(self):
        assert unit_index(date(2026, 1, 1), Timeframe.DAY) - unit_index(date(2025, 12, 31), Timeframe.DAY) == 1

    def test_sunday_to_monday_is_next_week(self):
        sun, mon = date(2026, 3, 1), date(2026, 3, 2)
        assert unit_index(mon, Timeframe.WEEK) - unit_index(sun, Timeframe.WEEK) == 1

    def test_same_week(self):
        assert unit_index(date(2026, 3, 2), Timeframe.WEEK) == unit_index(date(2026, 3, 8), Timeframe.WEEK)

    def test_week_53_rolls_over(self):
        # 2026-12-28 is ISO 2026-W53, 2027-01-04 is 2027-W01
        assert unit_index(date(2027, 1, 4), Timeframe.WEEK) - unit_index(date(2026, 12, 28), Timeframe.WEEK) == 1


class TestAdvanceStreak:
    """Streak transitions."""

    def test_daily_sequence(self):
        state = StreakState()
        for day in (1, 2, 3):
            state = advance_streak(state, date(2026, 3, day), Timeframe.DAY)
        assert state.current_streak == 3
        assert state.best_streak == 3
        assert state.last_streak_date == date(2026, 3, 3)

    def test_duplicate_day_returns_same_state(self):
        state = advance_streak(StreakState(), date(2026, 3, 1), Timeframe.DAY)
        assert advance_streak(state, date(2026, 3, 1), Timeframe.DAY) is state

    def test_gap_resets_and_keeps_best(self):
        state = StreakState(current_streak=4, best_streak=4, last_streak_date=date(2026, 3, 4))
        state = advance_streak(state, date(2026, 3, 10), Timeframe.DAY)
        assert state.current_streak == 1
        assert state.best_streak == 4

    def test_late_event_is_ignored(self):
        state = StreakState(current_streak=2, best_streak=2, last_streak_date=date(2026, 3, 4))
        assert advance_streak(state, date(2026, 3, 3), Timeframe.DAY) is state

    def test_weekly_streak(self):
        state = StreakState()
        state = advance_streak(state, date(2026, 3, 2), Timeframe.WEEK)  # Mon W10
        state = advance_streak(state, date(2026, 3, 6), Timeframe.WEEK)  # Fri W10, no-op
        state = advance_streak(state, date(2026, 3, 15), Timeframe.WEEK)  # Sun W11
        assert state.current_streak == 2

    def test_weekly_gap_resets(self):
        state = StreakState(current_streak=3, best_streak=3, last_streak_date=date(2026, 3, 2))
        state = advance_streak(state, date(2026, 3, 16), Timeframe.WEEK)  # two weeks later
        assert state.current_streak == 1

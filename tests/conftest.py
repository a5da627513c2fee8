"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio

from moments.achievements.engine import AchievementEngine
from moments.achievements.schemas import AchievementTemplate
from moments.achievements.sql_store import SqlAchievementStore
from moments.achievements.store import InMemoryAchievementStore
from moments.config import Settings
from moments.database import close_db, create_tables, get_session_factory, init_db

START = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)  # Monday


class FakeClock:
    """Deterministic clock handed to the engine."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def make_template(**overrides: Any) -> AchievementTemplate:
    data: dict[str, Any] = {
        "name": "First Moment",
        "condition_type": "count",
        "metric": "moments_created",
        "target": 1,
        "points": 10,
    }
    data.update(overrides)
    return AchievementTemplate.model_validate(data)


@pytest.fixture
def new_template():
    """Factory for valid templates; keyword arguments override the defaults."""
    return make_template


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        max_conflict_retries=3,
        max_parallel_templates=4,
        recent_unlocks_limit=3,
        milestone_percentages=[25, 50, 75],
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryAchievementStore:
    return InMemoryAchievementStore()


@pytest.fixture
def engine(store: InMemoryAchievementStore, settings: Settings, clock: FakeClock) -> AchievementEngine:
    return AchievementEngine(store, settings=settings, clock=clock)


@pytest_asyncio.fixture
async def sql_store() -> AsyncGenerator[SqlAchievementStore, None]:
    """SQL store over a fresh in-memory SQLite database."""
    await init_db("sqlite+aiosqlite://")
    await create_tables()
    yield SqlAchievementStore(get_session_factory(), timeout=5.0)
    await close_db()


@pytest.fixture
def sql_engine(sql_store: SqlAchievementStore, settings: Settings, clock: FakeClock) -> AchievementEngine:
    # One template at a time: the in-memory SQLite database has a single connection
    single = settings.model_copy(update={"max_parallel_templates": 1})
    return AchievementEngine(sql_store, settings=single, clock=clock)

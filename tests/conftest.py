from collections.abc import Iterator
from typing import Any

import pytest
from sqlalchemy.orm import sessionmaker

from db import init_database
from engine import DispatchEngine
from pubsub import InMemoryBroadcaster
from settings import (
    DatabaseSettings,
    FareSettings,
    MatchingSettings,
    RedisSettings,
    Settings,
)

# Lower Manhattan to Midtown, about 5.2 km apart.
NYC_PICKUP = (-74.006, 40.7128)
NYC_DESTINATION = (-73.996, 40.7589)


@pytest.fixture
def db_url(tmp_path) -> str:
    """File-backed SQLite so worker threads share one database."""
    return f"sqlite:///{tmp_path / 'dispatch.db'}"


@pytest.fixture
def session_factory(db_url: str) -> Iterator[sessionmaker[Any]]:
    factory = init_database(db_url)
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def settings(db_url: str) -> Settings:
    """Deterministic settings: no surge, no background matcher."""
    return Settings(
        database=DatabaseSettings(url=db_url),
        fare=FareSettings(surge_enabled=False),
        matching=MatchingSettings(background_enabled=False),
        redis=RedisSettings(enabled=False),
    )


@pytest.fixture
def broadcaster() -> InMemoryBroadcaster:
    return InMemoryBroadcaster()


@pytest.fixture
def engine(settings: Settings, broadcaster: InMemoryBroadcaster) -> Iterator[DispatchEngine]:
    dispatch = DispatchEngine.from_settings(settings, broadcaster=broadcaster)
    yield dispatch
    dispatch.close()


@pytest.fixture
def online_driver(engine: DispatchEngine):
    """Factory that registers a driver at a point and makes it available."""

    def make(driver_id: str, location: tuple[float, float] = NYC_PICKUP):
        engine.register_driver(driver_id, location)
        return engine.set_driver_availability(driver_id, True)

    return make

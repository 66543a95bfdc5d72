"""
Pytest configuration and fixtures for agentrun tests.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import AsyncGenerator, AsyncIterator, Callable, Generator, TypeVar
from unittest.mock import patch

import pytest

from agentrun.config import Settings, clear_settings_cache
from agentrun.coordinator.registry import build_default_registry
from agentrun.coordinator.service import RunService
from agentrun.persistence import Database, EventLog, RunStore
from agentrun.workflows import WorkflowServices, build_dry_run_services

T = TypeVar("T")

TEST_MODELS = ["model-a", "model-b", "model-c"]


async def collect(events: AsyncIterator[T]) -> list[T]:
    """Drain an async iterator into a list."""
    return [item async for item in events]


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture
def mock_env_vars(temp_dir: Path) -> Generator[dict[str, str], None, None]:
    """Provide environment variables pointing every file at temp_dir."""
    env_vars = {
        "DATABASE_PATH": str(temp_dir / "data" / "agentrun.db"),
        "LOG_LEVEL": "DEBUG",
        "DRY_RUN": "true",
        "STREAM_POLL_INTERVAL_MS": "5",
        "CONSENSUS_MODELS": '["model-a", "model-b", "model-c"]',
        "CONSENSUS_MIN_ANALYSES": "2",
        "RESEARCH_MAX_TASKS": "5",
        "RESEARCH_MIN_SUCCESS_RATE": "0.5",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str]) -> Generator[Settings, None, None]:
    """Provide a Settings instance with test configuration."""
    from agentrun.config import get_settings

    settings = get_settings()
    settings.ensure_directories()
    yield settings
    clear_settings_cache()


@pytest.fixture
async def db(mock_settings: Settings) -> AsyncGenerator[Database, None]:
    """A connected database in temp_dir."""
    database = Database(mock_settings.DATABASE_PATH)
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def run_store(db: Database) -> RunStore:
    return RunStore(db)


@pytest.fixture
def event_log(db: Database) -> EventLog:
    return EventLog(db)


@pytest.fixture
def services() -> WorkflowServices:
    """Offline step services that always succeed."""
    return build_dry_run_services()


@pytest.fixture
async def make_service(
    run_store: RunStore, event_log: EventLog, mock_settings: Settings
) -> AsyncGenerator[Callable[..., RunService], None]:
    """Factory for RunServices over the test database.

    Every service created is shut down at teardown.
    """
    created: list[RunService] = []

    def factory(services: WorkflowServices | None = None) -> RunService:
        registry = build_default_registry(services or build_dry_run_services(), mock_settings)
        service = RunService(run_store, event_log, registry)
        created.append(service)
        return service

    yield factory

    for service in created:
        await service.shutdown()


@pytest.fixture
def service(make_service: Callable[..., RunService], services: WorkflowServices) -> RunService:
    """A RunService wired to the offline services."""
    return make_service(services)


@pytest.fixture
def consensus_input() -> dict[str, object]:
    return {"stockSymbol": "AAPL", "exchangeAcronym": "NASDAQ"}


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()

from __future__ import annotations

import pytest

from tagpush.core.config import Settings, get_settings
from tagpush.persistence.db import Database
from tagpush.services.registry import SqlDeviceRegistry
from tagpush.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Counters and cached settings are process-wide; isolate every test.
    reset_telemetry()
    get_settings.cache_clear()
    yield
    reset_telemetry()
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        queue_execution_mode="inline",
        queue_backoff_base_ms=0,
        push_gateway_provider="fake",
        api_key="test-api-key",
        device_secret="test-device-secret",
    )


@pytest.fixture
async def database(settings: Settings) -> Database:
    # Each test gets its own in-memory SQLite database.
    db = Database(settings=settings)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def registry(database: Database) -> SqlDeviceRegistry:
    return SqlDeviceRegistry(database)

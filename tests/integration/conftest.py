"""Fixtures for integration tests against SQLite and fake Redis."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
from fakeredis import FakeAsyncRedis

from drivehub.database.connection import close_db, init_db


@pytest.fixture
async def database(tmp_path: Path) -> AsyncGenerator[None, None]:
    """Initialize a fresh SQLite database with all tables."""
    await init_db(f"sqlite:///{tmp_path}/drivehub.db", create_tables=True)
    yield
    await close_db()


@pytest.fixture
async def redis_client() -> AsyncGenerator[FakeAsyncRedis, None]:
    client = FakeAsyncRedis()
    yield client
    await client.aclose()

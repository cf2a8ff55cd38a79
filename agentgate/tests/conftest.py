from __future__ import annotations

from typing import AsyncIterator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from agentgate.apps.api.deps import reset_dependency_state
from agentgate.core.config import get_settings
from agentgate.domain.models import Base
from agentgate.services.ledger import reset_ledger_state
from agentgate.services.runs import SqlRunStore
from agentgate.services.telemetry import reset_telemetry
from agentgate.tests.utils.clock import FakeClock


@pytest.fixture(autouse=True)
def isolated_state(monkeypatch) -> None:
    # Keep tests off Redis and the real model endpoint unless a test opts in.
    monkeypatch.setenv("LEDGER_BACKEND", "memory")
    monkeypatch.setenv("LLM_PROVIDER", "fake")
    get_settings.cache_clear()
    reset_ledger_state()
    reset_dependency_state()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_ledger_state()
    reset_dependency_state()
    reset_telemetry()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def session_factory(tmp_path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    # File-backed SQLite so every session sees the same database.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'agentgate.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def run_store(session_factory) -> SqlRunStore:
    return SqlRunStore(session_factory)

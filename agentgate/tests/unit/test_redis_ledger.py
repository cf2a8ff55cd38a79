from __future__ import annotations

import json
from decimal import Decimal
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from agentgate.core.errors import LedgerUnavailableError
from agentgate.services.ledger import (
    InMemoryLedgerStore,
    RedisLedgerStore,
    _limits_payload,
    get_ledger_store,
)
from agentgate.services.tiers import TIER_LIMITS
from agentgate.tests.utils.clock import FakeClock


class _ScriptedRedis:
    # Record commands and return canned replies instead of talking to Redis.
    def __init__(self, eval_reply: Any = None, hash_reply: dict[str, str] | None = None) -> None:
        self.eval_reply = eval_reply
        self.hash_reply = hash_reply or {}
        self.commands: list[tuple[Any, ...]] = []

    async def eval(self, script: str, numkeys: int, *args: Any) -> Any:
        self.commands.append(("eval", numkeys, *args))
        return self.eval_reply

    async def hincrby(self, key: str, field: str, amount: int) -> int:
        self.commands.append(("hincrby", key, field, amount))
        return amount

    async def hgetall(self, key: str) -> dict[str, str]:
        self.commands.append(("hgetall", key))
        return self.hash_reply

    async def hset(self, key: str, field: str, value: Any) -> int:
        self.commands.append(("hset", key, field, value))
        return 1


class _BrokenRedis(_ScriptedRedis):
    async def eval(self, script: str, numkeys: int, *args: Any) -> Any:
        raise RedisConnectionError("connection refused")

    async def hincrby(self, key: str, field: str, amount: int) -> int:
        raise RedisConnectionError("connection refused")


def test_limits_payload_uses_integer_micro_dollars() -> None:
    payload = json.loads(_limits_payload(TIER_LIMITS))
    assert payload["starter"] == {"rpm": 30, "concurrent": 5, "budget_micros": 25_000_000}
    assert set(payload) == {"free", "starter", "growth", "agency"}


@pytest.mark.asyncio
async def test_try_begin_parses_script_reply(clock: FakeClock) -> None:
    now_ms = int(clock() * 1000)
    redis = _ScriptedRedis(eval_reply=["", "starter", 30, 2, 24_500_000, now_ms])
    store = RedisLedgerStore(redis=redis, prefix="test:ledger", window_seconds=60, time_provider=clock)
    outcome = await store.try_begin("ws-1")
    assert outcome.admitted is True
    assert outcome.entry.tier == "starter"
    assert outcome.entry.spent_this_period == Decimal("24.500000")
    assert redis.commands[0][:3] == ("eval", 1, "test:ledger:ws-1")
    assert redis.commands[0][3:5] == (now_ms, 60_000)


@pytest.mark.asyncio
async def test_try_begin_denial_carries_reason(clock: FakeClock) -> None:
    redis = _ScriptedRedis(eval_reply=["rate_limit_exceeded", "free", 10, 0, 0, -1])
    store = RedisLedgerStore(redis=redis, prefix="p", window_seconds=60, time_provider=clock)
    outcome = await store.try_begin("ws")
    assert outcome.admitted is False
    assert outcome.reason == "rate_limit_exceeded"
    assert outcome.entry.last_request_at is None


@pytest.mark.asyncio
async def test_add_cost_increments_micro_dollars() -> None:
    redis = _ScriptedRedis()
    store = RedisLedgerStore(redis=redis, prefix="p", window_seconds=60)
    await store.add_cost("ws", Decimal("0.10"))
    assert redis.commands == [("hincrby", "p:ws", "spent_micros", 100_000)]


@pytest.mark.asyncio
async def test_snapshot_reports_effective_window(clock: FakeClock) -> None:
    stale_ms = int((clock() - 120) * 1000)
    redis = _ScriptedRedis(
        hash_reply={
            "tier": "growth",
            "window": "42",
            "concurrent": "3",
            "spent_micros": "1500000",
            "last_ms": str(stale_ms),
        }
    )
    store = RedisLedgerStore(redis=redis, prefix="p", window_seconds=60, time_provider=clock)
    entry = await store.snapshot("ws")
    assert entry.tier == "growth"
    assert entry.requests_in_window == 0
    assert entry.concurrent_runs == 3
    assert entry.spent_this_period == Decimal("1.500000")


@pytest.mark.asyncio
async def test_redis_errors_surface_as_ledger_unavailable() -> None:
    store = RedisLedgerStore(redis=_BrokenRedis(), prefix="p", window_seconds=60)
    with pytest.raises(LedgerUnavailableError):
        await store.try_begin("ws")
    with pytest.raises(LedgerUnavailableError):
        await store.add_cost("ws", Decimal("1"))


def test_factory_selects_memory_backend() -> None:
    # The autouse fixture sets LEDGER_BACKEND=memory.
    store = get_ledger_store()
    assert isinstance(store, InMemoryLedgerStore)
    assert get_ledger_store() is store

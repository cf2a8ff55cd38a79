"""Per-workspace usage ledger backing quota admission.

The ledger is the only shared mutable state in the gateway. Every mutation is
keyed by workspace and atomic: a Lua script per operation on Redis, and a
per-workspace ``asyncio.Lock`` in memory. Storage failures surface as
``LedgerUnavailableError`` so the quota policy can decide how to degrade.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Mapping, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from agentgate.core.config import get_settings
from agentgate.core.errors import LedgerUnavailableError
from agentgate.services.tiers import DEFAULT_TIER, TIER_LIMITS, TierLimits, evaluate, limits_for_tier


logger = logging.getLogger(__name__)

_MICROS = Decimal("1000000")


@dataclass(frozen=True)
class LedgerEntry:
    tier: str = DEFAULT_TIER
    requests_in_window: int = 0
    concurrent_runs: int = 0
    spent_this_period: Decimal = Decimal("0")
    last_request_at: float | None = None


@dataclass(frozen=True)
class BeginOutcome:
    # Result of the atomic check-and-increment performed at admission.
    admitted: bool
    reason: str | None
    entry: LedgerEntry


class LedgerStore(Protocol):
    async def try_begin(self, workspace_id: str) -> BeginOutcome: ...

    async def end(self, workspace_id: str) -> None: ...

    async def add_cost(self, workspace_id: str, amount: Decimal) -> None: ...

    async def snapshot(self, workspace_id: str) -> LedgerEntry: ...

    async def set_tier(self, workspace_id: str, tier: str) -> None: ...

    async def rollover_period(self, workspace_id: str) -> None: ...


def _to_micros(amount: Decimal) -> int:
    # Spend is stored as integer micro-dollars so Redis arithmetic stays exact.
    return int((amount * _MICROS).to_integral_value(rounding=ROUND_HALF_UP))


def _from_micros(micros: int) -> Decimal:
    return (Decimal(micros) / _MICROS).quantize(Decimal("0.000001"))


def _check_amount(amount: Decimal) -> Decimal:
    # Spend only grows outside of an explicit rollover.
    if amount < 0:
        raise ValueError("cost amount must be non-negative")
    return amount


def window_expired(entry: LedgerEntry, *, now: float, window_seconds: int) -> bool:
    # The request window resets once the last recorded call is older than the window.
    if entry.last_request_at is None:
        return True
    return now - entry.last_request_at > window_seconds


class InMemoryLedgerStore:
    """Process-local ledger for development and tests."""

    def __init__(
        self,
        *,
        window_seconds: int = 60,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._window_seconds = window_seconds
        self._time_provider = time_provider or time.time
        self._entries: dict[str, LedgerEntry] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def seed(self, workspace_id: str, entry: LedgerEntry) -> None:
        # Preload an entry, mainly for tests that start from mid-period usage.
        self._entries[workspace_id] = entry

    async def try_begin(self, workspace_id: str) -> BeginOutcome:
        async with self._locks[workspace_id]:
            now = self._time_provider()
            entry = self._entries.get(workspace_id, LedgerEntry())
            if window_expired(entry, now=now, window_seconds=self._window_seconds):
                entry = replace(entry, requests_in_window=0)
            reason = evaluate(entry, limits_for_tier(entry.tier))
            if reason is not None:
                return BeginOutcome(admitted=False, reason=reason, entry=entry)
            entry = replace(
                entry,
                requests_in_window=entry.requests_in_window + 1,
                concurrent_runs=entry.concurrent_runs + 1,
                last_request_at=now,
            )
            self._entries[workspace_id] = entry
            return BeginOutcome(admitted=True, reason=None, entry=entry)

    async def end(self, workspace_id: str) -> None:
        async with self._locks[workspace_id]:
            entry = self._entries.get(workspace_id, LedgerEntry())
            self._entries[workspace_id] = replace(
                entry, concurrent_runs=max(entry.concurrent_runs - 1, 0)
            )

    async def add_cost(self, workspace_id: str, amount: Decimal) -> None:
        amount = _check_amount(amount)
        async with self._locks[workspace_id]:
            entry = self._entries.get(workspace_id, LedgerEntry())
            self._entries[workspace_id] = replace(
                entry, spent_this_period=entry.spent_this_period + amount
            )

    async def snapshot(self, workspace_id: str) -> LedgerEntry:
        async with self._locks[workspace_id]:
            entry = self._entries.get(workspace_id, LedgerEntry())
        now = self._time_provider()
        if window_expired(entry, now=now, window_seconds=self._window_seconds):
            entry = replace(entry, requests_in_window=0)
        return entry

    async def set_tier(self, workspace_id: str, tier: str) -> None:
        async with self._locks[workspace_id]:
            entry = self._entries.get(workspace_id, LedgerEntry())
            self._entries[workspace_id] = replace(entry, tier=tier)

    async def rollover_period(self, workspace_id: str) -> None:
        async with self._locks[workspace_id]:
            entry = self._entries.get(workspace_id, LedgerEntry())
            self._entries[workspace_id] = replace(entry, spent_this_period=Decimal("0"))


# Check order mirrors tiers.evaluate: rate, then concurrency, then budget.
_TRY_BEGIN_LUA = r"""
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local limits = cjson.decode(ARGV[3])
local default_tier = ARGV[4]

local data = redis.call("HMGET", KEYS[1], "tier", "window", "concurrent", "spent_micros", "last_ms")
local tier = data[1]
if not tier then
  tier = default_tier
end
local window = tonumber(data[2]) or 0
local concurrent = tonumber(data[3]) or 0
local spent = tonumber(data[4]) or 0
local last_ms = tonumber(data[5])

if last_ms == nil or (now_ms - last_ms) > window_ms then
  window = 0
end

local limit = limits[tier] or limits[default_tier]
local reason = ""
if window >= limit["rpm"] then
  reason = "rate_limit_exceeded"
elseif concurrent >= limit["concurrent"] then
  reason = "concurrency_limit_exceeded"
elseif spent >= limit["budget_micros"] then
  reason = "budget_exhausted"
end

if reason == "" then
  window = window + 1
  concurrent = concurrent + 1
  last_ms = now_ms
  redis.call("HSET", KEYS[1], "tier", tier, "window", window, "concurrent", concurrent, "last_ms", now_ms)
end

return {reason, tier, window, concurrent, spent, last_ms or -1}
"""

_END_LUA = r"""
local concurrent = tonumber(redis.call("HGET", KEYS[1], "concurrent")) or 0
if concurrent > 0 then
  concurrent = concurrent - 1
end
redis.call("HSET", KEYS[1], "concurrent", concurrent)
return concurrent
"""


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def _get_redis() -> Redis:
    # Cache Redis connections per event loop to avoid reconnecting per run.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            _redis_loop = current_loop
    return _redis_pool


def _limits_payload(table: Mapping[str, TierLimits]) -> str:
    # Serialize the tier table for the admission script.
    return json.dumps(
        {
            tier: {
                "rpm": limits.requests_per_minute,
                "concurrent": limits.max_concurrent,
                "budget_micros": _to_micros(limits.monthly_budget_usd),
            }
            for tier, limits in table.items()
        },
        sort_keys=True,
    )


class RedisLedgerStore:
    """Shared ledger stored as one Redis hash per workspace."""

    def __init__(
        self,
        *,
        redis: Redis | None = None,
        prefix: str | None = None,
        window_seconds: int | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._redis = redis
        self._prefix = prefix or settings.ledger_redis_prefix
        self._window_seconds = window_seconds or settings.ledger_window_seconds
        self._time_provider = time_provider or time.time
        self._limits_json = _limits_payload(TIER_LIMITS)

    def _key(self, workspace_id: str) -> str:
        return f"{self._prefix}:{workspace_id}"

    async def _client(self) -> Redis:
        if self._redis is not None:
            return self._redis
        return await _get_redis()

    async def try_begin(self, workspace_id: str) -> BeginOutcome:
        now_ms = int(self._time_provider() * 1000)
        try:
            redis = await self._client()
            result = await redis.eval(
                _TRY_BEGIN_LUA,
                1,
                self._key(workspace_id),
                now_ms,
                self._window_seconds * 1000,
                self._limits_json,
                DEFAULT_TIER,
            )
        except RedisError as exc:
            raise LedgerUnavailableError(f"ledger try_begin failed for {workspace_id}") from exc
        reason = str(result[0]) or None
        last_ms = int(result[5])
        entry = LedgerEntry(
            tier=str(result[1]),
            requests_in_window=int(result[2]),
            concurrent_runs=int(result[3]),
            spent_this_period=_from_micros(int(result[4])),
            last_request_at=last_ms / 1000.0 if last_ms >= 0 else None,
        )
        return BeginOutcome(admitted=reason is None, reason=reason, entry=entry)

    async def end(self, workspace_id: str) -> None:
        try:
            redis = await self._client()
            await redis.eval(_END_LUA, 1, self._key(workspace_id))
        except RedisError as exc:
            raise LedgerUnavailableError(f"ledger end failed for {workspace_id}") from exc

    async def add_cost(self, workspace_id: str, amount: Decimal) -> None:
        micros = _to_micros(_check_amount(amount))
        try:
            redis = await self._client()
            await redis.hincrby(self._key(workspace_id), "spent_micros", micros)
        except RedisError as exc:
            raise LedgerUnavailableError(f"ledger add_cost failed for {workspace_id}") from exc

    async def snapshot(self, workspace_id: str) -> LedgerEntry:
        try:
            redis = await self._client()
            data = await redis.hgetall(self._key(workspace_id))
        except RedisError as exc:
            raise LedgerUnavailableError(f"ledger snapshot failed for {workspace_id}") from exc
        last_ms = data.get("last_ms")
        entry = LedgerEntry(
            tier=data.get("tier") or DEFAULT_TIER,
            requests_in_window=int(data.get("window") or 0),
            concurrent_runs=int(data.get("concurrent") or 0),
            spent_this_period=_from_micros(int(data.get("spent_micros") or 0)),
            last_request_at=int(last_ms) / 1000.0 if last_ms else None,
        )
        # Report the effective window so callers see the same count admission would.
        if window_expired(entry, now=self._time_provider(), window_seconds=self._window_seconds):
            entry = replace(entry, requests_in_window=0)
        return entry

    async def set_tier(self, workspace_id: str, tier: str) -> None:
        try:
            redis = await self._client()
            await redis.hset(self._key(workspace_id), "tier", tier)
        except RedisError as exc:
            raise LedgerUnavailableError(f"ledger set_tier failed for {workspace_id}") from exc

    async def rollover_period(self, workspace_id: str) -> None:
        try:
            redis = await self._client()
            await redis.hset(self._key(workspace_id), "spent_micros", 0)
        except RedisError as exc:
            raise LedgerUnavailableError(f"ledger rollover failed for {workspace_id}") from exc


_ledger_store: LedgerStore | None = None


def get_ledger_store() -> LedgerStore:
    # Cache the configured ledger backend so all runs share one store.
    global _ledger_store
    if _ledger_store is None:
        settings = get_settings()
        backend = settings.ledger_backend.lower()
        if backend == "memory":
            _ledger_store = InMemoryLedgerStore(window_seconds=settings.ledger_window_seconds)
        elif backend == "redis":
            _ledger_store = RedisLedgerStore()
        else:
            raise ValueError(f"Unknown ledger backend: {settings.ledger_backend}")
        logger.info("ledger_backend_selected backend=%s", backend)
    return _ledger_store


def reset_ledger_state() -> None:
    # Reset cached stores and Redis connections for deterministic test setup.
    global _ledger_store, _redis_pool, _redis_loop
    _ledger_store = None
    _redis_pool = None
    _redis_loop = None

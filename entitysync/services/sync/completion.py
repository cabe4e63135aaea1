from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Protocol

from redis.asyncio import Redis

from entitysync.core.config import get_settings
from entitysync.core.errors import ConfigurationError
from entitysync.core.integrations import IntegrationConfig, get_integration
from entitysync.domain.types import SyncScope


logger = logging.getLogger(__name__)

_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()

# KEYS: done set, then (members, expected) per required kind.
# ARGV: kind index (1-based), fan-out flag, ttl, member, then required kind names.
# Fan-out completions are a set of unit ids, so a redelivered unit never counts twice.
_MARK_COMPLETE_LUA = """
local idx = tonumber(ARGV[1])
local ttl = tonumber(ARGV[3])
local done_key = KEYS[1]
local members_key = KEYS[2 * idx]
local expected_key = KEYS[2 * idx + 1]
if ARGV[2] == "1" then
  redis.call("SADD", members_key, ARGV[4])
  redis.call("EXPIRE", members_key, ttl)
  local expected = redis.call("GET", expected_key)
  if not expected then
    return 0
  end
  if redis.call("SCARD", members_key) < tonumber(expected) then
    return 0
  end
end
redis.call("SADD", done_key, ARGV[4 + idx])
redis.call("EXPIRE", done_key, ttl)
for i = 5, #ARGV do
  if redis.call("SISMEMBER", done_key, ARGV[i]) == 0 then
    return 0
  end
end
redis.call("DEL", unpack(KEYS))
return 1
"""

# Same key layout; ARGV[2] is the expected count and there is no member.
_SET_EXPECTED_LUA = """
local idx = tonumber(ARGV[1])
local expected = tonumber(ARGV[2])
local ttl = tonumber(ARGV[3])
local done_key = KEYS[1]
local members_key = KEYS[2 * idx]
local expected_key = KEYS[2 * idx + 1]
redis.call("SET", expected_key, expected, "EX", ttl)
if expected > 0 and redis.call("SCARD", members_key) < expected then
  return 0
end
redis.call("SADD", done_key, ARGV[3 + idx])
redis.call("EXPIRE", done_key, ttl)
for i = 4, #ARGV do
  if redis.call("SISMEMBER", done_key, ARGV[i]) == 0 then
    return 0
  end
end
redis.call("DEL", unpack(KEYS))
return 1
"""


async def _get_redis() -> Redis:
    # Cache Redis connections to avoid reconnecting per completion.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            _redis_loop = current_loop
    return _redis_pool


class CompletionStore(Protocol):
    async def mark_complete(
        self, scope_key: str, kind: str, *, member: str, fan_out: bool, required: list[str]
    ) -> bool: ...

    async def set_expected_count(
        self, scope_key: str, kind: str, count: int, *, required: list[str]
    ) -> bool: ...


class RedisCompletionStore:
    """Atomic add-and-compare on Redis; exactly one caller sees all-done."""

    def __init__(self, redis: Redis | None = None, *, prefix: str | None = None, ttl_s: int | None = None):
        settings = get_settings()
        self._redis = redis
        self._prefix = prefix or settings.completion_key_prefix
        self._ttl_s = ttl_s or settings.completion_ttl_s

    async def _client(self) -> Redis:
        if self._redis is None:
            self._redis = await _get_redis()
        return self._redis

    def _keys(self, scope_key: str, required: list[str]) -> list[str]:
        base = f"{self._prefix}:{scope_key}"
        keys = [f"{base}:done"]
        for kind in required:
            keys.append(f"{base}:members:{kind}")
            keys.append(f"{base}:expected:{kind}")
        return keys

    async def mark_complete(
        self, scope_key: str, kind: str, *, member: str, fan_out: bool, required: list[str]
    ) -> bool:
        redis = await self._client()
        keys = self._keys(scope_key, required)
        result = await redis.eval(
            _MARK_COMPLETE_LUA,
            len(keys),
            *keys,
            required.index(kind) + 1,
            "1" if fan_out else "0",
            self._ttl_s,
            member,
            *required,
        )
        return int(result) == 1

    async def set_expected_count(
        self, scope_key: str, kind: str, count: int, *, required: list[str]
    ) -> bool:
        redis = await self._client()
        keys = self._keys(scope_key, required)
        result = await redis.eval(
            _SET_EXPECTED_LUA,
            len(keys),
            *keys,
            required.index(kind) + 1,
            int(count),
            self._ttl_s,
            *required,
        )
        return int(result) == 1


@dataclass
class _LocalScopeState:
    expires_at: float
    done: set[str] = field(default_factory=set)
    members: dict[str, set[str]] = field(default_factory=dict)
    expected: dict[str, int] = field(default_factory=dict)


class LocalCompletionStore:
    # Single-process store with the same semantics, for inline mode and tests.

    def __init__(self, *, ttl_s: int | None = None, clock=time.monotonic) -> None:
        self._ttl_s = ttl_s or get_settings().completion_ttl_s
        self._clock = clock
        self._states: dict[str, _LocalScopeState] = {}
        self._lock = asyncio.Lock()

    def _state(self, scope_key: str) -> _LocalScopeState:
        now = self._clock()
        state = self._states.get(scope_key)
        if state is None or state.expires_at <= now:
            state = _LocalScopeState(expires_at=now + self._ttl_s)
            self._states[scope_key] = state
        else:
            state.expires_at = now + self._ttl_s
        return state

    def _finish_kind(self, scope_key: str, state: _LocalScopeState, kind: str, required: list[str]) -> bool:
        state.done.add(kind)
        if all(name in state.done for name in required):
            del self._states[scope_key]
            return True
        return False

    async def mark_complete(
        self, scope_key: str, kind: str, *, member: str, fan_out: bool, required: list[str]
    ) -> bool:
        async with self._lock:
            state = self._state(scope_key)
            if fan_out:
                members = state.members.setdefault(kind, set())
                members.add(member)
                expected = state.expected.get(kind)
                if expected is None or len(members) < expected:
                    return False
            return self._finish_kind(scope_key, state, kind, required)

    async def set_expected_count(
        self, scope_key: str, kind: str, count: int, *, required: list[str]
    ) -> bool:
        async with self._lock:
            state = self._state(scope_key)
            state.expected[kind] = int(count)
            if count > 0 and len(state.members.get(kind, ())) < count:
                return False
            return self._finish_kind(scope_key, state, kind, required)

    def pending_scopes(self) -> list[str]:
        return sorted(self._states)


def completion_scope_key(scope: SyncScope) -> str:
    parts = [scope.tenant_id, scope.integration_id]
    if scope.connection_id:
        parts.append(scope.connection_id)
    return ":".join(parts)


class CompletionTracker:
    """Detects when every required entity kind of a cycle has finished.

    Scope is (tenant, integration, connection); the site never partitions
    completion because site-scoped sub-units fan back into one cycle.
    """

    def __init__(self, store: CompletionStore) -> None:
        self._store = store

    def _integration(self, scope: SyncScope) -> IntegrationConfig:
        integration = get_integration(scope.integration_id)
        if integration is None:
            raise ConfigurationError(f"Unknown integration: {scope.integration_id}")
        return integration

    def _required(self, integration: IntegrationConfig, kind: str) -> list[str]:
        required = integration.required_types
        if kind not in required:
            raise ConfigurationError(f"{kind} is not a supported type of {integration.id}")
        return required

    async def mark_complete(self, scope: SyncScope, kind: str, unit_id: str) -> bool:
        integration = self._integration(scope)
        required = self._required(integration, kind)
        type_config = integration.type_config(kind)
        all_done = await self._store.mark_complete(
            completion_scope_key(scope),
            kind,
            member=unit_id,
            fan_out=bool(type_config and type_config.fan_out),
            required=required,
        )
        logger.info(
            "completion_marked tenant_id=%s integration_id=%s connection_id=%s kind=%s unit_id=%s all_done=%s",
            scope.tenant_id,
            scope.integration_id,
            scope.connection_id,
            kind,
            unit_id,
            all_done,
        )
        return all_done

    async def set_expected_count(self, scope: SyncScope, kind: str, count: int) -> bool:
        integration = self._integration(scope)
        required = self._required(integration, kind)
        all_done = await self._store.set_expected_count(
            completion_scope_key(scope), kind, max(0, int(count)), required=required
        )
        logger.info(
            "completion_expected tenant_id=%s integration_id=%s connection_id=%s kind=%s expected=%s all_done=%s",
            scope.tenant_id,
            scope.integration_id,
            scope.connection_id,
            kind,
            count,
            all_done,
        )
        return all_done


_local_store: LocalCompletionStore | None = None


def get_completion_tracker() -> CompletionTracker:
    settings = get_settings()
    if settings.completion_backend.lower() == "local" or settings.execution_mode.lower() == "inline":
        # One process-wide local store so every inline unit shares completion state.
        global _local_store
        if _local_store is None:
            _local_store = LocalCompletionStore()
        return CompletionTracker(_local_store)
    return CompletionTracker(RedisCompletionStore())


def reset_local_completion_store() -> None:
    global _local_store
    _local_store = None

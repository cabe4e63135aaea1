from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

from arq import Retry, create_pool
from arq.connections import ArqRedis, RedisSettings

from entitysync.core.config import get_settings


logger = logging.getLogger(__name__)

_redis_pool: ArqRedis | None = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
# Keep heartbeat keys stable for ops endpoint lookups.
WORKER_HEARTBEAT_PREFIX = "entitysync:worker:heartbeat"

SYNC_FUNCTION = "run_sync_job"
ANALYSIS_FUNCTION = "run_analysis"

JobHandler = Callable[[dict[str, Any], Any], Awaitable[Any]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_inline_mode() -> bool:
    return get_settings().execution_mode.lower() == "inline"


class WorkQueue(Protocol):
    async def enqueue(self, function: str, payload: Any, *, job_id: str, queue_name: str) -> bool:
        """Return False when a job with the same id is already known."""
        ...


async def get_redis_pool() -> ArqRedis:
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.sync_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


class ArqWorkQueue:
    def __init__(self, redis: ArqRedis | None = None) -> None:
        self._redis = redis

    async def enqueue(self, function: str, payload: Any, *, job_id: str, queue_name: str) -> bool:
        redis = self._redis or await get_redis_pool()
        job = await redis.enqueue_job(function, payload, _job_id=job_id, _queue_name=queue_name)
        # arq returns None when a job with this id is queued, running, or has a kept result.
        if job is None:
            logger.info("job_enqueue_duplicate function=%s job_id=%s queue=%s", function, job_id, queue_name)
            return False
        return True


class LocalWorkQueue:
    """In-process stand-in for arq used by inline mode and the test suite.

    Duplicate ids are rejected for the lifetime of the queue. Handlers follow
    the arq contract: they receive a ctx dict with job_id / job_try and signal
    a retry by raising arq.Retry.
    """

    def __init__(self, *, eager: bool = True, max_tries: int | None = None) -> None:
        self._handlers: dict[str, JobHandler] = {}
        self._known: set[str] = set()
        self._pending: deque[tuple[str, Any, str, str]] = deque()
        self._eager = eager
        self._max_tries = max_tries or get_settings().sync_max_tries
        self._draining = False
        self.completed: dict[str, Any] = {}
        self.failed: dict[str, BaseException] = {}
        self.enqueued: list[tuple[str, str, str]] = []

    def register(self, function: str, handler: JobHandler) -> None:
        self._handlers[function] = handler

    def depth(self, queue_name: str | None = None) -> int:
        return sum(1 for item in self._pending if queue_name is None or item[3] == queue_name)

    async def enqueue(self, function: str, payload: Any, *, job_id: str, queue_name: str) -> bool:
        if job_id in self._known:
            logger.info("job_enqueue_duplicate function=%s job_id=%s queue=%s", function, job_id, queue_name)
            return False
        self._known.add(job_id)
        self._pending.append((function, payload, job_id, queue_name))
        self.enqueued.append((function, job_id, queue_name))
        if self._eager and not self._draining:
            await self.drain()
        return True

    async def drain(self) -> int:
        # Jobs enqueued by running handlers are picked up in the same drain.
        processed = 0
        self._draining = True
        try:
            while self._pending:
                function, payload, job_id, _queue_name = self._pending.popleft()
                await self._run(function, payload, job_id)
                processed += 1
        finally:
            self._draining = False
        return processed

    async def _run(self, function: str, payload: Any, job_id: str) -> None:
        handler = self._handlers.get(function)
        if handler is None:
            self.failed[job_id] = LookupError(f"No handler registered for {function}")
            logger.error("local_job_unhandled function=%s job_id=%s", function, job_id)
            return
        job_try = 1
        while True:
            try:
                self.completed[job_id] = await handler({"job_id": job_id, "job_try": job_try}, payload)
                return
            except Retry as exc:
                if job_try >= self._max_tries:
                    self.failed[job_id] = exc
                    logger.warning("local_job_retries_exhausted function=%s job_id=%s", function, job_id)
                    return
                job_try += 1
            except Exception as exc:  # noqa: BLE001 - recorded as the job's failed result
                self.failed[job_id] = exc
                logger.warning("local_job_failed function=%s job_id=%s", function, job_id, exc_info=exc)
                return


_local_queue: LocalWorkQueue | None = None


def get_local_queue() -> LocalWorkQueue:
    # Inline mode shares one queue so sync jobs can hand off to analysis in-process.
    global _local_queue
    if _local_queue is None:
        from entitysync.workers.analysis_worker import run_analysis
        from entitysync.workers.sync_worker import run_sync_job

        _local_queue = LocalWorkQueue()
        _local_queue.register(SYNC_FUNCTION, run_sync_job)
        _local_queue.register(ANALYSIS_FUNCTION, run_analysis)
    return _local_queue


def reset_local_queue() -> None:
    global _local_queue
    _local_queue = None


def get_work_queue() -> WorkQueue:
    if is_inline_mode():
        return get_local_queue()
    return ArqWorkQueue()


def _heartbeat_key(queue_name: str) -> str:
    return f"{WORKER_HEARTBEAT_PREFIX}:{queue_name}"


async def get_queue_depth(queue_name: str) -> int | None:
    # Return None to signal Redis unavailability to ops endpoints.
    if is_inline_mode():
        return get_local_queue().depth(queue_name)
    try:
        redis = await get_redis_pool()
        # arq keeps each queue as a sorted set named after the queue.
        return int(await redis.zcard(queue_name))
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None


async def set_worker_heartbeat(queue_name: str, *, timestamp: datetime | None = None) -> None:
    # Persist a heartbeat for the ops health endpoint.
    if is_inline_mode():
        # Inline mode does not run a worker, so skip heartbeat updates.
        return
    settings = get_settings()
    redis = await get_redis_pool()
    heartbeat_time = timestamp or _utc_now()
    await redis.set(
        _heartbeat_key(queue_name),
        heartbeat_time.isoformat(),
        ex=max(1, settings.worker_heartbeat_stale_after_s * 2),
    )


async def get_worker_heartbeat(queue_name: str) -> datetime | None:
    # Return None when the heartbeat is missing or Redis is unavailable.
    if is_inline_mode():
        return None
    try:
        redis = await get_redis_pool()
        raw_value = await redis.get(_heartbeat_key(queue_name))
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None

"""Redis-backed job queue shared by every worker process.

Key layout under the configured prefix (default ``filot:ocr:gpu``):

* ``<prefix>:queue``       list, pending FIFO (RPUSH tail, LPOP head)
* ``<prefix>:processing``  set, in-flight document ids
* ``<prefix>:delayed``     sorted set, delayed retries scored by due time
* ``<prefix>:attempts``    hash, document id -> attempt counter
* ``<prefix>:started``     hash, document id -> processing start (epoch seconds)
* ``<prefix>:correlation`` hash, document id -> correlation id of the admission

A document id is in at most one of queue/processing/delayed. Mutations that
check membership run as optimistic WATCH/MULTI transactions and retry on
``WatchError``; multi-key removals run as plain MULTI pipelines. Connection or
timeout errors surface as ``QueueUnavailableError``; a job interrupted between
round trips stays in the processing set where the reaper reclaims it.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from src.errors import QueueUnavailableError
from src.utils.clock import Clock, SystemClock

LOG = logging.getLogger(__name__)

DEFAULT_PREFIX = "filot:ocr:gpu"


@dataclass(slots=True, frozen=True)
class QueueKeys:
    queue: str
    processing: str
    delayed: str
    attempts: str
    started: str
    correlation: str

    @classmethod
    def for_prefix(cls, prefix: str) -> "QueueKeys":
        prefix = prefix.rstrip(":")
        return cls(
            queue=f"{prefix}:queue",
            processing=f"{prefix}:processing",
            delayed=f"{prefix}:delayed",
            attempts=f"{prefix}:attempts",
            started=f"{prefix}:started",
            correlation=f"{prefix}:correlation",
        )

    def all(self) -> tuple[str, ...]:
        return (
            self.queue,
            self.processing,
            self.delayed,
            self.attempts,
            self.started,
            self.correlation,
        )


@dataclass(slots=True, frozen=True)
class QueueStats:
    pending: int
    processing: int
    delayed: int

    def to_dict(self) -> dict[str, int]:
        return {"pending": self.pending, "processing": self.processing, "delayed": self.delayed}


def new_correlation_id() -> str:
    return uuid.uuid4().hex


@asynccontextmanager
async def _store_call(operation: str, document_id: str | None = None) -> AsyncIterator[None]:
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        LOG.error(
            "job_queue_unavailable",
            extra={"operation": operation, "document_id": document_id, "error": str(exc)},
        )
        raise QueueUnavailableError(f"Job queue {operation} failed: {exc}") from exc


class RedisJobQueue:
    def __init__(
        self,
        redis: Redis,
        *,
        prefix: str = DEFAULT_PREFIX,
        clock: Clock | None = None,
    ) -> None:
        self._redis = redis
        self.keys = QueueKeys.for_prefix(prefix)
        self._clock = clock or SystemClock()

    # ---------------------------------------------------------------- admission
    async def enqueue(self, document_id: str) -> bool:
        """Append to the pending tail unless already pending, in flight or delayed."""
        keys = self.keys
        async with _store_call("enqueue", document_id):
            async with self._redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(keys.queue, keys.processing, keys.delayed)
                        pending_pos = await pipe.lpos(keys.queue, document_id)
                        in_flight = await pipe.sismember(keys.processing, document_id)
                        delayed_at = await pipe.zscore(keys.delayed, document_id)
                        if pending_pos is not None or in_flight or delayed_at is not None:
                            LOG.info(
                                "job_enqueue_skipped",
                                extra={"document_id": document_id, "reason": "already_queued"},
                            )
                            return False
                        correlation_id = new_correlation_id()
                        pipe.multi()
                        pipe.rpush(keys.queue, document_id)
                        pipe.hset(keys.attempts, document_id, 0)
                        pipe.hset(keys.correlation, document_id, correlation_id)
                        await pipe.execute()
                        break
                    except WatchError:
                        continue
        LOG.info(
            "job_enqueued",
            extra={"document_id": document_id, "correlation_id": correlation_id},
        )
        return True

    async def dequeue(self) -> str | None:
        """Pop the pending head into the processing set with a start timestamp."""
        keys = self.keys
        async with _store_call("dequeue"):
            async with self._redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(keys.queue)
                        head = await pipe.lindex(keys.queue, 0)
                        if head is None:
                            return None
                        pipe.multi()
                        pipe.lpop(keys.queue)
                        pipe.sadd(keys.processing, head)
                        pipe.hset(keys.started, head, repr(self._clock.now()))
                        await pipe.execute()
                        break
                    except WatchError:
                        continue
        LOG.info("job_dequeued", extra={"document_id": head})
        return head

    async def requeue(self, document_id: str, delay: float = 0) -> bool:
        """Move an in-flight job back to pending (or to the delayed set).

        Returns False when the id is no longer in the processing set, which
        happens when a racing worker or the reaper already settled it.
        """
        keys = self.keys
        async with _store_call("requeue", document_id):
            async with self._redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(keys.processing)
                        if not await pipe.sismember(keys.processing, document_id):
                            LOG.info(
                                "job_requeue_skipped",
                                extra={"document_id": document_id, "reason": "not_in_flight"},
                            )
                            return False
                        pipe.multi()
                        pipe.srem(keys.processing, document_id)
                        pipe.hdel(keys.started, document_id)
                        if delay > 0:
                            pipe.zadd(keys.delayed, {document_id: self._clock.now() + delay})
                        else:
                            pipe.rpush(keys.queue, document_id)
                        await pipe.execute()
                        break
                    except WatchError:
                        continue
        LOG.info("job_requeued", extra={"document_id": document_id, "delay_seconds": delay})
        return True

    async def promote_due_delayed(self) -> int:
        """Move every delayed entry whose due time has passed to the pending tail."""
        keys = self.keys
        async with _store_call("promote_due_delayed"):
            async with self._redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(keys.delayed)
                        due = await pipe.zrangebyscore(keys.delayed, "-inf", self._clock.now())
                        if not due:
                            return 0
                        pipe.multi()
                        pipe.zrem(keys.delayed, *due)
                        pipe.rpush(keys.queue, *due)
                        await pipe.execute()
                        break
                    except WatchError:
                        continue
        LOG.info("delayed_jobs_promoted", extra={"count": len(due)})
        return len(due)

    # ---------------------------------------------------------------- settlement
    async def _settle(self, operation: str, document_id: str) -> bool:
        keys = self.keys
        async with _store_call(operation, document_id):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.srem(keys.processing, document_id)
                pipe.zrem(keys.delayed, document_id)
                pipe.lrem(keys.queue, 0, document_id)
                pipe.hdel(keys.attempts, document_id)
                pipe.hdel(keys.started, document_id)
                pipe.hdel(keys.correlation, document_id)
                removed, *_ = await pipe.execute()
        return bool(removed)

    async def mark_complete(self, document_id: str) -> bool:
        removed = await self._settle("mark_complete", document_id)
        LOG.info("job_marked_complete", extra={"document_id": document_id, "was_in_flight": removed})
        return removed

    async def mark_failed(self, document_id: str) -> bool:
        """Drop the job from every structure; True if it was still in flight."""
        removed = await self._settle("mark_failed", document_id)
        LOG.info("job_marked_failed", extra={"document_id": document_id, "was_in_flight": removed})
        return removed

    async def remove_everywhere(self, document_id: str) -> None:
        await self._settle("remove_everywhere", document_id)

    # ---------------------------------------------------------------- attempts
    async def increment_attempts(self, document_id: str) -> int:
        async with _store_call("increment_attempts", document_id):
            return int(await self._redis.hincrby(self.keys.attempts, document_id, 1))

    async def get_attempts(self, document_id: str) -> int:
        async with _store_call("get_attempts", document_id):
            raw = await self._redis.hget(self.keys.attempts, document_id)
        return int(raw) if raw is not None else 0

    async def reset_attempts(self, document_id: str) -> None:
        async with _store_call("reset_attempts", document_id):
            await self._redis.hset(self.keys.attempts, document_id, 0)

    # ---------------------------------------------------------------- correlation
    async def get_correlation_id(self, document_id: str) -> str | None:
        async with _store_call("get_correlation_id", document_id):
            return await self._redis.hget(self.keys.correlation, document_id)

    async def ensure_correlation_id(self, document_id: str) -> str:
        """Reuse the admission correlation id, or mint one for legacy entries."""
        async with _store_call("ensure_correlation_id", document_id):
            await self._redis.hsetnx(self.keys.correlation, document_id, new_correlation_id())
            return await self._redis.hget(self.keys.correlation, document_id)

    # ---------------------------------------------------------------- inspection
    async def processing_members(self) -> list[str]:
        async with _store_call("processing_members"):
            members = await self._redis.smembers(self.keys.processing)
        return sorted(members)

    async def processing_started_at(self, document_id: str) -> float | None:
        async with _store_call("processing_started_at", document_id):
            raw = await self._redis.hget(self.keys.started, document_id)
        return float(raw) if raw is not None else None

    async def clear_stuck_timer(self, document_id: str) -> None:
        async with _store_call("clear_stuck_timer", document_id):
            await self._redis.hdel(self.keys.started, document_id)

    async def pending_ids(self) -> list[str]:
        async with _store_call("pending_ids"):
            return list(await self._redis.lrange(self.keys.queue, 0, -1))

    async def delayed_ids(self) -> list[str]:
        async with _store_call("delayed_ids"):
            return list(await self._redis.zrange(self.keys.delayed, 0, -1))

    async def stats(self) -> QueueStats:
        keys = self.keys
        async with _store_call("stats"):
            async with self._redis.pipeline(transaction=False) as pipe:
                pipe.llen(keys.queue)
                pipe.scard(keys.processing)
                pipe.zcard(keys.delayed)
                pending, processing, delayed = await pipe.execute()
        return QueueStats(pending=int(pending), processing=int(processing), delayed=int(delayed))

    async def clear_processing(self) -> int:
        """Drop the whole processing set; only safe while no worker is running."""
        keys = self.keys
        async with _store_call("clear_processing"):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.scard(keys.processing)
                pipe.delete(keys.processing, keys.started)
                count, _ = await pipe.execute()
        return int(count)

    async def clear(self) -> None:
        async with _store_call("clear"):
            await self._redis.delete(*self.keys.all())
        LOG.warning("job_queue_cleared", extra={"queue": self.keys.queue})

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (RedisConnectionError, RedisTimeoutError):
            return False


__all__ = ["QueueKeys", "QueueStats", "RedisJobQueue", "new_correlation_id"]

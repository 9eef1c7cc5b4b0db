"""Per-document processing lock (SET NX with expiry)."""

from __future__ import annotations

import logging

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from src.errors import QueueUnavailableError

LOG = logging.getLogger(__name__)


class RedisDocumentLock:
    """Lock keyed by document id; the TTL bounds how long a crashed holder blocks it."""

    def __init__(self, redis: Redis, *, prefix: str = "filot:ocr:gpu") -> None:
        self._redis = redis
        self._prefix = f"{prefix.rstrip(':')}:lock"

    def key(self, document_id: str) -> str:
        return f"{self._prefix}:{document_id}"

    async def acquire(self, document_id: str, owner: str, ttl_seconds: float) -> bool:
        try:
            acquired = await self._redis.set(
                self.key(document_id),
                owner,
                nx=True,
                px=max(1, int(ttl_seconds * 1000)),
            )
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise QueueUnavailableError(f"Lock acquire failed: {exc}") from exc
        if not acquired:
            LOG.info("lock_contention", extra={"document_id": document_id, "owner": owner})
        return bool(acquired)

    async def release(self, document_id: str, owner: str | None = None) -> bool:
        """Delete the lock if ``owner`` still holds it.

        ``owner=None`` force-releases; only the reaper does that, for holders it
        has declared dead. Returns whether a lock was deleted.
        """
        key = self.key(document_id)
        # TTL expiry covers a skipped release
        try:
            if owner is None:
                return bool(await self._redis.delete(key))
            async with self._redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    holder = await pipe.get(key)
                    if holder != owner:
                        await pipe.unwatch()
                        LOG.warning(
                            "lock_release_skipped",
                            extra={"document_id": document_id, "owner": owner, "holder": holder},
                        )
                        return False
                    pipe.multi()
                    pipe.delete(key)
                    await pipe.execute()
                    return True
                except WatchError:
                    # the lock changed hands (or expired and was re-taken) under us
                    return False
        except (RedisConnectionError, RedisTimeoutError) as exc:
            LOG.warning("lock_release_failed", extra={"document_id": document_id, "error": str(exc)})
            return False

    async def owner(self, document_id: str) -> str | None:
        try:
            return await self._redis.get(self.key(document_id))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise QueueUnavailableError(f"Lock lookup failed: {exc}") from exc


__all__ = ["RedisDocumentLock"]

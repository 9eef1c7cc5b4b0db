"""Publish terminal job outcomes on the Redis results channel."""

from __future__ import annotations

import logging

from redis.asyncio import Redis
from redis.exceptions import RedisError

from src.models.events import ProcessingResultEvent

LOG = logging.getLogger(__name__)


class RedisResultPublisher:
    def __init__(self, redis: Redis, channel: str = "filot:ocr:gpu:results") -> None:
        self._redis = redis
        self.channel = channel

    async def publish(self, event: ProcessingResultEvent) -> None:
        try:
            receivers = await self._redis.publish(self.channel, event.to_message())
        except RedisError as exc:
            # observers are optional; a lost result event never fails the job
            LOG.warning(
                "result_publish_failed",
                extra={"document_id": event.document_id, "error": str(exc)},
            )
            return
        LOG.info(
            "result_published",
            extra={
                "document_id": event.document_id,
                "success": event.success,
                "outcome": event.outcome,
                "receivers": receivers,
            },
        )


class InMemoryResultPublisher:
    """Collects events in a list; local runs and tests."""

    def __init__(self) -> None:
        self.events: list[ProcessingResultEvent] = []

    async def publish(self, event: ProcessingResultEvent) -> None:
        self.events.append(event)


__all__ = ["InMemoryResultPublisher", "RedisResultPublisher"]

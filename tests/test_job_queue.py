from __future__ import annotations

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.errors import QueueUnavailableError
from src.services.job_queue import QueueKeys, RedisJobQueue


@pytest.mark.asyncio
async def test_enqueue_is_idempotent(queue):
    assert await queue.enqueue("doc-1") is True
    assert await queue.enqueue("doc-1") is False
    assert await queue.pending_ids() == ["doc-1"]
    assert await queue.get_attempts("doc-1") == 0
    assert await queue.get_correlation_id("doc-1")


@pytest.mark.asyncio
async def test_enqueue_refuses_in_flight_and_delayed_ids(queue):
    await queue.enqueue("doc-1")
    await queue.enqueue("doc-2")
    assert await queue.dequeue() == "doc-1"
    assert await queue.enqueue("doc-1") is False

    assert await queue.dequeue() == "doc-2"
    assert await queue.requeue("doc-2", delay=30) is True
    assert await queue.enqueue("doc-2") is False


@pytest.mark.asyncio
async def test_dequeue_is_fifo_and_moves_to_processing(queue, clock):
    for document_id in ("a", "b", "c"):
        await queue.enqueue(document_id)

    assert await queue.dequeue() == "a"
    assert await queue.pending_ids() == ["b", "c"]
    assert await queue.processing_members() == ["a"]
    assert await queue.processing_started_at("a") == pytest.approx(clock.now())


@pytest.mark.asyncio
async def test_dequeue_empty_returns_none(queue):
    assert await queue.dequeue() is None


@pytest.mark.asyncio
async def test_id_is_never_pending_and_processing_at_once(queue):
    await queue.enqueue("doc-1")
    await queue.dequeue()
    assert await queue.requeue("doc-1") is True
    pending = set(await queue.pending_ids())
    processing = set(await queue.processing_members())
    assert pending == {"doc-1"}
    assert processing == set()
    assert await queue.processing_started_at("doc-1") is None


@pytest.mark.asyncio
async def test_requeue_skips_ids_not_in_flight(queue):
    await queue.enqueue("doc-1")
    assert await queue.requeue("doc-1") is False
    assert await queue.pending_ids() == ["doc-1"]


@pytest.mark.asyncio
async def test_delayed_requeue_is_promoted_once_due(queue, clock):
    await queue.enqueue("doc-1")
    await queue.dequeue()
    await queue.requeue("doc-1", delay=60)

    assert await queue.delayed_ids() == ["doc-1"]
    assert await queue.promote_due_delayed() == 0

    clock.advance(61)
    assert await queue.promote_due_delayed() == 1
    assert await queue.delayed_ids() == []
    assert await queue.pending_ids() == ["doc-1"]


@pytest.mark.asyncio
async def test_settlement_removes_every_trace(queue):
    await queue.enqueue("doc-1")
    await queue.dequeue()
    await queue.increment_attempts("doc-1")

    assert await queue.mark_complete("doc-1") is True
    assert await queue.processing_members() == []
    assert await queue.get_attempts("doc-1") == 0
    assert await queue.get_correlation_id("doc-1") is None
    assert await queue.processing_started_at("doc-1") is None

    # settling twice reports that nothing was in flight
    assert await queue.mark_failed("doc-1") is False


@pytest.mark.asyncio
async def test_attempt_counter(queue):
    await queue.enqueue("doc-1")
    assert await queue.increment_attempts("doc-1") == 1
    assert await queue.increment_attempts("doc-1") == 2
    await queue.reset_attempts("doc-1")
    assert await queue.get_attempts("doc-1") == 0


@pytest.mark.asyncio
async def test_ensure_correlation_id_reuses_admission_id(queue):
    await queue.enqueue("doc-1")
    admitted = await queue.get_correlation_id("doc-1")
    assert await queue.ensure_correlation_id("doc-1") == admitted
    minted = await queue.ensure_correlation_id("legacy")
    assert minted and minted != admitted


@pytest.mark.asyncio
async def test_stats_and_clear(queue):
    for document_id in ("a", "b", "c"):
        await queue.enqueue(document_id)
    await queue.dequeue()
    await queue.dequeue()
    await queue.requeue("b", delay=10)

    stats = await queue.stats()
    assert stats.to_dict() == {"pending": 1, "processing": 1, "delayed": 1}

    assert await queue.clear_processing() == 1
    await queue.clear()
    assert (await queue.stats()).to_dict() == {"pending": 0, "processing": 0, "delayed": 0}


def test_queue_keys_share_prefix():
    keys = QueueKeys.for_prefix("filot:ocr:gpu:")
    assert keys.queue == "filot:ocr:gpu:queue"
    assert keys.processing == "filot:ocr:gpu:processing"
    assert all(key.startswith("filot:ocr:gpu:") for key in keys.all())


class _DownRedis:
    async def hincrby(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")

    async def ping(self):
        raise RedisConnectionError("connection refused")


@pytest.mark.asyncio
async def test_connection_errors_surface_as_queue_unavailable():
    queue = RedisJobQueue(_DownRedis())  # type: ignore[arg-type]
    with pytest.raises(QueueUnavailableError):
        await queue.increment_attempts("doc-1")
    assert await queue.ping() is False

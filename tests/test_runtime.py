from __future__ import annotations

import asyncio

import pytest
from conftest import FakeExtractor

from src.errors import QueueUnavailableError
from src.services.notifications import ADMIN


async def _down(document_id):
    raise QueueUnavailableError("Redis is not reachable")


@pytest.mark.asyncio
async def test_submit_enqueues_and_marks_document_queued(runtime_factory, make_document, documents):
    runtime = runtime_factory()
    make_document("doc-1")

    result = await runtime.submit("doc-1")

    assert result == {"documentId": "doc-1", "mode": "queued", "enqueued": True}
    assert (await documents.get_document("doc-1")).status == "queued"
    assert await runtime.queue.pending_ids() == ["doc-1"]
    assert (await runtime.submit("doc-1"))["enqueued"] is False


@pytest.mark.asyncio
async def test_submit_processes_inline_on_cpu_when_queue_down(
    runtime_factory, make_document, documents, publisher, monkeypatch
):
    gpu = FakeExtractor("unused")
    runtime = runtime_factory(gpu=gpu)
    monkeypatch.setattr(runtime.queue, "enqueue", _down)
    make_document("doc-1")

    result = await runtime.submit("doc-1")

    assert result == {"documentId": "doc-1", "mode": "inline_cpu", "success": True}
    assert gpu.calls == 0
    record = await documents.get_document("doc-1")
    assert record.status == "completed"
    assert record.verification_status == "auto_approved"
    (event,) = publisher.events
    assert event.gpu_processed is False
    assert event.attempts == 1


@pytest.mark.asyncio
async def test_submit_raises_when_queue_down_and_fallback_disabled(runtime_factory, monkeypatch):
    runtime = runtime_factory(OCR_AUTOFALLBACK="false")
    monkeypatch.setattr(runtime.queue, "enqueue", _down)
    with pytest.raises(QueueUnavailableError):
        await runtime.submit("doc-1")


def test_loops_include_worker_when_gpu_available(runtime_factory):
    runtime = runtime_factory()
    names = [loop.name for loop in runtime.build_loops()]
    assert names == ["worker_poll", "reaper", "delayed_promotion", "escalation_drain"]
    assert runtime.worker_running is True


def test_worker_runs_in_cpu_mode_when_gpu_missing_but_fallback_on(runtime_factory):
    runtime = runtime_factory(OCR_GPU_ENABLED="false")
    assert runtime.can_start_worker() is True
    assert runtime.orchestrator.path_label == "cpu"


def test_worker_not_started_without_gpu_or_fallback(runtime_factory):
    runtime = runtime_factory(OCR_GPU_ENABLED="true", NVIDIA_VISIBLE_DEVICES="none", OCR_GPU_AUTOFALLBACK="false")
    assert runtime.can_start_worker() is False
    names = [loop.name for loop in runtime.build_loops()]
    assert "worker_poll" not in names
    assert runtime.worker_running is False


@pytest.mark.asyncio
async def test_breaker_opening_alerts_admins(runtime_factory, notifier):
    runtime = runtime_factory()
    for _ in range(5):
        runtime.review_breaker.record_failure(RuntimeError("503"))
    await asyncio.sleep(0)

    (alert,) = notifier.of_type("circuit_open")
    assert alert[0] == ADMIN
    assert "buli2-forward" in alert[2]


@pytest.mark.asyncio
async def test_run_processes_admitted_job_and_drains_on_stop(
    runtime_factory, blocking_clock, make_document, documents, publisher
):
    runtime = runtime_factory(use_clock=blocking_clock)
    make_document("doc-1")
    await runtime.submit("doc-1")

    task = asyncio.create_task(runtime.run())
    for _ in range(200):
        if not await runtime.queue.pending_ids():
            break
        await asyncio.sleep(0)
    runtime.stop()
    await asyncio.wait_for(task, timeout=5)

    record = await documents.get_document("doc-1")
    assert record.status == "completed"
    assert [event.document_id for event in publisher.events] == ["doc-1"]
    assert publisher.events[0].gpu_processed is True
    stats = await runtime.queue.stats()
    assert stats.to_dict() == {"pending": 0, "processing": 0, "delayed": 0}
    assert runtime.worker_running is False


@pytest.mark.asyncio
async def test_startup_fails_fast_when_redis_unreachable(runtime_factory, monkeypatch):
    runtime = runtime_factory()

    async def _no_ping():
        return False

    monkeypatch.setattr(runtime.queue, "ping", _no_ping)
    with pytest.raises(QueueUnavailableError):
        await runtime.startup()


@pytest.mark.asyncio
async def test_status_snapshot(runtime_factory, make_document):
    runtime = runtime_factory()
    make_document("doc-1")
    await runtime.submit("doc-1")

    status = await runtime.status()

    assert status["queue"]["pending"] == 1
    assert status["redis"] is True
    assert status["activeJobs"] == 0
    assert status["concurrency"] == 2
    assert status["reviewWorkflows"] == 0
    assert status["circuitBreakers"][0]["name"] == "buli2-forward"

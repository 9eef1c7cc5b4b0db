from __future__ import annotations

import asyncio

import pytest

from src.config import WorkerSettings
from src.errors import ExtractionFailure
from src.services.metrics import (
    JOBS_COMPLETED,
    JOBS_CPU_FALLBACK,
    JOBS_FAILED,
    JOBS_REQUEUED,
    LOCK_CONTENTION,
)
from src.services.processing import DocumentProcessor
from src.services.scoring import RuleBasedScorer
from src.workers.orchestrator import GPU_CPU_BOTH_FAILED, WorkerOrchestrator

from conftest import FakeExtractor


class _UnreadableScan(ExtractionFailure):
    retryable = False


class _GateExtractor:
    def __init__(self, text: str) -> None:
        self.text = text
        self.gate = asyncio.Event()

    async def extract_text(self, local_path: str) -> str:
        await self.gate.wait()
        return self.text


@pytest.fixture
def build(queue, lock, documents, publisher, metrics, storage, tmp_path, worker_settings):
    def _build(*, gpu, cpu=None, gpu_available=True, settings=None):
        processor = DocumentProcessor(
            documents=documents,
            storage=storage,
            gpu_extractor=gpu,
            cpu_extractor=cpu,
            scorer=RuleBasedScorer(),
            tmp_dir=str(tmp_path),
            metrics=metrics,
        )
        return WorkerOrchestrator(
            queue=queue,
            lock=lock,
            documents=documents,
            processor=processor,
            publisher=publisher,
            settings=settings or worker_settings,
            gpu_available=gpu_available,
            metrics=metrics,
            worker_id="worker-test",
        )

    return _build


async def _admit(queue, document_id: str) -> None:
    await queue.enqueue(document_id)
    assert await queue.dequeue() == document_id


@pytest.mark.asyncio
async def test_first_failure_is_requeued(build, queue, documents, publisher, metrics, make_document):
    make_document("doc-1", status="queued")
    orchestrator = build(gpu=FakeExtractor(ExtractionFailure("gpu timeout")))
    await _admit(queue, "doc-1")

    event = await orchestrator.handle_job("doc-1")

    assert event.success is False
    assert event.outcome == "retry_scheduled"
    assert event.attempts == 1
    assert await queue.get_attempts("doc-1") == 1
    stats = await queue.stats()
    assert stats.pending == 1
    assert stats.processing == 0
    assert (await documents.get_document("doc-1")).status == "queued"
    assert publisher.events == [event]
    assert metrics.count(JOBS_REQUEUED) == 1


@pytest.mark.asyncio
async def test_cpu_mode_when_gpu_unavailable(build, queue, documents, publisher, make_document, ktp_text):
    make_document("doc-2", status="queued")
    gpu = FakeExtractor(ExtractionFailure("no device"))
    cpu = FakeExtractor(ktp_text)
    orchestrator = build(gpu=gpu, cpu=cpu, gpu_available=False)
    await _admit(queue, "doc-2")

    event = await orchestrator.handle_job("doc-2")

    assert event.success is True
    assert event.gpu_processed is False
    assert event.score == 100
    assert event.decision == "auto_approve"
    assert event.outcome == "auto_approved"
    assert event.correlation_id
    assert gpu.calls == 0
    assert (await queue.stats()).to_dict() == {"pending": 0, "processing": 0, "delayed": 0}
    assert (await documents.get_document("doc-2")).status == "completed"


@pytest.mark.asyncio
async def test_exhausted_gpu_job_falls_back_to_cpu(build, queue, documents, metrics, make_document, ktp_text):
    make_document("doc-3", status="queued")
    orchestrator = build(gpu=FakeExtractor(ExtractionFailure("gpu crash")), cpu=FakeExtractor(ktp_text))
    await queue.enqueue("doc-3")

    events = []
    for _ in range(3):
        assert await queue.dequeue() == "doc-3"
        events.append(await orchestrator.handle_job("doc-3"))

    assert [event.outcome for event in events] == ["retry_scheduled", "retry_scheduled", "auto_approved"]
    final = events[-1]
    assert final.success is True
    assert final.gpu_processed is False
    assert final.attempts == 3
    assert metrics.count(JOBS_CPU_FALLBACK) == 1
    assert metrics.count(JOBS_COMPLETED, stage="cpu") == 1
    assert (await queue.stats()).to_dict() == {"pending": 0, "processing": 0, "delayed": 0}
    assert (await documents.get_document("doc-3")).verification_status == "auto_approved"


@pytest.mark.asyncio
async def test_gpu_and_cpu_both_failing(build, queue, documents, metrics, make_document):
    make_document("doc-4", status="queued")
    orchestrator = build(
        gpu=FakeExtractor(ExtractionFailure("gpu crash")),
        cpu=FakeExtractor(ExtractionFailure("cpu crash")),
    )
    await queue.enqueue("doc-4")
    for _ in range(3):
        await queue.dequeue()
        event = await orchestrator.handle_job("doc-4")

    assert event.success is False
    assert event.outcome == "failed"
    assert event.error == GPU_CPU_BOTH_FAILED
    stored = await documents.get_document("doc-4")
    assert stored.status == "failed"
    assert stored.result_json["error"] == GPU_CPU_BOTH_FAILED
    assert stored.result_json["maxRetriesExceeded"] is True
    assert metrics.count(JOBS_FAILED) == 1
    assert (await queue.stats()).to_dict() == {"pending": 0, "processing": 0, "delayed": 0}


@pytest.mark.asyncio
async def test_max_retries_without_fallback_fails_document(build, queue, documents, make_document):
    make_document("doc-5", status="queued")
    settings = WorkerSettings(concurrency=1, max_retries=2, lock_ttl_seconds=60, gpu_auto_fallback=False)
    cpu = FakeExtractor("unused")
    orchestrator = build(gpu=FakeExtractor(ExtractionFailure("gpu crash")), cpu=cpu, settings=settings)
    await queue.enqueue("doc-5")
    for _ in range(2):
        await queue.dequeue()
        event = await orchestrator.handle_job("doc-5")

    assert event.outcome == "failed"
    assert event.error == "Processing failed after 2 attempts: gpu crash"
    assert cpu.calls == 0
    stored = await documents.get_document("doc-5")
    assert stored.status == "failed"
    assert stored.result_json["error"] == event.error


@pytest.mark.asyncio
async def test_non_retryable_failure_settles_immediately(build, queue, documents, make_document):
    make_document("doc-6", status="queued")
    orchestrator = build(gpu=FakeExtractor(_UnreadableScan("not an identity document")))
    await _admit(queue, "doc-6")

    event = await orchestrator.handle_job("doc-6")

    assert event.outcome == "failed"
    assert event.attempts == 1
    stored = await documents.get_document("doc-6")
    assert stored.status == "failed"
    assert stored.result_json["maxRetriesExceeded"] is False
    assert (await queue.stats()).pending == 0


@pytest.mark.asyncio
async def test_missing_document_fails_job(build, queue, publisher, metrics):
    orchestrator = build(gpu=FakeExtractor("text"))
    await _admit(queue, "ghost")

    event = await orchestrator.handle_job("ghost")

    assert event.success is False
    assert event.error == "Document not found"
    assert event.outcome == "failed"
    assert publisher.events == [event]
    assert metrics.count(JOBS_FAILED) == 1
    assert await queue.processing_members() == []


@pytest.mark.asyncio
async def test_duplicate_of_completed_document_is_dropped(build, queue, publisher, make_document):
    make_document("doc-7", status="completed")
    gpu = FakeExtractor("text")
    orchestrator = build(gpu=gpu)
    await _admit(queue, "doc-7")

    assert await orchestrator.handle_job("doc-7") is None
    assert gpu.calls == 0
    assert publisher.events == []
    assert await queue.processing_members() == []
    assert await queue.get_attempts("doc-7") == 0


@pytest.mark.asyncio
async def test_lock_contention_requeues_without_attempt(build, queue, lock, metrics, make_document):
    make_document("doc-8", status="queued")
    gpu = FakeExtractor("text")
    orchestrator = build(gpu=gpu)
    await lock.acquire("doc-8", "other-worker", 60)
    await _admit(queue, "doc-8")

    assert await orchestrator.handle_job("doc-8") is None
    assert await queue.pending_ids() == ["doc-8"]
    assert await queue.get_attempts("doc-8") == 0
    assert gpu.calls == 0
    assert metrics.count(LOCK_CONTENTION) == 1
    assert await lock.owner("doc-8") == "other-worker"


@pytest.mark.asyncio
async def test_lock_is_released_after_each_run(build, queue, lock, make_document, ktp_text):
    make_document("doc-9", status="queued")
    orchestrator = build(gpu=FakeExtractor(ktp_text))
    await _admit(queue, "doc-9")
    await orchestrator.handle_job("doc-9")
    assert await lock.owner("doc-9") is None


@pytest.mark.asyncio
async def test_tick_respects_concurrency_limit(build, queue, make_document, ktp_text):
    gate = _GateExtractor(ktp_text)
    orchestrator = build(gpu=gate)
    for document_id in ("a", "b", "c"):
        make_document(document_id, status="queued")
        await queue.enqueue(document_id)

    assert await orchestrator.tick() == 2
    assert orchestrator.in_flight == 2
    assert await queue.pending_ids() == ["c"]
    assert await orchestrator.tick() == 0

    gate.gate.set()
    await orchestrator.drain()
    assert orchestrator.in_flight == 0
    assert await orchestrator.tick() == 1
    await orchestrator.drain()
    assert (await queue.stats()).to_dict() == {"pending": 0, "processing": 0, "delayed": 0}


def test_path_label_follows_gpu_availability(build):
    assert build(gpu=FakeExtractor("x")).path_label == "gpu"
    assert build(gpu=FakeExtractor("x"), gpu_available=False).path_label == "cpu"

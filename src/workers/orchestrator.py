"""Bounded-concurrency OCR worker with GPU path and CPU fallback.

Each poll tick fills free slots (up to ``concurrency``) from the job queue and
runs every dequeued job as its own asyncio task:

1. reuse the admission correlation id and bind it to the log context;
2. take the per-document lock (on contention the job goes back to the tail);
3. drop duplicates whose document is already processing or completed;
4. count the attempt and run the pipeline on the GPU or CPU path;
5. settle: complete, retry at the tail, or on exhaustion fall back to CPU
   (GPU path with auto-fallback) or fail the document with its last error.

Exactly one result event is published per pipeline run. Backing-store
outages leave the job in the processing set for the reaper.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from typing import Dict

from src.config import WorkerSettings
from src.errors import MaxRetriesExceeded, QueueUnavailableError
from src.logging_setup import correlation_context
from src.models.documents import DocumentStatus, ProcessingResult
from src.models.events import ProcessingResultEvent
from src.services.interfaces import DocumentStore, MetricsClient, ResultPublisher
from src.services.job_queue import RedisJobQueue
from src.services.locks import RedisDocumentLock
from src.services.metrics import (
    JOBS_COMPLETED,
    JOBS_CPU_FALLBACK,
    JOBS_FAILED,
    JOBS_REQUEUED,
    LOCK_CONTENTION,
    NullMetrics,
)
from src.services.processing import DocumentProcessor, mark_document_failed

LOG = logging.getLogger(__name__)

GPU_CPU_BOTH_FAILED = "GPU and CPU processing both failed"


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class WorkerOrchestrator:
    def __init__(
        self,
        *,
        queue: RedisJobQueue,
        lock: RedisDocumentLock,
        documents: DocumentStore,
        processor: DocumentProcessor,
        publisher: ResultPublisher,
        settings: WorkerSettings,
        gpu_available: bool,
        metrics: MetricsClient | None = None,
        worker_id: str | None = None,
    ) -> None:
        self._queue = queue
        self._lock = lock
        self._documents = documents
        self._processor = processor
        self._publisher = publisher
        self.settings = settings
        self.use_gpu = gpu_available
        self._metrics = metrics or NullMetrics()
        self.worker_id = worker_id or default_worker_id()
        self._in_flight: Dict[str, asyncio.Task[ProcessingResultEvent | None]] = {}
        if not gpu_available:
            LOG.warning(
                "worker_cpu_mode",
                extra={"worker_id": self.worker_id, "reason": "gpu_unavailable"},
            )

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def path_label(self) -> str:
        return "gpu" if self.use_gpu else "cpu"

    # ------------------------------------------------------------------ polling
    async def tick(self) -> int:
        """Fill free slots from the queue; returns the number of jobs started."""
        started = 0
        while len(self._in_flight) < self.settings.concurrency:
            try:
                document_id = await self._queue.dequeue()
            except QueueUnavailableError:
                LOG.warning("worker_poll_skipped", extra={"worker_id": self.worker_id})
                break
            if document_id is None:
                break
            if document_id in self._in_flight:
                # same id re-admitted while our previous run is still settling
                await self._queue.requeue(document_id)
                break
            task = asyncio.create_task(self.handle_job(document_id), name=f"ocr-job-{document_id}")
            self._in_flight[document_id] = task
            task.add_done_callback(lambda t, doc=document_id: self._job_done(doc, t))
            started += 1
        return started

    def _job_done(self, document_id: str, task: asyncio.Task) -> None:
        if self._in_flight.get(document_id) is task:
            self._in_flight.pop(document_id, None)
        if task.cancelled():
            LOG.warning("job_task_cancelled", extra={"document_id": document_id})
            return
        exc = task.exception()
        if exc is not None:
            LOG.error(
                "job_task_crashed",
                extra={"document_id": document_id, "error": str(exc), "error_type": exc.__class__.__name__},
                exc_info=exc,
            )

    async def drain(self) -> None:
        """Wait for every in-flight job task to finish."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    # ------------------------------------------------------------------ one job
    async def handle_job(self, document_id: str) -> ProcessingResultEvent | None:
        try:
            correlation_id = await self._queue.ensure_correlation_id(document_id)
        except QueueUnavailableError:
            LOG.error("job_left_for_reaper", extra={"document_id": document_id})
            return None
        with correlation_context(correlation_id):
            try:
                return await self._handle_locked(document_id, correlation_id)
            except QueueUnavailableError as exc:
                LOG.error(
                    "job_left_for_reaper",
                    extra={"document_id": document_id, "error": str(exc)},
                )
                return None

    async def _handle_locked(
        self, document_id: str, correlation_id: str
    ) -> ProcessingResultEvent | None:
        owner = f"{self.worker_id}:{uuid.uuid4().hex[:8]}"
        if not await self._lock.acquire(document_id, owner, self.settings.lock_ttl_seconds):
            self._metrics.increment(LOCK_CONTENTION, stage=self.path_label)
            await self._queue.requeue(document_id)
            return None
        try:
            event = await self._run_attempt(document_id, correlation_id)
        finally:
            await self._lock.release(document_id, owner)
        if event is not None:
            await self._publisher.publish(event)
        return event

    async def _run_attempt(
        self, document_id: str, correlation_id: str
    ) -> ProcessingResultEvent | None:
        document = await self._documents.get_document(document_id)
        if document is None:
            await self._queue.mark_failed(document_id)
            self._metrics.increment(JOBS_FAILED, stage=self.path_label)
            LOG.error("job_document_missing", extra={"document_id": document_id})
            return ProcessingResultEvent(
                document_id=document_id,
                correlation_id=correlation_id,
                success=False,
                gpu_processed=False,
                error="Document not found",
                outcome="failed",
            )
        if document.in_flight:
            LOG.info(
                "job_dropped_duplicate",
                extra={"document_id": document_id, "status": document.status},
            )
            await self._queue.mark_complete(document_id)
            return None

        attempts = await self._queue.increment_attempts(document_id)
        LOG.info(
            "job_attempt_started",
            extra={
                "document_id": document_id,
                "attempts": attempts,
                "max_retries": self.settings.max_retries,
                "worker_id": self.worker_id,
                "path": self.path_label,
            },
        )
        result = await self._processor.process(
            document_id, use_gpu=self.use_gpu, correlation_id=correlation_id
        )

        if result.success:
            await self._queue.mark_complete(document_id)
            self._metrics.increment(JOBS_COMPLETED, stage=self.path_label)
            return self._event(result, correlation_id, attempts)

        if not result.retryable:
            await mark_document_failed(
                self._documents, document_id, result.error or "Processing failed", max_retries_exceeded=False
            )
            await self._queue.mark_failed(document_id)
            self._metrics.increment(JOBS_FAILED, stage=self.path_label)
            return self._event(result, correlation_id, attempts, outcome="failed")

        if attempts < self.settings.max_retries:
            await self._documents.update_document(document_id, {"status": DocumentStatus.QUEUED.value})
            await self._queue.requeue(document_id)
            self._metrics.increment(JOBS_REQUEUED, stage=self.path_label)
            LOG.info(
                "job_retry_scheduled",
                extra={
                    "document_id": document_id,
                    "attempts": attempts,
                    "max_retries": self.settings.max_retries,
                    "error": result.error,
                },
            )
            return self._event(result, correlation_id, attempts, outcome="retry_scheduled")

        return await self._exhausted(document_id, correlation_id, attempts, result)

    async def _exhausted(
        self,
        document_id: str,
        correlation_id: str,
        attempts: int,
        result: ProcessingResult,
    ) -> ProcessingResultEvent:
        LOG.error(
            "job_max_retries_exceeded",
            extra={"document_id": document_id, "attempts": attempts, "error": result.error},
        )
        if self.use_gpu and self.settings.gpu_auto_fallback:
            self._metrics.increment(JOBS_CPU_FALLBACK, stage="cpu")
            LOG.info("job_cpu_fallback", extra={"document_id": document_id})
            fallback = await self._processor.process(
                document_id, use_gpu=False, correlation_id=correlation_id
            )
            if fallback.success:
                await self._queue.mark_complete(document_id)
                self._metrics.increment(JOBS_COMPLETED, stage="cpu")
                return self._event(fallback, correlation_id, attempts)
            await mark_document_failed(self._documents, document_id, GPU_CPU_BOTH_FAILED)
            await self._queue.mark_failed(document_id)
            self._metrics.increment(JOBS_FAILED, stage="cpu")
            fallback.error = GPU_CPU_BOTH_FAILED
            return self._event(fallback, correlation_id, attempts, outcome="failed")

        error = str(MaxRetriesExceeded(document_id, attempts, result.error))
        await mark_document_failed(self._documents, document_id, error)
        await self._queue.mark_failed(document_id)
        self._metrics.increment(JOBS_FAILED, stage=self.path_label)
        result.error = error
        return self._event(result, correlation_id, attempts, outcome="failed")

    @staticmethod
    def _event(
        result: ProcessingResult,
        correlation_id: str | None,
        attempts: int,
        *,
        outcome: str | None = None,
    ) -> ProcessingResultEvent:
        return ProcessingResultEvent(
            document_id=result.document_id,
            correlation_id=correlation_id,
            success=result.success,
            gpu_processed=result.gpu_processed,
            score=result.score,
            decision=result.decision,
            outcome=outcome or result.outcome,
            error=result.error,
            attempts=attempts,
            processing_time_ms=result.processing_time_ms,
        )


__all__ = ["GPU_CPU_BOTH_FAILED", "WorkerOrchestrator", "default_worker_id"]

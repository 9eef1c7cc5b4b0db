"""Stuck-job reaper and startup recovery.

A job whose worker died stays in the processing set forever unless something
reclaims it. The reaper sweeps the set on an interval:

* no start timestamp: reclaim (the timer was lost, nobody owns the job);
* running longer than the stuck timeout with attempts left: reclaim;
* stuck with attempts exhausted: fail the document and drop the job.

Reclaiming releases the document lock, clears the timer and moves the job
back to the pending tail. The terminal branch settles the queue first and
only writes the failure when the id was still in flight, so a worker racing
to finish the same job wins cleanly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List

from src.config import ReaperSettings
from src.models.documents import DocumentStatus
from src.services.interfaces import DocumentStore, MetricsClient
from src.services.job_queue import RedisJobQueue
from src.services.locks import RedisDocumentLock
from src.services.metrics import JOBS_REAPED, NullMetrics
from src.services.processing import mark_document_failed
from src.utils.clock import Clock, SystemClock

LOG = logging.getLogger(__name__)


@dataclass(slots=True)
class ReapReport:
    scanned: int = 0
    requeued: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"scanned": self.scanned, "requeued": list(self.requeued), "failed": list(self.failed)}


class StuckJobReaper:
    def __init__(
        self,
        *,
        queue: RedisJobQueue,
        lock: RedisDocumentLock,
        documents: DocumentStore,
        settings: ReaperSettings,
        metrics: MetricsClient | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._queue = queue
        self._lock = lock
        self._documents = documents
        self.settings = settings
        self._metrics = metrics or NullMetrics()
        self._clock = clock or SystemClock()

    async def sweep(self) -> ReapReport:
        report = ReapReport()
        now = self._clock.now()
        for document_id in await self._queue.processing_members():
            report.scanned += 1
            started_at = await self._queue.processing_started_at(document_id)
            if started_at is None:
                if await self._reclaim(document_id, reason="missing_start_timestamp"):
                    report.requeued.append(document_id)
                continue
            elapsed = now - started_at
            if elapsed <= self.settings.stuck_timeout_seconds:
                continue
            attempts = await self._queue.get_attempts(document_id)
            if attempts < self.settings.max_retries:
                if await self._reclaim(document_id, reason="stuck_timeout", attempts=attempts):
                    report.requeued.append(document_id)
            elif await self._fail(document_id, attempts, elapsed):
                report.failed.append(document_id)
        if report.requeued or report.failed:
            LOG.warning("reaper_sweep_completed", extra=report.to_dict())
        return report

    async def _reclaim(self, document_id: str, *, reason: str, attempts: int | None = None) -> bool:
        await self._lock.release(document_id)
        await self._queue.clear_stuck_timer(document_id)
        if not await self._queue.requeue(document_id):
            return False
        await self._documents.update_document(document_id, {"status": DocumentStatus.QUEUED.value})
        self._metrics.increment(JOBS_REAPED, stage="requeued")
        LOG.warning(
            "stuck_job_requeued",
            extra={"document_id": document_id, "reason": reason, "attempts": attempts},
        )
        return True

    async def _fail(self, document_id: str, attempts: int, elapsed: float) -> bool:
        if not await self._queue.mark_failed(document_id):
            return False
        await mark_document_failed(
            self._documents,
            document_id,
            f"Processing timed out after {attempts} attempts",
            clock=self._clock,
        )
        await self._lock.release(document_id)
        self._metrics.increment(JOBS_REAPED, stage="failed")
        LOG.error(
            "stuck_job_failed",
            extra={"document_id": document_id, "attempts": attempts, "duration_ms": int(elapsed * 1000)},
        )
        return True


async def recover_on_startup(
    *,
    queue: RedisJobQueue,
    lock: RedisDocumentLock,
    documents: DocumentStore,
) -> list[str]:
    """Re-admit documents left in ``processing`` by a previous run.

    Documents whose lock is still held belong to a live worker and are left
    alone. Returns the re-admitted ids.
    """
    recovered: list[str] = []
    for document in await documents.list_documents_by_status(DocumentStatus.PROCESSING.value):
        if await lock.owner(document.id) is not None:
            continue
        await queue.remove_everywhere(document.id)
        await documents.update_document(document.id, {"status": DocumentStatus.QUEUED.value})
        await queue.enqueue(document.id)
        recovered.append(document.id)
    if recovered:
        LOG.warning("startup_recovery_requeued", extra={"count": len(recovered), "document_ids": recovered})
    return recovered


__all__ = ["ReapReport", "StuckJobReaper", "recover_on_startup"]

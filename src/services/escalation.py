"""Escalation of low-confidence documents to the external review service.

``EscalationService`` forwards review payloads through the ``buli2-forward``
circuit breaker. When the breaker is open, or the call fails outright, the
payload is appended to a durable Redis list (``filot:buli2:retry_queue``) that
a periodic drain replays later. The drain skips entirely while the breaker is
open and stops at the first circuit-open result, pushing that item back to
the head so ordering is preserved.
Each entry sits in an in-flight list while it is forwarded and leaves it only
once settled, so a drain that dies mid-forward loses nothing: the next drain
puts it back at the head.

``ReviewEscalator`` ties one document escalation together: review record,
forward (or queue), and the start of the review workflow.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from src.errors import QueueUnavailableError
from src.models.documents import DocumentRecord, ScoringResult
from src.models.events import EscalationPayload, QueuedEscalation
from src.models.review import ReviewStatus, ReviewWorkflowInput
from src.utils.clock import Clock, SystemClock
from src.utils.redact import redact_mapping

from .circuit_breaker import CircuitBreaker
from .interfaces import MetricsClient, ReviewServiceClient, ReviewStore
from .metrics import ESCALATIONS_QUEUED, NullMetrics

LOG = logging.getLogger(__name__)

BREAKER_NAME = "buli2-forward"
DEFAULT_RETRY_QUEUE_KEY = "filot:buli2:retry_queue"


def review_id_for(document_id: str) -> str:
    return f"rev-{document_id}"


@dataclass(slots=True)
class ForwardResult:
    success: bool
    task_id: str | None = None
    error: str | None = None
    queued: bool = False
    circuit_open: bool = False


@dataclass(slots=True)
class DrainReport:
    processed: int = 0
    succeeded: int = 0
    requeued: int = 0
    dropped: int = 0
    skipped: bool = False
    stopped_on_open: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "requeued": self.requeued,
            "dropped": self.dropped,
            "skipped": self.skipped,
            "stopped_on_open": self.stopped_on_open,
        }


class EscalationService:
    def __init__(
        self,
        *,
        client: ReviewServiceClient,
        breaker: CircuitBreaker,
        redis: Redis,
        reviews: ReviewStore | None = None,
        retry_queue_key: str = DEFAULT_RETRY_QUEUE_KEY,
        drain_batch: int = 10,
        max_queued_attempts: int = 5,
        metrics: MetricsClient | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.client = client
        self.breaker = breaker
        self._redis = redis
        self._reviews = reviews
        self.retry_queue_key = retry_queue_key
        self._drain_batch = drain_batch
        self._max_queued_attempts = max_queued_attempts
        self._metrics = metrics or NullMetrics()
        self._clock = clock or SystemClock()

    async def forward(
        self, payload: EscalationPayload, *, queue_on_failure: bool = True
    ) -> ForwardResult:
        LOG.info(
            "escalation_forward_started",
            extra={
                "review_id": payload.review_id,
                "document_id": payload.document_id,
                "payload": redact_mapping(payload.to_dict()),
            },
        )
        circuit_open = False

        async def _on_open() -> None:
            nonlocal circuit_open
            circuit_open = True
            return None

        async def _create():
            return await self.client.create_review_task(payload)

        try:
            task = await self.breaker.execute(_create, _on_open)
        except Exception as exc:
            LOG.warning(
                "escalation_forward_failed",
                extra={
                    "review_id": payload.review_id,
                    "document_id": payload.document_id,
                    "error": str(exc),
                    "error_type": exc.__class__.__name__,
                },
            )
            if queue_on_failure:
                await self.queue_for_retry(payload)
                return ForwardResult(success=False, error=str(exc), queued=True)
            return ForwardResult(success=False, error=str(exc))

        if task is None:
            message = f'Circuit breaker "{self.breaker.name}" is open'
            if queue_on_failure:
                await self.queue_for_retry(payload)
                return ForwardResult(success=False, error=message, queued=True, circuit_open=True)
            return ForwardResult(success=False, error=message, circuit_open=True)

        LOG.info(
            "escalation_forwarded",
            extra={
                "review_id": payload.review_id,
                "document_id": payload.document_id,
                "external_task_id": task.task_id,
            },
        )
        return ForwardResult(success=True, task_id=task.task_id)

    async def queue_for_retry(self, payload: EscalationPayload, *, attempts: int = 0) -> None:
        item = QueuedEscalation(payload=payload, queued_at=self._clock.now(), attempts=attempts)
        try:
            await self._redis.rpush(self.retry_queue_key, item.to_message())
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise QueueUnavailableError(f"Escalation retry queue unavailable: {exc}") from exc
        self._metrics.increment(ESCALATIONS_QUEUED, stage="escalation")
        LOG.info(
            "escalation_queued_for_retry",
            extra={"review_id": payload.review_id, "document_id": payload.document_id, "attempts": attempts},
        )

    async def retry_queue_length(self) -> int:
        try:
            return int(await self._redis.llen(self.retry_queue_key))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise QueueUnavailableError(f"Escalation retry queue unavailable: {exc}") from exc

    @property
    def inflight_key(self) -> str:
        return f"{self.retry_queue_key}:inflight"

    async def _settle(self, raw: str, *, head: str | None = None, tail: str | None = None) -> None:
        """Drop ``raw`` from the in-flight list and optionally put an entry back."""
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self.inflight_key, 1, raw)
            if head is not None:
                pipe.lpush(self.retry_queue_key, head)
            if tail is not None:
                pipe.rpush(self.retry_queue_key, tail)
            await pipe.execute()

    async def _recover_inflight(self) -> int:
        # entries a crashed drain never settled go back to the head in order
        recovered = 0
        while await self._redis.lmove(self.inflight_key, self.retry_queue_key, "RIGHT", "LEFT") is not None:
            recovered += 1
        if recovered:
            LOG.warning("escalation_inflight_recovered", extra={"count": recovered})
        return recovered

    async def drain_retry_queue(self) -> DrainReport:
        report = DrainReport()
        if self.breaker.is_open:
            report.skipped = True
            LOG.info("escalation_drain_skipped", extra={"reason": "circuit_open"})
            return report
        try:
            await self._recover_inflight()
            for _ in range(self._drain_batch):
                raw = await self._redis.lmove(self.retry_queue_key, self.inflight_key, "LEFT", "RIGHT")
                if raw is None:
                    break
                report.processed += 1
                try:
                    item = QueuedEscalation.from_message(raw)
                except (ValueError, KeyError, TypeError) as exc:
                    await self._settle(raw)
                    report.dropped += 1
                    LOG.error("escalation_entry_malformed", extra={"error": str(exc)})
                    continue
                result = await self.forward(item.payload, queue_on_failure=False)
                if result.success:
                    await self._settle(raw)
                    report.succeeded += 1
                    await self._record_task(item.payload.review_id, result.task_id)
                    continue
                if result.circuit_open:
                    await self._settle(raw, head=raw)
                    report.stopped_on_open = True
                    break
                item.attempts += 1
                if item.attempts < self._max_queued_attempts:
                    await self._settle(raw, tail=item.to_message())
                    report.requeued += 1
                else:
                    await self._settle(raw)
                    report.dropped += 1
                    LOG.error(
                        "escalation_dropped",
                        extra={
                            "review_id": item.payload.review_id,
                            "document_id": item.payload.document_id,
                            "attempts": item.attempts,
                            "error": result.error,
                        },
                    )
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise QueueUnavailableError(f"Escalation retry queue unavailable: {exc}") from exc
        LOG.info("escalation_drain_completed", extra=report.to_dict())
        return report

    async def _record_task(self, review_id: str, task_id: str | None) -> None:
        if self._reviews is None or not task_id:
            return
        await self._reviews.update_review(review_id, {"external_task_id": task_id})


class ReviewWorkflowStarter(Protocol):
    async def start(self, workflow_input: ReviewWorkflowInput) -> Any: ...


class ReviewEscalator:
    """Create the review record, forward the task, then start the workflow."""

    def __init__(
        self,
        *,
        escalation: EscalationService,
        reviews: ReviewStore,
        workflows: ReviewWorkflowStarter | None = None,
        schema_version: int = 3,
    ) -> None:
        self._escalation = escalation
        self._reviews = reviews
        self._workflows = workflows
        self._schema_version = schema_version

    def attach_workflows(self, workflows: ReviewWorkflowStarter) -> None:
        self._workflows = workflows

    async def escalate(
        self,
        document: DocumentRecord,
        *,
        parsed: Mapping[str, Any],
        scoring: ScoringResult,
        ocr_text: str,
        correlation_id: str | None = None,
    ) -> ForwardResult:
        review_id = review_id_for(document.id)
        created = await self._reviews.insert_review(
            {
                "id": review_id,
                "document_id": document.id,
                "user_id": document.user_id,
                "status": ReviewStatus.PENDING.value,
                "decision": None,
                "notes": None,
                "external_task_id": None,
                "ai_score": scoring.score,
                "schema_version": self._schema_version,
            }
        )
        existing = None if created else await self._reviews.get_review(review_id)
        payload = EscalationPayload(
            review_id=review_id,
            document_id=document.id,
            user_id=document.user_id,
            document_type=document.document_type.value,
            parsed_data=dict(parsed),
            ocr_text=ocr_text,
            score=scoring.score,
            decision=scoring.decision.value,
            reasons=list(scoring.reasons),
            correlation_id=correlation_id,
        )
        if existing and existing.get("external_task_id"):
            result = ForwardResult(success=True, task_id=existing["external_task_id"])
        else:
            result = await self._escalation.forward(payload)
            if result.task_id:
                await self._reviews.update_review(review_id, {"external_task_id": result.task_id})

        if self._workflows is not None:
            await self._workflows.start(
                ReviewWorkflowInput(
                    review_id=review_id,
                    document_id=document.id,
                    user_id=document.user_id,
                    document_type=payload.document_type,
                    parsed_data=payload.parsed_data,
                    ocr_text=ocr_text,
                    score=scoring.score,
                    decision=scoring.decision.value,
                    reasons=payload.reasons,
                    correlation_id=correlation_id,
                    external_task_id=result.task_id,
                    escalation_sent=True,
                    schema_version=(existing or {}).get("schema_version") or self._schema_version,
                )
            )
        LOG.info(
            "document_escalated",
            extra={
                "document_id": document.id,
                "review_id": review_id,
                "external_task_id": result.task_id,
                "queued": result.queued,
            },
        )
        return result


__all__ = [
    "BREAKER_NAME",
    "DrainReport",
    "EscalationService",
    "ForwardResult",
    "ReviewEscalator",
    "ReviewWorkflowStarter",
    "review_id_for",
]

from __future__ import annotations

import pytest

from src.errors import ReviewServiceError
from src.models.documents import DocumentRecord, ScoringDecision, ScoringResult
from src.models.events import EscalationPayload, QueuedEscalation
from src.services.circuit_breaker import CircuitBreaker
from src.services.escalation import EscalationService, ReviewEscalator, review_id_for
from src.services.metrics import ESCALATIONS_QUEUED
from src.services.review_client import LocalReviewServiceClient

RETRY_KEY = "test:buli2:retry_queue"


class _FailingClient(LocalReviewServiceClient):
    def __init__(self) -> None:
        super().__init__()
        self.attempts = 0

    async def create_review_task(self, payload):
        self.attempts += 1
        raise ReviewServiceError("Review service returned status 503", status_code=503)


class _RecordingStarter:
    def __init__(self) -> None:
        self.inputs = []

    async def start(self, workflow_input):
        self.inputs.append(workflow_input)


def _payload(document_id: str = "doc-1") -> EscalationPayload:
    return EscalationPayload(
        review_id=review_id_for(document_id),
        document_id=document_id,
        user_id="user-1",
        document_type="KTP",
        parsed_data={"nik": "3171234567890123"},
        ocr_text="NIK : 3171234567890123",
        score=60,
        decision="needs_review",
    )


@pytest.fixture
def service_factory(redis, reviews, metrics, clock):
    def _factory(client=None, *, failure_threshold=5, max_queued_attempts=5):
        return EscalationService(
            client=client or LocalReviewServiceClient(),
            breaker=CircuitBreaker("buli2-forward", failure_threshold=failure_threshold, clock=clock),
            redis=redis,
            reviews=reviews,
            retry_queue_key=RETRY_KEY,
            max_queued_attempts=max_queued_attempts,
            metrics=metrics,
            clock=clock,
        )

    return _factory


@pytest.mark.asyncio
async def test_forward_returns_external_task(service_factory):
    service = service_factory()
    result = await service.forward(_payload())
    assert result.success is True
    assert result.task_id == "local-rev-doc-1"
    assert await service.retry_queue_length() == 0


@pytest.mark.asyncio
async def test_failed_forward_is_queued_for_retry(service_factory, redis, metrics):
    service = service_factory(_FailingClient())
    result = await service.forward(_payload())

    assert result.success is False
    assert result.queued is True
    assert result.circuit_open is False
    raw = await redis.lindex(RETRY_KEY, 0)
    item = QueuedEscalation.from_message(raw)
    assert item.payload.review_id == "rev-doc-1"
    assert item.attempts == 0
    assert metrics.count(ESCALATIONS_QUEUED) == 1


@pytest.mark.asyncio
async def test_open_breaker_queues_without_calling_service(service_factory):
    client = _FailingClient()
    service = service_factory(client, failure_threshold=1)
    await service.forward(_payload("doc-1"))
    assert service.breaker.is_open

    result = await service.forward(_payload("doc-2"))

    assert result.circuit_open is True
    assert result.queued is True
    assert client.attempts == 1
    assert await service.retry_queue_length() == 2


@pytest.mark.asyncio
async def test_forward_without_queueing(service_factory):
    service = service_factory(_FailingClient())
    result = await service.forward(_payload(), queue_on_failure=False)
    assert result.queued is False
    assert await service.retry_queue_length() == 0


@pytest.mark.asyncio
async def test_drain_skips_while_breaker_open(service_factory):
    service = service_factory(_FailingClient(), failure_threshold=1)
    await service.forward(_payload())

    report = await service.drain_retry_queue()

    assert report.skipped is True
    assert report.processed == 0
    assert await service.retry_queue_length() == 1


@pytest.mark.asyncio
async def test_drain_replays_and_records_task(service_factory, reviews):
    await reviews.insert_review({"id": "rev-doc-1", "document_id": "doc-1", "status": "awaiting_decision"})
    service = service_factory()
    await service.queue_for_retry(_payload())

    report = await service.drain_retry_queue()

    assert report.to_dict() == {
        "processed": 1,
        "succeeded": 1,
        "requeued": 0,
        "dropped": 0,
        "skipped": False,
        "stopped_on_open": False,
    }
    assert (await reviews.get_review("rev-doc-1"))["external_task_id"] == "local-rev-doc-1"
    assert await service.retry_queue_length() == 0


@pytest.mark.asyncio
async def test_drain_stops_when_breaker_opens_mid_batch(service_factory, redis):
    service = service_factory(_FailingClient(), failure_threshold=1)
    await service.queue_for_retry(_payload("doc-1"))
    await service.queue_for_retry(_payload("doc-2"))

    report = await service.drain_retry_queue()

    assert report.processed == 2
    assert report.requeued == 1
    assert report.stopped_on_open is True
    remaining = [QueuedEscalation.from_message(raw) for raw in await redis.lrange(RETRY_KEY, 0, -1)]
    assert [item.payload.document_id for item in remaining] == ["doc-2", "doc-1"]
    assert [item.attempts for item in remaining] == [0, 1]
    assert await redis.llen(f"{RETRY_KEY}:inflight") == 0


@pytest.mark.asyncio
async def test_drain_drops_after_max_attempts(service_factory):
    service = service_factory(_FailingClient(), max_queued_attempts=1)
    await service.queue_for_retry(_payload())

    report = await service.drain_retry_queue()

    assert report.dropped == 1
    assert await service.retry_queue_length() == 0


@pytest.mark.asyncio
async def test_drain_drops_malformed_entries(service_factory, redis):
    service = service_factory()
    await redis.rpush(RETRY_KEY, "not-json")
    report = await service.drain_retry_queue()
    assert report.dropped == 1
    assert report.processed == 1
    assert await redis.llen(f"{RETRY_KEY}:inflight") == 0


@pytest.mark.asyncio
async def test_drain_interrupted_mid_forward_keeps_the_entry(service_factory, redis):
    service = service_factory()
    await service.queue_for_retry(_payload("doc-1"))
    await service.queue_for_retry(_payload("doc-2"))
    forwarded = []

    async def _killed(payload, **kwargs):
        raise RuntimeError("worker killed")

    service.forward = _killed
    with pytest.raises(RuntimeError):
        await service.drain_retry_queue()
    assert await redis.llen(f"{RETRY_KEY}:inflight") == 1
    assert await service.retry_queue_length() == 1

    del service.forward
    original = service.forward

    async def _recording(payload, **kwargs):
        forwarded.append(payload.document_id)
        return await original(payload, **kwargs)

    service.forward = _recording
    report = await service.drain_retry_queue()

    assert report.succeeded == 2
    assert forwarded == ["doc-1", "doc-2"]
    assert await redis.llen(f"{RETRY_KEY}:inflight") == 0
    assert await service.retry_queue_length() == 0


@pytest.mark.asyncio
async def test_escalator_creates_review_forwards_and_starts_workflow(service_factory, reviews):
    starter = _RecordingStarter()
    escalator = ReviewEscalator(escalation=service_factory(), reviews=reviews, workflows=starter, schema_version=2)
    document = DocumentRecord(id="doc-1", type="KTP", user_id="user-1")
    scoring = ScoringResult(score=60, decision=ScoringDecision.NEEDS_REVIEW, reasons=["Score 60 requires manual review"])

    result = await escalator.escalate(
        document, parsed={"nik": "3171234567890123"}, scoring=scoring, ocr_text="text", correlation_id="cid-1"
    )

    assert result.task_id == "local-rev-doc-1"
    record = await reviews.get_review("rev-doc-1")
    assert record["status"] == "pending"
    assert record["external_task_id"] == "local-rev-doc-1"
    assert record["schema_version"] == 2
    (workflow_input,) = starter.inputs
    assert workflow_input.escalation_sent is True
    assert workflow_input.external_task_id == "local-rev-doc-1"
    assert workflow_input.correlation_id == "cid-1"
    assert workflow_input.schema_version == 2


@pytest.mark.asyncio
async def test_escalator_does_not_forward_twice(service_factory, reviews):
    client = LocalReviewServiceClient()
    service = service_factory(client)
    escalator = ReviewEscalator(escalation=service, reviews=reviews)
    document = DocumentRecord(id="doc-1", type="KTP", user_id="user-1")
    scoring = ScoringResult(score=60, decision=ScoringDecision.NEEDS_REVIEW)

    await escalator.escalate(document, parsed={}, scoring=scoring, ocr_text="")
    client.tasks.clear()
    result = await escalator.escalate(document, parsed={}, scoring=scoring, ocr_text="")

    assert result.task_id == "local-rev-doc-1"
    assert client.tasks == {}

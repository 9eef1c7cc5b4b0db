"""Process-level container for the KYC document backbone.

``WorkerRuntime`` is built once by the entry point (CLI or FastAPI app) from an
``AppConfig`` and owns every component: Redis client, job queue, locks,
breakers, escalation, review workflows, worker orchestrator and reaper.
Nothing is held in module globals; tests build a runtime with fakes.

Background loops (worker poll, reaper, delayed-retry promotion, escalation
drain) run as ``PeriodicTask`` instances sharing one stop event.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any, Dict, List

from redis.asyncio import Redis

from src.config import AppConfig
from src.errors import QueueUnavailableError
from src.models.documents import DocumentStatus
from src.models.events import ProcessingResultEvent
from src.services.circuit_breaker import CircuitBreakerRegistry, CircuitState
from src.services.escalation import BREAKER_NAME, EscalationService, ReviewEscalator
from src.services.interfaces import (
    DocumentStore,
    MetricsClient,
    NotificationSink,
    ObjectStorage,
    ResultPublisher,
    ReviewServiceClient,
    ReviewStore,
    TextExtractor,
)
from src.services.job_queue import RedisJobQueue
from src.services.locks import RedisDocumentLock
from src.services.metrics import PrometheusMetrics
from src.services.notifications import ADMIN, LoggingNotificationSink
from src.services.object_storage import LocalObjectStorage
from src.services.persistence import InMemoryDocumentRepository, InMemoryReviewRepository
from src.services.processing import DocumentProcessor
from src.services.results_publisher import RedisResultPublisher
from src.services.review_client import HttpReviewServiceClient, LocalReviewServiceClient
from src.services.scoring import RuleBasedScorer
from src.services.text_extraction import TesseractTextExtractor
from src.utils.clock import Clock, SystemClock
from src.utils.periodic import PeriodicTask
from src.workers.orchestrator import WorkerOrchestrator
from src.workers.reaper import StuckJobReaper, recover_on_startup
from src.workflows.manager import ReviewWorkflowManager

LOG = logging.getLogger(__name__)


class WorkerRuntime:
    def __init__(
        self,
        config: AppConfig,
        *,
        redis: Redis | None = None,
        documents: DocumentStore | None = None,
        reviews: ReviewStore | None = None,
        storage: ObjectStorage | None = None,
        gpu_extractor: TextExtractor | None = None,
        cpu_extractor: TextExtractor | None = None,
        review_client: ReviewServiceClient | None = None,
        notifier: NotificationSink | None = None,
        publisher: ResultPublisher | None = None,
        metrics: MetricsClient | None = None,
        clock: Clock | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.config = config
        self.clock = clock or SystemClock()
        self.metrics = metrics or PrometheusMetrics.default()
        self.redis = redis or Redis.from_url(config.redis_url, decode_responses=True)
        self.documents = documents or InMemoryDocumentRepository()
        self.reviews = reviews or InMemoryReviewRepository()
        self.storage = storage or LocalObjectStorage(config.storage_root)
        self.notifier = notifier or LoggingNotificationSink()

        self.queue = RedisJobQueue(self.redis, prefix=config.queue_prefix, clock=self.clock)
        self.lock = RedisDocumentLock(self.redis, prefix=config.queue_prefix)
        self.publisher = publisher or RedisResultPublisher(self.redis, config.results_channel)

        self.breakers = CircuitBreakerRegistry(clock=self.clock, on_state_change=self._breaker_changed)
        breaker_settings = config.breaker_settings()
        self.review_breaker = self.breakers.get_or_create(
            BREAKER_NAME,
            failure_threshold=breaker_settings.failure_threshold,
            cooldown_seconds=breaker_settings.cooldown_seconds,
        )
        self.review_client = review_client or self._build_review_client()
        self.escalation = EscalationService(
            client=self.review_client,
            breaker=self.review_breaker,
            redis=self.redis,
            reviews=self.reviews,
            retry_queue_key=config.review_retry_queue_key,
            drain_batch=config.escalation_drain_batch,
            max_queued_attempts=config.escalation_max_attempts,
            metrics=self.metrics,
            clock=self.clock,
        )
        self.workflows = ReviewWorkflowManager(
            documents=self.documents,
            reviews=self.reviews,
            notifier=self.notifier,
            settings=config.review_workflow_settings(),
            escalation=self.escalation,
            client=self.review_client,
            callback_secret=config.review_callback_secret,
            metrics=self.metrics,
            clock=self.clock,
        )
        self.escalator = ReviewEscalator(
            escalation=self.escalation,
            reviews=self.reviews,
            workflows=self.workflows,
            schema_version=config.review_schema_version,
        )
        gpu = gpu_extractor or TesseractTextExtractor(
            command=config.tesseract_cmd, lang=config.tesseract_lang, oem=1
        )
        self.processor = DocumentProcessor(
            documents=self.documents,
            storage=self.storage,
            gpu_extractor=gpu,
            cpu_extractor=cpu_extractor
            or TesseractTextExtractor(command=config.tesseract_cmd, lang=config.tesseract_lang, oem=0),
            scorer=RuleBasedScorer(
                auto_approve_threshold=config.auto_approve_threshold,
                auto_reject_threshold=config.auto_reject_threshold,
            ),
            escalator=self.escalator,
            tmp_dir=config.tmp_dir,
            metrics=self.metrics,
            clock=self.clock,
        )
        self.orchestrator = WorkerOrchestrator(
            queue=self.queue,
            lock=self.lock,
            documents=self.documents,
            processor=self.processor,
            publisher=self.publisher,
            settings=config.worker_settings(),
            gpu_available=config.gpu_available,
            metrics=self.metrics,
            worker_id=worker_id,
        )
        self.reaper = StuckJobReaper(
            queue=self.queue,
            lock=self.lock,
            documents=self.documents,
            settings=config.reaper_settings(),
            metrics=self.metrics,
            clock=self.clock,
        )
        self.stop_event = asyncio.Event()
        self._alerts: set[asyncio.Task[Any]] = set()
        self.loops: List[PeriodicTask] = []
        self.worker_running = False

    def _build_review_client(self) -> ReviewServiceClient:
        if self.config.review_service_configured:
            return HttpReviewServiceClient(
                self.config.review_service_url or "",
                api_key=self.config.review_service_api_key,
                timeout_seconds=self.config.review_request_timeout_seconds,
            )
        LOG.warning("review_service_local_mode", extra={"reason": "BULI2_API_URL not set"})
        return LocalReviewServiceClient()

    def _breaker_changed(self, name: str, old: CircuitState, new: CircuitState) -> None:
        if new is not CircuitState.OPEN:
            return
        message = f'Circuit breaker "{name}" opened after repeated failures'
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOG.warning("breaker_alert_skipped", extra={"breaker": name})
            return
        task = loop.create_task(self.notifier.notify(ADMIN, "circuit_open", message))
        self._alerts.add(task)
        task.add_done_callback(self._alerts.discard)

    # ------------------------------------------------------------------ admission
    async def submit(self, document_id: str) -> Dict[str, Any]:
        """Admit a document; process it inline on CPU when the queue is down."""
        try:
            enqueued = await self.queue.enqueue(document_id)
        except QueueUnavailableError:
            if not self.config.ocr_auto_fallback:
                raise
            LOG.warning("admission_inline_cpu_fallback", extra={"document_id": document_id})
            result = await self.processor.process(document_id, use_gpu=False)
            event = ProcessingResultEvent(
                document_id=document_id,
                correlation_id=None,
                success=result.success,
                gpu_processed=False,
                score=result.score,
                decision=result.decision,
                outcome=result.outcome,
                error=result.error,
                attempts=1,
                processing_time_ms=result.processing_time_ms,
            )
            await self.publisher.publish(event)
            return {"documentId": document_id, "mode": "inline_cpu", "success": result.success}
        if enqueued:
            await self.documents.update_document(document_id, {"status": DocumentStatus.QUEUED.value})
        return {"documentId": document_id, "mode": "queued", "enqueued": enqueued}

    # ------------------------------------------------------------------ loops
    def can_start_worker(self) -> bool:
        if self.config.gpu_available or self.config.gpu_auto_fallback:
            return True
        LOG.warning(
            "worker_not_started",
            extra={"reason": "gpu_unavailable_and_fallback_disabled"},
        )
        return False

    async def startup(self) -> None:
        if not await self.queue.ping():
            raise QueueUnavailableError("Redis is not reachable")
        if self.config.recover_on_startup:
            await recover_on_startup(queue=self.queue, lock=self.lock, documents=self.documents)

    def build_loops(self) -> List[PeriodicTask]:
        cfg = self.config
        loops = [
            PeriodicTask("reaper", self.reaper.sweep, interval=cfg.reaper_interval_seconds, stop=self.stop_event, clock=self.clock),
            PeriodicTask(
                "delayed_promotion",
                self.queue.promote_due_delayed,
                interval=cfg.delayed_promotion_interval_seconds,
                stop=self.stop_event,
                clock=self.clock,
            ),
            PeriodicTask(
                "escalation_drain",
                self.escalation.drain_retry_queue,
                interval=cfg.escalation_drain_interval_seconds,
                stop=self.stop_event,
                clock=self.clock,
                run_immediately=False,
            ),
        ]
        if self.can_start_worker():
            self.worker_running = True
            loops.insert(
                0,
                PeriodicTask(
                    "worker_poll",
                    self.orchestrator.tick,
                    interval=cfg.poll_interval_seconds,
                    stop=self.stop_event,
                    clock=self.clock,
                ),
            )
        self.loops = loops
        return loops

    async def run(self) -> None:
        """Run every loop until ``stop()``; then drain jobs and close resources."""
        await self.startup()
        loops = self.build_loops()
        LOG.info(
            "runtime_started",
            extra={
                "loops": [loop.name for loop in loops],
                "gpu_available": self.config.gpu_available,
                "worker_id": self.orchestrator.worker_id,
            },
        )
        try:
            await asyncio.gather(*(loop.run() for loop in loops))
        finally:
            await self.shutdown()

    def stop(self) -> None:
        self.stop_event.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                LOG.debug("signal_handler_unavailable", extra={"signal": sig.name})

    async def shutdown(self) -> None:
        self.stop_event.set()
        await self.orchestrator.drain()
        await self.workflows.shutdown()
        aclose = getattr(self.review_client, "aclose", None)
        if aclose is not None:
            await aclose()
        self.worker_running = False
        LOG.info("runtime_stopped", extra={"worker_id": self.orchestrator.worker_id})

    async def close(self) -> None:
        await self.redis.aclose()

    # ------------------------------------------------------------------ status
    async def status(self) -> Dict[str, Any]:
        try:
            queue_stats: Dict[str, Any] = (await self.queue.stats()).to_dict()
            retry_queue = await self.escalation.retry_queue_length()
            redis_ok = True
        except QueueUnavailableError as exc:
            queue_stats = {"error": str(exc)}
            retry_queue = None
            redis_ok = False
        return {
            "workerId": self.orchestrator.worker_id,
            "workerRunning": self.worker_running,
            "gpuAvailable": self.config.gpu_available,
            "gpuEnabled": self.config.gpu_enabled,
            "gpuAutoFallback": self.config.gpu_auto_fallback,
            "ocrAutoFallback": self.config.ocr_auto_fallback,
            "activeJobs": self.orchestrator.in_flight,
            "concurrency": self.orchestrator.settings.concurrency,
            "redis": redis_ok,
            "queue": queue_stats,
            "escalationRetryQueue": retry_queue,
            "circuitBreakers": [stats.to_dict() for stats in self.breakers.all_stats()],
            "reviewWorkflows": self.workflows.live_count(),
        }


__all__ = ["WorkerRuntime"]

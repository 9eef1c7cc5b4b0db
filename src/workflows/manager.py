"""Registry of live review workflows, one instance per review id.

The manager starts workflows as asyncio tasks, routes decision and cancel
signals to them, answers state queries and turns signed review-service
callbacks into decision signals. A callback for a review whose workflow is
not live in this process is persisted on the review record instead; the
workflow picks it up on its next poll (or on restart).
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict
from typing import Any, Dict, Tuple

from src.config import ReviewWorkflowSettings
from src.errors import KycBackboneError
from src.models.review import DecisionSignal, ReviewWorkflowInput, ReviewWorkflowOutput, ReviewWorkflowState
from src.services.escalation import EscalationService
from src.services.interfaces import (
    DocumentStore,
    MetricsClient,
    NotificationSink,
    ReviewServiceClient,
    ReviewStore,
)
from src.services.metrics import NullMetrics
from src.services.review_client import verify_callback_signature
from src.utils.clock import Clock, SystemClock

from .review import ReviewWorkflow

LOG = logging.getLogger(__name__)


class ReviewWorkflowManager:
    def __init__(
        self,
        *,
        documents: DocumentStore,
        reviews: ReviewStore,
        notifier: NotificationSink,
        settings: ReviewWorkflowSettings,
        escalation: EscalationService | None = None,
        client: ReviewServiceClient | None = None,
        callback_secret: str | None = None,
        metrics: MetricsClient | None = None,
        clock: Clock | None = None,
        recent_limit: int = 256,
    ) -> None:
        self._documents = documents
        self._reviews = reviews
        self._notifier = notifier
        self.settings = settings
        self._escalation = escalation
        self._client = client
        self._callback_secret = callback_secret
        self._metrics = metrics or NullMetrics()
        self._clock = clock or SystemClock()
        self._workflows: Dict[str, ReviewWorkflow] = {}
        self._tasks: Dict[str, asyncio.Task[ReviewWorkflowOutput]] = {}
        # finished instances kept for query() and result(); oldest evicted first
        self._recent: "OrderedDict[str, Tuple[ReviewWorkflow, asyncio.Task[ReviewWorkflowOutput]]]" = OrderedDict()
        self._recent_limit = recent_limit

    def _build(self, workflow_input: ReviewWorkflowInput) -> ReviewWorkflow:
        return ReviewWorkflow(
            workflow_input,
            documents=self._documents,
            reviews=self._reviews,
            notifier=self._notifier,
            settings=self.settings,
            escalation=self._escalation,
            client=self._client,
            metrics=self._metrics,
            clock=self._clock,
        )

    async def start(self, workflow_input: ReviewWorkflowInput) -> ReviewWorkflow:
        """Start a workflow, or return the live instance for the same review id."""
        review_id = workflow_input.review_id
        existing = self._workflows.get(review_id)
        if existing is not None and not self._tasks[review_id].done():
            LOG.info("review_workflow_already_running", extra={"review_id": review_id})
            return existing
        workflow = self._build(workflow_input)
        task = asyncio.create_task(workflow.run(), name=f"review-workflow-{review_id}")
        task.add_done_callback(lambda t, rid=review_id: self._finished(rid, t))
        self._workflows[review_id] = workflow
        self._tasks[review_id] = task
        self._recent.pop(review_id, None)
        LOG.info(
            "review_workflow_started",
            extra={
                "review_id": review_id,
                "document_id": workflow_input.document_id,
                "schema_version": workflow.behaviour.version,
            },
        )
        return workflow

    def _finished(self, review_id: str, task: asyncio.Task) -> None:
        self._retire(review_id, task)
        if task.cancelled():
            LOG.warning("review_workflow_task_cancelled", extra={"review_id": review_id})
            return
        exc = task.exception()
        if exc is None:
            LOG.info("review_workflow_finished", extra={"review_id": review_id, "outcome": "completed"})
        elif isinstance(exc, KycBackboneError):
            LOG.warning(
                "review_workflow_finished",
                extra={"review_id": review_id, "outcome": exc.__class__.__name__, "error": str(exc)},
            )
        else:
            LOG.error(
                "review_workflow_crashed",
                extra={"review_id": review_id, "error": str(exc)},
                exc_info=exc,
            )

    def _retire(self, review_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(review_id) is not task:
            return
        workflow = self._workflows.pop(review_id)
        del self._tasks[review_id]
        self._recent[review_id] = (workflow, task)
        while len(self._recent) > self._recent_limit:
            self._recent.popitem(last=False)

    def get(self, review_id: str) -> ReviewWorkflow | None:
        return self._lookup(review_id)[0]

    def _lookup(self, review_id: str) -> Tuple[ReviewWorkflow | None, asyncio.Task | None]:
        if review_id in self._workflows:
            return self._workflows[review_id], self._tasks[review_id]
        return self._recent.get(review_id, (None, None))

    def is_live(self, review_id: str) -> bool:
        task = self._tasks.get(review_id)
        return task is not None and not task.done()

    def query(self, review_id: str) -> ReviewWorkflowState | None:
        workflow = self.get(review_id)
        return workflow.state() if workflow is not None else None

    def signal_decision(self, review_id: str, signal: DecisionSignal) -> bool:
        workflow = self._workflows.get(review_id)
        if workflow is None or not self.is_live(review_id):
            return False
        return workflow.signal_decision(signal)

    def cancel(self, review_id: str, reason: str | None = None) -> bool:
        workflow = self._workflows.get(review_id)
        if workflow is None or not self.is_live(review_id):
            return False
        return workflow.cancel(reason)

    async def result(self, review_id: str) -> ReviewWorkflowOutput:
        """Await the workflow's outcome; terminal errors propagate to the caller."""
        task = self._lookup(review_id)[1]
        if task is None:
            raise KeyError(review_id)
        return await asyncio.shield(task)

    async def handle_callback(self, body: bytes, signature: str | None) -> Dict[str, Any]:
        """Validate a signed review-service callback and deliver its decision."""
        verify_callback_signature(body, signature, self._callback_secret)
        payload = json.loads(body.decode("utf-8"))
        review_id = payload.get("reviewId") or payload.get("review_id")
        if not review_id:
            raise ValueError("Callback payload missing reviewId")
        signal = DecisionSignal.from_mapping(payload)
        if self.signal_decision(review_id, signal):
            delivered = "signal"
        else:
            record = await self._reviews.get_review(review_id)
            if record is None:
                raise KeyError(review_id)
            await self._reviews.update_review(
                review_id,
                {
                    "decision": signal.decision.value,
                    "notes": signal.notes,
                    "decided_by": signal.decided_by,
                },
            )
            delivered = "record"
        LOG.info(
            "review_callback_received",
            extra={"review_id": review_id, "decision": signal.decision.value, "delivered": delivered},
        )
        return {"reviewId": review_id, "decision": signal.decision.value, "delivered": delivered}

    def live_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    def tracked_count(self) -> int:
        return len(self._workflows) + len(self._recent)

    def snapshot(self) -> list[Dict[str, Any]]:
        workflows = [workflow for workflow, _ in self._recent.values()] + list(self._workflows.values())
        return [workflow.state().to_dict() for workflow in workflows]

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel live workflow tasks; persisted review records survive for restart."""
        live = [task for task in self._tasks.values() if not task.done()]
        for task in live:
            task.cancel()
        if live:
            await asyncio.wait(live, timeout=timeout)
        LOG.info("review_workflows_stopped", extra={"count": len(live)})


__all__ = ["ReviewWorkflowManager"]

"""Manual review workflow for one escalated document.

``pending -> sent_to_reviewer -> awaiting_decision -> completed | failed | cancelled``

The workflow runs as a single coroutine. While awaiting a decision it waits on
an ``asyncio.Event`` with the poll interval as timeout: a decision or cancel
signal sets the event and wakes it immediately, an elapsed interval triggers a
poll (review record first, then the external service when the instance's
schema version polls). Whichever of decision and cancel is signalled first
wins; the other is refused.

Finalisation and operator notifications are shielded so a late cancellation
of the task cannot abort them half way.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any

from src.config import ReviewWorkflowSettings
from src.errors import ReviewCancelled, ReviewTimeout, WorkflowInternalError
from src.models.documents import VerificationOutcome
from src.models.events import EscalationPayload
from src.models.review import (
    ALLOWED_TRANSITIONS,
    DecisionSignal,
    ReviewDecision,
    ReviewStatus,
    ReviewWorkflowInput,
    ReviewWorkflowOutput,
    ReviewWorkflowState,
)
from src.services.escalation import EscalationService
from src.services.interfaces import (
    DocumentStore,
    MetricsClient,
    NotificationSink,
    ReviewServiceClient,
    ReviewStore,
)
from src.services.metrics import REVIEW_WORKFLOWS, NullMetrics
from src.services.notifications import ADMIN, REVIEWERS, user_recipient
from src.utils.clock import Clock, SystemClock

from .versions import WorkflowBehaviour, behaviour_for

LOG = logging.getLogger(__name__)

TIMEOUT_REASON = "review timeout"


async def rollup_user_status(
    documents: DocumentStore,
    user_id: str | None,
    document_id: str,
    outcome: VerificationOutcome,
) -> str | None:
    """Derive the user's verification status from all of their documents.

    Any rejected document makes the user ``rejected``; all approved makes them
    ``verified``; anything else leaves them ``pending``.
    """
    if not user_id:
        return None
    approved = {VerificationOutcome.AUTO_APPROVED.value, VerificationOutcome.MANUALLY_APPROVED.value}
    rejected = {VerificationOutcome.AUTO_REJECTED.value, VerificationOutcome.MANUALLY_REJECTED.value}
    statuses = [
        outcome.value if doc.id == document_id else doc.verification_status
        for doc in await documents.list_user_documents(user_id)
    ]
    if not statuses:
        statuses = [outcome.value]
    if any(status in rejected for status in statuses):
        user_status = "rejected"
    elif all(status in approved for status in statuses):
        user_status = "verified"
    else:
        user_status = "pending"
    await documents.update_user_status(user_id, user_status)
    return user_status


class ReviewWorkflow:
    def __init__(
        self,
        workflow_input: ReviewWorkflowInput,
        *,
        documents: DocumentStore,
        reviews: ReviewStore,
        notifier: NotificationSink,
        settings: ReviewWorkflowSettings,
        escalation: EscalationService | None = None,
        client: ReviewServiceClient | None = None,
        metrics: MetricsClient | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.input = workflow_input
        self._documents = documents
        self._reviews = reviews
        self._notifier = notifier
        self._settings = settings
        self._escalation = escalation
        self._client = client or (escalation.client if escalation is not None else None)
        self._metrics = metrics or NullMetrics()
        self._clock = clock or SystemClock()
        self.behaviour: WorkflowBehaviour = behaviour_for(
            workflow_input.schema_version or settings.schema_version
        )
        now = self._clock.now()
        self._state = ReviewWorkflowState(
            review_id=workflow_input.review_id,
            document_id=workflow_input.document_id,
            user_id=workflow_input.user_id,
            status=ReviewStatus.PENDING,
            decision=ReviewDecision.UNSET,
            external_task_id=workflow_input.external_task_id,
            retry_poll_count=0,
            started_at=now,
            updated_at=now,
            schema_version=self.behaviour.version,
        )
        self._wake = asyncio.Event()
        self._decision: DecisionSignal | None = None
        self._cancel_reason: str | None = None
        self._cancel_requested = False

    @property
    def review_id(self) -> str:
        return self.input.review_id

    @property
    def status(self) -> ReviewStatus:
        return self._state.status

    # ------------------------------------------------------------------ signals
    def state(self) -> ReviewWorkflowState:
        return dataclasses.replace(self._state)

    def signal_decision(self, signal: DecisionSignal) -> bool:
        if self._state.status.terminal or self._decision is not None or self._cancel_requested:
            LOG.info(
                "review_signal_ignored",
                extra={"review_id": self.review_id, "signal": "decision", "status": self._state.status.value},
            )
            return False
        self._decision = signal
        self._wake.set()
        LOG.info(
            "review_decision_signalled",
            extra={"review_id": self.review_id, "decision": signal.decision.value},
        )
        return True

    def cancel(self, reason: str | None = None) -> bool:
        if self._state.status.terminal or self._decision is not None or self._cancel_requested:
            LOG.info(
                "review_signal_ignored",
                extra={"review_id": self.review_id, "signal": "cancel", "status": self._state.status.value},
            )
            return False
        self._cancel_requested = True
        self._cancel_reason = reason or "cancelled"
        self._wake.set()
        LOG.info("review_cancel_signalled", extra={"review_id": self.review_id, "reason": self._cancel_reason})
        return True

    # ------------------------------------------------------------------ lifecycle
    async def run(self) -> ReviewWorkflowOutput:
        try:
            await self._start()
            signal = await self._await_decision()
            return await asyncio.shield(self._finalise(signal))
        except (ReviewTimeout, ReviewCancelled):
            raise
        except Exception as exc:
            await asyncio.shield(self._compensate(exc))
            raise WorkflowInternalError(f"Review workflow {self.review_id} failed: {exc}") from exc

    async def _transition(self, new_status: ReviewStatus, **fields: Any) -> None:
        current = self._state.status
        if new_status not in ALLOWED_TRANSITIONS[current]:
            raise WorkflowInternalError(
                f"Illegal review transition {current.value} -> {new_status.value}"
            )
        self._state.status = new_status
        self._state.updated_at = self._clock.now()
        await self._reviews.update_review(self.review_id, {"status": new_status.value, **fields})
        LOG.info(
            "review_workflow_transition",
            extra={
                "review_id": self.review_id,
                "document_id": self.input.document_id,
                "from_status": current.value,
                "status": new_status.value,
                "schema_version": self.behaviour.version,
            },
        )

    async def _start(self) -> None:
        await self._reviews.insert_review(
            {
                "id": self.review_id,
                "document_id": self.input.document_id,
                "user_id": self.input.user_id,
                "status": ReviewStatus.PENDING.value,
                "decision": None,
                "notes": None,
                "external_task_id": self.input.external_task_id,
                "ai_score": self.input.score,
                "schema_version": self.behaviour.version,
            }
        )
        if not self.input.escalation_sent and self._escalation is not None:
            result = await self._escalation.forward(self._payload())
            if result.task_id:
                self._state.external_task_id = result.task_id
                await self._reviews.update_review(self.review_id, {"external_task_id": result.task_id})
        await self._transition(ReviewStatus.SENT_TO_REVIEWER)
        await self._transition(ReviewStatus.AWAITING_DECISION)
        await asyncio.shield(
            self._notify(
                REVIEWERS,
                "review_requested",
                f"KYC review {self.review_id} needs a decision for "
                f"{self.input.document_type} document {self.input.document_id} (score {self.input.score})",
            )
        )

    def _payload(self) -> EscalationPayload:
        return EscalationPayload(
            review_id=self.review_id,
            document_id=self.input.document_id,
            user_id=self.input.user_id,
            document_type=self.input.document_type,
            parsed_data=dict(self.input.parsed_data),
            ocr_text=self.input.ocr_text,
            score=self.input.score,
            decision=self.input.decision,
            reasons=list(self.input.reasons),
            correlation_id=self.input.correlation_id,
        )

    async def _await_decision(self) -> DecisionSignal:
        deadline = self._state.started_at + self._settings.max_wait_seconds
        while True:
            if self._cancel_requested:
                await self._cancelled()
            if self._decision is not None:
                return self._decision
            remaining = deadline - self._clock.now()
            if remaining <= 0:
                await self._timed_out()
            woke = await self._clock.wait(
                self._wake, min(self._settings.poll_interval_seconds, remaining)
            )
            if woke:
                self._wake.clear()
                continue
            self._state.retry_poll_count += 1
            polled = await self._poll()
            if polled is not None and self._decision is None and not self._cancel_requested:
                self._decision = polled

    async def _poll(self) -> DecisionSignal | None:
        record = await self._reviews.get_review(self.review_id) or {}
        if record.get("external_task_id") and not self._state.external_task_id:
            self._state.external_task_id = record["external_task_id"]
        stored = _signal_from(record.get("decision"), record.get("notes"), record.get("decided_by"))
        if stored is not None:
            LOG.info("review_decision_polled", extra={"review_id": self.review_id, "source": "record"})
            return stored
        if not self.behaviour.poll_external or self._client is None or not self._state.external_task_id:
            return None
        try:
            status = await self._client.get_review_task_status(self._state.external_task_id)
        except Exception as exc:
            LOG.warning(
                "review_poll_failed",
                extra={"review_id": self.review_id, "error": str(exc), "error_type": exc.__class__.__name__},
            )
            return None
        if status is None:
            return None
        polled = _signal_from(status.decision, status.notes, status.decided_by)
        if polled is not None:
            LOG.info("review_decision_polled", extra={"review_id": self.review_id, "source": "external"})
        return polled

    # ------------------------------------------------------------------ outcomes
    async def _finalise(self, signal: DecisionSignal) -> ReviewWorkflowOutput:
        completed_at = self._clock.now()
        outcome = (
            VerificationOutcome.MANUALLY_APPROVED
            if signal.decision is ReviewDecision.APPROVED
            else VerificationOutcome.MANUALLY_REJECTED
        )
        await self._documents.update_document(
            self.input.document_id,
            {
                "verification_status": outcome.value,
                "ai_decision": signal.decision.value,
                "processed_at": completed_at,
                "result_json": {
                    "finalDecision": signal.decision.value,
                    "reviewNotes": signal.notes,
                    "reviewId": self.review_id,
                    "reviewCompletedAt": completed_at,
                },
            },
        )
        user_status = await rollup_user_status(
            self._documents, self.input.user_id, self.input.document_id, outcome
        )
        self._state.decision = signal.decision
        self._state.notes = signal.notes
        await self._transition(
            ReviewStatus.COMPLETED,
            decision=signal.decision.value,
            notes=signal.notes,
            decided_by=signal.decided_by,
        )
        await self._notify(
            user_recipient(self.input.user_id),
            "verification_completed",
            f"Your {self.input.document_type} verification was {signal.decision.value}",
        )
        if self.behaviour.sync_completion and self._client is not None and self._state.external_task_id:
            try:
                await self._client.complete_review_task(
                    self._state.external_task_id, signal.decision.value, signal.notes
                )
            except Exception as exc:
                LOG.warning(
                    "review_completion_sync_failed",
                    extra={"review_id": self.review_id, "error": str(exc)},
                )
        self._metrics.increment(REVIEW_WORKFLOWS, stage="completed")
        return ReviewWorkflowOutput(
            review_id=self.review_id,
            document_id=self.input.document_id,
            status=ReviewStatus.COMPLETED,
            final_decision=signal.decision,
            notes=signal.notes,
            decided_by=signal.decided_by,
            document_status=outcome.value,
            user_status=user_status,
            completed_at=completed_at,
        )

    async def _timed_out(self) -> None:
        waited = self._clock.now() - self._state.started_at
        self._state.error = TIMEOUT_REASON
        await self._transition(ReviewStatus.FAILED, error=TIMEOUT_REASON)
        await asyncio.shield(
            self._notify(
                ADMIN,
                "review_timeout",
                f"KYC review {self.review_id} for document {self.input.document_id} "
                f"received no decision after {int(waited)}s",
            )
        )
        self._metrics.increment(REVIEW_WORKFLOWS, stage="timeout")
        raise ReviewTimeout(self.review_id, waited)

    async def _cancelled(self) -> None:
        reason = self._cancel_reason or "cancelled"
        self._state.error = reason
        await self._transition(ReviewStatus.CANCELLED, error=reason)
        if self._client is not None and self._state.external_task_id:
            try:
                await self._client.cancel_review_task(self._state.external_task_id, reason)
            except Exception as exc:
                LOG.warning(
                    "review_external_cancel_failed",
                    extra={"review_id": self.review_id, "error": str(exc)},
                )
        self._metrics.increment(REVIEW_WORKFLOWS, stage="cancelled")
        raise ReviewCancelled(self.review_id, reason)

    async def _compensate(self, exc: Exception) -> None:
        LOG.error(
            "review_workflow_failed",
            extra={"review_id": self.review_id, "error": str(exc), "error_type": exc.__class__.__name__},
        )
        self._state.error = str(exc)
        if not self._state.status.terminal:
            self._state.status = ReviewStatus.FAILED
            self._state.updated_at = self._clock.now()
        try:
            await self._reviews.update_review(
                self.review_id, {"status": self._state.status.value, "error": str(exc)}
            )
        except Exception as update_exc:
            LOG.warning(
                "review_compensation_update_failed",
                extra={"review_id": self.review_id, "error": str(update_exc)},
            )
        await self._notify(
            ADMIN,
            "review_workflow_failed",
            f"KYC review {self.review_id} for document {self.input.document_id} failed: {exc}",
        )
        self._metrics.increment(REVIEW_WORKFLOWS, stage="failed")

    async def _notify(self, recipient: str, notification_type: str, message: str) -> bool:
        try:
            return await self._notifier.notify(recipient, notification_type, message)
        except Exception as exc:
            LOG.warning(
                "notification_failed",
                extra={
                    "review_id": self.review_id,
                    "recipient": recipient,
                    "notification_type": notification_type,
                    "error": str(exc),
                },
            )
            return False


def _signal_from(decision: Any, notes: Any, decided_by: Any) -> DecisionSignal | None:
    if not decision:
        return None
    try:
        parsed = ReviewDecision.parse(decision)
    except ValueError:
        return None
    return DecisionSignal(decision=parsed, notes=notes, decided_by=decided_by)


__all__ = ["ReviewWorkflow", "TIMEOUT_REASON", "rollup_user_status"]

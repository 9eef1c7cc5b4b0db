"""Manual review workflow types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ReviewStatus(str, Enum):
    PENDING = "pending"
    SENT_TO_REVIEWER = "sent_to_reviewer"
    AWAITING_DECISION = "awaiting_decision"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_REVIEW_STATUSES


TERMINAL_REVIEW_STATUSES = frozenset(
    {ReviewStatus.COMPLETED, ReviewStatus.FAILED, ReviewStatus.CANCELLED}
)

# Strict partial order; failed/cancelled are reachable from every live state.
ALLOWED_TRANSITIONS: dict[ReviewStatus, frozenset[ReviewStatus]] = {
    ReviewStatus.PENDING: frozenset(
        {ReviewStatus.SENT_TO_REVIEWER, ReviewStatus.FAILED, ReviewStatus.CANCELLED}
    ),
    ReviewStatus.SENT_TO_REVIEWER: frozenset(
        {ReviewStatus.AWAITING_DECISION, ReviewStatus.FAILED, ReviewStatus.CANCELLED}
    ),
    ReviewStatus.AWAITING_DECISION: frozenset(
        {ReviewStatus.COMPLETED, ReviewStatus.FAILED, ReviewStatus.CANCELLED}
    ),
    ReviewStatus.COMPLETED: frozenset(),
    ReviewStatus.FAILED: frozenset(),
    ReviewStatus.CANCELLED: frozenset(),
}


class ReviewDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    UNSET = "unset"

    @classmethod
    def parse(cls, raw: object) -> "ReviewDecision":
        value = str(raw or "").strip().lower()
        if value == cls.APPROVED.value:
            return cls.APPROVED
        if value == cls.REJECTED.value:
            return cls.REJECTED
        raise ValueError(f"Unsupported review decision: {raw!r}")


@dataclass(slots=True, frozen=True)
class DecisionSignal:
    decision: ReviewDecision
    notes: str | None = None
    decided_by: str | None = None

    @classmethod
    def from_mapping(cls, payload: dict[str, Any]) -> "DecisionSignal":
        return cls(
            decision=ReviewDecision.parse(payload.get("decision")),
            notes=payload.get("notes"),
            decided_by=payload.get("decided_by") or payload.get("decidedBy") or payload.get("reviewerId"),
        )


@dataclass(slots=True)
class ReviewWorkflowInput:
    review_id: str
    document_id: str
    user_id: str | None
    document_type: str
    parsed_data: dict[str, Any]
    ocr_text: str
    score: int
    decision: str
    reasons: list[str] = field(default_factory=list)
    correlation_id: str | None = None
    external_task_id: str | None = None
    # True when the escalation call already happened (or was queued) upstream
    escalation_sent: bool = False
    schema_version: int | None = None


@dataclass(slots=True)
class ReviewWorkflowState:
    """Snapshot returned by the workflow state query."""

    review_id: str
    document_id: str
    user_id: str | None
    status: ReviewStatus
    decision: ReviewDecision
    external_task_id: str | None
    retry_poll_count: int
    started_at: float
    updated_at: float
    schema_version: int
    notes: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reviewId": self.review_id,
            "documentId": self.document_id,
            "userId": self.user_id,
            "status": self.status.value,
            "decision": self.decision.value,
            "externalTaskId": self.external_task_id,
            "retryPollCount": self.retry_poll_count,
            "startedAt": self.started_at,
            "updatedAt": self.updated_at,
            "schemaVersion": self.schema_version,
            "notes": self.notes,
            "error": self.error,
        }


@dataclass(slots=True)
class ReviewWorkflowOutput:
    review_id: str
    document_id: str
    status: ReviewStatus
    final_decision: ReviewDecision
    notes: str | None = None
    decided_by: str | None = None
    document_status: str | None = None
    user_status: str | None = None
    completed_at: float | None = None


__all__ = [
    "ALLOWED_TRANSITIONS",
    "DecisionSignal",
    "ReviewDecision",
    "ReviewStatus",
    "ReviewWorkflowInput",
    "ReviewWorkflowOutput",
    "ReviewWorkflowState",
    "TERMINAL_REVIEW_STATUSES",
]

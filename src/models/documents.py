"""Document-side domain types: identity document kinds, statuses and scores."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from src.errors import UnknownDocumentType


class DocumentType(str, Enum):
    KTP = "KTP"
    NPWP = "NPWP"

    @classmethod
    def parse(cls, raw: object) -> "DocumentType":
        """Coerce a stored type value, raising ``UnknownDocumentType`` otherwise."""
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw).strip().upper())
        except ValueError as exc:
            raise UnknownDocumentType(raw) from exc


class DocumentStatus(str, Enum):
    UPLOADED = "uploaded"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


IN_FLIGHT_STATUSES = frozenset({DocumentStatus.PROCESSING.value, DocumentStatus.COMPLETED.value})


class ScoringDecision(str, Enum):
    AUTO_APPROVE = "auto_approve"
    AUTO_REJECT = "auto_reject"
    NEEDS_REVIEW = "needs_review"


class VerificationOutcome(str, Enum):
    AUTO_APPROVED = "auto_approved"
    AUTO_REJECTED = "auto_rejected"
    PENDING_MANUAL_REVIEW = "pending_manual_review"
    MANUALLY_APPROVED = "manually_approved"
    MANUALLY_REJECTED = "manually_rejected"

    @classmethod
    def from_decision(cls, decision: ScoringDecision) -> "VerificationOutcome":
        return _OUTCOME_BY_DECISION[decision]


_OUTCOME_BY_DECISION: dict[ScoringDecision, VerificationOutcome] = {
    ScoringDecision.AUTO_APPROVE: VerificationOutcome.AUTO_APPROVED,
    ScoringDecision.AUTO_REJECT: VerificationOutcome.AUTO_REJECTED,
    ScoringDecision.NEEDS_REVIEW: VerificationOutcome.PENDING_MANUAL_REVIEW,
}


@dataclass(slots=True)
class ScoringResult:
    score: int
    decision: ScoringDecision
    reasons: list[str] = field(default_factory=list)

    @property
    def outcome(self) -> VerificationOutcome:
        return VerificationOutcome.from_decision(self.decision)


@dataclass(slots=True)
class DocumentRecord:
    """Snapshot of a stored document as seen by the processing backbone."""

    id: str
    type: str
    user_id: str | None = None
    file_key: str | None = None
    status: str = DocumentStatus.UPLOADED.value
    verification_status: str | None = None
    ai_score: int | None = None
    ai_decision: str | None = None
    result_json: dict[str, Any] | None = None
    ocr_text: str | None = None
    processed_at: float | None = None
    original_filename: str | None = None

    @property
    def document_type(self) -> DocumentType:
        return DocumentType.parse(self.type)

    @property
    def in_flight(self) -> bool:
        return self.status in IN_FLIGHT_STATUSES


@dataclass(slots=True)
class ProcessingResult:
    """Outcome of a single pipeline run for one document."""

    success: bool
    document_id: str
    gpu_processed: bool
    ocr_text: str | None = None
    parsed: dict[str, Any] | None = None
    score: int | None = None
    decision: str | None = None
    outcome: str | None = None
    error: str | None = None
    error_type: str | None = None
    retryable: bool = True
    processing_time_ms: int | None = None


__all__ = [
    "DocumentRecord",
    "DocumentStatus",
    "DocumentType",
    "IN_FLIGHT_STATUSES",
    "ProcessingResult",
    "ScoringDecision",
    "ScoringResult",
    "VerificationOutcome",
]

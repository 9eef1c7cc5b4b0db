"""Custom exception hierarchy for the KYC processing backbone.

These errors give typed failure modes to the worker orchestrator, the
escalation path and the review workflow so that retry/fallback decisions and
logs can be structured consistently. Each class carries a ``retryable`` flag
the orchestrator consults when deciding between requeue and abandonment.
"""
from __future__ import annotations


class KycBackboneError(Exception):
    """Base class for all backbone errors."""

    retryable: bool = True


class QueueUnavailableError(KycBackboneError):
    """Raised when the shared queue/lock store cannot be reached."""


class DocumentNotFound(KycBackboneError):
    """Raised when the persistence layer has no record for a document id."""

    retryable = False

    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class DownloadFailure(KycBackboneError):
    """Raised when the source bytes cannot be fetched from object storage."""


class ExtractionFailure(KycBackboneError):
    """Raised when OCR text extraction fails on unreadable input."""


class UnknownDocumentType(KycBackboneError):
    """Raised when a stored document carries a type outside {KTP, NPWP}."""

    def __init__(self, raw_type: object) -> None:
        super().__init__(f"Unknown document type: {raw_type!r}")
        self.raw_type = raw_type


class MaxRetriesExceeded(KycBackboneError):
    """Raised when a job exhausts its retry budget with no viable fallback."""

    retryable = False

    def __init__(self, document_id: str, attempts: int, last_error: str | None = None) -> None:
        message = f"Processing failed after {attempts} attempts"
        if last_error:
            message = f"{message}: {last_error}"
        super().__init__(message)
        self.document_id = document_id
        self.attempts = attempts
        self.last_error = last_error


class CircuitOpenError(KycBackboneError):
    """Fail-fast signal raised when a circuit breaker rejects a call."""

    def __init__(self, name: str) -> None:
        super().__init__(f'Circuit breaker "{name}" is open')
        self.circuit_name = name


class ReviewServiceError(KycBackboneError):
    """Raised when the external review service returns an unusable response."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        # 4xx responses will not improve on retry
        self.retryable = status_code is None or status_code >= 500


class InvalidCallbackSignature(KycBackboneError):
    """Raised when a review-service callback fails signature validation."""

    retryable = False


class ReviewTimeout(KycBackboneError):
    """No review decision arrived within the workflow's maximum wait."""

    retryable = False

    def __init__(self, review_id: str, waited_seconds: float) -> None:
        super().__init__(f"Review {review_id} timed out after {int(waited_seconds)}s")
        self.review_id = review_id
        self.waited_seconds = waited_seconds


class ReviewCancelled(KycBackboneError):
    """The review workflow was cancelled before a decision was made."""

    retryable = False

    def __init__(self, review_id: str, reason: str | None = None) -> None:
        super().__init__(f"Review {review_id} cancelled: {reason or 'no reason given'}")
        self.review_id = review_id
        self.reason = reason


class WorkflowInternalError(KycBackboneError):
    """Unexpected failure inside a review workflow; compensation has run."""

    retryable = False


__all__ = [
    "KycBackboneError",
    "QueueUnavailableError",
    "DocumentNotFound",
    "DownloadFailure",
    "ExtractionFailure",
    "UnknownDocumentType",
    "MaxRetriesExceeded",
    "CircuitOpenError",
    "ReviewServiceError",
    "InvalidCallbackSignature",
    "ReviewTimeout",
    "ReviewCancelled",
    "WorkflowInternalError",
]

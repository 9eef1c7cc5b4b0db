"""Collaborator interfaces consumed by the worker, escalation and review layers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from src.models.documents import DocumentRecord, DocumentType, ScoringResult
from src.models.events import EscalationPayload, ProcessingResultEvent


@dataclass(slots=True, frozen=True)
class ReviewTask:
    task_id: str
    status: str


@dataclass(slots=True, frozen=True)
class ReviewTaskStatus:
    status: str
    decision: str | None = None
    notes: str | None = None
    decided_by: str | None = None


class DocumentStore(Protocol):
    """Document persistence; ``fields`` keys mirror ``DocumentRecord`` attributes."""

    async def get_document(self, document_id: str) -> DocumentRecord | None: ...

    async def update_document(self, document_id: str, fields: Mapping[str, Any]) -> None: ...

    async def list_documents_by_status(self, status: str) -> list[DocumentRecord]: ...

    async def list_user_documents(self, user_id: str) -> list[DocumentRecord]: ...

    async def update_user_status(self, user_id: str, status: str) -> None: ...


class ReviewStore(Protocol):
    async def get_review(self, review_id: str) -> dict[str, Any] | None: ...

    async def update_review(self, review_id: str, fields: Mapping[str, Any]) -> None: ...

    async def insert_review(self, fields: Mapping[str, Any]) -> bool:
        """Insert a review row; False when ``fields['id']`` already exists."""
        ...


class ObjectStorage(Protocol):
    async def download(self, key: str) -> bytes: ...


class TextExtractor(Protocol):
    async def extract_text(self, local_path: str) -> str: ...


class FieldParser(Protocol):
    def __call__(self, document_type: DocumentType, text: str) -> dict[str, Any]: ...


class Scorer(Protocol):
    def __call__(
        self, document_type: DocumentType, fields: Mapping[str, Any], text: str
    ) -> ScoringResult: ...


class ReviewServiceClient(Protocol):
    async def create_review_task(self, payload: EscalationPayload) -> ReviewTask: ...

    async def get_review_task_status(self, task_id: str) -> ReviewTaskStatus | None: ...

    async def cancel_review_task(self, task_id: str, reason: str | None = None) -> bool: ...

    async def complete_review_task(
        self, task_id: str, decision: str, notes: str | None = None
    ) -> bool: ...


class NotificationSink(Protocol):
    async def notify(self, recipient: str, notification_type: str, message: str) -> bool: ...


class ResultPublisher(Protocol):
    async def publish(self, event: ProcessingResultEvent) -> None: ...


class MetricsClient(Protocol):
    """Interface for emitting counters and latencies to Prometheus."""

    def observe_latency(self, name: str, value: float, **labels: str) -> None: ...

    def increment(self, name: str, amount: int = 1, **labels: str) -> None: ...


__all__ = [
    "DocumentStore",
    "FieldParser",
    "MetricsClient",
    "NotificationSink",
    "ObjectStorage",
    "ResultPublisher",
    "ReviewServiceClient",
    "ReviewStore",
    "ReviewTask",
    "ReviewTaskStatus",
    "Scorer",
    "TextExtractor",
]

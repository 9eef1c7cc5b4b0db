"""In-memory document and review repositories.

Stand-ins for the relational store used in production; they implement the
``DocumentStore`` and ``ReviewStore`` protocols and are shared by local runs
and tests. Records are copied on the way in and out so callers never mutate
stored state by accident.
"""

from __future__ import annotations

import copy
import dataclasses
import logging
import threading
import time
from typing import Any, Dict, Mapping

from src.models.documents import DocumentRecord

LOG = logging.getLogger(__name__)

_DOCUMENT_FIELDS = frozenset(field.name for field in dataclasses.fields(DocumentRecord))


class InMemoryDocumentRepository:
    """Thread-safe in-memory store used for tests and local development."""

    def __init__(self) -> None:
        self._documents: Dict[str, DocumentRecord] = {}
        self._user_status: Dict[str, str] = {}
        self._lock = threading.RLock()

    def add(self, record: DocumentRecord) -> DocumentRecord:
        with self._lock:
            self._documents[record.id] = copy.deepcopy(record)
            return copy.deepcopy(record)

    async def get_document(self, document_id: str) -> DocumentRecord | None:
        with self._lock:
            record = self._documents.get(document_id)
            return None if record is None else copy.deepcopy(record)

    async def update_document(self, document_id: str, fields: Mapping[str, Any]) -> None:
        unknown = set(fields) - _DOCUMENT_FIELDS
        if unknown:
            raise ValueError(f"Unknown document fields: {sorted(unknown)}")
        with self._lock:
            record = self._documents.get(document_id)
            if record is None:
                LOG.warning("document_update_missing", extra={"document_id": document_id})
                return
            for key, value in fields.items():
                setattr(record, key, copy.deepcopy(value))
        LOG.debug(
            "document_updated",
            extra={"document_id": document_id, "fields": sorted(fields)},
        )

    async def list_documents_by_status(self, status: str) -> list[DocumentRecord]:
        with self._lock:
            return [copy.deepcopy(doc) for doc in self._documents.values() if doc.status == status]

    async def list_user_documents(self, user_id: str) -> list[DocumentRecord]:
        with self._lock:
            return [copy.deepcopy(doc) for doc in self._documents.values() if doc.user_id == user_id]

    async def update_user_status(self, user_id: str, status: str) -> None:
        with self._lock:
            self._user_status[user_id] = status

    def user_status(self, user_id: str) -> str | None:
        with self._lock:
            return self._user_status.get(user_id)


class InMemoryReviewRepository:
    def __init__(self) -> None:
        self._reviews: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    async def insert_review(self, fields: Mapping[str, Any]) -> bool:
        review_id = fields["id"]
        with self._lock:
            if review_id in self._reviews:
                return False
            now = time.time()
            row = {"created_at": now, "updated_at": now, **copy.deepcopy(dict(fields))}
            self._reviews[review_id] = row
        LOG.info("review_record_created", extra={"review_id": review_id})
        return True

    async def get_review(self, review_id: str) -> Dict[str, Any] | None:
        with self._lock:
            row = self._reviews.get(review_id)
            return None if row is None else copy.deepcopy(row)

    async def update_review(self, review_id: str, fields: Mapping[str, Any]) -> None:
        with self._lock:
            row = self._reviews.get(review_id)
            if row is None:
                LOG.warning("review_update_missing", extra={"review_id": review_id})
                return
            row.update(copy.deepcopy(dict(fields)))
            row["updated_at"] = time.time()

    async def list_reviews(self) -> list[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(row) for row in self._reviews.values()]


__all__ = ["InMemoryDocumentRepository", "InMemoryReviewRepository"]

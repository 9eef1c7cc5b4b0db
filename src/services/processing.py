"""Document processing pipeline: download, OCR, parse, score, persist, escalate.

``DocumentProcessor.process`` never raises for per-document failures: every
error becomes a failed ``ProcessingResult`` carrying the error type and a
``retryable`` flag, and the worker orchestrator decides between retry,
fallback and abandonment. Cancellation propagates.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict

from src.errors import DocumentNotFound, DownloadFailure, KycBackboneError
from src.models.documents import (
    DocumentStatus,
    DocumentType,
    ProcessingResult,
    VerificationOutcome,
)
from src.utils.clock import Clock, SystemClock
from src.utils.logging_utils import stage_marker

from .escalation import ReviewEscalator
from .field_parsers import parse_fields
from .interfaces import DocumentStore, MetricsClient, ObjectStorage, Scorer, TextExtractor
from .metrics import PROCESSING_LATENCY, NullMetrics
from .object_storage import key_from_url

LOG = logging.getLogger(__name__)


class DocumentProcessor:
    def __init__(
        self,
        *,
        documents: DocumentStore,
        storage: ObjectStorage,
        gpu_extractor: TextExtractor,
        cpu_extractor: TextExtractor | None = None,
        scorer: Scorer,
        parser: Callable[[DocumentType, str], Dict[str, Any]] = parse_fields,
        escalator: ReviewEscalator | None = None,
        tmp_dir: str | None = None,
        metrics: MetricsClient | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._documents = documents
        self._storage = storage
        self._gpu_extractor = gpu_extractor
        self._cpu_extractor = cpu_extractor or gpu_extractor
        self._scorer = scorer
        self._parser = parser
        self._escalator = escalator
        self._tmp_dir = tmp_dir or tempfile.gettempdir()
        self._metrics = metrics or NullMetrics()
        self._clock = clock or SystemClock()

    async def process(
        self,
        document_id: str,
        *,
        use_gpu: bool,
        correlation_id: str | None = None,
    ) -> ProcessingResult:
        path_label = "gpu" if use_gpu else "cpu"
        started = time.perf_counter()
        try:
            result = await self._run(document_id, use_gpu=use_gpu, correlation_id=correlation_id)
        except KycBackboneError as exc:
            result = self._failure(document_id, use_gpu, exc, retryable=exc.retryable)
        except Exception as exc:
            result = self._failure(document_id, use_gpu, exc, retryable=True)
        elapsed = time.perf_counter() - started
        result.processing_time_ms = int(elapsed * 1000)
        self._metrics.observe_latency(PROCESSING_LATENCY, elapsed, stage=path_label)
        if result.success:
            LOG.info(
                "document_processed",
                extra={
                    "document_id": document_id,
                    "score": result.score,
                    "outcome": result.outcome,
                    "gpu_processed": result.gpu_processed,
                    "duration_ms": result.processing_time_ms,
                },
            )
        return result

    def _failure(
        self, document_id: str, use_gpu: bool, exc: Exception, *, retryable: bool
    ) -> ProcessingResult:
        LOG.error(
            "document_processing_failed",
            extra={
                "document_id": document_id,
                "error": str(exc),
                "error_type": exc.__class__.__name__,
                "retryable": retryable,
                "path": "gpu" if use_gpu else "cpu",
            },
        )
        return ProcessingResult(
            success=False,
            document_id=document_id,
            gpu_processed=use_gpu,
            error=str(exc),
            error_type=exc.__class__.__name__,
            retryable=retryable,
        )

    async def _run(
        self, document_id: str, *, use_gpu: bool, correlation_id: str | None
    ) -> ProcessingResult:
        document = await self._documents.get_document(document_id)
        if document is None:
            raise DocumentNotFound(document_id)
        await self._documents.update_document(
            document_id, {"status": DocumentStatus.PROCESSING.value}
        )
        document_type = document.document_type
        if not document.file_key:
            raise DownloadFailure("Document has no file key")

        path_label = "gpu" if use_gpu else "cpu"
        with stage_marker(LOG, stage="download", document_id=document_id) as stage:
            data = await self._storage.download(document.file_key)
            stage.add_completion_fields(bytes=len(data))

        extractor = self._gpu_extractor if use_gpu else self._cpu_extractor
        async with _TempCopy(self._tmp_dir, document_id, document.file_key, data) as local_path:
            with stage_marker(LOG, stage="ocr", document_id=document_id, path=path_label) as stage:
                text = await extractor.extract_text(local_path)
                stage.add_completion_fields(text_length=len(text))

        parsed = self._parser(document_type, text)
        scoring = self._scorer(document_type, parsed, text)
        outcome = scoring.outcome

        await self._documents.update_document(
            document_id,
            {
                "status": DocumentStatus.PROCESSING.value,
                "ai_score": scoring.score,
                "ai_decision": scoring.decision.value,
                "verification_status": outcome.value,
                "result_json": dict(parsed),
                "ocr_text": text,
                "processed_at": self._clock.now(),
            },
        )

        if outcome is VerificationOutcome.PENDING_MANUAL_REVIEW and self._escalator is not None:
            with stage_marker(LOG, stage="escalation", document_id=document_id):
                await self._escalator.escalate(
                    document,
                    parsed=parsed,
                    scoring=scoring,
                    ocr_text=text,
                    correlation_id=correlation_id,
                )

        await self._documents.update_document(
            document_id, {"status": DocumentStatus.COMPLETED.value}
        )
        return ProcessingResult(
            success=True,
            document_id=document_id,
            gpu_processed=use_gpu,
            ocr_text=text,
            parsed=dict(parsed),
            score=scoring.score,
            decision=scoring.decision.value,
            outcome=outcome.value,
        )


class _TempCopy:
    """Write bytes to a temp file for the OCR engine and remove it afterwards."""

    def __init__(self, tmp_dir: str, document_id: str, file_key: str, data: bytes) -> None:
        self._dir = Path(tmp_dir)
        self._suffix = Path(key_from_url(file_key)).suffix
        self._prefix = f"{document_id}-"
        self._data = data
        self._path: str | None = None

    async def __aenter__(self) -> str:
        self._dir.mkdir(parents=True, exist_ok=True)
        fd, path = tempfile.mkstemp(prefix=self._prefix, suffix=self._suffix, dir=self._dir)
        self._path = path
        with os.fdopen(fd, "wb") as handle:
            await asyncio.to_thread(handle.write, self._data)
        return path

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._path is None:
            return
        try:
            os.unlink(self._path)
        except OSError:
            LOG.warning("temp_file_cleanup_failed", extra={"path": self._path})


async def mark_document_failed(
    documents: DocumentStore,
    document_id: str,
    error: str,
    *,
    clock: Clock | None = None,
    max_retries_exceeded: bool = True,
) -> None:
    """Record a terminal failure with its reason on the document."""
    failed_at = (clock or SystemClock()).now()
    await documents.update_document(
        document_id,
        {
            "status": DocumentStatus.FAILED.value,
            "result_json": {
                "error": error,
                "failedAt": failed_at,
                "maxRetriesExceeded": max_retries_exceeded,
            },
        },
    )
    LOG.error("document_marked_failed", extra={"document_id": document_id, "error": error})


__all__ = ["DocumentProcessor", "mark_document_failed"]

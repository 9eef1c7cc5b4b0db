"""Structured stage telemetry for the document pipeline.

Records carry an ``event`` attribute plus allow-listed extras only, so OCR
text, parsed identity fields and reviewer notes cannot leak into the log
stream through a careless keyword argument.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Mapping

STAGE_EVENT = "processing_stage"

ALLOWED_FIELDS: frozenset[str] = frozenset(
    {
        "attempts",
        "breaker",
        "bytes",
        "component",
        "correlation_id",
        "decision",
        "document_id",
        "document_type",
        "duration_ms",
        "error",
        "error_type",
        "external_task_id",
        "gpu_processed",
        "max_retries",
        "outcome",
        "path",
        "reason",
        "review_id",
        "schema_version",
        "score",
        "skip_reason",
        "stage",
        "state",
        "status",
        "text_length",
        "worker_id",
    }
)


def safe_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in fields.items() if key in ALLOWED_FIELDS and value is not None}


def structured_log(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    """Log ``event`` as the message with the allow-listed ``fields`` as extras."""
    extra = safe_fields(fields)
    extra["event"] = event
    logger.log(level, event, extra=extra)


@dataclass(slots=True)
class StageRecord:
    stage: str
    fields: Dict[str, Any]
    started: float = field(default_factory=time.perf_counter)
    completion: Dict[str, Any] = field(default_factory=dict)

    def add_completion_fields(self, **fields: Any) -> None:
        self.completion.update(safe_fields(fields))

    def payload(self, status: str, **extra: Any) -> Dict[str, Any]:
        merged = {**self.fields, **self.completion, **extra}
        merged["status"] = status
        merged["duration_ms"] = int((time.perf_counter() - self.started) * 1000)
        return merged


@contextmanager
def stage_marker(
    logger: logging.Logger, *, stage: str, level: int = logging.INFO, **fields: Any
) -> Iterator[StageRecord]:
    """Bracket one pipeline stage with ``started`` and ``completed``/``failed`` records."""
    record = StageRecord(stage=stage, fields=safe_fields({**fields, "stage": stage}))
    structured_log(logger, level, STAGE_EVENT, status="started", **record.fields)
    try:
        yield record
    except Exception as exc:
        structured_log(
            logger,
            logging.ERROR,
            STAGE_EVENT,
            **record.payload("failed", error_type=exc.__class__.__name__),
        )
        raise
    structured_log(logger, level, STAGE_EVENT, **record.payload("completed"))


def log_stage_skipped(
    logger: logging.Logger, *, stage: str, reason: str, level: int = logging.INFO, **fields: Any
) -> None:
    structured_log(
        logger, level, STAGE_EVENT, **{**fields, "stage": stage, "status": "skipped", "skip_reason": reason}
    )


__all__ = [
    "ALLOWED_FIELDS",
    "STAGE_EVENT",
    "StageRecord",
    "log_stage_skipped",
    "safe_fields",
    "stage_marker",
    "structured_log",
]

"""Typed messages exchanged over Redis: job results and queued escalations."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Mapping

ISO8601 = "%Y-%m-%dT%H:%M:%S.%fZ"


def _now_utc() -> str:
    return datetime.now(tz=timezone.utc).strftime(ISO8601)


def _decode(data: bytes | str) -> dict[str, Any]:
    if isinstance(data, bytes):
        raw = data.decode("utf-8")
    else:
        raw = data
    return json.loads(raw)


def _encode(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str)


@dataclass(slots=True)
class ProcessingResultEvent:
    """Terminal (or retry-scheduled) job outcome published on the results channel."""

    document_id: str
    correlation_id: str | None
    success: bool
    gpu_processed: bool
    score: int | None = None
    decision: str | None = None
    outcome: str | None = None
    error: str | None = None
    attempts: int | None = None
    processing_time_ms: int | None = None
    created_at: str = field(default_factory=_now_utc)

    def to_message(self) -> str:
        payload = {key: value for key, value in asdict(self).items() if value is not None}
        payload.setdefault("event_type", "ocr.job.result")
        return _encode(payload)

    @classmethod
    def from_message(cls, data: bytes | str) -> "ProcessingResultEvent":
        payload = _decode(data)
        payload.pop("event_type", None)
        payload.setdefault("correlation_id", None)
        return cls(**payload)


@dataclass(slots=True)
class EscalationPayload:
    """Body of a review-task creation call to the external review service."""

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
    callback_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        # camelCase on the wire for the external service
        return {
            "reviewId": self.review_id,
            "documentId": self.document_id,
            "userId": self.user_id,
            "documentType": self.document_type,
            "parsedData": dict(self.parsed_data),
            "ocrText": self.ocr_text,
            "score": self.score,
            "decision": self.decision,
            "reasons": list(self.reasons),
            "correlationId": self.correlation_id,
            "callbackUrl": self.callback_url,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "EscalationPayload":
        return cls(
            review_id=payload["reviewId"],
            document_id=payload["documentId"],
            user_id=payload.get("userId"),
            document_type=payload["documentType"],
            parsed_data=dict(payload.get("parsedData") or {}),
            ocr_text=payload.get("ocrText") or "",
            score=int(payload.get("score") or 0),
            decision=payload.get("decision") or "needs_review",
            reasons=list(payload.get("reasons") or []),
            correlation_id=payload.get("correlationId"),
            callback_url=payload.get("callbackUrl"),
        )


@dataclass(slots=True)
class QueuedEscalation:
    """Entry of the durable escalation retry queue."""

    payload: EscalationPayload
    queued_at: float
    attempts: int = 0

    def to_message(self) -> str:
        return _encode(
            {
                "payload": self.payload.to_dict(),
                "queuedAt": self.queued_at,
                "attempts": self.attempts,
            }
        )

    @classmethod
    def from_message(cls, data: bytes | str) -> "QueuedEscalation":
        raw = _decode(data)
        return cls(
            payload=EscalationPayload.from_dict(raw["payload"]),
            queued_at=float(raw.get("queuedAt") or 0.0),
            attempts=int(raw.get("attempts") or 0),
        )


__all__ = ["EscalationPayload", "ProcessingResultEvent", "QueuedEscalation"]

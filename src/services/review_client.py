"""Clients for the external manual-review service.

``HttpReviewServiceClient`` talks to the review service REST API with httpx.
Transport errors and 5xx responses are retried with exponential backoff
(tenacity) inside a single call, so the circuit breaker wrapping the call
records one failure per exhausted call rather than one per attempt. 4xx
responses are not retried.

``LocalReviewServiceClient`` is used when no review service URL is configured
(local runs and tests): tasks live in memory and decisions are injected.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Any, Dict

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from src.errors import InvalidCallbackSignature, ReviewServiceError
from src.models.events import EscalationPayload
from src.services.interfaces import ReviewTask, ReviewTaskStatus

LOG = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Buli2-Signature"


def sign_callback(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_callback_signature(body: bytes, signature: str | None, secret: str | None) -> None:
    """Raise ``InvalidCallbackSignature`` unless ``signature`` is the body's HMAC-SHA256."""
    if not secret:
        raise InvalidCallbackSignature("Callback secret is not configured")
    if not signature:
        raise InvalidCallbackSignature("Missing callback signature")
    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = sign_callback(body, secret)
    if not hmac.compare_digest(expected, provided.lower()):
        raise InvalidCallbackSignature("Callback signature mismatch")


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, ReviewServiceError) and exc.retryable


class HttpReviewServiceClient:
    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
        max_attempts: int = 3,
        backoff_base_seconds: float = 1.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base_seconds
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None

    def _headers(self, correlation_id: str | None = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Dict[str, Any] | None = None,
        correlation_id: str | None = None,
        allow_not_found: bool = False,
    ) -> httpx.Response | None:
        url = f"{self.base_url}{path}"
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff_base),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        ):
            with attempt:
                started = time.perf_counter()
                response = await self._client.request(
                    method, url, json=json, headers=self._headers(correlation_id)
                )
                LOG.info(
                    "review_service_request",
                    extra={
                        "method": method,
                        "path": path,
                        "status_code": response.status_code,
                        "duration_ms": int((time.perf_counter() - started) * 1000),
                        "attempt": attempt.retry_state.attempt_number,
                    },
                )
                if allow_not_found and response.status_code == 404:
                    return None
                if response.status_code >= 400:
                    raise ReviewServiceError(
                        f"Review service returned status {response.status_code}: {response.text[:200]}",
                        status_code=response.status_code,
                    )
                return response
        raise ReviewServiceError("Review service retries exhausted")

    async def create_review_task(self, payload: EscalationPayload) -> ReviewTask:
        response = await self._request(
            "POST",
            "/internal/reviews",
            json=payload.to_dict(),
            correlation_id=payload.correlation_id,
        )
        data = response.json() if response is not None else {}
        task_id = data.get("taskId")
        if not task_id:
            raise ReviewServiceError("Review service response missing taskId")
        return ReviewTask(task_id=str(task_id), status=str(data.get("status") or "queued"))

    async def get_review_task_status(self, task_id: str) -> ReviewTaskStatus | None:
        response = await self._request(
            "GET", f"/internal/reviews/{task_id}/status", allow_not_found=True
        )
        if response is None:
            return None
        data = response.json()
        return ReviewTaskStatus(
            status=str(data.get("status") or "unknown"),
            decision=data.get("decision"),
            notes=data.get("notes"),
            decided_by=data.get("decidedBy"),
        )

    async def cancel_review_task(self, task_id: str, reason: str | None = None) -> bool:
        response = await self._request(
            "POST",
            f"/internal/reviews/{task_id}/cancel",
            json={"reason": reason},
            allow_not_found=True,
        )
        return response is not None

    async def complete_review_task(
        self, task_id: str, decision: str, notes: str | None = None
    ) -> bool:
        response = await self._request(
            "POST",
            f"/internal/reviews/{task_id}/complete",
            json={"decision": decision, "notes": notes},
            allow_not_found=True,
        )
        return response is not None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class LocalReviewServiceClient:
    """In-memory review service; decisions arrive through ``record_decision``."""

    def __init__(self) -> None:
        self.tasks: Dict[str, Dict[str, Any]] = {}

    async def create_review_task(self, payload: EscalationPayload) -> ReviewTask:
        task_id = f"local-{payload.review_id}"
        self.tasks.setdefault(
            task_id, {"status": "queued", "payload": payload.to_dict(), "decision": None, "notes": None}
        )
        LOG.info("local_review_task_created", extra={"review_id": payload.review_id, "task_id": task_id})
        return ReviewTask(task_id=task_id, status="queued")

    async def get_review_task_status(self, task_id: str) -> ReviewTaskStatus | None:
        task = self.tasks.get(task_id)
        if task is None:
            return None
        return ReviewTaskStatus(
            status=task["status"], decision=task["decision"], notes=task["notes"]
        )

    async def cancel_review_task(self, task_id: str, reason: str | None = None) -> bool:
        task = self.tasks.get(task_id)
        if task is None:
            return False
        task["status"] = "cancelled"
        task["reason"] = reason
        return True

    async def complete_review_task(
        self, task_id: str, decision: str, notes: str | None = None
    ) -> bool:
        task = self.tasks.get(task_id)
        if task is None:
            return False
        task.update({"status": "completed", "decision": decision, "notes": notes})
        return True

    def record_decision(self, task_id: str, decision: str, notes: str | None = None) -> None:
        task = self.tasks[task_id]
        task.update({"status": "decided", "decision": decision, "notes": notes})

    async def aclose(self) -> None:
        return None


__all__ = [
    "HttpReviewServiceClient",
    "LocalReviewServiceClient",
    "SIGNATURE_HEADER",
    "sign_callback",
    "verify_callback_signature",
]

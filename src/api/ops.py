"""Operational routes: status, breaker reset, review callback and admission."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from src.errors import InvalidCallbackSignature, QueueUnavailableError
from src.services.review_client import SIGNATURE_HEADER
from src.utils.logging_utils import structured_log

router = APIRouter()

_API_LOG = logging.getLogger("api")


def _runtime(request: Request):
    return request.app.state.runtime


@router.get("/status")
async def status(request: Request):
    return await _runtime(request).status()


@router.post("/circuit-breakers/{name}/reset")
async def reset_circuit_breaker(name: str, request: Request):
    runtime = _runtime(request)
    if not runtime.breakers.reset(name):
        raise HTTPException(status_code=404, detail=f"Unknown circuit breaker: {name}")
    structured_log(_API_LOG, logging.WARNING, "circuit_breaker_reset", breaker=name, component="ops_api")
    breaker = runtime.breakers.get(name)
    return {"name": name, "state": breaker.get_state().value}


@router.post("/documents/{document_id}/submit")
async def submit_document(document_id: str, request: Request):
    try:
        return await _runtime(request).submit(document_id)
    except QueueUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@router.post("/reviews/callback")
async def review_callback(request: Request):
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    try:
        delivered = await _runtime(request).workflows.handle_callback(body, signature)
    except InvalidCallbackSignature as exc:
        structured_log(_API_LOG, logging.WARNING, "review_callback_rejected", reason=str(exc))
        return JSONResponse(status_code=401, content={"detail": str(exc)})
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown review: {exc.args[0]}") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return delivered


@router.get("/reviews/{review_id}")
async def review_state(review_id: str, request: Request):
    state = _runtime(request).workflows.query(review_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"No workflow for review {review_id}")
    return state.to_dict()


@router.post("/reviews/{review_id}/cancel")
async def cancel_review(review_id: str, request: Request):
    payload = {}
    body = await request.body()
    if body:
        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Cancel body must be JSON") from exc
    reason = payload.get("reason") if isinstance(payload, dict) else None
    if not _runtime(request).workflows.cancel(review_id, reason):
        raise HTTPException(status_code=409, detail=f"Review {review_id} is not awaiting a decision")
    return {"reviewId": review_id, "cancelled": True}


__all__ = ["router"]

"""FastAPI application entrypoint for the KYC document backbone."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.api import build_api_router
from src.config import get_config
from src.errors import QueueUnavailableError
from src.logging_setup import configure_logging
from src.runtime import WorkerRuntime
from src.services.metrics import NullMetrics, PrometheusMetrics
from src.utils.logging_utils import structured_log

DEBUG_ENABLED = any(arg == "--debug" for arg in sys.argv) or os.getenv(
    "DEBUG", "false"
).strip().lower() in {"1", "true", "yes", "on"}
LOG_LEVEL = logging.DEBUG if DEBUG_ENABLED else logging.INFO

_API_LOG = logging.getLogger("api")


def _health_payload() -> dict[str, str]:
    return {"status": "ok"}


def create_app(runtime: WorkerRuntime | None = None) -> FastAPI:
    configure_logging(level=LOG_LEVEL)
    if runtime is None:
        get_config.cache_clear()
        cfg = get_config()
        cfg.validate_required()
        metrics: Any = PrometheusMetrics.default() if cfg.enable_metrics else NullMetrics()
        runtime = WorkerRuntime(cfg, metrics=metrics)
    cfg = runtime.config

    app = FastAPI(title="KYC Document Backbone", version="1.0.0")
    app.state.config = cfg
    app.state.runtime = runtime
    app.state.background = None
    if cfg.enable_metrics:
        PrometheusMetrics.instrument_app(app)

    @app.exception_handler(QueueUnavailableError)
    async def _queue_handler(_r: Request, exc: QueueUnavailableError):
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    # Health endpoints ---------------------------------------------------------
    @app.get("/healthz", summary="Healthz")
    async def healthz():
        return _health_payload()

    @app.get("/health", include_in_schema=False)
    async def health_alias():
        return _health_payload()

    @app.get("/readyz", include_in_schema=False)
    async def readyz():
        if not await runtime.queue.ping():
            return JSONResponse(status_code=503, content={"status": "redis_unavailable"})
        return _health_payload()

    app.include_router(build_api_router())

    @app.on_event("startup")
    async def _start_background():
        routes = [getattr(r, "path", str(r)) for r in app.router.routes]
        _API_LOG.info("boot_canary", extra={"service": "kyc-backbone", "routes": routes})
        if not cfg.embedded_worker:
            structured_log(_API_LOG, logging.INFO, "embedded_worker_disabled", component="api")
            return
        app.state.background = asyncio.create_task(runtime.run(), name="kyc-runtime")

    @app.on_event("shutdown")
    async def _stop_background():
        task = app.state.background
        runtime.stop()
        if task is not None:
            try:
                await task
            except QueueUnavailableError as exc:
                _API_LOG.error("runtime_start_failed", extra={"error": str(exc)})
        await runtime.close()

    return app


__all__ = ["create_app"]

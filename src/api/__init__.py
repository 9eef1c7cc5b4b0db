"""Routers for the KYC backbone operations API."""

from __future__ import annotations

from fastapi import APIRouter

from .ops import router as ops_router


def build_api_router() -> APIRouter:
    """Combine all API routers for inclusion in the FastAPI app."""
    router = APIRouter()
    router.include_router(ops_router, prefix="/internal", tags=["internal"])
    return router


__all__ = ["build_api_router"]

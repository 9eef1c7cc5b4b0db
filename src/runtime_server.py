"""uvicorn launcher for the KYC backbone operations app."""

from __future__ import annotations

import os

import uvicorn

DEFAULT_APP = "src.main:create_app"


def _worker_count() -> int:
    """One process unless UVICORN_WORKERS asks for more.

    Each process runs its own worker loops, reaper and circuit breakers, so
    extra processes multiply polling and split breaker state.
    """
    try:
        requested = int(os.getenv("UVICORN_WORKERS", "1"))
    except ValueError:
        return 1
    return requested if requested > 0 else 1


def main() -> None:
    workers = _worker_count()
    uvicorn.run(
        os.getenv("FASTAPI_APP", DEFAULT_APP),
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8080")),
        workers=workers,
        lifespan="on",
        log_config=None,
    )


if __name__ == "__main__":
    main()

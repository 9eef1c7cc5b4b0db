"""Operator CLI for the KYC backbone worker and queues."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Awaitable, Callable, Sequence

import httpx

from src.config import AppConfig, get_config
from src.errors import QueueUnavailableError
from src.logging_setup import configure_logging
from src.runtime import WorkerRuntime
from src.workers.reaper import recover_on_startup

LOG = logging.getLogger("cli")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="KYC document backbone operations.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("worker", help="Run the worker, reaper and escalation loops until SIGTERM.")

    enqueue = sub.add_parser("enqueue", help="Admit documents to the job queue.")
    enqueue.add_argument("document_ids", nargs="+", help="Document ids to enqueue.")

    sub.add_parser("stats", help="Print pending/processing/delayed counts.")
    sub.add_parser("reap", help="Run one stuck-job sweep.")
    sub.add_parser("drain", help="Replay one batch of the escalation retry queue.")
    sub.add_parser("recover", help="Re-admit documents left processing by a crashed run.")

    reset = sub.add_parser("reset-breaker", help="Reset a circuit breaker in a running API process.")
    reset.add_argument("name", help="Circuit breaker name, e.g. buli2-forward.")
    reset.add_argument(
        "--api-base",
        default="http://localhost:8080",
        help="Base URL of the running operations API.",
    )
    return parser.parse_args(argv)


def _print(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


async def _with_runtime(cfg: AppConfig, fn: Callable[[WorkerRuntime], Awaitable[Any]]) -> Any:
    runtime = WorkerRuntime(cfg)
    try:
        return await fn(runtime)
    finally:
        await runtime.close()


async def _run_worker(runtime: WorkerRuntime) -> None:
    runtime.install_signal_handlers()
    await runtime.run()


async def _enqueue(runtime: WorkerRuntime, document_ids: Sequence[str]) -> list[dict[str, Any]]:
    return [await runtime.submit(document_id) for document_id in document_ids]


async def _stats(runtime: WorkerRuntime) -> dict[str, Any]:
    return (await runtime.queue.stats()).to_dict()


async def _reap(runtime: WorkerRuntime) -> dict[str, Any]:
    return (await runtime.reaper.sweep()).to_dict()


async def _drain(runtime: WorkerRuntime) -> dict[str, Any]:
    return (await runtime.escalation.drain_retry_queue()).to_dict()


async def _recover(runtime: WorkerRuntime) -> dict[str, Any]:
    recovered = await recover_on_startup(
        queue=runtime.queue, lock=runtime.lock, documents=runtime.documents
    )
    return {"recovered": recovered}


def _reset_breaker(api_base: str, name: str) -> dict[str, Any]:
    response = httpx.post(f"{api_base.rstrip('/')}/internal/circuit-breakers/{name}/reset", timeout=10.0)
    response.raise_for_status()
    return response.json()


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_logging(level=logging.DEBUG if args.debug else logging.INFO)
    cfg = get_config()
    try:
        cfg.validate_required()
    except RuntimeError as exc:
        LOG.error("invalid_configuration", extra={"error": str(exc)})
        return 2

    try:
        if args.command == "reset-breaker":
            _print(_reset_breaker(args.api_base, args.name))
            return 0
        commands: dict[str, Callable[[WorkerRuntime], Awaitable[Any]]] = {
            "worker": _run_worker,
            "enqueue": lambda runtime: _enqueue(runtime, args.document_ids),
            "stats": _stats,
            "reap": _reap,
            "drain": _drain,
            "recover": _recover,
        }
        result = asyncio.run(_with_runtime(cfg, commands[args.command]))
    except QueueUnavailableError as exc:
        LOG.error("queue_unavailable", extra={"error": str(exc)})
        return 1
    except httpx.HTTPError as exc:
        LOG.error("ops_api_request_failed", extra={"error": str(exc)})
        return 1
    if result is not None:
        _print(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())

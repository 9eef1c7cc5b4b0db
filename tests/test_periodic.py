from __future__ import annotations

import asyncio

import pytest

from src.utils.periodic import PeriodicTask


@pytest.mark.asyncio
async def test_runs_until_stop_and_survives_failures(clock):
    stop = asyncio.Event()
    calls = []

    async def _tick():
        calls.append(clock.now())
        if len(calls) == 2:
            raise RuntimeError("transient")
        if len(calls) == 4:
            stop.set()

    task = PeriodicTask("unit", _tick, interval=5, stop=stop, clock=clock)
    await task.run()

    assert len(calls) == 4
    assert task.ticks == 4
    assert calls[1] - calls[0] == 5


@pytest.mark.asyncio
async def test_delayed_start_waits_one_interval(clock):
    stop = asyncio.Event()
    calls = []

    async def _tick():
        calls.append(clock.now())
        stop.set()

    start = clock.now()
    await PeriodicTask("unit", _tick, interval=30, stop=stop, clock=clock, run_immediately=False).run()

    assert calls == [start + 30]


@pytest.mark.asyncio
async def test_stop_before_first_tick(clock):
    stop = asyncio.Event()
    stop.set()
    calls = []

    async def _tick():
        calls.append(1)

    await PeriodicTask("unit", _tick, interval=1, stop=stop, clock=clock, run_immediately=False).run()
    assert calls == []


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        PeriodicTask("unit", lambda: None, interval=0, stop=asyncio.Event())

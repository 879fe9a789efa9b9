from __future__ import annotations

import asyncio

import pytest

from homelink.errors import BackendError
from homelink.scheduler import PollingScheduler


def _scheduler(clock, last_push, poll=None):
    calls = []

    async def _poll():
        calls.append(clock.now)
        if poll is not None:
            await poll()

    sched = PollingScheduler(_poll, lambda: last_push[0], interval_s=30, silence_threshold_s=60, clock=clock)
    return sched, calls


@pytest.mark.asyncio
async def test_polls_when_no_push_seen(clock):
    sched, calls = _scheduler(clock, [None])
    assert await sched.tick() is True
    assert calls == [clock.now]


@pytest.mark.asyncio
async def test_skips_while_push_is_recent(clock):
    sched, calls = _scheduler(clock, [clock.now - 20])
    assert await sched.tick() is False
    assert calls == []


@pytest.mark.asyncio
async def test_polls_after_silence(clock):
    sched, calls = _scheduler(clock, [clock.now - 61])
    assert await sched.tick() is True
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_poll_failure_is_not_fatal(clock):
    async def failing():
        raise BackendError("timeout")

    sched, calls = _scheduler(clock, [None], poll=failing)
    assert await sched.tick() is True
    assert await sched.tick() is True
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_start_and_stop(clock):
    sched, _ = _scheduler(clock, [None])
    sched.start()
    sched.start()
    assert sched.running
    sched.stop()
    sched.stop()
    await asyncio.sleep(0)
    assert not sched.running

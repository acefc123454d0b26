"""Tests for task tracking and cancellable waits."""

from __future__ import annotations

import asyncio

import pytest

from cidcheck.utils.exceptions import ProbeCancelledError
from cidcheck.utils.tasks import BackgroundTaskGroup, await_or_cancel

pytestmark = [pytest.mark.unit]


@pytest.mark.asyncio
async def test_await_or_cancel_returns_result():
    async def value():
        return 42

    assert await await_or_cancel(value(), asyncio.Event()) == 42


@pytest.mark.asyncio
async def test_await_or_cancel_raises_when_already_cancelled():
    cancel = asyncio.Event()
    cancel.set()
    with pytest.raises(ProbeCancelledError):
        await await_or_cancel(asyncio.sleep(1), cancel)


@pytest.mark.asyncio
async def test_await_or_cancel_raises_on_cancel():
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.01, cancel.set)
    with pytest.raises(ProbeCancelledError):
        await await_or_cancel(asyncio.sleep(5), cancel)


@pytest.mark.asyncio
async def test_await_or_cancel_times_out():
    with pytest.raises(asyncio.TimeoutError):
        await await_or_cancel(asyncio.sleep(5), asyncio.Event(), timeout=0.01)


@pytest.mark.asyncio
async def test_task_group_waits_for_late_additions():
    group = BackgroundTaskGroup()
    done = []

    async def child():
        await asyncio.sleep(0.01)
        done.append("child")

    async def parent():
        group.create(child())
        done.append("parent")

    group.create(parent())
    await group.wait()
    assert done == ["parent", "child"]
    assert len(group) == 0


@pytest.mark.asyncio
async def test_task_group_cancel_and_wait():
    group = BackgroundTaskGroup()
    task = group.create(asyncio.sleep(10))
    await group.cancel_and_wait(timeout=1.0)
    assert task.cancelled()
    assert len(group) == 0

from __future__ import annotations

import asyncio

import pytest

from app.live.scheduler import AsyncioScheduler


@pytest.mark.asyncio
async def test_coroutine_callbacks_run_on_the_loop() -> None:
    scheduler = AsyncioScheduler()
    fired = asyncio.Event()

    async def callback() -> None:
        fired.set()

    timer = scheduler.call_later(0.01, callback)
    await asyncio.wait_for(fired.wait(), timeout=1)

    assert timer.cancelled is True


@pytest.mark.asyncio
async def test_cancelled_timer_never_fires() -> None:
    scheduler = AsyncioScheduler()
    calls = []

    timer = scheduler.call_later(0.01, lambda: calls.append("fired"))
    timer.cancel()
    await asyncio.sleep(0.05)

    assert calls == []


@pytest.mark.asyncio
async def test_failing_callback_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    scheduler = AsyncioScheduler()

    async def broken() -> None:
        raise RuntimeError("timer exploded")

    scheduler.call_later(0, broken)
    await asyncio.sleep(0.05)
    await scheduler.shutdown()

    assert "timer exploded" in caplog.text

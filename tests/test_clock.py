"""Session clock behaviour: formatting, restart, freeze and tick cadence."""

from __future__ import annotations

import asyncio
from typing import Callable, List

import pytest

from live_attendance.clock import SessionClock, format_duration


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.mark.parametrize(
    ("seconds", "label"),
    [(0, "0:00"), (9, "0:09"), (60, "1:00"), (135, "2:15"), (3665, "61:05"), (-4, "0:00")],
)
def test_format_duration(seconds: int, label: str) -> None:
    assert format_duration(seconds) == label


def test_stop_when_not_running_returns_zero(fake_time) -> None:
    clock = SessionClock(time_source=fake_time)

    assert clock.stop() == 0
    assert not clock.running
    assert clock.label == "0:00"


@pytest.mark.asyncio
async def test_stop_freezes_elapsed(fake_time) -> None:
    clock = SessionClock(tick_seconds=60, time_source=fake_time)
    clock.start()
    fake_time.advance(135.7)

    assert clock.elapsed_seconds == 135
    assert clock.stop() == 135

    fake_time.advance(30)
    assert not clock.running
    assert clock.label == "2:15"


@pytest.mark.asyncio
async def test_start_while_running_restarts_from_zero(fake_time) -> None:
    clock = SessionClock(tick_seconds=60, time_source=fake_time)
    clock.start()
    fake_time.advance(42)
    clock.start()

    assert clock.elapsed_seconds == 0
    fake_time.advance(5)
    assert clock.elapsed_seconds == 5
    clock.reset()


@pytest.mark.asyncio
async def test_ticks_report_elapsed_until_stopped(fake_time) -> None:
    ticks: List[int] = []

    async def on_tick(elapsed: int) -> None:
        ticks.append(elapsed)
        fake_time.advance(1)

    clock = SessionClock(tick_seconds=0.01, on_tick=on_tick, time_source=fake_time)
    clock.start()
    await _wait_until(lambda: len(ticks) >= 3)
    clock.stop()
    count = len(ticks)
    await asyncio.sleep(0.05)

    assert ticks[:3] == [0, 1, 2]
    assert len(ticks) == count


@pytest.mark.asyncio
async def test_reset_clears_start_time(fake_time) -> None:
    clock = SessionClock(tick_seconds=60, time_source=fake_time)
    clock.start()
    assert clock.started_at is not None
    fake_time.advance(10)

    clock.reset()

    assert not clock.running
    assert clock.started_at is None
    assert clock.elapsed_seconds == 0


@pytest.mark.asyncio
async def test_failing_tick_callback_keeps_clock_running(fake_time) -> None:
    calls: List[int] = []

    async def on_tick(elapsed: int) -> None:
        calls.append(elapsed)
        raise RuntimeError("renderer exploded")

    clock = SessionClock(tick_seconds=0.01, on_tick=on_tick, time_source=fake_time)
    clock.start()
    await _wait_until(lambda: len(calls) >= 2)

    assert clock.running
    clock.stop()

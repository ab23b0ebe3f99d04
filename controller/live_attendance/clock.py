"""Session clock producing elapsed-time ticks while a capture is live."""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

TickCallback = Callable[[int], Awaitable[None]]
TimeSource = Callable[[], float]


def format_duration(seconds: int) -> str:
    """Render elapsed seconds as ``M:SS`` (minutes keep counting past an hour)."""
    seconds = max(int(seconds), 0)
    minutes, secs = divmod(seconds, 60)
    return f"{minutes}:{secs:02d}"


class SessionClock:
    """Async helper that measures session duration and emits periodic ticks."""

    def __init__(
        self,
        *,
        tick_seconds: float = 1.0,
        on_tick: Optional[TickCallback] = None,
        time_source: TimeSource = time.monotonic,
    ) -> None:
        self.tick_seconds = tick_seconds
        self._on_tick = on_tick
        self._time_source = time_source

        self._task: Optional[asyncio.Task[None]] = None
        self._started_mono: Optional[float] = None
        self._elapsed: int = 0
        self.started_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._task is not None

    @property
    def elapsed_seconds(self) -> int:
        if self.running:
            return self._measure()
        return self._elapsed

    @property
    def label(self) -> str:
        return format_duration(self.elapsed_seconds)

    def start(self) -> None:
        """Start from zero; a running clock is restarted rather than doubled."""
        if self.running:
            logger.warning("Session clock already running; restarting from zero")
            self._cancel_task()
        self._started_mono = self._time_source()
        self.started_at = datetime.now(timezone.utc)
        self._elapsed = 0
        self._task = asyncio.create_task(self._tick_loop(), name="session-clock")
        logger.info("Session clock started")

    def stop(self) -> int:
        """Freeze and return the elapsed seconds (0 when not running)."""
        if not self.running:
            return 0
        self._elapsed = self._measure()
        self._cancel_task()
        logger.info("Session clock stopped at %s", format_duration(self._elapsed))
        return self._elapsed

    def reset(self) -> None:
        self._cancel_task()
        self._started_mono = None
        self.started_at = None
        self._elapsed = 0

    def _measure(self) -> int:
        if self._started_mono is None:
            return 0
        return max(int(self._time_source() - self._started_mono), 0)

    def _cancel_task(self) -> None:
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()

    async def _tick_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.tick_seconds)
                self._elapsed = self._measure()
                if self._on_tick is None:
                    continue
                try:
                    await self._on_tick(self._elapsed)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Clock tick callback failed")
        except asyncio.CancelledError:
            logger.debug("Session clock tick loop cancelled")
            raise


__all__ = ["SessionClock", "format_duration"]

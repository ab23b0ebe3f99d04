"""Sequential checklist animator shared by the pre-check and end-of-session flows.

A run walks an ordered list of steps one at a time:

    t=0                 step 0 active
    t=1*step_delay      step 0 completed, step 1 active
    ...
    t=N*step_delay      step N-1 completed
    t=N*step_delay+settle  completion callback (exactly once)

The whole run is driven by a single background task over an explicit
``index + steps`` state, so cancelling that task is enough to guarantee that
no further step mutation happens.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import replace
from typing import List, Optional, Tuple

from .state import ChecklistStep

logger = logging.getLogger(__name__)

StepSpec = Tuple[str, str]
ChangeCallback = Callable[[List[ChecklistStep]], Awaitable[None]]
CompletionCallback = Callable[[], Awaitable[None]]

PRECHECK_STEPS: Tuple[StepSpec, ...] = (
    ("course", "Course selected"),
    ("camera", "Camera detected"),
    ("system", "System ready"),
    ("init", "Initializing session"),
)

END_SESSION_STEPS: Tuple[StepSpec, ...] = (
    ("saving", "Saving faces"),
    ("analyzing", "Analyzing data"),
    ("generating", "Generating report"),
    ("finalizing", "Finalizing session"),
    ("completed", "Completed"),
)


class ChecklistAnimator:
    """Advance a checklist one step per ``step_delay`` and signal completion."""

    def __init__(
        self,
        *,
        name: str,
        step_delay: float = 2.0,
        settle_delay: float = 1.0,
        on_change: Optional[ChangeCallback] = None,
    ) -> None:
        self.name = name
        self.step_delay = step_delay
        self.settle_delay = settle_delay
        self._on_change = on_change

        self._steps: List[ChecklistStep] = []
        self._index: int = 0
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def steps(self) -> List[ChecklistStep]:
        return [replace(step) for step in self._steps]

    @property
    def index(self) -> int:
        return self._index

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def run(self, steps: Sequence[StepSpec], on_complete: CompletionCallback) -> asyncio.Task[None]:
        """Replace any prior run and start animating ``steps``."""
        if not steps:
            raise ValueError("checklist needs at least one step")
        self.cancel()
        self._steps = [ChecklistStep(id=step_id, label=label) for step_id, label in steps]
        self._index = 0
        self._steps[0].active = True
        self._task = asyncio.create_task(self._run(on_complete), name=f"checklist-{self.name}")
        logger.info("Checklist %s started (%d steps)", self.name, len(self._steps))
        return self._task

    def cancel(self) -> None:
        """Stop the running animation; the steps keep their last state."""
        task, self._task = self._task, None
        # The completion callback may tear down its own animator.
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            logger.info("Checklist %s cancelled at step %d", self.name, self._index)

    def reset(self) -> None:
        self.cancel()
        self._steps = []
        self._index = 0

    async def _run(self, on_complete: CompletionCallback) -> None:
        await self._notify()
        while self._index < len(self._steps):
            await asyncio.sleep(self.step_delay)
            self._advance()
            await self._notify()

        await asyncio.sleep(self.settle_delay)
        logger.info("Checklist %s complete", self.name)
        try:
            await on_complete()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Checklist %s completion callback failed", self.name)
        finally:
            if self._task is asyncio.current_task():
                self._task = None

    def _advance(self) -> None:
        current = self._steps[self._index]
        current.active = False
        current.completed = True
        self._index += 1
        if self._index < len(self._steps):
            self._steps[self._index].active = True
        logger.debug("Checklist %s advanced to %d/%d", self.name, self._index, len(self._steps))

    async def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            await self._on_change(self.steps)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Checklist %s change callback failed", self.name)


__all__ = ["ChecklistAnimator", "END_SESSION_STEPS", "PRECHECK_STEPS", "StepSpec"]

"""Session orchestration for a live attendance capture."""
from __future__ import annotations

import asyncio
from asyncio import QueueEmpty
import logging
import time
from collections import deque
from dataclasses import asdict
from datetime import date
from typing import Any, Deque, Dict, List, Optional

from .checklist import END_SESSION_STEPS, PRECHECK_STEPS, ChecklistAnimator
from .clock import SessionClock, TimeSource
from .config import Settings, get_settings
from .sensors.camera import AcquisitionError, CameraManager, WebcamCameraManager
from .state import (
    CAMERA_ACTIVE_PHASES,
    ChecklistStep,
    ControllerEvent,
    MediaStatus,
    SelectedCourse,
    SessionPhase,
    SessionRecord,
    SessionResult,
    SessionSnapshot,
)

logger = logging.getLogger(__name__)


class PreconditionError(ValueError):
    """Raised when a session cannot start (no course selected)."""

    def __init__(self, user_message: str, *, log_message: Optional[str] = None) -> None:
        super().__init__(log_message or user_message)
        self.user_message = user_message


class SessionManager:
    """Coordinates checklists, the session clock, the camera and UI state updates.

    Commands return ``True`` when they took effect and ``False`` when they were
    ignored because the controller was not in the command's source phase.
    """

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        camera: Optional[CameraManager] = None,
        time_source: TimeSource = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self._lock = asyncio.Lock()
        self._phase: SessionPhase = SessionPhase.IDLE
        self._phase_started_at: float = time.time()
        self._ui_subscribers: List[asyncio.Queue[ControllerEvent]] = []

        self._course: Optional[SelectedCourse] = None
        self._result: Optional[SessionResult] = None
        self._history: Deque[SessionRecord] = deque(maxlen=self.settings.history_size)

        self._camera: CameraManager = camera or WebcamCameraManager(
            self.settings.camera,
            preview_queue_size=self.settings.performance.preview_queue_size,
        )
        self._media_status: MediaStatus = MediaStatus.IDLE
        self._media_error: Optional[str] = None
        self._acquire_task: Optional[asyncio.Task[None]] = None

        self._clock = SessionClock(
            tick_seconds=self.settings.clock.tick_seconds,
            on_tick=self._handle_tick,
            time_source=time_source,
        )
        checklist = self.settings.checklist
        self._precheck = ChecklistAnimator(
            name="precheck",
            step_delay=checklist.step_delay_seconds,
            settle_delay=checklist.settle_delay_seconds,
            on_change=self._handle_checklist_change,
        )
        self._end_session = ChecklistAnimator(
            name="end_session",
            step_delay=checklist.step_delay_seconds,
            settle_delay=checklist.settle_delay_seconds,
            on_change=self._handle_checklist_change,
        )

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def camera(self) -> CameraManager:
        return self._camera

    @property
    def clock(self) -> SessionClock:
        return self._clock

    @property
    def recent_sessions(self) -> List[SessionRecord]:
        """Completed sessions, newest first."""
        return list(self._history)

    async def __aenter__(self) -> "SessionManager":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def stop(self) -> None:
        logger.info("Stopping session manager")
        await self.close()
        self._ui_subscribers.clear()
        logger.info("Session manager stopped")

    def register_ui(self) -> asyncio.Queue[ControllerEvent]:
        queue: asyncio.Queue[ControllerEvent] = asyncio.Queue(maxsize=self.settings.performance.ui_event_queue_size)
        self._ui_subscribers.append(queue)
        return queue

    def unregister_ui(self, queue: asyncio.Queue[ControllerEvent]) -> None:
        if queue in self._ui_subscribers:
            self._ui_subscribers.remove(queue)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            phase=self._phase,
            precheck_steps=self._precheck.steps,
            end_session_steps=self._end_session.steps,
            elapsed=self._clock.label,
            started_at=self._clock.started_at,
            media_status=self._media_status,
            media_error=self._media_error,
            course=self._course,
            result=self._result,
        )

    # ============================================================
    # COMMANDS
    # ============================================================

    async def start_session(self, course: Optional[SelectedCourse]) -> bool:
        """Begin the pre-check for ``course``; only valid from IDLE."""
        if course is None:
            raise PreconditionError("Select a course before starting a session")

        async with self._lock:
            if self._phase != SessionPhase.IDLE:
                self._ignore("start_session")
                return False

            logger.info("🎬 [SESSION_START] Starting session for %s (%s)", course.name, course.code or course.id)
            # Scrub anything a previous session may have left behind.
            await self._teardown_resources()
            self._precheck.reset()
            self._end_session.reset()
            self._clock.reset()
            self._course = course
            self._result = None

            self._precheck.run(PRECHECK_STEPS, self._on_precheck_complete)
            await self._advance_phase(SessionPhase.PRECHECK)
            return True

    async def request_end(self) -> bool:
        async with self._lock:
            if self._phase != SessionPhase.CAMERA:
                self._ignore("request_end")
                return False
            # Camera keeps streaming so the user can still cancel.
            await self._advance_phase(SessionPhase.CONFIRM_END)
            return True

    async def cancel_end(self) -> bool:
        async with self._lock:
            if self._phase != SessionPhase.CONFIRM_END:
                self._ignore("cancel_end")
                return False
            await self._advance_phase(SessionPhase.CAMERA)
            return True

    async def confirm_end(self) -> bool:
        """Release the camera, freeze the clock and run the end-of-session checklist."""
        async with self._lock:
            if self._phase != SessionPhase.CONFIRM_END:
                self._ignore("confirm_end")
                return False

            await self._release_media()
            elapsed = self._clock.stop()
            logger.info("⏹️ [SESSION_END] End confirmed after %s", self._clock.label)

            self._end_session.run(END_SESSION_STEPS, self._on_ending_complete)
            await self._advance_phase(SessionPhase.ENDING, data={"elapsed_seconds": elapsed})
            return True

    async def close(self) -> bool:
        """Return to IDLE from any phase, cancelling timers and releasing the camera."""
        async with self._lock:
            previous = self._phase
            await self._teardown_resources()
            self._precheck.reset()
            self._end_session.reset()
            self._clock.reset()
            self._course = None
            self._result = None

            if previous == SessionPhase.IDLE:
                return False
            if previous != SessionPhase.SUCCESS:
                logger.info("⚠️ Session aborted from %s", previous.value)
            await self._advance_phase(SessionPhase.IDLE)
            logger.info("🏁 [SESSION_END] Session closed, back to IDLE")
            return True

    # ============================================================
    # INTERNAL TRANSITIONS
    # ============================================================

    async def _on_precheck_complete(self) -> None:
        async with self._lock:
            if self._phase != SessionPhase.PRECHECK:
                self._ignore("precheck_complete")
                return

            self._precheck.reset()
            self._clock.start()
            self._media_status = MediaStatus.PENDING
            self._media_error = None
            await self._advance_phase(SessionPhase.CAMERA)
            # Not awaited: the UI shows the "not ready" placeholder until it resolves.
            self._acquire_task = asyncio.create_task(self._acquire_media(), name="camera-acquire")

    async def _on_ending_complete(self) -> None:
        async with self._lock:
            if self._phase != SessionPhase.ENDING:
                self._ignore("ending_complete")
                return

            course = self._course
            students_marked = course.enrolled_count if course else 0
            self._result = SessionResult(students_marked=students_marked, duration_label=self._clock.label)
            record = SessionRecord(
                course_name=course.name if course else "",
                course_code=course.code if course else "",
                date=date.today().isoformat(),
                students_present=students_marked,
                duration_label=self._result.duration_label,
            )
            self._history.appendleft(record)

            self._end_session.reset()
            await self._advance_phase(SessionPhase.SUCCESS)
            await self._broadcast(
                ControllerEvent(
                    type="session_complete",
                    phase=self._phase,
                    data={"result": asdict(self._result), "record": asdict(record)},
                )
            )
            logger.info(
                "✅ Session completed: %d students marked in %s",
                self._result.students_marked,
                self._result.duration_label,
            )

    async def _acquire_media(self) -> None:
        try:
            handle = await self._camera.acquire()
        except asyncio.CancelledError:
            logger.info("📷 Camera acquisition cancelled")
            raise
        except AcquisitionError as exc:
            logger.warning("📷 Camera acquisition failed: %s", exc)
            await self._mark_media_failed(exc.user_message)
            return
        except Exception as exc:
            logger.exception("📷 Unexpected camera acquisition error: %s", exc)
            await self._mark_media_failed("Camera not available")
            return

        async with self._lock:
            if self._acquire_task is not asyncio.current_task() or self._phase not in CAMERA_ACTIVE_PHASES:
                logger.warning("📷 Camera acquired after the session left the camera phase; releasing")
                await self._camera.release(handle)
                return
            self._acquire_task = None
            self._media_status = MediaStatus.READY
            self._media_error = None
            await self._broadcast_media()
            logger.info("📷 Camera ready")

    async def _mark_media_failed(self, message: str) -> None:
        async with self._lock:
            if self._acquire_task is not asyncio.current_task() or self._phase not in CAMERA_ACTIVE_PHASES:
                return
            self._acquire_task = None
            self._media_status = MediaStatus.FAILED
            self._media_error = message
            await self._broadcast_media(error=message)

    async def _release_media(self) -> None:
        task, self._acquire_task = self._acquire_task, None
        if task and not task.done():
            task.cancel()

        if self._camera.held:
            if self._phase not in CAMERA_ACTIVE_PHASES:
                logger.warning("Camera still held in %s; forcing release", self._phase.value)
            await self._camera.release()
        self._media_status = MediaStatus.IDLE
        self._media_error = None

    async def _teardown_resources(self) -> None:
        """Cancel every timer and release the camera before a phase change."""
        self._precheck.cancel()
        self._end_session.cancel()
        if self._clock.running:
            self._clock.stop()
        await self._release_media()

    def _ignore(self, command: str) -> None:
        logger.debug("Ignoring %s in phase %s", command, self._phase.value)

    # ============================================================
    # UI EVENTS
    # ============================================================

    async def _handle_checklist_change(self, steps: List[ChecklistStep]) -> None:
        await self._broadcast(ControllerEvent(type="checklist", phase=self._phase, data=self.snapshot().as_payload()))

    async def _handle_tick(self, elapsed_seconds: int) -> None:
        await self._broadcast(ControllerEvent(type="tick", phase=self._phase, data=self.snapshot().as_payload()))

    async def _broadcast_media(self, error: Optional[str] = None) -> None:
        await self._broadcast(
            ControllerEvent(type="media", phase=self._phase, data=self.snapshot().as_payload(), error=error)
        )

    async def _broadcast(self, event: ControllerEvent) -> None:
        """Broadcast event to all UI subscribers with error handling."""
        for queue in list(self._ui_subscribers):
            try:
                if queue.full():
                    try:
                        queue.get_nowait()
                    except QueueEmpty:
                        pass
                queue.put_nowait(event)
            except Exception as e:
                logger.warning("Failed to broadcast event to subscriber: %s", e)

    async def _advance_phase(
        self,
        phase: SessionPhase,
        *,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        previous = self._phase
        now = time.time()
        logger.info("Phase %s → %s (after %.1fs)", previous.value, phase.value, now - self._phase_started_at)
        self._phase = phase
        self._phase_started_at = now
        payload = self.snapshot().as_payload()
        if data:
            payload.update(data)
        await self._broadcast(ControllerEvent(type="state", data=payload, phase=phase, error=error))


__all__ = ["PreconditionError", "SessionManager"]

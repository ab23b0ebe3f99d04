"""
Camera media resource manager.

Owns the single capture handle of a controller: acquires it asynchronously
when a session goes live and releases it on every exit path. The preview loop
streams JPEG frames while a handle is held and a placeholder otherwise.
"""

from __future__ import annotations

import asyncio
from asyncio import QueueEmpty
import base64
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Protocol

import numpy as np

# Optional dep: without OpenCV every acquisition fails with AcquisitionError
try:
    import cv2  # type: ignore
except ImportError:
    cv2 = None

from ..config import CameraSettings

logger = logging.getLogger(__name__)

_PLACEHOLDER_JPEG = base64.b64decode(
    b"/9j/4AAQSkZJRgABAQAAAQABAAD/2wBDAAgGBgcGBQgHBwcJCQgKDBQNDAsLDBkSEw8UHRofHh0aHBwgJC4nICIsIxwcKDcpLDAxNDQ0Hyc5PTgyPC4zNDL/2wBDAQkJCQwLDBgNDRgyIRwhMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjL/wAARCAABAAEDASIAAhEBAxEB/8QAHwAAAQUBAQEBAQEAAAAAAAAAAAECAwQFBgcICQoL/8QAtRAAAgEDAwIEAwUFBAQAAAF9AQIDAAQRBRIhMUEGE1FhByJxFDKBkaEII0KxwRVS0fAkM2JyggkKFhcYGRolJicoKSo0NTY3ODk6Q0RFRkdISUpTVFVWV1hZWmNkZWZnaGlqc3R1dnd4eXqDhIWGh4iJipKTlJWWl5iZmqKjpKWmp6ipqrKztLW2t7i5usLDxMXGx8jJytLT1NXW19jZ2uHi4+Tl5ufo6erx8vP09fb3+Pn6/8QAHwEAAwEBAQEBAQEBAQAAAAAAAAECAwQFBgcICQoL/8QAtREAAgECBAQDBAcFBAQAAQJ3AAECAxEEBSExBhJBUQdhcRMiMoEIFEKRobHBCSMzUvAVYnLRChYkNOEl8RcYGRomJygpKjU2Nzg5OkNERUZHSElKU1RVVldYWVpjZGVmZ2hpanN0dXZ3eHl6goOEhYaHiImKkpOUlZaXmJmaoqOkpaanqKmqsrO0tba3uLm6wsPExcbHyMnK0tPU1dbX2Nna4uPk5ebn6Onq8vP09fb3+Pn6/9oADAMBAAIRAxEAPwD5/ooooA//2Q=="
)


class AcquisitionError(RuntimeError):
    """Raised when the capture device cannot be opened (busy, missing, denied)."""

    def __init__(self, user_message: str, *, log_message: Optional[str] = None) -> None:
        super().__init__(log_message or user_message)
        self.user_message = user_message


@dataclass(eq=False)
class MediaHandle:
    """Exclusive handle to an opened capture device."""

    device_index: int
    acquired_at: float = field(default_factory=time.time)
    capture: Any = field(default=None, repr=False)


class CameraManager(Protocol):
    """Capability interface the session manager needs from a camera."""

    @property
    def held(self) -> bool: ...

    async def acquire(self) -> MediaHandle: ...

    async def release(self, handle: Optional[MediaHandle] = None) -> None: ...


class WebcamCameraManager:
    """OpenCV-backed camera manager with an MJPEG-friendly preview loop."""

    def __init__(self, settings: Optional[CameraSettings] = None, *, preview_queue_size: int = 2) -> None:
        self.settings = settings or CameraSettings()
        self.enable_hardware = cv2 is not None
        self._handle: Optional[MediaHandle] = None
        self._lock = asyncio.Lock()
        self._preview_queue_size = preview_queue_size
        self._preview_subscribers: list[asyncio.Queue[bytes]] = []
        self._loop_task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    @property
    def held(self) -> bool:
        return self._handle is not None

    @property
    def handle(self) -> Optional[MediaHandle]:
        return self._handle

    async def start(self) -> None:
        """Start the preview loop."""
        if self._loop_task:
            return
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._preview_loop(), name="camera-preview-loop")
        logger.info("Camera preview loop started (hardware=%s)", self.enable_hardware)

    async def stop(self) -> None:
        """Stop the preview loop and release any held device."""
        if self._loop_task:
            self._stop_event.set()
            await self._loop_task
            self._loop_task = None
        await self.release()
        logger.info("Camera manager stopped")

    async def acquire(self) -> MediaHandle:
        """Open the capture device; raises AcquisitionError on failure."""
        assert self._handle is None, "camera handle already held"
        if not self.enable_hardware:
            raise AcquisitionError("Camera not available", log_message="OpenCV is not installed")

        logger.info("Opening camera (device_index=%d)", self.settings.device_index)
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self._open_capture)
        try:
            capture = await asyncio.shield(future)
        except asyncio.CancelledError:
            # The open keeps running in the executor; close whatever it yields.
            future.add_done_callback(self._discard_late_capture)
            raise

        self._handle = MediaHandle(device_index=self.settings.device_index, capture=capture)
        logger.info("Camera acquired (device_index=%d)", self.settings.device_index)
        return self._handle

    async def release(self, handle: Optional[MediaHandle] = None) -> None:
        """Release ``handle`` (or the current one); a no-op when nothing is held."""
        async with self._lock:
            current = self._handle
            if current is None:
                return
            if handle is not None and handle is not current:
                logger.debug("Ignoring release of a stale camera handle")
                return
            self._handle = None
            self._close_capture(current.capture)
        logger.info("Camera released (held for %.1fs)", time.time() - current.acquired_at)

    def _open_capture(self) -> Any:
        try:
            capture = cv2.VideoCapture(self.settings.device_index)
        except Exception as exc:
            raise AcquisitionError("Camera not available", log_message=f"VideoCapture failed: {exc}") from exc

        if not capture.isOpened():
            capture.release()
            raise AcquisitionError(
                "Camera is busy or access was denied",
                log_message=f"Failed to open camera {self.settings.device_index}",
            )

        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.settings.resolution_width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.settings.resolution_height)
        capture.set(cv2.CAP_PROP_FPS, self.settings.fps)
        return capture

    def _discard_late_capture(self, future: asyncio.Future[Any]) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        logger.info("Releasing camera opened after acquisition was abandoned")
        self._close_capture(future.result())

    @staticmethod
    def _close_capture(capture: Any) -> None:
        if capture is None:
            return
        try:
            capture.release()
        except Exception as exc:
            logger.warning("Error releasing camera: %s", exc)

    def _read_frame(self, capture: Any) -> Optional[np.ndarray]:
        if capture is None or not capture.isOpened():
            return None
        ret, frame = capture.read()
        if not ret or frame is None:
            return None
        return frame

    async def _preview_loop(self) -> None:
        """Main preview loop."""
        try:
            while not self._stop_event.is_set():
                frame_bytes: Optional[bytes] = None
                async with self._lock:
                    handle = self._handle
                    if handle is not None:
                        loop = asyncio.get_running_loop()
                        frame = await loop.run_in_executor(None, self._read_frame, handle.capture)
                        frame_bytes = self._serialize_frame(frame)

                if frame_bytes is not None:
                    self._broadcast_frame(frame_bytes)
                    await asyncio.sleep(self.settings.preview_interval_seconds)
                else:
                    # Device not ready - send placeholder
                    self._broadcast_frame(self._placeholder_frame())
                    await asyncio.sleep(self.settings.placeholder_interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Camera preview loop crashed")
        finally:
            self._stop_event.clear()
            logger.info("Camera preview loop stopped")

    def _serialize_frame(self, frame: Optional[np.ndarray]) -> bytes:
        """Serialize frame to JPEG."""
        if frame is None or cv2 is None:
            return self._placeholder_frame()

        try:
            ret, enc = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, self.settings.jpeg_quality])
            return enc.tobytes() if ret else self._placeholder_frame()
        except Exception as e:
            logger.warning(f"Frame serialization error: {e}")
            return self._placeholder_frame()

    def _placeholder_frame(self) -> bytes:
        """Return placeholder frame."""
        return _PLACEHOLDER_JPEG

    def _broadcast_frame(self, frame: bytes) -> None:
        """Broadcast frame to all subscribers."""
        for q in list(self._preview_subscribers):
            if q.full():
                try:
                    q.get_nowait()
                except QueueEmpty:
                    pass
            q.put_nowait(frame)

    async def preview_stream(self) -> AsyncIterator[bytes]:
        """Stream preview frames."""
        q: asyncio.Queue[bytes] = asyncio.Queue(maxsize=self._preview_queue_size)
        self._preview_subscribers.append(q)
        try:
            while True:
                frame = await q.get()
                yield frame
        finally:
            self._preview_subscribers.remove(q)


__all__ = ["AcquisitionError", "CameraManager", "MediaHandle", "WebcamCameraManager"]

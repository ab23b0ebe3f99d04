"""WebcamCameraManager lifecycle against a fake OpenCV module."""

from __future__ import annotations

import asyncio
import contextlib
import threading
from typing import Callable, List, Optional

import numpy as np
import pytest

from live_attendance.config import CameraSettings
from live_attendance.sensors import camera as camera_module
from live_attendance.sensors.camera import AcquisitionError, MediaHandle, WebcamCameraManager


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)


class _FakeCapture:
    def __init__(self, index: int, *, opened: bool, gate: Optional[threading.Event]) -> None:
        if gate is not None:
            gate.wait(timeout=5.0)
        self.index = index
        self.opened = opened
        self.release_count = 0
        self.props: dict = {}

    def isOpened(self) -> bool:
        return self.opened and self.release_count == 0

    def set(self, prop: int, value: float) -> bool:
        self.props[prop] = value
        return True

    def read(self):
        return True, np.zeros((4, 4, 3), dtype=np.uint8)

    def release(self) -> None:
        self.release_count += 1


class _FakeCv2:
    CAP_PROP_FRAME_WIDTH = 3
    CAP_PROP_FRAME_HEIGHT = 4
    CAP_PROP_FPS = 5
    IMWRITE_JPEG_QUALITY = 1

    def __init__(self, *, opened: bool = True) -> None:
        self.opened = opened
        self.gate: Optional[threading.Event] = None
        self.captures: List[_FakeCapture] = []

    def VideoCapture(self, index: int) -> _FakeCapture:
        capture = _FakeCapture(index, opened=self.opened, gate=self.gate)
        self.captures.append(capture)
        return capture

    def imencode(self, ext: str, frame, params):
        return True, np.frombuffer(b"jpeg-bytes", dtype=np.uint8)


@pytest.fixture
def fake_cv2(monkeypatch: pytest.MonkeyPatch) -> _FakeCv2:
    module = _FakeCv2()
    monkeypatch.setattr(camera_module, "cv2", module)
    return module


def _manager(**camera_overrides) -> WebcamCameraManager:
    settings = CameraSettings(preview_interval_seconds=0.005, placeholder_interval_seconds=0.005, **camera_overrides)
    return WebcamCameraManager(settings)


@pytest.mark.asyncio
async def test_acquire_opens_configured_device(fake_cv2: _FakeCv2) -> None:
    manager = _manager(device_index=2, resolution_width=1280, resolution_height=720)

    handle = await manager.acquire()

    assert manager.held
    assert handle.device_index == 2
    capture = fake_cv2.captures[0]
    assert capture.index == 2
    assert capture.props[_FakeCv2.CAP_PROP_FRAME_WIDTH] == 1280
    assert capture.props[_FakeCv2.CAP_PROP_FRAME_HEIGHT] == 720
    await manager.release(handle)


@pytest.mark.asyncio
async def test_release_is_idempotent(fake_cv2: _FakeCv2) -> None:
    manager = _manager()
    handle = await manager.acquire()

    await manager.release(handle)
    await manager.release(handle)
    await manager.release()

    assert not manager.held
    assert fake_cv2.captures[0].release_count == 1


@pytest.mark.asyncio
async def test_release_ignores_stale_handle(fake_cv2: _FakeCv2) -> None:
    manager = _manager()
    current = await manager.acquire()

    await manager.release(MediaHandle(device_index=0))

    assert manager.held
    assert manager.handle is current
    await manager.release()


@pytest.mark.asyncio
async def test_acquire_fails_when_device_busy(fake_cv2: _FakeCv2) -> None:
    fake_cv2.opened = False
    manager = _manager()

    with pytest.raises(AcquisitionError) as excinfo:
        await manager.acquire()

    assert excinfo.value.user_message == "Camera is busy or access was denied"
    assert not manager.held
    assert fake_cv2.captures[0].release_count == 1


@pytest.mark.asyncio
async def test_acquire_fails_without_opencv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(camera_module, "cv2", None)
    manager = _manager()

    with pytest.raises(AcquisitionError):
        await manager.acquire()
    assert not manager.held


@pytest.mark.asyncio
async def test_acquire_while_held_fails_fast(fake_cv2: _FakeCv2) -> None:
    manager = _manager()
    await manager.acquire()

    with pytest.raises(AssertionError):
        await manager.acquire()
    await manager.release()


@pytest.mark.asyncio
async def test_cancelled_acquire_releases_late_capture(fake_cv2: _FakeCv2) -> None:
    gate = threading.Event()
    fake_cv2.gate = gate
    manager = _manager()

    task = asyncio.create_task(manager.acquire())
    await asyncio.sleep(0.02)
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    gate.set()

    await _wait_until(lambda: bool(fake_cv2.captures) and fake_cv2.captures[0].release_count == 1)
    assert not manager.held


@pytest.mark.asyncio
async def test_preview_streams_placeholder_then_frames(fake_cv2: _FakeCv2) -> None:
    manager = _manager()
    await manager.start()
    stream = manager.preview_stream()
    try:
        first = await asyncio.wait_for(stream.__anext__(), timeout=1.0)
        assert first == manager._placeholder_frame()

        await manager.acquire()

        async def _next_real_frame() -> bytes:
            while True:
                frame = await stream.__anext__()
                if frame != manager._placeholder_frame():
                    return frame

        frame = await asyncio.wait_for(_next_real_frame(), timeout=1.0)
        assert frame == b"jpeg-bytes"
    finally:
        await stream.aclose()
        await manager.stop()

    assert not manager.held

from __future__ import annotations

import asyncio
from typing import Callable, List, Optional

import pytest
import pytest_asyncio

from live_attendance.config import ChecklistSettings, ClockSettings, PerformanceSettings, Settings
from live_attendance.sensors.camera import MediaHandle
from live_attendance.session_manager import SessionManager
from live_attendance.state import SelectedCourse


class FakeCamera:
    """Camera test double: optionally blocks on a gate or fails acquisition."""

    def __init__(self, *, fail_with: Optional[Exception] = None, gate: Optional[asyncio.Event] = None) -> None:
        self.fail_with = fail_with
        self.gate = gate
        self.handle: Optional[MediaHandle] = None
        self.acquire_calls = 0
        self.release_calls = 0
        self.released: List[MediaHandle] = []

    @property
    def held(self) -> bool:
        return self.handle is not None

    async def acquire(self) -> MediaHandle:
        assert self.handle is None, "camera handle already held"
        self.acquire_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        self.handle = MediaHandle(device_index=0)
        return self.handle

    async def release(self, handle: Optional[MediaHandle] = None) -> None:
        self.release_calls += 1
        if self.handle is None:
            return
        if handle is not None and handle is not self.handle:
            return
        self.released.append(self.handle)
        self.handle = None


class FakeTime:
    """Monotonic time source the tests can move forward by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(**overrides) -> Settings:
    params = dict(
        checklist=ChecklistSettings(step_delay_seconds=0.02, settle_delay_seconds=0.01),
        clock=ClockSettings(tick_seconds=0.01),
        performance=PerformanceSettings(ui_event_queue_size=512),
    )
    params.update(overrides)
    return Settings(**params)


@pytest.fixture
def fake_camera() -> FakeCamera:
    return FakeCamera()


@pytest.fixture
def settings_factory() -> Callable[..., Settings]:
    return make_settings


@pytest.fixture
def fast_settings() -> Settings:
    return make_settings()


@pytest.fixture
def course() -> SelectedCourse:
    return SelectedCourse(id=1, name="Introduction to Computer Science", code="CS101", enrolled_count=42)


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()


@pytest_asyncio.fixture
async def make_manager(fast_settings: Settings, fake_time: FakeTime):
    managers: List[SessionManager] = []

    def _factory(camera: Optional[FakeCamera] = None, settings: Optional[Settings] = None) -> SessionManager:
        manager = SessionManager(
            settings=settings or fast_settings,
            camera=camera if camera is not None else FakeCamera(),
            time_source=fake_time,
        )
        managers.append(manager)
        return manager

    yield _factory

    for manager in managers:
        await manager.stop()

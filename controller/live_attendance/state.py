"""Shared controller state definitions for the live attendance session."""
from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


class SessionPhase(str, enum.Enum):
    """
    Session phases in chronological order:

    1. IDLE         - No session, waiting for a course to be started
    2. PRECHECK     - 4-step readiness checklist (2s per step + 1s settle)
    3. CAMERA       - Live capture, clock running, camera acquired
    4. CONFIRM_END  - End requested, waiting for confirmation (camera still live)
    5. ENDING       - 5-step end-of-session checklist
    6. SUCCESS      - Final metrics shown until closed → IDLE
    """
    IDLE = "idle"
    PRECHECK = "precheck"
    CAMERA = "camera"
    CONFIRM_END = "confirm_end"
    ENDING = "ending"
    SUCCESS = "success"


# Phases in which the camera handle may be held and the clock runs.
CAMERA_ACTIVE_PHASES = frozenset({SessionPhase.CAMERA, SessionPhase.CONFIRM_END})


class MediaStatus(str, enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass
class ChecklistStep:
    id: str
    label: str
    completed: bool = False
    active: bool = False


@dataclass(frozen=True)
class SelectedCourse:
    """Course chosen by the selection UI; immutable for the whole session."""

    id: int
    name: str
    code: str = ""
    enrolled_count: int = 0


@dataclass(frozen=True)
class SessionResult:
    students_marked: int
    duration_label: str


@dataclass(frozen=True)
class SessionRecord:
    """Summary of a completed session kept for the recent-sessions list."""

    course_name: str
    course_code: str
    date: str
    students_present: int
    duration_label: str


@dataclass
class SessionSnapshot:
    """Read-only view of the controller handed to presentation layers."""

    phase: SessionPhase
    precheck_steps: List[ChecklistStep] = field(default_factory=list)
    end_session_steps: List[ChecklistStep] = field(default_factory=list)
    elapsed: str = "0:00"
    started_at: Optional[datetime] = None
    media_status: MediaStatus = MediaStatus.IDLE
    media_error: Optional[str] = None
    course: Optional[SelectedCourse] = None
    result: Optional[SessionResult] = None

    def as_payload(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "precheck_steps": [asdict(step) for step in self.precheck_steps],
            "end_session_steps": [asdict(step) for step in self.end_session_steps],
            "elapsed": self.elapsed,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "media_status": self.media_status.value,
            "media_error": self.media_error,
            "course": asdict(self.course) if self.course else None,
            "result": asdict(self.result) if self.result else None,
        }


@dataclass
class ControllerEvent:
    """Event payload distributed to UI clients over the local WebSocket."""

    type: str
    data: Dict[str, Any]
    phase: SessionPhase
    error: Optional[str] = None


__all__ = [
    "CAMERA_ACTIVE_PHASES",
    "ChecklistStep",
    "ControllerEvent",
    "MediaStatus",
    "SelectedCourse",
    "SessionPhase",
    "SessionRecord",
    "SessionResult",
    "SessionSnapshot",
]

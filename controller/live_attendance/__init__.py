"""Live attendance session controller."""
from .session_manager import PreconditionError, SessionManager
from .state import SelectedCourse, SessionPhase, SessionSnapshot

__all__ = [
    "PreconditionError",
    "SelectedCourse",
    "SessionManager",
    "SessionPhase",
    "SessionSnapshot",
]

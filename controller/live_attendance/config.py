"""Central configuration for the live attendance controller service."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"


# ============================================================
# Nested Configuration Classes
# ============================================================

class ChecklistSettings(BaseModel):
    """Checklist animation cadence (seconds)."""
    step_delay_seconds: float = Field(2.0, gt=0, description="Time each checklist step stays active")
    settle_delay_seconds: float = Field(1.0, ge=0, description="Pause after the last step before completing")

    @model_validator(mode="after")
    def _settle_shorter_than_step(self) -> "ChecklistSettings":
        if self.settle_delay_seconds >= self.step_delay_seconds:
            raise ValueError("settle_delay_seconds must be shorter than step_delay_seconds")
        return self


class ClockSettings(BaseModel):
    """Session clock configuration."""
    tick_seconds: float = Field(1.0, gt=0, description="Interval between elapsed-time ticks")


class CameraSettings(BaseModel):
    """Capture device configuration."""
    device_index: int = Field(0, ge=0, description="OpenCV capture device index")
    resolution_width: int = Field(640, description="Camera stream width (pixels)")
    resolution_height: int = Field(480, description="Camera stream height (pixels)")
    fps: int = Field(30, description="Requested capture frame rate")
    jpeg_quality: int = Field(85, ge=1, le=100, description="Preview JPEG quality")
    preview_interval_seconds: float = Field(0.033, description="Delay between preview frames (~30 FPS)")
    placeholder_interval_seconds: float = Field(0.1, description="Delay between placeholder frames when no device is held")


class PerformanceSettings(BaseModel):
    """Queue tuning."""
    ui_event_queue_size: int = Field(8, ge=1, description="Max buffered UI events per subscriber")
    preview_queue_size: int = Field(2, ge=1, description="Max buffered preview JPEG frames")


class Settings(BaseSettings):
    """Environment-driven settings for controller subsystems."""

    # Controller HTTP Server
    controller_host: str = Field("0.0.0.0", description="Host interface for local FastAPI server")
    controller_port: int = Field(5000, description="Port for FastAPI server")

    # Reporting
    history_size: int = Field(10, ge=0, description="Completed sessions kept in memory")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_directory: Path = Field(ROOT_DIR / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")

    # Nested Configuration Objects
    checklist: ChecklistSettings = Field(default_factory=ChecklistSettings, description="Checklist animation timing")
    clock: ClockSettings = Field(default_factory=ClockSettings, description="Session clock settings")
    camera: CameraSettings = Field(default_factory=CameraSettings, description="Camera hardware settings")
    performance: PerformanceSettings = Field(default_factory=PerformanceSettings, description="Performance tuning")

    model_config = SettingsConfigDict(
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()

"""Capture device integrations."""

from .camera import AcquisitionError, CameraManager, MediaHandle, WebcamCameraManager

__all__ = ["AcquisitionError", "CameraManager", "MediaHandle", "WebcamCameraManager"]

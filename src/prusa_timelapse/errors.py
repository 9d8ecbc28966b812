"""Exception hierarchy shared by the timelapse service."""
from __future__ import annotations


class TimelapseError(RuntimeError):
    """Base class for every error raised by the timelapse service."""


class ConfigError(TimelapseError):
    """Raised when the configuration file is missing or invalid."""


class StatusFetchFailed(TimelapseError):
    """Raised when the printer status cannot be retrieved."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class CaptureError(TimelapseError):
    """Base error for capture process failures."""


class CaptureAlreadyInProgress(CaptureError):
    """Raised when a capture is requested while one is already running."""


class CaptureStartFailed(CaptureError):
    """Raised when the capture process could not be launched."""


class CaptureStopFailed(CaptureError):
    """Raised when the capture process could not be torn down cleanly."""


class AssemblyError(TimelapseError):
    """Base error for video assembly failures."""


class NoFramesAvailable(AssemblyError):
    """Raised when assembly is requested without any captured frames."""


class AssemblyFailed(AssemblyError):
    """Raised when the encoder could not produce the timelapse video."""

    def __init__(self, message: str, *, diagnostics: str = "") -> None:
        super().__init__(message)
        self.diagnostics = diagnostics


class NotificationFailed(TimelapseError):
    """Raised when a completion notification could not be delivered."""


class MonitorError(TimelapseError):
    """Raised when the monitor is driven outside its lifecycle."""


__all__ = [
    "AssemblyError",
    "AssemblyFailed",
    "CaptureAlreadyInProgress",
    "CaptureError",
    "CaptureStartFailed",
    "CaptureStopFailed",
    "ConfigError",
    "MonitorError",
    "NoFramesAvailable",
    "NotificationFailed",
    "StatusFetchFailed",
    "TimelapseError",
]

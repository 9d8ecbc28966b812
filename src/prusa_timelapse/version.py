"""Version information for the timelapse service."""

APP_VERSION = "1.1.0"

__all__ = ["APP_VERSION"]

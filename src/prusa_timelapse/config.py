"""Configuration loading for the timelapse service."""
from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from .errors import ConfigError

CONFIG_ENV_VAR = "PRUSA_TIMELAPSE_CONFIG"
PASSWORD_ENV_VAR = "PRUSALINK_PASSWORD"
API_KEY_ENV_VAR = "PRUSALINK_API_KEY"

AUTH_MODES = ("digest", "basic")

DEFAULT_PORT = 80
DEFAULT_REQUEST_TIMEOUT = 10.0
DEFAULT_CAPTURE_INTERVAL = 10.0
DEFAULT_OUTPUT_FRAMERATE = 30.0
DEFAULT_POLL_INTERVAL = 10.0
DEFAULT_WATCHDOG_TIMEOUT = 1800.0
DEFAULT_STATUS_LOG_INTERVAL = 60.0
DEFAULT_STOP_TIMEOUT = 5.0
DEFAULT_WEBHOOK_TIMEOUT = 5.0


def _positive_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a number") from exc
    if not math.isfinite(number) or number <= 0:
        raise ValueError(f"{name} must be a positive number")
    return number


def _optional_timeout(value: Any, name: str) -> float | None:
    if value is None:
        return None
    return _positive_float(value, name)


def _required_text(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid or missing {name}")
    return value.strip()


def _optional_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


@dataclass(frozen=True, slots=True)
class PrusaLinkSettings:
    """Connection details for the PrusaLink HTTP API."""

    host: str
    port: int = DEFAULT_PORT
    username: str | None = None
    password: str | None = None
    api_key: str | None = None
    auth: str = "digest"
    timeout: float = DEFAULT_REQUEST_TIMEOUT

    def __post_init__(self) -> None:
        object.__setattr__(self, "host", _required_text(self.host, "prusaLink.host"))
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise ValueError("Invalid or missing prusaLink.port")
        if not (0 < self.port < 65536):
            raise ValueError("prusaLink.port must be between 1 and 65535")
        auth = str(self.auth).strip().lower()
        if auth not in AUTH_MODES:
            raise ValueError(f"prusaLink.auth must be one of: {', '.join(AUTH_MODES)}")
        object.__setattr__(self, "auth", auth)
        object.__setattr__(self, "timeout", _positive_float(self.timeout, "prusaLink.timeout"))
        has_credentials = bool(self.username) and bool(self.password)
        if not has_credentials and not self.api_key:
            raise ValueError(
                "prusaLink requires either username and password or an apiKey"
            )

    @property
    def base_url(self) -> str:
        host = self.host
        if host.startswith(("http://", "https://")):
            return f"{host.rstrip('/')}:{self.port}"
        return f"http://{host}:{self.port}"


@dataclass(frozen=True, slots=True)
class TimelapseSettings:
    """Capture and assembly parameters."""

    rtsp_url: str
    output_directory: Path
    temp_directory: Path
    capture_interval: float = DEFAULT_CAPTURE_INTERVAL
    output_framerate: float = DEFAULT_OUTPUT_FRAMERATE
    ffmpeg_path: str = "ffmpeg"
    ffmpeg_log_level: str = "error"
    video_codec: str = "libx264"
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    assembly_timeout: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rtsp_url", _required_text(self.rtsp_url, "timelapse.rtspUrl"))
        object.__setattr__(
            self,
            "capture_interval",
            _positive_float(self.capture_interval, "timelapse.captureInterval"),
        )
        object.__setattr__(
            self,
            "output_framerate",
            _positive_float(self.output_framerate, "timelapse.outputFramerate"),
        )
        object.__setattr__(
            self, "stop_timeout", _positive_float(self.stop_timeout, "timelapse.stopTimeout")
        )
        object.__setattr__(
            self,
            "assembly_timeout",
            _optional_timeout(self.assembly_timeout, "timelapse.assemblyTimeout"),
        )
        object.__setattr__(
            self, "ffmpeg_path", _required_text(self.ffmpeg_path, "timelapse.ffmpegPath")
        )
        for name in ("output_directory", "temp_directory"):
            value = getattr(self, name)
            if isinstance(value, str):
                value = _required_text(value, f"timelapse.{name}")
            if not isinstance(value, (str, Path)):
                raise ValueError(f"Invalid or missing timelapse.{name}")
            object.__setattr__(self, name, Path(value).expanduser().resolve())


@dataclass(frozen=True, slots=True)
class WebhookSettings:
    """Optional HTTP callback fired when a timelapse completes."""

    url: str
    method: str = "POST"
    headers: Mapping[str, str] = field(default_factory=dict)
    timeout: float = DEFAULT_WEBHOOK_TIMEOUT

    def __post_init__(self) -> None:
        object.__setattr__(self, "url", _required_text(self.url, "notification.webhook.url"))
        method = str(self.method or "POST").strip().upper() or "POST"
        object.__setattr__(self, "method", method)
        if not isinstance(self.headers, Mapping):
            raise ValueError("notification.webhook.headers must be a mapping")
        object.__setattr__(
            self,
            "headers",
            {str(key): str(value) for key, value in self.headers.items() if str(key).strip()},
        )
        object.__setattr__(
            self, "timeout", _positive_float(self.timeout, "notification.webhook.timeout")
        )


@dataclass(frozen=True, slots=True)
class NotificationSettings:
    """How completed timelapses are announced."""

    command: str = ""
    timeout: float | None = None
    webhook: WebhookSettings | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.command, str):
            raise ValueError("notification.command must be a string")
        object.__setattr__(self, "command", self.command.strip())
        object.__setattr__(
            self, "timeout", _optional_timeout(self.timeout, "notification.timeout")
        )

    @property
    def enabled(self) -> bool:
        return bool(self.command) or self.webhook is not None


@dataclass(frozen=True, slots=True)
class MonitorSettings:
    """Polling cadence and watchdog limits."""

    poll_interval: float = DEFAULT_POLL_INTERVAL
    watchdog_timeout: float = DEFAULT_WATCHDOG_TIMEOUT
    status_log_interval: float = DEFAULT_STATUS_LOG_INTERVAL

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "poll_interval", _positive_float(self.poll_interval, "pollInterval")
        )
        if isinstance(self.watchdog_timeout, bool):
            raise ValueError("watchdogTimeout must be a number")
        try:
            watchdog = float(self.watchdog_timeout)
        except (TypeError, ValueError) as exc:
            raise ValueError("watchdogTimeout must be a number") from exc
        if not math.isfinite(watchdog):
            raise ValueError("watchdogTimeout must be finite")
        object.__setattr__(self, "watchdog_timeout", max(0.0, watchdog))
        object.__setattr__(
            self,
            "status_log_interval",
            _positive_float(self.status_log_interval, "statusLogInterval"),
        )

    @property
    def watchdog_enabled(self) -> bool:
        return self.watchdog_timeout > 0


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Complete service configuration."""

    prusa_link: PrusaLinkSettings
    timelapse: TimelapseSettings
    notification: NotificationSettings = field(default_factory=NotificationSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)

    @property
    def poll_interval(self) -> float:
        return self.monitor.poll_interval


_MISSING = object()


def _lookup(data: Mapping[str, Any], *names: str, default: Any = _MISSING) -> Any:
    """Return the first present key among ``names`` (camelCase or snake_case)."""

    for name in names:
        if name in data:
            return data[name]
    return None if default is _MISSING else default


def _section(data: Mapping[str, Any], *names: str, required: bool) -> Mapping[str, Any]:
    value = _lookup(data, *names)
    if value is None:
        if required:
            raise ValueError(f"Missing {names[0]} configuration section")
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"{names[0]} configuration section must be an object")
    return value


def _parse_prusa_link(data: Mapping[str, Any], environ: Mapping[str, str]) -> PrusaLinkSettings:
    section = _section(data, "prusaLink", "prusa_link", required=True)
    port = _lookup(section, "port", default=DEFAULT_PORT)
    password = _optional_text(environ.get(PASSWORD_ENV_VAR)) or _optional_text(
        _lookup(section, "password")
    )
    api_key = _optional_text(environ.get(API_KEY_ENV_VAR)) or _optional_text(
        _lookup(section, "apiKey", "api_key")
    )
    return PrusaLinkSettings(
        host=_lookup(section, "host"),
        port=port,
        username=_optional_text(_lookup(section, "username")),
        password=password,
        api_key=api_key,
        auth=_lookup(section, "auth", default="digest") or "digest",
        timeout=_lookup(section, "timeout", default=DEFAULT_REQUEST_TIMEOUT),
    )


def _parse_timelapse(data: Mapping[str, Any]) -> TimelapseSettings:
    section = _section(data, "timelapse", required=True)
    output_directory = _lookup(section, "outputDirectory", "output_directory")
    temp_directory = _lookup(section, "tempDirectory", "temp_directory")
    if not isinstance(output_directory, str) or not output_directory.strip():
        raise ValueError("Invalid or missing timelapse.outputDirectory")
    if not isinstance(temp_directory, str) or not temp_directory.strip():
        raise ValueError("Invalid or missing timelapse.tempDirectory")
    return TimelapseSettings(
        rtsp_url=_lookup(section, "rtspUrl", "rtsp_url"),
        output_directory=Path(output_directory),
        temp_directory=Path(temp_directory),
        capture_interval=_lookup(
            section, "captureInterval", "capture_interval", default=DEFAULT_CAPTURE_INTERVAL
        ),
        output_framerate=_lookup(
            section, "outputFramerate", "output_framerate", default=DEFAULT_OUTPUT_FRAMERATE
        ),
        ffmpeg_path=_lookup(section, "ffmpegPath", "ffmpeg_path", default="ffmpeg"),
        ffmpeg_log_level=str(
            _lookup(section, "ffmpegLogLevel", "ffmpeg_log_level", default="error") or "error"
        ),
        video_codec=str(_lookup(section, "videoCodec", "video_codec", default="libx264") or "libx264"),
        stop_timeout=_lookup(section, "stopTimeout", "stop_timeout", default=DEFAULT_STOP_TIMEOUT),
        assembly_timeout=_lookup(section, "assemblyTimeout", "assembly_timeout"),
    )


def _parse_webhook(value: Any) -> WebhookSettings | None:
    if value is None:
        return None
    if isinstance(value, str):
        return WebhookSettings(url=value) if value.strip() else None
    if not isinstance(value, Mapping):
        raise ValueError("notification.webhook must be a URL or an object")
    if not _optional_text(value.get("url")):
        return None
    return WebhookSettings(
        url=value.get("url"),
        method=value.get("method", "POST"),
        headers=value.get("headers") or {},
        timeout=_lookup(value, "timeout", "timeoutSec", "timeout_sec", default=DEFAULT_WEBHOOK_TIMEOUT),
    )


def _parse_notification(data: Mapping[str, Any]) -> NotificationSettings:
    section = _section(data, "notification", "notifications", required=False)
    command = _lookup(section, "command", default="")
    return NotificationSettings(
        command="" if command is None else command,
        timeout=_lookup(section, "timeout"),
        webhook=_parse_webhook(_lookup(section, "webhook")),
    )


def _parse_monitor(data: Mapping[str, Any]) -> MonitorSettings:
    section = _section(data, "monitor", required=False)

    def _pick(*names: str, default: Any) -> Any:
        value = _lookup(section, *names)
        if value is None:
            value = _lookup(data, *names)
        return default if value is None else value

    return MonitorSettings(
        poll_interval=_pick("pollInterval", "poll_interval", default=DEFAULT_POLL_INTERVAL),
        watchdog_timeout=_pick(
            "watchdogTimeout", "watchdog_timeout", default=DEFAULT_WATCHDOG_TIMEOUT
        ),
        status_log_interval=_pick(
            "statusLogInterval", "status_log_interval", default=DEFAULT_STATUS_LOG_INTERVAL
        ),
    )


def parse_config(
    payload: Any, *, environ: Mapping[str, str] | None = None
) -> AppConfig:
    """Validate a decoded configuration payload and return an :class:`AppConfig`."""

    if environ is None:
        environ = os.environ
    if not payload:
        raise ConfigError("Configuration is empty")
    if not isinstance(payload, Mapping):
        raise ConfigError("Configuration file must contain a JSON object")
    try:
        return AppConfig(
            prusa_link=_parse_prusa_link(payload, environ),
            timelapse=_parse_timelapse(payload),
            notification=_parse_notification(payload),
            monitor=_parse_monitor(payload),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(str(exc)) from exc


def load_config(
    config_path: Path | str, *, environ: Mapping[str, str] | None = None
) -> AppConfig:
    """Read ``config_path`` and return the validated configuration."""

    path = Path(config_path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to load config file '{path}': {exc}") from exc
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in config file: {exc}") from exc
    return parse_config(payload, environ=environ)


def resolve_config_path(
    argument: str | None, *, environ: Mapping[str, str] | None = None
) -> Path | None:
    """Return the config path from the CLI argument or the environment."""

    if environ is None:
        environ = os.environ
    candidate = argument or _optional_text(environ.get(CONFIG_ENV_VAR))
    if not candidate:
        return None
    return Path(candidate).expanduser().resolve()


__all__ = [
    "API_KEY_ENV_VAR",
    "AUTH_MODES",
    "AppConfig",
    "CONFIG_ENV_VAR",
    "ConfigError",
    "MonitorSettings",
    "NotificationSettings",
    "PASSWORD_ENV_VAR",
    "PrusaLinkSettings",
    "TimelapseSettings",
    "WebhookSettings",
    "load_config",
    "parse_config",
    "resolve_config_path",
]

"""Command line entry point for the timelapse service."""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Sequence

from .config import AppConfig, load_config, resolve_config_path
from .errors import ConfigError, TimelapseError
from .monitor import TimelapseMonitor
from .version import APP_VERSION

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the service CLI."""

    parser = argparse.ArgumentParser(
        prog="prusa-timelapse",
        description="Record timelapses of PrusaLink printers from an RTSP camera",
    )
    parser.add_argument(
        "config",
        nargs="?",
        help="Path to the JSON configuration file (defaults to $PRUSA_TIMELAPSE_CONFIG).",
    )
    parser.add_argument(
        "--http",
        action="store_true",
        help="Serve the status API while monitoring.",
    )
    parser.add_argument("--host", default="127.0.0.1", help="Bind address for --http.")
    parser.add_argument("--port", type=int, default=8080, help="Port for --http.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Logging verbosity.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


async def run_headless(config: AppConfig, *, stop_event: asyncio.Event | None = None) -> None:
    """Monitor until SIGINT/SIGTERM (or ``stop_event``) and then shut down."""

    loop = asyncio.get_running_loop()
    stop_event = stop_event or asyncio.Event()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - platform specific
            continue
        installed.append(sig)

    monitor = TimelapseMonitor(config)
    monitor.start()
    try:
        await stop_event.wait()
        logger.info("Shutdown requested")
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await monitor.aclose()


def _serve_http(config: AppConfig, host: str, port: int, log_level: str) -> None:
    import uvicorn

    from .app import create_app

    uvicorn.run(create_app(config), host=host, port=port, log_level=log_level.lower())


def run(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        path = resolve_config_path(args.config)
        if path is None:
            raise ConfigError(
                "No configuration file given; pass a path or set PRUSA_TIMELAPSE_CONFIG"
            )
        config = load_config(path)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    logger.info("Prusa timelapse %s using %s", APP_VERSION, path)
    if args.http:
        _serve_http(config, args.host, args.port, args.log_level)
        return 0
    try:
        asyncio.run(run_headless(config))
    except TimelapseError as exc:
        logger.error("Shutdown did not complete cleanly: %s", exc)
        return 1
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by the ``prusa-timelapse`` console script."""

    return run(argv)


__all__ = ["build_parser", "configure_logging", "main", "run", "run_headless"]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())

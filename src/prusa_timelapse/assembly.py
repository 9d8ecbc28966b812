"""Assemble captured frames into the finished timelapse video."""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .capture import FRAME_PATTERN, CaptureManager, format_number
from .config import TimelapseSettings
from .errors import AssemblyFailed, NoFramesAvailable

logger = logging.getLogger(__name__)

_DIAGNOSTIC_LIMIT = 4000

Runner = Callable[..., subprocess.CompletedProcess]


@dataclass(frozen=True, slots=True)
class AssemblyResult:
    """Outcome of a successful assembly."""

    output_path: Path
    frame_count: int


def build_assembly_command(
    settings: TimelapseSettings, output_path: Path, *, start_number: int = 1
) -> list[str]:
    """Return the ffmpeg command encoding the frame sequence to ``output_path``."""

    return [
        settings.ffmpeg_path,
        "-hide_banner",
        "-nostdin",
        "-y",
        "-framerate",
        format_number(settings.output_framerate),
        "-start_number",
        str(start_number),
        "-i",
        str(settings.temp_directory / FRAME_PATTERN),
        "-c:v",
        settings.video_codec,
        "-pix_fmt",
        "yuv420p",
        str(output_path),
    ]


def _tail(text: str | bytes | None) -> str:
    if text is None:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    text = text.strip()
    if len(text) > _DIAGNOSTIC_LIMIT:
        return text[-_DIAGNOSTIC_LIMIT:]
    return text


def assemble_video(
    settings: TimelapseSettings,
    output_path: Path | str,
    *,
    frames: CaptureManager | None = None,
    runner: Runner = subprocess.run,
) -> AssemblyResult:
    """Encode the current frame set into ``output_path``.

    Frames are left in place whatever the outcome; deleting them after a
    confirmed success is the caller's job so a failed run stays recoverable.
    """

    frames = frames or CaptureManager(settings)
    output_path = Path(output_path)
    frame_count = frames.get_captured_frame_count()
    if frame_count == 0:
        raise NoFramesAvailable("No frames captured to assemble video")

    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise AssemblyFailed(f"Failed to create output directory: {exc}") from exc

    command = build_assembly_command(
        settings, output_path, start_number=frames.get_lowest_frame_number()
    )
    logger.info("Assembling %d frames into %s", frame_count, output_path)
    logger.debug("Running: %s", " ".join(command))
    try:
        completed = runner(
            command,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=settings.assembly_timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise AssemblyFailed(
            f"ffmpeg assemble timed out after {settings.assembly_timeout}s",
            diagnostics=_tail(exc.stderr),
        ) from exc
    except OSError as exc:
        raise AssemblyFailed(f"ffmpeg assemble error: {exc}") from exc

    if completed.returncode != 0:
        diagnostics = _tail(completed.stderr) or _tail(completed.stdout)
        raise AssemblyFailed(
            f"ffmpeg assemble failed with code {completed.returncode}. stderr: {diagnostics}",
            diagnostics=diagnostics,
        )

    logger.info("Video assembled successfully: %s", output_path)
    return AssemblyResult(output_path=output_path, frame_count=frame_count)


__all__ = ["AssemblyResult", "assemble_video", "build_assembly_command"]

"""Background ffmpeg capture of camera frames into a numbered frame set."""
from __future__ import annotations

import logging
import re
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, Sequence

from .config import TimelapseSettings
from .errors import CaptureAlreadyInProgress, CaptureStartFailed, CaptureStopFailed

logger = logging.getLogger(__name__)

FRAME_PREFIX = "img_"
FRAME_SUFFIX = ".jpg"
FRAME_PATTERN = f"{FRAME_PREFIX}%05d{FRAME_SUFFIX}"
_FRAME_RE = re.compile(rf"^{FRAME_PREFIX}(\d+){re.escape(FRAME_SUFFIX)}$")
_STDERR_TAIL_LINES = 20

ProcessFactory = Callable[..., subprocess.Popen]


def format_number(value: float) -> str:
    """Render ``value`` without a trailing ``.0`` for ffmpeg arguments."""

    number = float(value)
    if number.is_integer():
        return str(int(number))
    return f"{number:g}"


def frame_number(name: str) -> int | None:
    """Return the sequence number encoded in a frame file name."""

    match = _FRAME_RE.match(name)
    if match is None:
        return None
    return int(match.group(1))


def build_capture_command(settings: TimelapseSettings, start_number: int) -> list[str]:
    """Return the ffmpeg command sampling the camera into the frame directory."""

    return [
        settings.ffmpeg_path,
        "-hide_banner",
        "-nostdin",
        "-loglevel",
        settings.ffmpeg_log_level,
        "-rtsp_transport",
        "tcp",
        "-i",
        settings.rtsp_url,
        "-vf",
        f"fps=1/{format_number(settings.capture_interval)}",
        "-start_number",
        str(start_number),
        "-y",
        str(settings.temp_directory / FRAME_PATTERN),
    ]


@dataclass(frozen=True, slots=True)
class CaptureStart:
    """Describes how a capture was launched."""

    start_number: int
    resumed: bool
    existing_frames: int


@dataclass(frozen=True, slots=True)
class FrameInfo:
    """Summary of the frames currently on disk."""

    count: int
    last_frame: str | None

    def to_dict(self) -> dict[str, object | None]:
        return {"count": self.count, "last_frame": self.last_frame}


class CaptureManager:
    """Own the single capture subprocess and the frame directory it writes to."""

    def __init__(
        self,
        settings: TimelapseSettings,
        *,
        process_factory: ProcessFactory = subprocess.Popen,
    ) -> None:
        self._settings = settings
        self._temp_dir = Path(settings.temp_directory)
        self._process_factory = process_factory
        self._process: subprocess.Popen | None = None
        self._stderr_thread: threading.Thread | None = None
        self._stderr_tail: Deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self._lock = threading.Lock()

    @property
    def temp_directory(self) -> Path:
        return self._temp_dir

    # ------------------------------ control -----------------------------
    def start_capture(self, resume_if_possible: bool = True) -> CaptureStart:
        """Launch ffmpeg, resuming numbering when frames already exist."""

        with self._lock:
            if self._live_process() is not None:
                raise CaptureAlreadyInProgress("Capture already in progress")
            try:
                self._temp_dir.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise CaptureStartFailed(f"Failed to create temp directory: {exc}") from exc

            existing = self.get_captured_frame_count()
            resumed = resume_if_possible and existing > 0
            if resumed:
                start_number = self.get_highest_frame_number() + 1
                logger.info(
                    "Resuming timelapse capture with %d existing frames (starting from frame %d)",
                    existing,
                    start_number,
                )
            else:
                try:
                    self.clear_frames()
                except OSError as exc:
                    raise CaptureStartFailed(f"Failed to clear stale frames: {exc}") from exc
                start_number = 1

            command = build_capture_command(self._settings, start_number)
            logger.debug("Launching capture: %s", " ".join(command))
            try:
                process = self._process_factory(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                )
            except (OSError, ValueError) as exc:
                raise CaptureStartFailed(f"Failed to launch ffmpeg: {exc}") from exc

            self._process = process
            self._stderr_tail.clear()
            self._start_stderr_drain(process)
            return CaptureStart(start_number=start_number, resumed=resumed, existing_frames=existing)

    def stop_capture(self) -> None:
        """Terminate the capture, escalating to a kill after the grace window."""

        with self._lock:
            process = self._process
            if process is None:
                return
            error: str | None = None
            try:
                if process.poll() is None:
                    process.terminate()
                    try:
                        process.wait(timeout=self._settings.stop_timeout)
                    except subprocess.TimeoutExpired:
                        logger.warning(
                            "ffmpeg did not exit within %.1fs; sending SIGKILL",
                            self._settings.stop_timeout,
                        )
                        process.kill()
                        try:
                            process.wait(timeout=self._settings.stop_timeout)
                        except subprocess.TimeoutExpired:
                            error = "ffmpeg capture process did not exit after SIGKILL"
            except OSError as exc:
                error = f"Failed to signal ffmpeg capture process: {exc}"
            finally:
                self._release(process)
            if error is not None:
                raise CaptureStopFailed(error)

    def close(self) -> None:
        self.stop_capture()

    def is_currently_capturing(self) -> bool:
        with self._lock:
            return self._live_process() is not None

    # ------------------------------ frames ------------------------------
    def list_frames(self) -> list[Path]:
        """Return the frame files ordered by sequence number."""

        try:
            entries = list(self._temp_dir.iterdir())
        except OSError:
            return []
        numbered: list[tuple[int, Path]] = []
        for entry in entries:
            number = frame_number(entry.name)
            if number is not None:
                numbered.append((number, entry))
        numbered.sort()
        return [path for _, path in numbered]

    def frame_numbers(self) -> list[int]:
        numbers = [frame_number(path.name) for path in self.list_frames()]
        return [number for number in numbers if number is not None]

    def get_captured_frame_count(self) -> int:
        return len(self.list_frames())

    def get_highest_frame_number(self) -> int:
        numbers = self.frame_numbers()
        return numbers[-1] if numbers else 0

    def get_lowest_frame_number(self) -> int:
        numbers = self.frame_numbers()
        return numbers[0] if numbers else 0

    def can_resume(self) -> bool:
        return self.get_captured_frame_count() > 0

    def get_frame_info(self) -> FrameInfo:
        frames = self.list_frames()
        if not frames:
            return FrameInfo(count=0, last_frame=None)
        return FrameInfo(count=len(frames), last_frame=frames[-1].name)

    def clear_frames(self) -> int:
        """Delete every frame file and return how many were removed."""

        cleared = 0
        for path in self.list_frames():
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            cleared += 1
        if cleared:
            logger.info("Cleared %d frames from temp directory", cleared)
        return cleared

    # ------------------------------ helpers -----------------------------
    def _live_process(self) -> subprocess.Popen | None:
        process = self._process
        if process is None:
            return None
        returncode = process.poll()
        if returncode is None:
            return process
        tail = self.stderr_tail()
        if returncode != 0:
            logger.error(
                "ffmpeg capture exited with code %s%s",
                returncode,
                f": {tail[-1]}" if tail else "",
            )
        else:
            logger.warning("ffmpeg capture exited unexpectedly")
        self._release(process)
        return None

    def _release(self, process: subprocess.Popen) -> None:
        thread = self._stderr_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        self._stderr_thread = None
        if process.stderr is not None:
            try:
                process.stderr.close()
            except (OSError, ValueError) as exc:  # pragma: no cover - best effort cleanup
                logger.debug("Failed to close ffmpeg stderr pipe: %s", exc)
        self._process = None

    def _start_stderr_drain(self, process: subprocess.Popen) -> None:
        stream = process.stderr
        if stream is None:
            return

        def _drain() -> None:
            try:
                for line in stream:
                    text = line.rstrip()
                    if text:
                        self._stderr_tail.append(text)
                        logger.debug("ffmpeg: %s", text)
            except (OSError, ValueError) as exc:
                logger.debug("Stopped reading ffmpeg stderr: %s", exc)

        thread = threading.Thread(target=_drain, name="ffmpeg-capture-stderr", daemon=True)
        self._stderr_thread = thread
        thread.start()

    def stderr_tail(self) -> Sequence[str]:
        return list(self._stderr_tail)


__all__ = [
    "CaptureManager",
    "CaptureStart",
    "FRAME_PATTERN",
    "FrameInfo",
    "build_capture_command",
    "format_number",
    "frame_number",
]

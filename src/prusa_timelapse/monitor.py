"""Poll loop turning printer state changes into timelapse lifecycles."""
from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Any, Callable

from .assembly import AssemblyResult, assemble_video
from .capture import CaptureManager, FrameInfo
from .config import AppConfig
from .errors import (
    AssemblyFailed,
    CaptureAlreadyInProgress,
    CaptureStartFailed,
    CaptureStopFailed,
    MonitorError,
    NoFramesAvailable,
    StatusFetchFailed,
)
from .event_log import EventLog
from .notifications import CompletedTimelapse, Notifier
from .prusalink import PrusaLinkClient
from .status import PrinterState, StatusSnapshot
from .transitions import SessionFlags, Transition, classify_transition
from .watchdog import Watchdog

logger = logging.getLogger(__name__)

Assembler = Callable[..., AssemblyResult]

_LABEL_EXTENSIONS = (".bgcode", ".gcode", ".gco")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_REPEATED_UNDERSCORES = re.compile(r"_{2,}")
_MAX_LABEL_LENGTH = 80


def safe_label(label: str | None) -> str | None:
    """Return ``label`` reduced to characters safe in a file name."""

    if not label:
        return None
    text = label.strip()
    lowered = text.lower()
    for extension in _LABEL_EXTENSIONS:
        if lowered.endswith(extension):
            text = text[: -len(extension)]
            break
    text = _UNSAFE_CHARS.sub("_", text)
    text = _REPEATED_UNDERSCORES.sub("_", text)
    text = text[:_MAX_LABEL_LENGTH].strip("._-")
    return text or None


def generate_output_path(
    directory: Path,
    label: str | None,
    job_id: int | None,
    now: datetime,
) -> Path:
    """Pick a non-existing ``.mp4`` path for a finished job."""

    stamp = now.strftime("%Y-%m-%d_%H-%M-%S")
    base = safe_label(label)
    if base:
        stem = f"{base}_{stamp}"
    else:
        stem = f"timelapse_{stamp}"
        if job_id is not None:
            stem = f"{stem}_job{job_id}"
    directory = Path(directory)
    candidate = directory / f"{stem}.mp4"
    counter = 1
    while candidate.exists():
        candidate = directory / f"{stem}_{counter}.mp4"
        counter += 1
    return candidate


@dataclass(slots=True)
class MonitorSession:
    """Mutable lifecycle state owned by the poll loop."""

    last_observed_state: PrinterState | None = None
    is_first_poll: bool = True
    is_capturing: bool = False
    watchdog_deadline: float | None = None
    current_job_id: int | None = None
    current_job_label: str | None = None
    capture_interrupted: bool = False
    last_completed_job_id: int | None = None
    last_poll_at: float | None = None
    last_error: str | None = None
    last_output_path: str | None = None
    completed_timelapses: int = 0


@dataclass(frozen=True, slots=True)
class MonitorStatus:
    """Read-only view of the monitor for logging and the HTTP surface."""

    running: bool
    printer_state: str | None
    job_id: int | None
    job_label: str | None
    capturing: bool
    capture_interrupted: bool
    frames: FrameInfo
    watchdog_deadline: float | None
    watchdog_remaining: float | None
    last_poll_at: float | None
    last_error: str | None
    last_output_path: str | None
    completed_timelapses: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "printer_state": self.printer_state,
            "job_id": self.job_id,
            "job_label": self.job_label,
            "capturing": self.capturing,
            "capture_interrupted": self.capture_interrupted,
            "frames": self.frames.to_dict(),
            "watchdog": {
                "deadline": self.watchdog_deadline,
                "remaining": self.watchdog_remaining,
            },
            "last_poll_at": self.last_poll_at,
            "last_error": self.last_error,
            "last_output_path": self.last_output_path,
            "completed_timelapses": self.completed_timelapses,
        }


class TimelapseMonitor:
    """Background task that polls PrusaLink and drives capture and assembly.

    Each tick refreshes the capture handle, fetches one snapshot, classifies
    it against the previous observation and dispatches the resulting
    transition. The watchdog is evaluated after every tick, including ticks
    whose status fetch failed. Blocking work runs in the default executor and
    is awaited, so ticks never overlap.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        client: PrusaLinkClient | None = None,
        capture: CaptureManager | None = None,
        notifier: Notifier | None = None,
        assembler: Assembler = assemble_video,
        watchdog: Watchdog | None = None,
        event_log: EventLog | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._owns_client = client is None
        self._client = client or PrusaLinkClient(config.prusa_link)
        self._capture = capture or CaptureManager(config.timelapse)
        self._notifier = notifier or Notifier(config.notification)
        self._assembler = assembler
        self._clock = clock
        self._watchdog = watchdog or Watchdog(clock)
        self._event_log = event_log or EventLog(clock=clock)
        self._session = MonitorSession()
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._last_status_log: float | None = None
        self._anomalous_job_id: int | None = None
        self._pending_start: tuple[int | None, bool] | None = None

    @property
    def session(self) -> MonitorSession:
        return self._session

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    @property
    def capture(self) -> CaptureManager:
        return self._capture

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------ lifecycle ---------------------------
    def start(self) -> None:
        """Start the background polling task."""

        if self._task is not None:
            raise MonitorError("Monitor is already running")
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._task = loop.create_task(self._run(), name="timelapse-monitor")
        logger.info(
            "Monitoring PrusaLink at %s every %.0fs",
            self._config.prusa_link.base_url,
            self._config.poll_interval,
        )
        self._event_log.record(
            "monitor",
            "monitor_started",
            "Timelapse monitor started.",
            metadata={
                "poll_interval": self._config.poll_interval,
                "watchdog_timeout": self._config.monitor.watchdog_timeout,
            },
        )

    async def aclose(self) -> None:
        """Stop polling, then release the capture process if one is running."""

        task = self._task
        if task is not None:
            assert self._stop_event is not None
            self._stop_event.set()
            try:
                await task
            finally:
                self._task = None
                self._stop_event = None
        try:
            await self._shutdown_capture()
        finally:
            if self._owns_client:
                await self._client.aclose()
            self._event_log.record("monitor", "monitor_stopped", "Timelapse monitor stopped.")

    async def _run(self) -> None:
        assert self._stop_event is not None
        interval = self._config.poll_interval
        while not self._stop_event.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    async def _shutdown_capture(self) -> None:
        session = self._session
        if not (session.is_capturing or self._capture.is_currently_capturing()):
            return
        logger.info("Stopping capture for shutdown; frames are kept for resume")
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._capture.stop_capture)
        finally:
            session.is_capturing = False
            self._watchdog.clear()
            self._sync_deadline()

    # ------------------------------ tick --------------------------------
    async def poll_once(self) -> Transition:
        """Run a single poll tick and return the transition it handled."""

        transition = Transition.NONE
        try:
            transition = await self._observe()
        except Exception:
            logger.exception("Unexpected error while handling printer status")
        try:
            await self._check_watchdog()
        except Exception:
            logger.exception("Unexpected error while evaluating the watchdog")
        await self._maybe_log_status()
        return transition

    async def _observe(self) -> Transition:
        session = self._session
        self._refresh_capture_state()
        try:
            snapshot = await self._client.fetch_status()
        except StatusFetchFailed as exc:
            session.last_error = str(exc)
            logger.warning("Failed to fetch printer status: %s", exc)
            return Transition.NONE
        session.last_error = None
        session.last_poll_at = self._clock()

        first_poll = session.is_first_poll
        flags = SessionFlags(
            first_poll=first_poll,
            capturing=session.is_capturing,
            capture_interrupted=session.capture_interrupted,
        )
        transition = classify_transition(session.last_observed_state, snapshot, flags)
        if transition is not Transition.NONE:
            logger.debug(
                "Printer %s -> %s (job %s): %s",
                session.last_observed_state.value if session.last_observed_state else None,
                snapshot.state.value,
                snapshot.job_id,
                transition.value,
            )

        settled = True
        try:
            if transition is Transition.STARTED:
                settled = await self._handle_started(snapshot, first_poll=first_poll)
            elif transition is Transition.STOPPED:
                await self._complete_job(f"printer reported {snapshot.state.value}")
            elif transition is Transition.HEARTBEAT:
                self._handle_heartbeat(snapshot)
            elif first_poll and not snapshot.active:
                await self._discard_stale_frames()
        finally:
            # A failed start leaves the previous state and the first-poll flag so the
            # next tick retries the same decision.
            if settled:
                session.last_observed_state = snapshot.state
                session.is_first_poll = False
            if not snapshot.active:
                self._pending_start = None
        return transition

    def _refresh_capture_state(self) -> None:
        session = self._session
        if not session.is_capturing or self._capture.is_currently_capturing():
            return
        session.is_capturing = False
        session.capture_interrupted = True
        logger.warning(
            "Capture process for job %s stopped unexpectedly; frames are kept",
            session.current_job_id,
        )
        self._event_log.record(
            "capture",
            "capture_interrupted",
            "Capture process exited while the job was still open.",
            job_id=session.current_job_id,
            metadata={"stderr": list(self._capture.stderr_tail())[-1:] or None},
        )

    # ------------------------------ transitions -------------------------
    async def _handle_started(self, snapshot: StatusSnapshot, *, first_poll: bool) -> bool:
        session = self._session
        if self._capture.is_currently_capturing():
            logger.info("Capture already running; ignoring start for job %s", snapshot.job_id)
            session.is_capturing = True
            return True

        if (
            session.capture_interrupted
            and session.current_job_id is not None
            and snapshot.job_id != session.current_job_id
        ):
            logger.warning(
                "Job %s replaced interrupted job %s; finishing the earlier timelapse first",
                snapshot.job_id,
                session.current_job_id,
            )
            await self._complete_job("job changed while capture was interrupted")

        pending = self._pending_start
        if pending is not None and pending[0] == snapshot.job_id:
            # A retried start keeps the decision made when the job first appeared.
            resume = pending[1]
        else:
            resume = first_poll or (
                snapshot.job_id is not None
                and snapshot.job_id in (session.current_job_id, session.last_completed_job_id)
            )
        self._pending_start = None
        session.current_job_id = snapshot.job_id
        session.current_job_label = snapshot.job_label
        if snapshot.job_label:
            logger.info("Print started: job %s (%s)", snapshot.job_id, snapshot.job_label)
        else:
            logger.info("Print started: job %s", snapshot.job_id)

        loop = asyncio.get_running_loop()
        try:
            started = await loop.run_in_executor(None, self._capture.start_capture, resume)
        except CaptureAlreadyInProgress:
            logger.info("Capture already running; ignoring start for job %s", snapshot.job_id)
            session.is_capturing = True
            return True
        except CaptureStartFailed as exc:
            logger.error("Failed to start timelapse capture: %s", exc)
            self._pending_start = (snapshot.job_id, resume)
            self._event_log.record(
                "capture",
                "capture_start_failed",
                str(exc),
                job_id=snapshot.job_id,
            )
            return False

        session.is_capturing = True
        session.capture_interrupted = False
        self._anomalous_job_id = None
        self._watchdog.arm(self._config.monitor.watchdog_timeout)
        self._sync_deadline()
        self._event_log.record(
            "capture",
            "capture_resumed" if started.resumed else "capture_started",
            (
                f"Capture resumed at frame {started.start_number}."
                if started.resumed
                else "Capture started."
            ),
            job_id=snapshot.job_id,
            metadata={
                "label": snapshot.job_label,
                "start_number": started.start_number,
                "existing_frames": started.existing_frames or None,
            },
        )
        return True

    def _handle_heartbeat(self, snapshot: StatusSnapshot) -> None:
        session = self._session
        if (
            snapshot.job_id is not None
            and session.current_job_id is not None
            and snapshot.job_id != session.current_job_id
        ):
            if self._anomalous_job_id != snapshot.job_id:
                self._anomalous_job_id = snapshot.job_id
                logger.warning(
                    "Printer reports job %s while capturing job %s; keeping the original job",
                    snapshot.job_id,
                    session.current_job_id,
                )
                self._event_log.record(
                    "monitor",
                    "job_mismatch",
                    "Printer reported a different job while capturing.",
                    job_id=session.current_job_id,
                    metadata={"reported_job_id": snapshot.job_id},
                )
        elif session.current_job_label is None and snapshot.job_label:
            session.current_job_label = snapshot.job_label
        self._watchdog.reset(
            self._config.monitor.watchdog_timeout, capturing=session.is_capturing
        )
        self._sync_deadline()

    async def _discard_stale_frames(self) -> None:
        loop = asyncio.get_running_loop()
        count = await loop.run_in_executor(None, self._capture.get_captured_frame_count)
        if count == 0:
            return
        logger.info("Printer is not printing; discarding %d frames from an earlier run", count)
        await loop.run_in_executor(None, self._capture.clear_frames)
        self._event_log.record(
            "capture",
            "stale_frames_cleared",
            "Discarded frames left by an earlier run.",
            metadata={"frames": count},
        )

    async def _check_watchdog(self) -> bool:
        session = self._session
        capturing = session.is_capturing or session.capture_interrupted
        if not self._watchdog.check(capturing=capturing):
            return False
        logger.warning(
            "Watchdog expired after %.0fs without a heartbeat; forcing completion of job %s",
            self._config.monitor.watchdog_timeout,
            session.current_job_id,
        )
        self._event_log.record(
            "monitor",
            "watchdog_expired",
            "Watchdog forced the timelapse to complete.",
            job_id=session.current_job_id,
        )
        await self._complete_job("watchdog expired")
        return True

    async def _complete_job(self, reason: str) -> AssemblyResult | None:
        """Stop the capture, assemble, clean up and notify for the open job."""

        session = self._session
        job_id = session.current_job_id
        label = session.current_job_label
        logger.info("Print finished (%s): job %s", reason, job_id)
        self._watchdog.clear()
        self._sync_deadline()

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._capture.stop_capture)
        except CaptureStopFailed as exc:
            logger.error("Failed to stop capture; frames are kept for recovery: %s", exc)
            self._event_log.record("capture", "capture_stop_failed", str(exc), job_id=job_id)
            return None
        finally:
            session.is_capturing = False
            session.capture_interrupted = False
            session.current_job_id = None
            session.current_job_label = None
            session.last_completed_job_id = job_id
            self._anomalous_job_id = None

        output_path = generate_output_path(
            self._config.timelapse.output_directory,
            label,
            job_id,
            datetime.fromtimestamp(self._clock()),
        )
        try:
            result = await loop.run_in_executor(
                None,
                partial(
                    self._assembler,
                    self._config.timelapse,
                    output_path,
                    frames=self._capture,
                ),
            )
        except NoFramesAvailable as exc:
            logger.error("Cannot assemble timelapse for job %s: %s", job_id, exc)
            self._event_log.record("assembly", "assembly_skipped", str(exc), job_id=job_id)
            return None
        except AssemblyFailed as exc:
            logger.error("Failed to assemble timelapse for job %s: %s", job_id, exc)
            if exc.diagnostics:
                logger.debug("ffmpeg diagnostics:\n%s", exc.diagnostics)
            self._event_log.record(
                "assembly",
                "assembly_failed",
                "Assembly failed; frames are kept for manual recovery.",
                job_id=job_id,
                metadata={"error": str(exc)},
            )
            return None

        try:
            await loop.run_in_executor(None, self._capture.clear_frames)
        except OSError as exc:
            logger.warning("Failed to remove frames after assembly: %s", exc)
        session.completed_timelapses += 1
        session.last_output_path = str(result.output_path)
        self._event_log.record(
            "assembly",
            "timelapse_completed",
            f"Timelapse saved to {result.output_path}.",
            job_id=job_id,
            metadata={"frames": result.frame_count, "label": label},
        )

        if self._notifier.enabled:
            delivered = await self._notifier.notify(
                CompletedTimelapse(
                    output_path=result.output_path,
                    job_id=job_id,
                    job_label=label,
                    frame_count=result.frame_count,
                )
            )
            if not delivered:
                self._event_log.record(
                    "notification",
                    "notification_failed",
                    "One or more notification channels failed.",
                    job_id=job_id,
                )
        return result

    # ------------------------------ reporting ---------------------------
    def _sync_deadline(self) -> None:
        self._session.watchdog_deadline = self._watchdog.deadline

    async def _maybe_log_status(self) -> None:
        now = self._clock()
        last = self._last_status_log
        if last is not None and now - last < self._config.monitor.status_log_interval:
            return
        self._last_status_log = now
        session = self._session
        frames = 0
        if session.is_capturing:
            loop = asyncio.get_running_loop()
            frames = await loop.run_in_executor(None, self._capture.get_captured_frame_count)
        logger.info(
            "Monitoring active | Job ID: %s | Capturing: %s | Frames: %d",
            session.current_job_id if session.current_job_id is not None else "none",
            "yes" if session.is_capturing else "no",
            frames,
        )

    def status(self) -> MonitorStatus:
        session = self._session
        state = session.last_observed_state
        return MonitorStatus(
            running=self.running,
            printer_state=state.value if state is not None else None,
            job_id=session.current_job_id,
            job_label=session.current_job_label,
            capturing=session.is_capturing,
            capture_interrupted=session.capture_interrupted,
            frames=self._capture.get_frame_info(),
            watchdog_deadline=session.watchdog_deadline,
            watchdog_remaining=self._watchdog.remaining(),
            last_poll_at=session.last_poll_at,
            last_error=session.last_error,
            last_output_path=session.last_output_path,
            completed_timelapses=session.completed_timelapses,
        )


__all__ = [
    "MonitorSession",
    "MonitorStatus",
    "TimelapseMonitor",
    "generate_output_path",
    "safe_label",
]

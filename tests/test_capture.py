"""Tests for the ffmpeg capture process manager."""

from __future__ import annotations

import logging
import time
import subprocess
import sys
from dataclasses import replace
from pathlib import Path

import pytest

from prusa_timelapse.capture import (
    CaptureManager,
    build_capture_command,
    format_number,
    frame_number,
)
from prusa_timelapse.errors import (
    CaptureAlreadyInProgress,
    CaptureStartFailed,
    CaptureStopFailed,
)


class _FakeProcess:
    def __init__(self, command, **kwargs) -> None:
        self.command = command
        self.kwargs = kwargs
        self.returncode: int | None = None
        self.stderr = None
        self.terminated = False
        self.killed = False
        self.ignore_terminate = False
        self.ignore_kill = False

    def poll(self) -> int | None:
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_terminate:
            self.returncode = -15

    def kill(self) -> None:
        self.killed = True
        if not self.ignore_kill:
            self.returncode = -9

    def wait(self, timeout: float | None = None) -> int:
        if self.returncode is None:
            raise subprocess.TimeoutExpired(self.command, timeout)
        return self.returncode


class _Factory:
    def __init__(self, on_spawn=None) -> None:
        self.processes: list[_FakeProcess] = []
        self._on_spawn = on_spawn

    def __call__(self, command, **kwargs) -> _FakeProcess:
        if self._on_spawn is not None:
            self._on_spawn(command)
        process = _FakeProcess(command, **kwargs)
        self.processes.append(process)
        return process


def _write_frames(directory: Path, *numbers: int) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    for number in numbers:
        (directory / f"img_{number:05d}.jpg").write_bytes(b"\xff\xd8")


def _start_number(command: list[str]) -> int:
    return int(command[command.index("-start_number") + 1])


def test_fresh_start_clears_frames_before_launch(app_config) -> None:
    settings = app_config.timelapse
    _write_frames(settings.temp_directory, 1, 2, 3)
    seen: list[int] = []
    manager = CaptureManager(
        settings,
        process_factory=_Factory(lambda command: seen.append(len(list(settings.temp_directory.iterdir())))),
    )

    start = manager.start_capture(resume_if_possible=False)

    assert seen == [0]
    assert start.start_number == 1
    assert start.resumed is False
    assert manager.is_currently_capturing() is True


def test_resume_continues_numbering_without_deleting(app_config) -> None:
    settings = app_config.timelapse
    _write_frames(settings.temp_directory, 1, 2, 3)
    existing_at_spawn: list[int] = []
    factory = _Factory(lambda command: existing_at_spawn.append(manager.get_captured_frame_count()))
    manager = CaptureManager(settings, process_factory=factory)
    highest_before = manager.get_highest_frame_number()

    start = manager.start_capture(resume_if_possible=True)

    assert start.resumed is True
    assert start.start_number == 4
    assert start.start_number > highest_before
    assert start.existing_frames == 3
    assert existing_at_spawn == [3]
    assert _start_number(factory.processes[0].command) == 4


def test_resume_without_frames_starts_at_one(app_config) -> None:
    factory = _Factory()
    manager = CaptureManager(app_config.timelapse, process_factory=factory)

    start = manager.start_capture(resume_if_possible=True)

    assert start.start_number == 1
    assert start.resumed is False
    assert app_config.timelapse.temp_directory.is_dir()


def test_second_start_is_rejected_without_spawning(app_config) -> None:
    factory = _Factory()
    manager = CaptureManager(app_config.timelapse, process_factory=factory)
    manager.start_capture()

    with pytest.raises(CaptureAlreadyInProgress):
        manager.start_capture()

    assert len(factory.processes) == 1


def test_spawn_failure_leaves_manager_idle(app_config) -> None:
    def factory(command, **kwargs):
        raise FileNotFoundError("ffmpeg")

    manager = CaptureManager(app_config.timelapse, process_factory=factory)

    with pytest.raises(CaptureStartFailed):
        manager.start_capture()

    assert manager.is_currently_capturing() is False


def test_stop_terminates_gracefully(app_config) -> None:
    factory = _Factory()
    manager = CaptureManager(app_config.timelapse, process_factory=factory)
    manager.start_capture()

    manager.stop_capture()

    process = factory.processes[0]
    assert process.terminated is True
    assert process.killed is False
    assert manager.is_currently_capturing() is False


def test_stop_escalates_to_kill(app_config) -> None:
    factory = _Factory()
    manager = CaptureManager(app_config.timelapse, process_factory=factory)
    manager.start_capture()
    factory.processes[0].ignore_terminate = True

    manager.stop_capture()

    assert factory.processes[0].killed is True
    assert manager.is_currently_capturing() is False


def test_unreapable_process_raises_after_release(app_config) -> None:
    factory = _Factory()
    manager = CaptureManager(app_config.timelapse, process_factory=factory)
    manager.start_capture()
    process = factory.processes[0]
    process.ignore_terminate = True
    process.ignore_kill = True

    with pytest.raises(CaptureStopFailed):
        manager.stop_capture()

    process.returncode = -9
    assert manager.is_currently_capturing() is False
    manager.start_capture()
    assert len(factory.processes) == 2


def test_stop_is_noop_when_idle(app_config) -> None:
    manager = CaptureManager(app_config.timelapse, process_factory=_Factory())

    manager.stop_capture()

    assert manager.is_currently_capturing() is False


def test_crashed_process_is_detected(app_config, caplog: pytest.LogCaptureFixture) -> None:
    factory = _Factory()
    manager = CaptureManager(app_config.timelapse, process_factory=factory)
    manager.start_capture()
    factory.processes[0].returncode = 1

    with caplog.at_level(logging.ERROR, logger="prusa_timelapse.capture"):
        assert manager.is_currently_capturing() is False

    assert "exited with code 1" in caplog.text
    manager.start_capture()
    assert len(factory.processes) == 2


def test_frame_enumeration_ignores_other_files(app_config) -> None:
    settings = app_config.timelapse
    _write_frames(settings.temp_directory, 2, 10, 7)
    (settings.temp_directory / "notes.txt").write_text("x")
    (settings.temp_directory / "img_abc.jpg").write_text("x")
    (settings.temp_directory / "img_00003.png").write_text("x")
    manager = CaptureManager(settings, process_factory=_Factory())

    assert manager.get_captured_frame_count() == 3
    assert manager.get_highest_frame_number() == 10
    assert manager.get_lowest_frame_number() == 2
    assert manager.can_resume() is True
    assert [path.name for path in manager.list_frames()] == [
        "img_00002.jpg",
        "img_00007.jpg",
        "img_00010.jpg",
    ]
    assert manager.get_frame_info().to_dict() == {"count": 3, "last_frame": "img_00010.jpg"}

    assert manager.clear_frames() == 3
    assert manager.get_captured_frame_count() == 0
    assert (settings.temp_directory / "notes.txt").exists()


def test_missing_directory_is_empty(app_config) -> None:
    manager = CaptureManager(app_config.timelapse, process_factory=_Factory())

    assert manager.get_captured_frame_count() == 0
    assert manager.get_highest_frame_number() == 0
    assert manager.can_resume() is False
    assert manager.clear_frames() == 0
    assert manager.get_frame_info().to_dict() == {"count": 0, "last_frame": None}


def test_build_capture_command(app_config) -> None:
    settings = replace(app_config.timelapse, capture_interval=2.5)

    command = build_capture_command(settings, 12)

    assert command[0] == "ffmpeg"
    assert command[command.index("-i") + 1] == "rtsp://camera.local/stream"
    assert command[command.index("-rtsp_transport") + 1] == "tcp"
    assert command[command.index("-vf") + 1] == "fps=1/2.5"
    assert _start_number(command) == 12
    assert command[-1] == str(settings.temp_directory / "img_%05d.jpg")


def test_number_helpers() -> None:
    assert format_number(10.0) == "10"
    assert format_number(0.5) == "0.5"
    assert frame_number("img_00042.jpg") == 42
    assert frame_number("img_42.jpeg") is None


def test_real_process_is_terminated(app_config) -> None:
    def factory(command, **kwargs):
        script = "import sys, time; sys.stderr.write('ready\\n'); sys.stderr.flush(); time.sleep(30)"
        return subprocess.Popen([sys.executable, "-c", script], **kwargs)

    settings = replace(app_config.timelapse, stop_timeout=2.0)
    manager = CaptureManager(settings, process_factory=factory)
    manager.start_capture()
    assert manager.is_currently_capturing() is True

    manager.stop_capture()

    assert manager.is_currently_capturing() is False


def test_undecodable_stderr_keeps_pipe_drained(app_config, tmp_path: Path) -> None:
    finished = tmp_path / "writer-finished"
    script = (
        "import sys, time\n"
        "sys.stderr.buffer.write(b'bad \\xff\\xfe byte\\n')\n"
        "sys.stderr.flush()\n"
        "for index in range(10000):\n"
        "    sys.stderr.write('frame= %d ' % index + 'x' * 60 + '\\n')\n"
        "sys.stderr.write('last line\\n')\n"
        "sys.stderr.flush()\n"
        "open(sys.argv[1], 'w').close()\n"
        "time.sleep(30)\n"
    )

    def factory(command, **kwargs):
        return subprocess.Popen([sys.executable, "-c", script, str(finished)], **kwargs)

    settings = replace(app_config.timelapse, stop_timeout=2.0)
    manager = CaptureManager(settings, process_factory=factory)
    manager.start_capture()
    try:
        deadline = time.monotonic() + 10.0
        while not finished.exists() and time.monotonic() < deadline:
            time.sleep(0.05)

        assert finished.exists()
        assert manager.is_currently_capturing() is True
        deadline = time.monotonic() + 5.0
        while "last line" not in manager.stderr_tail() and time.monotonic() < deadline:
            time.sleep(0.05)
        assert manager.stderr_tail()[-1] == "last line"
    finally:
        manager.stop_capture()

    assert manager.is_currently_capturing() is False

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from prusa_timelapse.assembly import assemble_video, build_assembly_command
from prusa_timelapse.capture import CaptureManager
from prusa_timelapse.errors import AssemblyFailed, NoFramesAvailable


class _Runner:
    def __init__(self, returncode: int = 0, stderr: str = "", exc: BaseException | None = None) -> None:
        self.returncode = returncode
        self.stderr = stderr
        self.exc = exc
        self.calls: list[tuple[list[str], dict]] = []

    def __call__(self, command, **kwargs):
        self.calls.append((command, kwargs))
        if self.exc is not None:
            raise self.exc
        if self.returncode == 0:
            Path(command[-1]).write_bytes(b"mp4")
        return subprocess.CompletedProcess(command, self.returncode, stdout="", stderr=self.stderr)


def _frames(directory: Path, *numbers: int) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    for number in numbers:
        (directory / f"img_{number:05d}.jpg").write_bytes(b"\xff\xd8")


def test_assembly_requires_frames(app_config, tmp_path: Path) -> None:
    runner = _Runner()

    with pytest.raises(NoFramesAvailable):
        assemble_video(app_config.timelapse, tmp_path / "videos" / "out.mp4", runner=runner)

    assert runner.calls == []


def test_assembly_creates_output_and_keeps_frames(app_config) -> None:
    settings = app_config.timelapse
    _frames(settings.temp_directory, 1, 2, 3)
    output = settings.output_directory / "nested" / "print.mp4"
    runner = _Runner()

    result = assemble_video(settings, output, runner=runner)

    assert result.output_path == output
    assert result.frame_count == 3
    assert output.exists()
    assert CaptureManager(settings).get_captured_frame_count() == 3
    command, kwargs = runner.calls[0]
    assert command[command.index("-framerate") + 1] == "30"
    assert command[command.index("-start_number") + 1] == "1"
    assert kwargs["check"] is False
    assert kwargs["stdin"] is subprocess.DEVNULL


def test_assembly_starts_at_lowest_frame(app_config) -> None:
    settings = app_config.timelapse
    _frames(settings.temp_directory, 5, 6)
    runner = _Runner()

    assemble_video(settings, settings.output_directory / "out.mp4", runner=runner)

    command, _ = runner.calls[0]
    assert command[command.index("-start_number") + 1] == "5"


def test_non_zero_exit_reports_diagnostics(app_config) -> None:
    settings = app_config.timelapse
    _frames(settings.temp_directory, 1)
    runner = _Runner(returncode=1, stderr="Invalid data found when processing input")

    with pytest.raises(AssemblyFailed) as excinfo:
        assemble_video(settings, settings.output_directory / "out.mp4", runner=runner)

    assert "code 1" in str(excinfo.value)
    assert "Invalid data" in excinfo.value.diagnostics
    assert CaptureManager(settings).get_captured_frame_count() == 1


def test_timeout_and_spawn_errors_are_wrapped(app_config) -> None:
    settings = app_config.timelapse
    _frames(settings.temp_directory, 1)

    with pytest.raises(AssemblyFailed, match="timed out"):
        assemble_video(
            settings,
            settings.output_directory / "a.mp4",
            runner=_Runner(exc=subprocess.TimeoutExpired(["ffmpeg"], 5, stderr=b"slow")),
        )
    with pytest.raises(AssemblyFailed, match="ffmpeg assemble error"):
        assemble_video(
            settings,
            settings.output_directory / "b.mp4",
            runner=_Runner(exc=FileNotFoundError("ffmpeg")),
        )


def test_build_assembly_command(app_config, tmp_path: Path) -> None:
    command = build_assembly_command(app_config.timelapse, tmp_path / "out.mp4", start_number=3)

    assert command[:4] == ["ffmpeg", "-hide_banner", "-nostdin", "-y"]
    assert command[command.index("-c:v") + 1] == "libx264"
    assert command[command.index("-pix_fmt") + 1] == "yuv420p"
    assert command[command.index("-i") + 1].endswith("img_%05d.jpg")
    assert command[-1] == str(tmp_path / "out.mp4")

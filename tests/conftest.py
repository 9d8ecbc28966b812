from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from prusa_timelapse.config import AppConfig, parse_config


@pytest.fixture
def config_payload(tmp_path: Path) -> dict[str, Any]:
    return {
        "prusaLink": {
            "host": "192.168.1.50",
            "username": "maker",
            "password": "secret",
        },
        "timelapse": {
            "rtspUrl": "rtsp://camera.local/stream",
            "outputDirectory": str(tmp_path / "videos"),
            "tempDirectory": str(tmp_path / "frames"),
        },
        "notification": {"command": ""},
        "pollInterval": 10,
    }


@pytest.fixture
def app_config(config_payload: dict[str, Any]) -> AppConfig:
    return parse_config(config_payload, environ={})

"""Announce finished timelapses via a shell command and an optional webhook."""
from __future__ import annotations

import asyncio
import logging
import os
import socket
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import httpx

from .config import NotificationSettings
from .errors import NotificationFailed

logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]


@dataclass(frozen=True, slots=True)
class CompletedTimelapse:
    """Details of a finished artifact handed to the notification step."""

    output_path: Path
    job_id: int | None = None
    job_label: str | None = None
    frame_count: int = 0

    @property
    def output_dir(self) -> Path:
        return self.output_path.parent

    def to_payload(self) -> dict[str, Any]:
        return {
            "event": "timelapse_completed",
            "output_path": str(self.output_path),
            "output_dir": str(self.output_dir),
            "job_id": self.job_id,
            "job_label": self.job_label,
            "frame_count": self.frame_count,
        }


def render_command(template: str, output_path: Path) -> str:
    """Substitute ``{outputPath}`` and ``{outputDir}`` into ``template``."""

    output_path = Path(output_path).resolve()
    return template.replace("{outputPath}", str(output_path)).replace(
        "{outputDir}", str(output_path.parent)
    )


class Notifier:
    """Run the configured notification channels for a completed timelapse."""

    def __init__(
        self,
        settings: NotificationSettings,
        *,
        runner: Runner = subprocess.run,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._runner = runner
        self._transport = transport
        self.hostname = socket.gethostname()

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    # ------------------------------ command -----------------------------
    def run_command(self, completed: CompletedTimelapse) -> None:
        template = self._settings.command
        if not template:
            return
        command = render_command(template, completed.output_path)
        logger.info("Executing notification command: %s", command)
        env = dict(os.environ)
        env["TIMELAPSE_OUTPUT_PATH"] = str(completed.output_path)
        env["TIMELAPSE_OUTPUT_DIR"] = str(completed.output_dir)
        if completed.job_id is not None:
            env["TIMELAPSE_JOB_ID"] = str(completed.job_id)
        try:
            result = self._runner(
                command,
                shell=True,
                env=env,
                timeout=self._settings.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise NotificationFailed(
                f"Notification command timed out after {self._settings.timeout}s"
            ) from exc
        except OSError as exc:
            raise NotificationFailed(f"Notification command failed: {exc}") from exc
        if result.returncode != 0:
            raise NotificationFailed(
                f"Notification command exited with code {result.returncode}"
            )

    # ------------------------------ webhook -----------------------------
    async def send_webhook(self, completed: CompletedTimelapse) -> None:
        webhook = self._settings.webhook
        if webhook is None:
            return
        payload = completed.to_payload()
        payload["host"] = self.hostname
        payload["generated_at"] = time.time()
        try:
            async with httpx.AsyncClient(
                timeout=webhook.timeout, transport=self._transport
            ) as client:
                response = await client.request(
                    webhook.method,
                    webhook.url,
                    json=payload,
                    headers=dict(webhook.headers),
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise NotificationFailed(
                f"Webhook returned HTTP {exc.response.status_code} for {webhook.url}"
            ) from exc
        except httpx.HTTPError as exc:
            raise NotificationFailed(f"Webhook delivery to {webhook.url} failed: {exc}") from exc

    # ------------------------------ dispatch ----------------------------
    async def notify(self, completed: CompletedTimelapse) -> bool:
        """Run every channel; failures are logged and reported as ``False``."""

        ok = True
        if self._settings.command:
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, self.run_command, completed)
            except NotificationFailed as exc:
                logger.error("Failed to send notification: %s", exc)
                ok = False
            else:
                logger.info("Notification sent successfully")
        if self._settings.webhook is not None:
            try:
                await self.send_webhook(completed)
            except NotificationFailed as exc:
                logger.error("Failed to deliver webhook: %s", exc)
                ok = False
            else:
                logger.info("Webhook delivered to %s", self._settings.webhook.url)
        return ok


__all__ = ["CompletedTimelapse", "Notifier", "render_command"]

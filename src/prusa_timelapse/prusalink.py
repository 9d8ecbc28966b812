"""Thin async client for the PrusaLink status API."""
from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from .config import PrusaLinkSettings
from .errors import StatusFetchFailed
from .status import PrinterState, StatusSnapshot
from .version import APP_VERSION

logger = logging.getLogger(__name__)

STATUS_PATH = "/api/v1/status"
JOB_PATH = "/api/v1/job"


class StatusPrinter(BaseModel):
    state: str
    temp_nozzle: float | None = None
    target_nozzle: float | None = None
    temp_bed: float | None = None
    target_bed: float | None = None
    axis_z: float | None = None
    speed: float | None = None


class StatusJob(BaseModel):
    id: int | None = None
    progress: float | None = None
    time_remaining: int | None = None
    time_printing: int | None = None


class StatusResponse(BaseModel):
    printer: StatusPrinter
    job: StatusJob | None = None


class JobFile(BaseModel):
    name: str | None = None
    display_name: str | None = None
    path: str | None = None
    display_path: str | None = None


class JobResponse(BaseModel):
    id: int
    state: str | None = None
    progress: float | None = None
    file: JobFile | None = None

    @property
    def label(self) -> str | None:
        if self.file is None:
            return None
        return self.file.display_name or self.file.name


class PrusaLinkClient:
    """Fetch printer snapshots from PrusaLink."""

    def __init__(
        self,
        settings: PrusaLinkSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._label_cache: tuple[int, str | None] | None = None

    @property
    def base_url(self) -> str:
        return self._settings.base_url

    def _build_auth(self) -> httpx.Auth | None:
        settings = self._settings
        if settings.username and settings.password:
            if settings.auth == "basic":
                return httpx.BasicAuth(settings.username, settings.password)
            return httpx.DigestAuth(settings.username, settings.password)
        return None

    def _build_headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": f"prusa-timelapse/{APP_VERSION}",
        }
        if self._settings.api_key:
            headers["X-Api-Key"] = self._settings.api_key
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self._settings.timeout,
                auth=self._build_auth(),
                headers=self._build_headers(),
                transport=self._transport,
            )
        return self._client

    async def _get_json(self, path: str) -> tuple[int, Any]:
        client = await self._get_client()
        try:
            response = await client.get(path)
        except httpx.TimeoutException as exc:
            raise StatusFetchFailed(f"Request timeout for {path}") from exc
        except httpx.HTTPError as exc:
            raise StatusFetchFailed(f"Request failed: {exc}") from exc

        status = response.status_code
        if status == 204:
            return status, None
        if status == 401:
            raise StatusFetchFailed(
                "Authentication failed. Check the PrusaLink credentials; "
                "PrusaLink expects digest authentication.",
                status_code=status,
                response_body=response.text,
            )
        if not response.is_success:
            raise StatusFetchFailed(
                f"HTTP {status}: {response.reason_phrase}",
                status_code=status,
                response_body=response.text,
            )
        try:
            return status, response.json()
        except ValueError as exc:
            raise StatusFetchFailed(
                f"Failed to parse JSON response: {exc}",
                status_code=status,
                response_body=response.text,
            ) from exc

    async def get_status(self) -> StatusResponse:
        status, payload = await self._get_json(STATUS_PATH)
        if payload is None:
            raise StatusFetchFailed(f"Empty status response (HTTP {status})", status_code=status)
        try:
            return StatusResponse.model_validate(payload)
        except ValidationError as exc:
            raise StatusFetchFailed(
                f"Unexpected status payload: {exc.error_count()} validation error(s)",
                status_code=status,
            ) from exc

    async def get_job(self) -> JobResponse | None:
        """Return the current job, or ``None`` when the printer has none."""

        status, payload = await self._get_json(JOB_PATH)
        if payload is None:
            return None
        try:
            return JobResponse.model_validate(payload)
        except ValidationError as exc:
            raise StatusFetchFailed(
                f"Unexpected job payload: {exc.error_count()} validation error(s)",
                status_code=status,
            ) from exc

    async def _job_label(self, job_id: int) -> str | None:
        cached = self._label_cache
        if cached is not None and cached[0] == job_id:
            return cached[1]
        label: str | None = None
        try:
            job = await self.get_job()
        except StatusFetchFailed as exc:
            logger.debug("Unable to fetch label for job %s: %s", job_id, exc)
            return None
        if job is not None and job.id == job_id:
            label = job.label
        self._label_cache = (job_id, label)
        return label

    async def fetch_status(self) -> StatusSnapshot:
        """Return the current printer state, job id and job label."""

        response = await self.get_status()
        state = PrinterState.parse(response.printer.state)
        job_id = response.job.id if response.job is not None else None
        label = await self._job_label(job_id) if job_id is not None else None
        return StatusSnapshot(state=state, job_id=job_id, job_label=label)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = [
    "JobFile",
    "JobResponse",
    "PrusaLinkClient",
    "StatusJob",
    "StatusPrinter",
    "StatusResponse",
]

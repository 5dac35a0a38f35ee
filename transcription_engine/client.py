"""HTTP client for the transcription API, used on the UI side.

Maps API error bodies back to the engine's exception types so a remote
caller can tell bad input from transient failures and rejected starts. It
provides the fetch and sweep callables StatusPoller needs and the
list/remove pair HistoryView needs.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from transcription_engine.jobs.models import JobSource, JobStatus, TranscriptionJob
from transcription_engine.jobs.poller import (
    DEFAULT_SCHEDULE,
    OnUpdate,
    PollSchedule,
    StatusPoller,
)
from transcription_engine.jobs.reconcile import SweepResult
from transcription_engine.utils.errors import (
    JobStartError,
    TransientIOError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class TranscriptionApiClient:
    """Async client for the transcription HTTP API.

    Args:
        base_url: API root, e.g. ``https://api.example.com``.
        timeout: Per-request timeout in seconds.
        client: Optional preconfigured httpx client (used by tests).
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self, method: str, path: str, operation: str, **kwargs: Any
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method, f"{self.base_url}{path}", **kwargs
            )
        except httpx.RequestError as exc:
            raise TransientIOError(
                f"{operation} failed: {exc}", operation=operation
            ) from exc

        if response.status_code < 400 or response.status_code == 404:
            return response

        try:
            body = response.json()
        except ValueError:
            body = {}
        detail = body.get("detail") or response.text
        kind = body.get("error")

        if kind == "validation" or response.status_code == 422:
            raise ValidationError(str(detail))
        if kind == "job_start":
            raise JobStartError(str(detail))
        raise TransientIOError(
            f"{operation} failed: HTTP {response.status_code}: {detail}",
            operation=operation,
        )

    async def submit(
        self,
        audio: bytes,
        filename: str,
        source: JobSource = JobSource.FILE,
        content_type: str | None = None,
    ) -> str:
        """Upload audio and return the new job id."""
        response = await self._request(
            "POST",
            "/transcriptions",
            "submit",
            files={
                "file": (filename, audio, content_type or "application/octet-stream")
            },
            data={"source": source.value},
        )
        return response.json()["id"]

    async def get_transcription(self, job_id: str) -> TranscriptionJob | None:
        """Fetch one job; None if the server does not know it."""
        response = await self._request(
            "GET", f"/transcriptions/{job_id}", "get_transcription"
        )
        if response.status_code == 404:
            return None
        return TranscriptionJob.from_record(response.json())

    async def list_jobs(
        self, status: JobStatus | None = JobStatus.COMPLETED, limit: int = 10
    ) -> list[TranscriptionJob]:
        params: dict[str, Any] = {"limit": limit}
        if status is not None:
            params["status"] = status.value
        response = await self._request(
            "GET", "/transcriptions", "list_jobs", params=params
        )
        return [
            TranscriptionJob.from_record(record)
            for record in response.json().get("transcriptions", [])
        ]

    async def remove(self, job_id: str) -> bool:
        """Delete a job on the server. Returns False if it did not exist."""
        response = await self._request(
            "DELETE", f"/transcriptions/{job_id}", "remove"
        )
        return response.status_code != 404

    async def reconcile(self) -> SweepResult:
        response = await self._request("POST", "/reconcile", "reconcile")
        body = response.json()
        return SweepResult(
            processed=body.get("processed", 0),
            fixed=body.get("fixed", 0),
            created=body.get("created", 0),
            skipped=body.get("skipped", 0),
            failed=body.get("failed", 0),
        )

    def poller(
        self,
        schedule: PollSchedule = DEFAULT_SCHEDULE,
        on_update: OnUpdate | None = None,
    ) -> StatusPoller:
        """A status poller that checks and sweeps through the API."""
        return StatusPoller(self.get_transcription, self.reconcile, schedule, on_update)

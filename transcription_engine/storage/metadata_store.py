"""Metadata store client for transcription job rows.

The Cloudflare Worker owns the D1 ``transcriptions`` table; this client
reads and writes rows through the Worker's internal API. Terminal writes
are conditional on the row still being IN_PROGRESS, which the Worker
enforces and reports as 409 Conflict.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from typing import Any

import httpx

from transcription_engine.jobs.models import JobStatus, TranscriptionJob
from transcription_engine.utils.errors import StorageError

logger = logging.getLogger(__name__)

SCAN_PAGE_SIZE = 100


class MetadataStoreClient:
    """Client for transcription rows via the Worker internal API.

    Reads configuration from environment variables:
        METADATA_STORE_URL, METADATA_STORE_SECRET
    """

    def __init__(
        self,
        base_url: str | None = None,
        internal_secret: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (
            base_url or os.environ.get("METADATA_STORE_URL", "")
        ).rstrip("/")
        self.internal_secret = internal_secret or os.environ.get(
            "METADATA_STORE_SECRET", ""
        )

        if not self.base_url:
            raise StorageError("METADATA_STORE_URL is required", operation="init")
        if not self.internal_secret:
            raise StorageError(
                "METADATA_STORE_SECRET is required", operation="init"
            )

        self._client = client or httpx.AsyncClient(timeout=30.0)

    def _headers(self) -> dict[str, str]:
        """Build authentication headers for internal Worker endpoints."""
        return {
            "X-Internal-Secret": self.internal_secret,
            "Content-Type": "application/json",
        }

    def _url(self, job_id: str | None = None) -> str:
        if job_id is None:
            return f"{self.base_url}/internal/transcriptions"
        return f"{self.base_url}/internal/transcriptions/{job_id}"

    async def close(self) -> None:
        """Close the shared HTTP client and release connection pool."""
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        url: str,
        operation: str,
        job_id: str | None = None,
        allowed: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, mapping transport and HTTP failures to StorageError.

        Status codes in ``allowed`` are returned to the caller instead of
        raising.
        """
        try:
            response = await self._client.request(
                method, url, headers=self._headers(), **kwargs
            )
            if response.status_code in allowed:
                return response
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            raise StorageError(
                f"Metadata store {operation} failed: "
                f"HTTP {exc.response.status_code}",
                job_id=job_id,
                operation=operation,
            ) from exc
        except httpx.RequestError as exc:
            raise StorageError(
                f"Metadata store {operation} failed: {exc}",
                job_id=job_id,
                operation=operation,
            ) from exc

    async def put_record(self, job: TranscriptionJob) -> None:
        """Create or replace the row for ``job.id``.

        Raises:
            StorageError: If the Worker API call fails.
        """
        await self._request(
            "PUT",
            self._url(job.id),
            "put_record",
            job_id=job.id,
            json=job.to_record(),
        )

    async def get_record(self, job_id: str) -> TranscriptionJob | None:
        """Fetch one row by id.

        Returns:
            The job, or None if no row exists.

        Raises:
            StorageError: If the Worker API call fails or the row is malformed.
        """
        response = await self._request(
            "GET", self._url(job_id), "get_record", job_id=job_id, allowed=(404,)
        )
        if response.status_code == 404:
            return None
        return self._parse(response.json(), "get_record")

    async def update_fields(
        self,
        job_id: str,
        fields: dict[str, Any],
        if_status: JobStatus | None = None,
    ) -> bool:
        """Apply a partial update to a row.

        Args:
            job_id: Row to update.
            fields: Wire-format fields to set.
            if_status: Only apply the update while the row has this status.

        Returns:
            True if the update was applied; False when the condition did not
            hold (409) or the row does not exist (404).

        Raises:
            StorageError: If the Worker API call fails.
        """
        payload: dict[str, Any] = {"fields": fields}
        if if_status is not None:
            payload["if_status"] = if_status.value

        response = await self._request(
            "PATCH",
            self._url(job_id),
            "update_fields",
            job_id=job_id,
            allowed=(404, 409),
            json=payload,
        )
        if response.status_code in (404, 409):
            logger.info(
                "Conditional update not applied (HTTP %d)",
                response.status_code,
                extra={"job_id": job_id, "stage": "update_fields"},
            )
            return False
        return True

    async def delete_record(self, job_id: str) -> bool:
        """Hard-delete a row.

        Returns:
            True if a row was deleted, False if none existed.

        Raises:
            StorageError: If the Worker API call fails.
        """
        response = await self._request(
            "DELETE",
            self._url(job_id),
            "delete_record",
            job_id=job_id,
            allowed=(404,),
        )
        return response.status_code != 404

    async def query_by_status(
        self, status: JobStatus | None = None, limit: int = 10
    ) -> list[TranscriptionJob]:
        """List rows, most recent first, optionally filtered by status.

        Raises:
            StorageError: If the Worker API call fails.
        """
        params: dict[str, Any] = {"limit": limit}
        if status is not None:
            params["status"] = status.value
        response = await self._request(
            "GET", self._url(), "query_by_status", params=params
        )
        body = response.json()
        return self._parse_page(body.get("transcriptions", []))

    async def iter_in_progress(
        self, page_size: int = SCAN_PAGE_SIZE
    ) -> AsyncIterator[TranscriptionJob]:
        """Iterate over every IN_PROGRESS row, following the page cursor."""
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {
                "status": JobStatus.IN_PROGRESS.value,
                "limit": page_size,
            }
            if cursor:
                params["cursor"] = cursor
            response = await self._request(
                "GET", self._url(), "scan_in_progress", params=params
            )
            body = response.json()
            for job in self._parse_page(body.get("transcriptions", [])):
                yield job
            cursor = body.get("cursor")
            if not cursor:
                return

    async def scan_in_progress(self) -> list[TranscriptionJob]:
        """Return all IN_PROGRESS rows.

        Raises:
            StorageError: If any page request fails.
        """
        return [job async for job in self.iter_in_progress()]

    def _parse(self, record: dict[str, Any], operation: str) -> TranscriptionJob:
        try:
            return TranscriptionJob.from_record(record)
        except ValueError as exc:
            raise StorageError(
                f"Malformed metadata record: {exc}",
                job_id=record.get("id"),
                operation=operation,
            ) from exc

    def _parse_page(self, records: list[dict[str, Any]]) -> list[TranscriptionJob]:
        jobs: list[TranscriptionJob] = []
        for record in records:
            try:
                jobs.append(TranscriptionJob.from_record(record))
            except ValueError as exc:
                # One bad row must not hide the rest of the page
                logger.warning(
                    "Skipping malformed metadata record: %s",
                    exc,
                    extra={"job_id": record.get("id"), "error": str(exc)},
                )
        return jobs

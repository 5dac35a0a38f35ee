"""Speechmatics managed transcription provider.

Implements TranscriptionProvider on the Speechmatics Batch API v2. Jobs
fetch their audio from a presigned URL, carry the engine's job name as the
tracking reference and the canonical id in tracking details, and results are
converted to the internal Transcript model.
"""

import json
import logging

import httpx

from transcription_engine.asr.interface import (
    ManagedJob,
    ManagedJobStatus,
    MediaLocation,
    Transcript,
    TranscriptionProvider,
    TranscriptSegment,
    TranscriptWord,
    as_float,
)
from transcription_engine.utils.errors import JobStartError, ProviderError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://asr.api.speechmatics.com/v2"
PROVIDER_NAME = "speechmatics"
TRANSIENT_STATUS_CODES = {429, 503}

_STATUS_MAP: dict[str, ManagedJobStatus] = {
    "running": ManagedJobStatus.IN_PROGRESS,
    "done": ManagedJobStatus.COMPLETED,
    "rejected": ManagedJobStatus.FAILED,
    "deleted": ManagedJobStatus.FAILED,
    "expired": ManagedJobStatus.FAILED,
}


class SpeechmaticsProvider(TranscriptionProvider):
    """Speechmatics Batch API provider with speaker diarization.

    Args:
        api_key: Speechmatics API key for authentication.
        base_url: Speechmatics API base URL (default production endpoint).
        timeout: Per-request timeout in seconds.
        client: Optional preconfigured httpx client (used by tests).
    """

    name = PROVIDER_NAME

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    async def close(self) -> None:
        await self._client.aclose()

    async def start_job(
        self,
        job_name: str,
        media: MediaLocation,
        language_code: str,
        max_speaker_labels: int,
        job_id: str | None = None,
    ) -> ManagedJob:
        """Submit a job that fetches its audio from ``media.url``.

        Raises:
            JobStartError: If the media has no URL or submission fails.
        """
        if not media.url:
            raise JobStartError(
                "Speechmatics requires an HTTP media URL",
                job_id=job_id,
                provider=PROVIDER_NAME,
            )

        config: dict = {
            "type": "transcription",
            "transcription_config": {
                "language": language_code.split("-")[0].lower(),
                "diarization": "speaker" if max_speaker_labels > 1 else "none",
            },
            "fetch_data": {"url": media.url},
            "tracking": {
                "title": job_name,
                "reference": job_name,
                "details": {"job_id": job_id} if job_id else {},
            },
        }

        url = f"{self._base_url}/jobs/"
        try:
            response = await self._client.post(
                url,
                headers=self._headers(),
                # multipart/form-data with no data_file: audio comes from fetch_data
                files={"config": (None, json.dumps(config))},
            )
        except httpx.HTTPError as exc:
            raise JobStartError(
                f"Failed to submit job {job_name}: {exc}",
                job_id=job_id,
                provider=PROVIDER_NAME,
            ) from exc

        if response.status_code == 429:
            raise JobStartError(
                "Rate limited during job submission",
                job_id=job_id,
                provider=PROVIDER_NAME,
            )
        if response.status_code == 503:
            raise JobStartError(
                "Service unavailable during job submission",
                job_id=job_id,
                provider=PROVIDER_NAME,
            )
        if response.status_code != 201:
            raise JobStartError(
                f"Job submission failed with status {response.status_code}: "
                f"{response.text}",
                job_id=job_id,
                provider=PROVIDER_NAME,
            )

        try:
            body = response.json()
        except ValueError:
            body = {}
        provider_job_id = body.get("id") if isinstance(body, dict) else None
        if not provider_job_id:
            raise JobStartError(
                "No job ID in submission response",
                job_id=job_id,
                provider=PROVIDER_NAME,
            )

        logger.info(
            "Submitted Speechmatics job %s as %s",
            job_name,
            provider_job_id,
            extra={"job_id": job_id, "job_name": job_name},
        )
        return ManagedJob(
            job_name=job_name,
            status=ManagedJobStatus.QUEUED,
            provider_job_id=provider_job_id,
            job_id=job_id,
        )

    async def get_job(
        self, job_name: str, provider_job_id: str | None = None
    ) -> ManagedJob:
        """Fetch job state, resolving the Speechmatics id from the name if needed."""
        if provider_job_id is None:
            found = await self._find_by_reference(job_name)
            if found is None:
                raise ProviderError(
                    f"No Speechmatics job found for {job_name}",
                    operation="get_job",
                    provider=PROVIDER_NAME,
                )
            return found

        body = await self._get_json(f"/jobs/{provider_job_id}", "get_job")
        return self._to_managed_job(body.get("job", {}))

    async def list_completed_jobs(self, page_size: int = 100) -> list[ManagedJob]:
        """List recent jobs and keep the completed ones, most recent first."""
        jobs = await self._list_jobs(page_size)
        return [job for job in jobs if job.status is ManagedJobStatus.COMPLETED]

    async def fetch_transcript(self, job: ManagedJob) -> Transcript:
        """Fetch the json-v2 transcript of a completed job."""
        provider_job_id = job.provider_job_id
        if provider_job_id is None:
            provider_job_id = (await self.get_job(job.job_name)).provider_job_id
        body = await self._get_json(
            f"/jobs/{provider_job_id}/transcript",
            "fetch_transcript",
            params={"format": "json-v2"},
        )
        return self._convert_response(body)

    async def _list_jobs(self, page_size: int) -> list[ManagedJob]:
        body = await self._get_json(
            "/jobs", "list_jobs", params={"limit": page_size}
        )
        return [self._to_managed_job(raw) for raw in body.get("jobs", [])]

    async def _find_by_reference(self, job_name: str) -> ManagedJob | None:
        for job in await self._list_jobs(100):
            if job.job_name == job_name:
                return job
        return None

    async def _get_json(
        self, path: str, operation: str, params: dict | None = None
    ) -> dict:
        """GET a JSON document from the API.

        Raises:
            ProviderError: On transport failure, a non-200 response, or a
                body that is not a JSON object.
        """
        try:
            response = await self._client.get(
                f"{self._base_url}{path}", headers=self._headers(), params=params
            )
        except httpx.HTTPError as exc:
            raise ProviderError(
                f"Speechmatics {operation} failed: {exc}",
                operation=operation,
                provider=PROVIDER_NAME,
            ) from exc

        if response.status_code in TRANSIENT_STATUS_CODES:
            raise ProviderError(
                f"Speechmatics {operation} temporarily unavailable "
                f"(HTTP {response.status_code})",
                operation=operation,
                provider=PROVIDER_NAME,
            )
        if response.status_code != 200:
            raise ProviderError(
                f"Speechmatics {operation} failed with status "
                f"{response.status_code}: {response.text}",
                operation=operation,
                provider=PROVIDER_NAME,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError(
                f"Speechmatics {operation} returned invalid JSON: {exc}",
                operation=operation,
                provider=PROVIDER_NAME,
            ) from exc
        if not isinstance(body, dict):
            raise ProviderError(
                f"Speechmatics {operation} returned an unexpected body",
                operation=operation,
                provider=PROVIDER_NAME,
            )
        return body

    def _to_managed_job(self, raw: dict) -> ManagedJob:
        tracking = raw.get("tracking") or {}
        details = tracking.get("details") or {}
        raw_status = raw.get("status", "")
        status = _STATUS_MAP.get(raw_status, ManagedJobStatus.QUEUED)

        failure_reason = None
        if status is ManagedJobStatus.FAILED:
            errors = raw.get("errors") or []
            messages = [e.get("message", "") for e in errors if e.get("message")]
            failure_reason = "; ".join(messages) or f"Speechmatics job {raw_status}"

        provider_job_id = raw.get("id")
        return ManagedJob(
            job_name=tracking.get("reference") or raw.get("data_name") or provider_job_id or "",
            status=status,
            provider_job_id=provider_job_id,
            job_id=details.get("job_id"),
            result_location=(
                f"{self._base_url}/jobs/{provider_job_id}/transcript"
                if status is ManagedJobStatus.COMPLETED
                else None
            ),
            failure_reason=failure_reason,
        )

    def _convert_response(self, raw_response: dict) -> Transcript:
        """Convert a Speechmatics json-v2 response to the Transcript model.

        Groups consecutive words by speaker into TranscriptSegments with
        friendly labels ('Speaker 1', 'Speaker 2', ...) and renders the
        display text with punctuation attached to the preceding word.
        """
        results = raw_response.get("results", [])

        if not results:
            return Transcript(segments=[], raw_response=raw_response)

        speaker_map: dict[str, str] = {}
        segments: list[TranscriptSegment] = []
        current_speaker: str | None = None
        current_words: list[TranscriptWord] = []
        text_parts: list[str] = []

        for result in results:
            alternatives = result.get("alternatives", [])
            if not alternatives:
                continue
            alt = alternatives[0]
            content = alt.get("content") or ""

            if result.get("type") == "punctuation":
                if text_parts:
                    text_parts[-1] += content
                continue
            if result.get("type") != "word":
                continue

            text_parts.append(content)

            raw_speaker = alt.get("speaker", "UU")
            if raw_speaker not in speaker_map:
                speaker_map[raw_speaker] = f"Speaker {len(speaker_map) + 1}"
            friendly_speaker = speaker_map[raw_speaker]

            word = TranscriptWord(
                text=content,
                start_time=as_float(result.get("start_time")),
                end_time=as_float(result.get("end_time")),
                confidence=as_float(alt.get("confidence")),
            )

            # Start new segment on speaker change
            if friendly_speaker != current_speaker:
                if current_words and current_speaker is not None:
                    segments.append(
                        TranscriptSegment(
                            speaker_label=current_speaker,
                            words=current_words,
                        )
                    )
                current_speaker = friendly_speaker
                current_words = [word]
            else:
                current_words.append(word)

        if current_words and current_speaker is not None:
            segments.append(
                TranscriptSegment(
                    speaker_label=current_speaker,
                    words=current_words,
                )
            )

        return Transcript(
            segments=segments,
            raw_response=raw_response,
            text=" ".join(text_parts),
        )

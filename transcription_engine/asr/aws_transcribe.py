"""AWS Transcribe managed transcription provider.

Starts jobs against media already in S3 and tags each job with its canonical
id. Transcript artifacts written to the transcripts bucket are read back
through the object store; service-managed artifacts are downloaded from
their presigned URL.
"""

from __future__ import annotations

import json
import logging
import os
from typing import TYPE_CHECKING, Any

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

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

if TYPE_CHECKING:
    from transcription_engine.storage.object_store import ObjectStoreClient

logger = logging.getLogger(__name__)

PROVIDER_NAME = "aws-transcribe"
JOB_ID_TAG = "job_id"


class AwsTranscribeProvider(TranscriptionProvider):
    """AWS Transcribe batch jobs with speaker labels.

    Reads configuration from environment variables:
        AWS_REGION, TRANSCRIPTS_BUCKET

    Args:
        object_store: Client used to read transcript artifacts.
        region: AWS region of the Transcribe service.
        transcripts_bucket: Output bucket for transcript artifacts. When unset
            the service-managed location from the job is used; it is a
            presigned HTTPS URL and is downloaded directly.
        timeout: Per-request timeout in seconds for artifact downloads.
        client: Optional preconfigured httpx client (used by tests).
    """

    name = PROVIDER_NAME

    def __init__(
        self,
        object_store: ObjectStoreClient,
        region: str | None = None,
        transcripts_bucket: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.region = region or os.environ.get("AWS_REGION", "us-east-1")
        self.transcripts_bucket = transcripts_bucket or os.environ.get(
            "TRANSCRIPTS_BUCKET", ""
        )
        self._object_store = object_store
        self._client = boto3.client("transcribe", region_name=self.region)
        self._http = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._http.aclose()

    async def start_job(
        self,
        job_name: str,
        media: MediaLocation,
        language_code: str,
        max_speaker_labels: int,
        job_id: str | None = None,
    ) -> ManagedJob:
        """Start a Transcribe job for media at ``media.uri``.

        Raises:
            JobStartError: If Transcribe rejects the job.
        """
        params: dict[str, Any] = {
            "TranscriptionJobName": job_name,
            "LanguageCode": language_code,
            "MediaFormat": media.media_format,
            "Media": {"MediaFileUri": media.uri},
        }
        if self.transcripts_bucket:
            params["OutputBucketName"] = self.transcripts_bucket
        # ShowSpeakerLabels requires at least two speakers
        if max_speaker_labels > 1:
            params["Settings"] = {
                "ShowSpeakerLabels": True,
                "MaxSpeakerLabels": max_speaker_labels,
            }
        if job_id:
            params["Tags"] = [{"Key": JOB_ID_TAG, "Value": job_id}]

        try:
            response = self._client.start_transcription_job(**params)
        except (ClientError, BotoCoreError) as exc:
            raise JobStartError(
                f"Failed to start Transcribe job {job_name}: {exc}",
                job_id=job_id,
                provider=PROVIDER_NAME,
            ) from exc

        logger.info(
            "Started Transcribe job %s",
            job_name,
            extra={"job_id": job_id, "job_name": job_name},
        )
        return self._to_managed_job(response.get("TranscriptionJob", {}))

    async def get_job(
        self, job_name: str, provider_job_id: str | None = None
    ) -> ManagedJob:
        """Fetch the state of a Transcribe job by name.

        Raises:
            ProviderError: If the job cannot be read.
        """
        try:
            response = self._client.get_transcription_job(
                TranscriptionJobName=job_name
            )
        except (ClientError, BotoCoreError) as exc:
            raise ProviderError(
                f"Failed to get Transcribe job {job_name}: {exc}",
                operation="get_job",
                provider=PROVIDER_NAME,
            ) from exc
        return self._to_managed_job(response.get("TranscriptionJob", {}))

    async def list_completed_jobs(self, page_size: int = 100) -> list[ManagedJob]:
        """List recently completed jobs, most recent first.

        Summaries carry no tags; callers derive the id from the job name.

        Raises:
            ProviderError: If the listing fails.
        """
        try:
            response = self._client.list_transcription_jobs(
                Status="COMPLETED", MaxResults=page_size
            )
        except (ClientError, BotoCoreError) as exc:
            raise ProviderError(
                f"Failed to list Transcribe jobs: {exc}",
                operation="list_completed_jobs",
                provider=PROVIDER_NAME,
            ) from exc

        summaries = response.get("TranscriptionJobSummaries", [])
        return [
            ManagedJob(
                job_name=summary["TranscriptionJobName"],
                status=ManagedJobStatus.COMPLETED,
            )
            for summary in summaries
            if summary.get("TranscriptionJobName")
        ]

    async def fetch_transcript(self, job: ManagedJob) -> Transcript:
        """Read and parse the transcript artifact of a completed job.

        Raises:
            ProviderError: If the artifact cannot be read or parsed.
        """
        if self.transcripts_bucket:
            location = f"s3://{self.transcripts_bucket}/{job.job_name}.json"
        else:
            location = job.result_location
            if not location:
                location = (await self.get_job(job.job_name)).result_location
        if not location:
            raise ProviderError(
                f"No transcript location for {job.job_name}",
                operation="fetch_transcript",
                provider=PROVIDER_NAME,
            )

        if location.startswith(("http://", "https://")):
            content = await self._download(location, job.job_name)
        else:
            content = self._object_store.fetch_uri(location)

        try:
            raw = json.loads(content)
        except ValueError as exc:
            raise ProviderError(
                f"Transcript for {job.job_name} is not valid JSON: {exc}",
                operation="fetch_transcript",
                provider=PROVIDER_NAME,
            ) from exc
        if not isinstance(raw, dict):
            raise ProviderError(
                f"Transcript for {job.job_name} is not a JSON object",
                operation="fetch_transcript",
                provider=PROVIDER_NAME,
            )
        return self._convert_response(raw)

    async def _download(self, url: str, job_name: str) -> bytes:
        """Download a service-managed transcript from its presigned URL.

        Raises:
            ProviderError: On transport failure or a non-200 response.
        """
        try:
            response = await self._http.get(url)
        except httpx.HTTPError as exc:
            raise ProviderError(
                f"Failed to download transcript for {job_name}: {exc}",
                operation="fetch_transcript",
                provider=PROVIDER_NAME,
            ) from exc
        if response.status_code != 200:
            raise ProviderError(
                f"Transcript download for {job_name} failed with status "
                f"{response.status_code}",
                operation="fetch_transcript",
                provider=PROVIDER_NAME,
            )
        return response.content

    def _to_managed_job(self, raw: dict) -> ManagedJob:
        raw_status = raw.get("TranscriptionJobStatus", "QUEUED")
        try:
            status = ManagedJobStatus(raw_status)
        except ValueError:
            status = ManagedJobStatus.QUEUED

        tags = {tag.get("Key"): tag.get("Value") for tag in raw.get("Tags", [])}
        return ManagedJob(
            job_name=raw.get("TranscriptionJobName", ""),
            status=status,
            job_id=tags.get(JOB_ID_TAG),
            result_location=(raw.get("Transcript") or {}).get("TranscriptFileUri"),
            failure_reason=raw.get("FailureReason"),
        )

    def _convert_response(self, raw_response: dict) -> Transcript:
        """Convert a Transcribe result document to the Transcript model.

        Only pronunciation items count as words; punctuation is kept in the
        rendered text only.
        """
        results = raw_response.get("results", {})
        transcripts = results.get("transcripts", [])
        text = transcripts[0].get("transcript", "") if transcripts else ""

        speaker_map: dict[str, str] = {}
        segments: list[TranscriptSegment] = []
        current_speaker: str | None = None
        current_words: list[TranscriptWord] = []

        for item in results.get("items", []):
            if item.get("type") != "pronunciation":
                continue
            alternatives = item.get("alternatives", [])
            if not alternatives:
                continue
            alt = alternatives[0]

            raw_speaker = item.get("speaker_label", "spk_0")
            if raw_speaker not in speaker_map:
                speaker_map[raw_speaker] = f"Speaker {len(speaker_map) + 1}"
            speaker = speaker_map[raw_speaker]

            word = TranscriptWord(
                text=alt.get("content", ""),
                start_time=as_float(item.get("start_time")),
                end_time=as_float(item.get("end_time")),
                confidence=as_float(alt.get("confidence")),
            )

            if speaker != current_speaker:
                if current_words and current_speaker is not None:
                    segments.append(
                        TranscriptSegment(speaker_label=current_speaker, words=current_words)
                    )
                current_speaker = speaker
                current_words = [word]
            else:
                current_words.append(word)

        if current_words and current_speaker is not None:
            segments.append(
                TranscriptSegment(speaker_label=current_speaker, words=current_words)
            )

        return Transcript(segments=segments, raw_response=raw_response, text=text)

"""Shared fixtures: in-memory fakes for the object store, metadata store and provider."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from transcription_engine.asr.interface import (
    ManagedJob,
    ManagedJobStatus,
    MediaLocation,
    Transcript,
    TranscriptionProvider,
    TranscriptSegment,
    TranscriptWord,
)
from transcription_engine.jobs.models import JobStatus, TranscriptionJob
from transcription_engine.jobs.naming import extension_of
from transcription_engine.storage.object_store import WriteCredential
from transcription_engine.utils.errors import (
    JobStartError,
    ProviderError,
    StorageError,
)


def make_transcript(words: list[tuple[str, float, float]]) -> Transcript:
    """Build a single-speaker transcript from (text, confidence, end_time) tuples."""
    transcript_words = []
    start = 0.0
    for text, confidence, end in words:
        transcript_words.append(
            TranscriptWord(text=text, start_time=start, end_time=end, confidence=confidence)
        )
        start = end
    segments = (
        [TranscriptSegment(speaker_label="Speaker 1", words=transcript_words)]
        if transcript_words
        else []
    )
    return Transcript(segments=segments, raw_response={})


class FakeMetadataStore:
    """Dict-backed metadata store with the conditional-update semantics of the Worker."""

    def __init__(self) -> None:
        self.rows: dict[str, dict[str, Any]] = {}
        self.writes: list[tuple[str, str]] = []
        self.fail_reads = False

    async def put_record(self, job: TranscriptionJob) -> None:
        self.rows[job.id] = job.to_record()
        self.writes.append(("put", job.id))

    async def get_record(self, job_id: str) -> TranscriptionJob | None:
        if self.fail_reads:
            raise StorageError("metadata store down", operation="get_record")
        record = self.rows.get(job_id)
        return TranscriptionJob.from_record(record) if record else None

    async def update_fields(
        self,
        job_id: str,
        fields: dict[str, Any],
        if_status: JobStatus | None = None,
    ) -> bool:
        record = self.rows.get(job_id)
        if record is None:
            return False
        if if_status is not None and record["status"] != if_status.value:
            return False
        updated = {**record, **fields}
        # Validate the same way the Worker would reject an inconsistent row
        TranscriptionJob.from_record(updated)
        self.rows[job_id] = updated
        self.writes.append(("update", job_id))
        return True

    async def delete_record(self, job_id: str) -> bool:
        self.writes.append(("delete", job_id))
        return self.rows.pop(job_id, None) is not None

    async def query_by_status(
        self, status: JobStatus | None = None, limit: int = 10
    ) -> list[TranscriptionJob]:
        jobs = [TranscriptionJob.from_record(r) for r in self.rows.values()]
        if status is not None:
            jobs = [job for job in jobs if job.status is status]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs[:limit]

    async def scan_in_progress(self) -> list[TranscriptionJob]:
        return [
            TranscriptionJob.from_record(r)
            for r in self.rows.values()
            if r["status"] == JobStatus.IN_PROGRESS.value
        ]

    async def close(self) -> None:
        pass

    def status_of(self, job_id: str) -> str:
        return self.rows[job_id]["status"]


class FakeObjectStore:
    """Dict-backed object store; credentials pin the key and metadata."""

    bucket = "audio"

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.metadata: dict[str, dict[str, str]] = {}
        self.credentials: list[WriteCredential] = []
        self.fail_upload = False
        self.head_failures = 0

    def get_write_credential(
        self,
        key: str,
        content_type: str,
        max_bytes: int,
        metadata: dict[str, str] | None = None,
        expires_in: int = 300,
    ) -> WriteCredential:
        fields = {"key": key, "Content-Type": content_type}
        fields.update({f"x-amz-meta-{k}": v for k, v in (metadata or {}).items()})
        credential = WriteCredential(
            url="https://upload.example.com/audio",
            fields=fields,
            key=key,
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
        )
        self.credentials.append(credential)
        return credential

    async def upload(
        self, credential: WriteCredential, data: bytes, filename: str = "audio"
    ) -> None:
        if self.fail_upload:
            raise StorageError("upload refused", operation="upload")
        self.objects[credential.key] = data
        self.metadata[credential.key] = {
            k.removeprefix("x-amz-meta-"): v
            for k, v in credential.fields.items()
            if k.startswith("x-amz-meta-")
        }
        self.metadata[credential.key]["content-type"] = credential.fields["Content-Type"]

    def put(self, key: str, data: bytes, metadata: dict[str, str] | None = None) -> None:
        self.objects[key] = data
        self.metadata[key] = dict(metadata or {})

    def fetch_object(self, key: str, bucket: str | None = None) -> bytes:
        if key not in self.objects:
            raise StorageError(f"no such key {key}", operation="fetch_object")
        return self.objects[key]

    def fetch_uri(self, uri: str) -> bytes:
        return self.fetch_object(uri.rsplit("/", 1)[-1])

    def head_metadata(self, key: str) -> dict[str, str]:
        if self.head_failures > 0:
            self.head_failures -= 1
            raise StorageError(f"no such key {key}", operation="head_metadata")
        if key not in self.metadata:
            raise StorageError(f"no such key {key}", operation="head_metadata")
        return dict(self.metadata[key])

    def media_location(self, key: str) -> MediaLocation:
        return MediaLocation(
            uri=f"s3://{self.bucket}/{key}",
            media_format=extension_of(key),
            url=f"https://read.example.com/{key}",
        )

    async def close(self) -> None:
        pass


class FakeProvider(TranscriptionProvider):
    """Managed service stand-in whose jobs are completed by the test."""

    name = "fake"

    def __init__(self) -> None:
        self.jobs: dict[str, ManagedJob] = {}
        self.transcripts: dict[str, Transcript] = {}
        self.started: list[dict[str, Any]] = []
        self.start_error: Exception | None = None
        self.list_error: Exception | None = None
        self.transcript_fetches = 0

    async def start_job(
        self,
        job_name: str,
        media: MediaLocation,
        language_code: str,
        max_speaker_labels: int,
        job_id: str | None = None,
    ) -> ManagedJob:
        if self.start_error is not None:
            raise self.start_error
        self.started.append(
            {
                "job_name": job_name,
                "media": media,
                "language_code": language_code,
                "max_speaker_labels": max_speaker_labels,
                "job_id": job_id,
            }
        )
        job = ManagedJob(
            job_name=job_name,
            status=ManagedJobStatus.IN_PROGRESS,
            provider_job_id=f"pj-{len(self.started)}",
            job_id=job_id,
        )
        self.jobs[job_name] = job
        return job

    def complete(
        self,
        job_name: str,
        words: list[tuple[str, float, float]],
        job_id: str | None = None,
    ) -> None:
        existing = self.jobs.pop(job_name, None)
        self.jobs[job_name] = ManagedJob(
            job_name=job_name,
            status=ManagedJobStatus.COMPLETED,
            provider_job_id=existing.provider_job_id if existing else None,
            job_id=job_id or (existing.job_id if existing else None),
        )
        self.transcripts[job_name] = make_transcript(words)

    def fail(self, job_name: str, reason: str) -> None:
        existing = self.jobs[job_name]
        self.jobs[job_name] = ManagedJob(
            job_name=job_name,
            status=ManagedJobStatus.FAILED,
            provider_job_id=existing.provider_job_id,
            job_id=existing.job_id,
            failure_reason=reason,
        )

    async def get_job(
        self, job_name: str, provider_job_id: str | None = None
    ) -> ManagedJob:
        if job_name not in self.jobs:
            raise ProviderError(f"unknown job {job_name}", operation="get_job")
        return self.jobs[job_name]

    async def list_completed_jobs(self, page_size: int = 100) -> list[ManagedJob]:
        if self.list_error is not None:
            raise self.list_error
        completed = [
            job for job in self.jobs.values()
            if job.status is ManagedJobStatus.COMPLETED
        ]
        return list(reversed(completed))[:page_size]

    async def fetch_transcript(self, job: ManagedJob) -> Transcript:
        self.transcript_fetches += 1
        if job.job_name not in self.transcripts:
            raise ProviderError(
                f"no transcript for {job.job_name}", operation="fetch_transcript"
            )
        return self.transcripts[job.job_name]


@pytest.fixture
def metadata_store() -> FakeMetadataStore:
    return FakeMetadataStore()


@pytest.fixture
def object_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def job_start_error() -> JobStartError:
    return JobStartError("quota exceeded", provider="fake")

"""Response bodies of the client-facing HTTP API (camelCase on the wire)."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from transcription_engine.jobs.models import JobSource, JobStatus, TranscriptionJob
from transcription_engine.jobs.reconcile import SweepResult


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubmitResponse(_CamelModel):
    id: str
    status: JobStatus = JobStatus.IN_PROGRESS


class TranscriptionResponse(_CamelModel):
    """One transcription job as returned to clients."""

    id: str
    status: JobStatus
    original_file_name: str
    source: JobSource
    created_at: datetime
    updated_at: datetime
    job_name: str | None = None
    text: str | None = None
    confidence: float | None = None
    duration_seconds: float | None = None
    completed_at: datetime | None = None
    audio_object_key: str | None = None
    error: str | None = None
    recovered: bool = False

    @classmethod
    def from_job(cls, job: TranscriptionJob) -> TranscriptionResponse:
        return cls(
            id=job.id,
            status=job.status,
            original_file_name=job.original_file_name,
            source=job.source,
            created_at=job.created_at,
            updated_at=job.updated_at,
            job_name=job.job_name,
            text=job.text,
            confidence=job.confidence,
            duration_seconds=job.duration_seconds,
            completed_at=job.completed_at,
            audio_object_key=job.audio_object_key,
            error=job.error,
            recovered=job.recovered,
        )


class TranscriptionListResponse(_CamelModel):
    transcriptions: list[TranscriptionResponse]


class DeleteResponse(_CamelModel):
    id: str
    deleted: bool


class SweepResponse(_CamelModel):
    """Counts from one reconciliation sweep."""

    processed: int
    fixed: int
    created: int
    skipped: int
    failed: int

    @classmethod
    def from_result(cls, result: SweepResult) -> SweepResponse:
        return cls(
            processed=result.processed,
            fixed=result.fixed,
            created=result.created,
            skipped=result.skipped,
            failed=result.failed,
        )


class StorageEventResponse(_CamelModel):
    object_key: str
    job_name: str | None = None


class ErrorResponse(BaseModel):
    error: str
    detail: str


class HealthResponse(BaseModel):
    status: str = "ok"

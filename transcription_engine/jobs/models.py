"""Transcription job data model.

TranscriptionJob is the row owned by the metadata store. It is immutable in
Python; state transitions produce field updates that the store applies
conditionally, so a terminal status is never overwritten by IN_PROGRESS.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from transcription_engine.asr.postprocess import TranscriptSummary

NO_SPEECH_ERROR = "No speech recognized in audio"


class JobStatus(str, Enum):
    """Lifecycle status of a transcription job."""

    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.IN_PROGRESS


class JobSource(str, Enum):
    """Where the submitted audio came from."""

    MICROPHONE = "microphone"
    FILE = "file"


def utcnow() -> datetime:
    return datetime.now(UTC)


def format_timestamp(value: datetime) -> str:
    """Render a datetime as ISO 8601 UTC with millisecond precision."""
    return (
        value.astimezone(UTC)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO 8601 string or epoch seconds into an aware datetime.

    Naive values are assumed to be UTC. Returns None for empty input.

    Raises:
        ValueError: If the value cannot be parsed.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value, UTC)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(frozen=True)
class TranscriptionJob:
    """A single audio-to-text request tracked end to end by its id."""

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
    provider_job_id: str | None = None
    recovered: bool = False

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("TranscriptionJob.id is required")
        has_text = bool(self.text)
        if has_text != (self.status is JobStatus.COMPLETED):
            raise ValueError(
                f"Job {self.id}: text must be non-empty if and only if "
                f"status is COMPLETED (status={self.status.value})"
            )
        if self.error and self.status is not JobStatus.FAILED:
            raise ValueError(
                f"Job {self.id}: error is only allowed on FAILED jobs"
            )
        if self.confidence is not None and not 0.0 <= self.confidence <= 1.0:
            raise ValueError(
                f"Job {self.id}: confidence {self.confidence} outside [0, 1]"
            )
        if self.duration_seconds is not None and self.duration_seconds < 0:
            raise ValueError(
                f"Job {self.id}: duration_seconds must be >= 0"
            )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def new(
        cls,
        job_id: str,
        original_file_name: str,
        source: JobSource,
        audio_object_key: str | None = None,
        job_name: str | None = None,
        now: datetime | None = None,
    ) -> TranscriptionJob:
        """Create the initial IN_PROGRESS row written at submission time."""
        now = now or utcnow()
        return cls(
            id=job_id,
            status=JobStatus.IN_PROGRESS,
            original_file_name=original_file_name,
            source=source,
            created_at=now,
            updated_at=now,
            job_name=job_name,
            audio_object_key=audio_object_key,
        )

    def to_record(self) -> dict[str, Any]:
        """Serialize to the metadata store's wire format (camelCase keys).

        Unset optional attributes are omitted.
        """
        record: dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "originalFileName": self.original_file_name,
            "source": self.source.value,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "recovered": self.recovered,
        }
        optional: dict[str, Any] = {
            "jobName": self.job_name,
            "text": self.text,
            "confidence": self.confidence,
            "durationSeconds": self.duration_seconds,
            "completedAt": (
                format_timestamp(self.completed_at) if self.completed_at else None
            ),
            "audioObjectKey": self.audio_object_key,
            "error": self.error,
            "providerJobId": self.provider_job_id,
        }
        record.update({k: v for k, v in optional.items() if v is not None})
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> TranscriptionJob:
        """Deserialize and validate a metadata store record.

        Accepts the legacy ``audioFileKey`` and ``duration`` keys and numeric
        strings for numeric fields.

        Raises:
            ValueError: If required fields are missing or invalid.
        """
        job_id = record.get("id")
        if not job_id or not isinstance(job_id, str):
            raise ValueError("Missing or invalid 'id' in record")

        try:
            status = JobStatus(str(record.get("status", "")).upper())
        except ValueError as exc:
            raise ValueError(
                f"Invalid 'status' in record {job_id}: {record.get('status')!r}"
            ) from exc

        try:
            source = JobSource(record.get("source") or JobSource.FILE.value)
        except ValueError as exc:
            raise ValueError(
                f"Invalid 'source' in record {job_id}: {record.get('source')!r}"
            ) from exc

        created_at = parse_timestamp(record.get("createdAt")) or utcnow()
        updated_at = parse_timestamp(record.get("updatedAt")) or created_at

        return cls(
            id=job_id,
            status=status,
            original_file_name=record.get("originalFileName") or job_id,
            source=source,
            created_at=created_at,
            updated_at=updated_at,
            job_name=record.get("jobName") or None,
            text=record.get("text") or None,
            confidence=_optional_float(record.get("confidence")),
            duration_seconds=_optional_float(
                record.get("durationSeconds", record.get("duration"))
            ),
            completed_at=parse_timestamp(record.get("completedAt")),
            audio_object_key=(
                record.get("audioObjectKey") or record.get("audioFileKey") or None
            ),
            error=record.get("error") or None,
            provider_job_id=record.get("providerJobId") or None,
            recovered=bool(record.get("recovered", False)),
        )


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def completion_update(
    summary: TranscriptSummary,
    now: datetime | None = None,
    job_name: str | None = None,
) -> dict[str, Any]:
    """Field update that moves a row to its terminal state from a transcript.

    A transcript with no recognized speech cannot satisfy "text non-empty iff
    COMPLETED", so it produces a FAILED update instead.
    """
    if not summary.text:
        fields = failure_update(NO_SPEECH_ERROR, now)
    else:
        timestamp = format_timestamp(now or utcnow())
        fields = {
            "status": JobStatus.COMPLETED.value,
            "text": summary.text,
            "confidence": summary.confidence,
            "durationSeconds": summary.duration_seconds,
            "updatedAt": timestamp,
            "completedAt": timestamp,
        }
    if job_name:
        fields["jobName"] = job_name
    return fields


def failure_update(reason: str, now: datetime | None = None) -> dict[str, Any]:
    """Field update that marks a row FAILED with the underlying reason."""
    return {
        "status": JobStatus.FAILED.value,
        "error": reason or "Transcription failed",
        "updatedAt": format_timestamp(now or utcnow()),
    }

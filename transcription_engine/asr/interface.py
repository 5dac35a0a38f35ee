"""Abstract managed transcription service interface.

Defines the TranscriptionProvider ABC, the job handle it returns, and the
transcript data models. Concrete implementations (Speechmatics, AWS
Transcribe) subclass TranscriptionProvider and run jobs out of process.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any


def as_float(value: Any, default: float = 0.0) -> float:
    """Coerce a provider number (float, numeric string or null) to float."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass
class TranscriptWord:
    """A single word with timing and confidence information."""

    text: str
    start_time: float
    end_time: float
    confidence: float


@dataclass
class TranscriptSegment:
    """A segment of speech from a single speaker."""

    speaker_label: str
    words: list[TranscriptWord]


@dataclass
class Transcript:
    """Complete transcript with speaker-labeled segments.

    ``text`` is the provider's rendered transcript (with punctuation) when
    the provider supplies one.
    """

    segments: list[TranscriptSegment]
    raw_response: dict
    text: str = ""

    @property
    def words(self) -> list[TranscriptWord]:
        return [word for segment in self.segments for word in segment.words]


class ManagedJobStatus(str, Enum):
    """Provider-side job status, normalized across providers."""

    QUEUED = "QUEUED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class ManagedJob:
    """Handle for a job running in the managed service.

    ``job_id`` is the canonical id carried as job metadata when the provider
    supports tagging; None when it has to be derived from the job name.
    """

    job_name: str
    status: ManagedJobStatus
    provider_job_id: str | None = None
    job_id: str | None = None
    result_location: str | None = None
    failure_reason: str | None = None


@dataclass
class MediaLocation:
    """Where the provider can read the uploaded audio from.

    ``uri`` is the native object URI (``s3://bucket/key``); ``url`` is a
    time-limited HTTPS URL for providers that fetch over HTTP.
    """

    uri: str
    media_format: str
    url: str | None = None


class TranscriptionProvider(ABC):
    """Abstract base class for managed transcription services."""

    name: str = ""

    @abstractmethod
    async def start_job(
        self,
        job_name: str,
        media: MediaLocation,
        language_code: str,
        max_speaker_labels: int,
        job_id: str | None = None,
    ) -> ManagedJob:
        """Request a new transcription job.

        Raises:
            JobStartError: If the provider rejects the job.
        """

    @abstractmethod
    async def get_job(
        self, job_name: str, provider_job_id: str | None = None
    ) -> ManagedJob:
        """Fetch the current state of a job.

        Raises:
            ProviderError: If the provider cannot be reached or the job is unknown.
        """

    @abstractmethod
    async def list_completed_jobs(self, page_size: int = 100) -> list[ManagedJob]:
        """List recently completed jobs, most recent first.

        Raises:
            ProviderError: If the listing fails.
        """

    @abstractmethod
    async def fetch_transcript(self, job: ManagedJob) -> Transcript:
        """Retrieve and parse the transcript artifact of a completed job.

        Raises:
            ProviderError: If the artifact cannot be retrieved or parsed.
        """

    async def close(self) -> None:
        """Release any network resources held by the provider."""

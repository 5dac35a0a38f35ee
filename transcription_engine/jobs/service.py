"""Transcription service facade used by the HTTP API and the queue consumer.

Wires the submitter, the completion callback, the reconciliation sweep and
the stores together and routes object store notifications. A job's status
is derived on demand: a row still IN_PROGRESS is checked against the
managed service and settled if the job has finished.
"""

from __future__ import annotations

import logging
import os

from transcription_engine.asr.interface import ManagedJobStatus, TranscriptionProvider
from transcription_engine.asr.postprocess import summarize_transcript
from transcription_engine.asr.registry import get_transcription_provider
from transcription_engine.jobs.completion import CompletionCallback
from transcription_engine.jobs.models import (
    JobSource,
    JobStatus,
    TranscriptionJob,
    completion_update,
    failure_update,
)
from transcription_engine.jobs.poller import (
    DEFAULT_SCHEDULE,
    OnUpdate,
    PollSchedule,
    StatusPoller,
)
from transcription_engine.jobs.reconcile import ReconciliationSweep, SweepResult
from transcription_engine.jobs.naming import TRANSCRIPT_ARTIFACT_SUFFIX
from transcription_engine.jobs.submitter import JobSubmitter
from transcription_engine.storage.metadata_store import MetadataStoreClient
from transcription_engine.storage.object_store import ObjectStoreClient
from transcription_engine.utils.errors import TransientIOError

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "speechmatics"


class TranscriptionService:
    """Job lifecycle operations over the three stores."""

    def __init__(
        self,
        object_store: ObjectStoreClient,
        metadata_store: MetadataStoreClient,
        provider: TranscriptionProvider,
        submitter: JobSubmitter | None = None,
        sweep: ReconciliationSweep | None = None,
        completion: CompletionCallback | None = None,
    ) -> None:
        self.object_store = object_store
        self.metadata_store = metadata_store
        self.provider = provider
        self.submitter = submitter or JobSubmitter(
            object_store, metadata_store, provider
        )
        self.sweep = sweep or ReconciliationSweep(metadata_store, provider)
        self.completion = completion or CompletionCallback(metadata_store, provider)

    @classmethod
    def from_env(cls) -> TranscriptionService:
        """Build the service from environment configuration.

        Raises:
            StorageError: If required store configuration is missing.
            ProviderError: If ASR_PROVIDER names an unknown provider.
        """
        object_store = ObjectStoreClient()
        metadata_store = MetadataStoreClient()

        provider_name = os.environ.get("ASR_PROVIDER", DEFAULT_PROVIDER)
        if provider_name == "aws-transcribe":
            provider = get_transcription_provider(
                provider_name, object_store=object_store
            )
        else:
            provider = get_transcription_provider(
                provider_name, api_key=os.environ.get("SPEECHMATICS_API_KEY", "")
            )
        logger.info("Using transcription provider %s", provider.name)
        return cls(object_store, metadata_store, provider)

    async def close(self) -> None:
        await self.metadata_store.close()
        await self.object_store.close()
        await self.provider.close()

    async def submit(
        self,
        audio: bytes,
        filename: str,
        source: JobSource = JobSource.FILE,
        content_type: str | None = None,
    ) -> str:
        return await self.submitter.submit(audio, filename, source, content_type)

    async def start_for_object(self, object_key: str) -> str | None:
        return await self.submitter.start_for_object(object_key)

    async def complete_from_artifact(self, object_key: str) -> str | None:
        return await self.completion.complete_from_artifact(object_key)

    async def handle_object_write(self, object_key: str) -> str | None:
        """Route an object store write notification.

        Transcript artifacts settle their job; audio objects may start one.

        Returns:
            The job name the notification applied to, or None if skipped.
        """
        if object_key.lower().endswith(TRANSCRIPT_ARTIFACT_SUFFIX):
            return await self.complete_from_artifact(object_key)
        return await self.start_for_object(object_key)

    async def get_status(self, job_id: str) -> TranscriptionJob | None:
        """Return the job, settling it first if the provider has finished.

        Any failure during the on-demand check is logged and the stored row
        is returned unchanged.

        Raises:
            TransientIOError: If the metadata store cannot be read.
        """
        job = await self.metadata_store.get_record(job_id)
        if job is None or job.is_terminal or not job.job_name:
            return job

        try:
            settled = await self._settle(job)
        except TransientIOError as exc:
            logger.warning(
                "On-demand provider check failed: %s",
                exc,
                extra={"job_id": job_id, "job_name": job.job_name, "error": str(exc)},
            )
            return job
        except Exception as exc:
            logger.exception(
                "Unexpected error during on-demand provider check: %s",
                exc,
                extra={"job_id": job_id, "job_name": job.job_name, "error": str(exc)},
            )
            return job
        return settled or job

    async def _settle(self, job: TranscriptionJob) -> TranscriptionJob | None:
        managed = await self.provider.get_job(job.job_name, job.provider_job_id)

        if managed.status is ManagedJobStatus.COMPLETED:
            summary = summarize_transcript(await self.provider.fetch_transcript(managed))
            fields = completion_update(summary)
        elif managed.status is ManagedJobStatus.FAILED:
            fields = failure_update(managed.failure_reason or "Transcription failed")
        else:
            return None

        await self.metadata_store.update_fields(
            job.id, fields, if_status=JobStatus.IN_PROGRESS
        )
        logger.info(
            "Settled job from provider status %s",
            managed.status.value,
            extra={"job_id": job.id, "job_name": job.job_name},
        )
        # Re-read: a concurrent writer may have settled it first
        return await self.metadata_store.get_record(job.id)

    async def list_jobs(
        self, status: JobStatus | None = None, limit: int = 10
    ) -> list[TranscriptionJob]:
        return await self.metadata_store.query_by_status(status, limit)

    async def remove(self, job_id: str) -> bool:
        """Hard-delete a job row. Returns False if it did not exist."""
        deleted = await self.metadata_store.delete_record(job_id)
        logger.info(
            "Deleted job" if deleted else "Delete requested for unknown job",
            extra={"job_id": job_id},
        )
        return deleted

    async def reconcile(self) -> SweepResult:
        return await self.sweep.run()

    def poller(
        self,
        schedule: PollSchedule = DEFAULT_SCHEDULE,
        on_update: OnUpdate | None = None,
    ) -> StatusPoller:
        """A status poller that checks and sweeps in-process."""
        return StatusPoller(self.get_status, self.reconcile, schedule, on_update)

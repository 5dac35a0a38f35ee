"""Completion callback: settle a row when its transcript artifact is written.

The managed service writes ``<job name>.json`` to the transcripts bucket when
a job finishes, and the bucket's write notification lands here. The row is
matched by job name first, then by the id derived from the name, and moved
to COMPLETED with a write conditional on it still being IN_PROGRESS, so the
callback, the poller and the reconciliation sweep can race safely.
"""

from __future__ import annotations

import logging

from transcription_engine.asr.interface import (
    ManagedJob,
    ManagedJobStatus,
    TranscriptionProvider,
)
from transcription_engine.asr.postprocess import summarize_transcript
from transcription_engine.jobs.models import (
    JobStatus,
    TranscriptionJob,
    completion_update,
)
from transcription_engine.jobs.naming import derive_job_id, job_name_from_artifact
from transcription_engine.observability.metrics import StageTimer
from transcription_engine.storage.metadata_store import MetadataStoreClient

logger = logging.getLogger(__name__)


class CompletionCallback:
    """Applies transcript artifacts to their metadata rows.

    Args:
        metadata_store: Store holding the job rows.
        provider: Managed transcription service that reads and parses the
            artifact.
    """

    def __init__(
        self,
        metadata_store: MetadataStoreClient,
        provider: TranscriptionProvider,
    ) -> None:
        self._store = metadata_store
        self._provider = provider

    async def complete_from_artifact(self, object_key: str) -> str | None:
        """Settle the job whose transcript artifact was just written.

        Args:
            object_key: Key of the written artifact, ``<job name>.json``.

        Returns:
            The job name when its row was completed, None when the object is
            not a transcript or the row is missing or already terminal.

        Raises:
            TransientIOError: If the row or the artifact cannot be read; the
                notification should be redelivered.
        """
        job_name = job_name_from_artifact(object_key)
        if job_name is None:
            logger.info(
                "Ignoring non-transcript object %s",
                object_key,
                extra={"stage": "completion"},
            )
            return None

        row = await self._find_row(job_name)
        if row is None:
            logger.warning(
                "No row for transcript artifact %s",
                object_key,
                extra={"job_name": job_name, "stage": "completion"},
            )
            return None
        if row.is_terminal:
            logger.info(
                "Row already terminal, ignoring transcript artifact",
                extra={"job_id": row.id, "job_name": job_name},
            )
            return None

        with StageTimer("completion") as timer:
            transcript = await self._provider.fetch_transcript(
                ManagedJob(job_name=job_name, status=ManagedJobStatus.COMPLETED)
            )
            summary = summarize_transcript(transcript)
            applied = await self._store.update_fields(
                row.id,
                completion_update(summary, job_name=job_name),
                if_status=JobStatus.IN_PROGRESS,
            )

        if not applied:
            logger.info(
                "Row settled concurrently, leaving it unchanged",
                extra={"job_id": row.id, "job_name": job_name},
            )
            return None

        logger.info(
            "Completed job from transcript artifact",
            extra={
                "job_id": row.id,
                "job_name": job_name,
                "stage": "completion",
                "duration_seconds": timer.duration_seconds,
            },
        )
        return job_name

    async def _find_row(self, job_name: str) -> TranscriptionJob | None:
        for row in await self._store.scan_in_progress():
            if row.job_name == job_name:
                return row
        return await self._store.get_record(derive_job_id(job_name))

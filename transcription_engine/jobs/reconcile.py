"""Reconciliation sweep: repair rows left IN_PROGRESS by missed notifications.

Lists recently completed jobs from the managed service and compares them
with the IN_PROGRESS rows of the metadata store. Matched rows are moved to
COMPLETED with a write that is conditional on the row still being
IN_PROGRESS; completed jobs with no row at all get a recovered row. The
sweep is idempotent and never raises.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from transcription_engine.asr.interface import ManagedJob, TranscriptionProvider
from transcription_engine.asr.postprocess import summarize_transcript
from transcription_engine.jobs.models import (
    NO_SPEECH_ERROR,
    JobSource,
    JobStatus,
    TranscriptionJob,
    completion_update,
    utcnow,
)
from transcription_engine.jobs.naming import derive_job_id, media_suffix
from transcription_engine.observability.metrics import (
    StageTimer,
    SweepMetrics,
    log_sweep_metrics,
)
from transcription_engine.storage.metadata_store import MetadataStoreClient
from transcription_engine.utils.errors import ReconciliationMismatch

logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 100


@dataclass(frozen=True)
class SweepResult:
    """Counts reported by one sweep run."""

    processed: int = 0
    fixed: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0


class _Outcome(Enum):
    FIXED = "fixed"
    CREATED = "created"
    SKIPPED = "skipped"


class ReconciliationSweep:
    """Brings metadata rows in line with the managed service.

    Args:
        metadata_store: Store holding the job rows.
        provider: Managed transcription service.
        page_size: Number of recent completed jobs to inspect per run.
    """

    def __init__(
        self,
        metadata_store: MetadataStoreClient,
        provider: TranscriptionProvider,
        page_size: int = LIST_PAGE_SIZE,
    ) -> None:
        self._store = metadata_store
        self._provider = provider
        self.page_size = page_size

    async def run(self) -> SweepResult:
        """Run one sweep.

        Returns:
            SweepResult. Listing failures produce an empty result; per-job
            failures are counted in ``failed``.
        """
        in_progress_count = 0
        with StageTimer("sweep") as timer:
            try:
                completed = await self._provider.list_completed_jobs(self.page_size)
                in_progress = await self._store.scan_in_progress()
            except Exception as exc:
                logger.exception(
                    "Reconciliation sweep could not list jobs: %s",
                    exc,
                    extra={"stage": "sweep", "error": str(exc)},
                )
                result = SweepResult()
            else:
                in_progress_count = len(in_progress)
                result = await self._reconcile(completed, in_progress)

        logger.info(
            "Reconciliation sweep complete: processed=%d fixed=%d created=%d",
            result.processed,
            result.fixed,
            result.created,
            extra={"stage": "sweep", "duration_seconds": timer.duration_seconds},
        )
        log_sweep_metrics(
            SweepMetrics(
                processed=result.processed,
                fixed=result.fixed,
                created=result.created,
                skipped=result.skipped,
                failed=result.failed,
                in_progress_rows=in_progress_count,
                duration_seconds=timer.duration_seconds,
                provider=self._provider.name,
            )
        )
        return result

    async def _reconcile(
        self,
        completed: list[ManagedJob],
        in_progress: list[TranscriptionJob],
    ) -> SweepResult:
        by_id = {row.id: row for row in in_progress}
        by_name = {row.job_name: row for row in in_progress if row.job_name}
        counts = {outcome: 0 for outcome in _Outcome}
        processed = 0
        failed = 0

        for job in completed:
            processed += 1
            try:
                outcome = await self._reconcile_job(job, by_id, by_name)
            except Exception as exc:
                failed += 1
                logger.exception(
                    "Failed to reconcile job %s: %s",
                    job.job_name,
                    exc,
                    extra={"job_name": job.job_name, "error": str(exc)},
                )
                continue
            counts[outcome] += 1

        return SweepResult(
            processed=processed,
            fixed=counts[_Outcome.FIXED],
            created=counts[_Outcome.CREATED],
            skipped=counts[_Outcome.SKIPPED],
            failed=failed,
        )

    async def _reconcile_job(
        self,
        job: ManagedJob,
        by_id: dict[str, TranscriptionJob],
        by_name: dict[str, TranscriptionJob],
    ) -> _Outcome:
        job_id = job.job_id or derive_job_id(job.job_name)
        row = by_id.get(job_id) or by_name.get(job.job_name)

        if row is None:
            try:
                await self._ensure_row_exists(job, job_id)
            except ReconciliationMismatch as mismatch:
                logger.info(
                    "Creating recovered row for orphan job: %s",
                    mismatch,
                    extra={"job_id": job_id, "job_name": job.job_name},
                )
                await self._create_recovered(job, job_id)
                return _Outcome.CREATED
            return _Outcome.SKIPPED

        summary = summarize_transcript(await self._provider.fetch_transcript(job))
        fields = completion_update(summary, job_name=job.job_name)
        if job.provider_job_id:
            fields["providerJobId"] = job.provider_job_id

        applied = await self._store.update_fields(
            row.id, fields, if_status=JobStatus.IN_PROGRESS
        )
        # The row is settled either way; later jobs for it must not rematch
        by_id.pop(row.id, None)
        if row.job_name:
            by_name.pop(row.job_name, None)

        if not applied:
            logger.info(
                "Row already terminal, leaving it unchanged",
                extra={"job_id": row.id, "job_name": job.job_name},
            )
            return _Outcome.SKIPPED

        logger.info(
            "Fixed stale row",
            extra={"job_id": row.id, "job_name": job.job_name, "stage": "sweep"},
        )
        return _Outcome.FIXED

    async def _ensure_row_exists(self, job: ManagedJob, job_id: str) -> None:
        """Raise ReconciliationMismatch when no row exists in any state."""
        existing = await self._store.get_record(job_id)
        if existing is None:
            raise ReconciliationMismatch(
                f"No metadata row for completed job {job.job_name}",
                job_id=job_id,
                job_name=job.job_name,
            )

    async def _create_recovered(self, job: ManagedJob, job_id: str) -> None:
        summary = summarize_transcript(await self._provider.fetch_transcript(job))
        now = utcnow()
        suffix = media_suffix(job.job_name) or "audio"

        if summary.text:
            status, text, error = JobStatus.COMPLETED, summary.text, None
        else:
            status, text, error = JobStatus.FAILED, None, NO_SPEECH_ERROR

        orphan = TranscriptionJob(
            id=job_id,
            status=status,
            original_file_name=f"recording-{job_id.rsplit('-', 1)[-1]}.{suffix}",
            source=(
                JobSource.MICROPHONE
                if "recording" in job.job_name
                else JobSource.FILE
            ),
            created_at=now,
            updated_at=now,
            job_name=job.job_name,
            text=text,
            confidence=summary.confidence,
            duration_seconds=summary.duration_seconds,
            completed_at=now,
            error=error,
            provider_job_id=job.provider_job_id,
            recovered=True,
        )
        await self._store.put_record(orphan)

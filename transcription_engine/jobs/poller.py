"""Progressive status polling for a single transcription job.

The poller is caller-driven: one coroutine per job, sleeping between
checks on a tiered schedule and triggering the reconciliation sweep at
fixed checkpoints in case the completion notification was missed. It
works against any pair of async callables, so the same loop drives the
server-side service and the remote API client.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from enum import Enum

from transcription_engine.jobs.models import JobStatus, TranscriptionJob
from transcription_engine.jobs.session import CancellationToken
from transcription_engine.observability.metrics import (
    PollMetrics,
    StageTimer,
    log_poll_metrics,
)
from transcription_engine.utils.errors import (
    JobFailure,
    PollTimeoutError,
    TranscriptionError,
    TransientIOError,
)

logger = logging.getLogger(__name__)

SMART_WAIT_DELAYS: tuple[float, ...] = (1.0, 3.0, 5.0, 8.0)

FetchJob = Callable[[str], Awaitable[TranscriptionJob | None]]
RunSweep = Callable[[], Awaitable[object]]
OnUpdate = Callable[[TranscriptionJob], None]


class PollState(str, Enum):
    POLLING = "POLLING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class PollSchedule:
    """Attempt budget, tiered sleep intervals and sweep checkpoints.

    Attempts are numbered from 1. ``tiers`` maps the last attempt of each
    tier to its interval; attempts past the final tier use
    ``default_interval``.
    """

    max_attempts: int = 30
    tiers: tuple[tuple[int, float], ...] = ((5, 2.0), (10, 3.0))
    default_interval: float = 5.0
    sweep_checkpoints: frozenset[int] = field(
        default_factory=lambda: frozenset({1, 4, 9, 16})
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def interval_for(self, attempt: int) -> float:
        """Seconds to sleep after ``attempt`` before the next one."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        for last_attempt, interval in self.tiers:
            if attempt <= last_attempt:
                return interval
        return self.default_interval

    def elapsed_before(self, attempt: int) -> float:
        """Total scheduled sleep before ``attempt`` starts."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        return sum(self.interval_for(k) for k in range(1, attempt))

    def is_checkpoint(self, attempt: int) -> bool:
        return attempt in self.sweep_checkpoints


DEFAULT_SCHEDULE = PollSchedule()


@dataclass(frozen=True)
class PollResult:
    """Final state of one polling session."""

    job_id: str
    state: PollState
    job: TranscriptionJob | None = None
    attempts: int = 0
    sweeps: int = 0

    def raise_for_outcome(self) -> TranscriptionJob | None:
        """Return the completed job or raise the matching error.

        Returns:
            The COMPLETED job, or None if polling was cancelled.

        Raises:
            JobFailure: If the job FAILED; carries the provider's reason.
            PollTimeoutError: If the attempt budget ran out.
        """
        if self.state is PollState.COMPLETED:
            return self.job
        if self.state is PollState.FAILED:
            reason = self.job.error if self.job else None
            raise JobFailure(
                f"Transcription failed: {reason or 'unknown error'}",
                job_id=self.job_id,
                reason=reason,
            )
        if self.state is PollState.TIMED_OUT:
            raise PollTimeoutError(
                "Transcription is taking longer than expected. It may still "
                "finish in the background; check your history later.",
                job_id=self.job_id,
                attempts=self.attempts,
            )
        return None


class StatusPoller:
    """Drives status checks for a job until it reaches a terminal state.

    Args:
        fetch_job: Returns the current row for a job id, or None if missing.
        run_sweep: Triggers one reconciliation sweep.
        schedule: Attempt budget and intervals.
        on_update: Called with every row observed while not cancelled.
    """

    def __init__(
        self,
        fetch_job: FetchJob,
        run_sweep: RunSweep,
        schedule: PollSchedule = DEFAULT_SCHEDULE,
        on_update: OnUpdate | None = None,
    ) -> None:
        self._fetch_job = fetch_job
        self._run_sweep = run_sweep
        self.schedule = schedule
        self._on_update = on_update

    async def poll(
        self, job_id: str, token: CancellationToken | None = None
    ) -> PollResult:
        """Poll on the full schedule.

        Args:
            job_id: Canonical id of the job.
            token: Cancellation token; cancelled sessions return CANCELLED.

        Returns:
            PollResult with state COMPLETED, FAILED, TIMED_OUT or CANCELLED.
        """
        token = token or CancellationToken()
        with StageTimer("poll") as timer:
            result = await self._poll_schedule(job_id, token)
        self._record(result, timer.duration_seconds, "poll")
        return result

    async def _poll_schedule(
        self, job_id: str, token: CancellationToken
    ) -> PollResult:
        attempts = 0
        sweeps = 0
        last_job: TranscriptionJob | None = None
        result: PollResult | None = None

        for attempt in range(1, self.schedule.max_attempts + 1):
            if token.cancelled:
                result = self._cancelled(job_id, attempts, sweeps)
                break
            attempts = attempt

            if self.schedule.is_checkpoint(attempt):
                await self._sweep(job_id, attempt)
                sweeps += 1
                if token.cancelled:
                    result = self._cancelled(job_id, attempts, sweeps)
                    break

            job = await self._check(job_id, attempt)
            if token.cancelled:
                result = self._cancelled(job_id, attempts, sweeps)
                break
            if job is not None:
                last_job = job
                self._notify(job)
                if job.is_terminal:
                    result = self._terminal(job, attempts, sweeps)
                    break

            if attempt < self.schedule.max_attempts:
                await asyncio.sleep(self.schedule.interval_for(attempt))

        if result is None:
            result = await self._final_check(
                job_id, token, attempts, sweeps, last_job
            )
        return result

    async def smart_wait(
        self, job_id: str, token: CancellationToken | None = None
    ) -> PollResult:
        """Check immediately, then on a short back-off, before full polling.

        Each step runs a sweep followed by a status check. If none of the
        quick steps observes a terminal state, falls back to poll(); the
        single metrics line then counts the quick steps and the fallback.
        """
        token = token or CancellationToken()
        attempts = 0
        sweeps = 0

        with StageTimer("smart_wait") as timer:
            result: PollResult | None = None
            for delay in (0.0, *SMART_WAIT_DELAYS):
                if delay:
                    await asyncio.sleep(delay)
                if token.cancelled:
                    result = self._cancelled(job_id, attempts, sweeps)
                    break
                attempts += 1

                await self._sweep(job_id, attempts)
                sweeps += 1
                if token.cancelled:
                    result = self._cancelled(job_id, attempts, sweeps)
                    break

                job = await self._check(job_id, attempts)
                if token.cancelled:
                    result = self._cancelled(job_id, attempts, sweeps)
                    break
                if job is not None:
                    self._notify(job)
                    if job.is_terminal:
                        result = self._terminal(job, attempts, sweeps)
                        break

            if result is None:
                logger.info(
                    "Smart wait did not observe completion, falling back to polling",
                    extra={"job_id": job_id, "attempt": attempts},
                )
                fallback = await self._poll_schedule(job_id, token)
                result = replace(
                    fallback,
                    attempts=attempts + fallback.attempts,
                    sweeps=sweeps + fallback.sweeps,
                )

        self._record(result, timer.duration_seconds, "smart_wait")
        return result

    async def _final_check(
        self,
        job_id: str,
        token: CancellationToken,
        attempts: int,
        sweeps: int,
        last_job: TranscriptionJob | None,
    ) -> PollResult:
        """One last sweep and re-check after the attempt budget is spent."""
        await self._sweep(job_id, attempts)
        sweeps += 1
        if token.cancelled:
            return self._cancelled(job_id, attempts, sweeps)

        job = await self._check(job_id, attempts)
        if token.cancelled:
            return self._cancelled(job_id, attempts, sweeps)
        if job is not None:
            last_job = job
            self._notify(job)
            if job.is_terminal:
                return self._terminal(job, attempts, sweeps)

        logger.warning(
            "Polling budget exhausted",
            extra={"job_id": job_id, "attempt": attempts},
        )
        return PollResult(
            job_id=job_id,
            state=PollState.TIMED_OUT,
            job=last_job,
            attempts=attempts,
            sweeps=sweeps,
        )

    async def _check(self, job_id: str, attempt: int) -> TranscriptionJob | None:
        try:
            return await self._fetch_job(job_id)
        except TransientIOError as exc:
            logger.warning(
                "Status check failed: %s",
                exc,
                extra={"job_id": job_id, "attempt": attempt, "error": str(exc)},
            )
            return None

    async def _sweep(self, job_id: str, attempt: int) -> None:
        try:
            await self._run_sweep()
        except TranscriptionError as exc:
            logger.warning(
                "Reconciliation sweep failed: %s",
                exc,
                extra={"job_id": job_id, "attempt": attempt, "error": str(exc)},
            )

    def _notify(self, job: TranscriptionJob) -> None:
        if self._on_update is not None:
            self._on_update(job)

    def _terminal(
        self, job: TranscriptionJob, attempts: int, sweeps: int
    ) -> PollResult:
        state = (
            PollState.COMPLETED
            if job.status is JobStatus.COMPLETED
            else PollState.FAILED
        )
        return PollResult(
            job_id=job.id, state=state, job=job, attempts=attempts, sweeps=sweeps
        )

    def _cancelled(self, job_id: str, attempts: int, sweeps: int) -> PollResult:
        return PollResult(
            job_id=job_id,
            state=PollState.CANCELLED,
            attempts=attempts,
            sweeps=sweeps,
        )

    def _record(self, result: PollResult, duration: float, mode: str) -> None:
        log_poll_metrics(
            PollMetrics(
                job_id=result.job_id,
                state=result.state.value,
                attempts=result.attempts,
                sweeps_triggered=result.sweeps,
                duration_seconds=duration,
                mode=mode,
            )
        )

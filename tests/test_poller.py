"""Tests for the progressive status poller."""

from datetime import UTC, datetime
from unittest.mock import patch

import pytest

from transcription_engine.jobs.models import JobSource, JobStatus, TranscriptionJob
from transcription_engine.jobs.poller import (
    DEFAULT_SCHEDULE,
    PollResult,
    PollSchedule,
    PollState,
    StatusPoller,
)
from transcription_engine.jobs.session import CancellationToken
from transcription_engine.utils.errors import (
    JobFailure,
    PollTimeoutError,
    StorageError,
    ValidationError,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def _job(status: JobStatus = JobStatus.IN_PROGRESS, **extra) -> TranscriptionJob:
    if status is JobStatus.COMPLETED:
        extra.setdefault("text", "hello world")
    if status is JobStatus.FAILED:
        extra.setdefault("error", "Unsupported audio")
    return TranscriptionJob(
        id="job-1",
        status=status,
        original_file_name="clip.wav",
        source=JobSource.FILE,
        created_at=NOW,
        updated_at=NOW,
        **extra,
    )


class Scripted:
    """Async fetch_job returning scripted rows; repeats the last one."""

    def __init__(self, *rows) -> None:
        self.rows = list(rows)
        self.calls = 0

    async def __call__(self, job_id: str):
        self.calls += 1
        row = self.rows[min(self.calls, len(self.rows)) - 1]
        if isinstance(row, Exception):
            raise row
        return row


class SweepCounter:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls = 0
        self.error = error

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error


@pytest.fixture
def sleeps():
    delays: list[float] = []

    async def mock_sleep(seconds):
        delays.append(seconds)

    with patch("transcription_engine.jobs.poller.asyncio.sleep", side_effect=mock_sleep):
        yield delays


class TestPollSchedule:
    """Tests for the tiered schedule arithmetic."""

    def test_default_intervals(self):
        assert [DEFAULT_SCHEDULE.interval_for(a) for a in (1, 5, 6, 10, 11, 30)] == [
            2.0, 2.0, 3.0, 3.0, 5.0, 5.0,
        ]

    def test_elapsed_before(self):
        assert DEFAULT_SCHEDULE.elapsed_before(1) == 0
        assert DEFAULT_SCHEDULE.elapsed_before(6) == 10
        assert DEFAULT_SCHEDULE.elapsed_before(11) == 25

    def test_checkpoints(self):
        assert [a for a in range(1, 31) if DEFAULT_SCHEDULE.is_checkpoint(a)] == [1, 4, 9, 16]

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            PollSchedule(max_attempts=0)
        with pytest.raises(ValueError):
            DEFAULT_SCHEDULE.interval_for(0)


class TestPoll:
    """Tests for StatusPoller.poll()."""

    async def test_completes_after_a_few_attempts(self, sleeps):
        fetch = Scripted(_job(), _job(), _job(JobStatus.COMPLETED))
        sweep = SweepCounter()
        seen: list[JobStatus] = []

        result = await StatusPoller(fetch, sweep, on_update=lambda j: seen.append(j.status)).poll("job-1")

        assert result.state is PollState.COMPLETED
        assert result.attempts == 3
        assert result.sweeps == sweep.calls == 1
        assert sleeps == [2.0, 2.0]
        assert seen[-1] is JobStatus.COMPLETED
        assert result.raise_for_outcome().text == "hello world"

    async def test_failed_job_raises_with_reason(self, sleeps):
        fetch = Scripted(_job(JobStatus.FAILED, error="Unsupported audio"))
        result = await StatusPoller(fetch, SweepCounter()).poll("job-1")

        assert result.state is PollState.FAILED
        with pytest.raises(JobFailure) as exc_info:
            result.raise_for_outcome()
        assert exc_info.value.reason == "Unsupported audio"

    async def test_timeout_after_full_schedule(self, sleeps):
        fetch = Scripted(_job())
        sweep = SweepCounter()

        result = await StatusPoller(fetch, sweep).poll("job-1")

        assert result.state is PollState.TIMED_OUT
        assert result.attempts == 30
        assert len(sleeps) == 29
        assert sum(sleeps) == DEFAULT_SCHEDULE.elapsed_before(30)
        # Four checkpoint sweeps plus the final one
        assert sweep.calls == 5
        assert fetch.calls == 31
        with pytest.raises(PollTimeoutError, match="background"):
            result.raise_for_outcome()

    async def test_final_sweep_can_find_completion(self, sleeps):
        schedule = PollSchedule(max_attempts=3, sweep_checkpoints=frozenset())
        fetch = Scripted(_job(), _job(), _job(), _job(JobStatus.COMPLETED))
        sweep = SweepCounter()

        result = await StatusPoller(fetch, sweep, schedule).poll("job-1")

        assert result.state is PollState.COMPLETED
        assert sweep.calls == 1

    async def test_transient_errors_do_not_stop_polling(self, sleeps):
        fetch = Scripted(StorageError("down", operation="get_record"), _job(JobStatus.COMPLETED))
        result = await StatusPoller(fetch, SweepCounter()).poll("job-1")
        assert result.state is PollState.COMPLETED
        assert result.attempts == 2

    async def test_sweep_failures_are_tolerated(self, sleeps):
        fetch = Scripted(_job(JobStatus.COMPLETED))
        sweep = SweepCounter(error=StorageError("down", operation="sweep"))
        result = await StatusPoller(fetch, sweep).poll("job-1")
        assert result.state is PollState.COMPLETED

    async def test_non_transient_fetch_error_propagates(self, sleeps):
        fetch = Scripted(ValidationError("bad id", field="id"))
        with pytest.raises(ValidationError):
            await StatusPoller(fetch, SweepCounter()).poll("job-1")

    async def test_missing_row_keeps_polling(self, sleeps):
        schedule = PollSchedule(max_attempts=2, sweep_checkpoints=frozenset())
        fetch = Scripted(None, None, None)
        result = await StatusPoller(fetch, SweepCounter(), schedule).poll("job-1")
        assert result.state is PollState.TIMED_OUT
        assert result.job is None


class TestCancellation:
    """Cancelled sessions stop without further notifications."""

    async def test_pre_cancelled_token(self, sleeps):
        token = CancellationToken()
        token.cancel()
        fetch = Scripted(_job())

        result = await StatusPoller(fetch, SweepCounter()).poll("job-1", token)

        assert result.state is PollState.CANCELLED
        assert fetch.calls == 0
        assert result.raise_for_outcome() is None

    async def test_cancel_during_fetch_suppresses_update(self, sleeps):
        token = CancellationToken()
        seen: list[TranscriptionJob] = []

        async def fetch(job_id):
            token.cancel()
            return _job(JobStatus.COMPLETED)

        result = await StatusPoller(fetch, SweepCounter(), on_update=seen.append).poll(
            "job-1", token
        )

        assert result.state is PollState.CANCELLED
        assert seen == []

    async def test_cancel_from_update_callback(self, sleeps):
        token = CancellationToken()
        fetch = Scripted(_job())

        result = await StatusPoller(
            fetch, SweepCounter(), on_update=lambda job: token.cancel()
        ).poll("job-1", token)

        assert result.state is PollState.CANCELLED
        assert fetch.calls == 1


class TestSmartWait:
    """Tests for StatusPoller.smart_wait()."""

    async def test_immediate_completion(self, sleeps):
        fetch = Scripted(_job(JobStatus.COMPLETED))
        sweep = SweepCounter()

        result = await StatusPoller(fetch, sweep).smart_wait("job-1")

        assert result.state is PollState.COMPLETED
        assert sleeps == []
        assert sweep.calls == 1

    async def test_completion_during_backoff(self, sleeps):
        fetch = Scripted(_job(), _job(), _job(JobStatus.COMPLETED))
        result = await StatusPoller(fetch, SweepCounter()).smart_wait("job-1")

        assert result.state is PollState.COMPLETED
        assert sleeps == [1.0, 3.0]

    async def test_falls_back_to_poll(self, sleeps):
        fetch = Scripted(*([_job()] * 5), _job(JobStatus.COMPLETED))
        sweep = SweepCounter()

        result = await StatusPoller(fetch, sweep).smart_wait("job-1")

        assert result.state is PollState.COMPLETED
        assert sleeps == [1.0, 3.0, 5.0, 8.0]
        # Five quick-step sweeps plus poll()'s first checkpoint
        assert sweep.calls == 6
        assert result.attempts == 6
        assert result.sweeps == 6

    async def test_fallback_records_one_metrics_line(self, sleeps):
        fetch = Scripted(*([_job()] * 5), _job(JobStatus.COMPLETED))

        with patch("transcription_engine.jobs.poller.log_poll_metrics") as log_metrics:
            await StatusPoller(fetch, SweepCounter()).smart_wait("job-1")

        log_metrics.assert_called_once()
        metrics = log_metrics.call_args.args[0]
        assert metrics.mode == "smart_wait"
        assert metrics.state == "COMPLETED"
        assert metrics.attempts == 6
        assert metrics.sweeps_triggered == 6


class TestPollResult:
    """Tests for PollResult.raise_for_outcome() edge cases."""

    def test_failed_without_row(self):
        with pytest.raises(JobFailure, match="unknown error"):
            PollResult(job_id="job-1", state=PollState.FAILED).raise_for_outcome()


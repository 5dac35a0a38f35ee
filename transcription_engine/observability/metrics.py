"""Reconciliation and polling metrics.

Provides SweepMetrics and PollMetrics dataclasses for structured
observability data, StageTimer for measuring wall-clock durations, and
log_* helpers that emit metrics as single structured JSON lines to stdout.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime


@dataclass
class SweepMetrics:
    """All metrics collected for a single reconciliation sweep."""

    processed: int
    fixed: int
    created: int
    skipped: int
    failed: int
    in_progress_rows: int
    duration_seconds: float
    provider: str = ""


@dataclass
class PollMetrics:
    """Outcome of one polling session for a job."""

    job_id: str
    state: str
    attempts: int
    sweeps_triggered: int
    duration_seconds: float
    mode: str = "poll"


class StageTimer:
    """Context manager that records wall-clock duration of a stage.

    Usage:
        timer = StageTimer("sweep")
        with timer:
            do_work()
        print(timer.duration_seconds)
    """

    def __init__(self, stage_name: str) -> None:
        self.stage_name = stage_name
        self.start_time: datetime | None = None
        self.end_time: datetime | None = None
        self.duration_seconds: float = 0.0
        self._mono_start: float = 0.0

    def __enter__(self) -> StageTimer:
        self.start_time = datetime.now(UTC)
        self._mono_start = time.monotonic()
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        elapsed = time.monotonic() - self._mono_start
        self.end_time = datetime.now(UTC)
        self.duration_seconds = elapsed


def _emit(metric_type: str, payload: dict) -> None:
    entry = {
        "timestamp": datetime.now(UTC).isoformat(),
        "severity": "INFO",
        "metric_type": metric_type,
        **payload,
    }
    print(json.dumps(entry))


def log_sweep_metrics(metrics: SweepMetrics) -> None:
    """Emit sweep metrics as a single structured JSON line to stdout.

    Args:
        metrics: Populated SweepMetrics dataclass.
    """
    _emit("sweep_completion", asdict(metrics))


def log_poll_metrics(metrics: PollMetrics) -> None:
    """Emit polling session metrics as a single structured JSON line.

    Args:
        metrics: Populated PollMetrics dataclass.
    """
    _emit("poll_completion", asdict(metrics))

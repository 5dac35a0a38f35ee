"""Custom exception hierarchy for the transcription job engine.

All exceptions inherit from TranscriptionError, enabling targeted handling
at component boundaries while preserving the distinguishing cause
(validation vs. transient vs. terminal provider failure vs. timeout).
"""


class TranscriptionError(Exception):
    """Base exception for all transcription engine errors."""

    def __init__(self, message: str, job_id: str | None = None) -> None:
        self.job_id = job_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.job_id:
            return f"[job={self.job_id}] {super().__str__()}"
        return super().__str__()


class ValidationError(TranscriptionError):
    """Raised for bad input (oversized or unsupported media) before any I/O."""

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        field: str | None = None,
    ) -> None:
        self.field = field
        super().__init__(message, job_id)


class TransientIOError(TranscriptionError):
    """Raised when a single network or store step fails.

    Never retried by the component that raises it; the caller's own loop
    decides whether to try again.
    """

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.operation = operation
        super().__init__(message, job_id)


class StorageError(TransientIOError):
    """Raised when object store or metadata store operations fail."""


class ProviderError(TransientIOError):
    """Raised when a call to the managed transcription service fails."""

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        operation: str | None = None,
        provider: str | None = None,
    ) -> None:
        self.provider = provider
        super().__init__(message, job_id, operation)


class JobStartError(TranscriptionError):
    """Raised when the managed service rejects job creation."""

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        provider: str | None = None,
    ) -> None:
        self.provider = provider
        super().__init__(message, job_id)


class JobFailure(TranscriptionError):
    """Raised when the managed service reports a job as FAILED."""

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        reason: str | None = None,
    ) -> None:
        self.reason = reason
        super().__init__(message, job_id)


class ReconciliationMismatch(TranscriptionError):
    """A completed provider job that cannot be matched to any metadata row."""

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        job_name: str | None = None,
    ) -> None:
        self.job_name = job_name
        super().__init__(message, job_id)


class PollTimeoutError(TranscriptionError):
    """Raised when the poll budget is exhausted before a terminal state."""

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        attempts: int = 0,
    ) -> None:
        self.attempts = attempts
        super().__init__(message, job_id)

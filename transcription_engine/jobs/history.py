"""Client-side history list: authoritative server rows merged with local ones.

The server list is the source of truth. Jobs the client has just submitted
are shown optimistically as ``local-pending`` entries until the server
returns them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

from transcription_engine.jobs.models import JobStatus, TranscriptionJob
from transcription_engine.jobs.session import ClientSession

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 10


class Provenance(str, Enum):
    SERVER = "server"
    LOCAL_PENDING = "local-pending"


@dataclass(frozen=True)
class HistoryEntry:
    """A TranscriptionJob as shown in the history list."""

    job: TranscriptionJob
    provenance: Provenance

    @property
    def id(self) -> str:
        return self.job.id

    @property
    def created_at(self) -> datetime:
        return self.job.created_at


class HistorySource(Protocol):
    """Where the authoritative history comes from."""

    async def list_jobs(
        self, status: JobStatus | None = None, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> list[TranscriptionJob]: ...

    async def remove(self, job_id: str) -> bool: ...


def merge_history(
    server_entries: list[HistoryEntry], local_entries: list[HistoryEntry]
) -> list[HistoryEntry]:
    """Combine server and local entries into one list.

    Server entries win over local entries with the same id; local-only
    entries are kept. The result holds one entry per id, newest first.
    """
    merged: dict[str, HistoryEntry] = {}
    for entry in server_entries:
        merged.setdefault(entry.id, entry)
    for entry in local_entries:
        merged.setdefault(entry.id, entry)
    return sorted(merged.values(), key=lambda e: e.created_at, reverse=True)


class HistoryView:
    """The merged history list for one client session."""

    def __init__(
        self,
        session: ClientSession,
        status: JobStatus | None = JobStatus.COMPLETED,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self._session = session
        self.status = status
        self.limit = limit
        self._entries: list[HistoryEntry] = []

    @property
    def entries(self) -> list[HistoryEntry]:
        return list(self._entries)

    def add_pending(self, job: TranscriptionJob) -> None:
        """Show a just-submitted job before the server lists it."""
        pending = HistoryEntry(job=job, provenance=Provenance.LOCAL_PENDING)
        self._entries = merge_history([], [pending, *self._entries])

    def update(self, job: TranscriptionJob) -> None:
        """Replace the entry for ``job.id`` with a newer observation."""
        self._entries = [
            HistoryEntry(job=job, provenance=entry.provenance)
            if entry.id == job.id
            else entry
            for entry in self._entries
        ]

    async def refresh(self, source: HistorySource) -> bool:
        """Re-fetch the authoritative list and merge local-only entries.

        Rate limited by the session; a call inside the window is a no-op.
        A failed fetch does not count against the rate limit.

        Returns:
            True if the list was refreshed.

        Raises:
            TransientIOError: If the source cannot be reached.
        """
        if not self._session.try_acquire_refresh():
            logger.debug("History refresh skipped by rate limit")
            return False

        try:
            jobs = await source.list_jobs(status=self.status, limit=self.limit)
        except Exception:
            self._session.release_refresh()
            raise
        server = [HistoryEntry(job=job, provenance=Provenance.SERVER) for job in jobs]
        local = [e for e in self._entries if e.provenance is Provenance.LOCAL_PENDING]
        self._entries = merge_history(server, local)
        return True

    async def remove(self, source: HistorySource, job_id: str) -> None:
        """Delete a job on the server, then drop it locally.

        Raises:
            TransientIOError: If the server delete fails; the local entry
                is kept.
        """
        await source.remove(job_id)
        self._entries = [e for e in self._entries if e.id != job_id]

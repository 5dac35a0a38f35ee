"""Per-client session state: history refresh rate limit and cancellation.

A ClientSession replaces process-wide mutable state. Each UI session owns
one; it remembers when the history list was last refreshed and hands out a
CancellationToken per job being polled so that abandoning the session (or
starting a new poll for the same job) stops the old poller.
"""

from __future__ import annotations

import time
from collections.abc import Callable

HISTORY_REFRESH_INTERVAL_SECONDS = 2.0


class CancellationToken:
    """Cooperative cancellation flag checked by the poller."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class ClientSession:
    """State scoped to one client session.

    Args:
        refresh_interval: Minimum seconds between history refreshes.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        refresh_interval: float = HISTORY_REFRESH_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.refresh_interval = refresh_interval
        self._clock = clock
        self._last_refresh: float | None = None
        self._previous_refresh: float | None = None
        self._tokens: dict[str, CancellationToken] = {}

    def try_acquire_refresh(self) -> bool:
        """Claim the refresh slot if the rate limit allows it.

        Returns:
            True if a refresh may run now (and records it), False otherwise.
        """
        now = self._clock()
        if (
            self._last_refresh is not None
            and now - self._last_refresh < self.refresh_interval
        ):
            return False
        self._previous_refresh = self._last_refresh
        self._last_refresh = now
        return True

    def release_refresh(self) -> None:
        """Give back a claimed refresh slot after the refresh failed."""
        self._last_refresh = self._previous_refresh

    def token_for(self, job_id: str) -> CancellationToken:
        """Return a fresh token for polling ``job_id``.

        Any earlier poller for the same job is cancelled.
        """
        previous = self._tokens.get(job_id)
        if previous is not None:
            previous.cancel()
        token = CancellationToken()
        self._tokens[job_id] = token
        return token

    def release(self, job_id: str, token: CancellationToken) -> None:
        """Forget a token once its poller has finished."""
        if self._tokens.get(job_id) is token:
            del self._tokens[job_id]

    def cancel_all(self) -> None:
        """Cancel every active poller, e.g. when the user leaves the view."""
        for token in self._tokens.values():
            token.cancel()
        self._tokens.clear()

    @property
    def active_jobs(self) -> list[str]:
        return list(self._tokens)

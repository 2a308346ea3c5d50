"""Exception hierarchy for Ergon.

Only conditions that end a run or reject it outright are exceptions.
Tool-level failures are never raised out of the executor; they come back
as typed ``ToolInvocationResult`` values and are fed to the model.
"""

from __future__ import annotations


class ErgonError(Exception):
    """Base class for all Ergon errors."""


class ProviderError(ErgonError):
    """A reasoning provider call failed.

    ``kind`` is ``transport_error`` or ``timeout``. ``retryable`` tells the
    loop whether another attempt may succeed (429, 5xx, timeouts,
    connection failures) or not (400, auth errors, malformed responses).
    """

    def __init__(
        self,
        message: str,
        *,
        kind: str = "transport_error",
        retryable: bool = True,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after = retry_after


class SessionNotFoundError(ErgonError):
    """The session store has no session with the requested id."""


class SessionBusyError(ErgonError):
    """A run is already in flight for this session and the runner rejects overlap."""


class ConcurrentModificationError(ErgonError):
    """A compare-and-swap save lost against a concurrent writer."""

    def __init__(self, session_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Session {session_id} was modified concurrently "
            f"(expected version {expected}, found {actual})"
        )
        self.session_id = session_id
        self.expected = expected
        self.actual = actual


class ContextOverflowError(ErgonError):
    """The assembled request does not fit the provider context window even after compaction."""

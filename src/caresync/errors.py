"""Error taxonomy for synchronization.

Every failure a sync attempt can report is a :class:`SyncError`. The
``retryable`` flag tells the caller whether retrying without changing anything
can succeed; no subclass except :class:`ProgrammingError` leaves state changed.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for synchronization failures."""

    retryable: bool = False

    def __init__(self, message: str = "", *, status_code: int | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.status_code = status_code


class TransportFailure(SyncError):
    """No usable response from the remote (connection error, bad payload)."""

    retryable = True


class SyncTimeoutError(TransportFailure):
    """A pull, push or policy decision did not complete in time."""


class RemoteServerError(TransportFailure):
    """The remote answered with a 5xx status."""


class RemoteRejected(SyncError):
    """The remote refused the request (4xx); needs caller correction."""

    retryable = False


class RemoteConflict(RemoteRejected):
    """The remote refused a push because it diverged since the last pull.

    Retrying re-pulls the newer remote state, so this is retryable.
    """

    retryable = True


class InvalidRevision(RemoteRejected):
    """A pushed revision references task versions the receiver does not hold."""


class ApplyFailure(SyncError):
    """The local transaction could not commit and was rolled back."""

    retryable = True


class SyncInProgressError(SyncError):
    """Another sync attempt for the same store and remote is running."""

    retryable = True


class SyncCancelledError(SyncError):
    """The attempt was cancelled; the local transaction was rolled back."""

    retryable = True


class ProgrammingError(SyncError):
    """A caller contract was violated, e.g. a Delete issued for a Task."""

    retryable = False

"""Error taxonomy of the reconciliation core.

Transient errors (network, timeouts, write conflicts) are retried with
backoff. Permanent errors (invalid spec) are reported through the status and
park the Workload until its spec changes. A `NotFoundError` means the Workload
no longer exists and triggers the cleanup path.
"""


class WorkopError(Exception):
    """Base class for all errors raised by the core."""


class TransientError(WorkopError):
    """The operation may succeed if retried later."""


class ConflictError(TransientError):
    """Optimistic concurrency check failed during a write."""

    def __init__(self, key: str, expected: int, actual: int):
        super().__init__(f"{key}: expected version {expected} but found {actual}")
        self.key = key
        self.expected = expected
        self.actual = actual


class PermanentError(WorkopError):
    """The Workload cannot be reconciled until its spec changes."""


class NotFoundError(WorkopError):
    """The Workload does not exist (anymore)."""


class AlreadyExistsError(WorkopError):
    """A Workload with the same identity already exists."""

from __future__ import annotations

__all__ = [
    "JSIError",
    "PreconditionError",
    "UserAbort",
    "ReconciliationError",
    "SnapshotMissingError",
    "SnapshotCorruptError",
]


class JSIError(Exception):
    """Base class for every error reported to the operator."""


class PreconditionError(JSIError):
    """A required folder, file or value is missing or inconsistent.

    Raised before anything on disk has been touched.
    """


class UserAbort(JSIError):
    """The operator declined a confirmation prompt."""


class ReconciliationError(JSIError):
    """The job folder is not in a state that can be reconciled."""


class SnapshotMissingError(ReconciliationError):
    """No snapshot is stored for a directory index."""


class SnapshotCorruptError(ReconciliationError):
    """A stored snapshot exists but cannot be read back."""

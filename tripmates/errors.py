"""Error taxonomy shared by the Tripmates sync layer."""

from __future__ import annotations

from typing import List, Optional, Sequence


class GroupSyncError(RuntimeError):
    """Base class for failures raised by the group sync layer."""


class ConfigurationError(GroupSyncError):
    """Raised when required settings are missing or malformed."""


class ValidationError(GroupSyncError, ValueError):
    """Raised when a payload is rejected before any write is issued."""

    def __init__(self, message: str, *, problems: Optional[Sequence[str]] = None) -> None:
        super().__init__(message)
        self.problems: List[str] = list(problems or [message])


class ConnectivityError(GroupSyncError):
    """Raised when the session store cannot be reached."""


class NotFoundError(GroupSyncError):
    """Raised when a record targeted by a delete or update no longer exists."""

    def __init__(self, path: str, record_id: str) -> None:
        super().__init__(f"No record {record_id!r} under {path}")
        self.path = path
        self.record_id = record_id


class VersionConflictError(GroupSyncError):
    """Raised when a guarded update lost a race against another writer."""

    def __init__(self, path: str, record_id: str, expected_version: int) -> None:
        super().__init__(
            f"Record {record_id!r} under {path} is no longer at version {expected_version}"
        )
        self.path = path
        self.record_id = record_id
        self.expected_version = expected_version


class VoteConflictError(GroupSyncError):
    """Raised when a vote could not be applied after repeated write conflicts."""


__all__ = [
    "ConfigurationError",
    "ConnectivityError",
    "GroupSyncError",
    "NotFoundError",
    "ValidationError",
    "VersionConflictError",
    "VoteConflictError",
]

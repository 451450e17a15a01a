"""
Errors — Failure taxonomy for the knowledge store

Absent collection files are NOT errors: readers treat them as empty.
Everything else propagates to the caller; nothing here retries.
"""

from pathlib import Path
from typing import List, Optional, Sequence


class TeamContextError(Exception):
    """Base class for every teamcontext failure."""


class NotFoundError(TeamContextError):
    """A specific entity (feature, file entry, pattern) does not exist."""

    def __init__(self, kind: str, key: str, suggestions: Optional[Sequence[str]] = None):
        self.kind = kind
        self.key = key
        self.suggestions = list(suggestions or [])
        message = f"{kind} not found: {key}"
        if self.suggestions:
            message += f" (did you mean: {', '.join(self.suggestions)}?)"
        super().__init__(message)


class StoreIOError(TeamContextError):
    """Disk read/write/rename failed. Never swallowed on write paths."""

    def __init__(self, path: Path, cause: OSError):
        self.path = Path(path)
        self.cause = cause
        super().__init__(f"I/O failure on {self.path}: {cause}")


class DecodeError(TeamContextError):
    """A collection file exists but does not hold the expected JSON."""

    def __init__(self, path: Path, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Malformed knowledge file {self.path}: {reason}")


class FeatureExistsError(TeamContextError):
    """Feature IDs are unique across active and archived features combined."""

    def __init__(self, feature_id: str, location: str):
        self.feature_id = feature_id
        self.location = location
        super().__init__(f"Feature already exists ({location}): {feature_id}")


class FeatureStateError(TeamContextError):
    """Lifecycle transition not allowed from the feature's current state."""

    def __init__(self, feature_id: str, message: str):
        self.feature_id = feature_id
        super().__init__(f"{feature_id}: {message}")


class MergeConflictError(TeamContextError):
    """A merge conflict touched paths the sync protocol does not own."""

    def __init__(self, paths: List[str]):
        self.paths = list(paths)
        super().__init__(f"Conflict outside knowledge directory: {', '.join(self.paths)}")


class SyncError(TeamContextError):
    """A sync step failed. Reported in the sync report, not raised to callers."""

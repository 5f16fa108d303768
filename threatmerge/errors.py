"""Error taxonomy for the merge engine.

Every error raised by the engine derives from MergeError and carries enough
context (primary id, offending source id) to retry or investigate.

    ValidationError              fatal — malformed input, no I/O performed
    NotFoundError                fatal — primary model absent, nothing written
    SourceUnavailable            NOT fatal — absorbed into metrics by the orchestrator
    BackendError                 fatal — relational failure, transaction rolled back
    PartialPersistenceError      fatal — blob write failed, earlier blob writes persist
    ConcurrentModificationError  fatal — another writer bumped the blob generation

Backend library exceptions (aiosqlite.Error, redis.RedisError) are wrapped at
the adapter seam with ``raise ... from exc``; the original is kept as __cause__.
"""

from __future__ import annotations

from typing import Optional


class MergeError(Exception):
    """Base class for all merge engine errors."""

    error_type: str = "merge_error"

    def __init__(
        self,
        message: str,
        *,
        primary_id: Optional[str] = None,
        source_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.primary_id = primary_id
        self.source_id = source_id

    def to_dict(self) -> dict:
        return {
            "type": self.error_type,
            "message": self.message,
            "primary_id": self.primary_id,
            "source_id": self.source_id,
        }


class ValidationError(MergeError):
    """Missing or malformed primary id or source id list."""

    error_type = "validation_error"


class NotFoundError(MergeError):
    """The primary model does not exist in the backend its id resolves to."""

    error_type = "not_found"


class SourceUnavailable(MergeError):
    """A source model is absent or unreadable.

    Raised by the loaders, caught by the orchestrator and recorded in the
    merge metrics. Never reaches the caller of merge_threat_models().
    """

    error_type = "source_unavailable"


class BackendError(MergeError):
    """Relational read/write failure. The merge transaction has been rolled back."""

    error_type = "backend_error"


class PartialPersistenceError(MergeError):
    """Blob backend write failed mid-merge.

    Blob writes have no rollback: threats appended before the failure stay in
    the primary document. Callers must treat the primary as needing manual
    reconciliation.
    """

    error_type = "partial_persistence"


class ConcurrentModificationError(PartialPersistenceError):
    """The blob primary's generation changed since it was loaded."""

    error_type = "concurrent_modification"

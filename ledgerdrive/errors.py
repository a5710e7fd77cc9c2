"""
Error taxonomy for the ledger-backed object store.

Every error carries a stable machine-readable ``error`` code and a human-readable
message; the Lambda boundary maps the class to an HTTP status.
"""

from __future__ import annotations

from typing import Any


class LedgerDriveError(Exception):
    """Base class for all object-store errors."""

    error = "internal_error"

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(LedgerDriveError):
    """Raised when required environment configuration is missing or invalid."""

    error = "configuration_error"


class BadRequestError(LedgerDriveError, ValueError):
    """Raised when request validation fails."""

    error = "bad_request"


class UnauthorizedError(LedgerDriveError):
    """Raised when no verified caller identity is available."""

    error = "unauthorized"


class ForbiddenError(LedgerDriveError):
    """Raised when the caller may not act on the target object."""

    error = "forbidden"


class ObjectNotFound(LedgerDriveError):
    error = "object_not_found"


class ObjectGone(LedgerDriveError):
    """Raised for any operation on an object whose token has been burned."""

    error = "object_gone"


class EnvelopeTooLarge(LedgerDriveError):
    error = "envelope_too_large"

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(
            f"Serialized envelope is {size} bytes; the ledger record limit is {limit} bytes",
            details={"size_bytes": size, "limit_bytes": limit},
        )
        self.size = size
        self.limit = limit


class EnvelopeCorrupt(LedgerDriveError):
    error = "envelope_corrupt"


class EnvelopeHashMismatch(EnvelopeCorrupt):
    error = "envelope_hash_mismatch"

    def __init__(self, stored_hash: str | None, computed_hash: str) -> None:
        super().__init__(
            "Envelope content does not match its stored content hash",
            details={"stored_hash": stored_hash, "computed_hash": computed_hash},
        )
        self.stored_hash = stored_hash
        self.computed_hash = computed_hash


class LedgerRejected(LedgerDriveError):
    error = "ledger_rejected"

    def __init__(self, reason: str, transaction_id: str | None = None) -> None:
        super().__init__(f"Ledger rejected the transaction: {reason}", details={"transaction_id": transaction_id})
        self.reason = reason
        self.transaction_id = transaction_id


class LedgerTimeout(LedgerDriveError):
    """Raised when no receipt is observed within the poll budget.

    The transaction may still reach consensus later; a timeout only stops waiting.
    """

    error = "ledger_timeout"

    def __init__(self, transaction_id: str | None, polls: int, elapsed_seconds: float) -> None:
        super().__init__(
            f"No receipt after {polls} polls ({elapsed_seconds:.1f}s)",
            details={"transaction_id": transaction_id, "polls": polls},
        )
        self.transaction_id = transaction_id
        self.polls = polls
        self.elapsed_seconds = elapsed_seconds


class VersionConflict(LedgerDriveError):
    error = "version_conflict"

    def __init__(self, current_version: str, requested_version: str) -> None:
        super().__init__(
            f"Version {requested_version} must be greater than current version {current_version}",
            details={"current_version": current_version, "requested_version": requested_version},
        )
        self.current_version = current_version
        self.requested_version = requested_version


class FolderNotEmpty(LedgerDriveError):
    error = "folder_not_empty"


class IndexWriteFailed(LedgerDriveError):
    """Raised when a secondary index call fails; non-fatal after a successful ledger write."""

    error = "index_write_failed"


class BlobStoreError(LedgerDriveError):
    error = "blob_store_error"


class NameConflict(LedgerDriveError):
    """Raised when unique names are enforced and the parent already holds the name."""

    error = "name_conflict"

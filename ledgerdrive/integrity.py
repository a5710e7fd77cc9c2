"""
Integrity verifier.

Checks two things for one object: the ledger record is self-consistent (stored
content hash matches recomputed content) and the index pointer is pure (no
metadata, no content, nothing outside the pointer schema). Read-only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ledgerdrive.blobs import BlobStore
from ledgerdrive.envelope import decode_envelope, sha256_hex
from ledgerdrive.errors import BlobStoreError, EnvelopeCorrupt, ObjectNotFound
from ledgerdrive.index import ObjectIndex, impure_fields
from ledgerdrive.ledger import LedgerClient

ISSUE_ENVELOPE_CORRUPT = "envelope_corrupt"
ISSUE_HASH_MISMATCH = "hash_mismatch"
ISSUE_METADATA_HASH_MISMATCH = "metadata_hash_mismatch"
ISSUE_BLOB_UNAVAILABLE = "blob_unavailable"
ISSUE_INDEX_RECORD_MISSING = "index_record_missing"
ISSUE_INDEX_HAS_METADATA = "index_has_metadata"
ISSUE_INDEX_UNKNOWN_FIELDS = "index_unknown_fields"
ISSUE_ORPHANED_INDEX_POINTER = "orphaned_index_pointer"

_MISSING = object()


@dataclass(frozen=True)
class VerificationResult:
    object_id: str
    integrity_valid: bool
    ledger_hash: str | None
    recomputed_hash: str | None
    index_has_metadata: bool
    index_record_present: bool
    ledger_deleted: bool
    forbidden_index_fields: tuple[str, ...] = ()
    unknown_index_fields: tuple[str, ...] = ()
    issues: tuple[str, ...] = field(default_factory=tuple)


class IntegrityVerifier:
    def __init__(self, ledger: LedgerClient, index: ObjectIndex, blob_store: BlobStore | None = None) -> None:
        self.ledger = ledger
        self.index = index
        self.blob_store = blob_store

    def verify(self, object_id: str) -> VerificationResult:
        return self.verify_pointer(object_id, _MISSING)

    def verify_pointer(self, object_id: str, index_item: Any = _MISSING) -> VerificationResult:
        """Verify ``object_id``; pass the already-scanned index row to skip the index read."""
        if index_item is _MISSING:
            index_item = self.index.get_item(object_id)
        issues: list[str] = []

        try:
            record = self.ledger.query_record(object_id)
        except ObjectNotFound:
            if not index_item:
                raise
            record = None

        ledger_consistent = True
        ledger_hash: str | None = None
        recomputed_hash: str | None = None
        ledger_deleted = bool(record and record.deleted)

        if record is None:
            ledger_consistent = False
            issues.append(ISSUE_ORPHANED_INDEX_POINTER)
        else:
            try:
                envelope = decode_envelope(record.envelope, verify_hash=False)
            except EnvelopeCorrupt:
                ledger_consistent = False
                issues.append(ISSUE_ENVELOPE_CORRUPT)
                envelope = None

            if envelope is not None:
                ledger_hash = envelope.content_hash
                content = envelope.content
                if envelope.is_external:
                    content = self._fetch_blob(envelope.content_ref)
                    if content is None:
                        ledger_consistent = False
                        issues.append(ISSUE_BLOB_UNAVAILABLE)
                if content is not None:
                    recomputed_hash = sha256_hex(content)
                    if recomputed_hash != ledger_hash:
                        ledger_consistent = False
                        issues.append(ISSUE_HASH_MISMATCH)
                metadata_hash = envelope.metadata.get("contentHash")
                if ledger_hash is not None and metadata_hash not in (None, "") and metadata_hash != ledger_hash:
                    ledger_consistent = False
                    issues.append(ISSUE_METADATA_HASH_MISMATCH)

            if ledger_deleted and index_item:
                ledger_consistent = False
                issues.append(ISSUE_ORPHANED_INDEX_POINTER)

        forbidden: list[str] = []
        unknown: list[str] = []
        if index_item:
            forbidden, unknown = impure_fields(index_item)
            if forbidden:
                issues.append(ISSUE_INDEX_HAS_METADATA)
            if unknown:
                issues.append(ISSUE_INDEX_UNKNOWN_FIELDS)
        elif not ledger_deleted:
            issues.append(ISSUE_INDEX_RECORD_MISSING)

        index_pure = not forbidden and not unknown
        return VerificationResult(
            object_id=object_id,
            integrity_valid=ledger_consistent and index_pure,
            ledger_hash=ledger_hash,
            recomputed_hash=recomputed_hash,
            index_has_metadata=bool(forbidden),
            index_record_present=bool(index_item),
            ledger_deleted=ledger_deleted,
            forbidden_index_fields=tuple(forbidden),
            unknown_index_fields=tuple(unknown),
            issues=tuple(issues),
        )

    def _fetch_blob(self, content_ref: str | None) -> bytes | None:
        if self.blob_store is None or not content_ref:
            return None
        try:
            return self.blob_store.get(content_ref)
        except BlobStoreError:
            return None

"""
Object lifecycle manager.

Per object: Nonexistent -> Created -> (Updated)* -> Deleted. The ledger record
is authoritative for metadata and content; the secondary index only holds
pointers used for listing. Index writes happen after the ledger write has
reached consensus and their failure never fails the operation: the result
reports ``index_consistent=False`` and the integrity sweep reconciles later.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from aws_lambda_powertools import Logger

from ledgerdrive.blobs import BlobStore
from ledgerdrive.config import POLICY_EXTERNALIZE, POLICY_REJECT, Settings
from ledgerdrive.envelope import (
    Envelope,
    decode_envelope,
    encode_envelope,
    encode_reference_envelope,
    reencode_envelope,
    sha256_hex,
)
from ledgerdrive.errors import (
    BadRequestError,
    BlobStoreError,
    EnvelopeTooLarge,
    FolderNotEmpty,
    ForbiddenError,
    IndexWriteFailed,
    NameConflict,
    ObjectGone,
    VersionConflict,
)
from ledgerdrive.index import ObjectIndex
from ledgerdrive.ledger import LedgerClient, LedgerRecord, TokenParams, Web3LedgerClient
from ledgerdrive.models import (
    CONTENT_EXTERNAL,
    CONTENT_INLINE,
    FILE,
    FOLDER,
    DeleteResult,
    File,
    Folder,
    IndexPage,
    IndexRecord,
    LedgerMetadata,
    ObjectContent,
    WriteResult,
    object_from_metadata,
    parse_version,
    version_greater,
)

logger = Logger(service="ledgerdrive", child=True)

NAME_MAX_LEN = 255
TOKEN_NAME_MAX_LEN = 100
LIST_LIMIT_MAX = 1000
FOLDER_SYMBOL = "FOLDER"
FILE_SYMBOL = "FILE"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _validate_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise BadRequestError("name is required")
    candidate = name.strip()
    if len(candidate) > NAME_MAX_LEN:
        raise BadRequestError(f"name must be at most {NAME_MAX_LEN} characters")
    if "/" in candidate or candidate in {".", ".."}:
        raise BadRequestError("name must be a single path segment")
    return candidate


def next_version(version: str) -> str:
    parse_version(version)
    parts = version.strip().split(".")
    parts[-1] = str(int(parts[-1]) + 1)
    return ".".join(parts)


class WriteAuthorizer:
    """Decides whether an actor may modify an object or write into a folder."""

    def authorize_write(self, actor_id: str, target: Folder | File) -> None:
        raise NotImplementedError


class OwnerOnlyAuthorizer(WriteAuthorizer):
    def authorize_write(self, actor_id: str, target: Folder | File) -> None:
        if target.owner_id != actor_id:
            raise ForbiddenError(f"Caller may not modify {target.object_type} {target.object_id}")


class ObjectStore:
    def __init__(
        self,
        ledger: LedgerClient,
        index: ObjectIndex,
        record_max_bytes: int,
        large_content_policy: str = POLICY_REJECT,
        blob_store: BlobStore | None = None,
        authorizer: WriteAuthorizer | None = None,
        enforce_unique_names: bool = False,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if large_content_policy == POLICY_EXTERNALIZE and blob_store is None:
            raise ValueError("externalize policy requires a blob store")
        self.ledger = ledger
        self.index = index
        self.record_max_bytes = record_max_bytes
        self.large_content_policy = large_content_policy
        self.blob_store = blob_store
        self.authorizer = authorizer or OwnerOnlyAuthorizer()
        self.enforce_unique_names = enforce_unique_names
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        ledger: LedgerClient | None = None,
        index: ObjectIndex | None = None,
        blob_store: BlobStore | None = None,
    ) -> "ObjectStore":
        if blob_store is None and settings.content_blob_bucket:
            blob_store = BlobStore.from_settings(settings)
        return cls(
            ledger=ledger or Web3LedgerClient.from_settings(settings),
            index=index or ObjectIndex.from_settings(settings),
            record_max_bytes=settings.record_max_bytes,
            large_content_policy=settings.large_content_policy,
            blob_store=blob_store,
            enforce_unique_names=settings.enforce_unique_names,
        )

    def _now(self) -> str:
        return self._clock().isoformat()

    def _load(self, object_id: str) -> tuple[LedgerRecord, Envelope, Folder | File]:
        record = self.ledger.query_record(object_id)
        if record.deleted:
            raise ObjectGone(f"Object {object_id} has been deleted")
        envelope = decode_envelope(record.envelope)
        return record, envelope, object_from_metadata(record.object_id, envelope.metadata)

    def _writable_folder(self, folder_id: str, actor_id: str) -> Folder:
        _, _, folder = self._load(folder_id)
        if not isinstance(folder, Folder):
            raise BadRequestError(f"Parent {folder_id} is not a folder")
        self.authorizer.authorize_write(actor_id, folder)
        return folder

    def _check_unique_name(self, parent_id: str | None, owner_id: str, name: str, object_id: str | None = None) -> None:
        if not self.enforce_unique_names:
            return
        existing = self.index.find_by_name(parent_id, owner_id, name)
        if existing is not None and existing.object_id != object_id:
            raise NameConflict(f"{name!r} already exists in this folder", details={"object_id": existing.object_id})

    def _index_write(self, action: str, object_id: str, transaction_id: str, write: Callable[[], None]) -> bool:
        try:
            write()
        except (IndexWriteFailed, VersionConflict) as exc:
            logger.warning(
                "Index write failed after ledger commit",
                extra={
                    "action": action,
                    "object_id": object_id,
                    "transaction_id": transaction_id,
                    "error": exc.error,
                },
            )
            return False
        return True

    def _sync_index_pointer(
        self,
        obj: Folder | File,
        transaction_id: str,
        updated_at: str,
        expected_version: str | None = None,
    ) -> bool:
        def write() -> None:
            existing = self.index.get_record(obj.object_id)
            record = IndexRecord(
                object_id=obj.object_id,
                owner_id=obj.owner_id,
                name=obj.name,
                object_type=obj.object_type,
                created_at=obj.created_at,
                transaction_id=existing.transaction_id if existing else transaction_id,
                parent_id=obj.parent_folder_id,
                version=obj.version,
                updated_at=updated_at,
                last_transaction_id=transaction_id,
            )
            if existing is None:
                self.index.put(record)
            else:
                self.index.replace(record, expected_version=expected_version)

        return self._index_write("update", obj.object_id, transaction_id, write)

    def _encode_file(self, file: File, content: bytes, timestamp: str, extra: dict[str, Any] | None = None) -> tuple[File, bytes]:
        inline = replace(file, content_location=CONTENT_INLINE)
        try:
            return inline, encode_envelope(
                inline.to_metadata(), content, max_bytes=self.record_max_bytes, timestamp=timestamp, extra=extra
            )
        except EnvelopeTooLarge:
            if self.large_content_policy != POLICY_EXTERNALIZE:
                raise

        external = replace(file, content_location=CONTENT_EXTERNAL)
        content_ref, content_hash = self.blob_store.put(content)
        return external, encode_reference_envelope(
            external.to_metadata(),
            content_ref,
            content_hash,
            max_bytes=self.record_max_bytes,
            timestamp=timestamp,
            extra=extra,
        )

    def create_folder(
        self,
        name: str,
        owner_id: str,
        parent_folder_id: str | None = None,
        extra_metadata: dict[str, Any] | None = None,
    ) -> WriteResult:
        name = _validate_name(name)
        path = f"/{name}"
        if parent_folder_id:
            parent = self._writable_folder(parent_folder_id, owner_id)
            path = f"{parent.path.rstrip('/')}/{name}"
        self._check_unique_name(parent_folder_id or None, owner_id, name)

        now = self._now()
        folder = Folder(
            object_id=None,
            name=name,
            owner_id=owner_id,
            parent_folder_id=parent_folder_id or None,
            created_at=now,
            path=path,
            network=self.ledger.network,
            extra=dict(extra_metadata or {}),
        )
        envelope = encode_envelope(folder.to_metadata(), max_bytes=self.record_max_bytes, timestamp=now)
        result = self.ledger.submit_create(
            envelope, TokenParams(name=f"Folder: {name}"[:TOKEN_NAME_MAX_LEN], symbol=FOLDER_SYMBOL)
        )
        folder = replace(folder, object_id=result.object_id)

        record = IndexRecord(
            object_id=result.object_id,
            owner_id=owner_id,
            name=name,
            object_type=FOLDER,
            created_at=now,
            transaction_id=result.transaction_id,
            parent_id=folder.parent_folder_id,
            version=folder.version,
        )
        consistent = self._index_write("create", result.object_id, result.transaction_id, lambda: self.index.put(record))
        logger.info("Folder created", extra={"object_id": result.object_id, "transaction_id": result.transaction_id})
        return WriteResult(object=folder, transaction_id=result.transaction_id, index_consistent=consistent)

    def create_file(self, name: str, content: bytes, owner_id: str, parent_folder_id: str) -> WriteResult:
        name = _validate_name(name)
        if not isinstance(content, (bytes, bytearray)):
            raise BadRequestError("content must be bytes")
        if not parent_folder_id:
            raise BadRequestError("parent_folder_id is required")
        content = bytes(content)
        self._writable_folder(parent_folder_id, owner_id)
        self._check_unique_name(parent_folder_id, owner_id, name)

        now = self._now()
        file, envelope = self._encode_file(
            File(
                object_id=None,
                name=name,
                owner_id=owner_id,
                parent_folder_id=parent_folder_id,
                content_hash=sha256_hex(content),
                content_size=len(content),
                created_at=now,
                network=self.ledger.network,
            ),
            content,
            now,
        )
        result = self.ledger.submit_create(
            envelope, TokenParams(name=f"File: {name}"[:TOKEN_NAME_MAX_LEN], symbol=FILE_SYMBOL)
        )
        file = replace(file, object_id=result.object_id)

        record = IndexRecord(
            object_id=result.object_id,
            owner_id=owner_id,
            name=name,
            object_type=FILE,
            created_at=now,
            transaction_id=result.transaction_id,
            parent_id=parent_folder_id,
            version=file.version,
        )
        consistent = self._index_write("create", result.object_id, result.transaction_id, lambda: self.index.put(record))
        logger.info(
            "File created",
            extra={
                "object_id": result.object_id,
                "transaction_id": result.transaction_id,
                "content_location": file.content_location,
            },
        )
        return WriteResult(object=file, transaction_id=result.transaction_id, index_consistent=consistent)

    def update_file(
        self,
        object_id: str,
        new_content: bytes,
        new_version: str,
        actor_id: str,
        name: str | None = None,
        expected_version: str | None = None,
    ) -> WriteResult:
        parse_version(new_version)
        if not isinstance(new_content, (bytes, bytearray)):
            raise BadRequestError("content must be bytes")
        new_content = bytes(new_content)

        _, envelope, current = self._load(object_id)
        if not isinstance(current, File):
            raise BadRequestError(f"Object {object_id} is not a file")
        self.authorizer.authorize_write(actor_id, current)
        if not version_greater(new_version, current.version):
            raise VersionConflict(current.version, new_version)
        if expected_version is not None:
            pointer = self.index.get_record(object_id)
            indexed_version = pointer.version if pointer else None
            if indexed_version != expected_version:
                raise VersionConflict(indexed_version or current.version, expected_version)

        new_name = _validate_name(name) if name is not None else current.name
        if new_name != current.name:
            self._check_unique_name(current.parent_folder_id, current.owner_id, new_name, object_id)

        now = self._now()
        file, encoded = self._encode_file(
            replace(
                current,
                name=new_name,
                content_hash=sha256_hex(new_content),
                content_size=len(new_content),
                version=new_version,
                updated_at=now,
            ),
            new_content,
            now,
            extra=envelope.extra,
        )
        transaction_id = self.ledger.submit_update(object_id, encoded)
        consistent = self._sync_index_pointer(file, transaction_id, now, expected_version=expected_version)
        logger.info(
            "File updated",
            extra={"object_id": object_id, "transaction_id": transaction_id, "version": new_version},
        )
        return WriteResult(object=file, transaction_id=transaction_id, index_consistent=consistent)

    def update_folder(
        self,
        object_id: str,
        name: str,
        actor_id: str,
        extra_metadata: dict[str, Any] | None = None,
    ) -> WriteResult:
        new_name = _validate_name(name)
        _, envelope, current = self._load(object_id)
        if not isinstance(current, Folder):
            raise BadRequestError(f"Object {object_id} is not a folder")
        self.authorizer.authorize_write(actor_id, current)
        if new_name != current.name:
            self._check_unique_name(current.parent_folder_id, current.owner_id, new_name, object_id)

        parent_path = current.path.rsplit("/", 1)[0] if "/" in current.path else ""
        extra = dict(current.extra)
        extra.update(extra_metadata or {})

        now = self._now()
        folder = replace(
            current,
            name=new_name,
            path=f"{parent_path}/{new_name}",
            updated_at=now,
            version=next_version(current.version),
            extra=extra,
        )
        if envelope.is_legacy:
            logger.info("Upgrading legacy folder record", extra={"object_id": object_id})
        encoded = reencode_envelope(
            replace(envelope, metadata=folder.to_metadata(), timestamp=now), max_bytes=self.record_max_bytes
        )
        transaction_id = self.ledger.submit_update(object_id, encoded)
        consistent = self._sync_index_pointer(folder, transaction_id, now)
        logger.info("Folder updated", extra={"object_id": object_id, "transaction_id": transaction_id})
        return WriteResult(object=folder, transaction_id=transaction_id, index_consistent=consistent)

    def delete_object(self, object_id: str, actor_id: str) -> DeleteResult:
        _, _, current = self._load(object_id)
        self.authorizer.authorize_write(actor_id, current)
        if isinstance(current, Folder) and self.index.has_children(object_id):
            raise FolderNotEmpty(f"Folder {object_id} still has children")

        transaction_id = self.ledger.submit_delete(object_id)
        consistent = self._index_write("delete", object_id, transaction_id, lambda: self.index.delete(object_id))
        logger.info("Object deleted", extra={"object_id": object_id, "transaction_id": transaction_id})
        return DeleteResult(
            object_id=object_id,
            object_type=current.object_type,
            transaction_id=transaction_id,
            index_consistent=consistent,
        )

    def list_children(
        self,
        parent_id: str | None,
        owner_id: str,
        limit: int | None = None,
        cursor: str | None = None,
        object_type: str | None = None,
    ) -> IndexPage:
        if limit is not None and not (1 <= limit <= LIST_LIMIT_MAX):
            raise BadRequestError(f"limit must be between 1 and {LIST_LIMIT_MAX}")
        if object_type is not None and object_type not in (FOLDER, FILE):
            raise BadRequestError("type must be folder or file")
        return self.index.list_children(parent_id or None, owner_id, limit=limit, cursor=cursor, object_type=object_type)

    def read_object(self, object_id: str) -> ObjectContent:
        _, envelope, obj = self._load(object_id)
        content = envelope.content
        if envelope.is_external:
            if self.blob_store is None:
                raise BlobStoreError(f"Object {object_id} has externalized content but no blob store is configured")
            content = self.blob_store.get(envelope.content_ref, expected_hash=envelope.content_hash)
        return ObjectContent(
            object_id=object_id,
            object=obj,
            metadata=envelope.metadata,
            content=content,
            content_hash=envelope.content_hash,
            envelope_timestamp=envelope.timestamp,
        )

    def read_ledger_metadata(self, object_id: str) -> LedgerMetadata:
        """Metadata straight from the ledger record, including burned tokens. Never returns content."""
        record = self.ledger.query_record(object_id)
        envelope = decode_envelope(record.envelope, verify_hash=False)
        return LedgerMetadata(
            object_id=record.object_id,
            metadata=envelope.metadata,
            envelope_version=envelope.format_version,
            timestamp=envelope.timestamp,
            content_hash=envelope.content_hash,
            content_ref=envelope.content_ref,
            deleted=record.deleted,
            treasury=record.treasury,
            network=self.ledger.network,
        )

"""
Typed folder/file models and their explicit mapping to on-ledger metadata.

Ledger metadata uses camelCase keys; Python code uses the dataclass fields.
Metadata keys these models do not know about are kept in ``extra`` and written
back unchanged.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from ledgerdrive.errors import BadRequestError, EnvelopeCorrupt

FOLDER = "folder"
FILE = "file"
OBJECT_TYPES = (FOLDER, FILE)

STORAGE_KIND_LEDGER_ONLY = "ledger_only"
CONTENT_INLINE = "inline"
CONTENT_EXTERNAL = "external"
INITIAL_VERSION = "1.0"
METADATA_VERSION = "1.0"

VERSION_PATTERN = re.compile(r"^\d+(?:\.\d+)*$")

FOLDER_METADATA_FIELDS = frozenset(
    {"type", "name", "ownerId", "parentFolderId", "createdAt", "updatedAt", "path", "version", "metadataVersion", "network"}
)
FILE_METADATA_FIELDS = frozenset(
    {
        "type",
        "name",
        "ownerId",
        "parentFolderId",
        "contentHash",
        "contentSize",
        "contentEncoding",
        "contentLocation",
        "version",
        "createdAt",
        "updatedAt",
        "metadataVersion",
        "network",
    }
)


def parse_version(value: str) -> tuple[int, ...]:
    """Parse a dotted numeric version such as ``"1.10"`` into ``(1, 10)``."""
    if not isinstance(value, str) or not VERSION_PATTERN.fullmatch(value.strip()):
        raise BadRequestError(f"version must be dotted numeric (for example 1.1), got {value!r}")
    parts = [int(part) for part in value.strip().split(".")]
    while len(parts) > 1 and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


def version_greater(candidate: str, current: str) -> bool:
    return parse_version(candidate) > parse_version(current)


def _require_str(metadata: dict[str, Any], key: str) -> str:
    value = metadata.get(key)
    if not isinstance(value, str) or not value:
        raise EnvelopeCorrupt(f"ledger metadata is missing {key}")
    return value


def _optional_str(metadata: dict[str, Any], key: str) -> str | None:
    value = metadata.get(key)
    if value is None or value == "":
        return None
    return str(value)


def metadata_object_type(metadata: dict[str, Any]) -> str:
    object_type = metadata.get("type")
    if object_type not in OBJECT_TYPES:
        raise EnvelopeCorrupt(f"ledger metadata has unknown object type: {object_type!r}")
    return object_type


def _owner_from_metadata(metadata: dict[str, Any]) -> str:
    # Records minted before ownerId existed carry userId.
    owner = metadata.get("ownerId") or metadata.get("userId") or metadata.get("owner")
    if not isinstance(owner, str) or not owner:
        raise EnvelopeCorrupt("ledger metadata is missing ownerId")
    return owner


@dataclass(frozen=True)
class Folder:
    object_id: str | None
    name: str
    owner_id: str
    parent_folder_id: str | None
    created_at: str
    path: str
    updated_at: str | None = None
    version: str = INITIAL_VERSION
    network: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    object_type = FOLDER

    def to_metadata(self) -> dict[str, Any]:
        metadata = dict(self.extra)
        metadata.update(
            {
                "type": FOLDER,
                "name": self.name,
                "ownerId": self.owner_id,
                "parentFolderId": self.parent_folder_id,
                "createdAt": self.created_at,
                "path": self.path,
                "version": self.version,
                "metadataVersion": METADATA_VERSION,
            }
        )
        if self.updated_at:
            metadata["updatedAt"] = self.updated_at
        if self.network:
            metadata["network"] = self.network
        return metadata

    @classmethod
    def from_metadata(cls, object_id: str | None, metadata: dict[str, Any]) -> "Folder":
        if metadata_object_type(metadata) != FOLDER:
            raise EnvelopeCorrupt("ledger metadata does not describe a folder")
        name = _require_str(metadata, "name")
        parent = _optional_str(metadata, "parentFolderId")
        return cls(
            object_id=object_id,
            name=name,
            owner_id=_owner_from_metadata(metadata),
            parent_folder_id=parent,
            created_at=_optional_str(metadata, "createdAt") or "",
            path=_optional_str(metadata, "path") or f"/{name}",
            updated_at=_optional_str(metadata, "updatedAt"),
            version=_optional_str(metadata, "version") or INITIAL_VERSION,
            network=_optional_str(metadata, "network"),
            extra={key: value for key, value in metadata.items() if key not in FOLDER_METADATA_FIELDS},
        )


@dataclass(frozen=True)
class File:
    object_id: str | None
    name: str
    owner_id: str
    parent_folder_id: str
    content_hash: str
    content_size: int
    created_at: str
    version: str = INITIAL_VERSION
    content_encoding: str = "base64"
    content_location: str = CONTENT_INLINE
    updated_at: str | None = None
    network: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    object_type = FILE

    def to_metadata(self) -> dict[str, Any]:
        metadata = dict(self.extra)
        metadata.update(
            {
                "type": FILE,
                "name": self.name,
                "ownerId": self.owner_id,
                "parentFolderId": self.parent_folder_id,
                "contentHash": self.content_hash,
                "contentSize": self.content_size,
                "contentEncoding": self.content_encoding,
                "contentLocation": self.content_location,
                "version": self.version,
                "createdAt": self.created_at,
                "metadataVersion": METADATA_VERSION,
            }
        )
        if self.updated_at:
            metadata["updatedAt"] = self.updated_at
        if self.network:
            metadata["network"] = self.network
        return metadata

    @classmethod
    def from_metadata(cls, object_id: str | None, metadata: dict[str, Any]) -> "File":
        if metadata_object_type(metadata) != FILE:
            raise EnvelopeCorrupt("ledger metadata does not describe a file")
        # Older records name the parent folderTokenId.
        parent = _optional_str(metadata, "parentFolderId") or _optional_str(metadata, "folderTokenId")
        if not parent:
            raise EnvelopeCorrupt("ledger metadata is missing parentFolderId")
        size_raw = metadata.get("contentSize", 0)
        try:
            content_size = int(size_raw)
        except (TypeError, ValueError) as exc:
            raise EnvelopeCorrupt("ledger metadata contentSize must be an integer") from exc
        return cls(
            object_id=object_id,
            name=_require_str(metadata, "name"),
            owner_id=_owner_from_metadata(metadata),
            parent_folder_id=parent,
            content_hash=_optional_str(metadata, "contentHash") or "",
            content_size=content_size,
            created_at=_optional_str(metadata, "createdAt") or "",
            version=_optional_str(metadata, "version") or INITIAL_VERSION,
            content_encoding=_optional_str(metadata, "contentEncoding") or "base64",
            content_location=_optional_str(metadata, "contentLocation") or CONTENT_INLINE,
            updated_at=_optional_str(metadata, "updatedAt"),
            network=_optional_str(metadata, "network"),
            extra={
                key: value
                for key, value in metadata.items()
                if key not in FILE_METADATA_FIELDS and key != "folderTokenId"
            },
        )


def object_from_metadata(object_id: str | None, metadata: dict[str, Any]) -> Folder | File:
    if metadata_object_type(metadata) == FOLDER:
        return Folder.from_metadata(object_id, metadata)
    return File.from_metadata(object_id, metadata)


@dataclass(frozen=True)
class IndexRecord:
    """Pointer row in the secondary index. Never carries metadata or content."""

    object_id: str
    owner_id: str
    name: str
    object_type: str
    created_at: str
    transaction_id: str
    parent_id: str | None = None
    version: str | None = None
    updated_at: str | None = None
    last_transaction_id: str | None = None
    storage_kind: str = STORAGE_KIND_LEDGER_ONLY

    def to_item(self) -> dict[str, Any]:
        item: dict[str, Any] = {
            "objectId": self.object_id,
            "ownerId": self.owner_id,
            "name": self.name,
            "objectType": self.object_type,
            "createdAt": self.created_at,
            "transactionId": self.transaction_id,
            "storageKind": self.storage_kind,
        }
        # DynamoDB GSIs skip items without the key attribute, so root
        # objects simply omit parentId.
        if self.parent_id:
            item["parentId"] = self.parent_id
        if self.version:
            item["version"] = self.version
        if self.updated_at:
            item["updatedAt"] = self.updated_at
        if self.last_transaction_id:
            item["lastTransactionId"] = self.last_transaction_id
        return item

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "IndexRecord":
        return cls(
            object_id=str(item.get("objectId") or ""),
            owner_id=str(item.get("ownerId") or ""),
            name=str(item.get("name") or ""),
            object_type=str(item.get("objectType") or ""),
            created_at=str(item.get("createdAt") or ""),
            transaction_id=str(item.get("transactionId") or ""),
            parent_id=_optional_str(item, "parentId"),
            version=_optional_str(item, "version"),
            updated_at=_optional_str(item, "updatedAt"),
            last_transaction_id=_optional_str(item, "lastTransactionId"),
            storage_kind=str(item.get("storageKind") or STORAGE_KIND_LEDGER_ONLY),
        )


@dataclass(frozen=True)
class IndexPage:
    records: list[IndexRecord]
    next_cursor: str | None = None


@dataclass(frozen=True)
class ObjectContent:
    object_id: str
    object: Folder | File
    metadata: dict[str, Any]
    content: bytes | None
    content_hash: str | None
    envelope_timestamp: str | None = None


@dataclass(frozen=True)
class DeleteResult:
    object_id: str
    object_type: str
    transaction_id: str
    index_consistent: bool = True


@dataclass(frozen=True)
class WriteResult:
    """Outcome of a create or update: the object as written plus index bookkeeping."""

    object: Folder | File
    transaction_id: str
    index_consistent: bool = True


@dataclass(frozen=True)
class LedgerMetadata:
    object_id: str
    metadata: dict[str, Any]
    envelope_version: int
    timestamp: str | None
    content_hash: str | None
    content_ref: str | None
    deleted: bool
    treasury: str | None
    network: str | None = None

"""
Envelope codec: the bytes written into a token's ledger record.

Wire format (canonical JSON, sorted keys, compact separators, UTF-8):

    {
      "content": "<base64>",          # inline files only
      "contentHash": "<sha256 hex>",  # files only
      "contentRef": "s3://...",       # externalized files only, replaces "content"
      "envelopeVersion": 1,
      "metadata": {...},
      "timestamp": "<ISO-8601 UTC>"
    }

Unknown keys, at the top level and inside ``metadata``, are carried through a
decode/encode round trip unchanged. Records written before envelopes existed
hold a bare metadata object; those decode with ``format_version == 0``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ledgerdrive.errors import EnvelopeCorrupt, EnvelopeHashMismatch, EnvelopeTooLarge

ENVELOPE_FORMAT_VERSION = 1
LEGACY_FORMAT_VERSION = 0
CONTENT_ENCODING = "base64"
SHA256_HEX_PATTERN = re.compile(r"^[0-9a-f]{64}$")

KNOWN_ENVELOPE_FIELDS = frozenset({"metadata", "content", "contentHash", "contentRef", "envelopeVersion", "timestamp"})


@dataclass(frozen=True)
class Envelope:
    metadata: dict[str, Any]
    content: bytes | None = None
    content_hash: str | None = None
    content_ref: str | None = None
    timestamp: str | None = None
    format_version: int = ENVELOPE_FORMAT_VERSION
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_external(self) -> bool:
        return self.content_ref is not None

    @property
    def is_legacy(self) -> bool:
        return self.format_version == LEGACY_FORMAT_VERSION


def sha256_hex(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _canonical_bytes(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _check_size(encoded: bytes, max_bytes: int | None) -> bytes:
    if max_bytes is not None and len(encoded) > max_bytes:
        raise EnvelopeTooLarge(len(encoded), max_bytes)
    return encoded


def _base_payload(metadata: dict[str, Any], timestamp: str | None, extra: dict[str, Any] | None) -> dict[str, Any]:
    if not isinstance(metadata, dict):
        raise TypeError("metadata must be a dict")
    payload: dict[str, Any] = {}
    for key, value in (extra or {}).items():
        if key not in KNOWN_ENVELOPE_FIELDS:
            payload[key] = value
    payload["metadata"] = metadata
    payload["envelopeVersion"] = ENVELOPE_FORMAT_VERSION
    payload["timestamp"] = timestamp or _utc_timestamp()
    return payload


def encode_envelope(
    metadata: dict[str, Any],
    content: bytes | None = None,
    *,
    max_bytes: int | None = None,
    timestamp: str | None = None,
    extra: dict[str, Any] | None = None,
) -> bytes:
    """Serialize metadata and optional inline content into canonical envelope bytes.

    Raises ``EnvelopeTooLarge`` when the result is longer than ``max_bytes``.
    """
    payload = _base_payload(metadata, timestamp, extra)
    if content is not None:
        payload["content"] = base64.b64encode(content).decode("ascii")
        payload["contentHash"] = sha256_hex(content)
    return _check_size(_canonical_bytes(payload), max_bytes)


def encode_reference_envelope(
    metadata: dict[str, Any],
    content_ref: str,
    content_hash: str,
    *,
    max_bytes: int | None = None,
    timestamp: str | None = None,
    extra: dict[str, Any] | None = None,
) -> bytes:
    """Serialize an envelope whose content lives outside the ledger record."""
    if not content_ref:
        raise ValueError("content_ref is required")
    if not SHA256_HEX_PATTERN.fullmatch(content_hash or ""):
        raise ValueError("content_hash must be a lowercase SHA-256 hex digest")
    payload = _base_payload(metadata, timestamp, extra)
    payload["contentRef"] = content_ref
    payload["contentHash"] = content_hash
    return _check_size(_canonical_bytes(payload), max_bytes)


def reencode_envelope(envelope: Envelope, *, max_bytes: int | None = None) -> bytes:
    """Encode a decoded envelope again, keeping its timestamp and unknown fields."""
    if envelope.content_ref is not None:
        return encode_reference_envelope(
            envelope.metadata,
            envelope.content_ref,
            envelope.content_hash or "",
            max_bytes=max_bytes,
            timestamp=envelope.timestamp,
            extra=envelope.extra,
        )
    return encode_envelope(
        envelope.metadata,
        envelope.content,
        max_bytes=max_bytes,
        timestamp=envelope.timestamp,
        extra=envelope.extra,
    )


def _parse_json(raw: bytes | str) -> dict[str, Any]:
    if isinstance(raw, (bytes, bytearray)):
        try:
            text = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise EnvelopeCorrupt("envelope is not valid UTF-8") from exc
    elif isinstance(raw, str):
        text = raw
    else:
        raise EnvelopeCorrupt("envelope must be bytes or str")

    if not text.strip():
        raise EnvelopeCorrupt("envelope is empty")
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as exc:
        raise EnvelopeCorrupt("envelope is not valid JSON") from exc
    if not isinstance(decoded, dict):
        raise EnvelopeCorrupt("envelope JSON must be an object")
    return decoded


def _decode_content(raw_content: Any) -> bytes:
    if not isinstance(raw_content, str):
        raise EnvelopeCorrupt("envelope content must be a base64 string")
    try:
        return base64.b64decode(raw_content, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise EnvelopeCorrupt("envelope content is not valid base64") from exc


def decode_envelope(raw: bytes | str, *, verify_hash: bool = True) -> Envelope:
    """Parse envelope bytes read from the ledger.

    Raises ``EnvelopeCorrupt`` for malformed records and ``EnvelopeHashMismatch``
    when inline content does not hash to ``contentHash``. With
    ``verify_hash=False`` the hash comparison is left to the caller.
    """
    decoded = _parse_json(raw)

    if "metadata" not in decoded:
        if "type" in decoded:
            return Envelope(metadata=decoded, format_version=LEGACY_FORMAT_VERSION)
        raise EnvelopeCorrupt("envelope is missing metadata")

    metadata = decoded["metadata"]
    if not isinstance(metadata, dict):
        raise EnvelopeCorrupt("envelope metadata must be an object")

    format_version = decoded.get("envelopeVersion", ENVELOPE_FORMAT_VERSION)
    if isinstance(format_version, bool) or not isinstance(format_version, int) or format_version < 1:
        raise EnvelopeCorrupt("envelopeVersion must be a positive integer")
    if format_version > ENVELOPE_FORMAT_VERSION:
        raise EnvelopeCorrupt(f"envelopeVersion {format_version} is newer than supported version {ENVELOPE_FORMAT_VERSION}")

    timestamp = decoded.get("timestamp")
    if timestamp is not None and not isinstance(timestamp, str):
        raise EnvelopeCorrupt("envelope timestamp must be a string")

    content_hash = decoded.get("contentHash")
    if content_hash is not None and not isinstance(content_hash, str):
        raise EnvelopeCorrupt("envelope contentHash must be a string")

    content_ref = decoded.get("contentRef")
    if content_ref is not None and (not isinstance(content_ref, str) or not content_ref):
        raise EnvelopeCorrupt("envelope contentRef must be a non-empty string")

    content: bytes | None = None
    if "content" in decoded and decoded["content"] is not None:
        if content_ref is not None:
            raise EnvelopeCorrupt("envelope cannot carry both content and contentRef")
        content = _decode_content(decoded["content"])
        if content_hash is None:
            raise EnvelopeCorrupt("envelope content is present without contentHash")
        if verify_hash:
            computed = sha256_hex(content)
            if computed != content_hash:
                raise EnvelopeHashMismatch(content_hash, computed)
    elif content_ref is not None and content_hash is None:
        raise EnvelopeCorrupt("envelope contentRef is present without contentHash")

    extra = {key: value for key, value in decoded.items() if key not in KNOWN_ENVELOPE_FIELDS}
    return Envelope(
        metadata=metadata,
        content=content,
        content_hash=content_hash,
        content_ref=content_ref,
        timestamp=timestamp,
        format_version=format_version,
        extra=extra,
    )

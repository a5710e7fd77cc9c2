"""
Content-addressed S3 blob store for file content too large for a ledger record.

Blobs are keyed by the SHA-256 hex of their bytes and sharded two levels deep
(``blobs/ab/cd/abcd...``). Writing the same bytes twice is a no-op.
"""

from __future__ import annotations

import re
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

from ledgerdrive.config import Settings
from ledgerdrive.credentials import AWS_RETRY_CONFIG
from ledgerdrive.envelope import sha256_hex
from ledgerdrive.errors import BlobStoreError, ConfigurationError, EnvelopeHashMismatch

logger = Logger(service="ledgerdrive", child=True)

BLOB_PREFIX = "blobs"
SHARD_DEPTH = 2
SHARD_WIDTH = 2
S3_REF_PATTERN = re.compile(r"^s3://(?P<bucket>[^/]+)/(?P<key>.+)$")

BUCKET_NAME_MIN_LEN = 3
BUCKET_NAME_MAX_LEN = 63
BUCKET_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$")
BUCKET_FORBIDDEN_PREFIXES = ("xn--", "sthree-", "amzn-s3-demo-")
BUCKET_FORBIDDEN_SUFFIXES = ("-s3alias", "--ol-s3", ".mrap", "--x-s3", "--table-s3")
BUCKET_IP_PATTERN = re.compile(r"^\d{1,3}(?:\.\d{1,3}){3}$")

NOT_FOUND_S3_ERROR_CODES = {
    "403",
    "404",
    "AccessDenied",
    "AllAccessDisabled",
    "NoSuchBucket",
    "NoSuchKey",
    "NotFound",
}


def _validate_bucket_name(name: str) -> None:
    if not (BUCKET_NAME_MIN_LEN <= len(name) <= BUCKET_NAME_MAX_LEN):
        raise ConfigurationError(f"Bucket name must be {BUCKET_NAME_MIN_LEN}-{BUCKET_NAME_MAX_LEN} characters")
    if not BUCKET_NAME_PATTERN.match(name):
        raise ConfigurationError("Bucket name must use only lowercase letters, digits, dots, and hyphens")
    if name.startswith(BUCKET_FORBIDDEN_PREFIXES) or name.endswith(BUCKET_FORBIDDEN_SUFFIXES):
        raise ConfigurationError("Bucket name uses a forbidden prefix or suffix")
    if BUCKET_IP_PATTERN.match(name):
        raise ConfigurationError("Bucket name must not be formatted as an IP address")


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def shard_key(content_hash: str) -> str:
    shards = [content_hash[i * SHARD_WIDTH : (i + 1) * SHARD_WIDTH] for i in range(SHARD_DEPTH)]
    return "/".join([BLOB_PREFIX, *shards, content_hash])


def parse_ref(content_ref: str) -> tuple[str, str]:
    match = S3_REF_PATTERN.fullmatch(content_ref or "")
    if not match:
        raise BlobStoreError(f"Unsupported content reference: {content_ref!r}")
    return match.group("bucket"), match.group("key")


class BlobStore:
    def __init__(self, s3_client: Any, bucket: str) -> None:
        _validate_bucket_name(bucket)
        self.s3_client = s3_client
        self.bucket = bucket

    @classmethod
    def from_settings(cls, settings: Settings, s3_client: Any = None) -> "BlobStore":
        if not settings.content_blob_bucket:
            raise ConfigurationError("CONTENT_BLOB_BUCKET is required")
        s3_client = s3_client or boto3.client("s3", region_name=settings.region, config=AWS_RETRY_CONFIG)
        return cls(s3_client, settings.content_blob_bucket)

    def build_uri(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    def _exists(self, key: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in NOT_FOUND_S3_ERROR_CODES:
                return False
            raise BlobStoreError(f"Unable to check blob {key}") from exc
        return True

    def put(self, content: bytes) -> tuple[str, str]:
        """Store ``content`` and return ``(content_ref, content_hash)``."""
        content_hash = sha256_hex(content)
        key = shard_key(content_hash)
        if self._exists(key):
            return self.build_uri(key), content_hash

        try:
            self.s3_client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=content,
                ContentType="application/octet-stream",
                Metadata={"sha256": content_hash},
            )
        except (ClientError, BotoCoreError) as exc:
            raise BlobStoreError(f"Failed to store blob {content_hash}") from exc

        logger.info("Content externalized", extra={"content_hash": content_hash, "size_bytes": len(content)})
        return self.build_uri(key), content_hash

    def get(self, content_ref: str, expected_hash: str | None = None) -> bytes:
        """Fetch blob bytes; raises ``EnvelopeHashMismatch`` if they no longer hash to ``expected_hash``."""
        bucket, key = parse_ref(content_ref)
        try:
            response = self.s3_client.get_object(Bucket=bucket, Key=key)
            content = response["Body"].read()
        except ClientError as exc:
            if _error_code(exc) in NOT_FOUND_S3_ERROR_CODES:
                raise BlobStoreError(f"Blob not found: {content_ref}") from exc
            raise BlobStoreError(f"Failed to read blob {content_ref}") from exc
        except BotoCoreError as exc:
            raise BlobStoreError(f"Failed to read blob {content_ref}") from exc

        if expected_hash is not None:
            computed = sha256_hex(content)
            if computed != expected_hash:
                raise EnvelopeHashMismatch(expected_hash, computed)
        return content

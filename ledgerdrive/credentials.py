"""
Operator credential resolution.

The operator key is decrypted by AWS KMS for the duration of one ledger
operation and zeroed when the ``operator_credentials`` context exits. Nothing
here caches key material between operations.

Two sources are supported:
- ``OPERATOR_PRIVATE_KEY_ENCRYPTED`` (base64 KMS ciphertext) with ``OPERATOR_ACCOUNT_ID``;
- a row ``{"user_id": "ledger_operator", "account_id", "encrypted_private_key"}``
  in ``OPERATOR_KEYS_TABLE_NAME``.
"""

from __future__ import annotations

import base64
import binascii
import re
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ledgerdrive.config import Settings
from ledgerdrive.errors import ConfigurationError

logger = Logger(service="ledgerdrive", child=True)

OPERATOR_KEY_ROW_ID = "ledger_operator"
PLACEHOLDER_CIPHERTEXT = "PLACEHOLDER_ENCRYPTED_PRIVATE_KEY"
PRIVATE_KEY_BYTES = 32
HEX_KEY_PATTERN = re.compile(r"^(?:0x)?[0-9a-fA-F]{64}$")
ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")

AWS_RETRY_CONFIG = Config(retries={"max_attempts": 5, "mode": "adaptive"})


class OperatorCredentials:
    """Operator account plus a private key held in a wipeable buffer."""

    def __init__(self, account_id: str | None, private_key: bytes) -> None:
        self.account_id = account_id
        self._key = bytearray(private_key)

    @property
    def private_key(self) -> bytes:
        if not any(self._key):
            raise RuntimeError("operator credentials have been released")
        return bytes(self._key)

    @property
    def released(self) -> bool:
        return not any(self._key)

    def wipe(self) -> None:
        for index in range(len(self._key)):
            self._key[index] = 0

    def __repr__(self) -> str:
        return f"OperatorCredentials(account_id={self.account_id!r}, private_key=<redacted>)"


CredentialsProvider = Callable[[], AbstractContextManager[OperatorCredentials]]


@dataclass(frozen=True)
class EncryptedOperatorKey:
    account_id: str | None
    ciphertext_b64: str
    kms_key_id: str | None


class KmsKeyCustody:
    """Decrypts operator key ciphertext with AWS KMS."""

    def __init__(self, kms_client: Any = None, region: str | None = None) -> None:
        self._kms_client = kms_client
        self._region = region

    @property
    def kms_client(self) -> Any:
        if self._kms_client is None:
            self._kms_client = boto3.client("kms", region_name=self._region, config=AWS_RETRY_CONFIG)
        return self._kms_client

    def decrypt(self, ciphertext_b64: str, kms_key_id: str | None = None) -> bytearray:
        try:
            blob = base64.b64decode(ciphertext_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ConfigurationError("operator key ciphertext must be base64") from exc

        params: dict[str, Any] = {"CiphertextBlob": blob}
        if kms_key_id:
            params["KeyId"] = kms_key_id
        try:
            response = self.kms_client.decrypt(**params)
        except (ClientError, BotoCoreError) as exc:
            logger.exception("Failed to decrypt operator key")
            raise ConfigurationError("Failed to decrypt operator key") from exc
        return bytearray(response["Plaintext"])


def _normalize_private_key(plaintext: bytearray) -> bytes:
    """KMS plaintext is either the raw 32-byte key or its hex text form."""
    if len(plaintext) == PRIVATE_KEY_BYTES:
        return bytes(plaintext)
    try:
        text = plaintext.decode("ascii").strip()
    except UnicodeDecodeError as exc:
        raise ConfigurationError("operator key plaintext has an unexpected format") from exc
    if not HEX_KEY_PATTERN.fullmatch(text):
        raise ConfigurationError("operator key plaintext has an unexpected format")
    return bytes.fromhex(text[2:] if text.startswith("0x") else text)


def _normalize_account(value: Any) -> str | None:
    if value in (None, ""):
        return None
    candidate = str(value).strip()
    if not ADDRESS_PATTERN.fullmatch(candidate):
        raise ConfigurationError("operator account must be a 0x-prefixed 20-byte hex address")
    return f"0x{candidate[2:].lower()}"


def load_encrypted_operator_key(settings: Settings, dynamodb: Any = None) -> EncryptedOperatorKey:
    if settings.operator_key_encrypted:
        if settings.operator_key_encrypted == PLACEHOLDER_CIPHERTEXT:
            raise ConfigurationError("Operator credentials are not configured")
        return EncryptedOperatorKey(
            account_id=_normalize_account(settings.operator_account_id),
            ciphertext_b64=settings.operator_key_encrypted,
            kms_key_id=settings.operator_key_kms_key_id,
        )

    if not settings.operator_keys_table_name:
        raise ConfigurationError("No operator key source configured")

    dynamodb = dynamodb or boto3.resource("dynamodb", region_name=settings.region, config=AWS_RETRY_CONFIG)
    table = dynamodb.Table(settings.operator_keys_table_name)
    try:
        response = table.get_item(Key={"user_id": OPERATOR_KEY_ROW_ID}, ConsistentRead=True)
    except (ClientError, BotoCoreError) as exc:
        raise ConfigurationError("Unable to read operator key row") from exc

    item = response.get("Item")
    if not item or not item.get("encrypted_private_key"):
        raise ConfigurationError("No operator credentials found")
    return EncryptedOperatorKey(
        account_id=_normalize_account(item.get("account_id") or settings.operator_account_id),
        ciphertext_b64=str(item["encrypted_private_key"]),
        kms_key_id=item.get("kms_key_id") or settings.operator_key_kms_key_id,
    )


@contextmanager
def operator_credentials(
    settings: Settings,
    custody: KmsKeyCustody | None = None,
    dynamodb: Any = None,
) -> Iterator[OperatorCredentials]:
    """Resolve and decrypt the operator key for exactly one operation."""
    encrypted = load_encrypted_operator_key(settings, dynamodb=dynamodb)
    custody = custody or KmsKeyCustody(region=settings.region)
    plaintext = custody.decrypt(encrypted.ciphertext_b64, encrypted.kms_key_id)
    try:
        credentials = OperatorCredentials(encrypted.account_id, _normalize_private_key(plaintext))
    finally:
        for index in range(len(plaintext)):
            plaintext[index] = 0

    try:
        yield credentials
    finally:
        credentials.wipe()


def credentials_provider(settings: Settings, custody: KmsKeyCustody | None = None, dynamodb: Any = None) -> CredentialsProvider:
    def _provide() -> AbstractContextManager[OperatorCredentials]:
        return operator_credentials(settings, custody=custody, dynamodb=dynamodb)

    return _provide

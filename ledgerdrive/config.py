from __future__ import annotations

import os
from dataclasses import dataclass

from ledgerdrive.errors import ConfigurationError

US_EAST_1_REGION = "us-" + "east-1"
DEFAULT_LOCATION = os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION") or US_EAST_1_REGION

INDEX_TABLE_ENV = "OBJECT_INDEX_TABLE_NAME"
OWNER_INDEX_ENV = "OBJECT_INDEX_OWNER_INDEX"
PARENT_INDEX_ENV = "OBJECT_INDEX_PARENT_INDEX"
LEDGER_RPC_URL_ENV = "LEDGER_RPC_URL"
LEDGER_REGISTRY_CONTRACT_ENV = "LEDGER_REGISTRY_CONTRACT"
LEDGER_CHAIN_ID_ENV = "LEDGER_CHAIN_ID"
LEDGER_NETWORK_ENV = "LEDGER_NETWORK"
LEDGER_RECORD_MAX_BYTES_ENV = "LEDGER_RECORD_MAX_BYTES"
LEDGER_GAS_LIMIT_ENV = "LEDGER_GAS_LIMIT"
RECEIPT_MAX_POLLS_ENV = "LEDGER_RECEIPT_MAX_POLLS"
RECEIPT_INITIAL_DELAY_ENV = "LEDGER_RECEIPT_INITIAL_DELAY_MS"
RECEIPT_MAX_DELAY_ENV = "LEDGER_RECEIPT_MAX_DELAY_MS"
RECEIPT_TIMEOUT_ENV = "LEDGER_RECEIPT_TIMEOUT_SECONDS"
OPERATOR_ACCOUNT_ENV = "OPERATOR_ACCOUNT_ID"
OPERATOR_KEY_ENCRYPTED_ENV = "OPERATOR_PRIVATE_KEY_ENCRYPTED"
OPERATOR_KEY_KMS_KEY_ID_ENV = "OPERATOR_PRIVATE_KEY_KMS_KEY_ID"
OPERATOR_KEYS_TABLE_ENV = "OPERATOR_KEYS_TABLE_NAME"
LARGE_CONTENT_POLICY_ENV = "LARGE_CONTENT_POLICY"
CONTENT_BLOB_BUCKET_ENV = "CONTENT_BLOB_BUCKET"
ENFORCE_UNIQUE_NAMES_ENV = "ENFORCE_UNIQUE_NAMES"

DEFAULT_OWNER_INDEX = "ownerId-index"
DEFAULT_PARENT_INDEX = "parentId-index"
DEFAULT_CHAIN_ID = 296
DEFAULT_NETWORK = "testnet"
DEFAULT_RECORD_MAX_BYTES = 1024
DEFAULT_GAS_LIMIT = 800_000
DEFAULT_RECEIPT_MAX_POLLS = 10
DEFAULT_RECEIPT_INITIAL_DELAY_MS = 500
DEFAULT_RECEIPT_MAX_DELAY_MS = 4000
DEFAULT_RECEIPT_TIMEOUT_SECONDS = 30

POLICY_REJECT = "reject"
POLICY_EXTERNALIZE = "externalize"
LARGE_CONTENT_POLICIES = (POLICY_REJECT, POLICY_EXTERNALIZE)


def _require_env(name: str) -> str:
    value = os.environ.get(name, "").strip()
    if not value:
        raise ConfigurationError(f"{name} environment variable is required")
    return value


def _optional_env(name: str) -> str | None:
    value = os.environ.get(name, "").strip()
    return value or None


def _read_int_env(name: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(name)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        parsed = int(str(raw).strip())
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer") from exc
    if parsed < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}")
    return parsed


def _read_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    normalized = str(value).strip().lower()
    return normalized in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    index_table_name: str
    owner_index_name: str = DEFAULT_OWNER_INDEX
    parent_index_name: str = DEFAULT_PARENT_INDEX
    region: str = DEFAULT_LOCATION
    ledger_rpc_url: str | None = None
    ledger_registry_contract: str | None = None
    ledger_chain_id: int = DEFAULT_CHAIN_ID
    ledger_network: str = DEFAULT_NETWORK
    record_max_bytes: int = DEFAULT_RECORD_MAX_BYTES
    gas_limit: int = DEFAULT_GAS_LIMIT
    receipt_max_polls: int = DEFAULT_RECEIPT_MAX_POLLS
    receipt_initial_delay_ms: int = DEFAULT_RECEIPT_INITIAL_DELAY_MS
    receipt_max_delay_ms: int = DEFAULT_RECEIPT_MAX_DELAY_MS
    receipt_timeout_seconds: int = DEFAULT_RECEIPT_TIMEOUT_SECONDS
    operator_account_id: str | None = None
    operator_key_encrypted: str | None = None
    operator_key_kms_key_id: str | None = None
    operator_keys_table_name: str | None = None
    large_content_policy: str = POLICY_REJECT
    content_blob_bucket: str | None = None
    enforce_unique_names: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        policy = (os.environ.get(LARGE_CONTENT_POLICY_ENV) or POLICY_REJECT).strip().lower()
        if policy not in LARGE_CONTENT_POLICIES:
            raise ConfigurationError(f"{LARGE_CONTENT_POLICY_ENV} must be one of {', '.join(LARGE_CONTENT_POLICIES)}")
        blob_bucket = _optional_env(CONTENT_BLOB_BUCKET_ENV)
        if policy == POLICY_EXTERNALIZE and not blob_bucket:
            raise ConfigurationError(f"{CONTENT_BLOB_BUCKET_ENV} is required when {LARGE_CONTENT_POLICY_ENV}=externalize")

        return cls(
            index_table_name=_require_env(INDEX_TABLE_ENV),
            owner_index_name=_optional_env(OWNER_INDEX_ENV) or DEFAULT_OWNER_INDEX,
            parent_index_name=_optional_env(PARENT_INDEX_ENV) or DEFAULT_PARENT_INDEX,
            region=DEFAULT_LOCATION,
            ledger_rpc_url=_optional_env(LEDGER_RPC_URL_ENV),
            ledger_registry_contract=_optional_env(LEDGER_REGISTRY_CONTRACT_ENV),
            ledger_chain_id=_read_int_env(LEDGER_CHAIN_ID_ENV, DEFAULT_CHAIN_ID),
            ledger_network=_optional_env(LEDGER_NETWORK_ENV) or DEFAULT_NETWORK,
            record_max_bytes=_read_int_env(LEDGER_RECORD_MAX_BYTES_ENV, DEFAULT_RECORD_MAX_BYTES, minimum=32),
            gas_limit=_read_int_env(LEDGER_GAS_LIMIT_ENV, DEFAULT_GAS_LIMIT),
            receipt_max_polls=_read_int_env(RECEIPT_MAX_POLLS_ENV, DEFAULT_RECEIPT_MAX_POLLS),
            receipt_initial_delay_ms=_read_int_env(RECEIPT_INITIAL_DELAY_ENV, DEFAULT_RECEIPT_INITIAL_DELAY_MS, minimum=0),
            receipt_max_delay_ms=_read_int_env(RECEIPT_MAX_DELAY_ENV, DEFAULT_RECEIPT_MAX_DELAY_MS, minimum=0),
            receipt_timeout_seconds=_read_int_env(RECEIPT_TIMEOUT_ENV, DEFAULT_RECEIPT_TIMEOUT_SECONDS),
            operator_account_id=_optional_env(OPERATOR_ACCOUNT_ENV),
            operator_key_encrypted=_optional_env(OPERATOR_KEY_ENCRYPTED_ENV),
            operator_key_kms_key_id=_optional_env(OPERATOR_KEY_KMS_KEY_ID_ENV),
            operator_keys_table_name=_optional_env(OPERATOR_KEYS_TABLE_ENV),
            large_content_policy=policy,
            content_blob_bucket=blob_bucket,
            enforce_unique_names=_read_bool(os.environ.get(ENFORCE_UNIQUE_NAMES_ENV)),
        )

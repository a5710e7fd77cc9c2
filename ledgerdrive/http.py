"""
API Gateway boundary helpers: event parsing, caller identity, tagged responses
and the explicit serializers that turn domain objects into response bodies.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any

from ledgerdrive.errors import (
    BadRequestError,
    BlobStoreError,
    ConfigurationError,
    EnvelopeCorrupt,
    EnvelopeTooLarge,
    FolderNotEmpty,
    ForbiddenError,
    LedgerDriveError,
    LedgerRejected,
    LedgerTimeout,
    NameConflict,
    ObjectGone,
    ObjectNotFound,
    UnauthorizedError,
    VersionConflict,
)
from ledgerdrive.integrity import VerificationResult
from ledgerdrive.models import DeleteResult, File, Folder, IndexPage, IndexRecord, LedgerMetadata, ObjectContent, WriteResult

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type,Authorization",
    "Access-Control-Allow-Methods": "GET,POST,PUT,DELETE,OPTIONS",
}

# Ordered most specific first; EnvelopeHashMismatch resolves through EnvelopeCorrupt.
ERROR_STATUS = (
    (BadRequestError, 400),
    (UnauthorizedError, 401),
    (ForbiddenError, 403),
    (ObjectNotFound, 404),
    (VersionConflict, 409),
    (FolderNotEmpty, 409),
    (NameConflict, 409),
    (ObjectGone, 410),
    (EnvelopeTooLarge, 413),
    (LedgerRejected, 502),
    (EnvelopeCorrupt, 502),
    (BlobStoreError, 502),
    (LedgerTimeout, 504),
    (ConfigurationError, 500),
)


def status_for(exc: LedgerDriveError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


def _response(status_code: int, body: dict[str, Any] | None) -> dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json", **CORS_HEADERS},
        "body": json.dumps(body, default=str) if body is not None else "",
    }


def success_response(data: Any, status_code: int = 200) -> dict[str, Any]:
    return _response(status_code, {"success": True, "data": data})


def error_response(status_code: int, error: str, message: str, details: Any = None) -> dict[str, Any]:
    body: dict[str, Any] = {"success": False, "error": error, "message": message}
    if details is not None:
        body["details"] = details
    return _response(status_code, body)


def preflight_response() -> dict[str, Any]:
    return _response(200, None)


def _safe_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _event_stage(event: dict[str, Any]) -> str | None:
    request_context = event.get("requestContext")
    if isinstance(request_context, dict):
        stage = _safe_str(request_context.get("stage"))
        if stage and stage != "$default":
            return stage
    return None


def _normalize_path(path: str, stage: str | None) -> str:
    normalized = path.split("?", 1)[0]
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"

    if stage:
        prefix = f"/{stage}"
        if normalized == prefix:
            normalized = "/"
        elif normalized.startswith(f"{prefix}/"):
            normalized = normalized[len(prefix) :]

    if len(normalized) > 1 and normalized.endswith("/"):
        normalized = normalized.rstrip("/")

    return normalized or "/"


def resolve_method_and_path(event: dict[str, Any]) -> tuple[str, str]:
    """Method and stage-stripped path for REST (v1) and HTTP API (v2) events."""
    request_context = event.get("requestContext")
    if not isinstance(request_context, dict):
        request_context = {}

    method = _safe_str(event.get("httpMethod")) or _safe_str(request_context.get("httpMethod"))
    http_context = request_context.get("http")
    if not method and isinstance(http_context, dict):
        method = _safe_str(http_context.get("method"))

    path = _safe_str(event.get("rawPath")) or _safe_str(event.get("path"))
    if not path and isinstance(http_context, dict):
        path = _safe_str(http_context.get("path"))

    if not method:
        raise BadRequestError("unable to determine request method")
    if not path:
        raise BadRequestError("unable to determine request path")
    return method.upper(), _normalize_path(path, stage=_event_stage(event))


def caller_id(event: dict[str, Any]) -> str:
    """User id established by the API Gateway authorizer. Never defaulted."""
    request_context = event.get("requestContext")
    authorizer = request_context.get("authorizer") if isinstance(request_context, dict) else None
    if isinstance(authorizer, dict):
        claims = authorizer.get("claims")
        jwt = authorizer.get("jwt")
        jwt_claims = jwt.get("claims") if isinstance(jwt, dict) else None
        lambda_context = authorizer.get("lambda")
        candidates = [
            claims.get("sub") if isinstance(claims, dict) else None,
            jwt_claims.get("sub") if isinstance(jwt_claims, dict) else None,
            authorizer.get("userId"),
            lambda_context.get("userId") if isinstance(lambda_context, dict) else None,
        ]
        for candidate in candidates:
            value = _safe_str(candidate)
            if value:
                return value
    raise UnauthorizedError("No authenticated caller on the request")


def decode_event_body(event: dict[str, Any]) -> dict[str, Any]:
    raw_body = event.get("body")
    if raw_body in (None, ""):
        return {}
    if isinstance(raw_body, dict):
        return raw_body

    if event.get("isBase64Encoded"):
        try:
            raw_body = base64.b64decode(raw_body).decode("utf-8")
        except (binascii.Error, ValueError) as exc:
            raise BadRequestError("body must be valid base64-encoded JSON") from exc

    try:
        decoded = json.loads(raw_body)
    except json.JSONDecodeError as exc:
        raise BadRequestError("body must be valid JSON") from exc

    if not isinstance(decoded, dict):
        raise BadRequestError("JSON body must be an object")
    return decoded


def query_params(event: dict[str, Any]) -> dict[str, Any]:
    params = event.get("queryStringParameters") or {}
    if not isinstance(params, dict):
        raise BadRequestError("queryStringParameters must be an object")
    return {key: value for key, value in params.items() if value is not None}


def require_string_field(params: dict[str, Any], field_name: str) -> str:
    value = params.get(field_name)
    if not isinstance(value, str) or not value.strip():
        raise BadRequestError(f"{field_name} is required")
    return value.strip()


def optional_string_field(params: dict[str, Any], field_name: str) -> str | None:
    value = params.get(field_name)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise BadRequestError(f"{field_name} must be a string")
    return value.strip() or None


def optional_int_param(params: dict[str, Any], field_name: str) -> int | None:
    raw = params.get(field_name)
    if raw in (None, ""):
        return None
    try:
        return int(str(raw).strip())
    except ValueError as exc:
        raise BadRequestError(f"{field_name} must be an integer") from exc


def decode_content_field(params: dict[str, Any], field_name: str = "content") -> bytes:
    """File content arrives base64-encoded in the JSON body."""
    value = params.get(field_name)
    if not isinstance(value, str):
        raise BadRequestError(f"{field_name} is required (base64)")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise BadRequestError(f"{field_name} must be valid base64") from exc


def serialize_folder(folder: Folder) -> dict[str, Any]:
    return {
        "objectId": folder.object_id,
        "type": "folder",
        "name": folder.name,
        "ownerId": folder.owner_id,
        "parentFolderId": folder.parent_folder_id,
        "path": folder.path,
        "version": folder.version,
        "createdAt": folder.created_at,
        "updatedAt": folder.updated_at,
    }


def serialize_file(file: File) -> dict[str, Any]:
    return {
        "objectId": file.object_id,
        "type": "file",
        "name": file.name,
        "ownerId": file.owner_id,
        "parentFolderId": file.parent_folder_id,
        "contentHash": file.content_hash,
        "contentSize": file.content_size,
        "contentEncoding": file.content_encoding,
        "contentLocation": file.content_location,
        "version": file.version,
        "createdAt": file.created_at,
        "updatedAt": file.updated_at,
    }


def serialize_object(obj: Folder | File) -> dict[str, Any]:
    return serialize_folder(obj) if isinstance(obj, Folder) else serialize_file(obj)


def serialize_write(result: WriteResult) -> dict[str, Any]:
    data = serialize_object(result.object)
    data["transactionId"] = result.transaction_id
    data["indexConsistent"] = result.index_consistent
    return data


def serialize_delete(result: DeleteResult) -> dict[str, Any]:
    return {
        "objectId": result.object_id,
        "type": result.object_type,
        "transactionId": result.transaction_id,
        "indexConsistent": result.index_consistent,
    }


def serialize_index_record(record: IndexRecord) -> dict[str, Any]:
    return {
        "objectId": record.object_id,
        "type": record.object_type,
        "name": record.name,
        "ownerId": record.owner_id,
        "parentId": record.parent_id,
        "version": record.version,
        "createdAt": record.created_at,
        "updatedAt": record.updated_at,
        "transactionId": record.transaction_id,
        "storageKind": record.storage_kind,
    }


def serialize_page(page: IndexPage) -> dict[str, Any]:
    return {
        "items": [serialize_index_record(record) for record in page.records],
        "count": len(page.records),
        "nextCursor": page.next_cursor,
    }


def serialize_content(content: ObjectContent) -> dict[str, Any]:
    data = serialize_object(content.object)
    data["metadata"] = content.metadata
    data["contentHash"] = content.content_hash
    data["content"] = base64.b64encode(content.content).decode("ascii") if content.content is not None else None
    data["timestamp"] = content.envelope_timestamp
    return data


def serialize_ledger_metadata(view: LedgerMetadata) -> dict[str, Any]:
    return {
        "objectId": view.object_id,
        "metadata": view.metadata,
        "envelopeVersion": view.envelope_version,
        "timestamp": view.timestamp,
        "contentHash": view.content_hash,
        "contentRef": view.content_ref,
        "tokenInfo": {"deleted": view.deleted, "treasury": view.treasury, "network": view.network},
    }


def serialize_verification(result: VerificationResult) -> dict[str, Any]:
    return {
        "objectId": result.object_id,
        "integrityValid": result.integrity_valid,
        "ledgerHash": result.ledger_hash,
        "recomputedHash": result.recomputed_hash,
        "indexHasMetadata": result.index_has_metadata,
        "indexRecordPresent": result.index_record_present,
        "ledgerDeleted": result.ledger_deleted,
        "forbiddenIndexFields": list(result.forbidden_index_fields),
        "unknownIndexFields": list(result.unknown_index_fields),
        "issues": list(result.issues),
    }

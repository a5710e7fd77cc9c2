"""
Lambda handler for the folder/file object API.

Routes (API Gateway REST or HTTP API, stage prefix stripped):
  POST   /folders           create a folder            {"name", "parentFolderId"?, "metadata"?}
  GET    /folders           list root objects          ?limit&cursor&type
  GET    /folders/{id}      list a folder's children   ?limit&cursor&type
  PUT    /folders/{id}      rename a folder            {"name", "metadata"?}
  DELETE /folders/{id}      delete an empty folder
  POST   /files/upload      create a file              {"name", "content" (base64), "parentFolderId"}
  GET    /files/{id}        read a file from the ledger
  PUT    /files/{id}        replace file content       {"content", "version", "name"?, "expectedVersion"?}
  DELETE /files/{id}        delete a file
  GET    /metadata/{id}     ledger metadata view
  GET    /verify/{id}       integrity check

Every response is {"success": true, "data": ...} or
{"success": false, "error": "<code>", "message": "..."}.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

from aws_lambda_powertools import Logger

from ledgerdrive.config import Settings
from ledgerdrive.errors import BadRequestError, LedgerDriveError
from ledgerdrive.http import (
    caller_id,
    decode_content_field,
    decode_event_body,
    error_response,
    optional_int_param,
    optional_string_field,
    preflight_response,
    query_params,
    require_string_field,
    resolve_method_and_path,
    serialize_content,
    serialize_delete,
    serialize_ledger_metadata,
    serialize_page,
    serialize_verification,
    serialize_write,
    status_for,
    success_response,
)
from ledgerdrive.integrity import IntegrityVerifier
from ledgerdrive.objects import ObjectStore

logger = Logger(service="ledgerdrive")

OBJECT_ID_SEGMENT = r"([^/]+)"


def build_object_store(settings: Settings) -> ObjectStore:
    return ObjectStore.from_settings(settings)


def _first_field(params: dict[str, Any], *names: str) -> Any:
    for name in names:
        if params.get(name) not in (None, ""):
            return params[name]
    return None


def _list_params(event: dict[str, Any]) -> dict[str, Any]:
    params = query_params(event)
    return {
        "limit": optional_int_param(params, "limit"),
        "cursor": optional_string_field(params, "cursor"),
        "object_type": optional_string_field(params, "type"),
    }


def _extra_metadata(params: dict[str, Any]) -> dict[str, Any] | None:
    extra = params.get("metadata")
    if extra is None:
        return None
    if not isinstance(extra, dict):
        raise BadRequestError("metadata must be an object")
    return extra


def _create_folder(store: ObjectStore, event: dict[str, Any], user_id: str) -> dict[str, Any]:
    params = decode_event_body(event)
    parent_id = _first_field(params, "parentFolderId", "parentId")
    result = store.create_folder(
        name=require_string_field(params, "name"),
        owner_id=user_id,
        parent_folder_id=str(parent_id) if parent_id is not None else None,
        extra_metadata=_extra_metadata(params),
    )
    return success_response(serialize_write(result), status_code=201)


def _list_root(store: ObjectStore, event: dict[str, Any], user_id: str) -> dict[str, Any]:
    page = store.list_children(None, user_id, **_list_params(event))
    return success_response(serialize_page(page))


def _list_folder(store: ObjectStore, event: dict[str, Any], user_id: str, folder_id: str) -> dict[str, Any]:
    page = store.list_children(folder_id, user_id, **_list_params(event))
    return success_response(serialize_page(page))


def _update_folder(store: ObjectStore, event: dict[str, Any], user_id: str, folder_id: str) -> dict[str, Any]:
    params = decode_event_body(event)
    result = store.update_folder(
        folder_id,
        name=require_string_field(params, "name"),
        actor_id=user_id,
        extra_metadata=_extra_metadata(params),
    )
    return success_response(serialize_write(result))


def _delete_object(store: ObjectStore, event: dict[str, Any], user_id: str, object_id: str) -> dict[str, Any]:
    del event
    return success_response(serialize_delete(store.delete_object(object_id, actor_id=user_id)))


def _upload_file(store: ObjectStore, event: dict[str, Any], user_id: str) -> dict[str, Any]:
    params = decode_event_body(event)
    name = _first_field(params, "name", "fileName")
    parent_id = _first_field(params, "parentFolderId", "folderId")
    if parent_id is None:
        raise BadRequestError("parentFolderId is required")
    result = store.create_file(
        name=name,
        content=decode_content_field(params),
        owner_id=user_id,
        parent_folder_id=str(parent_id),
    )
    return success_response(serialize_write(result), status_code=201)


def _read_file(store: ObjectStore, event: dict[str, Any], user_id: str, object_id: str) -> dict[str, Any]:
    del event, user_id
    return success_response(serialize_content(store.read_object(object_id)))


def _update_file(store: ObjectStore, event: dict[str, Any], user_id: str, object_id: str) -> dict[str, Any]:
    params = decode_event_body(event)
    result = store.update_file(
        object_id,
        new_content=decode_content_field(params),
        new_version=require_string_field(params, "version"),
        actor_id=user_id,
        name=optional_string_field(params, "name"),
        expected_version=optional_string_field(params, "expectedVersion"),
    )
    return success_response(serialize_write(result))


def _read_metadata(store: ObjectStore, event: dict[str, Any], user_id: str, object_id: str) -> dict[str, Any]:
    del event, user_id
    return success_response(serialize_ledger_metadata(store.read_ledger_metadata(object_id)))


def _verify(store: ObjectStore, event: dict[str, Any], user_id: str, object_id: str) -> dict[str, Any]:
    del event, user_id
    verifier = IntegrityVerifier(store.ledger, store.index, blob_store=store.blob_store)
    return success_response(serialize_verification(verifier.verify(object_id)))


ROUTES: list[tuple[str, re.Pattern[str], Callable[..., dict[str, Any]]]] = [
    ("POST", re.compile(r"^/folders$"), _create_folder),
    ("GET", re.compile(r"^/folders$"), _list_root),
    ("GET", re.compile(rf"^/folders/{OBJECT_ID_SEGMENT}$"), _list_folder),
    ("PUT", re.compile(rf"^/folders/{OBJECT_ID_SEGMENT}$"), _update_folder),
    ("DELETE", re.compile(rf"^/folders/{OBJECT_ID_SEGMENT}$"), _delete_object),
    ("POST", re.compile(r"^/files/upload$"), _upload_file),
    ("GET", re.compile(rf"^/files/{OBJECT_ID_SEGMENT}$"), _read_file),
    ("PUT", re.compile(rf"^/files/{OBJECT_ID_SEGMENT}$"), _update_file),
    ("DELETE", re.compile(rf"^/files/{OBJECT_ID_SEGMENT}$"), _delete_object),
    ("GET", re.compile(rf"^/metadata/{OBJECT_ID_SEGMENT}$"), _read_metadata),
    ("GET", re.compile(rf"^/verify/{OBJECT_ID_SEGMENT}$"), _verify),
]


def _match_route(method: str, path: str) -> tuple[Callable[..., dict[str, Any]], tuple[str, ...]] | None:
    for route_method, pattern, handler in ROUTES:
        if route_method != method:
            continue
        match = pattern.fullmatch(path)
        if match:
            return handler, match.groups()
    return None


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    del context
    try:
        event = event or {}
        method, path = resolve_method_and_path(event)
        if method == "OPTIONS":
            return preflight_response()

        route = _match_route(method, path)
        if route is None:
            return error_response(404, "route_not_found", f"No route for {method} {path}")
        handler, path_args = route
        logger.append_keys(method=method, path=path)

        user_id = caller_id(event)
        store = build_object_store(Settings.from_env())
        return handler(store, event, user_id, *path_args)
    except LedgerDriveError as exc:
        status_code = status_for(exc)
        if status_code >= 500:
            logger.exception("Request failed", extra={"error": exc.error})
        else:
            logger.info("Request rejected", extra={"error": exc.error, "status_code": status_code})
        return error_response(status_code, exc.error, exc.message, exc.details)
    except Exception:
        logger.exception("Unhandled error")
        return error_response(500, "internal_error", "Internal error")

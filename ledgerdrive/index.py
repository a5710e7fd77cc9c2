"""
Secondary index over DynamoDB.

One pointer row per object, keyed by ``objectId``, with ``ownerId-index`` and
``parentId-index`` global secondary indexes for listing. Rows never carry
metadata or content; ``impure_fields`` reports anything outside the pointer
schema.
"""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Iterator
from typing import Any

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import BotoCoreError, ClientError

from ledgerdrive.config import Settings
from ledgerdrive.credentials import AWS_RETRY_CONFIG
from ledgerdrive.errors import BadRequestError, IndexWriteFailed, VersionConflict
from ledgerdrive.models import IndexPage, IndexRecord

POINTER_FIELDS = frozenset(
    {
        "objectId",
        "ownerId",
        "parentId",
        "name",
        "objectType",
        "createdAt",
        "transactionId",
        "storageKind",
        "version",
        "updatedAt",
        "lastTransactionId",
    }
)
FORBIDDEN_FIELDS = frozenset({"metadata", "content", "fileContent", "envelope", "contentHash"})

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"
DEFAULT_SCAN_LIMIT = 100


def impure_fields(item: dict[str, Any]) -> tuple[list[str], list[str]]:
    """Return ``(forbidden, unknown)`` attribute names found on an index row."""
    forbidden = sorted(key for key in item if key in FORBIDDEN_FIELDS)
    unknown = sorted(key for key in item if key not in POINTER_FIELDS and key not in FORBIDDEN_FIELDS)
    return forbidden, unknown


def encode_cursor(last_evaluated_key: dict[str, Any] | None) -> str | None:
    if not last_evaluated_key:
        return None
    raw = json.dumps(last_evaluated_key, sort_keys=True, separators=(",", ":"), default=str)
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str | None) -> dict[str, Any] | None:
    if cursor in (None, ""):
        return None
    try:
        decoded = json.loads(base64.urlsafe_b64decode(str(cursor).encode("ascii")).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise BadRequestError("cursor is invalid") from exc
    if not isinstance(decoded, dict) or not decoded:
        raise BadRequestError("cursor is invalid")
    return decoded


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


class ObjectIndex:
    def __init__(self, table: Any, owner_index_name: str, parent_index_name: str) -> None:
        self.table = table
        self.owner_index_name = owner_index_name
        self.parent_index_name = parent_index_name

    @classmethod
    def from_settings(cls, settings: Settings, dynamodb: Any = None) -> "ObjectIndex":
        dynamodb = dynamodb or boto3.resource("dynamodb", region_name=settings.region, config=AWS_RETRY_CONFIG)
        return cls(
            table=dynamodb.Table(settings.index_table_name),
            owner_index_name=settings.owner_index_name,
            parent_index_name=settings.parent_index_name,
        )

    def put(self, record: IndexRecord) -> None:
        try:
            self.table.put_item(
                Item=record.to_item(),
                ConditionExpression=Attr("objectId").not_exists(),
            )
        except (ClientError, BotoCoreError) as exc:
            raise IndexWriteFailed(f"Failed to write index record for {record.object_id}") from exc

    def replace(self, record: IndexRecord, expected_version: str | None = None) -> None:
        """Overwrite an existing pointer row, optionally compare-and-swap on ``version``."""
        condition = Attr("objectId").exists()
        if expected_version is not None:
            condition = condition & Attr("version").eq(expected_version)
        try:
            self.table.put_item(Item=record.to_item(), ConditionExpression=condition)
        except ClientError as exc:
            if _error_code(exc) == CONDITIONAL_CHECK_FAILED and expected_version is not None:
                current = self.get_record(record.object_id)
                raise VersionConflict(current.version if current else "", expected_version) from exc
            raise IndexWriteFailed(f"Failed to update index record for {record.object_id}") from exc
        except BotoCoreError as exc:
            raise IndexWriteFailed(f"Failed to update index record for {record.object_id}") from exc

    def put_item(self, item: dict[str, Any]) -> None:
        """Write a raw row back unconditionally. Used by the sweep to strip impure fields."""
        try:
            self.table.put_item(Item=item)
        except (ClientError, BotoCoreError) as exc:
            raise IndexWriteFailed(f"Failed to rewrite index record for {item.get('objectId')}") from exc

    def delete(self, object_id: str) -> None:
        try:
            self.table.delete_item(Key={"objectId": object_id})
        except (ClientError, BotoCoreError) as exc:
            raise IndexWriteFailed(f"Failed to delete index record for {object_id}") from exc

    def get_item(self, object_id: str) -> dict[str, Any] | None:
        try:
            response = self.table.get_item(Key={"objectId": object_id}, ConsistentRead=True)
        except (ClientError, BotoCoreError) as exc:
            raise IndexWriteFailed(f"Failed to read index record for {object_id}") from exc
        return response.get("Item")

    def get_record(self, object_id: str) -> IndexRecord | None:
        item = self.get_item(object_id)
        return IndexRecord.from_item(item) if item else None

    def _query(self, query_kwargs: dict[str, Any]) -> dict[str, Any]:
        try:
            return self.table.query(**query_kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise IndexWriteFailed(f"Failed to query index {query_kwargs.get('IndexName')}") from exc

    def _query_kwargs(self, parent_id: str | None, owner_id: str) -> dict[str, Any]:
        if parent_id is None:
            return {
                "IndexName": self.owner_index_name,
                "KeyConditionExpression": Key("ownerId").eq(owner_id),
                "FilterExpression": Attr("parentId").not_exists(),
            }
        return {
            "IndexName": self.parent_index_name,
            "KeyConditionExpression": Key("parentId").eq(parent_id),
            "FilterExpression": Attr("ownerId").eq(owner_id),
        }

    def list_children(
        self,
        parent_id: str | None,
        owner_id: str,
        limit: int | None = None,
        cursor: str | None = None,
        object_type: str | None = None,
    ) -> IndexPage:
        """One page of the caller's objects under ``parent_id`` (root objects when ``None``)."""
        query_kwargs = self._query_kwargs(parent_id, owner_id)
        if object_type is not None:
            query_kwargs["FilterExpression"] = query_kwargs["FilterExpression"] & Attr("objectType").eq(object_type)
        if limit is not None:
            query_kwargs["Limit"] = limit
        start_key = decode_cursor(cursor)
        if start_key:
            query_kwargs["ExclusiveStartKey"] = start_key

        response = self._query(query_kwargs)
        records = [IndexRecord.from_item(item) for item in response.get("Items") or []]
        return IndexPage(records=records, next_cursor=encode_cursor(response.get("LastEvaluatedKey")))

    def has_children(self, parent_id: str) -> bool:
        """True when any pointer names ``parent_id`` as its parent, whoever owns it.

        Deletes never cascade, so a child owned by another user keeps the folder
        from being deleted.
        """
        query_kwargs: dict[str, Any] = {
            "IndexName": self.parent_index_name,
            "KeyConditionExpression": Key("parentId").eq(parent_id),
            "Limit": 1,
        }
        response = self._query(query_kwargs)
        return bool(response.get("Items"))

    def find_by_name(self, parent_id: str | None, owner_id: str, name: str) -> IndexRecord | None:
        query_kwargs = self._query_kwargs(parent_id, owner_id)
        query_kwargs["FilterExpression"] = query_kwargs["FilterExpression"] & Attr("name").eq(name)
        while True:
            response = self._query(query_kwargs)
            items = response.get("Items") or []
            if items:
                return IndexRecord.from_item(items[0])
            last_evaluated_key = response.get("LastEvaluatedKey")
            if not last_evaluated_key:
                return None
            query_kwargs["ExclusiveStartKey"] = last_evaluated_key

    def scan_items(self, scan_limit: int = DEFAULT_SCAN_LIMIT) -> Iterator[dict[str, Any]]:
        scan_kwargs: dict[str, Any] = {"Limit": scan_limit}
        while True:
            try:
                response = self.table.scan(**scan_kwargs)
            except (ClientError, BotoCoreError) as exc:
                raise IndexWriteFailed("Failed to scan index") from exc
            yield from response.get("Items") or []
            last_evaluated_key = response.get("LastEvaluatedKey")
            if not last_evaluated_key:
                break
            scan_kwargs["ExclusiveStartKey"] = last_evaluated_key

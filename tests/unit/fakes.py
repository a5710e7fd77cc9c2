import io
from datetime import datetime, timedelta, timezone

from botocore.exceptions import ClientError

from ledgerdrive.blobs import BlobStore
from ledgerdrive.config import POLICY_REJECT
from ledgerdrive.errors import LedgerRejected, ObjectNotFound
from ledgerdrive.index import ObjectIndex
from ledgerdrive.ledger import LedgerClient, LedgerRecord, LedgerWriteResult
from ledgerdrive.objects import ObjectStore

OWNER_INDEX = "ownerId-index"
PARENT_INDEX = "parentId-index"
INDEX_KEYS = {OWNER_INDEX: "ownerId", PARENT_INDEX: "parentId"}
TREASURY = "0x" + "ab" * 20


def evaluate_condition(condition, item):
    """Evaluate the subset of boto3 condition objects the index uses."""
    expression = condition.get_expression()
    operator = expression["operator"]
    values = expression["values"]
    if operator == "AND":
        return all(evaluate_condition(value, item) for value in values)
    if operator == "OR":
        return any(evaluate_condition(value, item) for value in values)
    if operator == "NOT":
        return not evaluate_condition(values[0], item)
    if operator == "=":
        return item is not None and values[0].name in item and item[values[0].name] == values[1]
    if operator == "attribute_not_exists":
        return item is None or values[0].name not in item
    if operator == "attribute_exists":
        return item is not None and values[0].name in item
    raise NotImplementedError(f"unsupported condition operator {operator}")


def _client_error(code, operation):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeIndexTable:
    def __init__(self):
        self.items: dict[str, dict] = {}
        self.fail_writes = False
        self.fail_deletes = False
        self.fail_reads = False
        self.queries: list[dict] = []

    def seed(self, item):
        self.items[item["objectId"]] = dict(item)

    def put_item(self, Item, ConditionExpression=None):
        if self.fail_writes:
            raise _client_error("InternalServerError", "PutItem")
        existing = self.items.get(Item["objectId"])
        if ConditionExpression is not None and not evaluate_condition(ConditionExpression, existing):
            raise _client_error("ConditionalCheckFailedException", "PutItem")
        self.items[Item["objectId"]] = dict(Item)
        return {}

    def get_item(self, Key, ConsistentRead=False):
        del ConsistentRead
        if self.fail_reads:
            raise _client_error("ProvisionedThroughputExceededException", "GetItem")
        item = self.items.get(Key["objectId"])
        return {"Item": dict(item)} if item else {}

    def delete_item(self, Key):
        if self.fail_deletes:
            raise _client_error("InternalServerError", "DeleteItem")
        self.items.pop(Key["objectId"], None)
        return {}

    def _page(self, candidates, Limit=None, ExclusiveStartKey=None, FilterExpression=None):
        if ExclusiveStartKey:
            ids = [item["objectId"] for item in candidates]
            start = ids.index(ExclusiveStartKey["objectId"]) + 1 if ExclusiveStartKey["objectId"] in ids else len(ids)
            candidates = candidates[start:]
        evaluated = candidates[:Limit] if Limit is not None else candidates
        remaining = candidates[len(evaluated) :]
        items = [dict(item) for item in evaluated if FilterExpression is None or evaluate_condition(FilterExpression, item)]
        response = {"Items": items, "Count": len(items)}
        if remaining and evaluated:
            response["LastEvaluatedKey"] = {"objectId": evaluated[-1]["objectId"]}
        return response

    def query(self, IndexName, KeyConditionExpression, FilterExpression=None, Limit=None, ExclusiveStartKey=None):
        self.queries.append({"IndexName": IndexName, "Limit": Limit})
        if self.fail_reads:
            raise _client_error("ProvisionedThroughputExceededException", "Query")
        if IndexName not in INDEX_KEYS:
            raise _client_error("ValidationException", "Query")
        candidates = [item for item in self.items.values() if evaluate_condition(KeyConditionExpression, item)]
        return self._page(candidates, Limit=Limit, ExclusiveStartKey=ExclusiveStartKey, FilterExpression=FilterExpression)

    def scan(self, Limit=None, ExclusiveStartKey=None):
        if self.fail_reads:
            raise _client_error("ProvisionedThroughputExceededException", "Scan")
        return self._page(list(self.items.values()), Limit=Limit, ExclusiveStartKey=ExclusiveStartKey)


class FakeDynamoResource:
    def __init__(self, tables=None):
        self.tables = tables or {}

    def Table(self, name):
        return self.tables.setdefault(name, FakeIndexTable())


class FakeLedgerClient(LedgerClient):
    def __init__(self, network="testnet", first_token_id=1001):
        self.network = network
        self.tokens: dict[str, dict] = {}
        self.next_token_id = first_token_id
        self.transaction_count = 0
        self.calls: list[tuple] = []
        self.reject_reason = None

    def _transaction_id(self):
        self.transaction_count += 1
        return f"0x{self.transaction_count:064x}"

    def _check_reject(self):
        if self.reject_reason:
            raise LedgerRejected(self.reject_reason)

    def submit_create(self, envelope, token_params):
        self._check_reject()
        object_id = str(self.next_token_id)
        self.next_token_id += 1
        self.tokens[object_id] = {
            "envelope": bytes(envelope),
            "deleted": False,
            "name": token_params.name,
            "symbol": token_params.symbol,
        }
        self.calls.append(("create", object_id))
        return LedgerWriteResult(object_id=object_id, transaction_id=self._transaction_id())

    def submit_update(self, object_id, envelope):
        self._check_reject()
        token = self.tokens.get(object_id)
        if token is None:
            raise ObjectNotFound(f"Ledger token not found: {object_id}")
        if token["deleted"]:
            raise LedgerRejected("token is deleted")
        token["envelope"] = bytes(envelope)
        self.calls.append(("update", object_id))
        return self._transaction_id()

    def submit_delete(self, object_id):
        self._check_reject()
        token = self.tokens.get(object_id)
        if token is None:
            raise ObjectNotFound(f"Ledger token not found: {object_id}")
        token["deleted"] = True
        self.calls.append(("delete", object_id))
        return self._transaction_id()

    def query_record(self, object_id):
        token = self.tokens.get(object_id)
        if token is None:
            raise ObjectNotFound(f"Ledger token not found: {object_id}")
        return LedgerRecord(object_id=object_id, envelope=token["envelope"], deleted=token["deleted"], treasury=TREASURY)

    def overwrite_envelope(self, object_id, envelope):
        self.tokens[object_id]["envelope"] = bytes(envelope)

    def writes(self):
        return [call for call in self.calls if call[0] in {"create", "update", "delete"}]


class _Body:
    def __init__(self, data):
        self._stream = io.BytesIO(data)

    def read(self):
        return self._stream.read()


class FakeS3Client:
    def __init__(self):
        self.objects: dict[tuple[str, str], bytes] = {}
        self.put_calls: list[str] = []

    def head_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise _client_error("404", "HeadObject")
        return {"ContentLength": len(self.objects[(Bucket, Key)])}

    def put_object(self, Bucket, Key, Body, ContentType=None, Metadata=None):
        del ContentType, Metadata
        self.objects[(Bucket, Key)] = bytes(Body)
        self.put_calls.append(Key)
        return {}

    def get_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise _client_error("NoSuchKey", "GetObject")
        return {"Body": _Body(self.objects[(Bucket, Key)])}


class FakeKmsClient:
    def __init__(self, plaintexts=None):
        self.plaintexts = plaintexts or {}
        self.calls: list[dict] = []

    def decrypt(self, CiphertextBlob, KeyId=None):
        self.calls.append({"CiphertextBlob": CiphertextBlob, "KeyId": KeyId})
        if CiphertextBlob not in self.plaintexts:
            raise _client_error("InvalidCiphertextException", "Decrypt")
        return {"Plaintext": self.plaintexts[CiphertextBlob]}


class SteppingClock:
    def __init__(self, start=None, step_seconds=1):
        self.current = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self.step = timedelta(seconds=step_seconds)

    def __call__(self):
        now = self.current
        self.current = self.current + self.step
        return now


def make_store(
    record_max_bytes=1024,
    large_content_policy=POLICY_REJECT,
    with_blob_store=False,
    enforce_unique_names=False,
):
    ledger = FakeLedgerClient()
    table = FakeIndexTable()
    index = ObjectIndex(table, OWNER_INDEX, PARENT_INDEX)
    s3 = FakeS3Client()
    blob_store = BlobStore(s3, "ledgerdrive-blobs") if with_blob_store else None
    store = ObjectStore(
        ledger=ledger,
        index=index,
        record_max_bytes=record_max_bytes,
        large_content_policy=large_content_policy,
        blob_store=blob_store,
        enforce_unique_names=enforce_unique_names,
        clock=SteppingClock(),
    )
    return store, ledger, table, s3

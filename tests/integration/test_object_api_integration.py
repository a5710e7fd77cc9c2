import base64
import importlib.util
import json
import os
from pathlib import Path
import sys
import unittest
from unittest import mock

from ledgerdrive import blobs as blobs_module
from ledgerdrive import index as index_module
from ledgerdrive import objects as objects_module

TESTS_ROOT = Path(__file__).resolve().parents[1]
REPO_ROOT = TESTS_ROOT.parent


def load_module(module_name, module_path):
    module_spec = importlib.util.spec_from_file_location(module_name, module_path)
    if module_spec is None or module_spec.loader is None:
        raise RuntimeError(f"Unable to load {module_path}")
    module = importlib.util.module_from_spec(module_spec)
    sys.modules[module_spec.name] = module
    module_spec.loader.exec_module(module)
    return module


app = load_module("object_api_app_integration", REPO_ROOT / "services" / "object-api" / "app.py")
sweep_app = load_module("integrity_sweep_app_integration", REPO_ROOT / "services" / "integrity-sweep" / "app.py")
fakes = load_module("ledgerdrive_test_fakes_integration", TESTS_ROOT / "unit" / "fakes.py")

ENV = {
    "OBJECT_INDEX_TABLE_NAME": "object-index",
    "LEDGER_RECORD_MAX_BYTES": "900",
    "LARGE_CONTENT_POLICY": "externalize",
    "CONTENT_BLOB_BUCKET": "ledgerdrive-blobs",
}


def event(method, path, body=None, user="U1", query=None):
    return {
        "httpMethod": method,
        "path": path,
        "queryStringParameters": query,
        "requestContext": {"stage": "dev", "authorizer": {"claims": {"sub": user}}},
        "body": json.dumps(body) if body is not None else None,
    }


class ObjectApiIntegrationTests(unittest.TestCase):
    def setUp(self):
        self.ledger = fakes.FakeLedgerClient()
        self.dynamodb = fakes.FakeDynamoResource()
        self.s3 = fakes.FakeS3Client()
        patches = [
            mock.patch.dict(os.environ, ENV),
            mock.patch.object(objects_module.Web3LedgerClient, "from_settings", return_value=self.ledger),
            mock.patch.object(index_module.boto3, "resource", return_value=self.dynamodb),
            mock.patch.object(blobs_module.boto3, "client", return_value=self.s3),
        ]
        for patcher in patches:
            patcher.start()
            self.addCleanup(patcher.stop)

    def call(self, request):
        response = app.lambda_handler(request, None)
        return response["statusCode"], json.loads(response["body"])

    def test_full_lifecycle(self):
        status, body = self.call(event("POST", "/folders", {"name": "Reports"}))
        self.assertEqual(status, 201)
        folder_id = body["data"]["objectId"]

        status, body = self.call(
            event(
                "POST",
                "/files/upload",
                {"name": "q1.txt", "content": base64.b64encode(b"hello").decode("ascii"), "parentFolderId": folder_id},
            )
        )
        self.assertEqual(status, 201)
        file_id = body["data"]["objectId"]
        self.assertEqual(body["data"]["contentLocation"], "inline")

        big = bytes(range(256)) * 10
        status, body = self.call(
            event(
                "PUT",
                f"/files/{file_id}",
                {"content": base64.b64encode(big).decode("ascii"), "version": "1.1", "expectedVersion": "1.0"},
            )
        )
        self.assertEqual(status, 200)
        self.assertEqual(body["data"]["contentLocation"], "external")
        self.assertEqual(len(self.s3.objects), 1)

        status, body = self.call(event("GET", f"/files/{file_id}"))
        self.assertEqual(status, 200)
        self.assertEqual(base64.b64decode(body["data"]["content"]), big)

        status, body = self.call(event("GET", f"/verify/{file_id}"))
        self.assertTrue(body["data"]["integrityValid"])

        status, body = self.call(event("GET", f"/folders/{folder_id}"))
        self.assertEqual([item["objectId"] for item in body["data"]["items"]], [file_id])
        self.assertEqual(body["data"]["items"][0]["version"], "1.1")

        index_item = self.dynamodb.Table("object-index").items[file_id]
        self.assertNotIn("metadata", index_item)
        self.assertNotIn("content", index_item)

        status, _ = self.call(event("DELETE", f"/files/{file_id}"))
        self.assertEqual(status, 200)
        status, _ = self.call(event("DELETE", f"/folders/{folder_id}"))
        self.assertEqual(status, 200)

        status, body = self.call(event("PUT", f"/files/{file_id}", {"content": "eA==", "version": "9.0"}))
        self.assertEqual(status, 410)

        status, body = self.call(event("GET", "/folders"))
        self.assertEqual(body["data"]["items"], [])

    def test_half_failed_delete_is_reconciled_by_sweep(self):
        _, body = self.call(event("POST", "/folders", {"name": "Reports"}))
        folder_id = body["data"]["objectId"]
        table = self.dynamodb.Table("object-index")
        table.fail_deletes = True

        status, body = self.call(event("DELETE", f"/folders/{folder_id}"))
        self.assertEqual(status, 200)
        self.assertFalse(body["data"]["indexConsistent"])
        table.fail_deletes = False

        with mock.patch.dict(os.environ, {"INTEGRITY_SWEEP_REPAIR": "true", "INTEGRITY_SWEEP_DRY_RUN": "false"}):
            response = sweep_app.lambda_handler({}, None)

        report = json.loads(response["body"])["data"]
        self.assertEqual(report["counters"]["orphaned_pointers"], 1)
        self.assertEqual(report["counters"]["pointers_deleted"], 1)
        self.assertEqual(table.items, {})


if __name__ == "__main__":
    unittest.main()

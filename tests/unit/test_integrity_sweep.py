import importlib.util
import json
import os
import sys
from pathlib import Path
import unittest
from unittest import mock

from fakes import make_store

from ledgerdrive.integrity import IntegrityVerifier
from ledgerdrive.reconcile import sweep_index


def load_app_module():
    module_path = Path(__file__).resolve().parents[2] / "services" / "integrity-sweep" / "app.py"
    module_name = "integrity_sweep_app_unit"
    module_spec = importlib.util.spec_from_file_location(module_name, module_path)
    if module_spec is None or module_spec.loader is None:
        raise RuntimeError("Unable to load integrity-sweep module")
    module = importlib.util.module_from_spec(module_spec)
    sys.modules[module_name] = module
    module_spec.loader.exec_module(module)
    return module


app = load_app_module()


class SweepIndexTests(unittest.TestCase):
    def setUp(self):
        self.store, self.ledger, self.table, _ = make_store()
        self.verifier = IntegrityVerifier(self.ledger, self.store.index)
        self.reports = self.store.create_folder("Reports", owner_id="U1").object
        self.file_id = self.store.create_file("q1.txt", b"hello", "U1", self.reports.object_id).object.object_id

    def _half_failed_delete(self):
        self.table.fail_deletes = True
        self.store.delete_object(self.file_id, actor_id="U1")
        self.table.fail_deletes = False

    def test_clean_index(self):
        report = sweep_index(self.verifier, self.store.index)

        self.assertEqual(report.counters["pointers_scanned"], 2)
        self.assertEqual(report.counters["pointers_valid"], 2)
        self.assertEqual(report.findings, [])

    def test_orphaned_pointer_reported_in_dry_run(self):
        self._half_failed_delete()

        report = sweep_index(self.verifier, self.store.index, repair=True, dry_run=True)

        self.assertEqual(report.counters["orphaned_pointers"], 1)
        self.assertEqual(report.findings[0]["object_id"], self.file_id)
        self.assertEqual(report.findings[0]["actions"], [])
        self.assertIn(self.file_id, self.table.items)

    def test_repair_deletes_orphaned_pointer(self):
        self._half_failed_delete()

        report = sweep_index(self.verifier, self.store.index, repair=True, dry_run=False)

        self.assertEqual(report.counters["pointers_deleted"], 1)
        self.assertNotIn(self.file_id, self.table.items)
        self.assertEqual(report.findings[0]["actions"], ["deleted_pointer"])

    def test_repair_strips_impure_fields(self):
        self.table.items[self.file_id]["metadata"] = {"name": "q1.txt"}
        self.table.items[self.file_id]["content"] = "aGVsbG8="

        report = sweep_index(self.verifier, self.store.index, repair=True, dry_run=False)

        self.assertEqual(report.counters["impure_pointers"], 1)
        self.assertEqual(report.counters["pointers_cleaned"], 1)
        self.assertNotIn("metadata", self.table.items[self.file_id])
        self.assertNotIn("content", self.table.items[self.file_id])
        self.assertEqual(self.table.items[self.file_id]["name"], "q1.txt")

    def test_corrupt_ledger_record_is_reported_not_repaired(self):
        self.ledger.overwrite_envelope(self.file_id, b"garbage")

        report = sweep_index(self.verifier, self.store.index, repair=True, dry_run=False)

        self.assertEqual(report.counters["pointers_invalid"], 1)
        self.assertEqual(report.findings[0]["issues"], ["envelope_corrupt"])
        self.assertEqual(report.findings[0]["actions"], [])
        self.assertIn(self.file_id, self.table.items)


class IntegritySweepHandlerTests(unittest.TestCase):
    def setUp(self):
        self.store, self.ledger, self.table, _ = make_store()
        reports = self.store.create_folder("Reports", owner_id="U1").object
        self.file_id = self.store.create_file("q1.txt", b"hello", "U1", reports.object_id).object.object_id
        self.table.fail_deletes = True
        self.store.delete_object(self.file_id, actor_id="U1")
        self.table.fail_deletes = False

    def run_handler(self, event, env):
        with mock.patch.dict(os.environ, {"OBJECT_INDEX_TABLE_NAME": "object-index", **env}):
            with mock.patch.object(app, "build_object_store", return_value=self.store):
                response = app.lambda_handler(event, None)
        return response, json.loads(response["body"])

    def test_defaults_to_dry_run(self):
        response, body = self.run_handler({}, {})

        self.assertEqual(response["statusCode"], 200)
        self.assertTrue(body["data"]["dryRun"])
        self.assertFalse(body["data"]["repair"])
        self.assertEqual(body["data"]["counters"]["orphaned_pointers"], 1)
        self.assertIn(self.file_id, self.table.items)

    def test_repair_from_environment(self):
        response, body = self.run_handler(
            {}, {"INTEGRITY_SWEEP_REPAIR": "true", "INTEGRITY_SWEEP_DRY_RUN": "false", "INTEGRITY_SWEEP_SCAN_LIMIT": "1"}
        )

        self.assertEqual(response["statusCode"], 200)
        self.assertEqual(body["data"]["counters"]["pointers_deleted"], 1)
        self.assertNotIn(self.file_id, self.table.items)

    def test_event_overrides_environment(self):
        _, body = self.run_handler(
            {"dry_run": True}, {"INTEGRITY_SWEEP_REPAIR": "true", "INTEGRITY_SWEEP_DRY_RUN": "false"}
        )

        self.assertTrue(body["data"]["dryRun"])
        self.assertIn(self.file_id, self.table.items)

    def test_invalid_scan_limit(self):
        response, body = self.run_handler({}, {"INTEGRITY_SWEEP_SCAN_LIMIT": "zero"})

        self.assertEqual(response["statusCode"], 500)
        self.assertEqual(body["error"], "configuration_error")


if __name__ == "__main__":
    unittest.main()

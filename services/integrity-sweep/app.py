"""
Scheduled Lambda that reconciles the secondary index against the ledger.

Every index pointer is verified. Pointers whose token was burned (a delete
whose index cleanup failed) and pointers carrying attributes outside the
pointer schema are reported; with INTEGRITY_SWEEP_REPAIR=true and
INTEGRITY_SWEEP_DRY_RUN=false they are deleted or stripped. The event may
override ``dry_run`` and ``repair``.
"""

from __future__ import annotations

import os
from typing import Any

from aws_lambda_powertools import Logger

from ledgerdrive.config import Settings, _read_bool, _read_int_env
from ledgerdrive.errors import LedgerDriveError
from ledgerdrive.http import error_response, status_for, success_response
from ledgerdrive.index import DEFAULT_SCAN_LIMIT
from ledgerdrive.integrity import IntegrityVerifier
from ledgerdrive.objects import ObjectStore
from ledgerdrive.reconcile import sweep_index

logger = Logger(service="ledgerdrive")

SWEEP_REPAIR_ENV = "INTEGRITY_SWEEP_REPAIR"
SWEEP_DRY_RUN_ENV = "INTEGRITY_SWEEP_DRY_RUN"
SWEEP_SCAN_LIMIT_ENV = "INTEGRITY_SWEEP_SCAN_LIMIT"


def build_object_store(settings: Settings) -> ObjectStore:
    return ObjectStore.from_settings(settings)


def _flag(event: dict[str, Any], key: str, env_name: str, default: bool) -> bool:
    if key in event:
        return _read_bool(event.get(key))
    raw = os.environ.get(env_name)
    if raw is None or raw.strip() == "":
        return default
    return _read_bool(raw)


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    del context
    try:
        event = event or {}
        repair = _flag(event, "repair", SWEEP_REPAIR_ENV, default=False)
        dry_run = _flag(event, "dry_run", SWEEP_DRY_RUN_ENV, default=True)
        scan_limit = _read_int_env(SWEEP_SCAN_LIMIT_ENV, DEFAULT_SCAN_LIMIT)

        store = build_object_store(Settings.from_env())
        verifier = IntegrityVerifier(store.ledger, store.index, blob_store=store.blob_store)
        report = sweep_index(verifier, store.index, repair=repair, dry_run=dry_run, scan_limit=scan_limit)

        return success_response(
            {
                "dryRun": report.dry_run,
                "repair": report.repair,
                "counters": report.counters,
                "findings": report.findings,
            }
        )
    except LedgerDriveError as exc:
        logger.exception("Integrity sweep failed", extra={"error": exc.error})
        return error_response(status_for(exc), exc.error, exc.message, exc.details)
    except Exception:
        logger.exception("Unhandled error")
        return error_response(500, "internal_error", "Internal error")

"""
Index reconciliation sweep.

Scans every pointer in the secondary index, verifies it against the ledger and
reports divergence. With ``repair=True`` and ``dry_run=False`` it deletes
pointers to burned or unknown tokens and strips attributes outside the
pointer schema. The ledger is never written.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from aws_lambda_powertools import Logger

from ledgerdrive.errors import IndexWriteFailed, LedgerDriveError
from ledgerdrive.index import DEFAULT_SCAN_LIMIT, POINTER_FIELDS, ObjectIndex
from ledgerdrive.integrity import (
    ISSUE_INDEX_HAS_METADATA,
    ISSUE_INDEX_UNKNOWN_FIELDS,
    ISSUE_ORPHANED_INDEX_POINTER,
    IntegrityVerifier,
)

logger = Logger(service="ledgerdrive", child=True)


@dataclass
class SweepReport:
    dry_run: bool
    repair: bool
    counters: dict[str, int] = field(
        default_factory=lambda: {
            "pointers_scanned": 0,
            "pointers_valid": 0,
            "pointers_invalid": 0,
            "pointers_unverifiable": 0,
            "orphaned_pointers": 0,
            "impure_pointers": 0,
            "pointers_deleted": 0,
            "pointers_cleaned": 0,
            "repair_failures": 0,
        }
    )
    findings: list[dict[str, Any]] = field(default_factory=list)


def _strip_to_pointer(item: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in item.items() if key in POINTER_FIELDS}


def _repair(index: ObjectIndex, object_id: str, item: dict[str, Any], issues: tuple[str, ...], report: SweepReport) -> list[str]:
    actions: list[str] = []
    try:
        if ISSUE_ORPHANED_INDEX_POINTER in issues:
            index.delete(object_id)
            report.counters["pointers_deleted"] += 1
            actions.append("deleted_pointer")
        elif ISSUE_INDEX_HAS_METADATA in issues or ISSUE_INDEX_UNKNOWN_FIELDS in issues:
            index.put_item(_strip_to_pointer(item))
            report.counters["pointers_cleaned"] += 1
            actions.append("stripped_fields")
    except IndexWriteFailed:
        report.counters["repair_failures"] += 1
        logger.exception("Index repair failed", extra={"object_id": object_id})
    return actions


def sweep_index(
    verifier: IntegrityVerifier,
    index: ObjectIndex,
    repair: bool = False,
    dry_run: bool = True,
    scan_limit: int = DEFAULT_SCAN_LIMIT,
) -> SweepReport:
    report = SweepReport(dry_run=dry_run, repair=repair)

    for item in index.scan_items(scan_limit=scan_limit):
        object_id = str(item.get("objectId") or "")
        if not object_id:
            continue
        report.counters["pointers_scanned"] += 1

        try:
            result = verifier.verify_pointer(object_id, item)
        except LedgerDriveError as exc:
            report.counters["pointers_unverifiable"] += 1
            report.findings.append({"object_id": object_id, "issues": [exc.error], "actions": []})
            logger.warning("Pointer could not be verified", extra={"object_id": object_id, "error": exc.error})
            continue

        if not result.issues:
            report.counters["pointers_valid"] += 1
            continue

        report.counters["pointers_invalid"] += 1
        if ISSUE_ORPHANED_INDEX_POINTER in result.issues:
            report.counters["orphaned_pointers"] += 1
        if result.forbidden_index_fields or result.unknown_index_fields:
            report.counters["impure_pointers"] += 1

        actions: list[str] = []
        if repair and not dry_run:
            actions = _repair(index, object_id, item, result.issues, report)
        report.findings.append({"object_id": object_id, "issues": list(result.issues), "actions": actions})

    logger.info("Index sweep complete", extra={"counters": report.counters, "dry_run": dry_run, "repair": repair})
    return report

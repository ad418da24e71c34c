from __future__ import annotations

import csv
import json
import os
from datetime import datetime, timezone
from pathlib import Path

from contract_gate.baseline import BaselineStore
from contract_gate.models import GateReport

BASELINE_FORMAT_VERSION = 1


def write_report(report: GateReport, output_dir: str | Path) -> dict:
    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    summary = {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "run_id": report.run_id,
        "run_ref": report.run_ref,
        "status": report.status,
        "exit_code": report.exit_code,
        "counts": {
            "violations": len(report.scan.violations),
            "suppressed": len(report.scan.suppressed),
            "warnings": len(report.scan.warnings) + len(report.classification.warnings),
            "passed_rules": len(report.scan.passed_rules),
            **report.classification.counts(),
        },
        "warnings": [str(item) for item in report.scan.warnings + report.classification.warnings],
        "audit": [item.to_dict() for item in report.scan.audit],
        "files": {},
    }

    summary_json = out_dir / "gate_summary.json"
    violations_csv = out_dir / "violations.csv"
    classification_csv = out_dir / "classification.csv"

    violation_rows = [dict(item.to_dict(), suppressed=False) for item in report.scan.violations]
    violation_rows.extend(dict(item.to_dict(), suppressed=True) for item in report.scan.suppressed)

    _write_csv(violations_csv, violation_rows)
    _write_csv(classification_csv, [item.to_dict() for item in report.classification.items])

    summary["files"] = {
        "gate_summary": str(summary_json.resolve()),
        "violations": str(violations_csv.resolve()),
        "classification": str(classification_csv.resolve()),
    }
    _write_json(summary_json, summary)
    return summary


def export_baseline(db_path: str | Path, output_path: str | Path) -> dict:
    """Write the baseline in the portable ``baseline.json`` layout."""
    with BaselineStore(db_path) as store:
        store.init_schema()
        entries = store.load()
        latest = store.latest_run() or {}

    payload = {
        "version": BASELINE_FORMAT_VERSION,
        "last_updated": latest.get("finished_at"),
        "last_wave": latest.get("wave"),
        "last_commit": latest.get("commit_sha"),
        "tests": {
            test_id: {
                "status": entry.last_status.value.lower(),
                "last_updated": entry.last_updated,
                "run_ref": entry.last_run_ref,
            }
            for test_id, entry in sorted(entries.items())
        },
    }

    target = Path(output_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_suffix(target.suffix + ".tmp")
    _write_json(tmp, payload)
    os.replace(tmp, target)
    return payload


def _write_json(path: Path, payload: dict) -> None:
    with path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, ensure_ascii=True)


def _write_csv(path: Path, rows: list[dict]) -> None:
    with path.open("w", encoding="utf-8", newline="") as handle:
        if not rows:
            handle.write("")
            return

        fieldnames: list[str] = []
        seen = set()
        for row in rows:
            for key in row:
                if key not in seen:
                    seen.add(key)
                    fieldnames.append(key)

        writer = csv.DictWriter(handle, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)

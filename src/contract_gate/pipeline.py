from __future__ import annotations

import logging
import subprocess
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from contract_gate.baseline import BaselineStore
from contract_gate.classifier import baseline_updates, classify
from contract_gate.config import ConfigurationError, ScanSettings, read_structured
from contract_gate.models import (
    DeferEntry,
    GateReport,
    Label,
    Override,
    RuleSet,
    ScanResult,
    Severity,
    Status,
)
from contract_gate.rules import load_rule_paths, load_rules
from contract_gate.scanners import scan

logger = logging.getLogger(__name__)

EXIT_PASS = 0
EXIT_GATE_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_STORE_ERROR = 3

_STATUS_ALIASES = {
    "pass": Status.PASS,
    "passed": Status.PASS,
    "ok": Status.PASS,
    "fail": Status.FAIL,
    "failed": Status.FAIL,
    "error": Status.FAIL,
}


class GateFailure(Exception):
    """The gate ran correctly and found something that blocks it."""

    def __init__(self, report: GateReport):
        self.report = report
        blocking = [
            item.test_id
            for item in report.classification.items
            if item.label.blocks_gate
        ]
        blocking.extend(
            item.rule_id for item in report.scan.violations if item.severity.blocks_gate
        )
        super().__init__(f"Gate failed: {', '.join(sorted(set(blocking)))}")


def run_scan(
    rules: RuleSet | Any,
    source_root: str | Path,
    overrides: Iterable[Override] = (),
    *,
    settings: ScanSettings | None = None,
) -> ScanResult:
    rule_set = coerce_rule_set(rules)
    settings = settings or ScanSettings()
    return scan(
        rule_set,
        source_root,
        overrides,
        max_workers=settings.max_workers,
        max_file_size_bytes=settings.max_file_size_bytes,
        exclude_dirs=settings.exclude_dirs,
    )


def run_gate(
    rules: RuleSet | Any,
    source_root: str | Path,
    *,
    db_path: str | Path,
    overrides: Iterable[Override] = (),
    defers: Iterable[DeferEntry] = (),
    test_results: Mapping[str, Status] | None = None,
    run_ref: str | None = None,
    wave: str | None = None,
    settings: ScanSettings | None = None,
    raise_on_failure: bool = False,
) -> GateReport:
    rule_set = coerce_rule_set(rules)
    results = dict(test_results or {})
    clashes = sorted(set(results) & {rule.id for rule in rule_set})
    if clashes:
        raise ConfigurationError(f"Test ids collide with rule ids: {', '.join(clashes)}")
    defers = list(defers)
    overrides = list(overrides)

    commit_sha = read_head_sha(Path(source_root))
    resolved_ref = run_ref or commit_sha or f"local-{utc_stamp()}"

    store = BaselineStore(db_path)
    try:
        store.init_schema()
        run_id = store.start_run(resolved_ref, commit_sha=commit_sha, wave=wave)
        try:
            scan_result = run_scan(rule_set, source_root, overrides, settings=settings)
            observations = rule_observations(rule_set, scan_result)
            observations.update(results)

            with store.transaction() as txn:
                classification = classify(observations, txn.entries, defers)
                for test_id, status in baseline_updates(classification).items():
                    txn.update(test_id, status, resolved_ref)
                txn.append_audit(scan_result.audit, run_id)
                report = GateReport(
                    run_id=run_id,
                    run_ref=resolved_ref,
                    scan=scan_result,
                    classification=classification,
                )
                txn.finish_run(
                    run_id,
                    status=report.status,
                    exit_code=report.exit_code,
                    counts={
                        "violations": len(scan_result.violations),
                        "suppressed": len(scan_result.suppressed),
                        "warnings": len(scan_result.warnings) + len(classification.warnings),
                        "regressions": len(classification.by_label(Label.REGRESSION))
                        + len(classification.by_label(Label.NEW_FAILURE)),
                    },
                )
        except Exception as exc:
            store.fail_run(run_id, str(exc))
            raise
    finally:
        store.close()

    logger.info(
        "Gate run %s (%s): %s, %d violation(s), %s",
        report.run_id,
        report.run_ref,
        report.status,
        len(report.scan.violations),
        ", ".join(f"{label}={count}" for label, count in report.classification.counts().items() if count),
    )
    if raise_on_failure and report.gate_failed:
        raise GateFailure(report)
    return report


def coerce_rule_set(rules: RuleSet | Any) -> RuleSet:
    if isinstance(rules, RuleSet):
        return rules
    if isinstance(rules, (str, Path)):
        return load_rule_paths([rules])
    if isinstance(rules, (list, tuple)) and rules and all(isinstance(item, (str, Path)) for item in rules):
        return load_rule_paths(rules)
    return load_rules(rules)


def rule_observations(rule_set: RuleSet, result: ScanResult) -> dict[str, Status]:
    """Turn a scan into PASS/FAIL observations for the baseline.

    Only non-negotiable rules are tracked. Rules that were overridden or never
    evaluated (empty scope) are left out so their last known status stands.
    """
    passed = set(result.passed_rules)
    failing = {item.rule_id for item in result.violations}
    observations: dict[str, Status] = {}
    for rule in rule_set:
        if rule.severity is not Severity.NON_NEGOTIABLE:
            continue
        if rule.id in passed:
            observations[rule.id] = Status.PASS
        elif rule.id in failing:
            observations[rule.id] = Status.FAIL
    return observations


def load_test_results(path: str | Path) -> dict[str, Status]:
    raw = read_structured(path)
    if isinstance(raw, dict):
        pairs = list(raw.items())
    elif isinstance(raw, list):
        pairs = []
        for item in raw:
            if not isinstance(item, dict) or "test_id" not in item or "status" not in item:
                raise ConfigurationError(f"{path}: each result needs 'test_id' and 'status'")
            pairs.append((item["test_id"], item["status"]))
    else:
        raise ConfigurationError(f"{path}: test results must be a mapping or a list")

    results: dict[str, Status] = {}
    for test_id, status in pairs:
        key = str(status).strip().lower()
        if key not in _STATUS_ALIASES:
            raise ConfigurationError(f"{path}: unknown status {status!r} for {test_id}")
        results[str(test_id)] = _STATUS_ALIASES[key]
    return results


def utc_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")


def read_head_sha(repo_path: Path) -> str | None:
    try:
        process = subprocess.run(
            ["git", "-C", str(repo_path), "rev-parse", "HEAD"],
            text=True,
            capture_output=True,
        )
    except OSError:
        return None
    if process.returncode != 0:
        return None
    sha = (process.stdout or "").strip()
    return sha or None

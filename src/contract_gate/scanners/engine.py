from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from contract_gate.config import DEFAULT_EXCLUDE_DIRS, ConfigurationError
from contract_gate.models import (
    Override,
    Rule,
    RuleSet,
    ScanResult,
    ScanWarning,
    Violation,
    ViolationKind,
)
from contract_gate.overrides import resolve
from contract_gate.scanners.matcher import match

logger = logging.getLogger(__name__)


@dataclass
class _FileOutcome:
    rel_path: str
    violations: list[Violation] = field(default_factory=list)
    # (rule_id, pattern index) pairs of required patterns found in this file
    required_hits: set[tuple[str, int]] = field(default_factory=set)
    warning: ScanWarning | None = None


def scan(
    rule_set: RuleSet,
    source_root: str | Path,
    overrides: Iterable[Override] = (),
    *,
    max_workers: int = 8,
    max_file_size_bytes: int = 2_000_000,
    exclude_dirs: Iterable[str] = DEFAULT_EXCLUDE_DIRS,
) -> ScanResult:
    root = Path(source_root).resolve()
    if not root.exists() or not root.is_dir():
        raise ConfigurationError(f"source_root must be an existing directory: {root}")

    files = list(_iter_candidate_files(root, set(exclude_dirs)))
    scoped: dict[str, list[str]] = {
        rule.id: [rel for rel in files if rule.scope.matches(rel)] for rule in rule_set
    }

    rules_by_file: dict[str, list[Rule]] = {}
    for rule in rule_set:
        for rel in scoped[rule.id]:
            rules_by_file.setdefault(rel, []).append(rule)

    tasks = sorted(rules_by_file)
    with ThreadPoolExecutor(max_workers=max(1, int(max_workers))) as pool:
        outcomes = list(
            pool.map(
                lambda rel: _scan_file(root, rel, rules_by_file[rel], max_file_size_bytes),
                tasks,
            )
        )

    warnings: list[ScanWarning] = []
    raw: list[Violation] = []
    readable: set[str] = set()
    required_hits: dict[str, set[tuple[str, int]]] = {}
    for outcome in outcomes:
        if outcome.warning is not None:
            warnings.append(outcome.warning)
            continue
        readable.add(outcome.rel_path)
        raw.extend(outcome.violations)
        required_hits[outcome.rel_path] = outcome.required_hits

    evaluated: set[str] = set()
    for rule in rule_set:
        in_scope = scoped[rule.id]
        if not in_scope:
            warnings.append(
                ScanWarning(
                    code="EMPTY_SCOPE",
                    message=f"Rule {rule.id} scope {rule.scope.describe()} matched no files; scope may be stale",
                    rule_id=rule.id,
                )
            )
            continue

        usable = [rel for rel in in_scope if rel in readable]
        if not usable:
            warnings.append(
                ScanWarning(
                    code="EMPTY_SCOPE",
                    message=f"Rule {rule.id} has no readable files in scope {rule.scope.describe()}",
                    rule_id=rule.id,
                )
            )
            continue

        evaluated.add(rule.id)
        raw.extend(_required_violations(rule, usable, required_hits))

    resolution = resolve(raw, overrides)
    warnings.extend(resolution.warnings)

    failing = {item.rule_id for item in raw}
    passed = sorted(rule_id for rule_id in evaluated if rule_id not in failing)

    for warning in warnings:
        logger.info("%s", warning)

    return ScanResult(
        violations=tuple(sorted(resolution.remaining, key=lambda item: item.sort_key())),
        suppressed=tuple(sorted(resolution.suppressed, key=lambda item: item.sort_key())),
        warnings=tuple(sorted(warnings, key=lambda item: item.sort_key())),
        passed_rules=tuple(passed),
        audit=resolution.audit,
        files_scanned=len(readable),
    )


def _scan_file(root: Path, rel_path: str, rules: list[Rule], max_file_size_bytes: int) -> _FileOutcome:
    path = root / rel_path
    outcome = _FileOutcome(rel_path=rel_path)
    try:
        if path.stat().st_size > max_file_size_bytes:
            outcome.warning = ScanWarning(
                code="FILE_TOO_LARGE",
                message=f"Skipped {rel_path}: larger than {max_file_size_bytes} bytes",
                file_path=rel_path,
            )
            return outcome
        text = path.read_text(encoding="utf-8", errors="ignore")
    except OSError as exc:
        outcome.warning = ScanWarning(
            code="UNREADABLE_FILE",
            message=f"Cannot read {rel_path}: {exc.strerror or exc}",
            file_path=rel_path,
        )
        return outcome

    for rule in rules:
        for spec in rule.forbidden_patterns:
            for line_number, matched in match(spec.regex, text):
                outcome.violations.append(
                    Violation(
                        rule_id=rule.id,
                        severity=rule.severity,
                        file_path=rel_path,
                        line_number=line_number,
                        message=spec.message,
                        kind=ViolationKind.FORBIDDEN_PRESENT,
                        matched_text=matched,
                    )
                )
        for index, spec in enumerate(rule.required_patterns):
            if match(spec.regex, text).exists():
                outcome.required_hits.add((rule.id, index))
    return outcome


def _required_violations(
    rule: Rule,
    usable: list[str],
    required_hits: dict[str, set[tuple[str, int]]],
) -> list[Violation]:
    violations: list[Violation] = []
    per_file = rule.required_per_file or len(usable) == 1
    for index, spec in enumerate(rule.required_patterns):
        key = (rule.id, index)
        if per_file:
            targets = [rel for rel in usable if key not in required_hits[rel]]
        elif any(key in required_hits[rel] for rel in usable):
            targets = []
        else:
            targets = [rule.scope.describe()]
        for target in targets:
            violations.append(
                Violation(
                    rule_id=rule.id,
                    severity=rule.severity,
                    file_path=target,
                    line_number=0,
                    message=spec.message,
                    kind=ViolationKind.REQUIRED_MISSING,
                )
            )
    return violations


def _iter_candidate_files(root: Path, exclude_dirs: set[str]) -> Iterator[str]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(name for name in dirnames if name not in exclude_dirs)
        base = Path(dirpath)
        for name in sorted(filenames):
            yield (base / name).relative_to(root).as_posix()

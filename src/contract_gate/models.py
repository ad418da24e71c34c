from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from enum import Enum, IntEnum
from typing import Any


class Severity(IntEnum):
    SOFT = 1
    NON_NEGOTIABLE = 2

    @property
    def blocks_gate(self) -> bool:
        return self >= Severity.NON_NEGOTIABLE


class ViolationKind(str, Enum):
    FORBIDDEN_PRESENT = "FORBIDDEN_PRESENT"
    REQUIRED_MISSING = "REQUIRED_MISSING"


class Status(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"


class Label(str, Enum):
    PASS = "PASS"
    NEW_FAILURE = "NEW_FAILURE"
    REGRESSION = "REGRESSION"
    KNOWN_FAILURE = "KNOWN_FAILURE"
    FIXED = "FIXED"

    @property
    def blocks_gate(self) -> bool:
        return self in {Label.NEW_FAILURE, Label.REGRESSION}


@dataclass(frozen=True)
class PatternSpec:
    regex: re.Pattern[str]
    message: str
    source: str


@dataclass(frozen=True)
class Scope:
    entries: tuple[str, ...]
    matchers: tuple[re.Pattern[str], ...] = field(repr=False, compare=False)

    def matches(self, rel_path: str) -> bool:
        return any(m.fullmatch(rel_path) for m in self.matchers)

    def describe(self) -> str:
        return ",".join(self.entries)


@dataclass(frozen=True)
class Rule:
    id: str
    severity: Severity
    forbidden_patterns: tuple[PatternSpec, ...]
    required_patterns: tuple[PatternSpec, ...]
    scope: Scope
    title: str = ""
    required_per_file: bool = False
    example_violation: str = ""
    example_compliant: str = ""
    contract_id: str | None = None


@dataclass(frozen=True)
class RuleSet:
    rules: tuple[Rule, ...]

    def __iter__(self):
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    def get(self, rule_id: str) -> Rule | None:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None

    @property
    def ids(self) -> tuple[str, ...]:
        return tuple(rule.id for rule in self.rules)


@dataclass(frozen=True)
class Violation:
    rule_id: str
    severity: Severity
    file_path: str
    line_number: int
    message: str
    kind: ViolationKind
    matched_text: str = ""

    def sort_key(self) -> tuple:
        return (
            self.rule_id,
            self.file_path,
            self.line_number,
            self.kind.value,
            self.message,
            self.matched_text,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["severity"] = self.severity.name
        payload["kind"] = self.kind.value
        return payload


@dataclass(frozen=True)
class ScanWarning:
    code: str
    message: str
    rule_id: str | None = None
    file_path: str | None = None

    def sort_key(self) -> tuple:
        return (self.code, self.rule_id or "", self.file_path or "", self.message)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Override:
    rule_id: str
    requested_by: str
    justification: str


@dataclass(frozen=True)
class AuditEntry:
    rule_id: str
    justification: str
    requested_by: str
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ScanResult:
    violations: tuple[Violation, ...]
    suppressed: tuple[Violation, ...]
    warnings: tuple[ScanWarning, ...]
    passed_rules: tuple[str, ...]
    audit: tuple[AuditEntry, ...] = ()
    files_scanned: int = 0

    @property
    def gate_failed(self) -> bool:
        return any(item.severity.blocks_gate for item in self.violations)

    @property
    def exit_code(self) -> int:
        return 1 if self.gate_failed else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "gate_failed": self.gate_failed,
            "files_scanned": self.files_scanned,
            "violations": [item.to_dict() for item in self.violations],
            "suppressed": [item.to_dict() for item in self.suppressed],
            "warnings": [item.to_dict() for item in self.warnings],
            "passed_rules": list(self.passed_rules),
            "audit": [item.to_dict() for item in self.audit],
        }


@dataclass(frozen=True)
class BaselineEntry:
    test_id: str
    last_status: Status
    last_updated: str
    last_run_ref: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "test_id": self.test_id,
            "last_status": self.last_status.value,
            "last_updated": self.last_updated,
            "last_run_ref": self.last_run_ref,
        }


@dataclass(frozen=True)
class DeferEntry:
    id: str
    reason: str
    tracking_reference: str


@dataclass(frozen=True)
class ClassifiedItem:
    test_id: str
    label: Label
    current_status: Status
    previous_status: Status | None = None
    tracking_reference: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "test_id": self.test_id,
            "label": self.label.value,
            "current_status": self.current_status.value,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "tracking_reference": self.tracking_reference,
        }


@dataclass(frozen=True)
class ClassifiedResult:
    items: tuple[ClassifiedItem, ...]
    warnings: tuple[ScanWarning, ...] = ()

    @property
    def gate_failed(self) -> bool:
        return any(item.label.blocks_gate for item in self.items)

    def by_label(self, label: Label) -> tuple[ClassifiedItem, ...]:
        return tuple(item for item in self.items if item.label is label)

    def counts(self) -> dict[str, int]:
        return {label.value: len(self.by_label(label)) for label in Label}

    def to_dict(self) -> dict[str, Any]:
        return {
            "gate_failed": self.gate_failed,
            "counts": self.counts(),
            "items": [item.to_dict() for item in self.items],
            "warnings": [item.to_dict() for item in self.warnings],
        }


@dataclass(frozen=True)
class GateReport:
    run_id: int
    run_ref: str
    scan: ScanResult
    classification: ClassifiedResult

    @property
    def gate_failed(self) -> bool:
        return self.scan.gate_failed or self.classification.gate_failed

    @property
    def status(self) -> str:
        return Status.FAIL.value if self.gate_failed else Status.PASS.value

    @property
    def exit_code(self) -> int:
        return 1 if self.gate_failed else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "run_ref": self.run_ref,
            "status": self.status,
            "exit_code": self.exit_code,
            "scan": self.scan.to_dict(),
            "classification": self.classification.to_dict(),
        }

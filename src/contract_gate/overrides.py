from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from contract_gate.config import ConfigurationError, read_structured
from contract_gate.models import AuditEntry, Override, ScanWarning, Violation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    suppressed: tuple[Violation, ...]
    remaining: tuple[Violation, ...]
    audit: tuple[AuditEntry, ...]
    warnings: tuple[ScanWarning, ...]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def resolve(violations: Sequence[Violation], overrides: Iterable[Override]) -> Resolution:
    """Split violations into suppressed and remaining according to overrides.

    An override applies only when it names a rule that currently has
    violations and carries a justification. Anything else is reported back as
    an unused override so stale entries cannot hide unrelated failures.
    """
    active = {item.rule_id for item in violations}
    applied: dict[str, Override] = {}
    audit: list[AuditEntry] = []
    warnings: list[ScanWarning] = []

    for override in overrides:
        if not override.justification.strip():
            warnings.append(_unused(override, "override has no justification"))
            continue
        if override.rule_id not in active:
            warnings.append(_unused(override, "no active violations for this rule"))
            continue
        if override.rule_id in applied:
            warnings.append(_unused(override, "rule already overridden in this run"))
            continue

        applied[override.rule_id] = override
        entry = AuditEntry(
            rule_id=override.rule_id,
            justification=override.justification.strip(),
            requested_by=override.requested_by,
            timestamp=utc_now(),
        )
        audit.append(entry)
        logger.warning(
            "Override applied to %s by %s: %s",
            entry.rule_id,
            entry.requested_by,
            entry.justification,
        )

    suppressed = tuple(item for item in violations if item.rule_id in applied)
    remaining = tuple(item for item in violations if item.rule_id not in applied)
    return Resolution(
        suppressed=suppressed,
        remaining=remaining,
        audit=tuple(audit),
        warnings=tuple(warnings),
    )


def load_overrides(path: str | Path, *, default_requested_by: str = "unknown") -> list[Override]:
    raw = read_structured(path)
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigurationError(f"Overrides file must contain a list: {path}")

    overrides: list[Override] = []
    for item in raw:
        if not isinstance(item, dict):
            raise ConfigurationError("Each override must be an object")
        rule_id = str(item.get("rule_id") or "").strip()
        if not rule_id:
            raise ConfigurationError("Override is missing 'rule_id'")
        overrides.append(
            Override(
                rule_id=rule_id,
                requested_by=str(item.get("requested_by") or default_requested_by).strip(),
                justification=str(item.get("justification") or ""),
            )
        )
    return overrides


def parse_override_arg(value: str, *, requested_by: str) -> Override:
    rule_id, sep, justification = value.partition(":")
    if not rule_id.strip():
        raise ConfigurationError(f"Override must look like RULE-ID:justification, got {value!r}")
    return Override(
        rule_id=rule_id.strip(),
        requested_by=requested_by,
        justification=justification.strip() if sep else "",
    )


def _unused(override: Override, reason: str) -> ScanWarning:
    return ScanWarning(
        code="UNUSED_OVERRIDE",
        message=f"Override for {override.rule_id} requested by {override.requested_by} not applied: {reason}",
        rule_id=override.rule_id,
    )

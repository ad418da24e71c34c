from __future__ import annotations

import re
from pathlib import Path

from contract_gate.config import ConfigurationError, read_structured
from contract_gate.models import DeferEntry

STRUCTURED_SUFFIXES = {".json", ".yml", ".yaml"}

# J-ID: reason (#tracking-issue)
_JOURNAL_LINE = re.compile(r"^(?P<id>[^:\s]+)\s*:\s*(?P<body>.*)$")
_TRACKING_SUFFIX = re.compile(r"\((?P<ref>[^()]*)\)\s*$")


def load_defer_list(path: str | Path) -> list[DeferEntry]:
    source = Path(path)
    if not source.exists():
        raise ConfigurationError(f"Defer list not found: {source}")
    if source.suffix.lower() in STRUCTURED_SUFFIXES:
        entries = _parse_structured(read_structured(source), source=str(source))
    else:
        try:
            text = source.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigurationError(f"Cannot read defer list {source}: {exc}") from exc
        entries = parse_defer_journal(text, source=str(source))
    _reject_duplicates(entries, source=str(source))
    return entries


def parse_defer_journal(text: str, *, source: str = "<defer-journal>") -> list[DeferEntry]:
    entries: list[DeferEntry] = []
    for line_number, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue

        parsed = _JOURNAL_LINE.match(stripped)
        if not parsed:
            raise ConfigurationError(
                f"{source}:{line_number}: expected 'ID: reason (#tracking-ref)', got {stripped!r}"
            )

        body = parsed.group("body").strip()
        tracking = _TRACKING_SUFFIX.search(body)
        reference = tracking.group("ref").strip() if tracking else ""
        if not reference:
            raise ConfigurationError(
                f"{source}:{line_number}: deferral of {parsed.group('id')} has no tracking reference"
            )
        entries.append(
            DeferEntry(
                id=parsed.group("id"),
                reason=body[: tracking.start()].strip(),
                tracking_reference=reference,
            )
        )
    return entries


def _parse_structured(raw: object, *, source: str) -> list[DeferEntry]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigurationError(f"{source}: defer list must be a list")

    entries: list[DeferEntry] = []
    for item in raw:
        if not isinstance(item, dict):
            raise ConfigurationError(f"{source}: each defer entry must be an object")
        entry_id = str(item.get("id") or "").strip()
        if not entry_id:
            raise ConfigurationError(f"{source}: defer entry is missing 'id'")
        reference = str(item.get("tracking_reference") or "").strip()
        if not reference:
            raise ConfigurationError(f"{source}: deferral of {entry_id} has no tracking reference")
        entries.append(
            DeferEntry(
                id=entry_id,
                reason=str(item.get("reason") or "").strip(),
                tracking_reference=reference,
            )
        )
    return entries


def _reject_duplicates(entries: list[DeferEntry], *, source: str) -> None:
    seen: set[str] = set()
    for entry in entries:
        if entry.id in seen:
            raise ConfigurationError(f"{source}: {entry.id} is deferred more than once")
        seen.add(entry.id)

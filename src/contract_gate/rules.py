from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from contract_gate.config import ConfigurationError, read_structured
from contract_gate.models import PatternSpec, Rule, RuleSet, ScanWarning, Scope, Severity

RULE_FILE_SUFFIXES = {".json", ".yml", ".yaml"}

SEVERITY_ALIASES = {
    "non_negotiable": Severity.NON_NEGOTIABLE,
    "must": Severity.NON_NEGOTIABLE,
    "soft": Severity.SOFT,
    "should": Severity.SOFT,
}

CONTRACT_SECTIONS = (
    ("non_negotiable", Severity.NON_NEGOTIABLE),
    ("soft", Severity.SOFT),
)

# /body/flags, where body has no unescaped "/" outside a character class
_SLASH_PATTERN = re.compile(
    r"^/((?:\\.|\[(?:\\.|[^\]\\])*\]|[^/\\\[])+)/([gimsuy]*)$",
    re.DOTALL,
)
_FLAG_MAP = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "g": 0,
    "u": 0,
    "y": 0,
}
_GLOB_CHARS = set("*?[{")


def load_rule_paths(paths: Iterable[str | Path]) -> RuleSet:
    definitions: list[tuple[str, Any]] = []
    for path in _expand_rule_paths(paths):
        definitions.append((str(path), read_structured(path)))
    if not definitions:
        raise ConfigurationError("No rule files found")

    rules: list[Rule] = []
    for source, raw in definitions:
        rules.extend(_parse_document(raw, source=source))
    return _build_rule_set(rules)


def load_rules(definitions: Any, *, source: str = "<rules>") -> RuleSet:
    """Validate in-memory rule definitions and return a RuleSet.

    Accepts a mapping of rule id to fields, a list of rule objects carrying
    ``id``, or a contract document with ``rules.non_negotiable``/``rules.soft``.
    """
    return _build_rule_set(_parse_document(definitions, source=source))


def parse_severity(value: object, *, rule_id: str) -> Severity:
    if isinstance(value, Severity):
        return value
    key = re.sub(r"[\s-]+", "_", str(value or "").strip().lower())
    if key not in SEVERITY_ALIASES:
        raise ConfigurationError(
            f"Rule {rule_id}: unknown severity {value!r} (expected non_negotiable or soft)"
        )
    return SEVERITY_ALIASES[key]


def compile_pattern(raw: str, *, rule_id: str) -> re.Pattern[str]:
    text = str(raw).strip()
    if not text:
        raise ConfigurationError(f"Rule {rule_id}: empty pattern")

    flags = 0
    body = text
    slashed = _SLASH_PATTERN.match(text)
    if slashed:
        body = slashed.group(1)
        for flag in slashed.group(2):
            flags |= _FLAG_MAP[flag]

    try:
        return re.compile(body, flags)
    except re.error as exc:
        raise ConfigurationError(f"Rule {rule_id}: invalid regex {text!r}: {exc}") from exc


def build_scope(raw: object, *, rule_id: str) -> Scope:
    if isinstance(raw, str):
        entries = [raw]
    elif isinstance(raw, (list, tuple)):
        entries = [str(item) for item in raw]
    else:
        entries = []
    entries = [item.strip() for item in entries if str(item).strip()]
    if not entries:
        raise ConfigurationError(f"Rule {rule_id}: scope must be a non-empty glob or list of paths")

    matchers = []
    for entry in entries:
        normalized = entry.replace("\\", "/")
        if normalized.startswith("./"):
            normalized = normalized[2:]
        if any(ch in _GLOB_CHARS for ch in normalized):
            try:
                matchers.append(re.compile(_glob_to_regex(normalized)))
            except re.error as exc:
                raise ConfigurationError(f"Rule {rule_id}: invalid scope {entry!r}: {exc}") from exc
        else:
            prefix = re.escape(normalized.rstrip("/"))
            matchers.append(re.compile(f"{prefix}(?:/.*)?"))
    return Scope(entries=tuple(entries), matchers=tuple(matchers))


def check_examples(rule_set: RuleSet) -> list[ScanWarning]:
    warnings: list[ScanWarning] = []
    for rule in rule_set:
        if not rule.forbidden_patterns:
            continue
        if rule.example_violation.strip():
            if not any(p.regex.search(rule.example_violation) for p in rule.forbidden_patterns):
                warnings.append(
                    ScanWarning(
                        code="EXAMPLE_MISMATCH",
                        message=f"{rule.id}: example_violation matches no forbidden pattern",
                        rule_id=rule.id,
                    )
                )
        if rule.example_compliant.strip():
            hits = [p.source for p in rule.forbidden_patterns if p.regex.search(rule.example_compliant)]
            if hits:
                warnings.append(
                    ScanWarning(
                        code="EXAMPLE_MISMATCH",
                        message=f"{rule.id}: example_compliant matches forbidden pattern(s) {', '.join(hits)}",
                        rule_id=rule.id,
                    )
                )
    warnings.sort(key=lambda item: item.sort_key())
    return warnings


def _expand_rule_paths(paths: Iterable[str | Path]) -> list[Path]:
    files: list[Path] = []
    for item in paths:
        path = Path(item)
        if path.is_dir():
            files.extend(
                sorted(
                    child
                    for child in path.rglob("*")
                    if child.is_file() and child.suffix.lower() in RULE_FILE_SUFFIXES
                )
            )
        elif path.exists():
            files.append(path)
        else:
            raise ConfigurationError(f"Rules path not found: {path}")
    return files


def _parse_document(raw: Any, *, source: str) -> list[Rule]:
    if isinstance(raw, Mapping) and "rules" in raw and isinstance(raw["rules"], Mapping):
        return _parse_contract(raw, source=source)

    if isinstance(raw, Mapping):
        items = []
        for rule_id, fields in raw.items():
            if not isinstance(fields, Mapping):
                raise ConfigurationError(f"{source}: rule {rule_id!r} must be an object")
            items.append(_parse_rule({**fields, "id": rule_id}, source=source))
        return items

    if isinstance(raw, list):
        items = []
        for entry in raw:
            if not isinstance(entry, Mapping):
                raise ConfigurationError(f"{source}: each rule entry must be an object")
            items.append(_parse_rule(entry, source=source))
        return items

    raise ConfigurationError(f"{source}: rule definitions must be a mapping or a list")


def _parse_contract(raw: Mapping, *, source: str) -> list[Rule]:
    meta = raw.get("contract_meta") or {}
    if not isinstance(meta, Mapping):
        raise ConfigurationError(f"{source}: contract_meta must be an object")
    contract_id = str(meta["id"]) if meta.get("id") else None

    sections = raw["rules"]
    unknown = sorted(set(sections) - {name for name, _ in CONTRACT_SECTIONS})
    if unknown:
        raise ConfigurationError(f"{source}: unknown rule sections: {', '.join(unknown)}")

    rules: list[Rule] = []
    for section, severity in CONTRACT_SECTIONS:
        entries = sections.get(section) or []
        if not isinstance(entries, list):
            raise ConfigurationError(f"{source}: rules.{section} must be a list")
        for entry in entries:
            if not isinstance(entry, Mapping):
                raise ConfigurationError(f"{source}: each rule in rules.{section} must be an object")
            if "severity" in entry and parse_severity(entry["severity"], rule_id=str(entry.get("id"))) is not severity:
                raise ConfigurationError(
                    f"{source}: rule {entry.get('id')} severity conflicts with section rules.{section}"
                )
            rules.append(
                _parse_rule({**entry, "severity": severity}, source=source, contract_id=contract_id)
            )

    covers = meta.get("covers_reqs") or []
    if not isinstance(covers, list):
        raise ConfigurationError(f"{source}: contract_meta.covers_reqs must be a list")
    known = {rule.id for rule in rules}
    missing = [str(req) for req in covers if str(req) not in known]
    if missing:
        raise ConfigurationError(
            f"{source}: covers_reqs names unknown rule id(s): {', '.join(missing)}"
        )
    return rules


def _parse_rule(entry: Mapping, *, source: str, contract_id: str | None = None) -> Rule:
    rule_id = str(entry.get("id") or "").strip()
    if not rule_id:
        raise ConfigurationError(f"{source}: rule is missing 'id'")

    behavior = entry.get("behavior") or {}
    if not isinstance(behavior, Mapping):
        raise ConfigurationError(f"{source}: rule {rule_id} behavior must be an object")

    def field(name: str, default: Any = None) -> Any:
        if name in entry:
            return entry[name]
        return behavior.get(name, default)

    if "severity" not in entry:
        raise ConfigurationError(f"{source}: rule {rule_id} is missing 'severity'")
    severity = parse_severity(entry["severity"], rule_id=rule_id)

    forbidden = _parse_patterns(field("forbidden_patterns", []), rule_id=rule_id, kind="forbidden_patterns")
    required = _parse_patterns(field("required_patterns", []), rule_id=rule_id, kind="required_patterns")
    if not forbidden and not required:
        raise ConfigurationError(
            f"{source}: rule {rule_id} must define at least one forbidden or required pattern"
        )

    return Rule(
        id=rule_id,
        severity=severity,
        forbidden_patterns=forbidden,
        required_patterns=required,
        scope=build_scope(entry.get("scope"), rule_id=rule_id),
        title=str(entry.get("title") or ""),
        required_per_file=_parse_flag(field("required_per_file", False), name="required_per_file", rule_id=rule_id),
        example_violation=str(field("example_violation", "") or ""),
        example_compliant=str(field("example_compliant", "") or ""),
        contract_id=contract_id,
    )


def _parse_flag(value: object, *, name: str, rule_id: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationError(f"Rule {rule_id}: {name} must be true or false, got {value!r}")
    return value


def _parse_patterns(raw: object, *, rule_id: str, kind: str) -> tuple[PatternSpec, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigurationError(f"Rule {rule_id}: {kind} must be a list")

    patterns: list[PatternSpec] = []
    for item in raw:
        if not isinstance(item, Mapping) or "pattern" not in item:
            raise ConfigurationError(f"Rule {rule_id}: each entry in {kind} needs a 'pattern'")
        message = str(item.get("message") or "").strip()
        if not message:
            raise ConfigurationError(f"Rule {rule_id}: pattern {item['pattern']!r} has no message")
        source = str(item["pattern"])
        patterns.append(
            PatternSpec(
                regex=compile_pattern(source, rule_id=rule_id),
                message=message,
                source=source,
            )
        )
    return tuple(patterns)


def _build_rule_set(rules: list[Rule]) -> RuleSet:
    seen: set[str] = set()
    duplicates: list[str] = []
    for rule in rules:
        if rule.id in seen and rule.id not in duplicates:
            duplicates.append(rule.id)
        seen.add(rule.id)
    if duplicates:
        raise ConfigurationError(f"Duplicate rule id(s): {', '.join(duplicates)}")
    if not rules:
        raise ConfigurationError("Rule set is empty")
    return RuleSet(rules=tuple(rules))


def _glob_to_regex(glob: str) -> str:
    out: list[str] = []
    i = 0
    n = len(glob)
    while i < n:
        ch = glob[i]
        if glob.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif glob.startswith("**", i):
            out.append(".*")
            i += 2
        elif ch == "*":
            out.append("[^/]*")
            i += 1
        elif ch == "?":
            out.append("[^/]")
            i += 1
        elif ch == "{":
            close = glob.find("}", i)
            if close == -1:
                out.append(re.escape(ch))
                i += 1
                continue
            options = glob[i + 1 : close].split(",")
            out.append("(?:" + "|".join(_glob_to_regex(option) for option in options) + ")")
            i = close + 1
        elif ch == "[":
            close = glob.find("]", i + 1)
            if close == -1:
                out.append(re.escape(ch))
                i += 1
                continue
            body = glob[i + 1 : close]
            if body.startswith("!"):
                body = "^" + body[1:]
            out.append(f"[{body}]")
            i = close + 1
        else:
            out.append(re.escape(ch))
            i += 1
    return "".join(out)

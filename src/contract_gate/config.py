from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

DEFAULT_EXCLUDE_DIRS = (
    ".git",
    ".venv",
    "node_modules",
    "build",
    "dist",
    "__pycache__",
    ".contract-gate",
)


class ConfigurationError(ValueError):
    pass


@dataclass(frozen=True)
class ScanSettings:
    max_workers: int = 8
    max_file_size_bytes: int = 2_000_000
    exclude_dirs: tuple[str, ...] = DEFAULT_EXCLUDE_DIRS


@dataclass(frozen=True)
class AppConfig:
    db_path: str
    rules_paths: tuple[str, ...]
    source_root: str
    scan: ScanSettings
    defer_path: str | None = None
    results_path: str | None = None
    overrides_path: str | None = None


class _UniqueKeyLoader(yaml.SafeLoader):
    pass


def _construct_unique_mapping(loader: _UniqueKeyLoader, node: yaml.MappingNode, deep: bool = False):
    seen: set[Any] = set()
    for key_node, _ in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in seen:
            raise ConfigurationError(
                f"Duplicate key {key!r} at line {key_node.start_mark.line + 1}"
            )
        seen.add(key)
    return loader.construct_mapping(node, deep=deep)


_UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_unique_mapping,
)


def read_structured(path: str | Path) -> Any:
    """Parse a JSON or YAML document, chosen by file suffix.

    YAML mappings with repeated keys are rejected instead of silently keeping
    the last value, so a rule id cannot shadow another one in the same file.
    """
    source = Path(path)
    if not source.exists():
        raise ConfigurationError(f"File not found: {source}")

    try:
        text = source.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigurationError(f"Cannot read {source}: {exc}") from exc

    if source.suffix.lower() == ".json":
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid JSON in {source}: {exc}") from exc

    try:
        return yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {source}: {exc}") from exc


def load_config(path: str | Path) -> AppConfig:
    raw = read_structured(path)
    if not isinstance(raw, dict):
        raise ConfigurationError("Config must be an object")

    rules_raw = raw.get("rules_paths", raw.get("rules_path"))
    if isinstance(rules_raw, str):
        rules_raw = [rules_raw]
    rules_paths = tuple(_ensure_string_list(rules_raw))
    if not rules_paths:
        raise ConfigurationError("Config must include non-empty 'rules_paths'")

    scan_raw = raw.get("scan", {})
    if not isinstance(scan_raw, dict):
        raise ConfigurationError("'scan' must be an object")

    exclude_raw = scan_raw.get("exclude_dirs")
    scan = ScanSettings(
        max_workers=_positive_int(scan_raw.get("max_workers", 8), "scan.max_workers"),
        max_file_size_bytes=_positive_int(
            scan_raw.get("max_file_size_bytes", 2_000_000), "scan.max_file_size_bytes"
        ),
        exclude_dirs=tuple(_ensure_string_list(exclude_raw)) if exclude_raw is not None else DEFAULT_EXCLUDE_DIRS,
    )

    return AppConfig(
        db_path=str(raw.get("db_path", ".contract-gate/baseline.db")),
        rules_paths=rules_paths,
        source_root=str(raw.get("source_root", ".")),
        scan=scan,
        defer_path=_optional_str(raw.get("defer_path")),
        results_path=_optional_str(raw.get("results_path")),
        overrides_path=_optional_str(raw.get("overrides_path")),
    )


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _ensure_string_list(value: object) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigurationError("Expected a list of strings")
    return [str(item) for item in value]


def _positive_int(value: object, name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"'{name}' must be an integer") from exc
    if number <= 0:
        raise ConfigurationError(f"'{name}' must be positive")
    return number

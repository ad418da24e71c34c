from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path

from contract_gate.baseline import BaselineStore, StoreError
from contract_gate.config import AppConfig, ConfigurationError, ScanSettings, load_config
from contract_gate.defer import load_defer_list
from contract_gate.models import Override
from contract_gate.overrides import load_overrides, parse_override_arg
from contract_gate.pipeline import (
    EXIT_CONFIG_ERROR,
    EXIT_STORE_ERROR,
    load_test_results,
    run_gate,
    run_scan,
)
from contract_gate.reporting import export_baseline, write_report
from contract_gate.rules import check_examples, load_rule_paths

DEFAULT_DB_PATH = ".contract-gate/baseline.db"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="contract-gate",
        description="Contract compliance scanner and regression gate",
    )
    parser.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Initialize the baseline store")
    init_parser.add_argument("--db-path", default=DEFAULT_DB_PATH)

    check_parser = subparsers.add_parser("check-rules", help="Validate rule files and their examples")
    check_parser.add_argument("rules", nargs="+", help="Rule files or directories")

    scan_parser = subparsers.add_parser("scan", help="Evaluate rules against a source tree")
    _add_scan_arguments(scan_parser)

    gate_parser = subparsers.add_parser("gate", help="Scan, classify against the baseline and update it")
    _add_scan_arguments(gate_parser)
    gate_parser.add_argument("--db-path", default=None)
    gate_parser.add_argument("--defer", default=None, help="Defer journal or JSON/YAML defer list")
    gate_parser.add_argument("--results", default=None, help="JSON/YAML test results (test_id -> pass|fail)")
    gate_parser.add_argument("--run-ref", default=None, help="Opaque run identifier (defaults to git HEAD)")
    gate_parser.add_argument("--wave", default=None)
    gate_parser.add_argument("--output-dir", default=None, help="Write JSON/CSV report files here")

    baseline_parser = subparsers.add_parser("baseline", help="Inspect or maintain the baseline store")
    baseline_sub = baseline_parser.add_subparsers(dest="baseline_command", required=True)

    show_parser = baseline_sub.add_parser("show", help="Print baseline entries")
    show_parser.add_argument("--db-path", default=DEFAULT_DB_PATH)

    export_parser = baseline_sub.add_parser("export", help="Write baseline.json")
    export_parser.add_argument("--db-path", default=DEFAULT_DB_PATH)
    export_parser.add_argument("--output", default=".specflow/baseline.json")

    prune_parser = baseline_sub.add_parser("prune", help="Delete baseline entries by id")
    prune_parser.add_argument("--db-path", default=DEFAULT_DB_PATH)
    prune_parser.add_argument("test_ids", nargs="+")

    return parser


def _add_scan_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", default=None, help="JSON/YAML config file")
    parser.add_argument("--rules", action="append", default=None, help="Rule file or directory (repeatable)")
    parser.add_argument("--source-root", default=None)
    parser.add_argument(
        "--override",
        action="append",
        default=[],
        help="RULE-ID:justification (repeatable)",
    )
    parser.add_argument("--overrides-file", default=None)
    parser.add_argument("--requested-by", default=os.environ.get("USER") or "unknown")
    parser.add_argument("--max-workers", type=int, default=None)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        if args.command == "init":
            with BaselineStore(args.db_path) as store:
                store.init_schema()
            _emit({"db_path": str(Path(args.db_path).resolve()), "status": "initialized"})
            return 0

        if args.command == "check-rules":
            rule_set = load_rule_paths(args.rules)
            warnings = check_examples(rule_set)
            _emit(
                {
                    "status": "valid",
                    "rules": list(rule_set.ids),
                    "warnings": [item.to_dict() for item in warnings],
                }
            )
            return 0

        if args.command == "scan":
            config = _resolve_config(args)
            result = run_scan(
                load_rule_paths(config.rules_paths),
                config.source_root,
                _collect_overrides(args, config),
                settings=config.scan,
            )
            _emit(result.to_dict())
            return result.exit_code

        if args.command == "gate":
            config = _resolve_config(args)
            defer_path = args.defer or config.defer_path
            results_path = args.results or config.results_path
            report = run_gate(
                load_rule_paths(config.rules_paths),
                config.source_root,
                db_path=config.db_path,
                overrides=_collect_overrides(args, config),
                defers=load_defer_list(defer_path) if defer_path else (),
                test_results=load_test_results(results_path) if results_path else None,
                run_ref=args.run_ref,
                wave=args.wave,
                settings=config.scan,
            )
            payload = report.to_dict()
            if args.output_dir:
                payload["files"] = write_report(report, args.output_dir)["files"]
            _emit(payload)
            return report.exit_code

        if args.command == "baseline":
            return _run_baseline(args)
    except ConfigurationError as exc:
        return _fail("configuration_error", exc, EXIT_CONFIG_ERROR)
    except StoreError as exc:
        return _fail("store_error", exc, EXIT_STORE_ERROR)

    parser.error(f"Unsupported command: {args.command}")
    return 2


def _run_baseline(args: argparse.Namespace) -> int:
    if args.baseline_command == "show":
        with BaselineStore(args.db_path) as store:
            store.init_schema()
            entries = store.load()
        _emit({"entries": [entry.to_dict() for _, entry in sorted(entries.items())]})
        return 0

    if args.baseline_command == "export":
        payload = export_baseline(args.db_path, args.output)
        _emit({"output": str(Path(args.output).resolve()), "tests": len(payload["tests"])})
        return 0

    with BaselineStore(args.db_path) as store:
        store.init_schema()
        removed = store.prune(args.test_ids)
    _emit({"requested": sorted(set(args.test_ids)), "removed": removed})
    return 0


def _resolve_config(args: argparse.Namespace) -> AppConfig:
    if args.config:
        config = load_config(args.config)
    else:
        if not args.rules:
            raise ConfigurationError("Provide --rules or --config")
        config = AppConfig(
            db_path=DEFAULT_DB_PATH,
            rules_paths=tuple(args.rules),
            source_root=".",
            scan=ScanSettings(),
        )

    if args.rules:
        config = replace(config, rules_paths=tuple(args.rules))
    if args.source_root:
        config = replace(config, source_root=args.source_root)
    if getattr(args, "db_path", None):
        config = replace(config, db_path=args.db_path)
    if args.max_workers is not None:
        if args.max_workers <= 0:
            raise ConfigurationError("--max-workers must be positive")
        config = replace(config, scan=replace(config.scan, max_workers=args.max_workers))
    return config


def _collect_overrides(args: argparse.Namespace, config: AppConfig) -> list[Override]:
    overrides: list[Override] = []
    overrides_path = args.overrides_file or config.overrides_path
    if overrides_path:
        overrides.extend(load_overrides(overrides_path, default_requested_by=args.requested_by))
    overrides.extend(parse_override_arg(value, requested_by=args.requested_by) for value in args.override)
    return overrides


def _emit(payload: dict) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=True))


def _fail(kind: str, exc: Exception, code: int) -> int:
    print(json.dumps({"status": kind, "error": str(exc)}, indent=2, ensure_ascii=True), file=sys.stderr)
    return code


if __name__ == "__main__":
    raise SystemExit(main())

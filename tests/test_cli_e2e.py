from pathlib import Path
import json
import os
import subprocess
import sys
import tempfile
import unittest

ROOT = Path(__file__).resolve().parents[1]


def _run(*args, cwd=ROOT):
    env = os.environ.copy()
    env["PYTHONPATH"] = str(ROOT / "src")
    return subprocess.run(
        [sys.executable, "-m", "contract_gate.cli", *args],
        cwd=cwd,
        text=True,
        capture_output=True,
        env=env,
    )


class CLIE2ETests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp_path = Path(self._tmp.name)
        self.repo = self.tmp_path / "repo"
        (self.repo / "src").mkdir(parents=True)
        (self.repo / "src" / "session.js").write_text(
            "export const load = () => store.get('session')\n", encoding="utf-8"
        )
        self.rules = ROOT / "configs" / "contracts"
        self.db = self.tmp_path / "state" / "baseline.db"

    def tearDown(self):
        self._tmp.cleanup()

    def test_check_rules_reports_loaded_ids(self):
        result = _run("check-rules", str(self.rules))

        self.assertEqual(result.returncode, 0, result.stderr)
        payload = json.loads(result.stdout)
        self.assertEqual(payload["status"], "valid")
        self.assertEqual(sorted(payload["rules"]), ["AUTH-001", "SEC-001", "SEC-002", "SEC-010"])
        self.assertEqual(payload["warnings"], [])

    def test_scan_exit_codes(self):
        clean = _run("scan", "--rules", str(self.rules), "--source-root", str(self.repo))
        self.assertEqual(clean.returncode, 0, clean.stderr)
        self.assertFalse(json.loads(clean.stdout)["gate_failed"])

        (self.repo / "src" / "auth.js").write_text(
            "localStorage.setItem('token', t)\nstore.set('token', t)\n", encoding="utf-8"
        )
        dirty = _run("scan", "--rules", str(self.rules), "--source-root", str(self.repo))
        self.assertEqual(dirty.returncode, 1)
        payload = json.loads(dirty.stdout)
        self.assertEqual([v["rule_id"] for v in payload["violations"]], ["AUTH-001"])
        self.assertEqual(payload["violations"][0]["line_number"], 1)

        overridden = _run(
            "scan",
            "--rules",
            str(self.rules),
            "--source-root",
            str(self.repo),
            "--override",
            "AUTH-001:legacy login page, tracked in #42",
            "--requested-by",
            "dana",
        )
        self.assertEqual(overridden.returncode, 0, overridden.stderr)
        self.assertIn("Override applied to AUTH-001 by dana", overridden.stderr)

    def test_gate_then_export_baseline(self):
        init = _run("init", "--db-path", str(self.db))
        self.assertEqual(init.returncode, 0, init.stderr)
        self.assertIn("initialized", init.stdout)

        gate = _run(
            "gate",
            "--rules",
            str(self.rules),
            "--source-root",
            str(self.repo),
            "--db-path",
            str(self.db),
            "--run-ref",
            "wave-1",
            "--output-dir",
            str(self.tmp_path / "report"),
        )
        self.assertEqual(gate.returncode, 0, gate.stderr)
        payload = json.loads(gate.stdout)
        self.assertEqual(payload["status"], "PASS")
        self.assertTrue(Path(payload["files"]["gate_summary"]).exists())

        (self.repo / "src" / "eval.js").write_text("eval(userInput)\n", encoding="utf-8")
        regressed = _run(
            "gate",
            "--rules",
            str(self.rules),
            "--source-root",
            str(self.repo),
            "--db-path",
            str(self.db),
            "--run-ref",
            "wave-2",
        )
        self.assertEqual(regressed.returncode, 1)
        labels = {
            item["test_id"]: item["label"]
            for item in json.loads(regressed.stdout)["classification"]["items"]
        }
        self.assertEqual(labels["SEC-002"], "REGRESSION")

        output = self.tmp_path / "baseline.json"
        export = _run("baseline", "export", "--db-path", str(self.db), "--output", str(output))
        self.assertEqual(export.returncode, 0, export.stderr)
        exported = json.loads(output.read_text(encoding="utf-8"))
        self.assertEqual(exported["tests"]["SEC-002"]["status"], "fail")
        self.assertEqual(exported["tests"]["SEC-002"]["run_ref"], "wave-2")

        prune = _run("baseline", "prune", "--db-path", str(self.db), "SEC-002")
        self.assertEqual(json.loads(prune.stdout)["removed"], 1)

    def test_configuration_error_exit_code(self):
        broken = self.tmp_path / "broken.yml"
        broken.write_text("AUTH-001:\n  scope: src/\n", encoding="utf-8")

        result = _run("scan", "--rules", str(broken), "--source-root", str(self.repo))

        self.assertEqual(result.returncode, 2)
        self.assertIn("configuration_error", result.stderr)
        self.assertIn("severity", result.stderr)

    def test_malformed_rule_input_exits_with_configuration_error(self):
        bad_scope = self.tmp_path / "bad_scope.yml"
        bad_scope.write_text(
            "R-1:\n"
            "  severity: non_negotiable\n"
            "  scope: src/[z-a].js\n"
            "  forbidden_patterns:\n"
            "    - pattern: eval\n"
            "      message: no eval\n",
            encoding="utf-8",
        )
        not_utf8 = self.tmp_path / "binary.yml"
        not_utf8.write_bytes(b"\xff\xfeR-1:\n  severity: soft\n")

        scanned = _run("scan", "--rules", str(bad_scope), "--source-root", str(self.repo))
        checked = _run("check-rules", str(not_utf8))

        self.assertEqual(scanned.returncode, 2, scanned.stderr)
        self.assertIn("invalid scope", scanned.stderr)
        self.assertNotIn("Traceback", scanned.stderr)
        self.assertEqual(checked.returncode, 2, checked.stderr)
        self.assertIn("configuration_error", checked.stderr)
        self.assertNotIn("Traceback", checked.stderr)

    def test_corrupt_store_exit_code(self):
        self.db.parent.mkdir(parents=True)
        self.db.write_bytes(b"not a database" * 100)

        result = _run(
            "gate",
            "--rules",
            str(self.rules),
            "--source-root",
            str(self.repo),
            "--db-path",
            str(self.db),
            "--run-ref",
            "wave-1",
        )

        self.assertEqual(result.returncode, 3)
        self.assertIn("store_error", result.stderr)


if __name__ == "__main__":
    unittest.main()

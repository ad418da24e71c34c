from pathlib import Path

import pytest

from contract_gate.config import ConfigurationError
from contract_gate.defer import load_defer_list, parse_defer_journal
from contract_gate.models import DeferEntry


def test_parse_journal_skips_comments_and_blank_lines():
    text = (
        "# Scoped journey deferrals -- each requires a tracking issue\n"
        "# Format: J-ID: reason (#tracking-issue)\n"
        "\n"
        "J-SIGNUP-FLOW: flaky email provider in CI (#123)\n"
        "J-CHECKOUT: blocked on payments sandbox (https://tracker.example/PAY-9)\n"
    )

    entries = parse_defer_journal(text)

    assert entries == [
        DeferEntry("J-SIGNUP-FLOW", "flaky email provider in CI", "#123"),
        DeferEntry("J-CHECKOUT", "blocked on payments sandbox", "https://tracker.example/PAY-9"),
    ]


@pytest.mark.parametrize(
    "line",
    [
        "J-SIGNUP-FLOW: flaky email provider",
        "J-SIGNUP-FLOW: flaky email provider ()",
        "J-SIGNUP-FLOW: flaky (#1) email provider",
    ],
)
def test_entry_without_tracking_reference_is_rejected(line):
    with pytest.raises(ConfigurationError, match="tracking reference"):
        parse_defer_journal(line + "\n")


def test_malformed_line_is_rejected():
    with pytest.raises(ConfigurationError, match=":1:"):
        parse_defer_journal("just some words\n")


def test_load_structured_defer_list(tmp_path: Path):
    path = tmp_path / "defer.yml"
    path.write_text(
        "- id: J-SIGNUP-FLOW\n"
        "  reason: flaky provider\n"
        "  tracking_reference: '#123'\n",
        encoding="utf-8",
    )

    assert load_defer_list(path) == [DeferEntry("J-SIGNUP-FLOW", "flaky provider", "#123")]


def test_structured_entry_without_reference_is_rejected(tmp_path: Path):
    path = tmp_path / "defer.json"
    path.write_text('[{"id": "J-SIGNUP-FLOW", "reason": "flaky"}]', encoding="utf-8")

    with pytest.raises(ConfigurationError, match="tracking reference"):
        load_defer_list(path)


def test_duplicate_deferrals_are_rejected(tmp_path: Path):
    path = tmp_path / ".defer-journal"
    path.write_text("J-A: one (#1)\nJ-A: two (#2)\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="more than once"):
        load_defer_list(path)


def test_journal_that_is_not_utf8_is_a_configuration_error(tmp_path: Path):
    path = tmp_path / ".defer-journal"
    path.write_bytes(b"J-A: broken \xff\xfe (#1)\n")

    with pytest.raises(ConfigurationError, match="Cannot read defer list"):
        load_defer_list(path)


def test_missing_defer_file_is_configuration_error(tmp_path: Path):
    with pytest.raises(ConfigurationError):
        load_defer_list(tmp_path / "nope")

import re

from contract_gate.scanners.matcher import MatchSequence, match


def test_match_reports_every_location_with_line_numbers():
    text = "a = 1\nlocalStorage.setItem('a', 1)\n\nlocalStorage.setItem('b', 2)\n"
    found = list(match(re.compile(r"localStorage\.setItem"), text))

    assert found == [(2, "localStorage.setItem"), (4, "localStorage.setItem")]


def test_match_sequence_is_restartable():
    sequence = match(re.compile(r"x"), "x\nx\nx")

    assert isinstance(sequence, MatchSequence)
    assert len(list(sequence)) == 3
    assert len(list(sequence)) == 3


def test_first_and_exists_stop_early():
    calls = []

    class CountingPattern:
        def __init__(self, pattern):
            self.pattern = pattern

        def finditer(self, text):
            for found in self.pattern.finditer(text):
                calls.append(found.start())
                yield found

        def search(self, text):
            return self.pattern.search(text)

    sequence = match(CountingPattern(re.compile("needle")), "needle\n" * 50)

    assert sequence.first() == (1, "needle")
    assert calls == [0]
    assert sequence.exists()


def test_no_match_yields_nothing():
    sequence = match(re.compile("store\\.set"), "const value = cache.get(key)\n")

    assert list(sequence) == []
    assert sequence.first() is None
    assert not sequence.exists()


def test_multiline_match_reports_starting_line():
    pattern = re.compile(r"fetch\(\s*\n\s*'http://", re.MULTILINE)
    text = "line one\nfetch(\n   'http://example.test')\n"

    assert list(match(pattern, text)) == [(2, "fetch(")]

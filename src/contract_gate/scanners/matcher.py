from __future__ import annotations

import re
from bisect import bisect_right
from collections.abc import Iterator

EVIDENCE_LIMIT = 300


class MatchSequence:
    """Lazy, restartable view over the matches of one pattern in one text.

    Each iteration re-runs the search from the start, so a caller that only
    needs existence can stop after the first hit while another caller can
    still walk every match.
    """

    def __init__(self, pattern: re.Pattern[str], contents: str):
        self.pattern = pattern
        self.contents = contents
        self._line_starts: list[int] | None = None

    def __iter__(self) -> Iterator[tuple[int, str]]:
        for found in self.pattern.finditer(self.contents):
            yield self._line_number(found.start()), _evidence(found.group(0))

    def first(self) -> tuple[int, str] | None:
        return next(iter(self), None)

    def exists(self) -> bool:
        return self.pattern.search(self.contents) is not None

    def _line_number(self, offset: int) -> int:
        if self._line_starts is None:
            starts = [0]
            starts.extend(m.end() for m in re.finditer("\n", self.contents))
            self._line_starts = starts
        return bisect_right(self._line_starts, offset)


def match(pattern: re.Pattern[str], contents: str) -> MatchSequence:
    return MatchSequence(pattern, contents)


def _evidence(text: str) -> str:
    first_line = text.strip().splitlines()[0] if text.strip() else ""
    return first_line.strip()[:EVIDENCE_LIMIT]

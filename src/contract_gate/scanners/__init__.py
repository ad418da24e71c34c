from __future__ import annotations

from contract_gate.scanners.engine import scan
from contract_gate.scanners.matcher import MatchSequence, match

__all__ = ["MatchSequence", "match", "scan"]

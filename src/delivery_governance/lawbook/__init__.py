"""Lawbook: the versioned allow/deny document and its deny-by-default gate."""

from delivery_governance.lawbook.gate import GateCode, GateVerdict, authorize, authorize_all
from delivery_governance.lawbook.loader import load_lawbook, parse_lawbook
from delivery_governance.lawbook.schema import EvidencePolicy, LawbookDocument, StopRules

__all__ = [
    "EvidencePolicy",
    "GateCode",
    "GateVerdict",
    "LawbookDocument",
    "StopRules",
    "authorize",
    "authorize_all",
    "load_lawbook",
    "parse_lawbook",
]

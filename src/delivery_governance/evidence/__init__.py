"""Evidence bundle types and the evidence gate."""

from delivery_governance.evidence.gate import (
    EvidenceCheck,
    EvidenceItem,
    EvidenceKind,
    EvidencePredicate,
    check,
    predicates_for_category,
)

__all__ = [
    "EvidenceCheck",
    "EvidenceItem",
    "EvidenceKind",
    "EvidencePredicate",
    "check",
    "predicates_for_category",
]

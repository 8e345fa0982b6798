"""Evidence bundle and the evidence gate.

Evidence arrives already collected and validated by an upstream classifier;
the gate treats it as opaque except for the closed set of kinds and the
dotted field paths that predicates require. A predicate is satisfied when
at least one item of its kind carries every required field with a non-null
value. All predicates must hold, and every unmet one is reported.
"""

from collections.abc import Iterable, Mapping, Sequence
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from delivery_governance.observability import get_logger

logger = get_logger(__name__)

_MISSING = object()


class EvidenceKind(StrEnum):
    """Closed set of evidence kinds an incident may carry."""

    RUNNER = "runner"
    ECS = "ecs"
    ALB = "alb"
    HTTP = "http"
    VERIFICATION = "verification"
    DEPLOY_STATUS = "deploy_status"
    LOG_POINTER = "log_pointer"
    GITHUB_RUN = "github_run"


class EvidenceItem(BaseModel):
    """One piece of evidence attached to an incident.

    Attributes:
        kind: Evidence kind.
        ref: Kind-specific reference data (report hashes, URLs, run ids...).
        sha256: Optional digest of the referenced artifact.
    """

    model_config = ConfigDict(frozen=True)

    kind: EvidenceKind
    ref: dict[str, Any] = Field(default_factory=dict)
    sha256: str | None = None

    def lookup(self, path: str) -> Any:
        """Resolve a dotted path such as ``ref.reportHash`` against this item.

        Returns:
            The value found, or None when any segment is absent.
        """
        value = _resolve_path(self.model_dump(mode="json"), path)
        return None if value is _MISSING else value


class EvidencePredicate(BaseModel):
    """A required piece of evidence.

    Attributes:
        kind: Evidence kind that must be present.
        required_fields: Dotted paths that must be present and non-null on the item.
    """

    model_config = ConfigDict(frozen=True)

    kind: EvidenceKind
    required_fields: tuple[str, ...] = ()

    def describe(self) -> dict[str, Any]:
        """Serializable form used in skip reasons and audit payloads."""
        return {"kind": self.kind.value, "required_fields": list(self.required_fields)}


class EvidenceCheck(BaseModel):
    """Outcome of EvidenceGate.check()."""

    model_config = ConfigDict(frozen=True)

    satisfied: bool
    missing: tuple[EvidencePredicate, ...] = ()

    def missing_as_dicts(self) -> list[dict[str, Any]]:
        return [predicate.describe() for predicate in self.missing]


def _resolve_path(data: Any, path: str) -> Any:
    current = data
    for segment in path.split("."):
        if isinstance(current, Mapping) and segment in current:
            current = current[segment]
        elif isinstance(current, Sequence) and not isinstance(current, str) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _item_satisfies(item: EvidenceItem, predicate: EvidencePredicate) -> bool:
    if item.kind != predicate.kind:
        return False
    return all(item.lookup(path) is not None for path in predicate.required_fields)


def check(predicates: Iterable[EvidencePredicate], evidence: Sequence[EvidenceItem]) -> EvidenceCheck:
    """Check every predicate against an evidence bundle.

    Args:
        predicates: Required evidence, in declaration order.
        evidence: The incident's evidence items.

    Returns:
        EvidenceCheck with satisfied=True only if every predicate holds, and
        the complete list of unmet predicates in declaration order.
    """
    missing = [
        predicate
        for predicate in predicates
        if not any(_item_satisfies(item, predicate) for item in evidence)
    ]
    if missing:
        logger.info(
            "Evidence predicates unmet",
            missing=[predicate.describe() for predicate in missing],
            evidence_count=len(evidence),
        )
    return EvidenceCheck(satisfied=not missing, missing=tuple(missing))


def predicates_for_category(
    category: str | None,
    required_kinds_by_category: Mapping[str, Sequence[EvidenceKind | str]],
) -> list[EvidencePredicate]:
    """Build kind-only predicates from a lawbook's per-category evidence requirements.

    Args:
        category: Incident category, or None when unclassified.
        required_kinds_by_category: Lawbook evidence.required_kinds_by_category.

    Returns:
        Predicates requiring at least one item of each listed kind.
    """
    if not category:
        return []
    return [EvidencePredicate(kind=EvidenceKind(kind)) for kind in required_kinds_by_category.get(category, ())]

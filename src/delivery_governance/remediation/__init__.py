"""Remediation playbooks: catalog, action backends and the governed executor."""

from delivery_governance.remediation.backends import BackendRegistry, DryRunBackend, StepContext, StepResult
from delivery_governance.remediation.catalog import (
    RESTRICTED_ACTIONS,
    ActionType,
    PlaybookCatalog,
    PlaybookDefinition,
    PlaybookStep,
    resolve_step_inputs,
)
from delivery_governance.remediation.executor import PlaybookExecutor

__all__ = [
    "RESTRICTED_ACTIONS",
    "ActionType",
    "BackendRegistry",
    "DryRunBackend",
    "PlaybookCatalog",
    "PlaybookDefinition",
    "PlaybookExecutor",
    "PlaybookStep",
    "StepContext",
    "StepResult",
    "resolve_step_inputs",
]

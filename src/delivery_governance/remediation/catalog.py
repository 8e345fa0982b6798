"""Remediation playbook definitions and catalog.

Playbooks are declarative YAML documents bundled in the ``playbooks/`` directory:

    id: restart-service
    version: "1.0.0"
    title: Restart a crash-looping service
    applicable_categories: [ECS_TASK_CRASHLOOP]
    required_evidence:
      - kind: ecs
        required_fields: [ref.cluster, ref.service]
    steps:
      - step_id: restart
        action_type: RESTART_SERVICE
        description: Force a fresh deployment of the service
        inputs:
          cluster: $evidence.ecs.ref.cluster
          service: $evidence.ecs.ref.service

Step input values may reference the request context:

- ``$incident.<path>``         — the Incident (incident_key, category, ...)
- ``$inputs.<path>``           — the run-level inputs
- ``$evidence.<kind>.<path>``  — the first evidence item of that kind

Resolution is pure: the same incident and inputs always yield the same plan.
"""

from collections.abc import Mapping
from enum import StrEnum
from pathlib import Path
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from delivery_governance.core.schemas import Incident
from delivery_governance.errors import ValidationError
from delivery_governance.evidence.gate import EvidencePredicate
from delivery_governance.observability import get_logger

logger = get_logger(__name__)

_REFERENCE_PREFIX = "$"


class ActionType(StrEnum):
    """Closed set of actions a remediation step may perform."""

    RESTART_SERVICE = "RESTART_SERVICE"
    ROLLBACK_DEPLOY = "ROLLBACK_DEPLOY"
    SCALE_UP = "SCALE_UP"
    SCALE_DOWN = "SCALE_DOWN"
    DRAIN_TASKS = "DRAIN_TASKS"
    NOTIFY_SLACK = "NOTIFY_SLACK"
    CREATE_ISSUE = "CREATE_ISSUE"
    RUN_VERIFICATION = "RUN_VERIFICATION"


# Action types only specific playbooks may use, regardless of the lawbook.
RESTRICTED_ACTIONS: dict[ActionType, frozenset[str]] = {
    ActionType.ROLLBACK_DEPLOY: frozenset({"redeploy-lkg"}),
}


class PlaybookStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_id: str = Field(min_length=1, max_length=100)
    action_type: ActionType
    description: str = ""
    inputs: dict[str, Any] = Field(default_factory=dict)


class PlaybookDefinition(BaseModel):
    """A declarative, ordered remediation playbook.

    Attributes:
        id: Playbook identifier (also the lawbook action id gating it).
        version: Definition version recorded on every run.
        title: Human-readable title.
        applicable_categories: Incident categories the playbook addresses.
        required_evidence: Predicates the incident evidence must satisfy.
        steps: Steps executed strictly in order.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, max_length=100)
    version: str = Field(min_length=1)
    title: str = ""
    applicable_categories: tuple[str, ...] = ()
    required_evidence: tuple[EvidencePredicate, ...] = ()
    steps: tuple[PlaybookStep, ...] = Field(min_length=1)

    @field_validator("steps")
    @classmethod
    def _unique_step_ids(cls, steps: tuple[PlaybookStep, ...]) -> tuple[PlaybookStep, ...]:
        seen: set[str] = set()
        for step in steps:
            if step.step_id in seen:
                raise ValueError(f"duplicate step_id '{step.step_id}'")
            seen.add(step.step_id)
        return steps

    @property
    def action_types(self) -> list[ActionType]:
        """Distinct action types in step order."""
        return list(dict.fromkeys(step.action_type for step in self.steps))

    def restricted_action_violations(self) -> list[ActionType]:
        """Action types this playbook uses but is not permitted to."""
        return [
            action
            for action in self.action_types
            if action in RESTRICTED_ACTIONS and self.id not in RESTRICTED_ACTIONS[action]
        ]


def _lookup(data: Any, path: list[str]) -> Any:
    current = data
    for segment in path:
        if isinstance(current, Mapping) and segment in current:
            current = current[segment]
        elif isinstance(current, (list, tuple)) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            return None
    return current


def _resolve_value(value: Any, incident: Incident, inputs: Mapping[str, Any]) -> Any:
    if isinstance(value, Mapping):
        return {key: _resolve_value(item, incident, inputs) for key, item in value.items()}
    if isinstance(value, list):
        return [_resolve_value(item, incident, inputs) for item in value]
    if not isinstance(value, str) or not value.startswith(_REFERENCE_PREFIX):
        return value

    root, _, rest = value[1:].partition(".")
    path = rest.split(".") if rest else []
    if root == "incident":
        return _lookup(incident.model_dump(mode="json", exclude={"evidence"}), path)
    if root == "inputs":
        return _lookup(dict(inputs), path)
    if root == "evidence" and path:
        kind, *field_path = path
        for item in incident.evidence:
            if item.kind.value == kind:
                return _lookup(item.model_dump(mode="json"), field_path)
        return None
    return value


def resolve_step_inputs(step: PlaybookStep, incident: Incident, inputs: Mapping[str, Any]) -> dict[str, Any]:
    """Build a step's resolved inputs.

    The run inputs, incident_id and incident_key form the base; the step's
    declared inputs (with references resolved) override them.
    """
    resolved: dict[str, Any] = dict(inputs)
    resolved["incident_key"] = incident.incident_key
    resolved["incident_id"] = incident.incident_id
    resolved.update(_resolve_value(dict(step.inputs), incident, inputs))
    return resolved


class PlaybookCatalog:
    """Registry of playbook definitions loaded from a directory of YAML files.

    Args:
        directory: Directory containing ``*.yaml`` playbook files.
    """

    def __init__(self, directory: Path | str | None = None) -> None:
        self._playbooks: dict[str, PlaybookDefinition] = {}
        if directory is not None:
            self.load_directory(Path(directory))

    def load_directory(self, directory: Path) -> None:
        """Load and validate every ``*.yaml`` file in the directory.

        Raises:
            ValidationError: If a file is malformed or a playbook id repeats.
        """
        for path in sorted(directory.glob("*.yaml")):
            try:
                data = yaml.safe_load(path.read_text(encoding="utf-8"))
                playbook = PlaybookDefinition.model_validate(data)
            except (yaml.YAMLError, pydantic.ValidationError) as exc:
                raise ValidationError(f"Invalid playbook file {path.name}: {exc}", field="playbook") from exc
            self.register(playbook)
        logger.info("Playbooks loaded", directory=str(directory), playbooks=sorted(self._playbooks))

    def register(self, playbook: PlaybookDefinition) -> None:
        if playbook.id in self._playbooks:
            raise ValidationError(f"Duplicate playbook id '{playbook.id}'", field="playbook")
        self._playbooks[playbook.id] = playbook

    def get(self, playbook_id: str) -> PlaybookDefinition | None:
        return self._playbooks.get(playbook_id)

    def ids(self) -> list[str]:
        return sorted(self._playbooks)

    def for_category(self, category: str) -> list[PlaybookDefinition]:
        """Playbooks applicable to an incident category, ordered by id."""
        return [self._playbooks[pid] for pid in self.ids() if category in self._playbooks[pid].applicable_categories]

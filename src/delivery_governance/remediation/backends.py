"""Action backends: the collaborators that perform remediation side effects.

A backend receives a StepContext with the step's resolved inputs and returns
a StepResult. Backends own any retry or backoff against their external API;
the executor calls each step exactly once and bounds it with a timeout.

BackendRegistry maps action types to backends. A step whose action type has
no registered backend fails with BACKEND_NOT_CONFIGURED.
"""

import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from delivery_governance.core.interfaces import IActionBackend
from delivery_governance.observability import get_logger

logger = get_logger(__name__)


class StepContext(BaseModel):
    """Everything a backend may use to execute one step.

    ``previous_outputs`` maps earlier step ids to their outputs; it is
    informational and never changes the step's resolved ``inputs``.
    """

    model_config = ConfigDict(frozen=True)

    run_id: uuid.UUID
    run_key: str
    incident_key: str
    playbook_id: str
    step_id: str
    action_type: str
    idempotency_key: str
    inputs: dict[str, Any]
    previous_outputs: dict[str, dict[str, Any]] = Field(default_factory=dict)


class StepResult(BaseModel):
    """What a backend reports for one step."""

    model_config = ConfigDict(frozen=True)

    success: bool
    output: dict[str, Any] = Field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None

    @classmethod
    def ok(cls, **output: Any) -> "StepResult":
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, code: str, message: str, **output: Any) -> "StepResult":
        return cls(success=False, output=output, error_code=code, error_message=message)


class BackendRegistry:
    """Maps action types to backends."""

    def __init__(self, backends: dict[str, IActionBackend] | None = None) -> None:
        self._backends: dict[str, IActionBackend] = dict(backends or {})

    def register(self, action_type: str, backend: IActionBackend) -> None:
        self._backends[str(action_type)] = backend
        logger.info("Action backend registered", action_type=str(action_type), backend=type(backend).__name__)

    def get(self, action_type: str) -> IActionBackend | None:
        return self._backends.get(str(action_type))

    def action_types(self) -> list[str]:
        return sorted(self._backends)


class DryRunBackend:
    """Backend that performs no side effect and reports success.

    Useful for rehearsing a playbook against real evidence: the run, steps
    and audit trail are produced exactly as they would be for a live backend.
    """

    async def execute(self, context: StepContext) -> StepResult:
        logger.info(
            "Dry-run step",
            run_key=context.run_key,
            step_id=context.step_id,
            action_type=context.action_type,
        )
        return StepResult.ok(dry_run=True, action_type=context.action_type, inputs=context.inputs)

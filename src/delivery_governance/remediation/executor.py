"""Playbook executor: governed, idempotent remediation runs.

run() follows one fixed sequence:

1. Derive run_key from (incident_key, playbook_id, hash(inputs)). An existing
   run under that key is returned unchanged (reused=True); nothing executes.
2. Lawbook gate on the playbook id and on every step action type. Unknown
   playbook, any denial, or a restricted action type ⇒ the run is inserted
   directly as SKIPPED (LAWBOOK_DENIED) with one RUN_SKIPPED audit event.
3. Evidence gate on the playbook's required evidence plus the lawbook's
   per-category requirements ⇒ SKIPPED (EVIDENCE_MISSING) with the full
   missing-predicate list.
4. Deterministic plan: resolved step inputs and idempotency keys, persisted
   in planned_json (with the lawbook version and hash) together with PLANNED
   step rows, in one insert against the unique run_key. RUN_PLANNED is
   audited before any step executes.
5. Sequential fail-fast execution. Each step goes PLANNED → RUNNING →
   SUCCEEDED | FAILED with STEP_STARTED and STEP_SUCCEEDED | STEP_FAILED
   audited. The first failure halts the run; later steps stay PLANNED.
6. RUN_SUCCEEDED | RUN_FAILED is audited, then the run is closed.

Backend exceptions and timeouts become FAILED steps. Cancellation resolves a
RUNNING step (and the run) to FAILED with code CANCELLED, audited, before
propagating. An AuditWriteFailure closes the run FAILED (or SKIPPED with
AUDIT_WRITE_FAILED when RUN_PLANNED itself could not be written) and
propagates; the run is never left PLANNED or RUNNING.
"""

import asyncio
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from delivery_governance.core.interfaces import IRemediationRunRepository
from delivery_governance.core.models import RemediationRun, RemediationStep, RunStatus, StepStatus, utcnow
from delivery_governance.core.schemas import Incident, RemediationRunResult
from delivery_governance.core.services import AuditService, run_stream_id
from delivery_governance.errors import (
    AuditWriteFailure,
    EvidenceMissing,
    PolicyViolation,
    StepExecutionFailure,
)
from delivery_governance.evidence.gate import check as check_evidence
from delivery_governance.evidence.gate import predicates_for_category
from delivery_governance.hashing import (
    check_idempotency_key_format,
    compute_inputs_hash,
    compute_run_key,
    compute_step_idempotency_key,
    to_json_value,
)
from delivery_governance.lawbook.gate import GateVerdict, authorize, authorize_all
from delivery_governance.lawbook.schema import LawbookDocument
from delivery_governance.observability import get_logger
from delivery_governance.remediation.backends import BackendRegistry, StepContext, StepResult
from delivery_governance.remediation.catalog import PlaybookCatalog, PlaybookDefinition, resolve_step_inputs

logger = get_logger(__name__)

SKIP_LAWBOOK_DENIED = "LAWBOOK_DENIED"
SKIP_EVIDENCE_MISSING = "EVIDENCE_MISSING"
SKIP_AUDIT_WRITE_FAILED = "AUDIT_WRITE_FAILED"

ERROR_BACKEND_NOT_CONFIGURED = "BACKEND_NOT_CONFIGURED"
ERROR_EXECUTION = "EXECUTION_ERROR"
ERROR_STEP_TIMEOUT = "STEP_TIMEOUT"
ERROR_CANCELLED = "CANCELLED"
ERROR_STEP_FAILED = "STEP_FAILED"


class PlaybookExecutor:
    """Plans and executes remediation playbooks under lawbook and evidence gates.

    Args:
        run_repo: Run and step persistence.
        audit: AuditService for the run's audit stream.
        catalog: Known playbook definitions.
        backends: Action backends by action type.
        step_timeout_seconds: Upper bound for a single backend call.
        clock: Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        run_repo: IRemediationRunRepository,
        audit: AuditService,
        catalog: PlaybookCatalog,
        backends: BackendRegistry,
        step_timeout_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._run_repo = run_repo
        self._audit = audit
        self._catalog = catalog
        self._backends = backends
        self._step_timeout_seconds = step_timeout_seconds
        self._clock = clock

    async def run(
        self,
        incident: Incident,
        playbook_id: str,
        inputs: Mapping[str, Any] | None,
        lawbook: LawbookDocument | None,
    ) -> RemediationRunResult:
        """Run a playbook for an incident at most once per (incident, playbook, inputs).

        Args:
            incident: The incident with its evidence bundle.
            playbook_id: Playbook to run.
            inputs: Run-level inputs.
            lawbook: Lawbook in force.

        Returns:
            RemediationRunResult. ``reused`` is True when the run already existed.

        Raises:
            ValidationError: If the derived run_key is malformed.
            AuditWriteFailure: If any audit event could not be written.
        """
        run_inputs = to_json_value(dict(inputs or {}))
        inputs_hash = compute_inputs_hash(run_inputs)
        run_key = check_idempotency_key_format(compute_run_key(incident.incident_key, playbook_id, inputs_hash))

        existing = await self._run_repo.get_by_key(run_key)
        if existing is not None:
            logger.info("Remediation run reused", run_key=run_key, status=existing.status)
            return RemediationRunResult.from_model(existing, reused=True)

        playbook = self._catalog.get(playbook_id)
        authorized = self._authorize(playbook_id, playbook, lawbook)
        if isinstance(authorized, PolicyViolation):
            return await self._skip(
                run_key,
                incident,
                playbook_id,
                playbook,
                inputs_hash,
                lawbook,
                SKIP_LAWBOOK_DENIED,
                authorized.to_dict(),
            )
        playbook, lawbook = authorized

        predicates = [
            *playbook.required_evidence,
            *predicates_for_category(incident.category, lawbook.evidence.required_kinds_by_category),
        ]
        evidence_check = check_evidence(predicates, incident.evidence)
        if not evidence_check.satisfied:
            missing = evidence_check.missing_as_dicts()
            return await self._skip(
                run_key,
                incident,
                playbook_id,
                playbook,
                inputs_hash,
                lawbook,
                SKIP_EVIDENCE_MISSING,
                EvidenceMissing(missing).to_dict(),
                extra={"missing": missing},
            )

        run, created = await self._plan(run_key, incident, playbook, run_inputs, inputs_hash, lawbook)
        if not created:
            return RemediationRunResult.from_model(run, reused=True)

        try:
            await self._audit.record(
                run_stream_id(run_key),
                "RUN_PLANNED",
                {"run_id": run.id, "run_key": run_key, "plan": run.planned_json},
                lawbook_version=lawbook.lawbook_version,
                lawbook_hash=lawbook.content_hash,
            )
        except AuditWriteFailure as exc:
            await self._abandon_plan(run, exc)
            raise

        await self._execute(run, playbook, incident, lawbook)
        final = await self._run_repo.get_by_id(run.id)
        return RemediationRunResult.from_model(final)

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def _authorize(
        self,
        playbook_id: str,
        playbook: PlaybookDefinition | None,
        lawbook: LawbookDocument | None,
    ) -> PolicyViolation | tuple[PlaybookDefinition, LawbookDocument]:
        """Return the authorized (playbook, lawbook) pair, or the violation denying the run."""
        verdict = authorize(playbook_id, lawbook)
        if not verdict.allowed or lawbook is None:
            return _violation(verdict)
        if playbook is None:
            return PolicyViolation(
                f"Unknown playbook '{playbook_id}'",
                policy_rule="playbook.unknown",
                playbook_id=playbook_id,
            )
        restricted = playbook.restricted_action_violations()
        if restricted:
            return PolicyViolation(
                f"Playbook '{playbook_id}' may not use action types {[a.value for a in restricted]}",
                policy_rule="playbook.restricted_action",
                playbook_id=playbook_id,
            )
        action_denial = authorize_all([action.value for action in playbook.action_types], lawbook)
        if action_denial is not None:
            return _violation(action_denial)
        return playbook, lawbook

    async def _skip(
        self,
        run_key: str,
        incident: Incident,
        playbook_id: str,
        playbook: PlaybookDefinition | None,
        inputs_hash: str,
        lawbook: LawbookDocument | None,
        skip_reason: str,
        error: dict[str, Any],
        extra: dict[str, Any] | None = None,
    ) -> RemediationRunResult:
        now = self._clock()
        lawbook_version = lawbook.lawbook_version if lawbook is not None else None
        lawbook_hash = lawbook.content_hash if lawbook is not None else None
        result_json = {"skip_reason": skip_reason, "error": error, **(extra or {})}

        run, created = await self._run_repo.insert_if_absent(
            RemediationRun(
                run_key=run_key,
                incident_key=incident.incident_key,
                playbook_id=playbook_id,
                playbook_version=playbook.version if playbook is not None else "",
                inputs_hash=inputs_hash,
                status=RunStatus.SKIPPED.value,
                skip_reason=skip_reason,
                planned_json=None,
                result_json=result_json,
                lawbook_version=lawbook_version,
                lawbook_hash=lawbook_hash,
                created_at=now,
                updated_at=now,
                started_at=now,
                completed_at=now,
            )
        )
        if not created:
            return RemediationRunResult.from_model(run, reused=True)

        await self._audit.record(
            run_stream_id(run_key),
            "RUN_SKIPPED",
            {"run_id": run.id, "run_key": run_key, "playbook_id": playbook_id, **result_json},
            lawbook_version=lawbook_version,
            lawbook_hash=lawbook_hash,
        )
        logger.info("Remediation run skipped", run_key=run_key, skip_reason=skip_reason)
        return RemediationRunResult.from_model(run)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def _plan(
        self,
        run_key: str,
        incident: Incident,
        playbook: PlaybookDefinition,
        run_inputs: dict[str, Any],
        inputs_hash: str,
        lawbook: LawbookDocument,
    ) -> tuple[RemediationRun, bool]:
        now = self._clock()
        steps: list[RemediationStep] = []
        planned_steps: list[dict[str, Any]] = []

        for sequence, step in enumerate(playbook.steps):
            resolved = to_json_value(resolve_step_inputs(step, incident, run_inputs))
            idempotency_key = check_idempotency_key_format(
                compute_step_idempotency_key(step.action_type.value, incident.incident_key, resolved)
            )
            planned_steps.append(
                {
                    "step_id": step.step_id,
                    "sequence": sequence,
                    "action_type": step.action_type.value,
                    "idempotency_key": idempotency_key,
                    "inputs": resolved,
                }
            )
            steps.append(
                RemediationStep(
                    step_id=step.step_id,
                    sequence=sequence,
                    idempotency_key=idempotency_key,
                    action_type=step.action_type.value,
                    status=StepStatus.PLANNED.value,
                    inputs_json=resolved,
                    created_at=now,
                )
            )

        planned_json = {
            "playbook_id": playbook.id,
            "playbook_version": playbook.version,
            "incident_key": incident.incident_key,
            "inputs_hash": inputs_hash,
            "lawbook_version": lawbook.lawbook_version,
            "lawbook_hash": lawbook.content_hash,
            "steps": planned_steps,
        }
        run = RemediationRun(
            run_key=run_key,
            incident_key=incident.incident_key,
            playbook_id=playbook.id,
            playbook_version=playbook.version,
            inputs_hash=inputs_hash,
            status=RunStatus.PLANNED.value,
            planned_json=planned_json,
            lawbook_version=lawbook.lawbook_version,
            lawbook_hash=lawbook.content_hash,
            created_at=now,
            updated_at=now,
        )
        return await self._run_repo.insert_if_absent(run, steps)

    async def _abandon_plan(self, run: RemediationRun, exc: AuditWriteFailure) -> None:
        """Close a plan whose RUN_PLANNED event could not be written; nothing has executed."""
        now = self._clock()
        for step in await self._run_repo.list_steps(run.id):
            await self._run_repo.transition_step(step.id, StepStatus.PLANNED, StepStatus.SKIPPED, completed_at=now)
        await self._run_repo.transition(
            run.id,
            RunStatus.PLANNED,
            RunStatus.SKIPPED,
            skip_reason=SKIP_AUDIT_WRITE_FAILED,
            result_json={"skip_reason": SKIP_AUDIT_WRITE_FAILED, "error": exc.to_dict()},
            started_at=now,
            completed_at=now,
        )
        logger.error("Remediation run abandoned before execution", run_key=run.run_key, error=str(exc))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(
        self,
        run: RemediationRun,
        playbook: PlaybookDefinition,
        incident: Incident,
        lawbook: LawbookDocument,
    ) -> None:
        stream_id = run_stream_id(run.run_key)
        lawbook_ref = {"lawbook_version": lawbook.lawbook_version, "lawbook_hash": lawbook.content_hash}

        await self._run_repo.transition(run.id, RunStatus.PLANNED, RunStatus.RUNNING, started_at=self._clock())
        steps = await self._run_repo.list_steps(run.id)
        previous_outputs: dict[str, dict[str, Any]] = {}
        failure: StepExecutionFailure | None = None
        current_step_id = ""

        try:
            for step in steps:
                current_step_id = step.step_id
                result = await self._execute_step(run, playbook, step, previous_outputs, stream_id, lawbook_ref)
                if not result.success:
                    failure = StepExecutionFailure(
                        step.step_id,
                        result.error_code or ERROR_STEP_FAILED,
                        result.error_message or "step failed",
                    )
                    break
                previous_outputs[step.step_id] = result.output

            if failure is None:
                status, event_type = RunStatus.SUCCEEDED, "RUN_SUCCEEDED"
                result_json: dict[str, Any] = {"steps_succeeded": len(steps)}
            else:
                status, event_type = RunStatus.FAILED, "RUN_FAILED"
                result_json = {
                    "failed_step_id": failure.step_id,
                    "steps_succeeded": len(previous_outputs),
                    "error": failure.to_dict(),
                }
            # The outcome is audited before the run becomes terminal.
            await self._audit.record(stream_id, event_type, _run_payload(run, incident, result_json), **lawbook_ref)
        except AuditWriteFailure as exc:
            await self._fail_run(run, incident, {"error": exc.to_dict()}, stream_id, lawbook_ref)
            raise
        except asyncio.CancelledError:
            cancelled = StepExecutionFailure(current_step_id, ERROR_CANCELLED, "run cancelled by caller")
            await asyncio.shield(self._fail_run(run, incident, {"error": cancelled.to_dict()}, stream_id, lawbook_ref))
            raise

        await self._close_run(run, status, result_json)
        logger.info("Remediation run finished", run_key=run.run_key, status=status.value)

    async def _fail_run(
        self,
        run: RemediationRun,
        incident: Incident,
        result_json: dict[str, Any],
        stream_id: str,
        lawbook_ref: dict[str, Any],
    ) -> None:
        """Close an interrupted run as FAILED and record RUN_FAILED.

        The caller re-raises the interruption, so a RUN_FAILED write that
        fails as well is logged rather than raised over it.
        """
        await self._close_run(run, RunStatus.FAILED, result_json)
        try:
            await self._audit.record(stream_id, "RUN_FAILED", _run_payload(run, incident, result_json), **lawbook_ref)
        except AuditWriteFailure as exc:
            logger.error("RUN_FAILED could not be audited", run_key=run.run_key, error=str(exc))
        logger.warning("Remediation run interrupted", run_key=run.run_key, error=result_json["error"]["kind"])

    async def _close_run(self, run: RemediationRun, status: RunStatus, result_json: dict[str, Any]) -> None:
        await self._run_repo.transition(
            run.id,
            RunStatus.RUNNING,
            status,
            result_json=result_json,
            completed_at=self._clock(),
        )

    async def _execute_step(
        self,
        run: RemediationRun,
        playbook: PlaybookDefinition,
        step: RemediationStep,
        previous_outputs: dict[str, dict[str, Any]],
        stream_id: str,
        lawbook_ref: dict[str, Any],
    ) -> StepResult:
        step_ref = {
            "run_id": run.id,
            "step_id": step.step_id,
            "sequence": step.sequence,
            "action_type": step.action_type,
            "idempotency_key": step.idempotency_key,
        }
        await self._audit.record(stream_id, "STEP_STARTED", step_ref, **lawbook_ref)
        await self._run_repo.transition_step(step.id, StepStatus.PLANNED, StepStatus.RUNNING, started_at=self._clock())

        context = StepContext(
            run_id=run.id,
            run_key=run.run_key,
            incident_key=run.incident_key,
            playbook_id=playbook.id,
            step_id=step.step_id,
            action_type=step.action_type,
            idempotency_key=step.idempotency_key,
            inputs=dict(step.inputs_json),
            previous_outputs=dict(previous_outputs),
        )

        try:
            result = await self._call_backend(context)
        except asyncio.CancelledError:
            cancelled = StepResult.fail(ERROR_CANCELLED, "step cancelled before completion")
            await asyncio.shield(self._settle_step(step.id, cancelled, step_ref, stream_id, lawbook_ref))
            raise

        await self._settle_step(step.id, result, step_ref, stream_id, lawbook_ref)
        logger.info(
            "Remediation step finished",
            run_key=run.run_key,
            step_id=step.step_id,
            success=result.success,
            error_code=result.error_code,
        )
        return result

    async def _call_backend(self, context: StepContext) -> StepResult:
        backend = self._backends.get(context.action_type)
        if backend is None:
            return StepResult.fail(
                ERROR_BACKEND_NOT_CONFIGURED,
                f"No backend registered for action type {context.action_type}",
            )
        try:
            return await asyncio.wait_for(backend.execute(context), timeout=self._step_timeout_seconds)
        except TimeoutError:
            logger.warning("Remediation step timed out", step_id=context.step_id, timeout=self._step_timeout_seconds)
            return StepResult.fail(
                ERROR_STEP_TIMEOUT,
                f"Step exceeded timeout of {self._step_timeout_seconds} seconds",
            )
        except Exception as exc:
            logger.warning("Remediation step raised", step_id=context.step_id, error=str(exc))
            return StepResult.fail(ERROR_EXECUTION, f"{type(exc).__name__}: {exc}")

    async def _settle_step(
        self,
        step_pk: uuid.UUID,
        result: StepResult,
        step_ref: dict[str, Any],
        stream_id: str,
        lawbook_ref: dict[str, Any],
    ) -> None:
        await self._finish_step(step_pk, result)
        await self._audit.record(
            stream_id,
            "STEP_SUCCEEDED" if result.success else "STEP_FAILED",
            {
                **step_ref,
                "output": result.output,
                "error_code": result.error_code,
                "error_message": result.error_message,
            },
            **lawbook_ref,
        )

    async def _finish_step(self, step_pk: uuid.UUID, result: StepResult) -> None:
        fields: dict[str, Any] = {"completed_at": self._clock()}
        if result.success:
            fields["output_json"] = to_json_value(result.output)
            to_status = StepStatus.SUCCEEDED
        else:
            fields["output_json"] = to_json_value(result.output) if result.output else None
            fields["error_json"] = {"code": result.error_code, "message": result.error_message}
            to_status = StepStatus.FAILED
        await self._run_repo.transition_step(step_pk, StepStatus.RUNNING, to_status, **fields)


def _violation(verdict: GateVerdict) -> PolicyViolation:
    return PolicyViolation(
        verdict.reason,
        policy_rule=verdict.rule_id,
        code=verdict.code.value,
        action_id=verdict.action_id,
    )


def _run_payload(run: RemediationRun, incident: Incident, result_json: dict[str, Any]) -> dict[str, Any]:
    return {"run_id": run.id, "run_key": run.run_key, "incident_key": incident.incident_key, **result_json}

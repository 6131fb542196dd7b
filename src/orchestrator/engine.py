from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from orchestrator.errors import (
    PhaseMismatch,
    SkillAlreadyTerminal,
    StateConflict,
    StateStoreError,
    UnknownExecution,
    UnknownGate,
    UnknownSkill,
    ValidationError,
)
from orchestrator.guarantees.evaluator import GateEvaluation, GuaranteeEvaluator, GuaranteeResult
from orchestrator.guarantees.workspace import Workspace
from orchestrator.loops import validate_loop_definition
from orchestrator.models import (
    AUTONOMY_LEVELS,
    TERMINAL_EXECUTION_STATUSES,
    Execution,
    GateDefinition,
    GateState,
    LogEntry,
    LoopDefinition,
    PhaseState,
    SkillInstance,
    SkillOutcome,
    utcnow_iso,
)
from orchestrator.state.archive import ExecutionSnapshot
from orchestrator.state.store import StateStore

logger = logging.getLogger(__name__)

EngineEventHook = Callable[[dict[str, Any]], None]
PauseHook = Callable[[str], None]
TerminalHook = Callable[[ExecutionSnapshot], Any]

GATE_COMMAND_STATUSES = frozenset({"active", "paused"})
SUPERVISOR_ACTOR = "autonomous-supervisor"


def _new_execution_id() -> str:
    return f"exec-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


def _require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} must be a non-empty string.")
    return value.strip()


class ExecutionEngine:
    """Owns the lifecycle of loop executions.

    Every command loads a fresh copy of the execution from the store, validates
    and computes the complete mutation on that copy, then commits it with one
    atomic write guarded by the document revision. A command that raises has
    written nothing.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        evaluator: GuaranteeEvaluator | None = None,
        workspace: Workspace | None = None,
        on_terminal: TerminalHook | None = None,
        event_hook: EngineEventHook | None = None,
    ) -> None:
        self.store = store
        self.evaluator = evaluator
        self.workspace = workspace
        self.on_terminal = on_terminal
        self.event_hook = event_hook
        self._pause_hooks: list[PauseHook] = []

    # ------------------------------------------------------------------
    # plumbing

    def add_pause_hook(self, hook: PauseHook) -> None:
        self._pause_hooks.append(hook)

    def remove_pause_hook(self, hook: PauseHook) -> None:
        if hook in self._pause_hooks:
            self._pause_hooks.remove(hook)

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _signal_pause(self, execution_id: str) -> None:
        for hook in list(self._pause_hooks):
            hook(execution_id)

    def _load(self, execution_id: str) -> tuple[Execution, int]:
        _require_text(execution_id, "execution_id")
        try:
            envelope = self.store.get_execution_envelope(execution_id)
        except StateStoreError as exc:
            raise UnknownExecution(str(exc)) from exc
        if envelope is None or not isinstance(envelope.get("data"), dict):
            raise UnknownExecution(f"Execution not found: {execution_id}")
        return Execution.from_dict(envelope["data"]), int(envelope.get("revision", 0))

    def _load_with_status(
        self, execution_id: str, allowed: Iterable[str], action: str
    ) -> tuple[Execution, int]:
        execution, revision = self._load(execution_id)
        allowed_statuses = set(allowed)
        if execution.status not in allowed_statuses:
            raise StateConflict(
                f"Cannot {action}: execution {execution.id} is {execution.status}."
            )
        return execution, revision

    def _commit(self, execution: Execution, revision: int) -> Execution:
        execution.last_updated_at = utcnow_iso()
        try:
            self.store.put_execution(execution.id, execution.to_dict(), expected_revision=revision)
        except StateStoreError as exc:
            if "Concurrent state update detected" in str(exc):
                raise StateConflict(
                    f"Execution {execution.id} was modified concurrently; reload and retry."
                ) from exc
            raise
        if execution.terminal:
            self._hand_off_terminal(execution)
        return execution.copy()

    def _hand_off_terminal(self, execution: Execution) -> None:
        if self.on_terminal is None:
            return
        snapshot = self._snapshot(execution)
        try:
            self.on_terminal(snapshot)
        except (OSError, StateStoreError) as exc:
            logger.warning("Archival of execution %s failed: %s", execution.id, exc)
            self._emit({"event": "archive_failed", "execution_id": execution.id, "error": str(exc)})

    @staticmethod
    def _snapshot(execution: Execution) -> ExecutionSnapshot:
        return ExecutionSnapshot(
            execution_id=execution.id,
            loop_id=execution.loop_id,
            status=execution.status,
            exported_at=utcnow_iso(),
            state=copy.deepcopy(execution.to_dict()),
        )

    @staticmethod
    def _log(
        execution: Execution,
        level: str,
        category: str,
        message: str,
        **context: Any,
    ) -> LogEntry:
        now = datetime.now(UTC)
        seq = 1
        if execution.log:
            last = execution.log[-1]
            seq = last.seq + 1
            last_at = datetime.fromisoformat(last.timestamp)
            if now < last_at:
                now = last_at
        entry = LogEntry(
            seq=seq,
            timestamp=now.isoformat(),
            level=level,
            category=category,
            message=message,
            context={key: value for key, value in context.items() if value is not None},
        )
        execution.log.append(entry)
        return entry

    @staticmethod
    def _skill(execution: Execution, skill_id: str) -> SkillInstance:
        skill = execution.skill(_require_text(skill_id, "skill_id"))
        if skill is None:
            raise UnknownSkill(f"Skill '{skill_id}' is not part of execution {execution.id}.")
        return skill

    @staticmethod
    def _gate(execution: Execution, gate_id: str) -> GateState:
        gate = execution.gate(_require_text(gate_id, "gate_id"))
        if gate is None:
            raise UnknownGate(f"Gate '{gate_id}' is not part of execution {execution.id}.")
        return gate

    @staticmethod
    def _current_phase(execution: Execution) -> PhaseState:
        phase = execution.phase_state(execution.current_phase_id)
        if phase is None:
            raise StateConflict(
                f"Execution {execution.id} has no state for phase '{execution.current_phase_id}'."
            )
        return phase

    @staticmethod
    def gate_definition(execution: Execution, gate_id: str) -> GateDefinition | None:
        for phase in execution.definition.phases:
            if phase.gate is not None and phase.gate.id == gate_id:
                return phase.gate
        return None

    @staticmethod
    def _resolve_policy(gate: GateDefinition, autonomy_level: str, context: dict[str, Any]) -> str:
        # Only full autonomy lets a gate pass without a human.
        if autonomy_level != "full" or gate.approval_policy == "Manual":
            return "manual"
        if gate.approval_policy == "Automatic":
            return "automatic"
        auto_gates = context.get("auto_gates", [])
        configured = bool(gate.auto_target) or (
            isinstance(auto_gates, list) and gate.id in auto_gates
        )
        return "automatic" if configured else "manual"

    @staticmethod
    def _phase_blockers(execution: Execution, phase_id: str) -> list[str]:
        phase_def = execution.definition.phase(phase_id)
        allow_failed = phase_def.allow_failed_skills if phase_def is not None else True
        blockers: list[str] = []
        for skill in execution.phase_skills(phase_id):
            if not skill.required:
                continue
            if not skill.terminal:
                blockers.append(f"{skill.id} ({skill.status})")
            elif skill.status == "failed" and not allow_failed:
                blockers.append(f"{skill.id} (failed)")
        return blockers

    def _settle_skill(
        self,
        execution: Execution,
        skill_id: str,
        action: str,
    ) -> tuple[SkillInstance, PhaseState]:
        skill = self._skill(execution, skill_id)
        if skill.phase_id != execution.current_phase_id:
            raise PhaseMismatch(
                f"Skill '{skill.id}' belongs to phase '{skill.phase_id}', "
                f"current phase is '{execution.current_phase_id}'."
            )
        phase = self._current_phase(execution)
        if phase.status == "completed":
            raise StateConflict(f"Cannot {action}: phase '{phase.id}' is already completed.")
        if skill.terminal:
            if skill.revision >= phase.revision:
                raise SkillAlreadyTerminal(
                    f"Skill '{skill.id}' is already {skill.status}."
                )
            skill.history.append(
                {
                    "revision": skill.revision,
                    "status": skill.status,
                    "outcome": (
                        {"success": skill.outcome.success, "score": skill.outcome.score}
                        if skill.outcome
                        else None
                    ),
                    "skip_reason": skill.skip_reason,
                    "completed_at": skill.completed_at,
                }
            )
        return skill, phase

    def _note_phase_ready(self, execution: Execution, phase: PhaseState) -> None:
        if not self._phase_blockers(execution, phase.id):
            self._log(
                execution,
                "info",
                "phase",
                f"All required skills of phase '{phase.id}' are settled.",
                phase_id=phase.id,
            )

    # ------------------------------------------------------------------
    # commands

    def start(
        self,
        loop_definition: LoopDefinition,
        context: dict[str, Any] | None = None,
        autonomy_level: str = "supervised",
        *,
        execution_id: str | None = None,
    ) -> Execution:
        if autonomy_level not in AUTONOMY_LEVELS:
            raise ValidationError(
                f"Unknown autonomy level '{autonomy_level}'. Expected one of {list(AUTONOMY_LEVELS)}."
            )
        if context is not None and not isinstance(context, dict):
            raise ValidationError("context must be a mapping.")
        definition = copy.deepcopy(loop_definition)
        validate_loop_definition(definition)
        run_context = copy.deepcopy(context or {})
        new_id = _require_text(execution_id or _new_execution_id(), "execution_id")
        try:
            existing = self.store.get_execution(new_id)
        except StateStoreError as exc:
            raise ValidationError(str(exc)) from exc
        if existing is not None:
            raise StateConflict(f"Execution {new_id} already exists.")

        now = utcnow_iso()
        first_phase = definition.phases[0]
        execution = Execution(
            id=new_id,
            loop_id=definition.id,
            status="pending",
            current_phase_id=first_phase.id,
            autonomy_level=autonomy_level,
            context=run_context,
            started_at=now,
            last_updated_at=now,
            definition=definition,
        )
        for phase_def in definition.phases:
            execution.phases.append(PhaseState(id=phase_def.id))
            for ref in phase_def.skills:
                execution.skills.append(
                    SkillInstance(id=ref.id, phase_id=phase_def.id, required=ref.required)
                )
            if phase_def.gate is not None:
                execution.gates.append(
                    GateState(
                        id=phase_def.gate.id,
                        phase_id=phase_def.id,
                        approval_policy=phase_def.gate.approval_policy,
                        resolved_policy=self._resolve_policy(
                            phase_def.gate, autonomy_level, run_context
                        ),
                    )
                )

        self._log(
            execution,
            "info",
            "system",
            f"Execution created for loop '{definition.id}'.",
            loop_version=definition.version,
            autonomy_level=autonomy_level,
        )
        execution.status = "active"
        phase = self._current_phase(execution)
        phase.status = "in-progress"
        phase.started_at = now
        self._log(
            execution,
            "info",
            "phase",
            f"Phase '{phase.id}' started.",
            phase_id=phase.id,
        )
        committed = self._commit(execution, revision=0)
        logger.info("Started execution %s for loop %s", new_id, definition.id)
        self._emit({"event": "execution_started", "execution_id": new_id, "loop_id": definition.id})
        return committed

    def start_skill(self, execution_id: str, skill_id: str) -> Execution:
        execution, revision = self._load_with_status(execution_id, {"active"}, "start skill")
        skill = self._skill(execution, skill_id)
        if skill.phase_id != execution.current_phase_id:
            raise PhaseMismatch(
                f"Skill '{skill.id}' belongs to phase '{skill.phase_id}', "
                f"current phase is '{execution.current_phase_id}'."
            )
        if skill.status != "pending":
            raise StateConflict(f"Skill '{skill.id}' is {skill.status}, expected pending.")
        skill.status = "active"
        skill.started_at = utcnow_iso()
        self._log(
            execution, "info", "skill", f"Skill '{skill.id}' started.", skill_id=skill.id
        )
        return self._commit(execution, revision)

    def complete_skill(self, execution_id: str, skill_id: str, outcome: SkillOutcome) -> Execution:
        if not isinstance(outcome, SkillOutcome):
            raise ValidationError("outcome must be a SkillOutcome.")
        if not 0.0 <= float(outcome.score) <= 1.0:
            raise ValidationError(f"outcome score must be within [0, 1], got {outcome.score}.")
        execution, revision = self._load_with_status(execution_id, {"active"}, "complete skill")
        skill, phase = self._settle_skill(execution, skill_id, "complete skill")

        now = utcnow_iso()
        rework = skill.terminal
        skill.status = "completed" if outcome.success else "failed"
        skill.started_at = skill.started_at if skill.started_at and not rework else now
        skill.completed_at = now
        skill.outcome = SkillOutcome(success=bool(outcome.success), score=float(outcome.score))
        skill.skip_reason = None
        skill.revision = phase.revision
        self._log(
            execution,
            "info" if outcome.success else "warning",
            "skill",
            f"Skill '{skill.id}' {skill.status}.",
            skill_id=skill.id,
            phase_id=phase.id,
            score=skill.outcome.score,
            revision=skill.revision if rework else None,
        )
        self._note_phase_ready(execution, phase)
        return self._commit(execution, revision)

    def skip_skill(self, execution_id: str, skill_id: str, reason: str) -> Execution:
        skip_reason = _require_text(reason, "reason")
        execution, revision = self._load_with_status(execution_id, {"active"}, "skip skill")
        skill, phase = self._settle_skill(execution, skill_id, "skip skill")

        now = utcnow_iso()
        skill.status = "skipped"
        skill.started_at = skill.started_at or now
        skill.completed_at = now
        skill.outcome = None
        skill.skip_reason = skip_reason
        skill.revision = phase.revision
        self._log(
            execution,
            "warning",
            "skill",
            f"Skill '{skill.id}' skipped: {skip_reason}",
            skill_id=skill.id,
            phase_id=phase.id,
        )
        self._note_phase_ready(execution, phase)
        return self._commit(execution, revision)

    def complete_phase(self, execution_id: str) -> Execution:
        execution, revision = self._load_with_status(execution_id, {"active"}, "complete phase")
        phase = self._current_phase(execution)
        if phase.status == "completed":
            raise StateConflict(f"Phase '{phase.id}' is already completed.")
        blockers = self._phase_blockers(execution, phase.id)
        if blockers:
            raise StateConflict(
                f"Phase '{phase.id}' has unsettled required skills: {', '.join(blockers)}."
            )

        phase.status = "completed"
        phase.completed_at = utcnow_iso()
        gate = execution.gate_for_phase(phase.id)
        if gate is not None and gate.status == "rejected":
            gate.history.append(dict(gate.decision_trace))
            gate.decision_trace = {}
            gate.status = "pending"
            self._log(
                execution,
                "info",
                "gate",
                f"Gate '{gate.id}' reopened for revision {phase.revision}.",
                gate_id=gate.id,
            )
        self._log(
            execution,
            "info",
            "phase",
            f"Phase '{phase.id}' completed.",
            phase_id=phase.id,
            gate_id=gate.id if gate else None,
            gate_status=gate.status if gate else None,
        )
        return self._commit(execution, revision)

    def advance_phase(self, execution_id: str) -> Execution:
        execution, revision = self._load_with_status(execution_id, {"active"}, "advance phase")
        phase = self._current_phase(execution)
        if phase.status != "completed":
            raise StateConflict(f"Current phase '{phase.id}' is not completed.")
        gate = execution.gate_for_phase(phase.id)
        if gate is not None and gate.status != "approved":
            raise StateConflict(
                f"Gate '{gate.id}' must be approved before advancing (status: {gate.status})."
            )

        index = execution.definition.phase_index(phase.id)
        if index >= len(execution.definition.phases) - 1:
            now = utcnow_iso()
            execution.status = "completed"
            execution.completed_at = now
            self._log(
                execution,
                "info",
                "system",
                "Loop execution completed.",
                total_phases=len(execution.definition.phases),
            )
            committed = self._commit(execution, revision)
            logger.info("Execution %s completed", execution.id)
            self._emit({"event": "execution_completed", "execution_id": execution.id})
            return committed

        next_phase = execution.phases[index + 1]
        next_phase.status = "in-progress"
        next_phase.started_at = utcnow_iso()
        execution.current_phase_id = next_phase.id
        self._log(
            execution,
            "info",
            "phase",
            f"Advanced from phase '{phase.id}' to '{next_phase.id}'.",
            phase_id=next_phase.id,
            previous_phase_id=phase.id,
        )
        return self._commit(execution, revision)

    def approve_gate(self, execution_id: str, gate_id: str, approver: str) -> Execution:
        approved_by = _require_text(approver, "approver")
        execution, revision = self._load_with_status(
            execution_id, GATE_COMMAND_STATUSES, "approve gate"
        )
        gate = self._gate(execution, gate_id)
        if gate.phase_id != execution.current_phase_id:
            raise StateConflict(
                f"Gate '{gate.id}' belongs to phase '{gate.phase_id}', "
                f"current phase is '{execution.current_phase_id}'."
            )
        if gate.status == "approved":
            raise StateConflict(f"Gate '{gate.id}' is already approved.")

        trace: dict[str, Any] = {
            "kind": "human",
            "decision": "approved",
            "decided_by": approved_by,
            "at": utcnow_iso(),
        }
        evaluation = self._evaluate_gate(execution, gate.id)
        if evaluation is not None:
            trace["guarantees"] = evaluation.to_dict()
            trace["override"] = not evaluation.passed
        if gate.decision_trace:
            gate.history.append(dict(gate.decision_trace))
        gate.decision_trace = trace
        gate.status = "approved"
        self._log(
            execution,
            "warning" if trace.get("override") else "info",
            "gate",
            f"Gate '{gate.id}' approved by {approved_by}"
            + (" over failing guarantees." if trace.get("override") else "."),
            gate_id=gate.id,
            approved_by=approved_by,
            override=trace.get("override"),
        )
        committed = self._commit(execution, revision)
        self._emit({"event": "gate_approved", "execution_id": execution.id, "gate_id": gate.id})
        return committed

    def reject_gate(self, execution_id: str, gate_id: str, reason: str) -> Execution:
        feedback = _require_text(reason, "reason")
        execution, revision = self._load_with_status(
            execution_id, GATE_COMMAND_STATUSES, "reject gate"
        )
        gate = self._gate(execution, gate_id)
        if gate.phase_id != execution.current_phase_id:
            raise StateConflict(
                f"Gate '{gate.id}' belongs to phase '{gate.phase_id}', "
                f"current phase is '{execution.current_phase_id}'."
            )
        if gate.status == "rejected":
            raise StateConflict(f"Gate '{gate.id}' is already rejected.")

        if gate.decision_trace:
            gate.history.append(dict(gate.decision_trace))
        gate.decision_trace = {
            "kind": "human",
            "decision": "rejected",
            "reason": feedback,
            "at": utcnow_iso(),
        }
        gate.status = "rejected"
        phase = self._current_phase(execution)
        phase.status = "in-progress"
        phase.completed_at = None
        phase.revision += 1
        self._log(
            execution,
            "warning",
            "gate",
            f"Gate '{gate.id}' rejected: {feedback}",
            gate_id=gate.id,
            phase_id=phase.id,
            revision=phase.revision,
        )
        committed = self._commit(execution, revision)
        self._emit({"event": "gate_rejected", "execution_id": execution.id, "gate_id": gate.id})
        return committed

    def pause(self, execution_id: str) -> Execution:
        execution, revision = self._load_with_status(execution_id, {"active"}, "pause")
        execution.status = "paused"
        self._log(
            execution,
            "info",
            "system",
            "Execution paused.",
            phase_id=execution.current_phase_id,
            skills={skill.id: skill.status for skill in execution.skills},
            gates={gate.id: gate.status for gate in execution.gates},
        )
        committed = self._commit(execution, revision)
        self._signal_pause(execution.id)
        self._emit({"event": "execution_paused", "execution_id": execution.id})
        return committed

    def resume(self, execution_id: str) -> Execution:
        execution, revision = self._load_with_status(execution_id, {"paused"}, "resume")
        execution.status = "active"
        self._log(
            execution,
            "info",
            "system",
            "Execution resumed.",
            phase_id=execution.current_phase_id,
        )
        committed = self._commit(execution, revision)
        self._emit({"event": "execution_resumed", "execution_id": execution.id})
        return committed

    def abort(self, execution_id: str, reason: str) -> Execution:
        failure = _require_text(reason, "reason")
        execution, revision = self._load(execution_id)
        if execution.status in TERMINAL_EXECUTION_STATUSES:
            raise StateConflict(f"Cannot abort: execution {execution.id} is {execution.status}.")
        execution.status = "failed"
        execution.failure_reason = failure
        execution.completed_at = utcnow_iso()
        self._log(execution, "error", "system", f"Execution aborted: {failure}")
        committed = self._commit(execution, revision)
        self._signal_pause(execution.id)
        self._emit({"event": "execution_failed", "execution_id": execution.id, "reason": failure})
        return committed

    # ------------------------------------------------------------------
    # supervisor entry points

    def auto_approve_gate(
        self,
        execution_id: str,
        gate_id: str,
        evaluation: GateEvaluation,
        *,
        attempts: Sequence[dict[str, Any]] = (),
    ) -> Execution:
        execution, revision = self._load_with_status(execution_id, {"active"}, "auto-approve gate")
        gate = self._gate(execution, gate_id)
        if gate.resolved_policy != "automatic":
            raise StateConflict(f"Gate '{gate.id}' is not configured for automatic approval.")
        if gate.status == "rejected" or gate.human_rejected:
            raise StateConflict(f"Gate '{gate.id}' carries a human rejection.")
        if gate.status == "approved":
            raise StateConflict(f"Gate '{gate.id}' is already approved.")
        if evaluation.gate_id != gate.id or not evaluation.passed:
            raise StateConflict(
                f"Refusing to auto-approve gate '{gate.id}' with unresolved required guarantees."
            )

        if gate.decision_trace:
            gate.history.append(dict(gate.decision_trace))
        gate.decision_trace = {
            "kind": "auto",
            "decision": "auto-approved",
            "decided_by": SUPERVISOR_ACTOR,
            "at": utcnow_iso(),
            "attempts": [dict(item) for item in attempts],
            "guarantees": evaluation.to_dict(),
        }
        gate.status = "approved"
        self._log(
            execution,
            "info",
            "gate",
            f"Gate '{gate.id}' auto-approved.",
            gate_id=gate.id,
            event="gate_auto_approved",
            attempts=len(attempts),
        )
        return self._commit(execution, revision)

    def escalate_gate(
        self,
        execution_id: str,
        gate_id: str,
        reason: str,
        *,
        failed: Sequence[GuaranteeResult] = (),
        attempts: Sequence[dict[str, Any]] = (),
    ) -> Execution:
        escalation_reason = _require_text(reason, "reason")
        execution, revision = self._load_with_status(
            execution_id, GATE_COMMAND_STATUSES, "escalate gate"
        )
        gate = self._gate(execution, gate_id)
        if gate.status in {"approved", "rejected"}:
            raise StateConflict(f"Gate '{gate.id}' was already decided ({gate.status}).")

        if gate.decision_trace:
            gate.history.append(dict(gate.decision_trace))
        gate.decision_trace = {
            "kind": "escalation",
            "decision": "pending-human",
            "decided_by": SUPERVISOR_ACTOR,
            "reason": escalation_reason,
            "at": utcnow_iso(),
            "failed_guarantees": [result.to_dict() for result in failed],
            "attempts": [dict(item) for item in attempts],
        }
        gate.status = "pending-human"
        self._log(
            execution,
            "warning",
            "gate",
            f"Gate '{gate.id}' escalated to a human: {escalation_reason}",
            gate_id=gate.id,
            event="gate_escalated",
            failed_guarantees=[result.guarantee_id for result in failed],
        )
        return self._commit(execution, revision)

    # ------------------------------------------------------------------
    # queries

    def get_state(self, execution_id: str) -> Execution:
        execution, _revision = self._load(execution_id)
        return execution

    def list_executions(self, status: str | None = None) -> list[dict[str, Any]]:
        summaries: list[dict[str, Any]] = []
        for execution_id in self.store.list_execution_ids():
            payload = self.store.get_execution(execution_id)
            if payload is None:
                continue
            if status and payload.get("status") != status:
                continue
            summaries.append(
                {
                    "id": payload.get("id"),
                    "loop_id": payload.get("loop_id"),
                    "status": payload.get("status"),
                    "current_phase_id": payload.get("current_phase_id"),
                    "autonomy_level": payload.get("autonomy_level"),
                    "started_at": payload.get("started_at"),
                    "last_updated_at": payload.get("last_updated_at"),
                }
            )
        return summaries

    def _evaluate_gate(self, execution: Execution, gate_id: str) -> GateEvaluation | None:
        if self.evaluator is None or self.workspace is None:
            return None
        definition = self.gate_definition(execution, gate_id)
        guarantees = definition.guarantees if definition is not None else []
        return self.evaluator.aggregate_for_gate(gate_id, guarantees, self.workspace)

    def gate_status(self, execution_id: str, gate_id: str) -> GateEvaluation:
        execution, _revision = self._load(execution_id)
        gate = self._gate(execution, gate_id)
        evaluation = self._evaluate_gate(execution, gate.id)
        if evaluation is None:
            raise ValidationError("No guarantee evaluator and workspace are configured.")
        return evaluation

    def export_snapshot(self, execution_id: str) -> ExecutionSnapshot:
        execution, _revision = self._load(execution_id)
        if not execution.terminal:
            raise StateConflict(
                f"Execution {execution.id} is {execution.status}; only terminal runs are exported."
            )
        return self._snapshot(execution)

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from orchestrator.config import SupervisorConfig
from orchestrator.engine import GATE_COMMAND_STATUSES, ExecutionEngine
from orchestrator.errors import (
    EscalationRequired,
    RemediationFailed,
    RemediationTimeout,
    StateConflict,
    UnknownGate,
)
from orchestrator.guarantees.evaluator import GateEvaluation, GuaranteeEvaluator
from orchestrator.guarantees.workspace import Workspace
from orchestrator.models import Execution, Guarantee, utcnow_iso
from orchestrator.notifications import EscalationEvent, NotificationChannel
from orchestrator.remediation.base import RemediationOutcome, RemediationRequest, RemediationWorker

logger = logging.getLogger(__name__)

SupervisorEventHook = Callable[[dict[str, Any]], None]
SleepFn = Callable[[float], Awaitable[None]]
SupervisionStatus = Literal["approved", "escalated", "aborted"]

SUPERVISABLE_GATE_STATUSES = frozenset({"pending", "pending-human"})


@dataclass(slots=True)
class SupervisorPolicy:
    max_attempts: int = 3
    retry_delay_seconds: float = 10.0
    remediation_timeout_seconds: float = 600.0
    auto_advance: bool = True

    @classmethod
    def from_config(cls, config: SupervisorConfig) -> SupervisorPolicy:
        return cls(
            max_attempts=max(1, int(config.max_attempts)),
            retry_delay_seconds=max(0.0, float(config.retry_delay_seconds)),
            remediation_timeout_seconds=max(1.0, float(config.remediation_timeout_seconds)),
            auto_advance=bool(config.auto_advance),
        )


@dataclass(frozen=True, slots=True)
class AttemptRecord:
    number: int
    stage: Literal["evaluation", "remediation", "recheck"]
    passed: bool
    at: str = field(default_factory=utcnow_iso)
    blocking: tuple[str, ...] = ()
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "stage": self.stage,
            "passed": self.passed,
            "at": self.at,
            "blocking": list(self.blocking),
            "detail": self.detail,
        }


@dataclass(slots=True)
class SupervisionOutcome:
    execution_id: str
    gate_id: str
    status: SupervisionStatus
    attempts: list[AttemptRecord] = field(default_factory=list)
    evaluation: GateEvaluation | None = None
    escalation: EscalationEvent | None = None
    advanced: bool = False
    current_phase_id: str | None = None
    execution_status: str | None = None

    @property
    def approved(self) -> bool:
        return self.status == "approved"

    @property
    def evaluations(self) -> int:
        return len([item for item in self.attempts if item.stage != "remediation"])

    def raise_for_escalation(self) -> None:
        if self.approved:
            return
        reason = self.escalation.reason if self.escalation else self.status
        raise EscalationRequired(
            f"Gate '{self.gate_id}' of execution {self.execution_id} needs a human decision: {reason}",
            event=self.escalation,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "gate_id": self.gate_id,
            "status": self.status,
            "attempts": [item.to_dict() for item in self.attempts],
            "evaluation": self.evaluation.to_dict() if self.evaluation else None,
            "escalation": self.escalation.to_dict() if self.escalation else None,
            "advanced": self.advanced,
            "current_phase_id": self.current_phase_id,
            "execution_status": self.execution_status,
        }


class AutonomousSupervisor:
    """Drives automatic gates to approval or escalation.

    Evaluates the gate's guarantees up to ``max_attempts`` times with a fixed
    delay, then hands the failing required guarantees to a remediation worker
    once, re-checks once and escalates to a human if they still fail. Pausing
    the execution aborts the loop into a human-pending gate. Under full
    autonomy an approved gate also advances the execution to the next phase.
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        evaluator: GuaranteeEvaluator,
        workspace: Workspace,
        *,
        policy: SupervisorPolicy | None = None,
        remediation_worker: RemediationWorker | None = None,
        notifier: NotificationChannel | None = None,
        event_hook: SupervisorEventHook | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self.engine = engine
        self.evaluator = evaluator
        self.workspace = workspace
        self.policy = policy or SupervisorPolicy()
        self.remediation_worker = remediation_worker
        self.notifier = notifier
        self.event_hook = event_hook
        self._sleep: SleepFn = sleep or asyncio.sleep
        self._inflight: dict[tuple[str, str], asyncio.Future[SupervisionOutcome]] = {}
        self._pause_events: dict[tuple[str, str], asyncio.Event] = {}
        self.engine.add_pause_hook(self._on_pause)

    def close(self) -> None:
        self.engine.remove_pause_hook(self._on_pause)

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _on_pause(self, execution_id: str) -> None:
        for (run_id, _gate_id), event in self._pause_events.items():
            if run_id == execution_id:
                event.set()

    async def supervise_gate(self, execution_id: str, gate_id: str) -> SupervisionOutcome:
        key = (execution_id, gate_id)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._supervise(execution_id, gate_id))
            self._inflight[key] = task
            task.add_done_callback(lambda _done, key=key: self._inflight.pop(key, None))
        return await asyncio.shield(task)

    def _guarantees_for(self, execution: Execution, gate_id: str) -> list[Guarantee]:
        gate = execution.gate(gate_id)
        if gate is None:
            raise UnknownGate(f"Gate '{gate_id}' is not part of execution {execution.id}.")
        if execution.status != "active":
            raise StateConflict(f"Execution {execution.id} is {execution.status}, expected active.")
        if gate.resolved_policy != "automatic":
            raise StateConflict(f"Gate '{gate.id}' is not configured for automatic approval.")
        if gate.phase_id != execution.current_phase_id:
            raise StateConflict(
                f"Gate '{gate.id}' belongs to phase '{gate.phase_id}', "
                f"current phase is '{execution.current_phase_id}'."
            )
        phase = execution.phase_state(gate.phase_id)
        if phase is None or phase.status != "completed":
            raise StateConflict(f"Phase '{gate.phase_id}' must be completed before supervision.")
        if gate.status not in SUPERVISABLE_GATE_STATUSES:
            raise StateConflict(f"Gate '{gate.id}' is {gate.status}; nothing to supervise.")
        if gate.human_rejected:
            raise StateConflict(
                f"Gate '{gate.id}' was rejected by a human; only a human can approve it."
            )
        definition = self.engine.gate_definition(execution, gate.id)
        return list(definition.guarantees) if definition is not None else []

    async def _load(self, execution_id: str) -> Execution:
        return await asyncio.to_thread(self.engine.get_state, execution_id)

    async def _is_paused(self, execution_id: str, pause_event: asyncio.Event) -> bool:
        if pause_event.is_set():
            return True
        return (await self._load(execution_id)).status != "active"

    async def _wait(self, delay: float, pause_event: asyncio.Event) -> bool:
        """Sleep for ``delay`` unless a pause arrives first. Returns True when paused."""
        if pause_event.is_set():
            return True
        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(pause_event.wait())
        done, pending = await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if sleeper in done:
            sleeper.result()
        return pause_event.is_set()

    def _evaluate(self, gate_id: str, guarantees: list[Guarantee]) -> GateEvaluation:
        return self.evaluator.aggregate_for_gate(gate_id, guarantees, self.workspace)

    async def _supervise(self, execution_id: str, gate_id: str) -> SupervisionOutcome:
        execution = await self._load(execution_id)
        guarantees = self._guarantees_for(execution, gate_id)
        key = (execution_id, gate_id)
        pause_event = asyncio.Event()
        self._pause_events[key] = pause_event
        attempts: list[AttemptRecord] = []
        evaluation: GateEvaluation | None = None
        logger.info("Supervising gate %s of execution %s", gate_id, execution_id)
        try:
            for number in range(1, max(1, self.policy.max_attempts) + 1):
                if number > 1:
                    self._emit(
                        {
                            "event": "supervisor_retry",
                            "execution_id": execution_id,
                            "gate_id": gate_id,
                            "attempt": number,
                            "delay_seconds": self.policy.retry_delay_seconds,
                        }
                    )
                    paused = await self._wait(self.policy.retry_delay_seconds, pause_event)
                    if paused or await self._is_paused(execution_id, pause_event):
                        return await self._abort(execution_id, gate_id, attempts, evaluation)
                evaluation = self._evaluate(gate_id, guarantees)
                attempts.append(
                    AttemptRecord(
                        number=number,
                        stage="evaluation",
                        passed=evaluation.passed,
                        blocking=tuple(item.guarantee_id for item in evaluation.blocking),
                    )
                )
                if evaluation.passed:
                    return await self._approve(execution_id, gate_id, attempts, evaluation, pause_event)
                logger.info(
                    "Gate %s attempt %d/%d failed: %s",
                    gate_id,
                    number,
                    self.policy.max_attempts,
                    ", ".join(item.guarantee_id for item in evaluation.blocking),
                )

            if await self._is_paused(execution_id, pause_event):
                return await self._abort(execution_id, gate_id, attempts, evaluation)
            if evaluation is None:
                return await self._escalate(
                    execution_id,
                    gate_id,
                    "gate was never evaluated",
                    attempts,
                    None,
                    status="escalated",
                )
            attempts.append(
                await self._remediate(execution_id, gate_id, evaluation, len(attempts) + 1)
            )
            if await self._is_paused(execution_id, pause_event):
                return await self._abort(execution_id, gate_id, attempts, evaluation)

            evaluation = self._evaluate(gate_id, guarantees)
            attempts.append(
                AttemptRecord(
                    number=len(attempts) + 1,
                    stage="recheck",
                    passed=evaluation.passed,
                    blocking=tuple(item.guarantee_id for item in evaluation.blocking),
                )
            )
            if evaluation.passed:
                return await self._approve(execution_id, gate_id, attempts, evaluation, pause_event)
            return await self._escalate(
                execution_id,
                gate_id,
                "required guarantees still failing after remediation",
                attempts,
                evaluation,
                status="escalated",
            )
        finally:
            self._pause_events.pop(key, None)

    async def _approve(
        self,
        execution_id: str,
        gate_id: str,
        attempts: list[AttemptRecord],
        evaluation: GateEvaluation,
        pause_event: asyncio.Event,
    ) -> SupervisionOutcome:
        if await self._is_paused(execution_id, pause_event):
            return await self._abort(execution_id, gate_id, attempts, evaluation)
        execution = self.engine.auto_approve_gate(
            execution_id,
            gate_id,
            evaluation,
            attempts=[item.to_dict() for item in attempts],
        )
        logger.info("Gate %s auto-approved after %d attempt(s)", gate_id, len(attempts))
        self._emit(
            {
                "event": "gate_auto_approved",
                "execution_id": execution_id,
                "gate_id": gate_id,
                "attempts": len(attempts),
            }
        )
        outcome = SupervisionOutcome(
            execution_id=execution_id,
            gate_id=gate_id,
            status="approved",
            attempts=attempts,
            evaluation=evaluation,
            current_phase_id=execution.current_phase_id,
            execution_status=execution.status,
        )
        if self.policy.auto_advance and execution.autonomy_level == "full":
            await self._advance(outcome, pause_event)
        return outcome

    async def _advance(self, outcome: SupervisionOutcome, pause_event: asyncio.Event) -> None:
        """Move past an auto-approved gate, leaving it approved if the move is refused."""
        if await self._is_paused(outcome.execution_id, pause_event):
            logger.info(
                "Execution %s paused after gate %s was approved; not advancing",
                outcome.execution_id,
                outcome.gate_id,
            )
            return
        try:
            execution = self.engine.advance_phase(outcome.execution_id)
        except StateConflict as exc:
            logger.warning(
                "Gate %s approved but execution %s did not advance: %s",
                outcome.gate_id,
                outcome.execution_id,
                exc,
            )
            return
        outcome.advanced = True
        outcome.current_phase_id = execution.current_phase_id
        outcome.execution_status = execution.status
        self._emit(
            {
                "event": "phase_advanced",
                "execution_id": execution.id,
                "gate_id": outcome.gate_id,
                "phase_id": execution.current_phase_id,
                "status": execution.status,
            }
        )

    async def _remediate(
        self,
        execution_id: str,
        gate_id: str,
        evaluation: GateEvaluation,
        number: int,
    ) -> AttemptRecord:
        execution = await self._load(execution_id)
        request = RemediationRequest(
            execution_id=execution_id,
            gate_id=gate_id,
            failed=tuple(evaluation.blocking),
            context=dict(execution.context),
        )
        worker_name = self.remediation_worker.name if self.remediation_worker else None
        self._emit(
            {
                "event": "remediation_started",
                "execution_id": execution_id,
                "gate_id": gate_id,
                "worker": worker_name,
                "missing": request.missing,
            }
        )
        if self.remediation_worker is None:
            outcome = RemediationOutcome(status="failed", detail="no remediation worker configured")
        else:
            timeout = self.policy.remediation_timeout_seconds
            try:
                outcome = await asyncio.wait_for(
                    self.remediation_worker.remediate(request), timeout=timeout
                )
            except TimeoutError:
                outcome = RemediationOutcome(
                    status="timeout",
                    detail=f"remediation exceeded {timeout:.1f}s",
                    worker=worker_name,
                )
            except RemediationTimeout as exc:
                outcome = RemediationOutcome(status="timeout", detail=str(exc), worker=exc.worker)
            except RemediationFailed as exc:
                outcome = RemediationOutcome(status="failed", detail=str(exc), worker=exc.worker)
            except Exception as exc:
                logger.exception("Remediation worker %s crashed on gate %s", worker_name, gate_id)
                outcome = RemediationOutcome(
                    status="failed",
                    detail=f"{type(exc).__name__}: {exc}",
                    worker=worker_name,
                )
        if outcome.status != "done":
            logger.warning("Remediation for gate %s %s: %s", gate_id, outcome.status, outcome.detail)
        self._emit(
            {
                "event": "remediation_finished",
                "execution_id": execution_id,
                "gate_id": gate_id,
                "worker": outcome.worker or worker_name,
                "status": outcome.status,
            }
        )
        return AttemptRecord(
            number=number,
            stage="remediation",
            passed=outcome.status == "done",
            blocking=tuple(item.guarantee_id for item in evaluation.blocking),
            detail=f"{outcome.status}: {outcome.detail}".strip().rstrip(":"),
        )

    async def _abort(
        self,
        execution_id: str,
        gate_id: str,
        attempts: list[AttemptRecord],
        evaluation: GateEvaluation | None,
    ) -> SupervisionOutcome:
        logger.info("Supervision of gate %s aborted: execution %s paused", gate_id, execution_id)
        self._emit(
            {
                "event": "supervision_aborted",
                "execution_id": execution_id,
                "gate_id": gate_id,
                "attempts": len(attempts),
            }
        )
        if (await self._load(execution_id)).status not in GATE_COMMAND_STATUSES:
            return SupervisionOutcome(
                execution_id=execution_id,
                gate_id=gate_id,
                status="aborted",
                attempts=attempts,
                evaluation=evaluation,
            )
        return await self._escalate(
            execution_id, gate_id, "paused", attempts, evaluation, status="aborted"
        )

    async def _escalate(
        self,
        execution_id: str,
        gate_id: str,
        reason: str,
        attempts: list[AttemptRecord],
        evaluation: GateEvaluation | None,
        *,
        status: SupervisionStatus,
    ) -> SupervisionOutcome:
        failed = tuple(evaluation.blocking) if evaluation else ()
        history = [item.to_dict() for item in attempts]
        self.engine.escalate_gate(execution_id, gate_id, reason, failed=failed, attempts=history)
        event = EscalationEvent(
            execution_id=execution_id,
            gate_id=gate_id,
            reason=reason,
            failed_guarantees=tuple(item.to_dict() for item in failed),
            attempt_history=tuple(history),
        )
        if self.notifier is not None:
            await self.notifier.notify(event)
        logger.warning("Gate %s of execution %s escalated: %s", gate_id, execution_id, reason)
        self._emit(
            {
                "event": "gate_escalated",
                "execution_id": execution_id,
                "gate_id": gate_id,
                "reason": reason,
                "failed_guarantees": [item.guarantee_id for item in failed],
            }
        )
        return SupervisionOutcome(
            execution_id=execution_id,
            gate_id=gate_id,
            status=status,
            attempts=attempts,
            evaluation=evaluation,
            escalation=event,
        )

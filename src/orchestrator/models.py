from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

ExecutionStatus = Literal["pending", "active", "paused", "completed", "failed"]
AutonomyLevel = Literal["full", "supervised", "manual"]
SkillStatus = Literal["pending", "active", "completed", "skipped", "failed"]
PhaseStatus = Literal["pending", "in-progress", "completed"]
GateStatus = Literal["pending", "pending-human", "approved", "rejected"]
ApprovalPolicy = Literal["Manual", "Automatic", "AutoIfConfigured"]
ResolvedPolicy = Literal["manual", "automatic"]
GuaranteeKind = Literal["deliverable", "content", "quality", "step_proof"]
LogLevel = Literal["debug", "info", "warning", "error"]
LogCategory = Literal["phase", "skill", "gate", "system"]

EXECUTION_STATUSES = ("pending", "active", "paused", "completed", "failed")
TERMINAL_EXECUTION_STATUSES = frozenset({"completed", "failed"})
TERMINAL_SKILL_STATUSES = frozenset({"completed", "skipped", "failed"})
AUTONOMY_LEVELS = ("full", "supervised", "manual")
APPROVAL_POLICIES = ("Manual", "Automatic", "AutoIfConfigured")


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


# Loop definition: supplied by the loop composer, read-only to the engine.


@dataclass(slots=True)
class SkillRef:
    id: str
    content_handle: str = ""
    required: bool = True

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SkillRef:
        return cls(
            id=str(payload["id"]),
            content_handle=str(payload.get("content_handle", "")),
            required=bool(payload.get("required", True)),
        )


@dataclass(slots=True)
class Guarantee:
    id: str
    name: str
    kind: str
    required: bool = True
    validation: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Guarantee:
        validation = payload.get("validation", {})
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", payload["id"])),
            kind=str(payload.get("kind", payload.get("type", ""))),
            required=bool(payload.get("required", True)),
            validation=dict(validation) if isinstance(validation, dict) else {},
        )


@dataclass(slots=True)
class GateDefinition:
    id: str
    name: str = ""
    approval_policy: str = "Manual"
    guarantees: list[Guarantee] = field(default_factory=list)
    auto_target: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> GateDefinition:
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", "")),
            approval_policy=str(payload.get("approval_policy", "Manual")),
            guarantees=[Guarantee.from_dict(item) for item in payload.get("guarantees", [])],
            auto_target=payload.get("auto_target") or None,
        )


@dataclass(slots=True)
class PhaseDefinition:
    id: str
    skills: list[SkillRef] = field(default_factory=list)
    gate: GateDefinition | None = None
    allow_failed_skills: bool = True

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PhaseDefinition:
        gate = payload.get("gate")
        return cls(
            id=str(payload["id"]),
            skills=[SkillRef.from_dict(item) for item in payload.get("skills", [])],
            gate=GateDefinition.from_dict(gate) if isinstance(gate, dict) else None,
            allow_failed_skills=bool(payload.get("allow_failed_skills", True)),
        )


@dataclass(slots=True)
class LoopDefinition:
    id: str
    phases: list[PhaseDefinition] = field(default_factory=list)
    version: str = "1.0.0"

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> LoopDefinition:
        return cls(
            id=str(payload["id"]),
            phases=[PhaseDefinition.from_dict(item) for item in payload.get("phases", [])],
            version=str(payload.get("version", "1.0.0")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def phase(self, phase_id: str) -> PhaseDefinition | None:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None

    def phase_index(self, phase_id: str) -> int:
        for index, phase in enumerate(self.phases):
            if phase.id == phase_id:
                return index
        return -1


# Execution state: owned by the engine.


@dataclass(slots=True)
class SkillOutcome:
    success: bool
    score: float = 1.0

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SkillOutcome:
        return cls(success=bool(payload["success"]), score=float(payload.get("score", 0.0)))


@dataclass(slots=True)
class SkillInstance:
    id: str
    phase_id: str
    required: bool = True
    status: str = "pending"
    started_at: str | None = None
    completed_at: str | None = None
    outcome: SkillOutcome | None = None
    skip_reason: str | None = None
    revision: int = 0
    history: list[dict[str, Any]] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_SKILL_STATUSES

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SkillInstance:
        outcome = payload.get("outcome")
        return cls(
            id=str(payload["id"]),
            phase_id=str(payload["phase_id"]),
            required=bool(payload.get("required", True)),
            status=str(payload.get("status", "pending")),
            started_at=payload.get("started_at"),
            completed_at=payload.get("completed_at"),
            outcome=SkillOutcome.from_dict(outcome) if isinstance(outcome, dict) else None,
            skip_reason=payload.get("skip_reason"),
            revision=int(payload.get("revision", 0)),
            history=list(payload.get("history", [])),
        )


@dataclass(slots=True)
class GateState:
    id: str
    phase_id: str
    approval_policy: str = "Manual"
    resolved_policy: str = "manual"
    status: str = "pending"
    decision_trace: dict[str, Any] = field(default_factory=dict)
    history: list[dict[str, Any]] = field(default_factory=list)

    @property
    def human_rejected(self) -> bool:
        """True once any human rejection is on record, even after the gate reopened."""
        return any(
            trace.get("kind") == "human" and trace.get("decision") == "rejected"
            for trace in [*self.history, self.decision_trace]
        )

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> GateState:
        return cls(
            id=str(payload["id"]),
            phase_id=str(payload["phase_id"]),
            approval_policy=str(payload.get("approval_policy", "Manual")),
            resolved_policy=str(payload.get("resolved_policy", "manual")),
            status=str(payload.get("status", "pending")),
            decision_trace=dict(payload.get("decision_trace", {})),
            history=list(payload.get("history", [])),
        )


@dataclass(slots=True)
class PhaseState:
    id: str
    status: str = "pending"
    revision: int = 0
    started_at: str | None = None
    completed_at: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PhaseState:
        return cls(
            id=str(payload["id"]),
            status=str(payload.get("status", "pending")),
            revision=int(payload.get("revision", 0)),
            started_at=payload.get("started_at"),
            completed_at=payload.get("completed_at"),
        )


@dataclass(slots=True)
class LogEntry:
    seq: int
    timestamp: str
    level: str
    category: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> LogEntry:
        return cls(
            seq=int(payload["seq"]),
            timestamp=str(payload["timestamp"]),
            level=str(payload.get("level", "info")),
            category=str(payload.get("category", "system")),
            message=str(payload.get("message", "")),
            context=dict(payload.get("context", {})),
        )


@dataclass(slots=True)
class Execution:
    id: str
    loop_id: str
    status: str
    current_phase_id: str
    autonomy_level: str
    context: dict[str, Any]
    started_at: str
    last_updated_at: str
    definition: LoopDefinition
    phases: list[PhaseState] = field(default_factory=list)
    skills: list[SkillInstance] = field(default_factory=list)
    gates: list[GateState] = field(default_factory=list)
    log: list[LogEntry] = field(default_factory=list)
    completed_at: str | None = None
    failure_reason: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES

    def phase_state(self, phase_id: str) -> PhaseState | None:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None

    def skill(self, skill_id: str) -> SkillInstance | None:
        for skill in self.skills:
            if skill.id == skill_id:
                return skill
        return None

    def gate(self, gate_id: str) -> GateState | None:
        for gate in self.gates:
            if gate.id == gate_id:
                return gate
        return None

    def gate_for_phase(self, phase_id: str) -> GateState | None:
        for gate in self.gates:
            if gate.phase_id == phase_id:
                return gate
        return None

    def phase_skills(self, phase_id: str) -> list[SkillInstance]:
        return [skill for skill in self.skills if skill.phase_id == phase_id]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def copy(self) -> Execution:
        return copy.deepcopy(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Execution:
        return cls(
            id=str(payload["id"]),
            loop_id=str(payload["loop_id"]),
            status=str(payload["status"]),
            current_phase_id=str(payload["current_phase_id"]),
            autonomy_level=str(payload.get("autonomy_level", "supervised")),
            context=dict(payload.get("context", {})),
            started_at=str(payload["started_at"]),
            last_updated_at=str(payload["last_updated_at"]),
            definition=LoopDefinition.from_dict(payload["definition"]),
            phases=[PhaseState.from_dict(item) for item in payload.get("phases", [])],
            skills=[SkillInstance.from_dict(item) for item in payload.get("skills", [])],
            gates=[GateState.from_dict(item) for item in payload.get("gates", [])],
            log=[LogEntry.from_dict(item) for item in payload.get("log", [])],
            completed_at=payload.get("completed_at"),
            failure_reason=payload.get("failure_reason"),
        )

from __future__ import annotations

from typing import Any


class OrchestratorError(RuntimeError):
    """Base class for every error raised by the orchestrator core."""


class ValidationError(OrchestratorError):
    """Raised when a command carries malformed input. State is never mutated."""


class MalformedLoop(ValidationError):
    """Raised when a loop definition is not structurally valid."""


class UnknownExecution(ValidationError):
    """Raised when no execution exists for the given id."""


class UnknownSkill(ValidationError):
    """Raised when a skill id is not part of the execution's loop."""


class UnknownGate(ValidationError):
    """Raised when a gate id is not part of the execution's loop."""


class StateConflict(OrchestratorError):
    """Raised when a command is not valid for the current status."""


class SkillAlreadyTerminal(StateConflict):
    """Raised when a terminal skill is completed or skipped again outside rework."""


class PhaseMismatch(StateConflict):
    """Raised when a skill does not belong to the current phase."""


class StateStoreError(OrchestratorError):
    """Raised when state persistence operations fail."""


class RemediationFailed(OrchestratorError):
    """Raised when a remediation worker could not produce the missing deliverables."""

    def __init__(self, message: str, *, worker: str | None = None, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.worker = worker
        self.exit_code = exit_code


class RemediationTimeout(RemediationFailed):
    """Raised when a remediation worker exceeds its bounded wait."""


class EscalationRequired(OrchestratorError):
    """Raised when autonomous gate passing exhausted and a human must decide."""

    def __init__(self, message: str, *, event: Any = None) -> None:
        super().__init__(message)
        self.event = event

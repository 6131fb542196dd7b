from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

from orchestrator.guarantees.evaluator import GuaranteeResult

RemediationStatus = Literal["done", "failed", "timeout"]


@dataclass(frozen=True, slots=True)
class RemediationRequest:
    """What the worker must fix: the failing required guarantees of one gate."""

    execution_id: str
    gate_id: str
    failed: tuple[GuaranteeResult, ...]
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def missing(self) -> list[str]:
        items: list[str] = []
        for result in self.failed:
            for entry in result.missing:
                if entry not in items:
                    items.append(entry)
        return items

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "gate_id": self.gate_id,
            "missing": self.missing,
            "failed_guarantees": [result.to_dict() for result in self.failed],
            "context": self.context,
        }


@dataclass(frozen=True, slots=True)
class RemediationOutcome:
    status: RemediationStatus
    detail: str = ""
    worker: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "detail": self.detail, "worker": self.worker}


class RemediationWorker(ABC):
    name = "remediation"

    @abstractmethod
    async def remediate(self, request: RemediationRequest) -> RemediationOutcome:
        """Attempt to produce the missing deliverables.

        Raises ``RemediationFailed`` when the worker cannot run at all.
        """

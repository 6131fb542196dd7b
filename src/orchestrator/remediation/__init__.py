from orchestrator.remediation.base import (
    RemediationOutcome,
    RemediationRequest,
    RemediationWorker,
)
from orchestrator.remediation.command import CommandRemediationWorker

__all__ = [
    "CommandRemediationWorker",
    "RemediationOutcome",
    "RemediationRequest",
    "RemediationWorker",
]

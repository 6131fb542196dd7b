from orchestrator.guarantees.evaluator import (
    UNSUPPORTED_GUARANTEE_TYPE,
    GateEvaluation,
    GuaranteeEvaluator,
    GuaranteeResult,
)
from orchestrator.guarantees.workspace import (
    FilesystemWorkspace,
    InMemoryWorkspace,
    Workspace,
    WorkspaceError,
)

__all__ = [
    "UNSUPPORTED_GUARANTEE_TYPE",
    "FilesystemWorkspace",
    "GateEvaluation",
    "GuaranteeEvaluator",
    "GuaranteeResult",
    "InMemoryWorkspace",
    "Workspace",
    "WorkspaceError",
]

from orchestrator.state.archive import ArchivedRun, ExecutionSnapshot, RunArchive
from orchestrator.state.store import StateStore

__all__ = ["ArchivedRun", "ExecutionSnapshot", "RunArchive", "StateStore"]

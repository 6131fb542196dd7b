from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from orchestrator.errors import StateStoreError

logger = logging.getLogger(__name__)

ARCHIVE_VERSION = "1"
_SAFE_SEGMENT = re.compile(r"[^A-Za-z0-9_.-]+")


@dataclass(frozen=True, slots=True)
class ExecutionSnapshot:
    """Immutable export of a terminal execution handed to archival."""

    execution_id: str
    loop_id: str
    status: str
    exported_at: str
    state: dict[str, Any]


@dataclass(slots=True)
class ArchivedRun:
    path: Path
    meta: dict[str, Any]
    summary: dict[str, Any]
    state: dict[str, Any] = field(default_factory=dict)


def summarize_state(state: dict[str, Any]) -> dict[str, Any]:
    phases = [item for item in state.get("phases", []) if isinstance(item, dict)]
    gates = [item for item in state.get("gates", []) if isinstance(item, dict)]
    skills = [item for item in state.get("skills", []) if isinstance(item, dict)]
    started_at = str(state.get("started_at") or "")
    completed_at = str(state.get("completed_at") or state.get("last_updated_at") or "")
    duration_minutes = 0.0
    try:
        started = datetime.fromisoformat(started_at)
        ended = datetime.fromisoformat(completed_at)
        duration_minutes = round((ended - started).total_seconds() / 60.0, 2)
    except ValueError:
        pass
    return {
        "loop": state.get("loop_id"),
        "context": state.get("context", {}),
        "outcome": "success" if state.get("status") == "completed" else "failed",
        "started_at": started_at,
        "completed_at": completed_at,
        "duration_minutes": duration_minutes,
        "failure_reason": state.get("failure_reason"),
        "phases_completed": [p["id"] for p in phases if p.get("status") == "completed"],
        "gates_passed": [g["id"] for g in gates if g.get("status") == "approved"],
        "gates_failed": [g["id"] for g in gates if g.get("status") != "approved"],
        "skills_skipped": [s["id"] for s in skills if s.get("status") == "skipped"],
        "skills_failed": [s["id"] for s in skills if s.get("status") == "failed"],
    }


class RunArchive:
    """Writes terminal execution snapshots under ``<root>/<loop>/`` and queries them."""

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    @staticmethod
    def _segment(value: str) -> str:
        cleaned = _SAFE_SEGMENT.sub("-", value).strip("-.")
        return cleaned or "unknown"

    def archive(self, snapshot: ExecutionSnapshot) -> Path:
        loop_dir = self.root / self._segment(snapshot.loop_id)
        loop_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
        path = loop_dir / f"{stamp}-{self._segment(snapshot.execution_id)}.json"
        payload = {
            "meta": {
                "archived_at": datetime.now(UTC).replace(microsecond=0).isoformat(),
                "archive_version": ARCHIVE_VERSION,
                "exported_at": snapshot.exported_at,
                "execution_id": snapshot.execution_id,
                "file_path": str(path),
            },
            "summary": summarize_state(snapshot.state),
            "state": snapshot.state,
        }
        path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        logger.info("Archived execution %s to %s", snapshot.execution_id, path)
        return path

    def load(self, path: Path) -> ArchivedRun:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StateStoreError(f"Cannot read archived run {path}: {exc}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("state"), dict):
            raise StateStoreError(f"Archived run {path} has no state payload.")
        return ArchivedRun(
            path=path,
            meta=dict(payload.get("meta", {})),
            summary=dict(payload.get("summary", {})),
            state=payload["state"],
        )

    def query(
        self,
        *,
        loop: str | None = None,
        outcome: str | None = None,
        limit: int | None = None,
        include_state: bool = False,
    ) -> list[ArchivedRun]:
        if not self.root.exists():
            return []
        pattern = f"{self._segment(loop)}/*.json" if loop else "*/*.json"
        runs: list[ArchivedRun] = []
        for path in sorted(self.root.glob(pattern), reverse=True):
            try:
                run = self.load(path)
            except StateStoreError:
                logger.warning("Skipping unreadable archived run %s", path)
                continue
            if outcome and run.summary.get("outcome") != outcome:
                continue
            if not include_state:
                run.state = {}
            runs.append(run)
            if limit is not None and len(runs) >= limit:
                break
        return runs

import json
from pathlib import Path

import pytest

from orchestrator.errors import StateStoreError
from orchestrator.state import ExecutionSnapshot, RunArchive, StateStore
from orchestrator.state.archive import summarize_state


def test_namespace_roundtrip(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    payload = {"events": [{"event": "execution_started"}]}
    store.set_json("metrics", payload)

    assert store.get_json("metrics") == payload


def test_unknown_namespace_is_rejected(tmp_path: Path) -> None:
    store = StateStore(tmp_path)

    with pytest.raises(StateStoreError):
        store.set_json("context", {})


def test_state_schema_migrates_legacy_payload(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    local_path = tmp_path / ".orchestrator" / "state" / "metrics.json"
    local_path.write_text(json.dumps({"legacy": True}), encoding="utf-8")

    assert store.get_json("metrics") == {"legacy": True}

    store.set_json("metrics", {"legacy": False})
    on_disk = json.loads(local_path.read_text(encoding="utf-8"))
    assert on_disk["schema_version"] == StateStore.SCHEMA_VERSION
    assert on_disk["data"] == {"legacy": False}


def test_update_json_increments_revision(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.set_json("metrics", {"count": 1})
    first_revision = store.get_envelope("metrics")["revision"]

    store.update_json(
        "metrics", lambda payload: {"count": payload["count"] + 1}, default={"count": 0}
    )
    second_revision = store.get_envelope("metrics")["revision"]

    assert store.get_json("metrics")["count"] == 2
    assert second_revision > first_revision


def test_put_execution_rejects_stale_revision(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    first = store.put_execution("exec-1", {"id": "exec-1"}, expected_revision=0)
    store.put_execution("exec-1", {"id": "exec-1", "n": 2}, expected_revision=first)

    with pytest.raises(StateStoreError, match="Concurrent state update"):
        store.put_execution("exec-1", {"id": "exec-1", "n": 3}, expected_revision=first)
    assert store.get_execution("exec-1") == {"id": "exec-1", "n": 2}


def test_execution_ids_are_validated(tmp_path: Path) -> None:
    store = StateStore(tmp_path)

    with pytest.raises(StateStoreError):
        store.put_execution("../escape", {})
    assert store.list_execution_ids() == []


def test_record_event_caps_history_and_counts(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    for _ in range(5):
        store.record_event({"event": "supervisor_retry"}, limit=3)

    metrics = store.get_metrics()
    assert len(metrics["events"]) == 3
    assert metrics["counters"]["supervisor_retry"] == 5
    assert all("at" in event for event in metrics["events"])


def test_escalations_are_appended(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.add_escalation({"execution_id": "exec-1", "gate_id": "g1"})
    store.add_escalation({"execution_id": "exec-2", "gate_id": "g2"})

    assert [item["gate_id"] for item in store.get_escalations()] == ["g1", "g2"]


def _terminal_state(status: str = "completed") -> dict:
    return {
        "id": "exec-1",
        "loop_id": "release",
        "status": status,
        "context": {"ticket": "OPS-1"},
        "started_at": "2026-01-01T10:00:00+00:00",
        "completed_at": "2026-01-01T10:30:00+00:00",
        "failure_reason": None if status == "completed" else "aborted",
        "phases": [{"id": "build", "status": "completed"}, {"id": "ship", "status": "pending"}],
        "gates": [{"id": "build-gate", "status": "approved"}, {"id": "ship-gate", "status": "pending"}],
        "skills": [
            {"id": "compile", "status": "completed"},
            {"id": "lint", "status": "skipped"},
        ],
    }


def test_summarize_state_reports_outcome() -> None:
    summary = summarize_state(_terminal_state())

    assert summary["outcome"] == "success"
    assert summary["duration_minutes"] == 30.0
    assert summary["phases_completed"] == ["build"]
    assert summary["gates_passed"] == ["build-gate"]
    assert summary["gates_failed"] == ["ship-gate"]
    assert summary["skills_skipped"] == ["lint"]


def test_run_archive_writes_and_queries(tmp_path: Path) -> None:
    archive = RunArchive(tmp_path / "runs")
    ok = ExecutionSnapshot("exec-1", "release", "completed", "2026-01-01T10:30:00+00:00", _terminal_state())
    failed_state = dict(_terminal_state("failed"), id="exec-2")
    failed = ExecutionSnapshot("exec-2", "release", "failed", "2026-01-01T11:00:00+00:00", failed_state)

    path = archive.archive(ok)
    archive.archive(failed)

    assert path.parent == (tmp_path / "runs" / "release").resolve()
    loaded = archive.load(path)
    assert loaded.state == ok.state
    assert loaded.meta["execution_id"] == "exec-1"

    assert len(archive.query(loop="release")) == 2
    failures = archive.query(outcome="failed")
    assert [run.meta["execution_id"] for run in failures] == ["exec-2"]
    assert failures[0].state == {}
    assert archive.query(loop="unknown") == []
    assert len(archive.query(limit=1)) == 1


def test_run_archive_load_reports_bad_file(tmp_path: Path) -> None:
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")

    with pytest.raises(StateStoreError):
        RunArchive(tmp_path).load(bad)

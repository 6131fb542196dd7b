from datetime import datetime
from pathlib import Path

import pytest

from orchestrator.engine import ExecutionEngine
from orchestrator.errors import (
    MalformedLoop,
    PhaseMismatch,
    SkillAlreadyTerminal,
    StateConflict,
    UnknownExecution,
    UnknownGate,
    UnknownSkill,
    ValidationError,
)
from orchestrator.guarantees import GuaranteeEvaluator, InMemoryWorkspace
from orchestrator.models import (
    Execution,
    GateDefinition,
    Guarantee,
    LoopDefinition,
    PhaseDefinition,
    SkillOutcome,
    SkillRef,
)
from orchestrator.state import ExecutionSnapshot, RunArchive, StateStore

OK = SkillOutcome(success=True, score=0.9)


def _loop(policy: str = "Manual", auto_target: str | None = None) -> LoopDefinition:
    return LoopDefinition(
        id="feature",
        phases=[
            PhaseDefinition(
                id="design",
                skills=[SkillRef("write-spec"), SkillRef("sketch", required=False)],
                gate=GateDefinition(
                    id="design-gate",
                    approval_policy=policy,
                    auto_target=auto_target,
                    guarantees=[
                        Guarantee(
                            id="spec-doc",
                            name="spec document",
                            kind="deliverable",
                            validation={"files": [{"pattern": "docs/spec.md"}]},
                        )
                    ],
                ),
            ),
            PhaseDefinition(id="build", skills=[SkillRef("implement")]),
        ],
    )


def _engine(tmp_path: Path, **kwargs) -> ExecutionEngine:
    return ExecutionEngine(StateStore(tmp_path), **kwargs)


def _finish_design(engine: ExecutionEngine, execution_id: str) -> None:
    engine.complete_skill(execution_id, "write-spec", OK)
    engine.complete_phase(execution_id)


def test_start_creates_active_execution_at_first_phase(tmp_path: Path) -> None:
    engine = _engine(tmp_path)

    execution = engine.start(_loop(), {"ticket": "ENG-1"}, "supervised", execution_id="exec-1")

    assert execution.status == "active"
    assert execution.current_phase_id == "design"
    assert [phase.status for phase in execution.phases] == ["in-progress", "pending"]
    assert [skill.status for skill in execution.skills] == ["pending"] * 3
    assert execution.gates[0].status == "pending"
    assert execution.context == {"ticket": "ENG-1"}
    assert engine.get_state("exec-1") == execution


def test_start_rejects_malformed_loop_and_writes_nothing(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    loop = _loop()
    loop.phases[1].id = "design"

    with pytest.raises(MalformedLoop):
        engine.start(loop, execution_id="exec-1")
    with pytest.raises(ValidationError):
        engine.start(_loop(), autonomy_level="reckless")
    assert engine.store.list_execution_ids() == []


def test_start_refuses_duplicate_execution_id(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.start(_loop(), execution_id="exec-1")

    with pytest.raises(StateConflict):
        engine.start(_loop(), execution_id="exec-1")


@pytest.mark.parametrize(
    ("policy", "autonomy", "auto_target", "context", "expected"),
    [
        ("Manual", "full", None, {}, "manual"),
        ("Automatic", "full", None, {}, "automatic"),
        ("Automatic", "supervised", None, {}, "manual"),
        ("Automatic", "manual", None, {}, "manual"),
        ("AutoIfConfigured", "full", "bot", {}, "automatic"),
        ("AutoIfConfigured", "full", None, {}, "manual"),
        ("AutoIfConfigured", "full", None, {"auto_gates": ["design-gate"]}, "automatic"),
        ("AutoIfConfigured", "supervised", "bot", {}, "manual"),
    ],
)
def test_gate_policy_is_resolved_once_at_start(
    tmp_path: Path, policy: str, autonomy: str, auto_target, context: dict, expected: str
) -> None:
    engine = _engine(tmp_path)

    execution = engine.start(_loop(policy, auto_target), context, autonomy)

    assert execution.gates[0].resolved_policy == expected


def test_complete_skill_errors(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.start(_loop(), execution_id="exec-1")

    with pytest.raises(UnknownExecution):
        engine.complete_skill("exec-404", "write-spec", OK)
    with pytest.raises(UnknownSkill):
        engine.complete_skill("exec-1", "deploy", OK)
    with pytest.raises(PhaseMismatch):
        engine.complete_skill("exec-1", "implement", OK)
    with pytest.raises(ValidationError):
        engine.complete_skill("exec-1", "write-spec", SkillOutcome(success=True, score=1.5))

    engine.complete_skill("exec-1", "write-spec", OK)
    with pytest.raises(SkillAlreadyTerminal):
        engine.complete_skill("exec-1", "write-spec", OK)


def test_failed_outcome_marks_skill_failed(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.start(_loop(), execution_id="exec-1")
    engine.start_skill("exec-1", "write-spec")

    execution = engine.complete_skill("exec-1", "write-spec", SkillOutcome(success=False, score=0.2))

    skill = execution.skill("write-spec")
    assert skill.status == "failed"
    assert skill.outcome == SkillOutcome(success=False, score=0.2)
    assert skill.started_at is not None


def test_skip_requires_reason(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.start(_loop(), execution_id="exec-1")

    with pytest.raises(ValidationError):
        engine.skip_skill("exec-1", "write-spec", "   ")
    execution = engine.skip_skill("exec-1", "write-spec", "blocked by external dependency")

    skill = execution.skill("write-spec")
    assert skill.status == "skipped"
    assert skill.skip_reason == "blocked by external dependency"


def test_complete_phase_requires_required_skills_settled(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.start(_loop(), execution_id="exec-1")

    with pytest.raises(StateConflict, match="write-spec"):
        engine.complete_phase("exec-1")

    engine.complete_skill("exec-1", "write-spec", OK)
    execution = engine.complete_phase("exec-1")

    assert execution.phase_state("design").status == "completed"
    assert execution.skill("sketch").status == "pending"


def test_failed_skill_blocks_phase_when_not_allowed(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    loop = _loop()
    loop.phases[0].allow_failed_skills = False
    engine.start(loop, execution_id="exec-1")
    engine.complete_skill("exec-1", "write-spec", SkillOutcome(success=False, score=0.0))

    with pytest.raises(StateConflict, match="failed"):
        engine.complete_phase("exec-1")


def test_advance_requires_approved_gate_and_leaves_state_unchanged(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.start(_loop(), execution_id="exec-1")
    _finish_design(engine, "exec-1")
    before = engine.get_state("exec-1")
    revision_before = engine.store.get_execution_envelope("exec-1")["revision"]

    with pytest.raises(StateConflict, match="design-gate"):
        engine.advance_phase("exec-1")

    assert engine.get_state("exec-1") == before
    assert engine.store.get_execution_envelope("exec-1")["revision"] == revision_before


def test_advance_requires_completed_phase(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.start(_loop(), execution_id="exec-1")

    with pytest.raises(StateConflict, match="not completed"):
        engine.advance_phase("exec-1")


def test_full_run_completes_execution(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.start(_loop(), execution_id="exec-1")
    _finish_design(engine, "exec-1")
    engine.approve_gate("exec-1", "design-gate", "lead@example.com")

    execution = engine.advance_phase("exec-1")
    assert execution.current_phase_id == "build"
    assert execution.phase_state("build").status == "in-progress"

    engine.complete_skill("exec-1", "implement", OK)
    engine.complete_phase("exec-1")
    execution = engine.advance_phase("exec-1")

    assert execution.status == "completed"
    assert execution.completed_at is not None
    with pytest.raises(StateConflict):
        engine.pause("exec-1")
    assert engine.get_state("exec-1").status == "completed"


def test_log_is_append_only_and_ordered(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.start(_loop(), execution_id="exec-1")
    _finish_design(engine, "exec-1")
    engine.pause("exec-1")
    engine.resume("exec-1")

    log = engine.get_state("exec-1").log

    assert [entry.seq for entry in log] == list(range(1, len(log) + 1))
    stamps = [datetime.fromisoformat(entry.timestamp) for entry in log]
    assert stamps == sorted(stamps)
    assert {entry.category for entry in log} >= {"system", "phase", "skill"}


def test_human_approval_records_override_over_failing_guarantees(tmp_path: Path) -> None:
    workspace = InMemoryWorkspace()
    engine = _engine(tmp_path, evaluator=GuaranteeEvaluator(), workspace=workspace)
    engine.start(_loop(), execution_id="exec-1")
    _finish_design(engine, "exec-1")

    assert engine.gate_status("exec-1", "design-gate").passed is False
    execution = engine.approve_gate("exec-1", "design-gate", "lead@example.com")

    gate = execution.gate("design-gate")
    assert gate.status == "approved"
    assert gate.decision_trace["kind"] == "human"
    assert gate.decision_trace["override"] is True
    assert gate.decision_trace["guarantees"]["blocking"] == ["spec-doc"]
    with pytest.raises(StateConflict, match="already approved"):
        engine.approve_gate("exec-1", "design-gate", "lead@example.com")


def test_gate_commands_validate_input(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.start(_loop(), execution_id="exec-1")

    with pytest.raises(UnknownGate):
        engine.approve_gate("exec-1", "nope", "lead")
    with pytest.raises(ValidationError):
        engine.approve_gate("exec-1", "design-gate", "")
    with pytest.raises(ValidationError):
        engine.reject_gate("exec-1", "design-gate", "")
    with pytest.raises(ValidationError):
        engine.gate_status("exec-1", "design-gate")


def test_skipped_required_skill_leaves_gate_unapproved_until_human_override(tmp_path: Path) -> None:
    workspace = InMemoryWorkspace()
    evaluator = GuaranteeEvaluator()
    engine = _engine(tmp_path, evaluator=evaluator, workspace=workspace)
    engine.start(_loop("Automatic"), autonomy_level="full", execution_id="exec-1")

    engine.skip_skill("exec-1", "write-spec", "blocked by external dependency")
    engine.complete_phase("exec-1")

    evaluation = engine.gate_status("exec-1", "design-gate")
    assert evaluation.passed is False
    with pytest.raises(StateConflict):
        engine.auto_approve_gate("exec-1", "design-gate", evaluation)
    with pytest.raises(StateConflict):
        engine.advance_phase("exec-1")

    engine.approve_gate("exec-1", "design-gate", "lead@example.com")
    assert engine.advance_phase("exec-1").current_phase_id == "build"


def test_reject_keeps_skills_and_opens_rework_revision(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.start(_loop(), execution_id="exec-1")
    _finish_design(engine, "exec-1")

    execution = engine.reject_gate("exec-1", "design-gate", "missing threat model")

    phase = execution.phase_state("design")
    assert phase.status == "in-progress"
    assert phase.revision == 1
    assert execution.current_phase_id == "design"
    assert execution.skill("write-spec").status == "completed"
    assert execution.gate("design-gate").status == "rejected"
    assert execution.gate("design-gate").decision_trace["reason"] == "missing threat model"

    execution = engine.complete_skill("exec-1", "write-spec", SkillOutcome(success=True, score=1.0))
    skill = execution.skill("write-spec")
    assert skill.revision == 1
    assert skill.history[0]["outcome"] == {"success": True, "score": 0.9}
    with pytest.raises(SkillAlreadyTerminal):
        engine.complete_skill("exec-1", "write-spec", OK)

    execution = engine.complete_phase("exec-1")
    gate = execution.gate("design-gate")
    assert gate.status == "pending"
    assert gate.history[-1]["decision"] == "rejected"


def test_rejected_gate_reopens_even_without_rework(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.start(_loop(), execution_id="exec-1")
    _finish_design(engine, "exec-1")
    engine.reject_gate("exec-1", "design-gate", "try again")

    execution = engine.complete_phase("exec-1")

    assert execution.gate("design-gate").status == "pending"
    engine.reject_gate("exec-1", "design-gate", "again")
    with pytest.raises(StateConflict, match="already rejected"):
        engine.reject_gate("exec-1", "design-gate", "and again")


def test_pause_blocks_skill_commands_but_not_gate_decisions(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    signals: list[str] = []
    engine.add_pause_hook(signals.append)
    engine.start(_loop(), execution_id="exec-1")
    _finish_design(engine, "exec-1")

    execution = engine.pause("exec-1")
    assert execution.status == "paused"
    assert signals == ["exec-1"]
    assert execution.log[-1].context["gates"] == {"design-gate": "pending"}
    with pytest.raises(StateConflict):
        engine.pause("exec-1")
    with pytest.raises(StateConflict):
        engine.advance_phase("exec-1")

    engine.approve_gate("exec-1", "design-gate", "lead@example.com")
    assert engine.resume("exec-1").status == "active"
    with pytest.raises(StateConflict):
        engine.resume("exec-1")


def test_auto_approval_refuses_manual_gate_and_human_rejection(tmp_path: Path) -> None:
    workspace = InMemoryWorkspace({"docs/spec.md": "# Spec\n"})
    evaluator = GuaranteeEvaluator()
    engine = _engine(tmp_path, evaluator=evaluator, workspace=workspace)
    engine.start(_loop("Manual"), execution_id="manual")
    _finish_design(engine, "manual")
    evaluation = engine.gate_status("manual", "design-gate")
    assert evaluation.passed is True
    with pytest.raises(StateConflict, match="not configured"):
        engine.auto_approve_gate("manual", "design-gate", evaluation)

    engine.start(_loop("Automatic"), autonomy_level="full", execution_id="auto")
    _finish_design(engine, "auto")
    engine.reject_gate("auto", "design-gate", "wrong scope")
    with pytest.raises(StateConflict, match="human rejection"):
        engine.auto_approve_gate("auto", "design-gate", evaluation)

    reopened = engine.complete_phase("auto").gate("design-gate")
    assert reopened.status == "pending"
    assert reopened.human_rejected is True
    with pytest.raises(StateConflict, match="human rejection"):
        engine.auto_approve_gate("auto", "design-gate", engine.gate_status("auto", "design-gate"))
    assert engine.approve_gate("auto", "design-gate", "lead").gate("design-gate").status == "approved"


def test_auto_approval_and_escalation_traces(tmp_path: Path) -> None:
    workspace = InMemoryWorkspace({"docs/spec.md": "# Spec\n"})
    evaluator = GuaranteeEvaluator()
    engine = _engine(tmp_path, evaluator=evaluator, workspace=workspace)
    engine.start(_loop("Automatic"), autonomy_level="full", execution_id="exec-1")
    _finish_design(engine, "exec-1")

    failing = evaluator.aggregate_for_gate("design-gate", _loop().phases[0].gate.guarantees, InMemoryWorkspace())
    execution = engine.escalate_gate(
        "exec-1", "design-gate", "still failing", failed=failing.blocking, attempts=[{"number": 1}]
    )
    gate = execution.gate("design-gate")
    assert gate.status == "pending-human"
    assert gate.decision_trace["failed_guarantees"][0]["guarantee_id"] == "spec-doc"

    execution = engine.auto_approve_gate(
        "exec-1", "design-gate", engine.gate_status("exec-1", "design-gate"), attempts=[{"number": 1}]
    )
    gate = execution.gate("design-gate")
    assert gate.status == "approved"
    assert gate.decision_trace["kind"] == "auto"
    assert gate.history[-1]["kind"] == "escalation"
    assert execution.log[-1].context["event"] == "gate_auto_approved"


def test_abort_fails_execution_and_signals(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    signals: list[str] = []
    engine.add_pause_hook(signals.append)
    engine.start(_loop(), execution_id="exec-1")

    execution = engine.abort("exec-1", "agent crashed")

    assert execution.status == "failed"
    assert execution.failure_reason == "agent crashed"
    assert signals == ["exec-1"]
    with pytest.raises(StateConflict):
        engine.abort("exec-1", "again")


def test_list_executions_filters_by_status(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.start(_loop(), execution_id="exec-a")
    engine.start(_loop(), execution_id="exec-b")
    engine.pause("exec-b")

    assert [item["id"] for item in engine.list_executions()] == ["exec-a", "exec-b"]
    assert [item["id"] for item in engine.list_executions(status="paused")] == ["exec-b"]


def test_concurrent_modification_is_a_conflict(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.start(_loop(), execution_id="exec-1")
    envelope = engine.store.get_execution_envelope("exec-1")
    engine.store.put_execution("exec-1", envelope["data"], expected_revision=envelope["revision"])
    stale = Execution.from_dict(envelope["data"])

    with pytest.raises(StateConflict, match="concurrently"):
        engine._commit(stale, envelope["revision"])


def test_terminal_snapshot_roundtrips_through_archive(tmp_path: Path) -> None:
    archive = RunArchive(tmp_path / "runs")
    archived: list[ExecutionSnapshot] = []

    def _archive(snapshot: ExecutionSnapshot) -> None:
        archived.append(snapshot)
        archive.archive(snapshot)

    engine = _engine(tmp_path, on_terminal=_archive)
    engine.start(_loop(), execution_id="exec-1")
    with pytest.raises(StateConflict):
        engine.export_snapshot("exec-1")
    _finish_design(engine, "exec-1")
    engine.approve_gate("exec-1", "design-gate", "lead@example.com")
    engine.advance_phase("exec-1")
    engine.skip_skill("exec-1", "implement", "out of scope")
    engine.complete_phase("exec-1")
    final = engine.advance_phase("exec-1")

    assert len(archived) == 1
    runs = archive.query(loop="feature", include_state=True)
    assert len(runs) == 1
    assert runs[0].summary["outcome"] == "success"
    assert runs[0].summary["skills_skipped"] == ["implement"]
    restored = Execution.from_dict(runs[0].state)
    assert restored == final
    assert restored.log == final.log
    assert Execution.from_dict(engine.export_snapshot("exec-1").state) == final

import json
from pathlib import Path

import pytest

from orchestrator.guarantees import (
    UNSUPPORTED_GUARANTEE_TYPE,
    FilesystemWorkspace,
    GuaranteeEvaluator,
    InMemoryWorkspace,
    WorkspaceError,
)
from orchestrator.guarantees.evaluator import INVALID_VALIDATION_SPEC, WORKSPACE_ERROR
from orchestrator.models import Guarantee

DESIGN_DOC = """# Design

## Overview
Token refresh flow.

## Risks
Clock skew.
"""


def _deliverable(pattern: str, *, required: bool = True, gid: str = "files") -> Guarantee:
    return Guarantee(
        id=gid,
        name=f"{pattern} exists",
        kind="deliverable",
        required=required,
        validation={"files": [{"pattern": pattern}]},
    )


def _workspace() -> InMemoryWorkspace:
    return InMemoryWorkspace(
        {
            "docs/design.md": DESIGN_DOC,
            "src/app.py": "print('hi')\n",
            "reports/coverage.json": json.dumps({"totals": {"percent": 87.5}}),
            "reports/lint.toml": "[summary]\nerrors = 0\n",
            ".proof/review.json": json.dumps({"steps": ["read", "run", "sign"]}),
        }
    )


def test_deliverable_counts_matches() -> None:
    evaluator = GuaranteeEvaluator()
    workspace = _workspace()

    assert evaluator.evaluate(_deliverable("docs/*.md"), workspace).passed is True
    missing = evaluator.evaluate(_deliverable("dist/*.whl"), workspace)
    assert missing.passed is False
    assert missing.missing == ("dist/*.whl",)

    too_many = Guarantee(
        id="one-module",
        name="single module",
        kind="deliverable",
        validation={"files": [{"pattern": "**/*.py", "max_count": 0}]},
    )
    assert evaluator.evaluate(too_many, workspace).passed is False


def test_deliverable_accepts_single_pattern_form() -> None:
    guarantee = Guarantee(
        id="app", name="app", kind="deliverable", validation={"pattern": "src/*.py", "min_count": 1}
    )

    assert GuaranteeEvaluator().evaluate(guarantee, _workspace()).passed is True


def test_content_checks_sections_patterns_and_lines() -> None:
    evaluator = GuaranteeEvaluator()
    ok = Guarantee(
        id="design-doc",
        name="design doc",
        kind="content",
        validation={
            "checks": [
                {
                    "file": "docs/design.md",
                    "min_lines": 3,
                    "sections": ["## Overview", "Risks"],
                    "patterns": ["token refresh"],
                }
            ]
        },
    )
    bad = Guarantee(
        id="design-doc-strict",
        name="design doc",
        kind="content",
        validation={"checks": [{"file": "docs/design.md", "sections": ["Rollout"], "max_lines": 2}]},
    )

    assert evaluator.evaluate(ok, _workspace()).passed is True
    result = evaluator.evaluate(bad, _workspace())
    assert result.passed is False
    assert any("Rollout" in item for item in result.evidence)
    assert any("at most 2" in item for item in result.evidence)


def test_content_missing_file_lists_it() -> None:
    guarantee = Guarantee(
        id="changelog",
        name="changelog",
        kind="content",
        validation={"checks": [{"file": "CHANGELOG.md", "min_bytes": 10}]},
    )

    result = GuaranteeEvaluator().evaluate(guarantee, _workspace())

    assert result.passed is False
    assert result.missing == ("CHANGELOG.md",)


def test_content_keys_read_structured_documents() -> None:
    guarantee = Guarantee(
        id="lint-summary",
        name="lint summary",
        kind="content",
        validation={"checks": [{"file": "reports/lint.toml", "keys": ["summary.errors", "summary.warnings"]}]},
    )

    result = GuaranteeEvaluator().evaluate(guarantee, _workspace())

    assert result.passed is False
    assert any("summary.warnings" in item for item in result.evidence)


@pytest.mark.parametrize(
    ("operator", "value", "expected"),
    [("gte", 80, True), ("gte", 90, False), ("lt", 90, True), ("eq", 87.5, True), ("gt", 87.5, False)],
)
def test_quality_threshold_operators(operator: str, value: float, expected: bool) -> None:
    guarantee = Guarantee(
        id="coverage",
        name="coverage",
        kind="quality",
        validation={
            "thresholds": [
                {"path": "reports/coverage.json", "metric": "totals.percent", "operator": operator, "value": value}
            ]
        },
    )

    assert GuaranteeEvaluator().evaluate(guarantee, _workspace()).passed is expected


def test_quality_non_numeric_metric_fails() -> None:
    guarantee = Guarantee(
        id="coverage",
        name="coverage",
        kind="quality",
        validation={"thresholds": [{"path": "reports/coverage.json", "metric": "totals", "value": 1}]},
    )

    assert GuaranteeEvaluator().evaluate(guarantee, _workspace()).passed is False


def test_step_proof_counts_steps() -> None:
    evaluator = GuaranteeEvaluator()
    enough = Guarantee(
        id="proof", name="proof", kind="step_proof", validation={"marker": ".proof/*.json", "min_steps": 3}
    )
    too_few = Guarantee(
        id="proof", name="proof", kind="step_proof", validation={"marker": ".proof/*.json", "min_steps": 4}
    )
    absent = Guarantee(id="proof", name="proof", kind="step_proof", validation={"marker": ".proof/deploy"})

    assert evaluator.evaluate(enough, _workspace()).passed is True
    assert evaluator.evaluate(too_few, _workspace()).passed is False
    assert evaluator.evaluate(absent, _workspace()).missing == (".proof/deploy",)


def test_unknown_kind_fails_closed() -> None:
    guarantee = Guarantee(id="vibes", name="vibes", kind="sentiment", validation={})

    result = GuaranteeEvaluator().evaluate(guarantee, _workspace())

    assert result.passed is False
    assert result.reason == UNSUPPORTED_GUARANTEE_TYPE


def test_malformed_validation_fails_without_raising() -> None:
    guarantee = Guarantee(id="bad", name="bad", kind="quality", validation={"thresholds": [{"path": "x"}]})

    result = GuaranteeEvaluator().evaluate(guarantee, _workspace())

    assert result.passed is False
    assert result.reason == INVALID_VALIDATION_SPEC


def test_unparseable_artifact_is_folded_into_result() -> None:
    workspace = _workspace()
    workspace.write("reports/coverage.json", "{broken")
    guarantee = Guarantee(
        id="coverage",
        name="coverage",
        kind="quality",
        validation={"thresholds": [{"path": "reports/coverage.json", "metric": "totals.percent", "value": 1}]},
    )

    result = GuaranteeEvaluator().evaluate(guarantee, workspace)

    assert result.passed is False
    assert result.reason == WORKSPACE_ERROR


def test_any_failing_required_guarantee_blocks_the_gate() -> None:
    evaluator = GuaranteeEvaluator()
    passing = [_deliverable("docs/*.md", gid=f"ok-{index}") for index in range(5)]
    failing = _deliverable("dist/*.whl", gid="wheel")

    evaluation = evaluator.aggregate_for_gate("release", [*passing, failing], _workspace())

    assert evaluation.passed is False
    assert [result.guarantee_id for result in evaluation.blocking] == ["wheel"]


def test_optional_failures_are_warnings() -> None:
    evaluator = GuaranteeEvaluator()
    guarantees = [_deliverable("docs/*.md"), _deliverable("dist/*.whl", required=False, gid="wheel")]

    evaluation = evaluator.aggregate_for_gate("release", guarantees, _workspace())

    assert evaluation.passed is True
    assert [result.guarantee_id for result in evaluation.warnings] == ["wheel"]
    assert evaluation.to_dict()["warnings"] == ["wheel"]


def test_evaluation_is_idempotent_on_unchanged_workspace() -> None:
    evaluator = GuaranteeEvaluator()
    workspace = _workspace()
    guarantees = [
        _deliverable("docs/*.md"),
        _deliverable("dist/*.whl", gid="wheel"),
        Guarantee(id="odd", name="odd", kind="sentiment"),
    ]

    first = evaluator.aggregate_for_gate("g", guarantees, workspace)
    second = evaluator.aggregate_for_gate("g", guarantees, workspace)

    assert first == second
    assert first.to_dict() == second.to_dict()


def test_filesystem_workspace_globs_and_reads(tmp_path: Path) -> None:
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "design.md").write_text(DESIGN_DOC, encoding="utf-8")
    (tmp_path / "metrics.toml").write_text("score = 3\n", encoding="utf-8")
    workspace = FilesystemWorkspace(tmp_path)

    assert workspace.glob("**/*.md") == ["docs/design.md"]
    assert workspace.exists("docs/design.md") is True
    assert workspace.read_structured("metrics.toml") == {"score": 3}
    with pytest.raises(WorkspaceError):
        workspace.read_text("missing.md")
    with pytest.raises(WorkspaceError):
        workspace.read_text("../outside.md")


def test_invalid_pattern_fails_closed_without_blocking_other_rules(tmp_path: Path) -> None:
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "design.md").write_text(DESIGN_DOC, encoding="utf-8")
    workspace = FilesystemWorkspace(tmp_path)
    guarantees = [_deliverable(".", gid="dot"), _deliverable("docs/*.md", gid="docs")]

    evaluation = GuaranteeEvaluator().aggregate_for_gate("g", guarantees, workspace)

    assert [result.guarantee_id for result in evaluation.blocking] == ["dot"]
    assert evaluation.blocking[0].reason == WORKSPACE_ERROR
    assert [result.passed for result in evaluation.results] == [False, True]
    with pytest.raises(WorkspaceError):
        InMemoryWorkspace().glob("./.")


@pytest.mark.parametrize("pattern", ["docs/*.md", "**/*.md", "docs/**/*.md", "*.toml", "*/*.md"])
def test_memory_workspace_globs_like_the_filesystem(tmp_path: Path, pattern: str) -> None:
    files = {
        "docs/design.md": DESIGN_DOC,
        "docs/sub/notes.md": "# Notes\n",
        "metrics.toml": "score = 3\n",
        "readme.md": "# Readme\n",
    }
    for path, content in files.items():
        target = tmp_path / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    assert InMemoryWorkspace(files).glob(pattern) == FilesystemWorkspace(tmp_path).glob(pattern)

from __future__ import annotations

import logging
import operator
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from orchestrator.guarantees.workspace import Workspace, WorkspaceError
from orchestrator.models import Guarantee

logger = logging.getLogger(__name__)

UNSUPPORTED_GUARANTEE_TYPE = "UnsupportedGuaranteeType"
INVALID_VALIDATION_SPEC = "InvalidValidationSpec"
EVIDENCE_MISSING = "EvidenceMissing"
WORKSPACE_ERROR = "WorkspaceError"

COMPARATORS: dict[str, Callable[[float, float], bool]] = {
    "gte": operator.ge,
    "lte": operator.le,
    "eq": operator.eq,
    "gt": operator.gt,
    "lt": operator.lt,
}


class InvalidValidationSpec(ValueError):
    """Raised internally when a guarantee's validation parameters are malformed."""


@dataclass(frozen=True, slots=True)
class GuaranteeResult:
    guarantee_id: str
    name: str
    kind: str
    required: bool
    passed: bool
    evidence: tuple[str, ...] = ()
    reason: str | None = None
    missing: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "guarantee_id": self.guarantee_id,
            "name": self.name,
            "kind": self.kind,
            "required": self.required,
            "passed": self.passed,
            "evidence": list(self.evidence),
            "reason": self.reason,
            "missing": list(self.missing),
        }


@dataclass(frozen=True, slots=True)
class GateEvaluation:
    gate_id: str
    passed: bool
    results: tuple[GuaranteeResult, ...] = ()

    @property
    def blocking(self) -> list[GuaranteeResult]:
        return [result for result in self.results if result.required and not result.passed]

    @property
    def warnings(self) -> list[GuaranteeResult]:
        return [result for result in self.results if not result.required and not result.passed]

    def to_dict(self) -> dict[str, Any]:
        return {
            "gate_id": self.gate_id,
            "passed": self.passed,
            "total": len(self.results),
            "failed": len([result for result in self.results if not result.passed]),
            "blocking": [result.guarantee_id for result in self.blocking],
            "warnings": [result.guarantee_id for result in self.warnings],
            "results": [result.to_dict() for result in self.results],
        }


@dataclass(slots=True)
class _Check:
    evidence: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    reason: str | None = None

    def fail(self, message: str, *, reason: str = EVIDENCE_MISSING, missing: str | None = None) -> None:
        self.errors.append(message)
        if self.reason is None:
            self.reason = reason
        if missing and missing not in self.missing:
            self.missing.append(missing)


def _items(validation: dict[str, Any], plural: str, singular_key: str) -> list[dict[str, Any]]:
    raw = validation.get(plural)
    if raw is None:
        if singular_key in validation:
            return [validation]
        raise InvalidValidationSpec(f"validation requires '{plural}'")
    if not isinstance(raw, list) or not raw:
        raise InvalidValidationSpec(f"validation '{plural}' must be a non-empty list")
    items: list[dict[str, Any]] = []
    for item in raw:
        if not isinstance(item, dict):
            raise InvalidValidationSpec(f"entries of '{plural}' must be tables")
        items.append(item)
    return items


def _required_str(item: dict[str, Any], key: str) -> str:
    value = item.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidValidationSpec(f"'{key}' must be a non-empty string")
    return value.strip()


def _optional_int(item: dict[str, Any], key: str) -> int | None:
    value = item.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidValidationSpec(f"'{key}' must be a non-negative integer")
    return value


def _lookup(document: Any, dotted_path: str) -> tuple[bool, Any]:
    current = document
    for part in dotted_path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return False, None
    return True, current


class GuaranteeEvaluator:
    """Scores declarative guarantees against a workspace snapshot.

    Evaluation is a pure function of the guarantee and what the workspace
    returns at call time. Unknown kinds and malformed rules fail closed; one
    bad rule never stops the others from being scored.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[[dict[str, Any], Workspace, _Check], None]] = {
            "deliverable": self._check_deliverable,
            "content": self._check_content,
            "quality": self._check_quality,
            "step_proof": self._check_step_proof,
        }

    @property
    def supported_kinds(self) -> list[str]:
        return sorted(self._handlers)

    def evaluate(self, guarantee: Guarantee, workspace: Workspace) -> GuaranteeResult:
        check = _Check()
        handler = self._handlers.get(guarantee.kind)
        if handler is None:
            check.fail(
                f"Guarantee kind '{guarantee.kind}' is not supported.",
                reason=UNSUPPORTED_GUARANTEE_TYPE,
            )
        elif not isinstance(guarantee.validation, dict):
            check.fail("Invalid validation: expected a table.", reason=INVALID_VALIDATION_SPEC)
        else:
            try:
                handler(guarantee.validation, workspace, check)
            except InvalidValidationSpec as exc:
                check.fail(f"Invalid validation: {exc}", reason=INVALID_VALIDATION_SPEC)
            except (WorkspaceError, OSError) as exc:
                check.fail(f"Workspace error: {exc}", reason=WORKSPACE_ERROR)

        passed = not check.errors
        if not passed:
            logger.debug("Guarantee %s failed: %s", guarantee.id, "; ".join(check.errors))
        return GuaranteeResult(
            guarantee_id=guarantee.id,
            name=guarantee.name,
            kind=guarantee.kind,
            required=guarantee.required,
            passed=passed,
            evidence=tuple(check.evidence + check.errors),
            reason=None if passed else check.reason,
            missing=tuple(check.missing),
        )

    def evaluate_all(
        self, guarantees: Iterable[Guarantee], workspace: Workspace
    ) -> list[GuaranteeResult]:
        return [self.evaluate(guarantee, workspace) for guarantee in guarantees]

    def aggregate_for_gate(
        self,
        gate_id: str,
        guarantees: Iterable[Guarantee],
        workspace: Workspace,
    ) -> GateEvaluation:
        results = tuple(self.evaluate_all(guarantees, workspace))
        passed = all(result.passed for result in results if result.required)
        return GateEvaluation(gate_id=gate_id, passed=passed, results=results)

    @staticmethod
    def _check_deliverable(validation: dict[str, Any], workspace: Workspace, check: _Check) -> None:
        for item in _items(validation, "files", "pattern"):
            pattern = _required_str(item, "pattern")
            min_count = _optional_int(item, "min_count")
            max_count = _optional_int(item, "max_count")
            if min_count is None:
                min_count = 1
            matches = workspace.glob(pattern)
            listed = ", ".join(matches[:10])
            check.evidence.append(
                f"{pattern}: {len(matches)} match(es)" + (f" [{listed}]" if listed else "")
            )
            if len(matches) < min_count:
                check.fail(
                    f"Expected at least {min_count} file(s) matching '{pattern}', "
                    f"found {len(matches)}.",
                    missing=pattern,
                )
            if max_count is not None and len(matches) > max_count:
                check.fail(
                    f"Expected at most {max_count} file(s) matching '{pattern}', "
                    f"found {len(matches)}."
                )

    @staticmethod
    def _check_content(validation: dict[str, Any], workspace: Workspace, check: _Check) -> None:
        for item in _items(validation, "checks", "file"):
            path = _required_str(item, "file")
            min_bytes = _optional_int(item, "min_bytes")
            min_lines = _optional_int(item, "min_lines")
            max_lines = _optional_int(item, "max_lines")
            sections = item.get("sections", [])
            patterns = item.get("patterns", [])
            keys = item.get("keys", [])
            for name, values in (("sections", sections), ("patterns", patterns), ("keys", keys)):
                if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
                    raise InvalidValidationSpec(f"'{name}' must be a list of strings")
            compiled: list[re.Pattern[str]] = []
            for pattern in patterns:
                try:
                    compiled.append(re.compile(pattern, re.IGNORECASE | re.MULTILINE))
                except re.error as exc:
                    raise InvalidValidationSpec(f"invalid pattern {pattern!r}: {exc}") from exc

            if not workspace.exists(path):
                check.fail(f"File not found: {path}", missing=path)
                continue
            content = workspace.read_text(path)
            size = len(content.encode("utf-8"))
            lines = content.splitlines()
            check.evidence.append(f"{path}: {size} bytes, {len(lines)} line(s)")

            if min_bytes is not None and size < min_bytes:
                check.fail(f"{path} has {size} bytes, expected at least {min_bytes}.", missing=path)
            if min_lines is not None and len(lines) < min_lines:
                check.fail(
                    f"{path} has {len(lines)} lines, expected at least {min_lines}.", missing=path
                )
            if max_lines is not None and len(lines) > max_lines:
                check.fail(f"{path} has {len(lines)} lines, expected at most {max_lines}.")

            missing_sections = []
            for section in sections:
                title = re.sub(r"^#+\s*", "", section).strip()
                heading = re.compile(rf"^#+\s*{re.escape(title)}", re.IGNORECASE | re.MULTILINE)
                if not heading.search(content):
                    missing_sections.append(section)
            if missing_sections:
                check.fail(f"{path} missing sections: {', '.join(missing_sections)}", missing=path)

            for regex in compiled:
                if not regex.search(content):
                    check.fail(f"{path} missing required pattern: {regex.pattern}", missing=path)

            if keys:
                document = workspace.read_structured(path)
                absent = [key for key in keys if not _lookup(document, key)[0]]
                if absent:
                    check.fail(f"{path} missing keys: {', '.join(absent)}", missing=path)

    @staticmethod
    def _check_quality(validation: dict[str, Any], workspace: Workspace, check: _Check) -> None:
        for item in _items(validation, "thresholds", "metric"):
            path = _required_str(item, "path")
            metric = _required_str(item, "metric")
            operator_name = str(item.get("operator", "gte"))
            comparator = COMPARATORS.get(operator_name)
            if comparator is None:
                raise InvalidValidationSpec(f"unknown operator '{operator_name}'")
            expected = item.get("value")
            if isinstance(expected, bool) or not isinstance(expected, (int, float)):
                raise InvalidValidationSpec("'value' must be a number")

            if not workspace.exists(path):
                check.fail(f"Metric source not found: {path}", missing=path)
                continue
            found, actual = _lookup(workspace.read_structured(path), metric)
            if not found or isinstance(actual, bool) or not isinstance(actual, (int, float)):
                check.fail(f"Could not extract numeric metric '{metric}' from {path}.", missing=path)
                continue
            check.evidence.append(f"{metric} = {actual} ({operator_name} {expected})")
            if not comparator(float(actual), float(expected)):
                check.fail(
                    f"Metric '{metric}' = {actual}, expected {operator_name} {expected}.",
                    missing=path,
                )

    @staticmethod
    def _check_step_proof(validation: dict[str, Any], workspace: Workspace, check: _Check) -> None:
        marker = _required_str(validation, "marker")
        min_steps = _optional_int(validation, "min_steps") or 0
        matches = workspace.glob(marker)
        if not matches:
            check.fail(f"Step proof marker not found: {marker}", missing=marker)
            return
        check.evidence.append(f"proof marker {matches[0]} present")
        if min_steps:
            document = workspace.read_structured(matches[0])
            steps = document.get("steps") if isinstance(document, dict) else None
            count = len(steps) if isinstance(steps, list) else 0
            check.evidence.append(f"{matches[0]}: {count} step(s)")
            if count < min_steps:
                check.fail(
                    f"Step proof {matches[0]} records {count} step(s), expected at least {min_steps}.",
                    missing=marker,
                )

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any

from orchestrator.errors import MalformedLoop
from orchestrator.models import APPROVAL_POLICIES, LoopDefinition


def validate_loop_definition(definition: LoopDefinition) -> None:
    """Re-check referential integrity of a loop supplied by the composer."""
    problems: list[str] = []
    if not definition.id.strip():
        problems.append("loop id is empty")
    if not definition.phases:
        problems.append("loop has no phases")

    phase_ids: set[str] = set()
    skill_ids: set[str] = set()
    gate_ids: set[str] = set()
    for index, phase in enumerate(definition.phases, start=1):
        if not phase.id.strip():
            problems.append(f"phase #{index} has an empty id")
        elif phase.id in phase_ids:
            problems.append(f"duplicate phase id '{phase.id}'")
        phase_ids.add(phase.id)

        for skill in phase.skills:
            if not skill.id.strip():
                problems.append(f"phase '{phase.id}' references a skill with an empty id")
            elif skill.id in skill_ids:
                problems.append(f"skill '{skill.id}' is referenced more than once")
            skill_ids.add(skill.id)

        gate = phase.gate
        if gate is None:
            continue
        if not gate.id.strip():
            problems.append(f"phase '{phase.id}' has a gate with an empty id")
        elif gate.id in gate_ids:
            problems.append(f"duplicate gate id '{gate.id}'")
        gate_ids.add(gate.id)
        if gate.approval_policy not in APPROVAL_POLICIES:
            problems.append(
                f"gate '{gate.id}' has unknown approval policy '{gate.approval_policy}'"
            )
        guarantee_ids: set[str] = set()
        for guarantee in gate.guarantees:
            if not guarantee.id.strip():
                problems.append(f"gate '{gate.id}' has a guarantee with an empty id")
            elif guarantee.id in guarantee_ids:
                problems.append(f"gate '{gate.id}' repeats guarantee '{guarantee.id}'")
            guarantee_ids.add(guarantee.id)

    if problems:
        raise MalformedLoop("Malformed loop definition: " + "; ".join(problems))


def loop_definition_from_dict(payload: dict[str, Any]) -> LoopDefinition:
    try:
        definition = LoopDefinition.from_dict(payload)
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise MalformedLoop(f"Malformed loop definition: {exc}") from exc
    validate_loop_definition(definition)
    return definition


def load_loop_definition(path: Path) -> LoopDefinition:
    """Read a loop definition from a ``.toml`` or ``.json`` file."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise MalformedLoop(f"Cannot read loop definition {path}: {exc}") from exc
    try:
        if path.suffix.lower() == ".toml":
            payload = tomllib.loads(text)
        else:
            payload = json.loads(text)
    except (tomllib.TOMLDecodeError, json.JSONDecodeError) as exc:
        raise MalformedLoop(f"Cannot parse loop definition {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedLoop(f"Loop definition {path} must be a table.")
    return loop_definition_from_dict(payload)

from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from orchestrator.errors import ValidationError
from orchestrator.models import AUTONOMY_LEVELS

AutonomyName = Literal["full", "supervised", "manual"]


@dataclass(slots=True)
class SupervisorConfig:
    max_attempts: int = 3
    retry_delay_seconds: float = 10.0
    remediation_timeout_seconds: float = 600.0
    auto_advance: bool = True


@dataclass(slots=True)
class RemediationConfig:
    command: str = ""


@dataclass(slots=True)
class EngineConfig:
    default_autonomy: AutonomyName = "supervised"
    workspace_root: str = "."


@dataclass(slots=True)
class ArchiveConfig:
    enabled: bool = True
    directory: str = ".orchestrator/runs"


@dataclass(slots=True)
class OrchestratorConfig:
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    remediation: RemediationConfig = field(default_factory=RemediationConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)

    @classmethod
    def default(cls) -> OrchestratorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> OrchestratorConfig:
        try:
            config = cls(
                supervisor=SupervisorConfig(**data.get("supervisor", {})),
                remediation=RemediationConfig(**data.get("remediation", {})),
                engine=EngineConfig(**data.get("engine", {})),
                archive=ArchiveConfig(**data.get("archive", {})),
            )
        except TypeError as exc:
            raise ValidationError(f"Invalid configuration: {exc}") from exc
        if config.engine.default_autonomy not in AUTONOMY_LEVELS:
            raise ValidationError(
                f"Invalid configuration: unknown autonomy '{config.engine.default_autonomy}'."
            )
        if config.supervisor.max_attempts < 1:
            raise ValidationError("Invalid configuration: supervisor.max_attempts must be >= 1.")
        return config

    def to_dict(self) -> dict:
        return {
            "supervisor": {
                "max_attempts": self.supervisor.max_attempts,
                "retry_delay_seconds": self.supervisor.retry_delay_seconds,
                "remediation_timeout_seconds": self.supervisor.remediation_timeout_seconds,
                "auto_advance": self.supervisor.auto_advance,
            },
            "remediation": {
                "command": self.remediation.command,
            },
            "engine": {
                "default_autonomy": self.engine.default_autonomy,
                "workspace_root": self.engine.workspace_root,
            },
            "archive": {
                "enabled": self.archive.enabled,
                "directory": self.archive.directory,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: OrchestratorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["supervisor", "remediation", "engine", "archive"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> OrchestratorConfig:
    if not path.exists():
        return OrchestratorConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ValidationError(f"Invalid configuration file {path}: {exc}") from exc
    return OrchestratorConfig.from_dict(data)


def save_config(path: Path, config: OrchestratorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from orchestrator.config import OrchestratorConfig, load_config, save_config
from orchestrator.engine import ExecutionEngine
from orchestrator.errors import OrchestratorError
from orchestrator.guarantees import FilesystemWorkspace, GuaranteeEvaluator
from orchestrator.loops import load_loop_definition
from orchestrator.models import AUTONOMY_LEVELS, EXECUTION_STATUSES, Execution, SkillOutcome
from orchestrator.notifications import (
    EchoNotificationChannel,
    FanoutNotificationChannel,
    StoreNotificationChannel,
)
from orchestrator.remediation import CommandRemediationWorker
from orchestrator.state import RunArchive, StateStore
from orchestrator.supervisor import AutonomousSupervisor, SupervisorPolicy

CONFIG_DEFAULT = "orchestrator.toml"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: OrchestratorConfig
    store: StateStore
    workspace: FilesystemWorkspace
    evaluator: GuaranteeEvaluator
    archive: RunArchive | None
    engine: ExecutionEngine


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _resolve_dir(repo_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except OrchestratorError as exc:
        raise click.ClickException(str(exc)) from exc


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    with _cli_errors():
        config = load_config(config_path)
    store = StateStore(repo_root)
    workspace = FilesystemWorkspace(_resolve_dir(repo_root, config.engine.workspace_root))
    evaluator = GuaranteeEvaluator()
    archive = (
        RunArchive(_resolve_dir(repo_root, config.archive.directory))
        if config.archive.enabled
        else None
    )
    engine = ExecutionEngine(
        store,
        evaluator=evaluator,
        workspace=workspace,
        on_terminal=archive.archive if archive else None,
        event_hook=store.record_event,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        workspace=workspace,
        evaluator=evaluator,
        archive=archive,
        engine=engine,
    )


def _build_supervisor(runtime: Runtime) -> AutonomousSupervisor:
    config = runtime.config
    worker = None
    if config.remediation.command.strip():
        worker = CommandRemediationWorker(
            config.remediation.command, working_directory=runtime.workspace.root
        )
    policy = SupervisorPolicy.from_config(config.supervisor)
    return AutonomousSupervisor(
        runtime.engine,
        runtime.evaluator,
        runtime.workspace,
        policy=policy,
        remediation_worker=worker,
        notifier=FanoutNotificationChannel(
            StoreNotificationChannel(runtime.store), EchoNotificationChannel()
        ),
        event_hook=runtime.store.record_event,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _parse_context(pairs: tuple[str, ...]) -> dict[str, Any]:
    context: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw_value = pair.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"Expected key=value, got '{pair}'.", param_hint="--context")
        try:
            value: Any = json.loads(raw_value)
        except json.JSONDecodeError:
            value = raw_value
        context[key.strip()] = value
    return context


def _status_payload(execution: Execution, *, verbose: bool, escalations: list[dict]) -> dict:
    payload: dict[str, Any] = {
        "id": execution.id,
        "loop_id": execution.loop_id,
        "status": execution.status,
        "autonomy_level": execution.autonomy_level,
        "current_phase_id": execution.current_phase_id,
        "started_at": execution.started_at,
        "last_updated_at": execution.last_updated_at,
        "completed_at": execution.completed_at,
        "failure_reason": execution.failure_reason,
        "phases": {phase.id: phase.status for phase in execution.phases},
        "skills": {skill.id: skill.status for skill in execution.phase_skills(execution.current_phase_id)},
        "gates": {
            gate.id: {"status": gate.status, "policy": gate.resolved_policy}
            for gate in execution.gates
        },
        "escalations": [
            item for item in escalations if item.get("execution_id") == execution.id
        ],
    }
    if verbose:
        payload["skills"] = {skill.id: skill.status for skill in execution.skills}
        payload["log"] = [
            {
                "seq": entry.seq,
                "timestamp": entry.timestamp,
                "level": entry.level,
                "category": entry.category,
                "message": entry.message,
            }
            for entry in execution.log
        ]
    return payload


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Loop orchestrator CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--autonomy", type=click.Choice(list(AUTONOMY_LEVELS)), default=None)
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def init_command(autonomy: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    with _cli_errors():
        config = load_config(config_path)
    if autonomy:
        config.engine.default_autonomy = autonomy  # type: ignore[assignment]
    save_config(config_path, config)

    store = StateStore(repo_root)
    click.echo(f"Initialized orchestrator in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {store.state_dir}")
    click.echo(f"Default autonomy: {config.engine.default_autonomy}")


@cli.command("start")
@click.argument("loop_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--context", "context_pairs", multiple=True, help="key=value (JSON values allowed).")
@click.option("--autonomy", type=click.Choice(list(AUTONOMY_LEVELS)), default=None)
@click.option("--id", "execution_id", default=None, help="Explicit execution id.")
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def start_command(
    loop_file: Path,
    context_pairs: tuple[str, ...],
    autonomy: str | None,
    execution_id: str | None,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    context = _parse_context(context_pairs)
    with _cli_errors():
        definition = load_loop_definition(loop_file)
        execution = runtime.engine.start(
            definition,
            context,
            autonomy or runtime.config.engine.default_autonomy,
            execution_id=execution_id,
        )
    click.echo(f"Started execution {execution.id}")
    click.echo(f"Loop: {execution.loop_id} ({len(execution.phases)} phases)")
    click.echo(f"Current phase: {execution.current_phase_id}")


@cli.command("start-skill")
@click.argument("execution_id")
@click.argument("skill_id")
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def start_skill_command(execution_id: str, skill_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        runtime.engine.start_skill(execution_id, skill_id)
    click.echo(f"Skill {skill_id} started.")


@cli.command("complete-skill")
@click.argument("execution_id")
@click.argument("skill_id")
@click.option("--failed", is_flag=True, default=False, help="Record the skill as failed.")
@click.option("--score", type=click.FloatRange(0.0, 1.0), default=None)
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def complete_skill_command(
    execution_id: str, skill_id: str, failed: bool, score: float | None, config_value: str
) -> None:
    runtime = _runtime(config_value)
    outcome = SkillOutcome(
        success=not failed, score=score if score is not None else (0.0 if failed else 1.0)
    )
    with _cli_errors():
        execution = runtime.engine.complete_skill(execution_id, skill_id, outcome)
    skill = execution.skill(skill_id)
    click.echo(f"Skill {skill_id} {skill.status if skill else 'updated'}.")


@cli.command("skip-skill")
@click.argument("execution_id")
@click.argument("skill_id")
@click.option("--reason", required=True)
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def skip_skill_command(execution_id: str, skill_id: str, reason: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        runtime.engine.skip_skill(execution_id, skill_id, reason)
    click.echo(f"Skill {skill_id} skipped.")


@cli.command("complete-phase")
@click.argument("execution_id")
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def complete_phase_command(execution_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        execution = runtime.engine.complete_phase(execution_id)
    click.echo(f"Phase {execution.current_phase_id} completed.")
    gate = execution.gate_for_phase(execution.current_phase_id)
    if gate is not None:
        click.echo(f"Gate {gate.id}: {gate.status} ({gate.resolved_policy})")


@cli.command("advance")
@click.argument("execution_id")
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def advance_command(execution_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        execution = runtime.engine.advance_phase(execution_id)
    if execution.status == "completed":
        click.echo(f"Execution {execution.id} completed.")
        return
    click.echo(f"Advanced to phase {execution.current_phase_id}.")


@cli.command("approve")
@click.argument("execution_id")
@click.argument("gate_id")
@click.option("--approver", required=True)
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def approve_command(execution_id: str, gate_id: str, approver: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        execution = runtime.engine.approve_gate(execution_id, gate_id, approver)
    gate = execution.gate(gate_id)
    message = f"Gate {gate_id} approved by {approver}."
    if gate is not None and gate.decision_trace.get("override"):
        message += " Required guarantees were failing (override recorded)."
    click.echo(message)


@cli.command("reject")
@click.argument("execution_id")
@click.argument("gate_id")
@click.option("--reason", required=True)
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def reject_command(execution_id: str, gate_id: str, reason: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        execution = runtime.engine.reject_gate(execution_id, gate_id, reason)
    phase = execution.phase_state(execution.current_phase_id)
    click.echo(
        f"Gate {gate_id} rejected. Phase {execution.current_phase_id} reopened"
        + (f" (revision {phase.revision})." if phase else ".")
    )


@cli.command("pause")
@click.argument("execution_id")
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def pause_command(execution_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        runtime.engine.pause(execution_id)
    click.echo(f"Execution {execution_id} paused.")


@cli.command("resume")
@click.argument("execution_id")
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def resume_command(execution_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        runtime.engine.resume(execution_id)
    click.echo(f"Execution {execution_id} resumed.")


@cli.command("abort")
@click.argument("execution_id")
@click.option("--reason", required=True)
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def abort_command(execution_id: str, reason: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        runtime.engine.abort(execution_id, reason)
    click.echo(f"Execution {execution_id} failed: {reason}")


@cli.command("status")
@click.argument("execution_id")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def status_command(execution_id: str, verbose: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        execution = runtime.engine.get_state(execution_id)
        escalations = runtime.store.get_escalations()
    _echo_json(_status_payload(execution, verbose=verbose, escalations=escalations))


@cli.command("list")
@click.option(
    "--status", "status_filter", type=click.Choice(list(EXECUTION_STATUSES)), default=None
)
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def list_command(status_filter: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        executions = runtime.engine.list_executions(status=status_filter)
    if not executions:
        click.echo("No executions found.")
        return
    for item in executions:
        click.echo(f"{item['id']}  {item['status']:<9}  {item['loop_id']}  phase={item['current_phase_id']}")


@cli.command("gate-status")
@click.argument("execution_id")
@click.argument("gate_id")
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def gate_status_command(execution_id: str, gate_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        evaluation = runtime.engine.gate_status(execution_id, gate_id)
    _echo_json(evaluation.to_dict())


@cli.command("supervise")
@click.argument("execution_id")
@click.argument("gate_id")
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def supervise_command(execution_id: str, gate_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    supervisor = _build_supervisor(runtime)
    with _cli_errors():
        try:
            outcome = asyncio.run(supervisor.supervise_gate(execution_id, gate_id))
        finally:
            supervisor.close()
        _echo_json(outcome.to_dict())
        outcome.raise_for_escalation()


@cli.command("runs")
@click.option("--loop", "loop_id", default=None)
@click.option("--outcome", type=click.Choice(["success", "failed"]), default=None)
@click.option("--limit", type=int, default=None)
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def runs_command(loop_id: str | None, outcome: str | None, limit: int | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    if runtime.archive is None:
        raise click.ClickException("Run archive is disabled in the configuration.")
    with _cli_errors():
        runs = runtime.archive.query(loop=loop_id, outcome=outcome, limit=limit)
    if not runs:
        click.echo("No archived runs found.")
        return
    _echo_json([{"path": str(run.path), **run.summary} for run in runs])

from __future__ import annotations

import asyncio
import json
import os
import shlex
from pathlib import Path

from orchestrator.errors import RemediationFailed
from orchestrator.remediation.base import RemediationOutcome, RemediationRequest, RemediationWorker

PROMPT_HEADER = (
    "The quality gate below could not be passed automatically. Produce the missing "
    "deliverables listed under 'missing' and fix the failing guarantees, then exit."
)


class CommandRemediationWorker(RemediationWorker):
    """Runs an external agent CLI with the remediation request as its prompt."""

    name = "command"

    def __init__(self, command: str | list[str], working_directory: Path | None = None) -> None:
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.command:
            raise ValueError("Remediation command must not be empty.")
        self.working_directory = working_directory

    def build_prompt(self, request: RemediationRequest) -> str:
        return (
            f"{PROMPT_HEADER}\n\nRemediation JSON:\n"
            f"{json.dumps(request.to_dict(), ensure_ascii=False, indent=2)}"
        )

    def build_command(self, request: RemediationRequest) -> list[str]:
        return [*self.command, self.build_prompt(request)]

    async def remediate(self, request: RemediationRequest) -> RemediationOutcome:
        env = os.environ.copy()
        env["ORCHESTRATOR_EXECUTION_ID"] = request.execution_id
        env["ORCHESTRATOR_GATE_ID"] = request.gate_id

        command = self.build_command(request)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise RemediationFailed(
                f"Remediation binary not found: {self.command[0]}", worker=self.name
            ) from exc
        except OSError as exc:
            raise RemediationFailed(
                f"Cannot start remediation command {self.command[0]}: {exc}", worker=self.name
            ) from exc

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        if process.returncode != 0:
            stderr_output = stderr.decode("utf-8", errors="replace").strip()
            return RemediationOutcome(
                status="failed",
                detail=f"exit code {process.returncode}: {stderr_output}",
                worker=self.name,
            )
        return RemediationOutcome(
            status="done",
            detail=stdout.decode("utf-8", errors="replace").strip()[-2000:],
            worker=self.name,
        )

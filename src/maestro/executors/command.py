from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shlex
from collections.abc import Callable
from pathlib import Path
from typing import Any

from maestro.executors.base import (
    ExecutorError,
    ExecutorProcessError,
    PhaseExecutor,
    PhaseOutput,
    Reviewer,
)
from maestro.models import PhaseName
from maestro.state.artifacts import ArtifactStore

logger = logging.getLogger(__name__)

GRADE_PATTERN = re.compile(r"^\s*GRADE\s*[:=]\s*(-?\d{1,4})\b", re.IGNORECASE | re.MULTILINE)
SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")

ExecutorEventHook = Callable[[dict[str, Any]], None]


def extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


def extract_grade(output: str) -> int | None:
    """Find a grade in command output.

    A JSON line carrying ``grade`` (or ``score``) wins over a ``GRADE: N`` line;
    the last match of each kind is used. Values are returned unclamped.
    """
    for payload in reversed(extract_json_objects(output)):
        for key in ("grade", "score"):
            value = payload.get(key)
            if isinstance(value, bool):
                continue
            if isinstance(value, (int, float)):
                return int(value)
    matches = GRADE_PATTERN.findall(output)
    if matches:
        return int(matches[-1])
    return None


def extract_build_broken(output: str) -> bool:
    return any(payload.get("build_broken") is True for payload in extract_json_objects(output))


def _command_payload(command_text: str) -> tuple[list[str], bool]:
    if SHELL_REQUIRED_PATTERN.search(command_text):
        return ["sh", "-c", command_text], True
    try:
        return shlex.split(command_text), False
    except ValueError:
        return ["sh", "-c", command_text], True


async def _run_command(
    command: str,
    *,
    env: dict[str, str],
    cwd: Path | None,
    executor_name: str,
) -> tuple[int, str, str]:
    args, used_shell = _command_payload(command.strip())
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd else None,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise ExecutorProcessError(
            f"Command executable not found: {args[0]}",
            executor=executor_name,
            retriable=False,
        ) from exc

    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise
    logger.debug("%s finished with exit code %s (shell=%s)", executor_name, process.returncode,
                 used_shell)
    return (
        int(process.returncode or 0),
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


class CommandPhaseExecutor(PhaseExecutor):
    """Runs one configured shell command per phase.

    The command sees ``MAESTRO_PHASE``, ``MAESTRO_INPUT``, ``MAESTRO_OUTPUT`` and
    ``MAESTRO_TOPIC``. When it does not write ``MAESTRO_OUTPUT`` itself, its stdout
    becomes the artifact.
    """

    def __init__(
        self,
        commands: dict[str, str],
        artifacts: ArtifactStore,
        *,
        topic: str,
        working_directory: Path | None = None,
        event_hook: ExecutorEventHook | None = None,
    ) -> None:
        self.commands = dict(commands)
        self.artifacts = artifacts
        self.topic = topic
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def missing_commands(self, phases: list[PhaseName]) -> list[PhaseName]:
        return [phase for phase in phases if not self.commands.get(phase.value, "").strip()]

    async def execute(self, phase_name: PhaseName, input_locator: str | None) -> PhaseOutput:
        command = self.commands.get(phase_name.value, "").strip()
        if not command:
            raise ExecutorProcessError(
                f"No command configured for phase {phase_name.value}.",
                executor="command",
                retriable=False,
            )

        output_path = self.artifacts.artifact_path(phase_name, self.topic)
        env = os.environ.copy()
        env.update(
            {
                "MAESTRO_PHASE": phase_name.value,
                "MAESTRO_INPUT": input_locator or "",
                "MAESTRO_OUTPUT": str(output_path),
                "MAESTRO_TOPIC": self.topic,
            }
        )
        self._emit({"event": "executor_start", "phase": phase_name.value, "command": command})
        exit_code, stdout, stderr = await _run_command(
            command, env=env, cwd=self.working_directory, executor_name="command"
        )
        self._emit(
            {"event": "executor_exit", "phase": phase_name.value, "exit_code": exit_code}
        )
        if exit_code != 0:
            raise ExecutorError(
                f"Phase command for {phase_name.value} failed with exit code {exit_code}: "
                f"{stderr.strip()[-1000:]}",
                executor="command",
                exit_code=exit_code,
            )

        if not output_path.exists():
            output_path.write_text(stdout, encoding="utf-8")
        return PhaseOutput(
            output_locator=str(output_path),
            grade=extract_grade(stdout),
            build_broken=extract_build_broken(stdout),
            metadata={"stdout_tail": stdout.strip()[-1000:], "stderr_tail": stderr.strip()[-1000:]},
        )


class CommandReviewer(Reviewer):
    """Grades an artifact with a review command; ``MAESTRO_OUTPUT`` names the artifact."""

    def __init__(
        self,
        command: str,
        *,
        working_directory: Path | None = None,
    ) -> None:
        self.command = command
        self.working_directory = working_directory

    async def review(self, output_locator: str) -> int:
        if not self.command.strip():
            raise ExecutorProcessError(
                "No review command configured and the phase did not self-report a grade.",
                executor="reviewer",
                retriable=False,
            )
        env = os.environ.copy()
        env["MAESTRO_OUTPUT"] = output_locator
        exit_code, stdout, stderr = await _run_command(
            self.command, env=env, cwd=self.working_directory, executor_name="reviewer"
        )
        if exit_code != 0:
            raise ExecutorError(
                f"Review command failed with exit code {exit_code}: {stderr.strip()[-1000:]}",
                executor="reviewer",
                exit_code=exit_code,
            )
        grade = extract_grade(stdout)
        if grade is None:
            raise ExecutorError("Review command did not report a grade.", executor="reviewer")

        reviewed = ArtifactStore.reviewed_path(output_locator)
        reviewed.write_text(stdout, encoding="utf-8")
        return grade

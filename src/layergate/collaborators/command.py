from __future__ import annotations

import asyncio
import json
import shlex
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from layergate.collaborators.base import (
    CollaboratorError,
    CollaboratorEventHook,
    StageCollaborator,
)
from layergate.models import StageRequest


class CommandCollaborator(StageCollaborator):
    """Runs a stage as an external process speaking JSON over stdin/stdout.

    The request is written to stdin as one JSON document. The verdict is the last
    line of stdout that parses as a JSON object; any other output lines are treated
    as noise. A process that exits non-zero is a collaborator failure.
    """

    name = "command"

    def __init__(
        self,
        command: str | Sequence[str],
        *,
        working_directory: Path | None = None,
        env: Mapping[str, str] | None = None,
        event_hook: CollaboratorEventHook | None = None,
    ) -> None:
        if isinstance(command, str):
            self.command = shlex.split(command)
        else:
            self.command = [str(part) for part in command]
        if not self.command:
            raise ValueError("CommandCollaborator requires a non-empty command.")
        self.working_directory = working_directory
        self.env = dict(env) if env is not None else None
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @staticmethod
    def parse_output(raw_text: str) -> dict[str, Any] | None:
        for raw_line in reversed(raw_text.splitlines()):
            line = raw_line.strip()
            if not (line.startswith("{") and line.endswith("}")):
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                return parsed
        stripped = raw_text.strip()
        if stripped.startswith("{"):
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError:
                return None
            if isinstance(parsed, dict):
                return parsed
        return None

    async def invoke(self, request: StageRequest) -> Mapping[str, Any] | None:
        stdin_payload = json.dumps(request.to_dict(), ensure_ascii=False).encode("utf-8")
        self._emit(
            {
                "event": "collaborator_start",
                "stage_id": request.stage_id,
                "command": self.command[:4],
                "prior_findings": len(request.prior_findings),
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=self.env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise CollaboratorError(
                f"Stage command not found: {self.command[0]}",
                collaborator=self.name,
            ) from exc

        try:
            stdout, stderr = await process.communicate(stdin_payload)
        except asyncio.CancelledError:
            # The runner stopped waiting; reap our own child before unwinding.
            if process.returncode is None:
                process.terminate()
                await process.wait()
            self._emit({"event": "collaborator_cancelled", "stage_id": request.stage_id})
            raise

        stderr_output = stderr.decode("utf-8", errors="replace").strip()
        self._emit(
            {
                "event": "collaborator_exit",
                "stage_id": request.stage_id,
                "exit_code": process.returncode,
                "stderr": stderr_output[:400],
            }
        )
        if process.returncode != 0:
            raise CollaboratorError(
                f"Stage command exited with code {process.returncode}: {stderr_output[:400]}",
                collaborator=self.name,
                exit_code=process.returncode,
            )
        return self.parse_output(stdout.decode("utf-8", errors="replace"))

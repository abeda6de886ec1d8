from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from stagegate.actors.base import ActorAdapter, ActorExecutionError, ActorRequest, ActorResult
from stagegate.policy.profile import ActionRequest

logger = logging.getLogger(__name__)


class CommandActor(ActorAdapter):
    """Runs an external command per stage.

    The request is written to stdin as JSON. The last JSON object printed on
    stdout is taken as the result; without one, the exit code decides the
    status.
    """

    name = "command"

    def __init__(
        self,
        command: Sequence[str],
        *,
        declare_command: Sequence[str] | None = None,
        working_directory: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        if not command:
            raise ValueError("CommandActor requires a non-empty command.")
        self.command = list(command)
        self.declare_command = list(declare_command) if declare_command else None
        self.working_directory = working_directory
        self.env = dict(env or {})

    def _build_env(self, request: ActorRequest, mode: str) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self.env)
        env["STAGEGATE_RUN_ID"] = request.run_id
        env["STAGEGATE_STAGE"] = request.stage_id
        env["STAGEGATE_ROLE"] = request.required_role
        env["STAGEGATE_ATTEMPT"] = str(request.attempt)
        env["STAGEGATE_MODE"] = mode
        return env

    @staticmethod
    def _extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
        payloads: list[dict[str, Any]] = []
        stripped = raw_text.strip()
        if stripped.startswith("{") and stripped.endswith("}"):
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                return [parsed]
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

    async def _spawn(self, argv: list[str], request: ActorRequest, mode: str) -> tuple[int, str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=self._build_env(request, mode),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ActorExecutionError(
                f"Actor command not found: {argv[0]}",
                actor=self.name,
                retriable=False,
            ) from exc

        payload = json.dumps(request.to_dict(), ensure_ascii=False).encode("utf-8")
        try:
            stdout, stderr = await process.communicate(payload)
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        return (
            process.returncode if process.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace").strip(),
        )

    async def declare(self, request: ActorRequest) -> list[ActionRequest]:
        if not self.declare_command:
            return []
        exit_code, stdout, stderr = await self._spawn(self.declare_command, request, "declare")
        if exit_code != 0:
            raise ActorExecutionError(
                f"Declare command failed with exit code {exit_code}: {stderr[-500:]}",
                actor=self.name,
                exit_code=exit_code,
            )
        payloads = self._extract_json_objects(stdout)
        if not payloads:
            return []
        actions = payloads[-1].get("declaredActions", [])
        if not isinstance(actions, list):
            raise ActorExecutionError("Declare command returned malformed actions.", retriable=False)
        return [ActionRequest.from_dict(item) for item in actions]

    async def invoke(self, request: ActorRequest) -> ActorResult:
        exit_code, stdout, stderr = await self._spawn(self.command, request, "invoke")
        payloads = self._extract_json_objects(stdout)
        if payloads:
            result = ActorResult.from_dict(payloads[-1])
            if exit_code != 0 and result.status == "passed":
                logger.warning(
                    "Actor for stage %s reported passed with exit code %s; treating as failed",
                    request.stage_id,
                    exit_code,
                )
                return ActorResult(
                    status="failed",
                    artifact_ref=result.artifact_ref,
                    score=result.score,
                    declared_actions=result.declared_actions,
                    detail=f"exit code {exit_code}: {stderr[-500:]}",
                )
            return result
        if exit_code != 0:
            return ActorResult(status="failed", detail=f"exit code {exit_code}: {stderr[-500:]}")
        tail = stdout.strip()[-1000:]
        return ActorResult(status="passed", detail=tail)

import asyncio
import json
from typing import Any

import pytest

from stagegate.actors import (
    ActorExecutionError,
    ActorRequest,
    ActorResult,
    CommandActor,
    ScriptedActor,
)
from stagegate.policy import ActionRequest, CapabilityProfile


class FakeProcess:
    def __init__(self, returncode: int, stdout: str, stderr: str = "") -> None:
        self.returncode: int | None = None
        self._exit_code = returncode
        self._stdout = stdout.encode("utf-8")
        self._stderr = stderr.encode("utf-8")
        self.received: bytes | None = None

    async def communicate(self, payload: bytes | None = None) -> tuple[bytes, bytes]:
        self.received = payload
        self.returncode = self._exit_code
        return self._stdout, self._stderr

    def kill(self) -> None:
        self.returncode = -9

    async def wait(self) -> int:
        return self.returncode if self.returncode is not None else -9


def _request(stage_id: str = "review") -> ActorRequest:
    return ActorRequest(
        run_id="run-actor",
        stage_id=stage_id,
        required_role="reviewer",
        input_artifacts=("docs/spec.md",),
        profile=CapabilityProfile(actor_id="rev-1", role="reviewer"),
        attempt=2,
    )


def _patch_spawn(monkeypatch, *processes: FakeProcess) -> list[dict[str, Any]]:
    queue = list(processes)
    calls: list[dict[str, Any]] = []

    async def fake_exec(*argv: str, **kwargs: Any) -> FakeProcess:
        calls.append({"argv": list(argv), **kwargs})
        return queue.pop(0)

    monkeypatch.setattr("stagegate.actors.command.asyncio.create_subprocess_exec", fake_exec)
    return calls


def test_command_actor_parses_last_json_line(monkeypatch) -> None:
    stdout = "\n".join(
        [
            "reviewing...",
            json.dumps({"status": "failed", "score": 2}),
            json.dumps(
                {
                    "status": "passed",
                    "score": 8,
                    "artifactRef": "docs/review.md",
                    "declaredActions": [{"kind": "fs", "target": "docs/review.md", "mode": "write"}],
                }
            ),
        ]
    )
    process = FakeProcess(0, stdout)
    calls = _patch_spawn(monkeypatch, process)
    actor = CommandActor(["review-bot", "--strict"])

    result = asyncio.run(actor.invoke(_request()))

    assert result.status == "passed"
    assert result.score == 8.0
    assert result.artifact_ref == "docs/review.md"
    assert result.declared_actions == (ActionRequest("fs", "docs/review.md", mode="write"),)
    assert calls[0]["argv"] == ["review-bot", "--strict"]
    assert calls[0]["env"]["STAGEGATE_STAGE"] == "review"
    assert calls[0]["env"]["STAGEGATE_ATTEMPT"] == "2"
    assert calls[0]["env"]["STAGEGATE_MODE"] == "invoke"
    sent = json.loads(process.received.decode("utf-8"))
    assert sent["stageId"] == "review"
    assert sent["inputArtifacts"] == ["docs/spec.md"]
    assert sent["capabilityProfile"]["actor"] == "rev-1"


def test_nonzero_exit_downgrades_passed_result(monkeypatch) -> None:
    _patch_spawn(monkeypatch, FakeProcess(3, '{"status": "passed"}', "crashed"))

    result = asyncio.run(CommandActor(["bot"]).invoke(_request()))

    assert result.status == "failed"
    assert "exit code 3" in result.detail


def test_exit_code_decides_without_json(monkeypatch) -> None:
    _patch_spawn(monkeypatch, FakeProcess(0, "all good\n"), FakeProcess(1, "", "tests failed"))
    actor = CommandActor(["bot"])

    passed = asyncio.run(actor.invoke(_request()))
    failed = asyncio.run(actor.invoke(_request()))

    assert passed.status == "passed"
    assert passed.detail == "all good"
    assert failed.status == "failed"
    assert "tests failed" in failed.detail


def test_missing_executable_is_not_retriable(monkeypatch) -> None:
    async def missing(*argv: str, **kwargs: Any) -> FakeProcess:
        raise FileNotFoundError(argv[0])

    monkeypatch.setattr("stagegate.actors.command.asyncio.create_subprocess_exec", missing)

    with pytest.raises(ActorExecutionError) as excinfo:
        asyncio.run(CommandActor(["no-such-bot"]).invoke(_request()))

    assert excinfo.value.retriable is False


def test_declare_command_reports_intended_actions(monkeypatch) -> None:
    payload = json.dumps({"declaredActions": [{"kind": "command", "target": "pytest -q"}]})
    calls = _patch_spawn(monkeypatch, FakeProcess(0, payload))
    actor = CommandActor(["bot"], declare_command=["bot", "--plan"])

    actions = asyncio.run(actor.declare(_request()))

    assert actions == [ActionRequest("command", "pytest -q")]
    assert calls[0]["env"]["STAGEGATE_MODE"] == "declare"


def test_actor_result_rejects_unknown_status() -> None:
    with pytest.raises(ActorExecutionError, match="unknown status"):
        ActorResult.from_dict({"status": "maybe"})


def test_scripted_actor_replays_and_repeats_last_result() -> None:
    actor = ScriptedActor(
        {"review": [ActorResult(status="failed"), ActorResult(status="passed", score=9)]}
    )

    results = [asyncio.run(actor.invoke(_request())) for _ in range(3)]

    assert [result.status for result in results] == ["failed", "passed", "passed"]
    assert actor.calls == ["review", "review", "review"]
    with pytest.raises(ActorExecutionError, match="No scripted result"):
        asyncio.run(actor.invoke(_request("unknown")))

import asyncio
import json
from pathlib import Path

from click.testing import CliRunner

from stagegate.actors import ActorRequest, ActorResult, ScriptedActor
from stagegate.cli import cli
from stagegate.config import load_config, save_config
from stagegate.errors import RunStateError
from stagegate.policy import CapabilityProfile
from stagegate.roles import RoleRegistry
from stagegate.state import RunStore

REVIEW_FAIL = ActorResult(status="passed", score=3)
PASSED = ActorResult(status="passed", score=9)
TEMPLATE_STAGES = (
    "specify",
    "spec_review",
    "plan",
    "red",
    "green",
    "refactor",
    "lint",
    "code_review",
    "audit",
)


def _scripted_registry(actor: ScriptedActor):
    def build(profiles: dict[str, CapabilityProfile], repo_root: Path) -> RoleRegistry:
        _ = repo_root
        registry = RoleRegistry()
        for profile in profiles.values():
            registry.bind(profile, actor)
        return registry

    return build


def _report(output: str) -> dict:
    start = output.index("{")
    end = output.rindex("}") + 1
    return json.loads(output[start:end])


def _write_ship_pipeline(root: Path) -> None:
    (root / "pipeline.toml").write_text(
        'name = "ship"\n'
        "\n"
        "[[stages]]\n"
        'id = "green"\n'
        'role = "implementer"\n'
        "\n"
        "[[stages]]\n"
        'id = "commit"\n'
        'role = "implementer"\n'
        'after = ["green"]\n'
        'actions = [{ kind = "command", target = "git commit -m green" }]\n',
        encoding="utf-8",
    )


def test_init_validate_and_run_with_template_actors(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0
    assert (tmp_path / "stagegate.toml").exists()
    assert (tmp_path / "pipeline.toml").exists()
    assert (tmp_path / "agents" / "spec-writer.md").exists()

    validate_result = runner.invoke(cli, ["validate"])
    assert validate_result.exit_code == 0
    assert "Pipeline 'feature-delivery' is valid." in validate_result.output
    assert "Terminal: audit" in validate_result.output

    run_result = runner.invoke(cli, ["run", "--run-id", "run-template"])
    assert run_result.exit_code == 0, run_result.output
    report = _report(run_result.output)
    assert report["state"] == "completed"
    assert report["stages"]["audit"]["status"] == "passed"

    store = RunStore(tmp_path / ".stagegate")
    assert store.list_runs(include_archived=True) == ["run-template"]
    events = [event["event"] for event in store.events("run-template")]
    assert events[-1] == "run_completed"

    duplicate = runner.invoke(cli, ["run", "--run-id", "run-template"])
    assert duplicate.exit_code != 0
    assert "already exists" in duplicate.output


def test_check_reports_policy_verdicts(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0

    allowed = runner.invoke(cli, ["check", "implementer", "fs", "src/app.py", "--mode", "write"])
    assert allowed.exit_code == 0
    assert _report(allowed.output)["effect"] == "allow"

    denied = runner.invoke(
        cli, ["check", "implementer", "fs", "test/test_app.py", "--mode", "write"]
    )
    assert denied.exit_code == 1
    assert _report(denied.output)["reason"] == "no scope covers path"

    ask = runner.invoke(cli, ["check", "implementer", "command", "git commit -m wip"])
    assert _report(ask.output)["effect"] == "confirm"

    unknown = runner.invoke(cli, ["check", "ghost", "tool", "write_file"])
    assert unknown.exit_code != 0
    assert "No profile defines role 'ghost'" in unknown.output


def test_halted_run_can_be_resumed(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0

    actor = ScriptedActor(
        {
            "spec_review": [REVIEW_FAIL],
            "code_review": [PASSED],
            **{
                stage: [PASSED]
                for stage in ("specify", "plan", "red", "green", "refactor", "lint", "audit")
            },
        }
    )
    monkeypatch.setattr("stagegate.cli._build_registry", _scripted_registry(actor))

    run_result = runner.invoke(cli, ["run", "--run-id", "run-halt"])
    assert run_result.exit_code != 0
    assert "halted at stage 'spec_review' after 3 retries" in run_result.output

    status_result = runner.invoke(cli, ["status", "run-halt", "--events"])
    assert status_result.exit_code == 0
    status = _report(status_result.output)
    assert status["state"] == "halted"
    assert status["stages"]["spec_review"]["retries"] == 3
    assert any(event["event"] == "run_halted" for event in status["events"])

    actor.enqueue("spec_review", PASSED)
    resume_result = runner.invoke(cli, ["resume", "run-halt"])
    assert resume_result.exit_code == 0, resume_result.output
    assert _report(resume_result.output)["state"] == "completed"


def test_confirmation_flow_and_abort(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _write_ship_pipeline(tmp_path)

    first = runner.invoke(cli, ["run", "--run-id", "run-ask"])
    assert first.exit_code == 0, first.output
    assert "awaits confirmation for: commit" in first.output

    approved = runner.invoke(cli, ["approve", "run-ask", "commit", "--no-run"])
    assert approved.exit_code == 0
    assert "Approved for commit: command git commit -m green" in approved.output

    aborted = runner.invoke(cli, ["abort", "run-ask", "--reason", "feature dropped"])
    assert aborted.exit_code == 0
    assert "Aborted run-ask: feature dropped" in aborted.output

    again = runner.invoke(cli, ["abort", "run-ask"])
    assert again.exit_code != 0
    assert "already aborted" in again.output


class WatchingActor(ScriptedActor):
    """Reads the persisted run from disk when `watch` starts."""

    def __init__(self, state_dir: Path, run_id: str, watch: str) -> None:
        super().__init__({stage: [PASSED] for stage in TEMPLATE_STAGES})
        self.state_dir = state_dir
        self.run_id = run_id
        self.watch = watch
        self.seen: dict[str, str] = {}

    async def invoke(self, request: ActorRequest) -> ActorResult:
        if request.stage_id == self.watch:
            persisted = RunStore(self.state_dir).load(self.run_id)
            self.seen = {stage: persisted.status_of(stage) for stage in TEMPLATE_STAGES}
        return await super().invoke(request)


class LeaseContender(ScriptedActor):
    """Tries to take the run's lease as another host while `specify` is running."""

    def __init__(self, state_dir: Path, run_id: str, wait_seconds: float) -> None:
        super().__init__({stage: [PASSED] for stage in TEMPLATE_STAGES})
        self.state_dir = state_dir
        self.run_id = run_id
        self.wait_seconds = wait_seconds
        self.refusal = ""

    async def invoke(self, request: ActorRequest) -> ActorResult:
        if request.stage_id == "specify":
            await asyncio.sleep(self.wait_seconds)
            try:
                RunStore(self.state_dir).acquire_lease(
                    self.run_id, owner="other-host:1", ttl_seconds=60
                )
            except RunStateError as exc:
                self.refusal = str(exc)
        return await super().invoke(request)


def test_completed_stages_are_persisted_while_later_stages_run(
    tmp_path: Path, monkeypatch
) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    actor = WatchingActor(tmp_path / ".stagegate", "run-checkpoint", watch="plan")
    monkeypatch.setattr("stagegate.cli._build_registry", _scripted_registry(actor))

    result = runner.invoke(cli, ["run", "--run-id", "run-checkpoint"])

    assert result.exit_code == 0, result.output
    assert actor.seen["specify"] == "passed"
    assert actor.seen["spec_review"] == "passed"
    assert actor.seen["plan"] == "pending"


def test_lease_is_renewed_while_a_stage_outlives_its_ttl(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    config_path = tmp_path / "stagegate.toml"
    config = load_config(config_path)
    config.engine.lease_ttl_seconds = 1.0
    config.engine.stage_timeout_seconds = 0.0
    save_config(config_path, config)
    actor = LeaseContender(tmp_path / ".stagegate", "run-heartbeat", wait_seconds=1.6)
    monkeypatch.setattr("stagegate.cli._build_registry", _scripted_registry(actor))

    result = runner.invoke(cli, ["run", "--run-id", "run-heartbeat"])

    assert result.exit_code == 0, result.output
    assert "already coordinated" in actor.refusal
    assert RunStore(tmp_path / ".stagegate").lease("run-heartbeat") is None


def test_abort_refuses_run_coordinated_elsewhere(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _write_ship_pipeline(tmp_path)
    assert runner.invoke(cli, ["run", "--run-id", "run-busy"]).exit_code == 0
    store = RunStore(tmp_path / ".stagegate")
    store.acquire_lease("run-busy", owner="other-host:1", ttl_seconds=60)

    refused = runner.invoke(cli, ["abort", "run-busy"])

    assert refused.exit_code != 0
    assert "already coordinated by 'other-host:1'" in refused.output
    assert store.list_runs() == ["run-busy"]
    assert store.load("run-busy").state == "awaiting_confirmation"

    store.release_lease("run-busy", owner="other-host:1")
    assert runner.invoke(cli, ["abort", "run-busy"]).exit_code == 0
    assert store.list_runs() == []
    assert store.load("run-busy").state == "aborted"

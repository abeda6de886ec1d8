from __future__ import annotations

import asyncio
import json
import logging
import os
import socket
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any

import click

from stagegate.actors import CommandActor
from stagegate.config import Conventions, StagegateConfig, load_config, save_config
from stagegate.dispatcher import Dispatcher
from stagegate.errors import ConfigurationError, RunStateError
from stagegate.loader import load_pipeline, load_profiles
from stagegate.pipeline.graph import PipelineGraph
from stagegate.pipeline.run import WorkflowRun
from stagegate.policy import ActionRequest, CapabilityProfile, evaluate
from stagegate.roles import RoleRegistry
from stagegate.state import RunStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: StagegateConfig
    conventions: Conventions
    graph: PipelineGraph
    profiles: dict[str, CapabilityProfile]
    store: RunStore
    dispatcher: Dispatcher


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


def _configure_logging(config: StagegateConfig) -> None:
    logging.basicConfig(
        level=getattr(logging, str(config.logging.level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _coordinator_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _build_registry(
    profiles: dict[str, CapabilityProfile], repo_root: Path
) -> RoleRegistry:
    registry = RoleRegistry()
    for profile in profiles.values():
        if not profile.command:
            raise ConfigurationError(
                f"Profile '{profile.actor_id}' declares no 'command' to invoke."
            )
        registry.bind(profile, CommandActor(profile.command, working_directory=repo_root))
    return registry


def _load_runtime(repo_root: Path, config_value: str) -> Runtime:
    config_path = _resolve_path(repo_root, config_value)
    config = load_config(config_path)
    _configure_logging(config)
    conventions = config.shared_conventions()
    graph = load_pipeline(_resolve_path(repo_root, config.paths.pipeline), conventions)
    profiles = load_profiles(_resolve_path(repo_root, config.paths.profiles_dir), conventions)
    store = RunStore(_resolve_path(repo_root, config.paths.state_dir))
    dispatcher = Dispatcher(
        graph,
        _build_registry(profiles, repo_root),
        config=config.engine,
        event_hook=lambda event: store.append_event(str(event["run_id"]), event),
        state_hook=store.save,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        conventions=conventions,
        graph=graph,
        profiles=profiles,
        store=store,
        dispatcher=dispatcher,
    )


def _runtime_or_fail(config_value: str) -> Runtime:
    try:
        return _load_runtime(Path.cwd().resolve(), config_value)
    except ConfigurationError as exc:
        raise click.ClickException(f"Configuration error: {exc}") from exc


def _load_run(runtime: Runtime, run_id: str) -> WorkflowRun:
    try:
        run = runtime.store.load(run_id)
    except RunStateError as exc:
        raise click.ClickException(str(exc)) from exc
    if run.pipeline_ref != runtime.graph.name:
        raise click.ClickException(
            f"Run {run_id} belongs to pipeline '{run.pipeline_ref}', "
            f"not '{runtime.graph.name}'."
        )
    return run


@contextmanager
def _coordination(runtime: Runtime, run_id: str) -> Iterator[str]:
    """Hold the run's lease for the duration of a mutating command."""
    owner = _coordinator_id()
    try:
        runtime.store.acquire_lease(
            run_id, owner=owner, ttl_seconds=runtime.config.engine.lease_ttl_seconds
        )
    except RunStateError as exc:
        raise click.ClickException(str(exc)) from exc
    try:
        yield owner
    finally:
        runtime.store.release_lease(run_id, owner=owner)


async def _heartbeat(runtime: Runtime, run_id: str, owner: str) -> None:
    ttl = max(1.0, float(runtime.config.engine.lease_ttl_seconds))
    while True:
        await asyncio.sleep(ttl / 3.0)
        runtime.store.acquire_lease(run_id, owner=owner, ttl_seconds=ttl)
        logger.debug("Renewed lease on run %s", run_id)


async def _coordinate(runtime: Runtime, run: WorkflowRun, owner: str) -> WorkflowRun:
    driving = asyncio.create_task(runtime.dispatcher.drive(run))
    heartbeat = asyncio.create_task(_heartbeat(runtime, run.run_id, owner))
    try:
        done, _ = await asyncio.wait({driving, heartbeat}, return_when=asyncio.FIRST_COMPLETED)
        if heartbeat in done:
            driving.cancel()
            heartbeat.result()
        return await driving
    finally:
        heartbeat.cancel()


def _drive(runtime: Runtime, run: WorkflowRun, owner: str) -> WorkflowRun:
    """Drive ``run`` while renewing ``owner``'s lease.

    The dispatcher checkpoints through the store after every applied
    result, so an interrupted drive leaves the last completed stage on disk.
    """
    try:
        runtime.store.save(run)
        return asyncio.run(_coordinate(runtime, run, owner))
    except RunStateError as exc:
        raise click.ClickException(str(exc)) from exc


def _finish(runtime: Runtime, run: WorkflowRun) -> None:
    if run.finished:
        runtime.store.archive(run)
    click.echo(json.dumps(run.report(), ensure_ascii=False, indent=2))
    if run.state == "halted" and run.halt:
        raise click.ClickException(
            f"Run {run.run_id} halted at stage '{run.halt['stage']}' after "
            f"{run.halt['retries']} retries: {run.halt['reason']}"
        )
    if run.state == "blocked":
        details = "; ".join(
            f"{stage}: {block.get('action')} denied by {block.get('rule') or 'default policy'} "
            f"({block.get('reason')})"
            for stage, block in sorted(run.blocks.items())
        )
        raise click.ClickException(f"Run {run.run_id} blocked. {details}")
    if run.state == "awaiting_confirmation":
        stages = ", ".join(sorted(run.pending_confirmations))
        click.echo(
            f"Run {run.run_id} awaits confirmation for: {stages}. "
            f"Use `stagegate approve {run.run_id} STAGE`."
        )


def _copy_template(name: str, target: Path) -> bool:
    if target.exists():
        return False
    source = resources.files("stagegate.templates").joinpath(name)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(source.read_text(encoding="utf-8"), encoding="utf-8")
    return True


@click.group()
def cli() -> None:
    """Capability-gated workflow engine."""


@cli.command("init")
@click.option("--config", "config_value", default="stagegate.toml", show_default=True)
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    config = load_config(config_path)
    save_config(config_path, config)

    created: list[str] = []
    if _copy_template("pipeline.toml", _resolve_path(repo_root, config.paths.pipeline)):
        created.append(config.paths.pipeline)
    profiles_dir = _resolve_path(repo_root, config.paths.profiles_dir)
    agents = resources.files("stagegate.templates").joinpath("agents")
    for entry in sorted(agents.iterdir(), key=lambda item: item.name):
        if entry.name.endswith((".toml", ".md")):
            if _copy_template(f"agents/{entry.name}", profiles_dir / entry.name):
                created.append(f"{config.paths.profiles_dir}/{entry.name}")
    RunStore(_resolve_path(repo_root, config.paths.state_dir))

    click.echo(f"Initialized stagegate in {repo_root}")
    click.echo(f"Config: {config_path}")
    for item in created:
        click.echo(f"Created: {item}")


@cli.command("validate")
@click.option("--config", "config_value", default="stagegate.toml", show_default=True)
def validate_command(config_value: str) -> None:
    runtime = _runtime_or_fail(config_value)
    click.echo(f"Pipeline '{runtime.graph.name}' is valid.")
    click.echo(f"Stages: {' -> '.join(runtime.graph.topological_order())}")
    click.echo(f"Terminal: {', '.join(runtime.graph.terminal_stages())}")
    for role, profile in sorted(runtime.profiles.items()):
        click.echo(
            f"Role {role}: actor={profile.actor_id} fs_scopes={len(profile.fs_scopes)} "
            f"command_patterns={len(profile.command_patterns)}"
        )


@cli.command("check")
@click.argument("role")
@click.argument("kind", type=click.Choice(["fs", "command", "tool"]))
@click.argument("target")
@click.option("--mode", type=click.Choice(["read", "write"]), default="read", show_default=True)
@click.option("--config", "config_value", default="stagegate.toml", show_default=True)
def check_command(role: str, kind: str, target: str, mode: str, config_value: str) -> None:
    runtime = _runtime_or_fail(config_value)
    profile = runtime.profiles.get(role)
    if profile is None:
        raise click.ClickException(f"No profile defines role '{role}'.")
    request = ActionRequest(kind=kind, target=target, mode=mode)  # type: ignore[arg-type]
    verdict = evaluate(profile, request)
    payload: dict[str, Any] = {"action": request.key, **verdict.to_dict()}
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
    if verdict.denied:
        raise click.exceptions.Exit(1)


@cli.command("run")
@click.option("--run-id", default=None)
@click.option("--config", "config_value", default="stagegate.toml", show_default=True)
def run_command(run_id: str | None, config_value: str) -> None:
    runtime = _runtime_or_fail(config_value)
    run = runtime.dispatcher.create_run(run_id)
    try:
        exists = runtime.store.get_envelope(run.run_id) is not None
    except RunStateError as exc:
        raise click.ClickException(str(exc)) from exc
    if exists:
        raise click.ClickException(f"Run {run.run_id} already exists.")
    with _coordination(runtime, run.run_id) as owner:
        run = _drive(runtime, run, owner)
        _finish(runtime, run)


@cli.command("status")
@click.argument("run_id")
@click.option("--events", "show_events", is_flag=True, default=False)
@click.option("--config", "config_value", default="stagegate.toml", show_default=True)
def status_command(run_id: str, show_events: bool, config_value: str) -> None:
    runtime = _runtime_or_fail(config_value)
    run = _load_run(runtime, run_id)
    payload = run.report()
    if show_events:
        payload["events"] = runtime.store.events(run_id)
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("resume")
@click.argument("run_id")
@click.option("--keep-retries", is_flag=True, default=False)
@click.option("--unblock", "unblock", multiple=True)
@click.option("--config", "config_value", default="stagegate.toml", show_default=True)
def resume_command(
    run_id: str, keep_retries: bool, unblock: tuple[str, ...], config_value: str
) -> None:
    runtime = _runtime_or_fail(config_value)
    with _coordination(runtime, run_id) as owner:
        run = _load_run(runtime, run_id)
        try:
            runtime.dispatcher.resume(run, reset_retries=not keep_retries, unblock=unblock)
        except RunStateError as exc:
            raise click.ClickException(str(exc)) from exc
        run = _drive(runtime, run, owner)
        _finish(runtime, run)


@cli.command("approve")
@click.argument("run_id")
@click.argument("stage_id")
@click.option("--no-run", is_flag=True, default=False)
@click.option("--config", "config_value", default="stagegate.toml", show_default=True)
def approve_command(run_id: str, stage_id: str, no_run: bool, config_value: str) -> None:
    runtime = _runtime_or_fail(config_value)
    with _coordination(runtime, run_id) as owner:
        run = _load_run(runtime, run_id)
        try:
            keys = runtime.dispatcher.approve(run, stage_id)
        except RunStateError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"Approved for {stage_id}: {', '.join(keys)}")
        if no_run:
            return
        run = _drive(runtime, run, owner)
        _finish(runtime, run)


@cli.command("abort")
@click.argument("run_id")
@click.option("--reason", default="aborted by run owner", show_default=True)
@click.option("--config", "config_value", default="stagegate.toml", show_default=True)
def abort_command(run_id: str, reason: str, config_value: str) -> None:
    runtime = _runtime_or_fail(config_value)
    with _coordination(runtime, run_id):
        run = _load_run(runtime, run_id)
        if run.finished:
            raise click.ClickException(f"Run {run_id} is already {run.state}.")
        try:
            runtime.dispatcher.abort(run, reason)
            runtime.store.archive(run)
        except RunStateError as exc:
            raise click.ClickException(str(exc)) from exc
    click.echo(f"Aborted {run_id}: {reason}")

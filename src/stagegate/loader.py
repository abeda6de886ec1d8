"""Declarative documents for capability profiles and pipeline graphs.

Profiles are TOML files, or markdown agent definitions whose TOML
frontmatter sits between ``+++`` lines (the markdown body is opaque and
ignored). Pipelines are TOML files with a ``[[stages]]`` array. Glob and
action targets may use ``{name}`` placeholders from the shared conventions.
"""

from __future__ import annotations

import shlex
import tomllib
from pathlib import Path
from typing import Any

from stagegate.config import Conventions
from stagegate.errors import ConfigurationError
from stagegate.pipeline.graph import GateSpec, PipelineGraph, StageDefinition
from stagegate.policy.profile import ActionRequest, CapabilityProfile, CommandPattern, FsScope

FRONTMATTER_DELIMITER = "+++"
PERMISSION_TIERS = {"always": "allow", "ask_first": "ask", "never": "deny"}


def _split_frontmatter(text: str, source: str) -> str:
    lines = text.splitlines()
    if not lines or lines[0].strip() != FRONTMATTER_DELIMITER:
        raise ConfigurationError(f"{source}: markdown profile must start with '+++' frontmatter.")
    for index, line in enumerate(lines[1:], start=1):
        if line.strip() == FRONTMATTER_DELIMITER:
            return "\n".join(lines[1:index])
    raise ConfigurationError(f"{source}: unterminated '+++' frontmatter.")


def read_document(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Cannot read {path}: {exc}") from exc
    if path.suffix.lower() == ".md":
        text = _split_frontmatter(text, str(path))
    try:
        return tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"{path}: invalid TOML: {exc}") from exc


def _as_argv(value: Any, source: str, key: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        try:
            return tuple(shlex.split(value))
        except ValueError as exc:
            raise ConfigurationError(f"{source}: cannot parse '{key}': {exc}") from exc
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return tuple(value)
    raise ConfigurationError(f"{source}: '{key}' must be a string or a list of strings.")


def _as_str_list(value: Any, source: str, key: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigurationError(f"{source}: '{key}' must be a list of strings.")
    return list(value)


def _table_list(value: Any, source: str, key: str) -> list[dict[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, dict) for item in value):
        raise ConfigurationError(f"{source}: '{key}' must be an array of tables.")
    return list(value)


def profile_from_dict(
    data: dict[str, Any], conventions: Conventions, source: str = "<profile>"
) -> CapabilityProfile:
    if "actor" not in data or "role" not in data:
        raise ConfigurationError(f"{source}: profile requires 'actor' and 'role'.")

    fs_scopes: list[FsScope] = []
    for entry in _table_list(data.get("fs"), source, "fs"):
        if "glob" not in entry:
            raise ConfigurationError(f"{source}: every fs scope needs a 'glob'.")
        fs_scopes.append(
            FsScope(
                glob=conventions.expand(str(entry["glob"])),
                mode=str(entry.get("mode", "read")),  # type: ignore[arg-type]
                effect=str(entry.get("effect", "allow")),  # type: ignore[arg-type]
            )
        )

    patterns: list[CommandPattern] = []
    for entry in _table_list(data.get("commands"), source, "commands"):
        if "glob" not in entry:
            raise ConfigurationError(f"{source}: every command pattern needs a 'glob'.")
        try:
            priority = int(entry.get("priority", 0))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"{source}: command priority must be an integer.") from exc
        patterns.append(
            CommandPattern(
                glob=conventions.expand(str(entry["glob"])),
                effect=str(entry.get("effect", "allow")),  # type: ignore[arg-type]
                priority=priority,
            )
        )

    permissions = data.get("permissions", {})
    if not isinstance(permissions, dict):
        raise ConfigurationError(f"{source}: 'permissions' must be a table.")
    unknown_tiers = sorted(set(permissions) - set(PERMISSION_TIERS))
    if unknown_tiers:
        raise ConfigurationError(f"{source}: unknown permission tier(s): {unknown_tiers}")
    for tier, effect in PERMISSION_TIERS.items():
        for glob in _as_str_list(permissions.get(tier), source, f"permissions.{tier}"):
            patterns.append(
                CommandPattern(glob=conventions.expand(glob), effect=effect)  # type: ignore[arg-type]
            )

    return CapabilityProfile(
        actor_id=str(data["actor"]),
        role=str(data["role"]),
        allowed_tools=frozenset(_as_str_list(data.get("tools"), source, "tools")),
        fs_scopes=tuple(fs_scopes),
        command_patterns=tuple(patterns),
        command=_as_argv(data.get("command"), source, "command"),
        conventions=conventions,
    )


def load_profile(path: Path, conventions: Conventions) -> CapabilityProfile:
    return profile_from_dict(read_document(path), conventions, source=str(path))


def load_profiles(directory: Path, conventions: Conventions) -> dict[str, CapabilityProfile]:
    """Load every ``*.toml`` and ``*.md`` profile; keyed by role."""
    if not directory.is_dir():
        raise ConfigurationError(f"Profiles directory not found: {directory}")
    profiles: dict[str, CapabilityProfile] = {}
    for path in sorted([*directory.glob("*.toml"), *directory.glob("*.md")]):
        profile = load_profile(path, conventions)
        if profile.role in profiles:
            raise ConfigurationError(
                f"{path}: role '{profile.role}' already defined by actor "
                f"'{profiles[profile.role].actor_id}'."
            )
        profiles[profile.role] = profile
    return profiles


def _optional_int(value: Any, source: str, key: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{source}: '{key}' must be an integer.")
    return value


def stage_from_dict(
    data: dict[str, Any], conventions: Conventions, source: str = "<pipeline>"
) -> StageDefinition:
    if "id" not in data or "role" not in data:
        raise ConfigurationError(f"{source}: every stage needs 'id' and 'role'.")
    stage_id = str(data["id"])
    gate = data.get("gate")
    actions: list[ActionRequest] = []
    for entry in _table_list(data.get("actions"), source, f"{stage_id}.actions"):
        action = ActionRequest.from_dict(entry)
        actions.append(
            ActionRequest(
                kind=action.kind, target=conventions.expand(action.target), mode=action.mode
            )
        )
    timeout = data.get("timeout_seconds")
    if timeout is not None and not isinstance(timeout, (int, float)):
        raise ConfigurationError(f"{source}: '{stage_id}.timeout_seconds' must be a number.")
    return StageDefinition(
        stage_id=stage_id,
        required_role=str(data["role"]),
        predecessors=frozenset(_as_str_list(data.get("after"), source, f"{stage_id}.after")),
        gate=GateSpec.from_dict(gate) if gate is not None else None,
        retry_from=str(data["retry_from"]) if data.get("retry_from") else None,
        max_retries=_optional_int(data.get("max_retries"), source, f"{stage_id}.max_retries"),
        actions=tuple(actions),
        timeout_seconds=float(timeout) if timeout is not None else None,
    )


def pipeline_from_dict(
    data: dict[str, Any], conventions: Conventions, source: str = "<pipeline>"
) -> PipelineGraph:
    stages = [
        stage_from_dict(entry, conventions, source)
        for entry in _table_list(data.get("stages"), source, "stages")
    ]
    terminal = data.get("terminal")
    return PipelineGraph.from_stages(
        str(data.get("name", "pipeline")),
        stages,
        terminal=str(terminal) if terminal else None,
        conventions=conventions,
    )


def load_pipeline(path: Path, conventions: Conventions) -> PipelineGraph:
    return pipeline_from_dict(read_document(path), conventions, source=str(path))

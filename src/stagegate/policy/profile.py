from __future__ import annotations

from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Literal

from stagegate.config import Conventions
from stagegate.errors import ConfigurationError
from stagegate.policy.globs import (
    globs_overlap,
    match_path,
    normalize_path,
    specificity,
    validate_glob,
)

ActionKind = Literal["fs", "command", "tool"]
AccessMode = Literal["read", "write"]
Effect = Literal["allow", "deny", "ask"]

ACTION_KINDS = ("fs", "command", "tool")
ACCESS_MODES = ("read", "write")
EFFECTS = ("allow", "deny", "ask")


@dataclass(frozen=True, slots=True)
class ActionRequest:
    kind: ActionKind
    target: str
    mode: AccessMode = "read"

    def __post_init__(self) -> None:
        if self.kind not in ACTION_KINDS:
            raise ConfigurationError(f"Unsupported action kind: {self.kind}")
        if self.mode not in ACCESS_MODES:
            raise ConfigurationError(f"Unsupported access mode: {self.mode}")

    def __str__(self) -> str:
        if self.kind == "fs":
            return f"fs {self.mode} {self.target}"
        return f"{self.kind} {self.target}"

    @property
    def key(self) -> str:
        return str(self)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "target": self.target, "mode": self.mode}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActionRequest:
        if not isinstance(data, dict) or "kind" not in data or "target" not in data:
            raise ConfigurationError(f"Action must declare 'kind' and 'target': {data!r}")
        return cls(
            kind=str(data["kind"]),  # type: ignore[arg-type]
            target=str(data["target"]),
            mode=str(data.get("mode", "read")),  # type: ignore[arg-type]
        )


@dataclass(frozen=True, slots=True)
class FsScope:
    glob: str
    mode: AccessMode = "read"
    effect: Effect = "allow"

    def __post_init__(self) -> None:
        validate_glob(self.glob, path=True)
        if self.mode not in ACCESS_MODES:
            raise ConfigurationError(f"fs scope '{self.glob}' has invalid mode '{self.mode}'.")
        if self.effect not in EFFECTS:
            raise ConfigurationError(f"fs scope '{self.glob}' has invalid effect '{self.effect}'.")

    @property
    def specificity(self) -> int:
        return specificity(self.glob)

    def covers(self, mode: AccessMode) -> bool:
        # Granting write implies read; restricting read implies write.
        if self.effect == "allow":
            return self.mode == "write" or mode == "read"
        return self.mode == "read" or mode == "write"

    def describe(self) -> str:
        return f"fs:{self.effect}:{self.mode}:{self.glob}"


@dataclass(frozen=True, slots=True)
class CommandPattern:
    glob: str
    effect: Effect = "allow"
    priority: int = 0

    def __post_init__(self) -> None:
        validate_glob(self.glob)
        if self.effect not in EFFECTS:
            raise ConfigurationError(f"command pattern '{self.glob}' has invalid effect.")

    @property
    def specificity(self) -> int:
        return specificity(self.glob)

    def describe(self) -> str:
        return f"command:{self.effect}:{self.glob}"


@dataclass(frozen=True, slots=True)
class CapabilityProfile:
    """Immutable permission set for one actor."""

    actor_id: str
    role: str
    allowed_tools: frozenset[str] = frozenset()
    fs_scopes: tuple[FsScope, ...] = ()
    command_patterns: tuple[CommandPattern, ...] = ()
    command: tuple[str, ...] = ()
    conventions: Conventions = field(default_factory=Conventions, compare=False)

    def __post_init__(self) -> None:
        if not self.actor_id.strip():
            raise ConfigurationError("Capability profile requires a non-empty actor id.")
        if not self.role.strip():
            raise ConfigurationError(f"Profile '{self.actor_id}' requires a role.")
        self._reject_ambiguous_scopes()

    def _reject_ambiguous_scopes(self) -> None:
        """Reject fs scopes that tie on the same paths with conflicting modes.

        Two scopes tie when their globs have equal specificity and overlap
        (see ``globs_overlap``). A deny scope tying with both settles the
        conflict, so such profiles load.
        """
        def tied(first: FsScope, second: FsScope) -> bool:
            return first.specificity == second.specificity and globs_overlap(
                first.glob, second.glob
            )

        for first, second in combinations(self.fs_scopes, 2):
            if first.mode == second.mode or not tied(first, second):
                continue
            if any(
                scope.effect == "deny" and tied(scope, first) and tied(scope, second)
                for scope in self.fs_scopes
            ):
                continue
            where = (
                f"fs scope '{first.glob}'"
                if first.glob == second.glob
                else f"fs scopes '{first.glob}' and '{second.glob}'"
            )
            raise ConfigurationError(
                f"Profile '{self.actor_id}' declares conflicting modes "
                f"{sorted({first.mode, second.mode})} for {where}."
            )

    def forbids(self, tool_id: str) -> bool:
        return tool_id.strip() not in self.allowed_tools

    def matching_scopes(self, path: str, mode: AccessMode | None = None) -> list[FsScope]:
        normalized = normalize_path(path)
        if normalized is None:
            return []
        return [
            scope
            for scope in self.fs_scopes
            if match_path(scope.glob, normalized) and (mode is None or scope.covers(mode))
        ]

    def scope_for(self, path: str, mode: AccessMode | None = None) -> FsScope | None:
        """Most specific scope covering ``path``; deny wins ties, then ask."""
        candidates = self.matching_scopes(path, mode)
        if not candidates:
            return None
        rank = {"deny": 2, "ask": 1, "allow": 0}
        best = max(candidates, key=lambda scope: (scope.specificity, rank[scope.effect]))
        return best

    def to_dict(self) -> dict[str, Any]:
        return {
            "actor": self.actor_id,
            "role": self.role,
            "tools": sorted(self.allowed_tools),
            "command": list(self.command),
            "fs": [
                {"glob": scope.glob, "mode": scope.mode, "effect": scope.effect}
                for scope in self.fs_scopes
            ],
            "commands": [
                {"glob": pattern.glob, "effect": pattern.effect, "priority": pattern.priority}
                for pattern in self.command_patterns
            ],
        }

"""Pure permission evaluation over a capability profile.

Rules are ranked by the length of their literal prefix. At equal
specificity a deny rule always wins, then ask, then allow, so a command
matched by a deny pattern can never be allowed by an equally or less
specific allow pattern. Nothing here touches run state.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

from stagegate.policy.globs import match_command, normalize_command, normalize_path
from stagegate.policy.profile import ActionRequest, CapabilityProfile, CommandPattern, FsScope

VerdictEffect = Literal["allow", "deny", "confirm"]

NO_SCOPE_REASON = "no scope covers path"
NOT_ALLOWED_REASON = "not explicitly allowed"
ESCAPES_WORKSPACE_REASON = "path escapes workspace"
TOOL_NOT_ALLOWED_REASON = "tool not in allow-list"

_EFFECT_RANK = {"deny": 2, "ask": 1, "allow": 0}
_VERDICT_FOR_EFFECT: dict[str, VerdictEffect] = {
    "allow": "allow",
    "deny": "deny",
    "ask": "confirm",
}


@dataclass(frozen=True, slots=True)
class PolicyVerdict:
    effect: VerdictEffect
    reason: str = ""
    rule: str | None = None

    @property
    def allowed(self) -> bool:
        return self.effect == "allow"

    @property
    def denied(self) -> bool:
        return self.effect == "deny"

    @property
    def requires_confirmation(self) -> bool:
        return self.effect == "confirm"

    def to_dict(self) -> dict[str, str | None]:
        return {"effect": self.effect, "reason": self.reason, "rule": self.rule}


def _pick_winner(rules: list[tuple[int, str, int, int, str]]) -> tuple[str, str]:
    """Select (effect, rule) from (specificity, effect, priority, order, rule) tuples."""
    top = max(item[0] for item in rules)
    tied = [item for item in rules if item[0] == top]
    effect = max((item[1] for item in tied), key=lambda value: _EFFECT_RANK[value])
    same_effect = [item for item in tied if item[1] == effect]
    # Highest priority first, then earliest declaration, so the reported rule is stable.
    chosen = sorted(same_effect, key=lambda item: (-item[2], item[3]))[0]
    return effect, chosen[4]


def _verdict(effect: str, rule: str, subject: str) -> PolicyVerdict:
    verdict_effect = _VERDICT_FOR_EFFECT[effect]
    if verdict_effect == "allow":
        return PolicyVerdict("allow", f"{subject} allowed", rule)
    if verdict_effect == "confirm":
        return PolicyVerdict("confirm", f"{subject} requires confirmation", rule)
    return PolicyVerdict("deny", f"{subject} denied by policy", rule)


def _evaluate_fs(profile: CapabilityProfile, request: ActionRequest) -> PolicyVerdict:
    if normalize_path(request.target) is None:
        return PolicyVerdict("deny", ESCAPES_WORKSPACE_REASON)
    scopes: list[FsScope] = profile.matching_scopes(request.target, request.mode)
    if not scopes:
        return PolicyVerdict("deny", NO_SCOPE_REASON)
    effect, rule = _pick_winner(
        [
            (scope.specificity, scope.effect, 0, order, scope.describe())
            for order, scope in enumerate(scopes)
        ]
    )
    return _verdict(effect, rule, f"fs {request.mode}")


def _evaluate_command(profile: CapabilityProfile, request: ActionRequest) -> PolicyVerdict:
    command = normalize_command(request.target)
    patterns: list[tuple[int, CommandPattern]] = [
        (order, pattern)
        for order, pattern in enumerate(profile.command_patterns)
        if match_command(pattern.glob, command)
    ]
    if not patterns:
        return PolicyVerdict("deny", NOT_ALLOWED_REASON)
    effect, rule = _pick_winner(
        [
            (pattern.specificity, pattern.effect, pattern.priority, order, pattern.describe())
            for order, pattern in patterns
        ]
    )
    return _verdict(effect, rule, "command")


def evaluate(profile: CapabilityProfile, request: ActionRequest) -> PolicyVerdict:
    if request.kind == "fs":
        return _evaluate_fs(profile, request)
    if request.kind == "command":
        return _evaluate_command(profile, request)
    if profile.forbids(request.target):
        return PolicyVerdict("deny", TOOL_NOT_ALLOWED_REASON, f"tools:{request.target}")
    return PolicyVerdict("allow", "tool allowed", f"tools:{request.target}")


def evaluate_all(
    profile: CapabilityProfile, requests: Iterable[ActionRequest]
) -> list[tuple[ActionRequest, PolicyVerdict]]:
    return [(request, evaluate(profile, request)) for request in requests]

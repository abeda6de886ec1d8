from __future__ import annotations

from typing import Any


class StagegateError(RuntimeError):
    """Base class for engine errors."""


class ConfigurationError(StagegateError):
    """Raised when a profile, pipeline or config document is malformed or ambiguous."""


class CyclicPipelineError(ConfigurationError):
    """Raised when the stage graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__("Pipeline contains a cycle: " + " -> ".join(cycle))
        self.cycle = cycle


class UnreachableTerminalError(ConfigurationError):
    """Raised when an entry stage cannot reach a terminal stage."""

    def __init__(self, entry: str, terminals: list[str]) -> None:
        super().__init__(
            f"Terminal stage(s) {', '.join(terminals)} unreachable from entry stage '{entry}'."
        )
        self.entry = entry
        self.terminals = terminals


class PermissionDeniedError(StagegateError):
    """Raised when a declared action is denied by an actor's capability profile."""

    def __init__(self, action: Any, reason: str, *, rule: str | None = None) -> None:
        super().__init__(f"{action}: {reason}" + (f" (rule {rule})" if rule else ""))
        self.action = action
        self.reason = reason
        self.rule = rule


class StageFailure(StagegateError):
    """Raised when a stage fails; handled by the gate evaluator."""

    def __init__(self, message: str, *, stage_id: str | None = None) -> None:
        super().__init__(message)
        self.stage_id = stage_id


class StageTimeoutError(StageFailure):
    """Raised when a dispatched stage exceeds its timeout."""


class RunStateError(StagegateError):
    """Raised when run persistence or lease operations fail."""

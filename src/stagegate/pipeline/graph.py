from __future__ import annotations

import operator
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from stagegate.config import Conventions
from stagegate.errors import ConfigurationError, CyclicPipelineError, UnreachableTerminalError
from stagegate.policy.profile import ActionRequest

if TYPE_CHECKING:
    from stagegate.pipeline.run import WorkflowRun

GateKind = Literal["threshold", "boolean"]

COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    ">=": operator.ge,
    ">": operator.gt,
    "<=": operator.le,
    "<": operator.lt,
    "==": operator.eq,
    "!=": operator.ne,
}


@dataclass(frozen=True, slots=True)
class GateSpec:
    kind: GateKind
    comparator: str = ">="
    threshold_value: float | bool | None = None

    def __post_init__(self) -> None:
        if self.kind not in ("threshold", "boolean"):
            raise ConfigurationError(f"Unsupported gate kind: {self.kind}")
        if self.comparator not in COMPARATORS:
            raise ConfigurationError(f"Unsupported gate comparator: {self.comparator}")
        if self.kind == "threshold" and not isinstance(self.threshold_value, (int, float)):
            raise ConfigurationError("Threshold gates require a numeric threshold value.")
        if self.kind == "threshold" and isinstance(self.threshold_value, bool):
            raise ConfigurationError("Threshold gates require a numeric threshold value.")

    def satisfied_by(self, score: float | None) -> bool:
        if score is None:
            return False
        return bool(COMPARATORS[self.comparator](score, self.threshold_value))

    def describe(self) -> str:
        if self.kind == "boolean":
            return "status == passed"
        return f"score {self.comparator} {self.threshold_value}"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "comparator": self.comparator}
        if self.threshold_value is not None:
            payload["value"] = self.threshold_value
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GateSpec:
        if not isinstance(data, dict):
            raise ConfigurationError(f"Gate must be a table: {data!r}")
        kind = str(data.get("kind", "threshold"))
        return cls(
            kind=kind,  # type: ignore[arg-type]
            comparator=str(data.get("comparator", ">=" if kind == "threshold" else "==")),
            threshold_value=data.get("value", data.get("threshold")),
        )


@dataclass(frozen=True, slots=True)
class StageDefinition:
    stage_id: str
    required_role: str
    predecessors: frozenset[str] = frozenset()
    gate: GateSpec | None = None
    retry_from: str | None = None
    max_retries: int | None = None
    actions: tuple[ActionRequest, ...] = ()
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        if not self.stage_id.strip():
            raise ConfigurationError("Stage id must be non-empty.")
        if not self.required_role.strip():
            raise ConfigurationError(f"Stage '{self.stage_id}' requires a role.")
        if self.stage_id in self.predecessors:
            raise CyclicPipelineError([self.stage_id, self.stage_id])
        if self.max_retries is not None and self.max_retries < 0:
            raise ConfigurationError(f"Stage '{self.stage_id}' max_retries must be >= 0.")

    @property
    def rework_stage(self) -> str:
        return self.retry_from or self.stage_id


@dataclass(slots=True)
class PipelineGraph:
    """Validated DAG of stage definitions; read-only once constructed."""

    name: str
    stages: dict[str, StageDefinition]
    terminal: str | None = None
    conventions: Conventions = field(default_factory=Conventions)
    _successors: dict[str, set[str]] = field(init=False, repr=False)
    _order: list[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.stages:
            raise ConfigurationError(f"Pipeline '{self.name}' declares no stages.")
        self._successors = {stage_id: set() for stage_id in self.stages}
        for stage in self.stages.values():
            for predecessor in stage.predecessors:
                if predecessor not in self.stages:
                    raise ConfigurationError(
                        f"Stage '{stage.stage_id}' depends on unknown stage '{predecessor}'."
                    )
                self._successors[predecessor].add(stage.stage_id)
        self._order = self._topological_sort()
        self._validate_terminals()
        self._validate_retry_targets()

    @classmethod
    def from_stages(
        cls,
        name: str,
        stages: Iterable[StageDefinition],
        *,
        terminal: str | None = None,
        conventions: Conventions | None = None,
    ) -> PipelineGraph:
        by_id: dict[str, StageDefinition] = {}
        for stage in stages:
            if stage.stage_id in by_id:
                raise ConfigurationError(f"Duplicate stage id '{stage.stage_id}'.")
            by_id[stage.stage_id] = stage
        return cls(
            name=name,
            stages=by_id,
            terminal=terminal,
            conventions=conventions or Conventions(),
        )

    def _topological_sort(self) -> list[str]:
        visiting: list[str] = []
        visited: set[str] = set()
        order: list[str] = []

        def _visit(stage_id: str) -> None:
            if stage_id in visited:
                return
            if stage_id in visiting:
                start = visiting.index(stage_id)
                raise CyclicPipelineError([*visiting[start:], stage_id])
            visiting.append(stage_id)
            for predecessor in sorted(self.stages[stage_id].predecessors):
                _visit(predecessor)
            visiting.pop()
            visited.add(stage_id)
            order.append(stage_id)

        for stage_id in sorted(self.stages):
            _visit(stage_id)
        return order

    def _validate_terminals(self) -> None:
        sinks = [stage_id for stage_id in self._order if not self._successors[stage_id]]
        if not sinks:
            raise ConfigurationError(f"Pipeline '{self.name}' has no terminal stage.")
        if self.terminal is None:
            return
        if self.terminal not in self.stages:
            raise ConfigurationError(f"Terminal stage '{self.terminal}' is not defined.")
        if self._successors[self.terminal]:
            raise ConfigurationError(
                f"Terminal stage '{self.terminal}' has successors: "
                f"{', '.join(sorted(self._successors[self.terminal]))}"
            )
        for entry in self.entry_stages():
            if entry != self.terminal and self.terminal not in self.descendants(entry):
                raise UnreachableTerminalError(entry, [self.terminal])

    def _validate_retry_targets(self) -> None:
        for stage in self.stages.values():
            if stage.retry_from is None or stage.retry_from == stage.stage_id:
                continue
            if stage.retry_from not in self.stages:
                raise ConfigurationError(
                    f"Stage '{stage.stage_id}' retries from unknown stage '{stage.retry_from}'."
                )
            if stage.retry_from not in self.ancestors(stage.stage_id):
                raise ConfigurationError(
                    f"Stage '{stage.stage_id}' can only retry from itself or an upstream "
                    f"stage, not '{stage.retry_from}'."
                )

    def __contains__(self, stage_id: object) -> bool:
        return stage_id in self.stages

    def get(self, stage_id: str) -> StageDefinition:
        try:
            return self.stages[stage_id]
        except KeyError as exc:
            raise ConfigurationError(
                f"Unknown stage '{stage_id}' in pipeline '{self.name}'."
            ) from exc

    def topological_order(self) -> list[str]:
        return list(self._order)

    def entry_stages(self) -> list[str]:
        return [stage_id for stage_id in self._order if not self.stages[stage_id].predecessors]

    def terminal_stages(self) -> list[str]:
        if self.terminal is not None:
            return [self.terminal]
        return [stage_id for stage_id in self._order if not self._successors[stage_id]]

    def successors(self, stage_id: str) -> set[str]:
        return set(self._successors[stage_id])

    def descendants(self, stage_id: str) -> set[str]:
        found: set[str] = set()
        stack = list(self._successors[stage_id])
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            stack.extend(self._successors[current])
        return found

    def ancestors(self, stage_id: str) -> set[str]:
        found: set[str] = set()
        stack = list(self.stages[stage_id].predecessors)
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            stack.extend(self.stages[current].predecessors)
        return found

    def rework_set(self, stage_id: str) -> set[str]:
        """Stages reset to pending when ``stage_id`` routes a retry back upstream."""
        origin = self.stages[stage_id].rework_stage
        return {origin, *self.descendants(origin)}

    def next_eligible_stages(self, run: WorkflowRun) -> set[str]:
        eligible: set[str] = set()
        for stage_id, stage in self.stages.items():
            status = run.status_of(stage_id)
            if status in ("passed", "blocked"):
                continue
            if all(run.status_of(dep) == "passed" for dep in stage.predecessors):
                eligible.add(stage_id)
        return eligible

    def is_complete(self, run: WorkflowRun) -> bool:
        return all(run.status_of(stage_id) == "passed" for stage_id in self.terminal_stages())

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name, "stages": []}
        if self.terminal:
            payload["terminal"] = self.terminal
        for stage_id in self._order:
            stage = self.stages[stage_id]
            item: dict[str, Any] = {
                "id": stage.stage_id,
                "role": stage.required_role,
                "after": sorted(stage.predecessors),
            }
            if stage.gate is not None:
                item["gate"] = stage.gate.to_dict()
            if stage.retry_from:
                item["retry_from"] = stage.retry_from
            if stage.max_retries is not None:
                item["max_retries"] = stage.max_retries
            if stage.timeout_seconds is not None:
                item["timeout_seconds"] = stage.timeout_seconds
            if stage.actions:
                item["actions"] = [action.to_dict() for action in stage.actions]
            payload["stages"].append(item)
        return payload

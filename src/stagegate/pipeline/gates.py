from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from stagegate.pipeline.graph import GateSpec
from stagegate.pipeline.run import Outcome

Decision = Literal["advance", "retry", "halt"]


@dataclass(frozen=True, slots=True)
class GateEvaluator:
    """Turns a stage outcome into advance, retry or halt.

    Failing work is never discarded silently: an ungated stage that fails
    halts the run instead of retrying on its own, and a gated stage retries
    only while its budget lasts. Blocked outcomes always halt.
    """

    max_retries: int = 2

    def passes(self, gate: GateSpec | None, outcome: Outcome) -> bool:
        if outcome.status in ("blocked", "pending"):
            return False
        if gate is None or gate.kind == "boolean":
            return outcome.status == "passed"
        return outcome.status != "failed" and gate.satisfied_by(outcome.score)

    def decide(
        self,
        gate: GateSpec | None,
        outcome: Outcome,
        *,
        retries_used: int = 0,
        max_retries: int | None = None,
    ) -> Decision:
        if self.passes(gate, outcome):
            return "advance"
        if outcome.status == "blocked" or gate is None:
            return "halt"
        budget = self.max_retries if max_retries is None else max_retries
        if retries_used < budget:
            return "retry"
        return "halt"

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

from stagegate.errors import ConfigurationError, StageFailure
from stagegate.policy.profile import ActionRequest, CapabilityProfile

ResultStatus = Literal["passed", "failed"]


class ActorExecutionError(StageFailure):
    """Raised when an actor cannot produce a result."""

    def __init__(
        self,
        message: str,
        *,
        actor: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.actor = actor
        self.exit_code = exit_code
        self.retriable = retriable


@dataclass(frozen=True, slots=True)
class ActorRequest:
    run_id: str
    stage_id: str
    required_role: str
    input_artifacts: tuple[str, ...]
    profile: CapabilityProfile
    attempt: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "stageId": self.stage_id,
            "requiredRole": self.required_role,
            "inputArtifacts": list(self.input_artifacts),
            "capabilityProfile": self.profile.to_dict(),
            "attempt": self.attempt,
        }


@dataclass(frozen=True, slots=True)
class ActorResult:
    status: ResultStatus
    artifact_ref: str | None = None
    score: float | None = None
    declared_actions: tuple[ActionRequest, ...] = ()
    detail: str = ""
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActorResult:
        status = str(data.get("status", "failed"))
        if status not in ("passed", "failed"):
            raise ActorExecutionError(f"Actor returned unknown status '{status}'.", retriable=False)
        score = data.get("score")
        try:
            parsed_score = float(score) if score is not None else None
        except (TypeError, ValueError) as exc:
            raise ActorExecutionError(f"Actor returned non-numeric score: {score!r}") from exc
        actions = data.get("declaredActions", data.get("declared_actions", []))
        if not isinstance(actions, list):
            raise ActorExecutionError("Actor 'declaredActions' must be a list.", retriable=False)
        try:
            declared = tuple(ActionRequest.from_dict(item) for item in actions)
        except ConfigurationError as exc:
            raise ActorExecutionError(f"Actor declared a malformed action: {exc}") from exc
        return cls(
            status=status,  # type: ignore[arg-type]
            artifact_ref=data.get("artifactRef", data.get("artifact_ref")),
            score=parsed_score,
            declared_actions=declared,
            detail=str(data.get("detail", "")),
        )


class ActorAdapter(ABC):
    """Boundary to whatever performs a stage's work."""

    name: str = "actor"

    async def declare(self, request: ActorRequest) -> list[ActionRequest]:
        """Actions the actor intends to perform, checked before ``invoke``."""
        _ = request
        return []

    @abstractmethod
    async def invoke(self, request: ActorRequest) -> ActorResult:
        """Perform the stage and return an immutable result."""

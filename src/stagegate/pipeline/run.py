from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from stagegate.errors import RunStateError

StageStatus = Literal["pending", "passed", "failed", "blocked"]
RunState = Literal["active", "awaiting_confirmation", "halted", "blocked", "completed", "aborted"]

STAGE_STATUSES = ("pending", "passed", "failed", "blocked")
TERMINAL_RUN_STATES = {"completed", "aborted"}


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def new_run_id() -> str:
    return f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


@dataclass(frozen=True, slots=True)
class Outcome:
    stage_id: str
    status: StageStatus = "pending"
    artifact_ref: str | None = None
    score: float | None = None
    timestamp: str = field(default_factory=_utcnow_iso)
    reason: str = ""
    attempt: int = 0

    def with_status(self, status: StageStatus, reason: str = "") -> Outcome:
        return replace(self, status=status, reason=reason, timestamp=_utcnow_iso())

    def to_dict(self) -> dict[str, Any]:
        return {
            "stageId": self.stage_id,
            "status": self.status,
            "artifactRef": self.artifact_ref,
            "score": self.score,
            "timestamp": self.timestamp,
            "reason": self.reason,
            "attempt": self.attempt,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Outcome:
        status = str(data.get("status", "pending"))
        if status not in STAGE_STATUSES:
            raise RunStateError(f"Unknown stage status '{status}' in persisted run.")
        score = data.get("score")
        return cls(
            stage_id=str(data["stageId"]),
            status=status,  # type: ignore[arg-type]
            artifact_ref=data.get("artifactRef"),
            score=float(score) if score is not None else None,
            timestamp=str(data.get("timestamp") or _utcnow_iso()),
            reason=str(data.get("reason", "")),
            attempt=int(data.get("attempt", 0)),
        )


@dataclass(slots=True)
class WorkflowRun:
    """Mutable execution state, owned by a single coordinator."""

    run_id: str
    pipeline_ref: str
    stage_outcomes: dict[str, Outcome] = field(default_factory=dict)
    current_frontier: set[str] = field(default_factory=set)
    retry_counts: dict[str, int] = field(default_factory=dict)
    state: RunState = "active"
    halt: dict[str, Any] | None = None
    blocks: dict[str, dict[str, Any]] = field(default_factory=dict)
    pending_confirmations: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    approvals: dict[str, list[str]] = field(default_factory=dict)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)

    @classmethod
    def start(cls, pipeline_ref: str, stage_ids: list[str], run_id: str | None = None) -> WorkflowRun:
        run = cls(run_id=run_id or new_run_id(), pipeline_ref=pipeline_ref)
        for stage_id in stage_ids:
            run.stage_outcomes[stage_id] = Outcome(stage_id=stage_id)
            run.retry_counts[stage_id] = 0
        return run

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_RUN_STATES

    def status_of(self, stage_id: str) -> StageStatus:
        outcome = self.stage_outcomes.get(stage_id)
        return outcome.status if outcome else "pending"

    def outcome(self, stage_id: str) -> Outcome:
        return self.stage_outcomes.get(stage_id) or Outcome(stage_id=stage_id)

    def record(self, outcome: Outcome) -> None:
        self.stage_outcomes[outcome.stage_id] = outcome
        self.touch()

    def reset(self, stage_id: str) -> None:
        previous = self.outcome(stage_id)
        self.stage_outcomes[stage_id] = Outcome(stage_id=stage_id, attempt=previous.attempt)
        self.touch()

    def touch(self) -> None:
        self.updated_at = _utcnow_iso()

    def is_approved(self, stage_id: str, action_key: str) -> bool:
        return action_key in self.approvals.get(stage_id, [])

    def approve(self, stage_id: str) -> list[str]:
        """Grant every pending confirmation of ``stage_id``; returns the approved keys."""
        pending = self.pending_confirmations.pop(stage_id, None)
        if not pending:
            raise RunStateError(f"Stage '{stage_id}' has no pending confirmation.")
        keys = [str(item["action"]) for item in pending]
        granted = self.approvals.setdefault(stage_id, [])
        granted.extend(key for key in keys if key not in granted)
        if not self.pending_confirmations and self.state == "awaiting_confirmation":
            self.state = "active"
        self.touch()
        return keys

    def report(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "runId": self.run_id,
            "pipelineRef": self.pipeline_ref,
            "state": self.state,
            "frontier": sorted(self.current_frontier),
            "stages": {
                stage_id: {
                    "status": outcome.status,
                    "score": outcome.score,
                    "retries": self.retry_counts.get(stage_id, 0),
                    "reason": outcome.reason,
                }
                for stage_id, outcome in self.stage_outcomes.items()
            },
        }
        if self.halt:
            payload["halt"] = dict(self.halt)
        if self.blocks:
            payload["blocks"] = {key: dict(value) for key, value in self.blocks.items()}
        if self.pending_confirmations:
            payload["pendingConfirmations"] = {
                key: list(value) for key, value in self.pending_confirmations.items()
            }
        return payload

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "pipelineRef": self.pipeline_ref,
            "stageOutcomes": {
                stage_id: outcome.to_dict() for stage_id, outcome in self.stage_outcomes.items()
            },
            "retryCounts": dict(self.retry_counts),
            "currentFrontier": sorted(self.current_frontier),
            "state": self.state,
            "halt": self.halt,
            "blocks": self.blocks,
            "pendingConfirmations": self.pending_confirmations,
            "approvals": self.approvals,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowRun:
        if not isinstance(data, dict) or "runId" not in data or "pipelineRef" not in data:
            raise RunStateError("Persisted run is missing 'runId' or 'pipelineRef'.")
        outcomes = data.get("stageOutcomes", {})
        if not isinstance(outcomes, dict):
            raise RunStateError("Persisted run has malformed 'stageOutcomes'.")
        run = cls(
            run_id=str(data["runId"]),
            pipeline_ref=str(data["pipelineRef"]),
            stage_outcomes={
                str(stage_id): Outcome.from_dict({"stageId": stage_id, **payload})
                for stage_id, payload in outcomes.items()
            },
            current_frontier=set(data.get("currentFrontier", [])),
            retry_counts={str(k): int(v) for k, v in data.get("retryCounts", {}).items()},
            state=str(data.get("state", "active")),  # type: ignore[arg-type]
            halt=data.get("halt"),
            blocks=dict(data.get("blocks") or {}),
            pending_confirmations=dict(data.get("pendingConfirmations") or {}),
            approvals={str(k): list(v) for k, v in (data.get("approvals") or {}).items()},
            created_at=str(data.get("createdAt") or _utcnow_iso()),
            updated_at=str(data.get("updatedAt") or _utcnow_iso()),
        )
        return run

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Literal

from stagegate.actors.base import ActorExecutionError, ActorRequest, ActorResult
from stagegate.config import EngineConfig
from stagegate.errors import PermissionDeniedError, RunStateError, StageTimeoutError
from stagegate.pipeline.gates import GateEvaluator
from stagegate.pipeline.graph import PipelineGraph, StageDefinition
from stagegate.pipeline.run import Outcome, WorkflowRun
from stagegate.policy.matcher import PolicyVerdict, evaluate
from stagegate.policy.profile import ActionRequest, CapabilityProfile
from stagegate.roles import RoleRegistry

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]
StateHook = Callable[[WorkflowRun], None]
Confirmer = Callable[[str, ActionRequest, PolicyVerdict], Awaitable[bool]]

HALTED_STATES = {"halted", "completed", "aborted"}


@dataclass(slots=True)
class _StageResult:
    kind: Literal["outcome", "blocked", "confirm"]
    outcome: Outcome | None = None
    denial: dict[str, Any] | None = None
    confirmations: list[dict[str, Any]] = field(default_factory=list)
    granted: list[str] = field(default_factory=list)


class Dispatcher:
    """Single coordinator for workflow runs over one pipeline graph.

    Stage work runs in asyncio tasks; only the coordinator mutates run
    state, and only after a task has finished.

    ``state_hook`` receives the run after every applied stage result and
    after every operator transition (approve, resume, abort), so a
    persistent store can checkpoint completed stages while later ones are
    still in flight.
    """

    def __init__(
        self,
        graph: PipelineGraph,
        roles: RoleRegistry,
        *,
        config: EngineConfig | None = None,
        gate_evaluator: GateEvaluator | None = None,
        confirmer: Confirmer | None = None,
        event_hook: EventHook | None = None,
        state_hook: StateHook | None = None,
    ) -> None:
        roles.validate_for(graph)
        self.graph = graph
        self.roles = roles
        self.config = config or EngineConfig()
        self.gates = gate_evaluator or GateEvaluator(max_retries=max(0, self.config.max_retries))
        self.confirmer = confirmer
        self.event_hook = event_hook
        self.state_hook = state_hook
        self._in_flight: dict[str, dict[str, asyncio.Task[_StageResult]]] = {}

    def _emit(self, run: WorkflowRun, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook({"run_id": run.run_id, **event})

    def _checkpoint(self, run: WorkflowRun) -> None:
        if self.state_hook:
            self.state_hook(run)

    def create_run(self, run_id: str | None = None) -> WorkflowRun:
        run = WorkflowRun.start(self.graph.name, self.graph.topological_order(), run_id=run_id)
        self._refresh_frontier(run)
        logger.info("Created run %s for pipeline %s", run.run_id, self.graph.name)
        return run

    def in_flight(self, run: WorkflowRun) -> set[str]:
        return set(self._in_flight.get(run.run_id, {}))

    def _refresh_frontier(self, run: WorkflowRun) -> None:
        if run.finished:
            run.current_frontier = set()
            return
        run.current_frontier = self.graph.next_eligible_stages(run)

    def _max_retries_for(self, stage: StageDefinition) -> int:
        if stage.max_retries is not None:
            return stage.max_retries
        return self.gates.max_retries

    def _timeout_for(self, stage: StageDefinition) -> float | None:
        timeout = stage.timeout_seconds
        if timeout is None:
            timeout = float(self.config.stage_timeout_seconds)
        return timeout if timeout > 0 else None

    def _input_artifacts(self, run: WorkflowRun, stage: StageDefinition) -> tuple[str, ...]:
        artifacts: list[str] = []
        for predecessor in sorted(stage.predecessors):
            outcome = run.outcome(predecessor)
            if outcome.status == "passed" and outcome.artifact_ref:
                artifacts.append(outcome.artifact_ref)
        return tuple(artifacts)

    async def _check_actions(
        self,
        stage_id: str,
        profile: CapabilityProfile,
        actions: Iterable[ActionRequest],
        approved: set[str],
        granted: list[str],
    ) -> _StageResult | None:
        confirmations: list[dict[str, Any]] = []
        for action in actions:
            verdict = evaluate(profile, action)
            if verdict.allowed:
                continue
            if verdict.requires_confirmation:
                if action.key in approved or action.key in granted:
                    continue
                if self.confirmer is not None:
                    if await self.confirmer(stage_id, action, verdict):
                        granted.append(action.key)
                        continue
                    verdict = PolicyVerdict("deny", "confirmation refused", verdict.rule)
                else:
                    confirmations.append(
                        {"action": action.key, "reason": verdict.reason, "rule": verdict.rule}
                    )
                    continue
            error = PermissionDeniedError(action, verdict.reason, rule=verdict.rule)
            return _StageResult(
                kind="blocked",
                denial={
                    "action": action.key,
                    "reason": verdict.reason,
                    "rule": verdict.rule,
                    "error": str(error),
                },
                granted=granted,
            )
        if confirmations:
            return _StageResult(kind="confirm", confirmations=confirmations, granted=granted)
        return None

    async def _execute_stage(
        self,
        request: ActorRequest,
        stage: StageDefinition,
        approved: set[str],
    ) -> _StageResult:
        binding = self.roles.resolve(stage.required_role)
        granted: list[str] = []
        try:
            declared = [*stage.actions, *await binding.adapter.declare(request)]
        except ActorExecutionError as exc:
            return _StageResult(
                kind="outcome",
                outcome=Outcome(
                    stage_id=stage.stage_id,
                    status="failed",
                    reason=f"declare failed: {exc}",
                    attempt=request.attempt,
                ),
            )

        verdict = await self._check_actions(
            stage.stage_id, binding.profile, declared, approved, granted
        )
        if verdict is not None:
            return verdict

        timeout = self._timeout_for(stage)
        try:
            result: ActorResult = await asyncio.wait_for(
                binding.adapter.invoke(request), timeout=timeout
            )
        except TimeoutError:
            error = StageTimeoutError(
                f"stage timed out after {timeout:.1f}s", stage_id=stage.stage_id
            )
            return _StageResult(
                kind="outcome",
                outcome=Outcome(
                    stage_id=stage.stage_id,
                    status="failed",
                    reason=str(error),
                    attempt=request.attempt,
                ),
                granted=granted,
            )
        except ActorExecutionError as exc:
            return _StageResult(
                kind="outcome",
                outcome=Outcome(
                    stage_id=stage.stage_id,
                    status="failed",
                    reason=str(exc),
                    attempt=request.attempt,
                ),
                granted=granted,
            )
        except Exception as exc:
            logger.exception("Actor for stage %s raised unexpectedly", stage.stage_id)
            return _StageResult(
                kind="outcome",
                outcome=Outcome(
                    stage_id=stage.stage_id,
                    status="failed",
                    reason=f"{type(exc).__name__}: {exc}",
                    attempt=request.attempt,
                ),
                granted=granted,
            )

        checked = {action.key for action in declared}
        late_actions = [a for a in result.declared_actions if a.key not in checked]
        verdict = await self._check_actions(
            stage.stage_id, binding.profile, late_actions, approved, granted
        )
        if verdict is not None:
            return verdict

        return _StageResult(
            kind="outcome",
            outcome=Outcome(
                stage_id=stage.stage_id,
                status=result.status,
                artifact_ref=result.artifact_ref,
                score=result.score,
                reason="" if result.status == "passed" else result.detail,
                attempt=request.attempt,
            ),
            granted=granted,
        )

    def _launchable(self, run: WorkflowRun) -> list[str]:
        tasks = self._in_flight.get(run.run_id, {})
        return sorted(
            stage_id
            for stage_id in self.graph.next_eligible_stages(run)
            if stage_id not in tasks and stage_id not in run.pending_confirmations
        )

    def _launch_eligible(self, run: WorkflowRun, only: set[str] | None = None) -> list[str]:
        if run.state in HALTED_STATES:
            return []
        tasks = self._in_flight.setdefault(run.run_id, {})
        capacity = max(1, int(self.config.max_parallel_stages)) - len(tasks)
        eligible = self._launchable(run)
        if only is not None:
            eligible = [stage_id for stage_id in eligible if stage_id in only]
        launched: list[str] = []
        for stage_id in eligible[: max(0, capacity)]:
            stage = self.graph.get(stage_id)
            binding = self.roles.resolve(stage.required_role)
            request = ActorRequest(
                run_id=run.run_id,
                stage_id=stage_id,
                required_role=stage.required_role,
                input_artifacts=self._input_artifacts(run, stage),
                profile=binding.profile,
                attempt=run.outcome(stage_id).attempt + 1,
            )
            approved = set(run.approvals.get(stage_id, []))
            tasks[stage_id] = asyncio.create_task(
                self._execute_stage(request, stage, approved),
                name=f"{run.run_id}:{stage_id}",
            )
            launched.append(stage_id)
            self._emit(
                run,
                {
                    "event": "stage_dispatched",
                    "stage": stage_id,
                    "actor": binding.actor_id,
                    "attempt": request.attempt,
                },
            )
            logger.debug("Dispatched stage %s (attempt %s)", stage_id, request.attempt)
        return launched

    def _cancel_stage(self, run: WorkflowRun, stage_id: str) -> None:
        task = self._in_flight.get(run.run_id, {}).pop(stage_id, None)
        if task is not None and not task.done():
            task.cancel()

    def _cancel_all(self, run: WorkflowRun) -> None:
        for stage_id in list(self._in_flight.get(run.run_id, {})):
            self._cancel_stage(run, stage_id)

    def _collect(self, run: WorkflowRun, stage_id: str, task: asyncio.Task[_StageResult]) -> None:
        tasks = self._in_flight.get(run.run_id, {})
        if tasks.get(stage_id) is not task:
            return
        del tasks[stage_id]
        if task.cancelled() or run.state in HALTED_STATES:
            return
        self._apply(run, stage_id, task.result())
        self._checkpoint(run)

    def _apply(self, run: WorkflowRun, stage_id: str, result: _StageResult) -> None:
        stage = self.graph.get(stage_id)
        if result.granted:
            granted = run.approvals.setdefault(stage_id, [])
            granted.extend(key for key in result.granted if key not in granted)

        if result.kind == "confirm":
            run.pending_confirmations[stage_id] = list(result.confirmations)
            run.touch()
            self._emit(
                run,
                {
                    "event": "confirmation_required",
                    "stage": stage_id,
                    "actions": [item["action"] for item in result.confirmations],
                },
            )
            logger.info("Stage %s awaits confirmation", stage_id)
        elif result.kind == "blocked":
            denial = result.denial or {}
            run.record(
                run.outcome(stage_id).with_status("blocked", reason=str(denial.get("reason", "")))
            )
            run.blocks[stage_id] = dict(denial)
            self._emit(run, {"event": "stage_blocked", "stage": stage_id, **denial})
            logger.warning(
                "Stage %s blocked: %s (rule %s)",
                stage_id,
                denial.get("action"),
                denial.get("rule"),
            )
        else:
            self._apply_outcome(run, stage, result.outcome)

        self._refresh_frontier(run)

    def _apply_outcome(self, run: WorkflowRun, stage: StageDefinition, outcome: Outcome | None) -> None:
        if outcome is None:
            raise RunStateError(f"Stage '{stage.stage_id}' finished without an outcome.")
        retries_used = run.retry_counts.get(stage.stage_id, 0)
        decision = self.gates.decide(
            stage.gate,
            outcome,
            retries_used=retries_used,
            max_retries=self._max_retries_for(stage),
        )
        if decision != "advance" and outcome.status == "passed" and stage.gate is not None:
            outcome = outcome.with_status(
                "failed",
                reason=f"gate not satisfied: score {outcome.score} (requires {stage.gate.describe()})",
            )
        run.record(outcome)
        self._emit(
            run,
            {
                "event": "gate_decided",
                "stage": stage.stage_id,
                "decision": decision,
                "status": outcome.status,
                "score": outcome.score,
            },
        )

        if decision == "retry":
            run.retry_counts[stage.stage_id] = retries_used + 1
            for stage_id in self.graph.rework_set(stage.stage_id):
                self._cancel_stage(run, stage_id)
                run.reset(stage_id)
            self._emit(
                run,
                {
                    "event": "stage_retry",
                    "stage": stage.stage_id,
                    "retry_from": stage.rework_stage,
                    "retries": run.retry_counts[stage.stage_id],
                },
            )
            logger.info(
                "Stage %s failed its gate (%s); reworking from %s, retry %s",
                stage.stage_id,
                outcome.reason,
                stage.rework_stage,
                run.retry_counts[stage.stage_id],
            )
        elif decision == "halt":
            run.state = "halted"
            run.halt = {
                "stage": stage.stage_id,
                "retries": retries_used,
                "reason": outcome.reason or "stage failed",
            }
            self._cancel_all(run)
            self._emit(run, {"event": "run_halted", **run.halt})
            logger.error(
                "Run %s halted at stage %s after %s retries: %s",
                run.run_id,
                stage.stage_id,
                retries_used,
                run.halt["reason"],
            )

    def _settle(self, run: WorkflowRun) -> None:
        if run.state in HALTED_STATES:
            self._refresh_frontier(run)
            self._checkpoint(run)
            return
        if self.graph.is_complete(run):
            self._cancel_all(run)
            run.state = "completed"
            self._emit(run, {"event": "run_completed"})
            logger.info("Run %s completed", run.run_id)
        elif self._in_flight.get(run.run_id) or self._launchable(run):
            run.state = "active"
        elif run.pending_confirmations:
            run.state = "awaiting_confirmation"
        else:
            run.state = "blocked"
        run.touch()
        self._refresh_frontier(run)
        self._checkpoint(run)

    async def _wait_next(self, run: WorkflowRun) -> None:
        tasks = self._in_flight.get(run.run_id, {})
        by_task = {task: stage_id for stage_id, task in tasks.items()}
        done, _ = await asyncio.wait(by_task, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            self._collect(run, by_task[task], task)

    async def advance(self, run: WorkflowRun) -> WorkflowRun:
        """Dispatch the current wave of eligible stages and apply every result.

        The wave is the set of stages eligible when the call starts. When it
        is wider than ``max_parallel_stages`` the remaining members are
        launched as slots free up; stages that become eligible because of a
        wave result wait for the next call.
        """
        wave_ids = set(self._launchable(run))
        dispatched = set(self._launch_eligible(run, only=wave_ids))
        while True:
            tasks = self._in_flight.get(run.run_id, {})
            wave = {stage_id: tasks[stage_id] for stage_id in dispatched if stage_id in tasks}
            if not wave:
                break
            done, _ = await asyncio.wait(wave.values(), return_when=asyncio.FIRST_COMPLETED)
            for stage_id, task in wave.items():
                if task in done:
                    self._collect(run, stage_id, task)
            dispatched.update(self._launch_eligible(run, only=wave_ids - dispatched))
        self._settle(run)
        return run

    async def drive(self, run: WorkflowRun) -> WorkflowRun:
        """Run until completed, halted, blocked, aborted or awaiting confirmation."""
        while True:
            self._launch_eligible(run)
            if not self._in_flight.get(run.run_id):
                break
            await self._wait_next(run)
            if self.graph.is_complete(run):
                break
        self._settle(run)
        return run

    def approve(self, run: WorkflowRun, stage_id: str) -> list[str]:
        keys = run.approve(stage_id)
        self._emit(run, {"event": "confirmation_granted", "stage": stage_id, "actions": keys})
        self._refresh_frontier(run)
        self._checkpoint(run)
        return keys

    def resume(
        self,
        run: WorkflowRun,
        *,
        reset_retries: bool = True,
        unblock: Iterable[str] = (),
    ) -> WorkflowRun:
        """Clear a halt (and optionally blocked stages) after external intervention."""
        if run.finished:
            raise RunStateError(f"Run {run.run_id} is {run.state} and cannot be resumed.")
        unblock = tuple(unblock)
        if run.state == "halted" and run.halt:
            stage_id = str(run.halt["stage"])
            if reset_retries:
                run.retry_counts[stage_id] = 0
            for rework_id in self.graph.rework_set(stage_id):
                if run.status_of(rework_id) != "blocked":
                    run.reset(rework_id)
            run.halt = None
        for stage_id in unblock:
            if run.status_of(stage_id) != "blocked":
                raise RunStateError(f"Stage '{stage_id}' is not blocked.")
            run.blocks.pop(stage_id, None)
            run.reset(stage_id)
        run.state = "awaiting_confirmation" if run.pending_confirmations else "active"
        self._emit(run, {"event": "run_resumed", "unblocked": list(unblock)})
        self._refresh_frontier(run)
        self._checkpoint(run)
        return run

    def abort(self, run: WorkflowRun, reason: str = "run aborted") -> WorkflowRun:
        self._cancel_all(run)
        for stage_id, outcome in list(run.stage_outcomes.items()):
            if outcome.status not in ("passed", "blocked"):
                run.record(outcome.with_status("blocked", reason=reason))
        run.pending_confirmations.clear()
        run.state = "aborted"
        self._refresh_frontier(run)
        self._emit(run, {"event": "run_aborted", "reason": reason})
        logger.warning("Run %s aborted: %s", run.run_id, reason)
        self._checkpoint(run)
        return run

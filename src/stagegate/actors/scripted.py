from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Iterable

from stagegate.actors.base import ActorAdapter, ActorExecutionError, ActorRequest, ActorResult
from stagegate.policy.profile import ActionRequest


class ScriptedActor(ActorAdapter):
    """Replays queued results per stage; the last result repeats once the queue drains."""

    name = "scripted"

    def __init__(
        self,
        script: dict[str, Iterable[ActorResult]] | None = None,
        *,
        declared: dict[str, Iterable[ActionRequest]] | None = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self._queues: dict[str, deque[ActorResult]] = {
            stage_id: deque(results) for stage_id, results in (script or {}).items()
        }
        self._last: dict[str, ActorResult] = {}
        self._declared = {stage_id: list(actions) for stage_id, actions in (declared or {}).items()}
        self.delay_seconds = delay_seconds
        self.calls: list[str] = []

    def enqueue(self, stage_id: str, *results: ActorResult) -> None:
        self._queues.setdefault(stage_id, deque()).extend(results)

    async def declare(self, request: ActorRequest) -> list[ActionRequest]:
        return list(self._declared.get(request.stage_id, []))

    async def invoke(self, request: ActorRequest) -> ActorResult:
        self.calls.append(request.stage_id)
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        queue = self._queues.get(request.stage_id)
        if queue:
            self._last[request.stage_id] = queue.popleft()
        result = self._last.get(request.stage_id)
        if result is None:
            raise ActorExecutionError(
                f"No scripted result for stage '{request.stage_id}'.",
                actor=self.name,
                retriable=False,
            )
        return result

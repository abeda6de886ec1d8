from stagegate.actors.base import (
    ActorAdapter,
    ActorExecutionError,
    ActorRequest,
    ActorResult,
)
from stagegate.actors.command import CommandActor
from stagegate.actors.scripted import ScriptedActor

__all__ = [
    "ActorAdapter",
    "ActorExecutionError",
    "ActorRequest",
    "ActorResult",
    "CommandActor",
    "ScriptedActor",
]

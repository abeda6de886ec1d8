from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from stagegate.actors.base import ActorAdapter
from stagegate.errors import ConfigurationError
from stagegate.pipeline.graph import PipelineGraph
from stagegate.policy.profile import CapabilityProfile


@dataclass(frozen=True, slots=True)
class RoleBinding:
    role: str
    profile: CapabilityProfile
    adapter: ActorAdapter

    @property
    def actor_id(self) -> str:
        return self.profile.actor_id


class RoleRegistry:
    """Maps pipeline roles to the actor (and its profile) that fills them."""

    def __init__(self, bindings: Iterable[RoleBinding] = ()) -> None:
        self._bindings: dict[str, RoleBinding] = {}
        for binding in bindings:
            self.add(binding)

    def add(self, binding: RoleBinding) -> None:
        if binding.profile.role != binding.role:
            raise ConfigurationError(
                f"Profile '{binding.actor_id}' declares role '{binding.profile.role}', "
                f"cannot bind it to role '{binding.role}'."
            )
        if binding.role in self._bindings:
            raise ConfigurationError(
                f"Role '{binding.role}' is already bound to actor "
                f"'{self._bindings[binding.role].actor_id}'."
            )
        self._bindings[binding.role] = binding

    def bind(self, profile: CapabilityProfile, adapter: ActorAdapter) -> RoleBinding:
        binding = RoleBinding(role=profile.role, profile=profile, adapter=adapter)
        self.add(binding)
        return binding

    def resolve(self, role: str) -> RoleBinding:
        try:
            return self._bindings[role]
        except KeyError as exc:
            raise ConfigurationError(f"No actor bound for role '{role}'.") from exc

    def roles(self) -> list[str]:
        return sorted(self._bindings)

    def validate_for(self, graph: PipelineGraph) -> None:
        missing = sorted(
            {stage.required_role for stage in graph.stages.values()} - set(self._bindings)
        )
        if missing:
            raise ConfigurationError(
                f"Pipeline '{graph.name}' requires unbound role(s): {', '.join(missing)}"
            )

"""Base provider class for every backend the resource planner applies against."""

from abc import ABC, abstractmethod
from typing import Any

from infra_orchestrator.core.errors import ProviderError
from infra_orchestrator.core.models import ObservedResource, ObservedState, ResourceNode


class Provider(ABC):
    """
    Abstract base class for infrastructure providers.

    A provider is the external collaborator that actually creates, updates and
    deletes resources. The planner owns ordering and bookkeeping; a provider
    only performs one call at a time and reports provider-computed outputs.
    """

    name: str = "provider"

    @abstractmethod
    def create(self, node: ResourceNode, observed: ObservedState) -> dict[str, Any]:
        """
        Create a resource.

        Args:
            node: Desired definition of the resource
            observed: Current snapshot, used to resolve dependency outputs

        Returns:
            Provider-computed outputs for the new resource

        Raises:
            ProviderError: The external call failed
        """
        pass

    @abstractmethod
    def update(
        self,
        node: ResourceNode,
        current: ObservedResource,
        observed: ObservedState,
    ) -> dict[str, Any]:
        """
        Bring an existing resource in line with its desired definition.

        Returns:
            Provider-computed outputs after the update
        """
        pass

    @abstractmethod
    def delete(self, resource: ObservedResource, observed: ObservedState) -> None:
        """Delete a provisioned resource."""
        pass

    @abstractmethod
    def current_state(self) -> ObservedState:
        """Report the currently provisioned resources."""
        pass

    def dependency_output(
        self,
        node: ResourceNode,
        observed: ObservedState,
        key: str,
    ) -> list[Any]:
        """Collect ``key`` from the outputs of every dependency that exposes it."""
        values = []
        for dep in node.depends_on:
            resource = observed.get(dep)
            if resource is None:
                raise ProviderError(
                    f"{node.id}: dependency '{dep}' has not been provisioned",
                    details={"resource": node.id, "dependency": dep},
                )
            if key in resource.outputs:
                values.append(resource.outputs[key])
        return values

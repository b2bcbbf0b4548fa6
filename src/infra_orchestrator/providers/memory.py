"""In-memory provider for dry runs, local development and tests."""

import itertools
import logging
from typing import Any, Optional

from infra_orchestrator.core.errors import ProviderError
from infra_orchestrator.core.models import (
    ObservedResource,
    ObservedState,
    OperationType,
    ResourceNode,
    ResourceType,
)
from infra_orchestrator.providers.base import Provider
from infra_orchestrator.providers.state import StateStore

logger = logging.getLogger(__name__)

# Output key each resource type exposes to its dependents
OUTPUT_KEYS = {
    ResourceType.NETWORK: "vpc_id",
    ResourceType.SUBNET: "subnet_id",
    ResourceType.SECURITY_GROUP: "security_group_id",
    ResourceType.CLUSTER: "cluster_name",
    ResourceType.NODE_POOL: "nodegroup_name",
}

_ID_PREFIXES = {
    ResourceType.NETWORK: "vpc",
    ResourceType.SUBNET: "subnet",
    ResourceType.SECURITY_GROUP: "sg",
    ResourceType.CLUSTER: "cluster",
    ResourceType.NODE_POOL: "ng",
}


class InMemoryProvider(Provider):
    """Dictionary-backed provider.

    Resources live in a local ObservedState. When a StateStore is given the
    state is loaded from it on construction and written back after every
    change, which makes the provider usable as a local dry-run backend across
    CLI invocations.
    """

    name = "memory"

    def __init__(self, store: Optional[StateStore] = None, initial: Optional[ObservedState] = None):
        self._store = store
        if initial is not None:
            self._state = initial.model_copy(deep=True)
        elif store is not None:
            self._state = store.load()
        else:
            self._state = ObservedState()
        self._failures: dict[tuple[str, str], str] = {}
        self._counter = itertools.count(len(self._state) + 1)
        self.calls: list[tuple[str, str]] = []

    def fail_on(self, operation: OperationType, resource_id: str, message: str = "simulated provider failure") -> None:
        """Make the next ``operation`` on ``resource_id`` raise ProviderError."""
        self._failures[(operation.value, resource_id)] = message

    def clear_failures(self) -> None:
        self._failures.clear()

    def _check_failure(self, operation: OperationType, resource_id: str) -> None:
        self.calls.append((operation.value, resource_id))
        message = self._failures.pop((operation.value, resource_id), None)
        if message is not None:
            raise ProviderError(f"{operation.value} {resource_id}: {message}")

    def _persist(self) -> None:
        if self._store is not None:
            self._store.save(self._state)

    def _outputs(self, node: ResourceNode, observed: ObservedState) -> dict[str, Any]:
        for dep in node.depends_on:
            if dep not in observed:
                raise ProviderError(f"{node.id}: dependency '{dep}' has not been provisioned")
        key = OUTPUT_KEYS[node.type]
        return {key: f"{_ID_PREFIXES[node.type]}-{next(self._counter):08x}"}

    def create(self, node: ResourceNode, observed: ObservedState) -> dict[str, Any]:
        self._check_failure(OperationType.CREATE, node.id)
        if node.id in self._state:
            raise ProviderError(f"create {node.id}: resource already exists")
        outputs = self._outputs(node, observed)
        self._state.record(ObservedResource.from_node(node, outputs))
        self._persist()
        logger.info(f"[memory] created {node.type.value} {node.id}")
        return outputs

    def update(self, node: ResourceNode, current: ObservedResource, observed: ObservedState) -> dict[str, Any]:
        self._check_failure(OperationType.UPDATE, node.id)
        existing = self._state.get(node.id)
        if existing is None:
            raise ProviderError(f"update {node.id}: resource does not exist")
        self._state.record(ObservedResource.from_node(node, existing.outputs))
        self._persist()
        logger.info(f"[memory] updated {node.type.value} {node.id}")
        return dict(existing.outputs)

    def delete(self, resource: ObservedResource, observed: ObservedState) -> None:
        self._check_failure(OperationType.DELETE, resource.id)
        dependents = [
            rid for rid, res in self._state.resources.items() if resource.id in res.depends_on
        ]
        if dependents:
            raise ProviderError(
                f"delete {resource.id}: still referenced by {', '.join(sorted(dependents))}"
            )
        self._state.forget(resource.id)
        self._persist()
        logger.info(f"[memory] deleted {resource.type.value} {resource.id}")

    def current_state(self) -> ObservedState:
        return self._state.model_copy(deep=True)

"""Resource graph planner.

Diffs a DesiredState against an ObservedState into an ordered list of
operations and applies them against a provider:

    desired ──┐
              ├─► plan() ──► [create/update (dependencies first),
    observed ─┘               delete (dependents first)] ──► apply() ──► observed'

Apply is strictly sequential and stops at the first provider failure. The
partially updated snapshot is returned inside the raised ProviderError, and
planning again from it yields exactly the operations still outstanding.
"""

import logging
import time
from typing import Optional

from infra_orchestrator.core.errors import ProviderError
from infra_orchestrator.core.graph import reverse_topological_order, topological_order
from infra_orchestrator.core.models import (
    ApplyResult,
    DesiredState,
    ObservedResource,
    ObservedState,
    Operation,
    OperationResult,
    OperationStatus,
    OperationType,
)
from infra_orchestrator.providers.base import Provider
from infra_orchestrator.providers.state import StateStore

logger = logging.getLogger(__name__)


def plan(desired: DesiredState, observed: ObservedState) -> list[Operation]:
    """Compute the operations that converge ``observed`` to ``desired``.

    Args:
        desired: Target topology; must be acyclic with no dangling references
        observed: Current snapshot

    Returns:
        Creates and updates in dependency order, followed by deletes in
        reverse dependency order. Unordered nodes sort by identifier.

    Raises:
        DependencyCycle: The desired graph has a cycle
        UnknownDependency: A desired node references a missing identifier
    """
    operations: list[Operation] = []

    for resource_id in topological_order(desired.dependency_map()):
        node = desired.resources[resource_id]
        current = observed.get(resource_id)
        if current is None:
            operations.append(
                Operation(
                    type=OperationType.CREATE,
                    resource_id=resource_id,
                    resource_type=node.type,
                    desired=node,
                )
            )
            continue
        changed = node.changed_fields(current.as_node())
        if changed:
            operations.append(
                Operation(
                    type=OperationType.UPDATE,
                    resource_id=resource_id,
                    resource_type=node.type,
                    desired=node,
                    current=current,
                    changed_fields=changed,
                )
            )

    # Observed snapshots can reference resources deleted out of band
    for resource_id in reverse_topological_order(observed.dependency_map(), ignore_unknown=True):
        if resource_id in desired:
            continue
        current = observed.resources[resource_id]
        operations.append(
            Operation(
                type=OperationType.DELETE,
                resource_id=resource_id,
                resource_type=current.type,
                current=current,
            )
        )

    return operations


def _execute(operation: Operation, provider: Provider, observed: ObservedState) -> None:
    if operation.type == OperationType.CREATE:
        outputs = provider.create(operation.desired, observed)
        observed.record(ObservedResource.from_node(operation.desired, outputs))
    elif operation.type == OperationType.UPDATE:
        current = observed.get(operation.resource_id) or operation.current
        outputs = provider.update(operation.desired, current, observed)
        observed.record(ObservedResource.from_node(operation.desired, outputs))
    else:
        current = observed.get(operation.resource_id) or operation.current
        provider.delete(current, observed)
        observed.forget(operation.resource_id)


def apply(
    operations: list[Operation],
    provider: Provider,
    observed: ObservedState,
    state_store: Optional[StateStore] = None,
) -> ApplyResult:
    """Execute planned operations in order against ``provider``.

    Args:
        operations: Output of plan()
        provider: External collaborator performing the calls
        observed: Snapshot the plan was computed from; not modified
        state_store: Written after every successful operation when given

    Returns:
        ApplyResult with the new snapshot and per-operation results

    Raises:
        ProviderError: An operation failed. ``error.result`` carries the
            partial snapshot, the failed operation and the skipped remainder.
    """
    current = observed.model_copy(deep=True)
    results: list[OperationResult] = []

    for index, operation in enumerate(operations):
        started = time.monotonic()
        try:
            _execute(operation, provider, current)
        except ProviderError as e:
            elapsed = time.monotonic() - started
            logger.error(f"Apply halted at '{operation}': {e.message}")
            results.append(
                OperationResult(
                    operation=operation,
                    status=OperationStatus.FAILED,
                    error=e.message,
                    duration_seconds=elapsed,
                )
            )
            results.extend(
                OperationResult(operation=op, status=OperationStatus.SKIPPED, error="halted after earlier failure")
                for op in operations[index + 1:]
            )
            result = ApplyResult(observed=current, results=results)
            raise ProviderError(
                f"{operation} failed: {e.message}",
                operation=operation,
                result=result,
                details={
                    "succeeded": len(result.succeeded),
                    "skipped": len(result.skipped),
                    **e.details,
                },
            ) from e

        results.append(
            OperationResult(
                operation=operation,
                status=OperationStatus.SUCCEEDED,
                duration_seconds=time.monotonic() - started,
            )
        )
        logger.info(f"Applied '{operation}'")
        if state_store is not None:
            state_store.save(current)

    return ApplyResult(observed=current, results=results)


class Planner:
    """Cluster target facade: plans against and applies to one provider.

    The provider is injected explicitly; nothing here is module-global.
    """

    def __init__(self, provider: Provider, state_store: Optional[StateStore] = None):
        """
        Initialize the planner.

        Args:
            provider: Backend that performs create/update/delete calls
            state_store: Persisted after each successful operation, for
                providers that do not track their own state
        """
        self.provider = provider
        self.state_store = state_store

    def current_state(self) -> ObservedState:
        """Snapshot of what is currently provisioned."""
        return self.provider.current_state()

    def plan_for(self, desired: DesiredState) -> list[Operation]:
        """Plan ``desired`` against the provider's current state."""
        return plan(desired, self.current_state())

    def execution_order(self, desired: DesiredState) -> list[str]:
        """Identifiers of ``desired`` in creation order."""
        return topological_order(desired.dependency_map())

    def ensure_applied(self, desired: DesiredState) -> ObservedState:
        """Converge the provider to ``desired``.

        Raises:
            ProviderError: With the partial result attached
        """
        observed = self.current_state()
        operations = plan(desired, observed)
        if not operations:
            logger.info("Infrastructure is up to date")
            return observed
        logger.info(f"Applying {len(operations)} operation(s)")
        return apply(operations, self.provider, observed, self.state_store).observed

    def destroy(self) -> ObservedState:
        """Tear down every tracked resource, dependents first."""
        return self.ensure_applied(DesiredState())

"""
Exception hierarchy for the Infrastructure Orchestrator.

Every failure the planner or the pipeline executor can surface derives from
OrchestratorError so the CLI can report it uniformly.
"""

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from infra_orchestrator.core.models import ApplyResult, Operation


class OrchestratorError(Exception):
    """Base exception for all orchestrator errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# Graph Errors
# =============================================================================


class GraphError(OrchestratorError):
    """A resource or stage graph is malformed. Always fatal, raised before execution."""

    pass


class DependencyCycle(GraphError):
    """The dependency graph contains a cycle."""

    def __init__(self, members: list[str]):
        self.members = members
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(members)}",
            {"members": members},
        )


class UnknownDependency(GraphError):
    """A node declares a dependency on an identifier that is not in the graph."""

    def __init__(self, node: str, dependency: str):
        self.node = node
        self.dependency = dependency
        super().__init__(f"'{node}' depends on unknown '{dependency}'")


class DuplicateIdentifier(GraphError):
    """Two nodes share the same identifier."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Duplicate identifier: '{identifier}'")


# =============================================================================
# Execution Errors
# =============================================================================


class ProviderError(OrchestratorError):
    """An external create/update/delete call failed.

    When raised out of an apply, ``result`` holds the partial outcome: the
    observed state after the operations that did succeed, and which
    operations failed or were skipped.
    """

    def __init__(
        self,
        message: str,
        operation: Optional["Operation"] = None,
        result: Optional["ApplyResult"] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.operation = operation
        self.result = result
        super().__init__(message, details)


class GateFailure(OrchestratorError):
    """A pipeline stage's gate predicate failed."""

    def __init__(self, stage: str, reason: str):
        self.stage = stage
        self.reason = reason
        super().__init__(f"Stage '{stage}' failed: {reason}")


class RunCancelled(OrchestratorError):
    """A pipeline run was cancelled before all of its stages ran."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Pipeline run {run_id} was cancelled")


class CredentialError(OrchestratorError):
    """Required credentials are missing or empty. Raised before any stage runs."""

    def __init__(self, missing: dict[str, list[str]]):
        self.missing = missing
        summary = ", ".join(
            f"{stage} needs {', '.join(names)}" for stage, names in sorted(missing.items())
        )
        super().__init__(f"Missing credentials: {summary}", {"missing": missing})


# =============================================================================
# State Errors
# =============================================================================


class StateError(OrchestratorError):
    """An illegal mutation of a run or stage record."""

    pass


class InvalidTransition(StateError):
    """A stage was moved to a state its state machine does not allow."""

    def __init__(self, stage: str, current: str, target: str):
        self.stage = stage
        super().__init__(f"Stage '{stage}' cannot move from {current} to {target}")


class RunSealed(StateError):
    """A pipeline run in a terminal state was modified."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Pipeline run {run_id} is finished and can no longer change")


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(OrchestratorError):
    """A definition file is unreadable or invalid."""

    pass

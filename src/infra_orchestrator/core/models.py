"""Data models (Pydantic) shared by the resource planner and the pipeline executor.

This module defines:
- Resource graph types: ResourceNode, DesiredState, ObservedState
- Planner output: Operation, OperationResult, ApplyResult
- Pipeline records: Trigger, CredentialBundle, StageOutcome, PipelineRun
"""

import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field

from infra_orchestrator.core.errors import (
    DuplicateIdentifier,
    GateFailure,
    InvalidTransition,
    RunCancelled,
    RunSealed,
)


# =============================================================================
# Resource Graph Types
# =============================================================================


class ResourceType(str, Enum):
    """Kinds of infrastructure resources the planner manages."""

    NETWORK = "network"
    SUBNET = "subnet"
    SECURITY_GROUP = "security-group"
    CLUSTER = "cluster"
    NODE_POOL = "node-pool"


class ResourceNode(BaseModel):
    """A single resource in a desired topology."""

    id: str = Field(description="Unique resource identifier")
    type: ResourceType = Field(description="Kind of resource")
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(
        default_factory=list, description="Identifiers this resource references"
    )

    def changed_fields(self, other: "ResourceNode") -> list[str]:
        """Return the names of the declared fields that differ from ``other``."""
        changed = []
        if self.type != other.type:
            changed.append("type")
        keys = sorted(set(self.attributes) | set(other.attributes))
        for key in keys:
            if self.attributes.get(key) != other.attributes.get(key):
                changed.append(f"attributes.{key}")
        if self.depends_on != other.depends_on:
            changed.append("depends_on")
        return changed


class ObservedResource(ResourceNode):
    """A provisioned resource as reported by the provider.

    ``outputs`` holds provider-computed values (cloud ids, endpoints) and never
    takes part in diffing.
    """

    outputs: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_node(cls, node: ResourceNode, outputs: Optional[dict[str, Any]] = None) -> "ObservedResource":
        return cls(
            id=node.id,
            type=node.type,
            attributes=dict(node.attributes),
            depends_on=list(node.depends_on),
            outputs=dict(outputs or {}),
        )

    def as_node(self) -> ResourceNode:
        return ResourceNode(
            id=self.id,
            type=self.type,
            attributes=dict(self.attributes),
            depends_on=list(self.depends_on),
        )


class DesiredState(BaseModel):
    """Target topology authored by an operator."""

    resources: dict[str, ResourceNode] = Field(default_factory=dict)
    version: Optional[str] = Field(default=None, description="Operator-supplied revision label")

    @classmethod
    def from_nodes(cls, nodes: Iterable[ResourceNode], version: Optional[str] = None) -> "DesiredState":
        """Build a desired state, rejecting duplicate identifiers."""
        resources: dict[str, ResourceNode] = {}
        for node in nodes:
            if node.id in resources:
                raise DuplicateIdentifier(node.id)
            resources[node.id] = node
        return cls(resources=resources, version=version)

    @classmethod
    def from_observed(cls, observed: "ObservedState") -> "DesiredState":
        """Desired state that matches an observed snapshot exactly."""
        return cls(resources={rid: res.as_node() for rid, res in observed.resources.items()})

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self.resources

    def __len__(self) -> int:
        return len(self.resources)

    def dependency_map(self) -> dict[str, list[str]]:
        return {rid: list(node.depends_on) for rid, node in self.resources.items()}


class ObservedState(BaseModel):
    """Snapshot of provisioned resources keyed by identifier."""

    resources: dict[str, ObservedResource] = Field(default_factory=dict)
    captured_at: datetime = Field(default_factory=datetime.utcnow)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self.resources

    def __len__(self) -> int:
        return len(self.resources)

    def get(self, resource_id: str) -> Optional[ObservedResource]:
        return self.resources.get(resource_id)

    def record(self, resource: ObservedResource) -> None:
        """Store or replace a resource after a successful create/update."""
        self.resources[resource.id] = resource
        self.captured_at = datetime.utcnow()

    def forget(self, resource_id: str) -> None:
        """Drop a resource after a successful delete."""
        self.resources.pop(resource_id, None)
        self.captured_at = datetime.utcnow()

    def dependency_map(self) -> dict[str, list[str]]:
        return {rid: list(res.depends_on) for rid, res in self.resources.items()}


# =============================================================================
# Planner Output
# =============================================================================


class OperationType(str, Enum):
    """Kinds of planned operations."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Operation(BaseModel):
    """A single planned change to one resource."""

    type: OperationType
    resource_id: str
    resource_type: ResourceType
    desired: Optional[ResourceNode] = Field(
        default=None, description="Target definition for create/update"
    )
    current: Optional[ObservedResource] = Field(
        default=None, description="Observed resource for update/delete"
    )
    changed_fields: list[str] = Field(default_factory=list)

    @property
    def key(self) -> tuple[str, str]:
        return (self.type.value, self.resource_id)

    def __str__(self) -> str:
        return f"{self.type.value} {self.resource_id}"


class OperationStatus(str, Enum):
    """Outcome of one operation within an apply."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class OperationResult(BaseModel):
    """Result of executing (or skipping) one operation."""

    operation: Operation
    status: OperationStatus
    error: Optional[str] = None
    duration_seconds: float = Field(default=0.0)


class ApplyResult(BaseModel):
    """Outcome of an apply: the resulting snapshot and per-operation results."""

    observed: ObservedState
    results: list[OperationResult] = Field(default_factory=list)

    def _with_status(self, status: OperationStatus) -> list[Operation]:
        return [r.operation for r in self.results if r.status == status]

    @property
    def succeeded(self) -> list[Operation]:
        return self._with_status(OperationStatus.SUCCEEDED)

    @property
    def failed(self) -> list[Operation]:
        return self._with_status(OperationStatus.FAILED)

    @property
    def skipped(self) -> list[Operation]:
        return self._with_status(OperationStatus.SKIPPED)

    @property
    def success(self) -> bool:
        return all(r.status == OperationStatus.SUCCEEDED for r in self.results)


# =============================================================================
# Pipeline Records
# =============================================================================


class CredentialBundle(BaseModel):
    """Opaque credentials supplied with a trigger.

    Values are excluded from repr so they never leak into logs.
    """

    registry_token: Optional[str] = Field(default=None, repr=False)
    cloud_access_key_id: Optional[str] = Field(default=None, repr=False)
    cloud_secret_access_key: Optional[str] = Field(default=None, repr=False)
    cloud_session_token: Optional[str] = Field(default=None, repr=False)
    sonar_token: Optional[str] = Field(default=None, repr=False)
    extra: dict[str, str] = Field(default_factory=dict, repr=False)

    def get(self, name: str) -> Optional[str]:
        """Look up a credential by field name, falling back to ``extra``."""
        if name in type(self).model_fields and name != "extra":
            return getattr(self, name)
        return self.extra.get(name)

    def missing(self, names: Iterable[str]) -> list[str]:
        """Return the requested names that are absent or blank."""
        return [name for name in names if not (self.get(name) or "").strip()]

    def as_env(self, names: Iterable[str]) -> dict[str, str]:
        """Environment variables exposing the named credentials to a subprocess."""
        env = {}
        for name in names:
            value = self.get(name)
            if value:
                env[name.upper()] = value
        return env


class Trigger(BaseModel):
    """A change event that starts a pipeline run."""

    trigger_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    commit: str = Field(description="Commit reference")
    branch: str = Field(description="Branch name")
    credentials: CredentialBundle = Field(default_factory=CredentialBundle, exclude=True, repr=False)
    triggered_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def short_commit(self) -> str:
        return self.commit[:7]


_IMAGE_RE = re.compile(r"^(?P<registry>[^/]+)/(?P<repository>.+?):(?P<tag>[\w][\w.-]{0,127})$")


class ImageReference(BaseModel):
    """A container image handed from the containerize stage to the deploy stage."""

    registry: str
    repository: str
    tag: str

    @property
    def uri(self) -> str:
        return f"{self.registry}/{self.repository}:{self.tag}"

    @classmethod
    def parse(cls, value: str) -> "ImageReference":
        """Parse ``registry/repository:tag``."""
        match = _IMAGE_RE.match(value.strip())
        if not match:
            raise ValueError(f"Not an image reference: {value!r}")
        return cls(**match.groupdict())

    def __str__(self) -> str:
        return self.uri


class StageStatus(str, Enum):
    """Lifecycle of one stage within a run."""

    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


_STAGE_TRANSITIONS: dict[StageStatus, set[StageStatus]] = {
    StageStatus.PENDING: {StageStatus.RUNNING, StageStatus.SKIPPED},
    StageStatus.RUNNING: {StageStatus.PASSED, StageStatus.FAILED},
    StageStatus.PASSED: set(),
    StageStatus.FAILED: set(),
    StageStatus.SKIPPED: set(),
}


class StageOutcome(BaseModel):
    """Status and diagnostics of one stage."""

    name: str
    status: StageStatus = Field(default=StageStatus.PENDING)
    reason: Optional[str] = Field(default=None, description="Failure or skip reason")
    diagnostic: str = Field(default="", description="Free-text output for operators")
    artifact: Optional[str] = Field(default=None, description="Produced artifact reference")
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_finished(self) -> bool:
        return self.status in (StageStatus.PASSED, StageStatus.FAILED, StageStatus.SKIPPED)

    @property
    def duration_seconds(self) -> float:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def transition(self, target: StageStatus, reason: Optional[str] = None) -> None:
        """Move to ``target``, enforcing the stage state machine."""
        if target not in _STAGE_TRANSITIONS[self.status]:
            raise InvalidTransition(self.name, self.status.value, target.value)
        now = datetime.utcnow()
        if target == StageStatus.RUNNING:
            self.started_at = now
        else:
            self.finished_at = now
        self.status = target
        if reason is not None:
            self.reason = reason


class RunStatus(str, Enum):
    """Lifecycle of a pipeline run."""

    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"


class PipelineRun(BaseModel):
    """Record of stage outcomes for one trigger.

    ``stages`` holds every stage in execution order; ``completed`` lists stage
    names in the order they reached a terminal status. Once the run itself is
    terminal, it is sealed and any further mutation raises RunSealed.
    """

    run_id: str = Field(default_factory=lambda: f"run-{uuid.uuid4().hex[:8]}")
    trigger: Trigger
    status: RunStatus = Field(default=RunStatus.RUNNING)
    stages: dict[str, StageOutcome] = Field(default_factory=dict)
    completed: list[str] = Field(default_factory=list)
    cancelled: bool = Field(default=False)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @classmethod
    def start(cls, trigger: Trigger, stage_names: Iterable[str]) -> "PipelineRun":
        return cls(trigger=trigger, stages={name: StageOutcome(name=name) for name in stage_names})

    @property
    def is_terminal(self) -> bool:
        return self.status != RunStatus.RUNNING

    @property
    def passed(self) -> bool:
        return self.status == RunStatus.PASSED

    def outcome(self, name: str) -> StageOutcome:
        return self.stages[name]

    def _check_open(self) -> None:
        if self.is_terminal:
            raise RunSealed(self.run_id)

    def mark_running(self, name: str) -> None:
        self._check_open()
        self.stages[name].transition(StageStatus.RUNNING)

    def record(
        self,
        name: str,
        status: StageStatus,
        reason: Optional[str] = None,
        diagnostic: str = "",
        artifact: Optional[str] = None,
    ) -> StageOutcome:
        """Append a terminal stage outcome to the run."""
        self._check_open()
        outcome = self.stages[name]
        outcome.transition(status, reason)
        if diagnostic:
            outcome.diagnostic = diagnostic
        if artifact is not None:
            outcome.artifact = artifact
        self.completed.append(name)
        return outcome

    def finish(self) -> None:
        """Seal the run: passed iff every stage passed."""
        self._check_open()
        all_passed = all(o.status == StageStatus.PASSED for o in self.stages.values())
        self.status = RunStatus.PASSED if all_passed and not self.cancelled else RunStatus.FAILED
        self.finished_at = datetime.utcnow()

    def failures(self) -> list[GateFailure]:
        """Gate failures in completion order."""
        return [
            GateFailure(name, self.stages[name].reason or "gate failed")
            for name in self.completed
            if self.stages[name].status == StageStatus.FAILED
        ]

    def with_status(self, status: StageStatus) -> list[str]:
        return [name for name, outcome in self.stages.items() if outcome.status == status]

    def raise_for_status(self) -> None:
        """Raise the first gate failure of a failed run, or RunCancelled if it was only cancelled."""
        failures = self.failures()
        if failures:
            raise failures[0]
        if self.cancelled:
            raise RunCancelled(self.run_id)

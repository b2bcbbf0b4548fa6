"""Pipeline stage definitions, action results and gate predicates."""

import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, Field

from infra_orchestrator.core.models import Trigger


class ActionResult(BaseModel):
    """What a stage action reports back to the executor."""

    exit_code: int = Field(default=0)
    output: str = Field(default="", description="Captured command output")
    diagnostic: str = Field(default="", description="Short human-readable summary")
    artifact: Optional[str] = Field(default=None, description="Produced artifact reference")


class GateDecision(BaseModel):
    """Result of evaluating a stage gate."""

    passed: bool
    reason: str = ""


@dataclass
class StageContext:
    """Everything an action may read while it runs."""

    stage: str
    trigger: Trigger
    artifacts: dict[str, str] = field(default_factory=dict)

    def credential(self, name: str) -> Optional[str]:
        return self.trigger.credentials.get(name)

    def template_vars(self) -> dict[str, Any]:
        """Values available to ``{placeholder}`` substitution in commands and artifacts."""
        return {
            "commit": self.trigger.commit,
            "short_commit": self.trigger.short_commit,
            "branch": self.trigger.branch,
            "stage": self.stage,
            "artifacts": self.artifacts,
        }

    def render(self, template: str) -> str:
        return template.format(**self.template_vars())


StageAction = Callable[[StageContext], Union[ActionResult, Awaitable[ActionResult], None]]
GatePredicate = Callable[[ActionResult], GateDecision]


def exit_code_gate(result: ActionResult) -> GateDecision:
    """Pass when the action exited with status 0."""
    if result.exit_code == 0:
        return GateDecision(passed=True)
    reason = result.diagnostic or f"exited with status {result.exit_code}"
    return GateDecision(passed=False, reason=reason)


def output_pattern_gate(pattern: str, reason: str) -> GatePredicate:
    """Fail when the action failed or its output matches ``pattern``.

    Used for scanners that report findings without a failing exit code.
    """
    regex = re.compile(pattern, re.MULTILINE)

    def gate(result: ActionResult) -> GateDecision:
        decision = exit_code_gate(result)
        if not decision.passed:
            return decision
        if regex.search(result.output):
            return GateDecision(passed=False, reason=reason)
        return GateDecision(passed=True)

    return gate


@dataclass
class PipelineStage:
    """A named step of a pipeline.

    Attributes:
        name: Unique stage name
        action: Callable doing the work; sync callables run in a worker thread
        needs: Upstream stage names that must pass first
        gate: Predicate deciding pass/fail from the action result
        produces: Artifact reference template, used when the action returns none
        requires: Credential names that must be present in the trigger
        timeout: Seconds before the stage is failed; None for no limit
    """

    name: str
    action: StageAction
    needs: list[str] = field(default_factory=list)
    gate: GatePredicate = exit_code_gate
    produces: Optional[str] = None
    requires: list[str] = field(default_factory=list)
    timeout: Optional[float] = None

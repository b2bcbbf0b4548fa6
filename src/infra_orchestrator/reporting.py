"""Rich console rendering of plans, apply results and pipeline runs."""

from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.text import Text

from infra_orchestrator.core.models import (
    ApplyResult,
    ObservedState,
    Operation,
    OperationStatus,
    OperationType,
    PipelineRun,
    StageOutcome,
    StageStatus,
)

_OPERATION_STYLES = {
    OperationType.CREATE: ("+", "green"),
    OperationType.UPDATE: ("~", "yellow"),
    OperationType.DELETE: ("-", "red"),
}

_RESULT_STYLES = {
    OperationStatus.SUCCEEDED: "green",
    OperationStatus.FAILED: "bold red",
    OperationStatus.SKIPPED: "dim",
}

_STAGE_STYLES = {
    StageStatus.PENDING: "dim",
    StageStatus.RUNNING: "cyan",
    StageStatus.PASSED: "green",
    StageStatus.FAILED: "bold red",
    StageStatus.SKIPPED: "yellow",
}


def plan_table(operations: list[Operation]) -> Table:
    """Table of planned operations in execution order."""
    table = Table(title="Execution Plan", show_lines=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Action")
    table.add_column("Resource", style="bold")
    table.add_column("Type")
    table.add_column("Changes", style="dim")

    for index, op in enumerate(operations, start=1):
        symbol, style = _OPERATION_STYLES[op.type]
        table.add_row(
            str(index),
            Text(f"{symbol} {op.type.value}", style=style),
            op.resource_id,
            op.resource_type.value,
            ", ".join(op.changed_fields),
        )
    return table


def plan_summary(operations: list[Operation]) -> str:
    counts = {t: sum(1 for op in operations if op.type == t) for t in OperationType}
    return (
        f"Plan: {counts[OperationType.CREATE]} to create, "
        f"{counts[OperationType.UPDATE]} to update, "
        f"{counts[OperationType.DELETE]} to delete."
    )


def apply_table(result: ApplyResult) -> Table:
    """Table of per-operation apply results."""
    table = Table(title="Apply Result")
    table.add_column("Operation")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Error", style="red")

    for item in result.results:
        table.add_row(
            str(item.operation),
            Text(item.status.value, style=_RESULT_STYLES[item.status]),
            f"{item.duration_seconds:.1f}s",
            escape(item.error or ""),
        )
    return table


def state_table(observed: ObservedState) -> Table:
    """Table of currently provisioned resources."""
    table = Table(title="Observed State")
    table.add_column("Resource", style="bold")
    table.add_column("Type")
    table.add_column("Depends On", style="dim")
    table.add_column("Outputs")

    for resource_id in sorted(observed.resources):
        resource = observed.resources[resource_id]
        table.add_row(
            resource_id,
            resource.type.value,
            ", ".join(resource.depends_on),
            ", ".join(f"{k}={v}" for k, v in resource.outputs.items()),
        )
    return table


def run_table(run: PipelineRun) -> Table:
    """Table of stage outcomes for a pipeline run."""
    style = "green" if run.passed else "red"
    table = Table(title=f"Pipeline {run.run_id}: [{style}]{run.status.value.upper()}[/{style}]")
    table.add_column("Stage", style="bold")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Details")

    for name, outcome in run.stages.items():
        table.add_row(
            name,
            Text(outcome.status.value, style=_STAGE_STYLES[outcome.status]),
            f"{outcome.duration_seconds:.1f}s",
            escape(outcome.reason or outcome.artifact or ""),
        )
    return table


class ConsoleReporter:
    """Stage reporter printing each outcome as it is recorded."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def __call__(self, outcome: StageOutcome) -> None:
        style = _STAGE_STYLES[outcome.status]
        line = f"[{style}]{outcome.status.value:>7}[/{style}]  [bold]{outcome.name}[/bold]"
        if outcome.reason:
            line += f"  [dim]{escape(outcome.reason)}[/dim]"
        elif outcome.artifact:
            line += f"  [dim]{escape(outcome.artifact)}[/dim]"
        self.console.print(line)

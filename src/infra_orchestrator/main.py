"""Main entry point for the Infrastructure Orchestrator CLI."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.text import Text

from infra_orchestrator import __version__
from infra_orchestrator.config import Settings, get_credential_settings, get_settings
from infra_orchestrator.core.artifacts import ArtifactManager
from infra_orchestrator.core.errors import OrchestratorError, ProviderError
from infra_orchestrator.core.models import CredentialBundle, DesiredState, Trigger
from infra_orchestrator.loader import load_infrastructure, load_pipeline
from infra_orchestrator.pipeline import PipelineExecutor
from infra_orchestrator.pipeline.defaults import default_pipeline
from infra_orchestrator.planner import Planner, apply, build_planner, plan
from infra_orchestrator.reporting import (
    ConsoleReporter,
    apply_table,
    plan_summary,
    plan_table,
    run_table,
    state_table,
)

console = Console()
logger = logging.getLogger(__name__)


def print_banner() -> None:
    """Print the application banner."""
    banner = Text()
    banner.append("Infrastructure Orchestrator", style="bold blue")
    banner.append(f" v{__version__}\n", style="dim")
    banner.append("Resource graph planning and gated build pipelines", style="italic")

    console.print(Panel(banner, title="[bold]infra-orch[/bold]", border_style="blue"))


def credential_bundle() -> CredentialBundle:
    """Build the trigger credential bundle from the environment."""
    creds = get_credential_settings()
    return CredentialBundle(
        registry_token=creds.registry_token,
        cloud_access_key_id=creds.aws_access_key_id,
        cloud_secret_access_key=creds.aws_secret_access_key,
        cloud_session_token=creds.aws_session_token,
        sonar_token=creds.sonar_token,
    )


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/red] {escape(str(error))}")
    sys.exit(1)


def _context(infrastructure: Optional[Path]) -> tuple[Settings, Planner, DesiredState]:
    settings = get_settings()
    desired = load_infrastructure(infrastructure or settings.infrastructure_file)
    planner = build_planner(settings, credential_bundle())
    return settings, planner, desired


def _apply(planner: Planner, desired: DesiredState, auto_approve: bool, artifacts: ArtifactManager) -> None:
    observed = planner.current_state()
    operations = plan(desired, observed)
    if not operations:
        console.print("[green]No changes. Infrastructure is up to date.[/green]")
        return

    console.print(plan_table(operations))
    console.print(plan_summary(operations))

    if not auto_approve and not Confirm.ask("[bold]Apply these changes?[/bold]", default=False):
        console.print("[yellow]Apply cancelled.[/yellow]")
        return

    apply_id = f"apply-{datetime.utcnow():%Y%m%d-%H%M%S}"
    try:
        result = apply(operations, planner.provider, observed, planner.state_store)
    except ProviderError as e:
        if e.result is not None:
            artifacts.save_plan(apply_id, operations, e.result)
            console.print(apply_table(e.result))
            console.print("[yellow]State was partially updated; run apply again to converge.[/yellow]")
        _fail(e)
        return

    plan_file = artifacts.save_plan(apply_id, operations, result)
    console.print(apply_table(result))
    console.print(f"[dim]Plan record: {plan_file}[/dim]")
    console.print(f"[green]Apply complete: {len(result.succeeded)} operation(s).[/green]")


infrastructure_option = click.option(
    "--infrastructure",
    "-f",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Infrastructure definition (defaults to ORCHESTRATOR_INFRASTRUCTURE_FILE)",
)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Infrastructure Orchestrator - plan infrastructure and run gated pipelines."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


@cli.command("plan")
@infrastructure_option
def plan_command(infrastructure: Optional[Path]) -> None:
    """Show the operations needed to converge the infrastructure."""
    try:
        _, planner, desired = _context(infrastructure)
        operations = planner.plan_for(desired)
    except OrchestratorError as e:
        _fail(e)
        return

    if not operations:
        console.print("[green]No changes. Infrastructure is up to date.[/green]")
        return
    console.print(plan_table(operations))
    console.print(plan_summary(operations))


@cli.command("apply")
@infrastructure_option
@click.option("--auto-approve", is_flag=True, help="Skip the confirmation prompt")
def apply_command(infrastructure: Optional[Path], auto_approve: bool) -> None:
    """Converge the infrastructure to its definition."""
    try:
        settings, planner, desired = _context(infrastructure)
    except OrchestratorError as e:
        _fail(e)
        return

    if settings.is_production and not auto_approve:
        console.print("[yellow]Production environment: review the plan carefully.[/yellow]")
    try:
        _apply(planner, desired, auto_approve, ArtifactManager(settings.artifacts_dir))
    except OrchestratorError as e:
        _fail(e)


@cli.command()
@click.option("--auto-approve", is_flag=True, help="Skip the confirmation prompt")
def destroy(auto_approve: bool) -> None:
    """Tear down every tracked resource, dependents first."""
    settings = get_settings()
    try:
        planner = build_planner(settings, credential_bundle())
        _apply(planner, DesiredState(), auto_approve, ArtifactManager(settings.artifacts_dir))
    except OrchestratorError as e:
        _fail(e)


@cli.command()
@infrastructure_option
def graph(infrastructure: Optional[Path]) -> None:
    """Print the resource creation order."""
    try:
        _, planner, desired = _context(infrastructure)
        order = planner.execution_order(desired)
    except OrchestratorError as e:
        _fail(e)
        return

    for index, resource_id in enumerate(order, start=1):
        node = desired.resources[resource_id]
        deps = f" [dim]← {', '.join(node.depends_on)}[/dim]" if node.depends_on else ""
        console.print(f"{index:>3}. [bold]{resource_id}[/bold] ({node.type.value}){deps}")


@cli.command()
@click.option("--commit", "-c", required=True, help="Commit reference that triggered the run")
@click.option("--branch", "-b", default="main", help="Branch name")
@click.option(
    "--pipeline",
    "-p",
    "pipeline_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Pipeline definition (defaults to the standard pipeline)",
)
@infrastructure_option
@click.option("--parallel", type=int, default=None, help="Concurrent stage slots")
def run(
    commit: str,
    branch: str,
    pipeline_file: Optional[Path],
    infrastructure: Optional[Path],
    parallel: Optional[int],
) -> None:
    """Run the build pipeline for a commit."""
    print_banner()
    try:
        settings, planner, desired = _context(infrastructure)
        pipeline_path = pipeline_file or settings.pipeline_file
        if pipeline_path:
            stages = load_pipeline(pipeline_path, settings, planner, desired)
        else:
            stages = default_pipeline(settings, planner, desired)

        trigger = Trigger(commit=commit, branch=branch, credentials=credential_bundle())
        console.print(f"\n[green]Environment:[/green] {settings.environment.value.upper()}")
        console.print(f"[green]Trigger:[/green] {branch}@{trigger.short_commit}")
        console.print(f"[green]Stages:[/green] {' → '.join(stage.name for stage in stages)}\n")

        executor = PipelineExecutor(
            max_parallel=parallel or settings.max_parallel_stages,
            reporter=ConsoleReporter(console),
        )
        pipeline_run = executor.run_sync(stages, trigger)
    except OrchestratorError as e:
        _fail(e)
        return

    artifacts = ArtifactManager(settings.artifacts_dir)
    artifacts.save_run(pipeline_run)
    summary = artifacts.generate_summary(pipeline_run)

    console.print()
    console.print(run_table(pipeline_run))
    console.print(f"[dim]Summary: {summary}[/dim]")

    if not pipeline_run.passed:
        sys.exit(1)


@cli.command()
def status() -> None:
    """Show configuration and currently provisioned resources."""
    settings = get_settings()

    console.print(Panel.fit(
        f"""[bold]Project:[/bold] {settings.resource_prefix}
[bold]Environment:[/bold] {settings.environment.value.upper()}
[bold]Provider:[/bold] {settings.provider.value}
[bold]Region:[/bold] {settings.aws_region}
[bold]State File:[/bold] {settings.state_file}
""",
        title="Orchestrator Status",
        border_style="green",
    ))

    try:
        planner = build_planner(settings, credential_bundle())
        console.print(state_table(planner.current_state()))
    except OrchestratorError as e:
        _fail(e)
        return

    runs = ArtifactManager(settings.artifacts_dir).list_runs()
    if runs:
        console.print(f"[dim]Last run: {runs[0]}[/dim]")


if __name__ == "__main__":
    cli()

"""The standard build pipeline: compile → scan → test → build → containerize → deploy."""

from typing import Optional

from infra_orchestrator.config import ProviderKind, Settings
from infra_orchestrator.core.models import DesiredState
from infra_orchestrator.pipeline.actions import Command, CommandAction, DeployAction
from infra_orchestrator.pipeline.stage import PipelineStage, output_pattern_gate
from infra_orchestrator.planner.planner import Planner

CLOUD_CREDENTIALS = ["cloud_access_key_id", "cloud_secret_access_key"]


def image_template(settings: Settings) -> str:
    """Image reference template tagged with the short commit."""
    return f"{settings.registry}/{settings.repository}:{{short_commit}}"


def deploy_target(settings: Settings) -> tuple[Optional[str], list[str]]:
    """Region for kubeconfig refresh and the credentials a deploy stage needs.

    Only the AWS provider needs either; other providers deploy against the
    current kubeconfig.
    """
    if settings.provider == ProviderKind.AWS:
        return settings.aws_region, list(CLOUD_CREDENTIALS)
    return None, []


def default_pipeline(
    settings: Settings,
    planner: Planner,
    desired: DesiredState,
    sonar: bool = True,
) -> list[PipelineStage]:
    """Build the standard Maven/Docker/Kubernetes pipeline.

    Args:
        settings: Application settings (registry, namespace, timeouts)
        planner: Cluster target used by the deploy stage
        desired: Infrastructure the deploy stage converges before scheduling
        sonar: Include the SonarQube analysis in the scan stage

    Returns:
        Stage definitions in dependency order
    """
    timeout = settings.stage_timeout_seconds
    image = image_template(settings)

    scan_commands = [
        Command(args=["gitleaks", "detect", "--source", ".", "--exit-code", "1"]),
        Command(args=["trivy", "fs", "--exit-code", "1", "--severity", "HIGH,CRITICAL", "."]),
    ]
    scan_credentials: list[str] = []
    if sonar:
        scan_commands.append(
            Command(args=["sonar-scanner", f"-Dsonar.projectKey={settings.project_name}"])
        )
        scan_credentials.append("sonar_token")

    region, deploy_requires = deploy_target(settings)

    return [
        PipelineStage(
            name="compile",
            action=CommandAction.of(["mvn", "-B", "compile"], timeout=timeout),
        ),
        PipelineStage(
            name="scan",
            needs=["compile"],
            action=CommandAction(scan_commands, credentials=scan_credentials, timeout=timeout),
            gate=output_pattern_gate(r"QUALITY GATE STATUS: FAILED", "quality gate failed"),
            requires=scan_credentials,
        ),
        PipelineStage(
            name="test",
            needs=["scan"],
            action=CommandAction.of(["mvn", "-B", "test"], timeout=timeout),
        ),
        PipelineStage(
            name="build",
            needs=["test"],
            action=CommandAction.of(["mvn", "-B", "package", "-DskipTests"], timeout=timeout),
        ),
        PipelineStage(
            name="containerize",
            needs=["build"],
            action=CommandAction(
                [
                    Command(
                        args=["docker", "login", settings.registry, "--username", "token", "--password-stdin"],
                        stdin_credential="registry_token",
                    ),
                    Command(args=["docker", "build", "-t", image, "."]),
                    Command(args=["docker", "push", image]),
                ],
                timeout=timeout,
            ),
            produces=image,
            requires=["registry_token"],
        ),
        PipelineStage(
            name="deploy",
            needs=["containerize"],
            action=DeployAction(
                planner,
                desired,
                app_name=settings.app_name,
                namespace=settings.kubernetes_namespace,
                replicas=settings.replicas,
                container_port=settings.container_port,
                region=region,
            ),
            requires=deploy_requires,
        ),
    ]

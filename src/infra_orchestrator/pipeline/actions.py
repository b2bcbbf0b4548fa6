"""Stage actions that invoke external tools.

Every step of a build pipeline (compiling, scanning, building, pushing,
deploying) is a vendor CLI. CommandAction runs those commands; DeployAction
converges the cluster through the resource planner and hands the container
image to Kubernetes.
"""

import asyncio
import logging
import os
import subprocess
from pathlib import Path
from typing import Any, Callable, Optional

import yaml
from pydantic import BaseModel, Field

from infra_orchestrator.core.models import DesiredState, ImageReference, ResourceType
from infra_orchestrator.pipeline.stage import ActionResult, StageContext
from infra_orchestrator.planner.planner import Planner

logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]

_MAX_OUTPUT = 20_000


class Command(BaseModel):
    """A single CLI invocation within a stage."""

    args: list[str] = Field(description="Program and arguments; supports {placeholders}")
    stdin_credential: Optional[str] = Field(
        default=None, description="Credential name piped to the command's stdin"
    )


class CommandAction:
    """Run one or more commands in sequence; the first non-zero exit stops the stage."""

    def __init__(
        self,
        commands: list[Command],
        cwd: Optional[Path] = None,
        env: Optional[dict[str, str]] = None,
        credentials: Optional[list[str]] = None,
        timeout: int = 1800,
        runner: Runner = subprocess.run,
    ):
        """
        Initialize the action.

        Args:
            commands: Commands to run in order
            cwd: Working directory
            env: Extra environment variables
            credentials: Credential names exported as upper-cased environment variables
            timeout: Per-command timeout in seconds
            runner: subprocess.run compatible callable
        """
        self.commands = commands
        self.cwd = cwd
        self.env = env or {}
        self.credentials = credentials or []
        self.timeout = timeout
        self.runner = runner

    @classmethod
    def of(cls, *argvs: list[str], **kwargs: Any) -> "CommandAction":
        """Shorthand: ``CommandAction.of(["mvn", "test"], ["mvn", "verify"])``."""
        return cls([Command(args=list(argv)) for argv in argvs], **kwargs)

    def _environment(self, context: StageContext) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self.env)
        env.update(context.trigger.credentials.as_env(self.credentials))
        return env

    def _run_one(self, command: Command, context: StageContext) -> ActionResult:
        args = [context.render(arg) for arg in command.args]
        stdin = None
        if command.stdin_credential:
            stdin = context.credential(command.stdin_credential) or ""

        try:
            result = self.runner(
                args,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                cwd=self.cwd,
                env=self._environment(context),
                input=stdin,
            )
        except subprocess.TimeoutExpired:
            return ActionResult(exit_code=124, diagnostic=f"{args[0]} timed out after {self.timeout}s")
        except FileNotFoundError:
            return ActionResult(exit_code=127, diagnostic=f"{args[0]} not installed")

        output = (result.stdout or "") + (result.stderr or "")
        if result.returncode != 0:
            tail = (result.stderr or result.stdout or "").strip().splitlines()[-1:] or [""]
            diagnostic = f"{' '.join(args[:2])} exited with status {result.returncode}: {tail[0]}"
        else:
            diagnostic = ""
        return ActionResult(exit_code=result.returncode, output=output[-_MAX_OUTPUT:], diagnostic=diagnostic)

    def __call__(self, context: StageContext) -> ActionResult:
        outputs = []
        for command in self.commands:
            logger.debug(f"[{context.stage}] running {command.args[0]}")
            result = self._run_one(command, context)
            outputs.append(result.output)
            if result.exit_code != 0:
                result.output = "".join(outputs)[-_MAX_OUTPUT:]
                return result
        return ActionResult(output="".join(outputs)[-_MAX_OUTPUT:])


def render_deployment_manifest(
    name: str,
    image: ImageReference,
    namespace: str = "default",
    replicas: int = 2,
    container_port: int = 8080,
    labels: Optional[dict[str, str]] = None,
) -> str:
    """Render a Deployment plus ClusterIP Service for ``image`` as multi-document YAML."""
    selector = {"app": name}
    metadata_labels = {**selector, **(labels or {})}
    deployment = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": namespace, "labels": metadata_labels},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": selector},
            "template": {
                "metadata": {"labels": metadata_labels},
                "spec": {
                    "containers": [
                        {
                            "name": name,
                            "image": image.uri,
                            "ports": [{"containerPort": container_port}],
                        }
                    ]
                },
            },
        },
    }
    service = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "namespace": namespace, "labels": metadata_labels},
        "spec": {
            "type": "ClusterIP",
            "selector": selector,
            "ports": [{"port": 80, "targetPort": container_port}],
        },
    }
    return yaml.safe_dump_all([deployment, service], sort_keys=False)


class DeployAction:
    """Converge the cluster, then schedule the container image onto it.

    The image reference comes from the artifact of ``image_stage``.
    """

    def __init__(
        self,
        planner: Planner,
        desired: DesiredState,
        app_name: str = "app",
        namespace: str = "default",
        replicas: int = 2,
        container_port: int = 8080,
        image_stage: str = "containerize",
        region: Optional[str] = None,
        timeout: int = 600,
        runner: Runner = subprocess.run,
    ):
        """
        Initialize the action.

        Args:
            planner: Cluster target the desired infrastructure is applied to
            desired: Infrastructure the application needs
            app_name: Kubernetes Deployment/Service name
            namespace: Target namespace
            replicas: Deployment replicas
            container_port: Port the container listens on
            image_stage: Stage whose artifact is the image reference
            region: When set, kubeconfig is refreshed with ``aws eks update-kubeconfig``
            timeout: Timeout for each kubectl/aws invocation
            runner: subprocess.run compatible callable
        """
        self.planner = planner
        self.desired = desired
        self.app_name = app_name
        self.namespace = namespace
        self.replicas = replicas
        self.container_port = container_port
        self.image_stage = image_stage
        self.region = region
        self.timeout = timeout
        self.runner = runner

    def _cluster_name(self, observed: Any) -> Optional[str]:
        for resource_id in sorted(observed.resources):
            resource = observed.resources[resource_id]
            if resource.type == ResourceType.CLUSTER:
                return resource.outputs.get("cluster_name", resource_id)
        return None

    def _exec(self, args: list[str], stdin: Optional[str] = None) -> subprocess.CompletedProcess:
        return self.runner(args, capture_output=True, text=True, timeout=self.timeout, input=stdin)

    def deploy(self, context: StageContext) -> ActionResult:
        """Blocking implementation; see __call__."""
        image_ref = context.artifacts.get(self.image_stage)
        if not image_ref:
            return ActionResult(exit_code=1, diagnostic=f"no image produced by stage '{self.image_stage}'")
        image = ImageReference.parse(image_ref)

        observed = self.planner.ensure_applied(self.desired)
        cluster_name = self._cluster_name(observed)
        outputs = [f"Infrastructure converged ({len(observed)} resources)\n"]

        try:
            if self.region and cluster_name:
                kubeconfig = self._exec(
                    ["aws", "eks", "update-kubeconfig", "--name", cluster_name, "--region", self.region]
                )
                if kubeconfig.returncode != 0:
                    return ActionResult(
                        exit_code=kubeconfig.returncode,
                        output=kubeconfig.stderr,
                        diagnostic=f"update-kubeconfig failed for {cluster_name}",
                    )

            manifest = render_deployment_manifest(
                self.app_name,
                image,
                namespace=self.namespace,
                replicas=self.replicas,
                container_port=self.container_port,
                labels={"commit": context.trigger.short_commit},
            )
            result = self._exec(["kubectl", "apply", "-f", "-"], stdin=manifest)
        except subprocess.TimeoutExpired:
            return ActionResult(exit_code=124, diagnostic=f"deployment timed out after {self.timeout}s")
        except FileNotFoundError as e:
            return ActionResult(exit_code=127, diagnostic=f"{e.filename or 'kubectl'} not installed")

        outputs.append(result.stdout or "")
        if result.returncode != 0:
            return ActionResult(
                exit_code=result.returncode,
                output="".join(outputs) + (result.stderr or ""),
                diagnostic=f"kubectl apply failed: {(result.stderr or '').strip()[:200]}",
            )

        logger.info(f"Deployed {image.uri} to {cluster_name or 'cluster'}/{self.namespace}")
        return ActionResult(
            output="".join(outputs),
            diagnostic=f"deployed {image.uri} to {self.namespace}/{self.app_name}",
            artifact=image.uri,
        )

    async def __call__(self, context: StageContext) -> ActionResult:
        return await asyncio.to_thread(self.deploy, context)

"""Unit tests for command and deploy stage actions."""

import subprocess

import pytest
import yaml

from infra_orchestrator.config import ProviderKind, Settings
from infra_orchestrator.core.errors import ProviderError
from infra_orchestrator.core.models import ImageReference, OperationType
from infra_orchestrator.pipeline.actions import (
    Command,
    CommandAction,
    DeployAction,
    render_deployment_manifest,
)
from infra_orchestrator.pipeline.defaults import default_pipeline
from infra_orchestrator.pipeline.stage import StageContext


class FakeRunner:
    """Stands in for subprocess.run, recording every invocation."""

    def __init__(self, returncodes=None, stdout="ok\n", stderr=""):
        self.calls = []
        self.returncodes = list(returncodes or [])
        self.stdout = stdout
        self.stderr = stderr

    def __call__(self, args, **kwargs):
        self.calls.append((args, kwargs))
        code = self.returncodes.pop(0) if self.returncodes else 0
        return subprocess.CompletedProcess(args, code, self.stdout, self.stderr if code else "")


@pytest.fixture
def context(trigger):
    return StageContext(stage="containerize", trigger=trigger)


class TestCommandAction:
    """Running CLI tools."""

    def test_placeholders_rendered(self, context):
        runner = FakeRunner()
        action = CommandAction.of(["docker", "build", "-t", "ghcr.io/acme/app:{short_commit}", "."], runner=runner)

        result = action(context)

        assert result.exit_code == 0
        assert runner.calls[0][0] == ["docker", "build", "-t", "ghcr.io/acme/app:abc1234", "."]

    def test_credentials_exported_as_environment(self, context):
        runner = FakeRunner()
        action = CommandAction.of(["sonar-scanner"], credentials=["sonar_token"], runner=runner)

        action(context)

        env = runner.calls[0][1]["env"]
        assert env["SONAR_TOKEN"] == "sonar-token"
        assert env.get("REGISTRY_TOKEN") != "reg-token"

    def test_stdin_credential_piped(self, context):
        runner = FakeRunner()
        action = CommandAction(
            [Command(args=["docker", "login", "--password-stdin"], stdin_credential="registry_token")],
            runner=runner,
        )

        action(context)

        assert runner.calls[0][1]["input"] == "reg-token"
        assert "reg-token" not in runner.calls[0][0]

    def test_first_failure_stops_sequence(self, context):
        runner = FakeRunner(returncodes=[0, 2, 0], stderr="push denied")
        action = CommandAction.of(["docker", "build", "."], ["docker", "push", "x"], ["echo", "never"], runner=runner)

        result = action(context)

        assert result.exit_code == 2
        assert len(runner.calls) == 2
        assert "push denied" in result.diagnostic

    def test_missing_binary(self, context):
        def runner(args, **kwargs):
            raise FileNotFoundError(args[0])

        result = CommandAction.of(["trivy", "fs", "."], runner=runner)(context)

        assert result.exit_code == 127
        assert "trivy not installed" in result.diagnostic

    def test_timeout(self, context):
        def runner(args, **kwargs):
            raise subprocess.TimeoutExpired(args, kwargs["timeout"])

        result = CommandAction.of(["mvn", "test"], timeout=5, runner=runner)(context)

        assert result.exit_code == 124
        assert "timed out after 5s" in result.diagnostic


class TestImageReference:
    """Container image references."""

    def test_parse(self):
        image = ImageReference.parse("ghcr.io/acme/app:abc1234")

        assert image.registry == "ghcr.io"
        assert image.repository == "acme/app"
        assert image.tag == "abc1234"
        assert image.uri == "ghcr.io/acme/app:abc1234"

    def test_parse_registry_with_port(self):
        image = ImageReference.parse("localhost:5000/app:v1.2")

        assert image.registry == "localhost:5000"
        assert image.repository == "app"

    def test_parse_rejects_missing_tag(self):
        with pytest.raises(ValueError):
            ImageReference.parse("ghcr.io/acme/app")


class TestManifest:
    """Kubernetes manifest rendering."""

    def test_deployment_and_service(self):
        image = ImageReference(registry="ghcr.io", repository="acme/app", tag="abc1234")

        docs = list(yaml.safe_load_all(render_deployment_manifest("shop", image, namespace="prod", replicas=3)))

        deployment, service = docs
        assert deployment["kind"] == "Deployment"
        assert deployment["metadata"]["namespace"] == "prod"
        assert deployment["spec"]["replicas"] == 3
        assert deployment["spec"]["template"]["spec"]["containers"][0]["image"] == "ghcr.io/acme/app:abc1234"
        assert service["kind"] == "Service"
        assert service["spec"]["selector"] == {"app": "shop"}


class TestDeployAction:
    """Converging the cluster and scheduling the image."""

    @pytest.fixture
    def deploy_context(self, trigger):
        return StageContext(
            stage="deploy",
            trigger=trigger,
            artifacts={"containerize": "ghcr.io/acme/app:abc1234"},
        )

    @pytest.mark.asyncio
    async def test_applies_infrastructure_then_manifest(self, planner, desired, deploy_context):
        runner = FakeRunner(stdout="deployment.apps/app configured\n")
        action = DeployAction(planner, desired, app_name="app", namespace="web", runner=runner)

        result = await action(deploy_context)

        assert result.exit_code == 0
        assert result.artifact == "ghcr.io/acme/app:abc1234"
        assert planner.plan_for(desired) == []
        args, kwargs = runner.calls[-1]
        assert args == ["kubectl", "apply", "-f", "-"]
        manifest = list(yaml.safe_load_all(kwargs["input"]))
        assert manifest[0]["metadata"]["namespace"] == "web"
        assert manifest[0]["metadata"]["labels"]["commit"] == "abc1234"

    def test_refreshes_kubeconfig_when_region_set(self, planner, desired, deploy_context):
        runner = FakeRunner()
        action = DeployAction(planner, desired, region="eu-west-1", runner=runner)

        action.deploy(deploy_context)

        assert runner.calls[0][0][:3] == ["aws", "eks", "update-kubeconfig"]
        assert "eu-west-1" in runner.calls[0][0]

    def test_missing_image_fails(self, planner, desired, trigger):
        runner = FakeRunner()
        action = DeployAction(planner, desired, runner=runner)

        result = action.deploy(StageContext(stage="deploy", trigger=trigger))

        assert result.exit_code == 1
        assert "no image" in result.diagnostic
        assert runner.calls == []

    def test_kubectl_failure(self, planner, desired, deploy_context):
        runner = FakeRunner(returncodes=[1], stderr="forbidden")

        result = DeployAction(planner, desired, runner=runner).deploy(deploy_context)

        assert result.exit_code == 1
        assert "forbidden" in result.diagnostic

    def test_provider_error_propagates(self, planner, provider, desired, deploy_context):
        provider.fail_on(OperationType.CREATE, "cluster")

        with pytest.raises(ProviderError):
            DeployAction(planner, desired, runner=FakeRunner()).deploy(deploy_context)


class TestDefaultPipeline:
    """The standard pipeline layout."""

    def test_stage_chain(self, planner, desired):
        stages = default_pipeline(Settings(), planner, desired)

        assert [s.name for s in stages] == ["compile", "scan", "test", "build", "containerize", "deploy"]
        for previous, stage in zip(stages, stages[1:]):
            assert stage.needs == [previous.name]
        assert stages[4].requires == ["registry_token"]
        assert stages[4].produces == "docker.io/platform/app:{short_commit}"

    def test_aws_deploy_requires_cloud_credentials(self, planner, desired):
        settings = Settings(provider=ProviderKind.AWS, registry="ghcr.io", repository="acme/app")

        stages = default_pipeline(settings, planner, desired, sonar=False)

        assert stages[5].requires == ["cloud_access_key_id", "cloud_secret_access_key"]
        assert stages[1].requires == []
        assert stages[4].produces == "ghcr.io/acme/app:{short_commit}"

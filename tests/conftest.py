"""Shared fixtures for orchestrator tests."""

import pytest

from infra_orchestrator.config import get_credential_settings, get_settings
from infra_orchestrator.core.models import (
    CredentialBundle,
    DesiredState,
    ObservedResource,
    ObservedState,
    ResourceNode,
    ResourceType,
    Trigger,
)
from infra_orchestrator.planner import Planner
from infra_orchestrator.providers import InMemoryProvider


def chain_nodes() -> list[ResourceNode]:
    """vpc → subnet → cluster → nodepool."""
    return [
        ResourceNode(id="vpc", type=ResourceType.NETWORK, attributes={"cidr_block": "10.0.0.0/16"}),
        ResourceNode(
            id="subnet",
            type=ResourceType.SUBNET,
            attributes={"cidr_block": "10.0.1.0/24"},
            depends_on=["vpc"],
        ),
        ResourceNode(
            id="cluster",
            type=ResourceType.CLUSTER,
            attributes={"version": "1.30", "role_arn": "arn:aws:iam::1:role/eks"},
            depends_on=["subnet"],
        ),
        ResourceNode(
            id="nodepool",
            type=ResourceType.NODE_POOL,
            attributes={"desired_size": 2, "node_role_arn": "arn:aws:iam::1:role/node"},
            depends_on=["cluster", "subnet"],
        ),
    ]


def observed_from(nodes: list[ResourceNode]) -> ObservedState:
    return ObservedState(resources={n.id: ObservedResource.from_node(n) for n in nodes})


@pytest.fixture
def desired() -> DesiredState:
    return DesiredState.from_nodes(chain_nodes())


@pytest.fixture
def provider() -> InMemoryProvider:
    return InMemoryProvider()


@pytest.fixture
def planner(provider) -> Planner:
    return Planner(provider)


@pytest.fixture
def credentials() -> CredentialBundle:
    return CredentialBundle(
        registry_token="reg-token",
        cloud_access_key_id="AKIA-TEST",
        cloud_secret_access_key="secret",
        sonar_token="sonar-token",
    )


@pytest.fixture
def trigger(credentials) -> Trigger:
    return Trigger(commit="abc1234def5678", branch="main", credentials=credentials)


@pytest.fixture
def clean_settings(monkeypatch, tmp_path):
    """Settings pointing at a temporary state file and artifacts directory."""
    monkeypatch.setenv("ORCHESTRATOR_PROVIDER", "memory")
    monkeypatch.setenv("ORCHESTRATOR_STATE_FILE", str(tmp_path / "state.yaml"))
    monkeypatch.setenv("ORCHESTRATOR_ARTIFACTS_DIR", str(tmp_path / "artifacts"))
    get_settings.cache_clear()
    get_credential_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()
    get_credential_settings.cache_clear()

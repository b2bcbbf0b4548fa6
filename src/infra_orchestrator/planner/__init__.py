"""Resource Graph Planner - diffs desired vs observed infrastructure and applies the difference."""

from typing import Optional

from infra_orchestrator.config import ProviderKind, Settings
from infra_orchestrator.core.models import CredentialBundle
from infra_orchestrator.planner.planner import Planner, apply, plan
from infra_orchestrator.providers import StateStore, build_provider

__all__ = ["Planner", "apply", "plan", "build_planner"]


def build_planner(settings: Settings, credentials: Optional[CredentialBundle] = None) -> Planner:
    """Create a Planner for the configured provider.

    The in-memory provider persists its own state; the AWS provider relies on
    the planner to write the snapshot after each operation.
    """
    provider = build_provider(settings, credentials)
    store = StateStore(settings.state_file) if settings.provider == ProviderKind.AWS else None
    return Planner(provider, state_store=store)

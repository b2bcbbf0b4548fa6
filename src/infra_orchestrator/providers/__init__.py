"""Infrastructure providers the resource planner applies operations against."""

from typing import Optional

from infra_orchestrator.config import ProviderKind, Settings
from infra_orchestrator.core.models import CredentialBundle
from infra_orchestrator.providers.base import Provider
from infra_orchestrator.providers.memory import InMemoryProvider
from infra_orchestrator.providers.state import StateStore

__all__ = ["Provider", "InMemoryProvider", "StateStore", "build_provider"]


def build_provider(settings: Settings, credentials: Optional[CredentialBundle] = None) -> Provider:
    """Create the provider selected in settings, backed by the configured state file."""
    store = StateStore(settings.state_file)
    if settings.provider == ProviderKind.AWS:
        from infra_orchestrator.providers.aws import AwsProvider

        return AwsProvider(store, region=settings.aws_region, credentials=credentials)
    return InMemoryProvider(store=store)

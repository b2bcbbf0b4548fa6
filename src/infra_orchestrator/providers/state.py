"""Observed state persistence.

The snapshot is stored as YAML so operators can read it the same way they
read the infrastructure definition it was applied from.
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from infra_orchestrator.core.errors import ConfigurationError
from infra_orchestrator.core.models import ObservedState

logger = logging.getLogger(__name__)


class StateStore:
    """Reads and writes an ObservedState snapshot on disk."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> ObservedState:
        """Load the snapshot, or an empty state if nothing was saved yet."""
        if not self.path.exists():
            return ObservedState()
        try:
            data = yaml.safe_load(self.path.read_text()) or {}
            return ObservedState.model_validate(data)
        except (yaml.YAMLError, ValueError) as e:
            raise ConfigurationError(f"Unreadable state file {self.path}: {e}") from e

    def save(self, state: ObservedState) -> Path:
        """Write the snapshot, replacing the previous file atomically."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data: dict[str, Any] = state.model_dump(mode="json")
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(
            "# Observed infrastructure state - managed by infra-orchestrator\n\n"
            + yaml.dump(data, default_flow_style=False, allow_unicode=True, sort_keys=False, width=120)
        )
        tmp.replace(self.path)
        logger.debug(f"Saved observed state with {len(state)} resources to {self.path}")
        return self.path

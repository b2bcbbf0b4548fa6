"""YAML definition loaders.

Infrastructure and pipelines are authored as YAML and turned into the
in-memory graphs the planner and executor operate on. Nothing past this
module sees YAML.

Infrastructure file::

    version: "2026-10"
    resources:
      - id: vpc
        type: network
        attributes: {cidr_block: 10.0.0.0/16}
      - id: subnet-a
        type: subnet
        depends_on: [vpc]
        attributes: {cidr_block: 10.0.1.0/24}

Pipeline file::

    stages:
      - name: compile
        run: mvn -B compile
      - name: scan
        needs: [compile]
        run:
          - gitleaks detect --source .
          - [trivy, fs, --exit-code, "1", .]
        fail_on_output: "CRITICAL: [1-9]"
      - name: containerize
        needs: [scan]
        requires: [registry_token]
        run:
          - args: [docker, login, ghcr.io, -u, ci, --password-stdin]
            stdin_credential: registry_token
          - docker build -t ghcr.io/acme/app:{short_commit} .
          - docker push ghcr.io/acme/app:{short_commit}
        produces: ghcr.io/acme/app:{short_commit}
      - name: deploy
        needs: [containerize]
        uses: deploy
"""

import logging
import re
import shlex
from pathlib import Path
from typing import Any, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from infra_orchestrator.config import Settings
from infra_orchestrator.core.errors import ConfigurationError
from infra_orchestrator.core.models import DesiredState, ResourceNode
from infra_orchestrator.pipeline.actions import Command, CommandAction, DeployAction
from infra_orchestrator.pipeline.defaults import deploy_target
from infra_orchestrator.pipeline.stage import PipelineStage, exit_code_gate, output_pattern_gate
from infra_orchestrator.planner.planner import Planner

logger = logging.getLogger(__name__)


class InfrastructureFile(BaseModel):
    """Schema of an infrastructure definition file."""

    version: Optional[str] = None
    resources: list[ResourceNode] = Field(default_factory=list)


class StageSpec(BaseModel):
    """Schema of one stage in a pipeline definition file."""

    name: str
    needs: list[str] = Field(default_factory=list)
    run: list[Command] = Field(default_factory=list)
    uses: Optional[Literal["deploy"]] = None
    image_from: str = Field(default="containerize", description="Stage whose artifact is deployed")
    requires: list[str] = Field(default_factory=list)
    produces: Optional[str] = None
    timeout: Optional[int] = None
    fail_on_output: Optional[str] = Field(
        default=None, description="Regex; a match in the output fails the gate"
    )

    @field_validator("needs", "requires", mode="before")
    @classmethod
    def _single_to_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("run", mode="before")
    @classmethod
    def _normalize_commands(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, (str, dict)):
            value = [value]
        # Each entry is one command: a shell-style string, an argv list or a mapping
        commands = []
        for entry in value:
            if isinstance(entry, str):
                commands.append({"args": shlex.split(entry)})
            elif isinstance(entry, list):
                commands.append({"args": [str(arg) for arg in entry]})
            else:
                commands.append(entry)
        return commands

    @field_validator("fail_on_output")
    @classmethod
    def _valid_pattern(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            try:
                re.compile(value)
            except re.error as e:
                raise ValueError(f"fail_on_output is not a valid regular expression: {e}") from e
        return value

    @model_validator(mode="after")
    def _has_action(self) -> "StageSpec":
        if not self.run and self.uses is None:
            raise ValueError(f"stage '{self.name}' needs either 'run' or 'uses'")
        if self.run and self.uses is not None:
            raise ValueError(f"stage '{self.name}' cannot set both 'run' and 'uses'")
        return self


class PipelineFile(BaseModel):
    """Schema of a pipeline definition file."""

    stages: list[StageSpec]


def _read_yaml(path: Path) -> Any:
    try:
        return yaml.safe_load(Path(path).read_text())
    except OSError as e:
        raise ConfigurationError(f"Cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e


def parse_infrastructure(data: Any, source: str = "<data>") -> DesiredState:
    """Validate an infrastructure document and build the DesiredState."""
    try:
        document = InfrastructureFile.model_validate(data or {})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid infrastructure definition in {source}: {e}") from e
    return DesiredState.from_nodes(document.resources, version=document.version)


def load_infrastructure(path: Path) -> DesiredState:
    """Load a DesiredState from an infrastructure YAML file."""
    desired = parse_infrastructure(_read_yaml(path), source=str(path))
    logger.debug(f"Loaded {len(desired)} resources from {path}")
    return desired


def parse_pipeline(
    data: Any,
    settings: Settings,
    planner: Optional[Planner] = None,
    desired: Optional[DesiredState] = None,
    source: str = "<data>",
) -> list[PipelineStage]:
    """Validate a pipeline document and build its stages.

    ``planner`` and ``desired`` are required when any stage ``uses: deploy``.
    """
    try:
        document = PipelineFile.model_validate(data or {})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid pipeline definition in {source}: {e}") from e

    region, cloud_credentials = deploy_target(settings)
    stages = []
    for spec in document.stages:
        timeout = spec.timeout or settings.stage_timeout_seconds
        requires = list(spec.requires)
        if spec.uses == "deploy":
            if planner is None or desired is None:
                raise ConfigurationError(f"Stage '{spec.name}' uses deploy but no cluster target was given")
            action: Any = DeployAction(
                planner,
                desired,
                app_name=settings.app_name,
                namespace=settings.kubernetes_namespace,
                replicas=settings.replicas,
                container_port=settings.container_port,
                image_stage=spec.image_from,
                region=region,
            )
            requires += [name for name in cloud_credentials if name not in requires]
        else:
            action = CommandAction(spec.run, credentials=spec.requires, timeout=timeout)

        gate = exit_code_gate
        if spec.fail_on_output:
            gate = output_pattern_gate(spec.fail_on_output, f"output matched '{spec.fail_on_output}'")

        stages.append(
            PipelineStage(
                name=spec.name,
                action=action,
                needs=spec.needs,
                gate=gate,
                produces=spec.produces,
                requires=requires,
                timeout=float(spec.timeout) if spec.timeout else None,
            )
        )
    return stages


def load_pipeline(
    path: Path,
    settings: Settings,
    planner: Optional[Planner] = None,
    desired: Optional[DesiredState] = None,
) -> list[PipelineStage]:
    """Load pipeline stages from a YAML file."""
    return parse_pipeline(_read_yaml(path), settings, planner, desired, source=str(path))

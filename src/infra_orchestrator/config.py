"""Configuration management for the Infrastructure Orchestrator."""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environments."""

    DEV = "dev"
    TST = "tst"
    PRD = "prd"


class ProviderKind(str, Enum):
    """Backends the resource planner can apply operations against."""

    MEMORY = "memory"
    AWS = "aws"


class CredentialSettings(BaseSettings):
    """Credential bundle loaded from standard environment variables.

    The orchestrator never interprets these values; they are handed to the
    stages and providers that need them as opaque strings.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    registry_token: Optional[str] = Field(default=None, description="Container registry token")
    aws_access_key_id: Optional[str] = Field(default=None, description="AWS Access Key ID")
    aws_secret_access_key: Optional[str] = Field(default=None, description="AWS Secret Access Key")
    aws_session_token: Optional[str] = Field(default=None, description="AWS Session Token (for temporary credentials)")
    sonar_token: Optional[str] = Field(default=None, description="SonarQube token")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: Environment = Field(default=Environment.DEV, description="Deployment environment")

    # Project Configuration
    project_name: str = Field(default="infra-orchestrator", description="Project name for resource naming")

    # Provider Configuration
    provider: ProviderKind = Field(default=ProviderKind.MEMORY, description="Resource provider backend")
    aws_region: str = Field(default="us-east-1", description="AWS region")
    state_file: Path = Field(
        default=Path(".orchestrator/state.yaml"), description="Path of the observed state snapshot"
    )

    # Definitions
    infrastructure_file: Path = Field(
        default=Path("infrastructure.yaml"), description="Desired infrastructure definition"
    )
    pipeline_file: Optional[Path] = Field(
        default=None, description="Pipeline definition; the standard pipeline is used when unset"
    )
    artifacts_dir: Path = Field(
        default=Path(".orchestrator"), description="Directory for run and plan artifacts"
    )

    # Pipeline Execution
    max_parallel_stages: int = Field(default=2, ge=1, description="Concurrent stage execution slots")
    stage_timeout_seconds: int = Field(default=1800, ge=1, description="Timeout for a single stage command")

    # Container Image
    registry: str = Field(default="docker.io", description="Container registry host")
    repository: str = Field(default="platform/app", description="Image repository")

    # Kubernetes Deployment
    kubernetes_namespace: str = Field(default="default", description="Namespace for application deployment")
    app_name: str = Field(default="app", description="Kubernetes deployment name")
    replicas: int = Field(default=2, ge=0, description="Deployment replica count")
    container_port: int = Field(default=8080, description="Container port exposed by the application")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    @property
    def resource_prefix(self) -> str:
        """Generate resource prefix following kebab-case naming convention."""
        return f"{self.project_name}-{self.environment.value}"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRD


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


@lru_cache
def get_credential_settings() -> CredentialSettings:
    """Get cached credential settings instance."""
    return CredentialSettings()

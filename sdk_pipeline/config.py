"""Configuration settings for sdk_pipeline.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

Settings are frozen: a run builds one ``PipelineConfig`` at start and hands
the same instance to every stage.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from sdk_pipeline.types import BuildRef, ServiceEndpoint

if TYPE_CHECKING:
    from sdk_pipeline.pipeline.schema import PipelineDefinition


def _default_workspace_dir() -> Path:
    """Return the default scratch directory for generated artifacts."""
    return Path.home() / ".cache" / "sdk-pipeline" / "workspace"


def _default_log_dir() -> Path:
    """Return the default directory for command and service logs."""
    return Path.home() / ".local" / "share" / "sdk-pipeline" / "logs"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "sdk-pipeline" / "runs.sqlite"
    return f"sqlite:///{db_path}"


def _default_docker_config() -> Path:
    """Return the docker client config written by ``docker login``."""
    return Path.home() / ".docker" / "config.json"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the SDK_PIPELINE_
    prefix. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="SDK_PIPELINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Paths
    workspace_dir: Path = Field(
        default_factory=_default_workspace_dir,
        description="Scratch directory for freshly generated artifacts",
    )
    log_dir: Path = Field(
        default_factory=_default_log_dir,
        description="Directory for command output and service logs",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for run records",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Ephemeral service
    staging_registry: str = Field(
        default="localhost:5000",
        description="Registry holding images built for each build ref",
    )
    service_image_repository: str = Field(
        default="tools",
        description="Repository of the image that runs the local testnet",
    )
    container_name: str = Field(
        default="local-testnet",
        description="Name of the ephemeral service container",
    )
    api_port: int = Field(default=8080, ge=1, le=65535)
    faucet_port: int = Field(default=8081, ge=1, le=65535)
    api_url: str = Field(
        default="http://127.0.0.1:8080/v1",
        description="Liveness URL of the service API",
    )
    faucet_url: str = Field(
        default="http://127.0.0.1:8081",
        description="Liveness URL of the faucet",
    )
    docker_bin: str = Field(default="docker", description="Container runtime CLI")

    # Readiness
    ready_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Total time to wait for the service endpoints",
    )
    ready_poll_interval: float = Field(
        default=1.0,
        gt=0,
        description="Interval between liveness probes",
    )

    # Stage retry defaults
    stage_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Default maximum attempts per retryable stage",
    )
    stage_timeout: float = Field(
        default=1200.0,
        gt=0,
        description="Default per-attempt timeout in seconds",
    )

    # Release
    release_wait_seconds: float = Field(
        default=3600.0,
        ge=0,
        description="How long to wait for the source image to appear",
    )
    registry_credentials: dict[str, SecretStr] = Field(
        default_factory=dict,
        description="Credentials per registry host, as \"username:password\"",
    )
    docker_config: Path | None = Field(
        default_factory=_default_docker_config,
        description="Docker config file holding registry logins",
    )
    registry_insecure: bool = Field(
        default=False,
        description="Use plain HTTP for registry API calls",
    )
    crane_bin: str = Field(default="crane", description="Image copy tool")

    def api_endpoint(self) -> ServiceEndpoint:
        """Return the service API endpoint."""
        return ServiceEndpoint(name="api", url=self.api_url)

    def faucet_endpoint(self) -> ServiceEndpoint:
        """Return the faucet endpoint."""
        return ServiceEndpoint(name="faucet", url=self.faucet_url)


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable configuration of one pipeline run.

    Attributes:
        build_ref: The build every stage of the run refers to.
        settings: Effective settings.
        definition: Parsed pipeline definition (commands, artifacts, images).
        repo_root: Repository checkout holding the baselines.
    """

    build_ref: BuildRef
    settings: Settings
    definition: PipelineDefinition
    repo_root: Path

    @property
    def run_dir(self) -> Path:
        """Scratch directory for this build ref."""
        return self.settings.workspace_dir / self.build_ref.value.replace("/", "-")

    @property
    def log_dir(self) -> Path:
        """Log directory for this build ref."""
        return self.settings.log_dir / self.build_ref.value.replace("/", "-")

    def placeholders(self) -> dict[str, str]:
        """Values substituted into command templates."""
        return {
            "build_ref": self.build_ref.value,
            "workspace": str(self.run_dir),
            "repo_root": str(self.repo_root),
            "staging_registry": self.settings.staging_registry,
            "api_url": self.settings.api_url,
            "faucet_url": self.settings.faucet_url,
        }


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings (secrets masked).
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["PipelineConfig", "Settings", "get_settings", "print_settings_json"]

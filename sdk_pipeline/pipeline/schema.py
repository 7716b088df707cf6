"""Pydantic models for the pipeline definition file.

The definition lists the commands that generate artifacts, the baselines
they are compared against, how to launch the service under test, the test
commands, and the images to release. Command arguments may contain
``{build_ref}``, ``{workspace}``, ``{repo_root}``, ``{staging_registry}``,
``{api_url}`` and ``{faucet_url}`` placeholders.
"""

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.\-]+$")


def _validate_name(v: str) -> str:
    if not NAME_PATTERN.match(v):
        raise ValueError(
            f"name must contain only letters, digits, '.', '_' or '-', got '{v}'"
        )
    return v


def _validate_relative(v: str) -> str:
    if v.startswith("/") or ".." in v.split("/"):
        raise ValueError(f"path must be relative and stay inside its root, got '{v}'")
    return v


class RetrySchema(BaseModel):
    """Retry policy of a stage.

    Attributes:
        max_attempts: Maximum number of attempts; unset uses the settings default.
        timeout: Per-attempt timeout in seconds; unset uses the settings default.
    """

    model_config = ConfigDict(extra="forbid")

    max_attempts: int | None = Field(default=None, ge=1, le=10)
    timeout: float | None = Field(default=None, gt=0)


class ArtifactSchema(BaseModel):
    """A generated artifact tracked against a checked-in baseline.

    Attributes:
        name: Logical name (e.g. 'openapi-yaml').
        generate: Command producing the artifact; omit if another artifact's
            command produces it.
        generated: Output path, relative to the run workspace.
        baseline: Checked-in path, relative to the repository root.
        cwd: Working directory of the command, relative to the repository root.
        regenerate_hint: Command maintainers run to refresh the baseline.
        ignore_patterns: Regexes of lines ignored when comparing.
        retry: Retry policy of the generation command.
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    generate: list[str] | None = None
    generated: str
    baseline: str
    cwd: str | None = None
    regenerate_hint: str | None = None
    ignore_patterns: list[str] = Field(default_factory=list)
    retry: RetrySchema = Field(default_factory=RetrySchema)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate name is usable in file names."""
        return _validate_name(v)

    @field_validator("generated", "baseline", "cwd")
    @classmethod
    def validate_paths(cls, v: str | None) -> str | None:
        """Validate paths stay inside their root."""
        if v is None:
            return v
        return _validate_relative(v)

    @field_validator("ignore_patterns")
    @classmethod
    def validate_patterns(cls, v: list[str]) -> list[str]:
        """Validate every pattern compiles."""
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"invalid regex '{pattern}': {e}") from e
        return v


class ServiceSchema(BaseModel):
    """How to launch the service under test.

    Attributes:
        image_repository: Repository in the staging registry.
        container_name: Container name; defaults to settings.
        command: Command run inside the container.
        ports: (host, container) port pairs.
        start: Retry policy of starting the container.
        ready: Retry policy of waiting for readiness.
    """

    model_config = ConfigDict(extra="forbid")

    image_repository: str | None = None
    container_name: str | None = None
    command: list[str] = Field(default_factory=list)
    ports: list[tuple[int, int]] = Field(default_factory=list)
    start: RetrySchema = Field(default_factory=lambda: RetrySchema(max_attempts=2))
    ready: RetrySchema = Field(default_factory=lambda: RetrySchema(max_attempts=1))


class EnvFileSchema(BaseModel):
    """Dotenv file written before the tests run.

    Attributes:
        path: File path, relative to the repository root.
        copy_to: Additional paths receiving the same file.
        variables: Variables; values may contain placeholders.
    """

    model_config = ConfigDict(extra="forbid")

    path: str
    copy_to: list[str] = Field(default_factory=list)
    variables: dict[str, str] = Field(default_factory=dict)

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Validate path stays inside the repository."""
        return _validate_relative(v)

    @field_validator("copy_to")
    @classmethod
    def validate_copy_to(cls, v: list[str]) -> list[str]:
        """Validate every path stays inside the repository."""
        return [_validate_relative(p) for p in v]


class TestCommandSchema(BaseModel):
    """A test or example program run against the live service."""

    __test__ = False

    model_config = ConfigDict(extra="forbid")

    name: str
    command: list[str] = Field(min_length=1)
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    retry: RetrySchema = Field(default_factory=RetrySchema)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate name is usable in file names."""
        return _validate_name(v)


class TestsSchema(BaseModel):
    """Test stage configuration."""

    __test__ = False

    model_config = ConfigDict(extra="forbid")

    env_file: EnvFileSchema | None = None
    commands: list[TestCommandSchema] = Field(default_factory=list)


class ReleaseSchema(BaseModel):
    """Image release configuration.

    Attributes:
        tag_prefix: Prefix of the destination tag ('<prefix>_<build_ref>').
        registries: Destination registries (optionally with a namespace).
        images: Repositories to promote from the staging registry.
        wait_seconds: Bound on waiting for source images; defaults to settings.
        copy_attempts: Attempts per destination copy.
    """

    model_config = ConfigDict(extra="forbid")

    tag_prefix: str
    registries: list[str] = Field(min_length=1)
    images: list[str] = Field(min_length=1)
    wait_seconds: float | None = Field(default=None, ge=0)
    copy_attempts: int = Field(default=3, ge=1, le=10)

    @field_validator("tag_prefix")
    @classmethod
    def validate_tag_prefix(cls, v: str) -> str:
        """Validate the prefix is a valid tag fragment."""
        return _validate_name(v)


class PipelineDefinition(BaseModel):
    """Complete pipeline definition."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    artifacts: list[ArtifactSchema] = Field(default_factory=list)
    service: ServiceSchema | None = None
    tests: TestsSchema = Field(default_factory=TestsSchema)
    release: ReleaseSchema | None = None

    @model_validator(mode="after")
    def validate_unique_names(self) -> "PipelineDefinition":
        """Validate artifact and test names are unique."""
        for label, names in (
            ("artifact", [a.name for a in self.artifacts]),
            ("test command", [c.name for c in self.tests.commands]),
        ):
            dupes = sorted({n for n in names if names.count(n) > 1})
            if dupes:
                raise ValueError(f"duplicate {label} names: {', '.join(dupes)}")
        return self


__all__ = [
    "ArtifactSchema",
    "EnvFileSchema",
    "PipelineDefinition",
    "ReleaseSchema",
    "RetrySchema",
    "ServiceSchema",
    "TestCommandSchema",
    "TestsSchema",
]

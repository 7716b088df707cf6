"""Shared type definitions for sdk_pipeline.

This module contains dataclasses, enums, and type aliases shared across
subpackages to avoid circular imports.
"""

import re
from dataclasses import dataclass
from enum import Enum, IntEnum

# Characters allowed in an OCI tag
_TAG_INVALID_CHARS = re.compile(r"[^A-Za-z0-9_.\-]")
MAX_TAG_LENGTH = 128


class StageKind(str, Enum):
    """Kind of a pipeline stage."""

    GENERATE = "generate"
    COMPARE = "compare"
    START_SERVICE = "start_service"
    AWAIT_READY = "await_ready"
    RUN_TESTS = "run_tests"
    RELEASE = "release"


class StageStatus(str, Enum):
    """Terminal status of a stage."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunStatus(str, Enum):
    """Status of a pipeline run."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class AttemptOutcome(str, Enum):
    """Outcome of a single attempt inside the retry executor."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMEOUT = "timeout"


class CopyStatus(str, Enum):
    """Outcome of copying an image to one destination registry."""

    COPIED = "copied"
    UNCHANGED = "unchanged"
    FAILED = "failed"


class ExitCode(IntEnum):
    """Process exit codes of the pipeline CLI."""

    SUCCESS = 0
    UNEXPECTED = 1
    CONFIG = 2
    GENERATION = 3
    ARTIFACT_MISMATCH = 4
    SERVICE = 5
    TESTS = 6
    RELEASE = 7


@dataclass(frozen=True)
class BuildRef:
    """Immutable identifier naming exactly one build (commit, branch or tag)."""

    value: str

    def __post_init__(self) -> None:
        """Validate the reference after initialization."""
        if not self.value or not self.value.strip():
            raise ValueError("build ref must not be empty")
        if any(c.isspace() for c in self.value):
            raise ValueError(f"build ref must not contain whitespace: {self.value!r}")

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ImageRef:
    """Container image reference (registry, repository, tag)."""

    registry: str
    repository: str
    tag: str

    def __str__(self) -> str:
        return f"{self.registry}/{self.repository}:{self.tag}"

    def with_registry(self, registry: str, tag: str | None = None) -> "ImageRef":
        """Return the same repository addressed in another registry."""
        return ImageRef(registry=registry, repository=self.repository, tag=tag or self.tag)


@dataclass(frozen=True)
class ReleaseTarget:
    """Destination registries and the tag prefix applied in each of them."""

    registries: tuple[str, ...]
    tag_prefix: str

    def __post_init__(self) -> None:
        """Validate the target after initialization."""
        if not self.registries:
            raise ValueError("release target needs at least one registry")
        if not self.tag_prefix:
            raise ValueError("tag_prefix must be provided")


@dataclass(frozen=True)
class ServiceEndpoint:
    """A named HTTP endpoint whose liveness is probed with GET."""

    name: str
    url: str

    def __str__(self) -> str:
        return f"{self.name} ({self.url})"


@dataclass
class AttemptRecord:
    """Observed outcome of one attempt of a stage."""

    number: int
    outcome: AttemptOutcome
    duration: float
    error: str | None = None


def compute_tag(tag_prefix: str, build_ref: BuildRef | str) -> str:
    """Compute the destination tag for a release.

    The tag is a pure function of the prefix and the build ref, so every
    destination of one release receives the same tag.

    Args:
        tag_prefix: Human-meaningful prefix, e.g. 'devnet'.
        build_ref: Build reference the image was built from.

    Returns:
        Tag of the form '<prefix>_<build_ref>', sanitized for OCI.
    """
    raw = f"{tag_prefix}_{build_ref}"
    return _TAG_INVALID_CHARS.sub("-", raw)[:MAX_TAG_LENGTH]


__all__ = [
    "AttemptOutcome",
    "AttemptRecord",
    "BuildRef",
    "CopyStatus",
    "ExitCode",
    "ImageRef",
    "MAX_TAG_LENGTH",
    "ReleaseTarget",
    "RunStatus",
    "ServiceEndpoint",
    "StageKind",
    "StageStatus",
    "compute_tag",
]

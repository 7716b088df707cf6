"""Generated artifact consistency checks.

Compares freshly generated interface specifications and client sources
against the copies checked into the repository.
"""

from sdk_pipeline.artifacts.consistency import (
    ConsistencyResult,
    TrackedArtifact,
    check_artifacts,
    compare,
)

__all__ = ["ConsistencyResult", "TrackedArtifact", "check_artifacts", "compare"]

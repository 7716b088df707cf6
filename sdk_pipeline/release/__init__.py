"""Image release module.

This module handles:
- Waiting for images built for a build ref to reach the staging registry
- Computing release tags
- Copying images to destination registries (idempotently)
"""

from sdk_pipeline.release.service import (
    CopyOutcome,
    ReleaseReport,
    release,
    release_images,
    wait_for_source,
)

__all__ = [
    "CopyOutcome",
    "ReleaseReport",
    "release",
    "release_images",
    "wait_for_source",
]

"""SDK pipeline - build verification and release orchestration.

This package sequences the checks that gate an SDK release: generated
artifact consistency, integration tests against an ephemeral service
instance, and promotion of container images to public registries.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]

"""Ephemeral service harness.

This module handles:
- Starting the service under test (API and faucet) in a container
- Waiting for both endpoints through the readiness gate
- Teardown and log capture on every exit path
"""

from sdk_pipeline.harness.service import (
    ServiceHandle,
    ServiceHarness,
    ServiceSpec,
    running_service,
)

__all__ = ["ServiceHandle", "ServiceHarness", "ServiceSpec", "running_service"]

"""Ephemeral service harness.

Starts a disposable instance of the target service (API plus faucet) from
the image built for a build ref, waits for both endpoints, and guarantees
teardown with log capture on every exit path.

Only one instance owns the fixed local ports at a time: ``start`` removes
any stale container with the same name first.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from sdk_pipeline.errors import ServiceStartupError
from sdk_pipeline.harness.runtime import ContainerRuntimeError, DockerRuntime
from sdk_pipeline.readiness import ReadinessResult, await_all_ready
from sdk_pipeline.types import BuildRef, ServiceEndpoint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceSpec:
    """How to launch the service under test.

    Attributes:
        image_repository: Image name without tag, e.g. 'registry/tools'.
        container_name: Fixed container name (one instance at a time).
        ports: (host, container) port pairs.
        command: Command run inside the container.
        api: API liveness endpoint.
        faucet: Faucet liveness endpoint.
    """

    image_repository: str
    container_name: str
    ports: tuple[tuple[int, int], ...]
    command: tuple[str, ...]
    api: ServiceEndpoint
    faucet: ServiceEndpoint

    def image_for(self, build_ref: BuildRef) -> str:
        """Image reference for a build ref."""
        return f"{self.image_repository}:{build_ref}"


@dataclass
class ServiceHandle:
    """A running service instance."""

    name: str
    container_id: str
    build_ref: BuildRef
    api: ServiceEndpoint
    faucet: ServiceEndpoint
    log_path: Path | None = None
    ready: list[ReadinessResult] = field(default_factory=list)

    @property
    def endpoints(self) -> list[ServiceEndpoint]:
        """Endpoints that must be ready before tests run."""
        return [self.api, self.faucet]


class ServiceHarness:
    """Start and stop the ephemeral service."""

    def __init__(
        self,
        spec: ServiceSpec,
        runtime: DockerRuntime | None = None,
        log_dir: Path | None = None,
    ) -> None:
        self.spec = spec
        self.runtime = runtime or DockerRuntime()
        self.log_dir = log_dir

    def start(self, build_ref: BuildRef) -> ServiceHandle:
        """Launch the service for ``build_ref``.

        A stale instance with the same name is torn down first.

        Raises:
            ServiceStartupError: If the container cannot be started.
        """
        name = self.spec.container_name
        try:
            if self.runtime.remove(name):
                logger.warning("Removed stale service container %s", name)
            image = self.spec.image_for(build_ref)
            logger.info("Starting service %s from %s", name, image)
            container_id = self.runtime.run_detached(
                image=image,
                name=name,
                ports=self.spec.ports,
                command=self.spec.command,
            )
        except ContainerRuntimeError as e:
            logs = self._safe_logs(name)
            self._remove_quietly(name)
            raise ServiceStartupError(
                f"Failed to start service {name}: {e}", logs=logs
            ) from e

        return ServiceHandle(
            name=name,
            container_id=container_id,
            build_ref=build_ref,
            api=self.spec.api,
            faucet=self.spec.faucet,
        )

    def ensure_running(self, handle: ServiceHandle) -> None:
        """Raise ServiceStartupError if the service process has exited."""
        if not self.runtime.is_running(handle.name):
            raise ServiceStartupError(
                f"Service {handle.name} exited before becoming ready",
                logs=self._safe_logs(handle.name),
            )

    def wait_until_ready(
        self,
        handle: ServiceHandle,
        total_timeout: float,
        poll_interval: float,
        client: httpx.Client | None = None,
    ) -> list[ReadinessResult]:
        """Wait for the API and faucet endpoints concurrently.

        Raises:
            ServiceStartupError: If the service exits while waiting.
            ReadinessError: If an endpoint is not ready before the deadline.
        """
        handle.ready = await_all_ready(
            handle.endpoints,
            total_timeout,
            poll_interval,
            client=client,
            abort_check=lambda: self.ensure_running(handle),
        )
        return handle.ready

    def stop(self, handle: ServiceHandle, capture_logs: bool = False) -> Path | None:
        """Tear the service down.

        Args:
            handle: Handle returned by ``start``.
            capture_logs: Write the service logs to ``log_dir`` first.

        Returns:
            Path of the captured log file, if any.
        """
        log_path: Path | None = None
        if capture_logs:
            log_path = self.capture_logs(handle.name)
            handle.log_path = log_path
        if self._remove_quietly(handle.name):
            logger.info("Stopped service %s", handle.name)
        return log_path

    def capture_logs(self, name: str) -> Path | None:
        """Write the container logs to ``<log_dir>/<name>.log``."""
        logs = self._safe_logs(name)
        if self.log_dir is None:
            if logs:
                logger.error("Service %s logs:\n%s", name, logs)
            return None
        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.log_dir / f"{name}.log"
        log_path.write_text(logs, encoding="utf-8")
        logger.info("Captured service logs to %s", log_path)
        return log_path

    def _remove_quietly(self, name: str) -> bool:
        """Remove a container, logging instead of raising on failure."""
        try:
            self.runtime.remove(name)
        except ContainerRuntimeError as e:
            logger.error("Failed to stop service %s: %s", name, e)
            return False
        return True

    def _safe_logs(self, name: str) -> str:
        try:
            return self.runtime.logs(name)
        except ContainerRuntimeError as e:
            logger.warning("Could not read logs of %s: %s", name, e)
            return ""


@contextmanager
def running_service(
    harness: ServiceHarness,
    build_ref: BuildRef,
    always_capture_logs: bool = False,
) -> Iterator[ServiceHandle]:
    """Run the service for the duration of the block.

    The service is stopped on every exit path; its logs are captured when
    the block raised, or always if requested.
    """
    handle = harness.start(build_ref)
    failed = False
    try:
        yield handle
    except BaseException:
        failed = True
        raise
    finally:
        harness.stop(handle, capture_logs=failed or always_capture_logs)


__all__ = ["ServiceHandle", "ServiceHarness", "ServiceSpec", "running_service"]

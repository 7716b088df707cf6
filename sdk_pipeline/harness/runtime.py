"""Container runtime wrapper used by the service harness.

Thin layer over the docker CLI. Each call runs one subprocess with a
timeout and raises ``ContainerRuntimeError`` on failure.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Sequence

logger = logging.getLogger(__name__)

# Timeout for short runtime commands (seconds)
RUNTIME_TIMEOUT = 120


class ContainerRuntimeError(Exception):
    """Raised when a container runtime command fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "runtime_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


class DockerRuntime:
    """Manage containers through the docker CLI."""

    def __init__(self, docker_bin: str = "docker", timeout: float = RUNTIME_TIMEOUT) -> None:
        self.docker_bin = docker_bin
        self.timeout = timeout

    def _run(
        self, args: Sequence[str], check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        cmd = [self.docker_bin, *args]
        logger.debug("Running: %s", shlex.join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise ContainerRuntimeError(
                f"{shlex.join(cmd)} timed out after {self.timeout}s",
                exit_code=-1,
                code="timeout",
            ) from e
        except OSError as e:
            raise ContainerRuntimeError(
                f"Failed to run {self.docker_bin}: {e}",
                code="execution_error",
            ) from e

        if check and result.returncode != 0:
            raise ContainerRuntimeError(
                f"{shlex.join(cmd)} failed: {result.stderr.strip()}",
                exit_code=result.returncode,
                code="command_failed",
            )
        return result

    def run_detached(
        self,
        image: str,
        name: str,
        ports: Sequence[tuple[int, int]],
        command: Sequence[str] = (),
    ) -> str:
        """Start a detached container.

        Args:
            image: Image reference.
            name: Container name.
            ports: (host, container) port pairs to publish.
            command: Command run inside the container.

        Returns:
            Container ID.
        """
        args = ["run", "--detach", f"--name={name}"]
        for host_port, container_port in ports:
            args.extend(["-p", f"{host_port}:{container_port}"])
        args.append(image)
        args.extend(command)
        result = self._run(args)
        return result.stdout.strip()

    def remove(self, name: str) -> bool:
        """Force-remove a container by name.

        Returns:
            True if a container was removed, False if none existed.
        """
        result = self._run(["rm", "--force", name], check=False)
        if result.returncode == 0:
            return True
        if "no such container" in result.stderr.lower():
            return False
        raise ContainerRuntimeError(
            f"Failed to remove container {name}: {result.stderr.strip()}",
            exit_code=result.returncode,
            code="remove_failed",
        )

    def is_running(self, name: str) -> bool:
        """Check whether a container exists and is running."""
        result = self._run(
            ["inspect", "--format", "{{.State.Running}}", name], check=False
        )
        return result.returncode == 0 and result.stdout.strip() == "true"

    def logs(self, name: str) -> str:
        """Return combined stdout/stderr logs of a container."""
        result = self._run(["logs", name], check=False)
        return result.stdout + result.stderr


__all__ = ["ContainerRuntimeError", "DockerRuntime", "RUNTIME_TIMEOUT"]

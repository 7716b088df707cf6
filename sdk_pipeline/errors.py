"""Error taxonomy for the pipeline.

Every error carries a stable code for programmatic handling, the stage it
was raised in, whether the retry executor may try again, and the exit code
the CLI reports when it ends a run.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sdk_pipeline.types import ExitCode

if TYPE_CHECKING:
    from sdk_pipeline.artifacts.consistency import ConsistencyResult
    from sdk_pipeline.release.service import ReleaseReport
    from sdk_pipeline.types import AttemptRecord, ServiceEndpoint


class PipelineError(Exception):
    """Base error for pipeline operations."""

    code = "pipeline_error"
    retryable = True
    exit_code = ExitCode.UNEXPECTED

    def __init__(self, message: str, stage: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage

    def details(self) -> dict[str, Any]:
        """Return structured diagnostic details."""
        return {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.stage:
            result["stage"] = self.stage
        details = self.details()
        if details:
            result["details"] = details
        return result


class PipelineConfigError(PipelineError):
    """Invalid configuration or pipeline definition."""

    code = "config_error"
    retryable = False
    exit_code = ExitCode.CONFIG


class StageTimeoutError(PipelineError):
    """A single attempt exceeded its time budget."""

    code = "stage_timeout"

    def __init__(self, stage: str, timeout: float) -> None:
        super().__init__(f"Stage '{stage}' attempt timed out after {timeout:g}s", stage)
        self.timeout = timeout


class CommandFailedError(PipelineError):
    """An external command exited with a non-zero status."""

    code = "command_failed"

    def __init__(
        self,
        command: str,
        exit_code: int,
        log_path: str | None = None,
        stage: str | None = None,
    ) -> None:
        super().__init__(f"Command failed with exit code {exit_code}: {command}", stage)
        self.command = command
        self.returncode = exit_code
        self.log_path = log_path

    def details(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "exit_code": self.returncode,
            "log_path": self.log_path,
        }


class StageExhaustedError(PipelineError):
    """All attempts of a stage failed."""

    code = "stage_exhausted"
    retryable = False

    def __init__(
        self,
        stage: str,
        attempts: int,
        last_cause: BaseException | None,
        records: list[AttemptRecord] | None = None,
    ) -> None:
        super().__init__(
            f"Stage '{stage}' failed after {attempts} attempt(s): {last_cause}", stage
        )
        self.attempts = attempts
        self.last_cause = last_cause
        self.records = records or []

    @property
    def exit_code(self) -> ExitCode:  # type: ignore[override]
        cause = self.last_cause
        if isinstance(cause, PipelineError):
            return cause.exit_code
        return ExitCode.UNEXPECTED

    def details(self) -> dict[str, Any]:
        result: dict[str, Any] = {"attempts": self.attempts}
        if isinstance(self.last_cause, PipelineError):
            result["last_cause"] = self.last_cause.to_dict()
        elif self.last_cause is not None:
            result["last_cause"] = str(self.last_cause)
        return result


class GenerationError(CommandFailedError):
    """An artifact generation command failed."""

    code = "generation_failed"
    exit_code = ExitCode.GENERATION


class TestsFailedError(CommandFailedError):
    """A test or example command failed."""

    __test__ = False

    code = "tests_failed"
    exit_code = ExitCode.TESTS


class ArtifactMismatchError(PipelineError):
    """Generated artifacts differ from their checked-in baselines."""

    code = "artifact_mismatch"
    retryable = False
    exit_code = ExitCode.ARTIFACT_MISMATCH

    def __init__(
        self,
        results: list[ConsistencyResult],
        hints: list[str] | None = None,
        stage: str | None = None,
    ) -> None:
        names = ", ".join(r.name for r in results)
        super().__init__(f"Generated artifacts differ from baseline: {names}", stage)
        self.results = results
        self.hints = hints or []

    @property
    def diff(self) -> str:
        """Combined unified diff of every mismatching artifact."""
        return "\n".join(r.diff for r in self.results if r.diff)

    def details(self) -> dict[str, Any]:
        return {
            "artifacts": [r.name for r in self.results],
            "differing_files": [f for r in self.results for f in r.differing_files],
            "hints": self.hints,
            "diff": self.diff,
        }


class ServiceStartupError(PipelineError):
    """The ephemeral service exited or failed to start."""

    code = "service_startup"
    exit_code = ExitCode.SERVICE

    def __init__(self, message: str, logs: str = "", stage: str | None = None) -> None:
        super().__init__(message, stage)
        self.logs = logs

    def details(self) -> dict[str, Any]:
        return {"logs": self.logs}


class ReadinessError(PipelineError):
    """An endpoint did not become ready before the deadline."""

    code = "readiness_error"
    exit_code = ExitCode.SERVICE

    def __init__(self, message: str, endpoint: ServiceEndpoint, elapsed: float) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.elapsed = elapsed

    def details(self) -> dict[str, Any]:
        return {
            "endpoint": self.endpoint.name,
            "url": self.endpoint.url,
            "elapsed": round(self.elapsed, 3),
        }


class ReadinessTimeoutError(ReadinessError):
    """The endpoint never answered before the deadline."""

    code = "readiness_timeout"

    def __init__(self, endpoint: ServiceEndpoint, elapsed: float) -> None:
        super().__init__(
            f"Timed out after {elapsed:.1f}s waiting for {endpoint}", endpoint, elapsed
        )


class EndpointUnhealthyError(ReadinessError):
    """The endpoint answered, but only with error statuses, until the deadline."""

    code = "endpoint_unhealthy"

    def __init__(self, endpoint: ServiceEndpoint, elapsed: float, status_code: int) -> None:
        super().__init__(
            f"{endpoint} still returned HTTP {status_code} after {elapsed:.1f}s",
            endpoint,
            elapsed,
        )
        self.status_code = status_code

    def details(self) -> dict[str, Any]:
        result = super().details()
        result["status_code"] = self.status_code
        return result


class SourceNotFoundError(PipelineError):
    """The source image did not appear in the staging registry in time."""

    code = "source_not_found"
    exit_code = ExitCode.RELEASE

    def __init__(self, image: str, waited: float) -> None:
        super().__init__(f"Image {image} not found after waiting {waited:.0f}s")
        self.image = image
        self.waited = waited


class CopyError(PipelineError):
    """Copying an image to one destination failed."""

    code = "copy_error"
    exit_code = ExitCode.RELEASE

    def __init__(self, target: str, cause: str) -> None:
        super().__init__(f"Failed to copy to {target}: {cause}")
        self.target = target
        self.cause = cause

    def details(self) -> dict[str, Any]:
        return {"target": self.target, "cause": self.cause}


class AuthenticationError(PipelineError):
    """Registry credentials were rejected."""

    code = "authentication_error"
    retryable = False
    exit_code = ExitCode.RELEASE

    def __init__(self, registry: str, message: str = "credentials rejected") -> None:
        super().__init__(f"Authentication failed for {registry}: {message}")
        self.registry = registry


class ReleaseError(PipelineError):
    """One or more destinations of a release failed."""

    code = "release_failed"
    retryable = False
    exit_code = ExitCode.RELEASE

    def __init__(self, reports: list[ReleaseReport], stage: str | None = None) -> None:
        failed = [str(o.destination) for r in reports for o in r.failures]
        super().__init__(f"Release failed for: {', '.join(failed)}", stage)
        self.reports = reports

    @property
    def fatal(self) -> bool:
        """Whether any failure was non-retryable (authentication)."""
        return any(r.fatal for r in self.reports)

    def details(self) -> dict[str, Any]:
        return {"reports": [r.to_dict() for r in self.reports]}


__all__ = [
    "ArtifactMismatchError",
    "AuthenticationError",
    "CommandFailedError",
    "CopyError",
    "EndpointUnhealthyError",
    "GenerationError",
    "PipelineConfigError",
    "PipelineError",
    "ReadinessError",
    "ReadinessTimeoutError",
    "ReleaseError",
    "ServiceStartupError",
    "SourceNotFoundError",
    "StageExhaustedError",
    "StageTimeoutError",
    "TestsFailedError",
]

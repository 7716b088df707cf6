"""Pipeline stages.

A stage is a named unit of work with a kind and a retry policy. Its action
receives the shared ``StageContext`` and runs once per attempt under the
retry executor; ``execute_stage`` turns the outcome into a typed
``StageResult`` instead of raising.

This module handles:
- Generation stages (one per artifact with a generate command)
- The artifact consistency stage
- Service start and readiness stages
- Test environment and test command stages
- The image release stage
"""

from __future__ import annotations

import logging
import os
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx

from sdk_pipeline.artifacts.consistency import TrackedArtifact, check_artifacts
from sdk_pipeline.config import PipelineConfig, Settings
from sdk_pipeline.errors import (
    GenerationError,
    PipelineConfigError,
    PipelineError,
    ServiceStartupError,
    TestsFailedError,
)
from sdk_pipeline.harness.service import ServiceHandle, ServiceHarness
from sdk_pipeline.pipeline.schema import (
    ArtifactSchema,
    EnvFileSchema,
    ReleaseSchema,
    RetrySchema,
    TestCommandSchema,
)
from sdk_pipeline.release.service import DigestLookup, ImageCopier, release_images
from sdk_pipeline.stages.commands import expand_command, run_command
from sdk_pipeline.stages.retry import RetryPolicy, run_with_policy
from sdk_pipeline.types import AttemptRecord, ReleaseTarget, StageKind, StageStatus

logger = logging.getLogger(__name__)

# Backoff between attempts of a copy to one destination (seconds)
COPY_BACKOFF_BASE = 5.0
COPY_BACKOFF_MAX = 30.0


@dataclass
class StageContext:
    """Mutable state shared by the stages of one run.

    Attributes:
        config: Immutable run configuration.
        harness: Service harness, when the definition has a service.
        registry: Digest lookup used by the release stage.
        copier: Image copier used by the release stage.
        http_client: HTTP client for readiness probes (one per probe if None).
        handle: Handle of the running service, set by the start stage.
        attempt: Number of the attempt currently running (1-based).
        sleep: Sleep function passed to nested waits.
    """

    config: PipelineConfig
    harness: ServiceHarness | None = None
    registry: DigestLookup | None = None
    copier: ImageCopier | None = None
    http_client: httpx.Client | None = None
    handle: ServiceHandle | None = None
    attempt: int = 0
    sleep: Callable[[float], None] = time.sleep

    def require_harness(self) -> ServiceHarness:
        if self.harness is None:
            raise PipelineConfigError("No service harness configured")
        return self.harness

    def require_handle(self) -> ServiceHandle:
        if self.handle is None:
            raise ServiceStartupError("Service has not been started")
        return self.handle


@dataclass(frozen=True)
class Stage:
    """A named, retryable unit of pipeline work."""

    name: str
    kind: StageKind
    action: Callable[[StageContext], Any]
    policy: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass
class StageResult:
    """Typed outcome of executing a stage."""

    stage: str
    kind: StageKind
    status: StageStatus
    attempts: list[AttemptRecord] = field(default_factory=list)
    payload: Any = None
    error: PipelineError | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.status is StageStatus.SUCCEEDED

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "stage": self.stage,
            "kind": self.kind.value,
            "status": self.status.value,
            "attempts": [
                {
                    "number": a.number,
                    "outcome": a.outcome.value,
                    "duration": round(a.duration, 3),
                    "error": a.error,
                }
                for a in self.attempts
            ],
            "duration": self.duration,
        }
        payload = _serialize_payload(self.payload)
        if payload is not None:
            result["payload"] = payload
        if self.error is not None:
            result["error"] = self.error.to_dict()
        return result


def _serialize_payload(payload: Any) -> Any:
    if isinstance(payload, list) and all(hasattr(p, "to_dict") for p in payload):
        return [p.to_dict() for p in payload] or None
    if hasattr(payload, "to_dict"):
        return payload.to_dict()
    return None


def execute_stage(
    stage: Stage,
    ctx: StageContext,
    sleep: Callable[[float], None] = time.sleep,
) -> StageResult:
    """Run ``stage`` under its retry policy.

    Args:
        stage: Stage to run.
        ctx: Shared run context.
        sleep: Sleep function used between attempts.

    Returns:
        StageResult; failures are reported in ``error``, not raised.
    """
    records: list[AttemptRecord] = []
    started_at = datetime.now(timezone.utc)
    logger.info("Stage %s (%s) starting", stage.name, stage.kind.value)

    def _attempt() -> Any:
        ctx.attempt = len(records) + 1
        return stage.action(ctx)

    try:
        outcome = run_with_policy(
            stage.name, _attempt, stage.policy, sleep=sleep, on_attempt=records.append
        )
    except PipelineError as e:
        logger.error("Stage %s failed: %s", stage.name, e)
        return StageResult(
            stage=stage.name,
            kind=stage.kind,
            status=StageStatus.FAILED,
            attempts=records,
            error=e,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )

    return StageResult(
        stage=stage.name,
        kind=stage.kind,
        status=StageStatus.SUCCEEDED,
        attempts=records,
        payload=outcome.value,
        started_at=started_at,
        finished_at=datetime.now(timezone.utc),
    )


def policy_from_schema(retry: RetrySchema, settings: Settings | None = None) -> RetryPolicy:
    """Build a RetryPolicy from its definition counterpart.

    Unset fields fall back to the stage defaults of ``settings``, or to a
    single unbounded attempt without settings.
    """
    max_attempts = retry.max_attempts
    timeout = retry.timeout
    if settings is not None:
        if max_attempts is None:
            max_attempts = settings.stage_max_attempts
        if timeout is None:
            timeout = settings.stage_timeout
    return RetryPolicy(max_attempts=max_attempts or 1, attempt_timeout=timeout)


def _resolve(root: Path, relative: str | None) -> Path:
    return root / relative if relative else root


def _clean_path(path: Path, root: Path) -> None:
    """Remove a stale generated file or directory below ``root``."""
    resolved, base = path.resolve(), root.resolve()
    if resolved == base or not resolved.is_relative_to(base):
        raise PipelineConfigError(f"Refusing to clean {path}: outside {root}")
    if path.is_dir():
        shutil.rmtree(path)
    elif path.exists():
        path.unlink()


def generate_stage(artifact: ArtifactSchema, settings: Settings) -> Stage:
    """Stage running the command that produces ``artifact``."""
    if not artifact.generate:
        raise PipelineConfigError(f"Artifact {artifact.name} has no generate command")
    name = f"generate-{artifact.name}"
    policy = policy_from_schema(artifact.retry, settings)
    template = list(artifact.generate)

    def _generate(ctx: StageContext) -> Path:
        cfg = ctx.config
        output = cfg.run_dir / artifact.generated
        _clean_path(output, cfg.run_dir)
        output.parent.mkdir(parents=True, exist_ok=True)
        run_command(
            expand_command(template, cfg.placeholders()),
            cfg.log_dir / f"{name}.log",
            cwd=_resolve(cfg.repo_root, artifact.cwd),
            timeout=policy.attempt_timeout,
            stage=name,
            error_cls=GenerationError,
        )
        return output

    return Stage(name=name, kind=StageKind.GENERATE, action=_generate, policy=policy)


def tracked_artifacts(config: PipelineConfig) -> list[TrackedArtifact]:
    """Resolve the definition's artifacts to concrete paths."""
    return [
        TrackedArtifact(
            name=a.name,
            generated=config.run_dir / a.generated,
            baseline=config.repo_root / a.baseline,
            ignore_patterns=tuple(a.ignore_patterns),
            regenerate_hint=a.regenerate_hint,
        )
        for a in config.definition.artifacts
    ]


def compare_stage() -> Stage:
    """Stage comparing every generated artifact with its baseline."""
    name = "compare-artifacts"

    def _compare(ctx: StageContext) -> list:
        return check_artifacts(tracked_artifacts(ctx.config), stage=name)

    return Stage(name=name, kind=StageKind.COMPARE, action=_compare)


def start_service_stage(retry: RetrySchema) -> Stage:
    """Stage launching the ephemeral service."""

    def _start(ctx: StageContext) -> ServiceHandle:
        harness = ctx.require_harness()
        ctx.handle = harness.start(ctx.config.build_ref)
        return ctx.handle

    return Stage(
        name="start-service",
        kind=StageKind.START_SERVICE,
        action=_start,
        policy=policy_from_schema(retry),
    )


def await_ready_stage(retry: RetrySchema) -> Stage:
    """Stage waiting for the API and faucet endpoints.

    A retry restarts the service first if it is no longer running.
    """

    def _await(ctx: StageContext) -> list:
        harness = ctx.require_harness()
        handle = ctx.require_handle()
        if ctx.attempt > 1 and not harness.runtime.is_running(handle.name):
            logger.warning("Service %s is not running, restarting", handle.name)
            ctx.handle = handle = harness.start(handle.build_ref)
        settings = ctx.config.settings
        return harness.wait_until_ready(
            handle,
            settings.ready_timeout,
            settings.ready_poll_interval,
            client=ctx.http_client,
        )

    return Stage(
        name="await-ready",
        kind=StageKind.AWAIT_READY,
        action=_await,
        policy=policy_from_schema(retry),
    )


def render_env_file(variables: dict[str, str], values: dict[str, str]) -> str:
    """Render dotenv content.

    Placeholders are expanded first, then $VARIABLES from the environment;
    unset environment variables are left as written.

    Raises:
        PipelineConfigError: If a value references an unknown placeholder.
    """
    keys = list(variables)
    expanded = expand_command([variables[k] for k in keys], values)
    return "".join(f"{k}={os.path.expandvars(v)}\n" for k, v in zip(keys, expanded))


def write_env_stage(env_file: EnvFileSchema) -> Stage:
    """Stage writing the test environment file and its copies."""
    name = "write-test-env"

    def _write(ctx: StageContext) -> list[Path]:
        cfg = ctx.config
        content = render_env_file(env_file.variables, cfg.placeholders())
        written = []
        for relative in [env_file.path, *env_file.copy_to]:
            path = cfg.repo_root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
            logger.info("Wrote test environment to %s", path)
            written.append(path)
        return written

    return Stage(name=name, kind=StageKind.RUN_TESTS, action=_write)


def run_tests_stage(test: TestCommandSchema, settings: Settings) -> Stage:
    """Stage running one test or example command."""
    name = f"test-{test.name}"
    policy = policy_from_schema(test.retry, settings)
    template = list(test.command)

    def _test(ctx: StageContext) -> Any:
        cfg = ctx.config
        values = cfg.placeholders()
        env = dict(zip(test.env, expand_command(list(test.env.values()), values)))
        return run_command(
            expand_command(template, values),
            cfg.log_dir / f"{name}.log",
            cwd=_resolve(cfg.repo_root, test.cwd),
            timeout=policy.attempt_timeout,
            env_override=env,
            stage=name,
            error_cls=TestsFailedError,
        )

    return Stage(name=name, kind=StageKind.RUN_TESTS, action=_test, policy=policy)


def release_stage(release: ReleaseSchema) -> Stage:
    """Stage promoting the staged images to every destination registry."""
    name = "release"
    target = ReleaseTarget(registries=tuple(release.registries), tag_prefix=release.tag_prefix)
    copy_policy = RetryPolicy(
        max_attempts=release.copy_attempts,
        backoff_base=COPY_BACKOFF_BASE,
        backoff_max=COPY_BACKOFF_MAX,
    )

    def _release(ctx: StageContext) -> list:
        if ctx.registry is None or ctx.copier is None:
            raise PipelineConfigError("Release requires a registry client and a copier")
        settings = ctx.config.settings
        wait = (
            release.wait_seconds
            if release.wait_seconds is not None
            else settings.release_wait_seconds
        )
        return release_images(
            release.images,
            settings.staging_registry,
            target,
            ctx.config.build_ref,
            ctx.registry,
            ctx.copier,
            wait,
            copy_policy=copy_policy,
            stage=name,
            sleep=ctx.sleep,
        )

    return Stage(name=name, kind=StageKind.RELEASE, action=_release)


__all__ = [
    "Stage",
    "StageContext",
    "StageResult",
    "await_ready_stage",
    "compare_stage",
    "execute_stage",
    "generate_stage",
    "policy_from_schema",
    "release_stage",
    "render_env_file",
    "run_tests_stage",
    "start_service_stage",
    "tracked_artifacts",
    "write_env_stage",
]

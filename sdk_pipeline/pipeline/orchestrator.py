"""Pipeline orchestrator.

Composes the stages of a run from its definition and executes them
strictly in sequence. The first failing stage ends the run; the service
(if one was started) is torn down on every exit path, with its logs
captured when the run failed.

Order of stages:

1. generate (one per artifact with a generate command)
2. compare-artifacts
3. start-service, await-ready, write-test-env, test-* (when a service is defined)
4. release (when defined and requested)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx
from sqlalchemy.orm import Session, sessionmaker

from sdk_pipeline.config import PipelineConfig, Settings
from sdk_pipeline.db import get_session
from sdk_pipeline.errors import PipelineConfigError, PipelineError
from sdk_pipeline.harness.runtime import DockerRuntime
from sdk_pipeline.harness.service import ServiceHarness, ServiceSpec
from sdk_pipeline.pipeline.stages import (
    Stage,
    StageContext,
    StageResult,
    await_ready_stage,
    compare_stage,
    execute_stage,
    generate_stage,
    release_stage,
    start_service_stage,
    run_tests_stage,
    write_env_stage,
)
from sdk_pipeline.release.registry import (
    CraneCopier,
    RegistryClient,
    load_docker_credentials,
    parse_credential,
    registry_host,
)
from sdk_pipeline.release.service import DigestLookup, ImageCopier
from sdk_pipeline.runs.service import finish_run, record_stage, start_run
from sdk_pipeline.stages.commands import expand_command
from sdk_pipeline.types import ExitCode, StageKind

logger = logging.getLogger(__name__)

# Exit code of a stage failure whose error does not carry a specific one
STAGE_EXIT_CODES = {
    StageKind.GENERATE: ExitCode.GENERATION,
    StageKind.COMPARE: ExitCode.ARTIFACT_MISMATCH,
    StageKind.START_SERVICE: ExitCode.SERVICE,
    StageKind.AWAIT_READY: ExitCode.SERVICE,
    StageKind.RUN_TESTS: ExitCode.TESTS,
    StageKind.RELEASE: ExitCode.RELEASE,
}

# Kinds that need the service running
SERVICE_KINDS = {StageKind.START_SERVICE, StageKind.AWAIT_READY, StageKind.RUN_TESTS}


@dataclass
class PipelineResult:
    """Single pass/fail outcome of a run.

    Attributes:
        success: Whether every stage succeeded.
        exit_code: Process exit code for the run.
        stages: Results of the stages that ran, in order.
        failed_stage: Name of the stage that ended the run.
        error: Error that ended the run.
        run_id: ID of the run record, when recording is enabled.
    """

    success: bool
    exit_code: ExitCode
    stages: list[StageResult] = field(default_factory=list)
    failed_stage: str | None = None
    error: PipelineError | None = None
    run_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "success": self.success,
            "exit_code": int(self.exit_code),
            "failed_stage": self.failed_stage,
            "run_id": self.run_id,
            "stages": [s.to_dict() for s in self.stages],
        }
        if self.error is not None:
            result["error"] = self.error.to_dict()
        return result


def exit_code_for(result: StageResult) -> ExitCode:
    """Exit code reported when ``result`` ends a run."""
    if result.error is None:
        return ExitCode.SUCCESS
    code = ExitCode(result.error.exit_code)
    if code is ExitCode.UNEXPECTED:
        return STAGE_EXIT_CODES[result.kind]
    return code


def build_stages(config: PipelineConfig, include_release: bool = True) -> list[Stage]:
    """Compose the stages of a run from its definition.

    Args:
        config: Run configuration.
        include_release: Append the release stage when one is defined.

    Returns:
        Stages in execution order.
    """
    definition = config.definition
    settings = config.settings
    stages = [
        generate_stage(artifact, settings)
        for artifact in definition.artifacts
        if artifact.generate
    ]
    if definition.artifacts:
        stages.append(compare_stage())

    if definition.service is not None:
        stages.append(start_service_stage(definition.service.start))
        stages.append(await_ready_stage(definition.service.ready))
    if definition.tests.env_file is not None:
        stages.append(write_env_stage(definition.tests.env_file))
    stages.extend(
        run_tests_stage(test, settings) for test in definition.tests.commands
    )

    if include_release and definition.release is not None:
        stages.append(release_stage(definition.release))
    return stages


def build_harness(config: PipelineConfig) -> ServiceHarness | None:
    """Service harness for the definition's service, or None without one."""
    service = config.definition.service
    if service is None:
        return None
    settings = config.settings
    repository = service.image_repository or settings.service_image_repository
    ports = tuple(service.ports) or (
        (settings.api_port, settings.api_port),
        (settings.faucet_port, settings.faucet_port),
    )
    spec = ServiceSpec(
        image_repository=f"{settings.staging_registry}/{repository}",
        container_name=service.container_name or settings.container_name,
        ports=ports,
        command=tuple(expand_command(service.command, config.placeholders())),
        api=settings.api_endpoint(),
        faucet=settings.faucet_endpoint(),
    )
    return ServiceHarness(
        spec, runtime=DockerRuntime(settings.docker_bin), log_dir=config.log_dir
    )


def registry_credentials(settings: Settings) -> dict[str, tuple[str, str]]:
    """Per-host registry credentials: docker logins, overridden by settings.

    Raises:
        PipelineConfigError: If a configured credential is malformed.
    """
    credentials = (
        load_docker_credentials(settings.docker_config) if settings.docker_config else {}
    )
    for host, secret in settings.registry_credentials.items():
        try:
            credentials[registry_host(host)] = parse_credential(secret.get_secret_value())
        except ValueError as e:
            raise PipelineConfigError(f"Invalid registry credentials for {host}: {e}") from e
    return credentials


def build_release_clients(config: PipelineConfig) -> tuple[RegistryClient, CraneCopier]:
    """Registry client and copier configured from settings."""
    settings = config.settings
    registry = RegistryClient(
        credentials=registry_credentials(settings),
        insecure=settings.registry_insecure,
    )
    return registry, CraneCopier(settings.crane_bin)


class _RunRecorder:
    """Write run records when a session factory is configured."""

    def __init__(self, session_factory: sessionmaker[Session] | None) -> None:
        self.session_factory = session_factory
        self.run_id: int | None = None

    def start(self, config: PipelineConfig) -> None:
        if self.session_factory is None:
            return
        with get_session(self.session_factory) as session:
            self.run_id = start_run(session, config.build_ref).id

    def stage(self, result: StageResult) -> None:
        if self.run_id is None:
            return
        with get_session(self.session_factory) as session:
            record_stage(session, self.run_id, result)

    def finish(self, result: PipelineResult) -> None:
        if self.run_id is None:
            return
        with get_session(self.session_factory) as session:
            finish_run(
                session,
                self.run_id,
                result.success,
                int(result.exit_code),
                failed_stage=result.failed_stage,
                error=result.error,
            )


def run_pipeline(
    config: PipelineConfig,
    harness: ServiceHarness | None = None,
    registry: DigestLookup | None = None,
    copier: ImageCopier | None = None,
    include_release: bool = True,
    session_factory: sessionmaker[Session] | None = None,
    http_client: httpx.Client | None = None,
    stages: Sequence[Stage] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PipelineResult:
    """Run the pipeline for ``config.build_ref``.

    Args:
        config: Immutable run configuration.
        harness: Service harness; built from settings if not provided.
        registry: Digest lookup for the release stage; built if not provided.
        copier: Image copier for the release stage; built if not provided.
        include_release: Run the release stage when one is defined.
        session_factory: Record the run in the database when provided.
        http_client: HTTP client for readiness probes.
        stages: Explicit stages; composed from the definition if not provided.
        sleep: Sleep function used between attempts.

    Returns:
        PipelineResult; stage failures are reported, not raised.
    """
    owned_registry: RegistryClient | None = None
    if stages is None:
        stages = build_stages(config, include_release=include_release)
    if harness is None:
        harness = build_harness(config)
    if any(s.kind is StageKind.RELEASE for s in stages) and (
        registry is None or copier is None
    ):
        default_registry, default_copier = build_release_clients(config)
        if registry is None:
            registry = owned_registry = default_registry
        copier = copier or default_copier

    ctx = StageContext(
        config=config,
        harness=harness,
        registry=registry,
        copier=copier,
        http_client=http_client,
        sleep=sleep,
    )
    recorder = _RunRecorder(session_factory)
    recorder.start(config)

    logger.info("Running %d stage(s) for build %s", len(stages), config.build_ref)
    results: list[StageResult] = []
    failure: StageResult | None = None
    completed = False

    try:
        for stage in stages:
            if stage.kind not in SERVICE_KINDS:
                _teardown(ctx, failed=False)
            result = execute_stage(stage, ctx, sleep=sleep)
            results.append(result)
            recorder.stage(result)
            if not result.ok:
                failure = result
                break
        completed = True
    finally:
        _teardown(ctx, failed=failure is not None or not completed)
        if owned_registry is not None:
            owned_registry.close()

    if failure is None:
        outcome = PipelineResult(
            success=True, exit_code=ExitCode.SUCCESS, stages=results
        )
        logger.info("Pipeline succeeded for build %s", config.build_ref)
    else:
        outcome = PipelineResult(
            success=False,
            exit_code=exit_code_for(failure),
            stages=results,
            failed_stage=failure.stage,
            error=failure.error,
        )
        logger.error(
            "Pipeline failed at stage %s (exit %d): %s",
            failure.stage,
            outcome.exit_code,
            failure.error,
        )

    outcome.run_id = recorder.run_id
    recorder.finish(outcome)
    return outcome


def _teardown(ctx: StageContext, failed: bool) -> None:
    """Stop the service if it is running."""
    if ctx.handle is None or ctx.harness is None:
        return
    ctx.harness.stop(ctx.handle, capture_logs=failed)
    ctx.handle = None


__all__ = [
    "PipelineResult",
    "STAGE_EXIT_CODES",
    "build_harness",
    "build_release_clients",
    "registry_credentials",
    "build_stages",
    "exit_code_for",
    "run_pipeline",
]

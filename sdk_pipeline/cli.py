"""Thin CLI wrapper for sdk_pipeline.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
import subprocess
import threading
from pathlib import Path
from typing import Annotated, Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from sdk_pipeline import __version__
from sdk_pipeline.config import PipelineConfig, Settings, get_settings, print_settings_json
from sdk_pipeline.errors import (
    ArtifactMismatchError,
    CommandFailedError,
    PipelineConfigError,
    PipelineError,
    ReadinessError,
    ServiceStartupError,
    StageExhaustedError,
)
from sdk_pipeline.stages.commands import tail_log
from sdk_pipeline.types import BuildRef, ExitCode, StageKind

app = typer.Typer(
    name="sdk-pipeline",
    help="SDK pipeline - verify generated artifacts, test against a live service, release images",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

DEFAULT_DEFINITION = Path("pipeline.yaml")

BuildRefOption = Annotated[
    str,
    typer.Option(
        "--build-ref",
        "-b",
        envvar="SDK_PIPELINE_BUILD_REF",
        help="Build identifier (commit SHA, branch or tag)",
    ),
]
DefinitionOption = Annotated[
    Path,
    typer.Option("--definition", "-d", help="Pipeline definition file (YAML or JSON)"),
]
RepoRootOption = Annotated[
    Path,
    typer.Option("--repo-root", help="Repository checkout holding the baselines"),
]
JsonOption = Annotated[bool, typer.Option("--json", help="Output as JSON")]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"sdk-pipeline version {__version__}")
        raise typer.Exit()


def setup_logging(level: str) -> None:
    """Route log records to stderr through rich."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Override the configured log level"),
    ] = None,
) -> None:
    """SDK pipeline - verify generated artifacts, test against a live service, release images."""
    if log_level is None:
        try:
            log_level = get_settings().log_level
        except ValidationError:
            log_level = "INFO"
    setup_logging(log_level)


def _print_json(data: Any) -> None:
    console.print(
        json.dumps(data, indent=2, default=str),
        soft_wrap=True,
        highlight=False,
        markup=False,
    )


def _fail(message: str, code: ExitCode) -> typer.Exit:
    err_console.print(f"[red]{message}[/red]")
    return typer.Exit(code=int(code))


def _load_settings() -> Settings:
    try:
        return get_settings()
    except ValidationError as e:
        raise _fail(f"Invalid settings: {e}", ExitCode.CONFIG) from None


def _load_config(build_ref: str, definition: Path, repo_root: Path) -> PipelineConfig:
    """Build the immutable run configuration, exiting on configuration errors."""
    from sdk_pipeline.pipeline.io import load_pipeline_definition

    settings = _load_settings()
    try:
        ref = BuildRef(build_ref)
        parsed = load_pipeline_definition(definition)
    except ValueError as e:
        raise _fail(f"Invalid build ref: {e}", ExitCode.CONFIG) from None
    except PipelineConfigError as e:
        raise _fail(str(e), ExitCode.CONFIG) from None
    return PipelineConfig(
        build_ref=ref,
        settings=settings,
        definition=parsed,
        repo_root=repo_root.resolve(),
    )


def _session_factory(settings: Settings) -> Any:
    from sdk_pipeline.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    return get_session_factory(engine)


def _root_cause(error: PipelineError) -> PipelineError:
    if isinstance(error, StageExhaustedError) and isinstance(
        error.last_cause, PipelineError
    ):
        return error.last_cause
    return error


def _print_failure(result: Any) -> None:
    """Print the failing stage and its diagnostics."""
    error = result.error
    console.print(
        f"[red]✗ Stage {result.failed_stage} failed (exit code {int(result.exit_code)})[/red]"
    )
    if error is None:
        return
    console.print(f"  {error.message}")
    if isinstance(error, StageExhaustedError):
        console.print(f"  Attempts: {error.attempts}")

    cause = _root_cause(error)
    if isinstance(cause, ArtifactMismatchError):
        for result_ in cause.results:
            for name in result_.differing_files:
                console.print(f"  [yellow]{result_.name}: {name}[/yellow]")
        if cause.diff:
            console.print(cause.diff, markup=False, highlight=False, soft_wrap=True)
        if cause.hints:
            console.print()
            console.print(
                "[bold]Generated artifacts are out of date. "
                "Run the following commands locally to fix it:[/bold]",
                soft_wrap=True,
            )
            for hint in cause.hints:
                console.print(f"  {hint}", markup=False, soft_wrap=True)
    elif isinstance(cause, CommandFailedError) and cause.log_path:
        console.print(f"  Log: {cause.log_path}")
        tail = tail_log(Path(cause.log_path))
        if tail:
            console.print(tail, markup=False, highlight=False, soft_wrap=True)
    elif isinstance(cause, ServiceStartupError) and cause.logs:
        console.print("  Service logs (tail):")
        tail = "\n".join(cause.logs.splitlines()[-40:])
        console.print(tail, markup=False, highlight=False, soft_wrap=True)


def _print_stages(result: Any) -> None:
    for stage in result.stages:
        marker = "[green]✓[/green]" if stage.ok else "[red]✗[/red]"
        duration = f"{stage.duration:.1f}s" if stage.duration is not None else "-"
        console.print(
            f"  {marker} {stage.stage} ({stage.kind.value}, "
            f"{stage.attempt_count} attempt(s), {duration})"
        )


def _finish(result: Any, json_output: bool) -> None:
    """Print a pipeline result and exit with its code."""
    if json_output:
        _print_json(result.to_dict())
    else:
        console.print("[bold]Stages:[/bold]")
        _print_stages(result)
        console.print()
        if result.success:
            console.print("[green]✓ Pipeline succeeded[/green]")
        else:
            _print_failure(result)
        if result.run_id is not None:
            console.print(f"  Run ID: {result.run_id}")
    if not result.success:
        raise typer.Exit(code=int(result.exit_code))


@app.command()
def config(
    json_output: JsonOption = False,
) -> None:
    """Show effective configuration."""
    settings = _load_settings()
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True, highlight=False)
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Workspace directory: {settings.workspace_dir}")
    console.print(f"  Log directory:       {settings.log_dir}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    console.print("[bold]Service:[/bold]")
    console.print(f"  Staging registry:    {settings.staging_registry}")
    console.print(f"  Image repository:    {settings.service_image_repository}")
    console.print(f"  Container name:      {settings.container_name}")
    console.print(f"  API URL:             {settings.api_url}")
    console.print(f"  Faucet URL:          {settings.faucet_url}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Readiness timeout:   {settings.ready_timeout}")
    console.print(f"  Readiness interval:  {settings.ready_poll_interval}")
    console.print(f"  Stage timeout:       {settings.stage_timeout}")
    console.print(f"  Stage attempts:      {settings.stage_max_attempts}")
    console.print(f"  Release wait:        {settings.release_wait_seconds}")


@app.command()
def run(
    build_ref: BuildRefOption,
    definition: DefinitionOption = DEFAULT_DEFINITION,
    repo_root: RepoRootOption = Path("."),
    skip_release: Annotated[
        bool,
        typer.Option("--skip-release", help="Stop after the tests"),
    ] = False,
    record: Annotated[
        bool,
        typer.Option("--record/--no-record", help="Record the run in the database"),
    ] = True,
    json_output: JsonOption = False,
) -> None:
    """Run the full pipeline for one build ref."""
    from sdk_pipeline.pipeline.orchestrator import run_pipeline

    cfg = _load_config(build_ref, definition, repo_root)
    factory = _session_factory(cfg.settings) if record else None

    if not json_output:
        console.print(f"[blue]Running pipeline for {cfg.build_ref}...[/blue]")
    try:
        result = run_pipeline(
            cfg, include_release=not skip_release, session_factory=factory
        )
    except PipelineConfigError as e:
        raise _fail(str(e), ExitCode.CONFIG) from None
    _finish(result, json_output)


@app.command()
def check(
    build_ref: BuildRefOption,
    definition: DefinitionOption = DEFAULT_DEFINITION,
    repo_root: RepoRootOption = Path("."),
    compare_only: Annotated[
        bool,
        typer.Option(
            "--compare-only",
            help="Compare the existing workspace output without regenerating",
        ),
    ] = False,
    json_output: JsonOption = False,
) -> None:
    """Check generated artifacts against their checked-in baselines."""
    from sdk_pipeline.pipeline.orchestrator import build_stages, run_pipeline

    cfg = _load_config(build_ref, definition, repo_root)
    kinds = {StageKind.COMPARE} if compare_only else {StageKind.GENERATE, StageKind.COMPARE}
    try:
        stages = [s for s in build_stages(cfg, include_release=False) if s.kind in kinds]
        result = run_pipeline(cfg, stages=stages)
    except PipelineConfigError as e:
        raise _fail(str(e), ExitCode.CONFIG) from None
    _finish(result, json_output)


@app.command("await-ready")
def await_ready_cmd(
    urls: Annotated[
        list[str] | None,
        typer.Argument(help="URLs to wait for (default: configured API and faucet)"),
    ] = None,
    timeout: Annotated[
        float | None,
        typer.Option("--timeout", "-t", help="Total time to wait in seconds"),
    ] = None,
    interval: Annotated[
        float | None,
        typer.Option("--interval", "-i", help="Delay between probes in seconds"),
    ] = None,
    json_output: JsonOption = False,
) -> None:
    """Wait until HTTP endpoints answer with a non-error status."""
    from sdk_pipeline.readiness import await_all_ready
    from sdk_pipeline.types import ServiceEndpoint

    settings = _load_settings()
    if urls:
        endpoints = [ServiceEndpoint(name=url, url=url) for url in urls]
    else:
        endpoints = [settings.api_endpoint(), settings.faucet_endpoint()]

    try:
        results = await_all_ready(
            endpoints,
            timeout if timeout is not None else settings.ready_timeout,
            interval if interval is not None else settings.ready_poll_interval,
        )
    except ReadinessError as e:
        if json_output:
            _print_json({"ready": False, "error": e.to_dict()})
            raise typer.Exit(code=int(ExitCode.SERVICE)) from None
        raise _fail(str(e), ExitCode.SERVICE) from None

    if json_output:
        _print_json(
            {
                "ready": True,
                "endpoints": [
                    {
                        "url": r.endpoint.url,
                        "elapsed": round(r.elapsed, 3),
                        "probes": r.probes,
                        "status_code": r.status_code,
                    }
                    for r in results
                ],
            }
        )
        return
    for r in results:
        console.print(
            f"[green]✓ {r.endpoint.url} ready after {r.elapsed:.1f}s "
            f"(HTTP {r.status_code})[/green]"
        )


@app.command()
def serve(
    build_ref: BuildRefOption,
    command: Annotated[
        list[str] | None,
        typer.Argument(help="Command to run against the live service (after --)"),
    ] = None,
    definition: DefinitionOption = DEFAULT_DEFINITION,
) -> None:
    """Run the service under test until interrupted, or around one command.

    With a command the service is stopped when the command exits and the
    exit code is 0 or 6; without one it runs until Ctrl-C.
    """
    from sdk_pipeline.harness import running_service
    from sdk_pipeline.pipeline.orchestrator import build_harness

    cfg = _load_config(build_ref, definition, Path("."))
    harness = build_harness(cfg)
    if harness is None:
        raise _fail(f"No service section in {definition}", ExitCode.CONFIG)

    settings = cfg.settings
    returncode = 0
    try:
        with running_service(harness, cfg.build_ref) as handle:
            harness.wait_until_ready(
                handle, settings.ready_timeout, settings.ready_poll_interval
            )
            for endpoint in handle.endpoints:
                console.print(f"[green]✓ {endpoint.name} ready at {endpoint.url}[/green]")

            if command:
                try:
                    returncode = subprocess.run(command, check=False).returncode
                except OSError as e:
                    err_console.print(f"[red]Failed to run {command[0]}: {e}[/red]")
                    returncode = 127
            else:
                console.print("Press Ctrl-C to stop the service.")
                try:
                    threading.Event().wait()
                except KeyboardInterrupt:
                    console.print("Stopping service...")
    except (ServiceStartupError, ReadinessError) as e:
        raise _fail(str(e), ExitCode.SERVICE) from None

    if returncode != 0:
        raise _fail(f"Command exited with code {returncode}", ExitCode.TESTS)


@app.command()
def release(
    build_ref: BuildRefOption,
    definition: DefinitionOption = DEFAULT_DEFINITION,
    images: Annotated[
        list[str] | None,
        typer.Option("--image", help="Repository to release (can be repeated)"),
    ] = None,
    wait_for_image_seconds: Annotated[
        float | None,
        typer.Option(
            "--wait-for-image-seconds", help="How long to wait for the source images"
        ),
    ] = None,
    json_output: JsonOption = False,
) -> None:
    """Promote the images built for a build ref to the release registries."""
    from sdk_pipeline.pipeline.orchestrator import run_pipeline
    from sdk_pipeline.pipeline.stages import release_stage

    cfg = _load_config(build_ref, definition, Path("."))
    schema = cfg.definition.release
    if schema is None:
        raise _fail(f"No release section in {definition}", ExitCode.CONFIG)

    update: dict[str, Any] = {}
    if images:
        update["images"] = images
    if wait_for_image_seconds is not None:
        update["wait_seconds"] = wait_for_image_seconds
    if update:
        schema = schema.model_copy(update=update)

    try:
        result = run_pipeline(cfg, stages=[release_stage(schema)])
    except PipelineConfigError as e:
        raise _fail(str(e), ExitCode.CONFIG) from None
    _finish(result, json_output)


runs_app = typer.Typer(help="Inspect recorded pipeline runs")
app.add_typer(runs_app, name="runs")


@runs_app.command("list")
def runs_list(
    build_ref: Annotated[
        str | None,
        typer.Option("--build-ref", "-b", help="Filter by build ref"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option("--status", "-s", help="Filter by status (running/succeeded/failed)"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 20,
    json_output: JsonOption = False,
) -> None:
    """List recorded runs, newest first."""
    from sdk_pipeline.runs.service import list_runs
    from sdk_pipeline.types import RunStatus

    status_filter: RunStatus | None = None
    if status:
        try:
            status_filter = RunStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: running, succeeded, failed")
            raise typer.Exit(code=1) from None

    factory = _session_factory(_load_settings())
    with factory() as session:
        runs = list_runs(session, build_ref=build_ref, status=status_filter, limit=limit)

        if json_output:
            _print_json([_run_to_dict(r) for r in runs])
            return
        if not runs:
            console.print("[yellow]No runs found[/yellow]")
            return

        console.print(f"[bold]Found {len(runs)} run(s):[/bold]")
        for r in runs:
            color = {"succeeded": "green", "failed": "red"}.get(r.status, "blue")
            failed = f" at {r.failed_stage}" if r.failed_stage else ""
            console.print(
                f"  [{color}]#{r.id} {r.build_ref} {r.status}{failed}[/{color}] "
                f"(started {r.started_at:%Y-%m-%d %H:%M:%S})"
            )


@runs_app.command("show")
def runs_show(
    run_id: Annotated[int, typer.Argument(help="Run ID to show")],
    json_output: JsonOption = False,
) -> None:
    """Show a recorded run and its stages."""
    from sdk_pipeline.runs.service import RunNotFoundError, get_run

    factory = _session_factory(_load_settings())
    with factory() as session:
        try:
            r = get_run(session, run_id)
        except RunNotFoundError:
            console.print(f"[red]Run not found: {run_id}[/red]")
            raise typer.Exit(code=1) from None

        if json_output:
            _print_json(_run_to_dict(r, with_stages=True))
            return

        console.print(f"[bold]Run #{r.id}[/bold]")
        console.print(f"  Build ref:   {r.build_ref}")
        console.print(f"  Status:      {r.status}")
        console.print(f"  Exit code:   {r.exit_code}")
        console.print(f"  Started:     {r.started_at}")
        console.print(f"  Finished:    {r.finished_at}")
        if r.failed_stage:
            console.print(f"  Failed at:   {r.failed_stage}")
            console.print(f"  Error:       [{r.error_code}] {r.error_message}", markup=False)
        console.print()
        console.print("[bold]Stages:[/bold]")
        for s in r.stages:
            marker = "[green]✓[/green]" if s.status == "succeeded" else "[red]✗[/red]"
            console.print(f"  {marker} {s.name} ({s.kind}, {s.attempts} attempt(s))")


def _run_to_dict(r: Any, with_stages: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": r.id,
        "build_ref": r.build_ref,
        "status": r.status,
        "exit_code": r.exit_code,
        "started_at": r.started_at.isoformat() if r.started_at else None,
        "finished_at": r.finished_at.isoformat() if r.finished_at else None,
        "failed_stage": r.failed_stage,
        "error_code": r.error_code,
        "error_message": r.error_message,
    }
    if with_stages:
        data["stages"] = [
            {
                "name": s.name,
                "kind": s.kind,
                "status": s.status,
                "attempts": s.attempts,
                "error_code": s.error_code,
                "error_message": s.error_message,
                "details": s.details,
            }
            for s in r.stages
        ]
    return data


if __name__ == "__main__":
    app()

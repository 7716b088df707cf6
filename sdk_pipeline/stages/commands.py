"""External command execution for pipeline stages.

This module handles:
- Expanding command templates with run placeholders
- Executing commands with subprocess
- Capturing stdout/stderr to log files
- Enforcing per-attempt timeouts
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from sdk_pipeline.errors import CommandFailedError, PipelineConfigError, StageTimeoutError

logger = logging.getLogger(__name__)

# Lines of command output quoted in error messages
LOG_TAIL_LINES = 40


@dataclass
class CommandResult:
    """Result of a command execution.

    Attributes:
        exit_code: Process exit code.
        log_path: Path to the command log file.
        started_at: Start time.
        finished_at: Finish time.
        command: The command that was executed.
    """

    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str

    @property
    def duration(self) -> float:
        """Wall-clock duration in seconds."""
        return (self.finished_at - self.started_at).total_seconds()


def expand_command(template: list[str], values: Mapping[str, str]) -> list[str]:
    """Expand ``{placeholder}`` fields in every argument of a command.

    Args:
        template: Command arguments, possibly containing placeholders.
        values: Placeholder values.

    Returns:
        Expanded command arguments.

    Raises:
        PipelineConfigError: If a placeholder is unknown.
    """
    try:
        return [arg.format_map(values) for arg in template]
    except KeyError as e:
        raise PipelineConfigError(
            f"Unknown placeholder {e} in command: {shlex.join(template)}"
        ) from e


def tail_log(log_path: Path, lines: int = LOG_TAIL_LINES) -> str:
    """Return the last ``lines`` lines of a log file (empty if missing)."""
    if not log_path.exists():
        return ""
    content = log_path.read_text(encoding="utf-8", errors="replace").splitlines()
    return "\n".join(content[-lines:])


def run_command(
    command: list[str],
    log_path: Path,
    cwd: Path | None = None,
    timeout: float | None = None,
    env_override: Mapping[str, str] | None = None,
    stage: str | None = None,
    error_cls: type[CommandFailedError] = CommandFailedError,
) -> CommandResult:
    """Execute an external command, capturing its output to ``log_path``.

    Args:
        command: Command as list of strings.
        log_path: Log file; overwritten on every attempt.
        cwd: Working directory.
        timeout: Timeout in seconds (None = no timeout).
        env_override: Optional environment variable overrides.
        stage: Stage name used in errors.
        error_cls: Error raised on a non-zero exit status.

    Returns:
        CommandResult of a successful execution.

    Raises:
        StageTimeoutError: If the command exceeded ``timeout``.
        CommandFailedError: If the command exited non-zero or failed to start.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    cmd_str = shlex.join(command)
    logger.info("Executing: %s", cmd_str)
    if cwd:
        logger.debug("Working directory: %s", cwd)

    env: dict[str, str] | None = None
    if env_override:
        env = dict(os.environ)
        env.update(env_override)

    started_at = datetime.now(timezone.utc)

    try:
        with log_path.open("w") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {cwd or os.getcwd()}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            result = subprocess.run(
                command,
                cwd=cwd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                env=env,
                check=False,
            )
            exit_code = result.returncode

    except subprocess.TimeoutExpired as e:
        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
        logger.error("Command timed out after %ss. See log: %s", timeout, log_path)
        raise StageTimeoutError(stage or command[0], float(timeout or 0)) from e

    except OSError as e:
        logger.error("Failed to execute %s: %s", cmd_str, e)
        with log_path.open("a") as log_file:
            log_file.write(f"\n# Failed to execute: {e}\n")
        raise error_cls(cmd_str, -1, log_path=str(log_path), stage=stage) from e

    finished_at = datetime.now(timezone.utc)

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    if exit_code != 0:
        logger.error("Command failed with exit code %d. See log: %s", exit_code, log_path)
        raise error_cls(cmd_str, exit_code, log_path=str(log_path), stage=stage)

    return CommandResult(
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
    )


def command_attempt(
    command: list[str],
    log_path: Path,
    cwd: Path | None = None,
    timeout: float | None = None,
    env_override: Mapping[str, str] | None = None,
    stage: str | None = None,
    error_cls: type[CommandFailedError] = CommandFailedError,
) -> Callable[[], CommandResult]:
    """Bind :func:`run_command` arguments into a zero-argument attempt function."""

    def _attempt() -> CommandResult:
        return run_command(
            command,
            log_path,
            cwd=cwd,
            timeout=timeout,
            env_override=env_override,
            stage=stage,
            error_cls=error_cls,
        )

    return _attempt


__all__ = [
    "CommandResult",
    "command_attempt",
    "expand_command",
    "run_command",
    "tail_log",
]

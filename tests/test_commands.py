"""Tests for stages/commands.py module.

Uses mocked subprocess for execution tests.
"""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from sdk_pipeline.errors import (
    CommandFailedError,
    GenerationError,
    PipelineConfigError,
    StageTimeoutError,
)
from sdk_pipeline.stages.commands import (
    CommandResult,
    command_attempt,
    expand_command,
    run_command,
    tail_log,
)


class TestExpandCommand:
    """Tests for expand_command function."""

    def test_expands_placeholders(self):
        """Placeholders are substituted in every argument."""
        command = expand_command(
            ["docker", "run", "{registry}/tools:{build_ref}", "-o", "{workspace}/spec.yaml"],
            {"registry": "localhost:5000", "build_ref": "abc", "workspace": "/tmp/ws"},
        )
        assert command == ["docker", "run", "localhost:5000/tools:abc", "-o", "/tmp/ws/spec.yaml"]

    def test_plain_arguments_unchanged(self):
        """Arguments without placeholders are left as is."""
        assert expand_command(["pnpm", "test"], {}) == ["pnpm", "test"]

    def test_unknown_placeholder(self):
        """Unknown placeholders are configuration errors."""
        with pytest.raises(PipelineConfigError) as exc_info:
            expand_command(["echo", "{missing}"], {"build_ref": "abc"})
        assert "missing" in str(exc_info.value)


class TestRunCommand:
    """Tests for run_command function with mocked subprocess."""

    def test_success(self, tmp_path):
        """Should return a CommandResult for a zero exit status."""
        log_path = tmp_path / "logs" / "stage.log"

        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0)
            result = run_command(["pnpm", "build"], log_path, cwd=tmp_path)

        assert isinstance(result, CommandResult)
        assert result.exit_code == 0
        assert result.command == "pnpm build"
        assert result.duration >= 0
        assert mock_run.call_args.kwargs["cwd"] == tmp_path

    def test_log_file_content(self, tmp_path):
        """Should write header and footer to the log file."""
        log_path = tmp_path / "stage.log"

        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0)
            run_command(["pnpm", "test"], log_path)

        content = log_path.read_text()
        assert "# Command: pnpm test" in content
        assert "# Started:" in content
        assert "# Finished:" in content
        assert "# Exit code: 0" in content

    def test_failure_raises(self, tmp_path):
        """A non-zero exit status raises CommandFailedError."""
        log_path = tmp_path / "stage.log"

        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=2)
            with pytest.raises(CommandFailedError) as exc_info:
                run_command(["pnpm", "test"], log_path, stage="test-sdk")

        error = exc_info.value
        assert error.returncode == 2
        assert error.stage == "test-sdk"
        assert error.log_path == str(log_path)

    def test_failure_uses_error_class(self, tmp_path):
        """The error class can be chosen by the caller."""
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=1)
            with pytest.raises(GenerationError):
                run_command(["gen"], tmp_path / "gen.log", error_cls=GenerationError)

    def test_timeout(self, tmp_path):
        """Should raise StageTimeoutError and note the timeout in the log."""
        log_path = tmp_path / "stage.log"

        with patch("subprocess.run") as mock_run:
            mock_run.side_effect = subprocess.TimeoutExpired(cmd="pnpm", timeout=10)
            with pytest.raises(StageTimeoutError) as exc_info:
                run_command(["pnpm", "test"], log_path, timeout=10, stage="test-sdk")

        assert exc_info.value.timeout == 10
        assert "TIMEOUT" in log_path.read_text()

    def test_missing_executable(self, tmp_path):
        """Failing to start the command is a command failure."""
        with patch("subprocess.run") as mock_run:
            mock_run.side_effect = FileNotFoundError("no such file")
            with pytest.raises(CommandFailedError) as exc_info:
                run_command(["missing-tool"], tmp_path / "stage.log")

        assert exc_info.value.returncode == -1

    def test_env_override(self, tmp_path, monkeypatch):
        """Environment overrides are merged into the inherited environment."""
        monkeypatch.setenv("INHERITED", "yes")

        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0)
            run_command(["env"], tmp_path / "env.log", env_override={"EXTRA": "1"})

        env = mock_run.call_args.kwargs["env"]
        assert env["EXTRA"] == "1"
        assert env["INHERITED"] == "yes"

    def test_no_env_override_inherits(self, tmp_path):
        """Without overrides the environment is not replaced."""
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0)
            run_command(["env"], tmp_path / "env.log")

        assert mock_run.call_args.kwargs["env"] is None


class TestCommandAttempt:
    """Tests for command_attempt function."""

    def test_runs_on_every_call(self, tmp_path):
        """The returned closure runs the command each time it is called."""
        attempt = command_attempt(["pnpm", "test"], tmp_path / "stage.log")

        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0)
            attempt()
            attempt()

        assert mock_run.call_count == 2


class TestTailLog:
    """Tests for tail_log function."""

    def test_returns_last_lines(self, tmp_path):
        """Should return only the requested number of lines."""
        log_path = tmp_path / "stage.log"
        log_path.write_text("\n".join(f"line {i}" for i in range(10)))
        assert tail_log(log_path, lines=2) == "line 8\nline 9"

    def test_missing_file(self, tmp_path):
        """A missing log yields an empty string."""
        assert tail_log(tmp_path / "missing.log") == ""

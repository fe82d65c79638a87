"""
Smoke Tests for CLI Commands.

These tests verify that CLI commands run without errors and produce output.
Each test points LIVEAID_DATABASE_URL at its own sqlite file.

Usage:
    pytest tests/smoke/test_cli_commands.py -v
    pytest tests/smoke/test_cli_commands.py -v -m smoke
"""

import os
import subprocess
import sys
from pathlib import Path

import pytest

# Mark all tests in this module as smoke tests
pytestmark = pytest.mark.smoke

# Project root
PROJECT_ROOT = Path(__file__).parent.parent.parent


@pytest.fixture
def cli(tmp_path):
    """Runner bound to a fresh database."""
    env = {
        **os.environ,
        "LIVEAID_DATABASE_URL": f"sqlite:///{tmp_path / 'scheduler.db'}",
        "COLUMNS": "200",
        "PYTHONIOENCODING": "utf-8",
    }

    def run_cli_command(command: str, timeout: int = 30) -> tuple[int, str, str]:
        """
        Run a CLI command and return exit code, stdout, stderr.

        Args:
            command: The command to run (after 'python -m src.cli.liveaid')
            timeout: Maximum time to wait

        Returns:
            Tuple of (exit_code, stdout, stderr)
        """
        result = subprocess.run(
            [sys.executable, "-m", "src.cli.liveaid", *command.split()],
            cwd=PROJECT_ROOT,
            env=env,
            capture_output=True,
            encoding="utf-8",
            timeout=timeout,
        )
        return result.returncode, result.stdout, result.stderr

    return run_cli_command


class TestCLIHelp:
    """Test that help commands work."""

    def test_main_help(self, cli):
        code, stdout, stderr = cli("--help")

        assert code == 0, f"Help failed: {stderr}"
        assert "Commands" in stdout
        assert "complete" in stdout

    def test_progression(self, cli):
        code, stdout, stderr = cli("progression")

        assert code == 0, f"Progression failed: {stderr}"
        assert "4 → 8 → 15 → 30 → 100 → 1000" in stdout


class TestCLILearnerFlow:
    """Init, complete, rotate and status against one learner."""

    def test_init_then_status(self, cli):
        code, stdout, stderr = cli("init alice")
        assert code == 0, f"Init failed: {stderr}"
        assert "48 stitches" in stdout

        code, stdout, stderr = cli("status alice")
        assert code == 0, f"Status failed: {stderr}"
        assert "live" in stdout
        assert "stitch_t1_p1" in stdout
        assert "Health:" in stdout
        assert "active preparations" in stdout

    def test_complete_repositions_and_rotates(self, cli):
        cli("init alice")

        code, stdout, stderr = cli("complete alice stitch_t1_p1 20 20")

        assert code == 0, f"Complete failed: {stderr}"
        assert "1 → 4" in stdout
        assert "4 → 8" in stdout
        assert "tube1 → tube2" in stdout

    def test_rotate(self, cli):
        cli("init alice")

        code, stdout, stderr = cli("rotate alice")

        assert code == 0, f"Rotate failed: {stderr}"
        assert "Rotation #1" in stdout

    def test_compress_dry_run(self, cli):
        cli("init alice")

        code, stdout, stderr = cli("compress alice tube1 --dry-run")

        assert code == 0, f"Compress failed: {stderr}"
        assert "dry run" in stdout
        assert "0 gaps removed" in stdout

    def test_next(self, cli):
        cli("init alice")

        code, stdout, stderr = cli("next alice --limit 3")

        assert code == 0, f"Next failed: {stderr}"
        assert "stitch_t1_p1" in stdout
        assert "Double" in stdout


class TestCLIErrors:
    """Domain errors exit with code 1 and print the error code."""

    def test_unknown_user(self, cli):
        code, stdout, stderr = cli("status nobody")

        assert code == 1
        assert "USER_NOT_FOUND" in stdout

    def test_init_twice(self, cli):
        cli("init alice")
        code, stdout, stderr = cli("init alice")

        assert code == 1
        assert "POSITION_OCCUPIED" in stdout

    def test_invalid_score(self, cli):
        cli("init alice")
        code, stdout, stderr = cli("complete alice stitch_t1_p1 25 20")

        assert code == 1
        assert "INVALID_PERFORMANCE_DATA" in stdout

    def test_unknown_tube(self, cli):
        cli("init alice")
        code, stdout, stderr = cli("compress alice tube9")

        assert code == 1
        assert "TUBE_NOT_FOUND" in stdout

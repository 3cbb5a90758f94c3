"""Tests for settings validation."""

import os
import subprocess
import sys
import tempfile


def _import_settings(env_overrides):
    code = """
import sys
try:
    from egregor.core.settings import settings
    sys.exit(0)
except ValueError as e:
    if 'Invalid presence timing' in str(e):
        sys.exit(3)
    sys.exit(2)
"""
    # Run in temp directory to avoid loading .env file, but keep PYTHONPATH
    project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    env = os.environ.copy()
    env.update(env_overrides)
    env["PYTHONPATH"] = project_root

    with tempfile.TemporaryDirectory() as tmpdir:
        return subprocess.run(
            [sys.executable, "-c", code], capture_output=True, cwd=tmpdir, env=env
        )


def test_heartbeat_too_slow_for_active_window_is_rejected():
    """Two heartbeats must fit inside the active window."""
    result = _import_settings({"HEARTBEAT_SEC": "45", "ACTIVE_WINDOW_SEC": "90"})
    assert (
        result.returncode == 3
    ), f"Expected presence timing error. stderr: {result.stderr.decode()}"


def test_default_presence_timing_is_valid():
    result = _import_settings({"HEARTBEAT_SEC": "10", "ACTIVE_WINDOW_SEC": "90"})
    assert result.returncode == 0, f"Settings failed. stderr: {result.stderr.decode()}"

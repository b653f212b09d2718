"""
Shared pytest fixtures for superralph tests.

This module provides commonly used fixtures to reduce duplication across test files.
Fixtures are automatically discovered by pytest when placed in conftest.py.
"""

import json

import pytest
from click.testing import CliRunner

from superralph.config import reset_config_cache
from superralph.error_logging import reset_default_logger


# =============================================================================
# PRD HELPERS
# =============================================================================

def make_feature(fid, priority="high", passes=False, depends_on=None, category="functional"):
    """Build a prd.json feature dict."""
    data = {
        "id": fid,
        "category": category,
        "priority": priority,
        "description": f"Feature {fid}",
        "steps": [f"Verify {fid}"],
        "passes": passes,
    }
    if depends_on:
        data["dependsOn"] = list(depends_on)
    return data


def write_prd(project_dir, features, name="Test Project", test_command="pytest"):
    """Write prd.json into project_dir and return its path."""
    path = project_dir / "prd.json"
    path.write_text(json.dumps({
        "name": name,
        "description": "A project used in tests",
        "testCommand": test_command,
        "features": features,
    }, indent=2))
    return path


# =============================================================================
# ISOLATION
# =============================================================================

@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """
    Point HOME at a temp directory for every test.

    Keeps ~/.superralph/config.yaml, logs and errors.jsonl out of the real
    home directory, and drops module-level caches between tests.
    """
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("CLAUDE_PATH", raising=False)
    reset_config_cache()
    reset_default_logger()
    yield home
    reset_config_cache()
    reset_default_logger()


# =============================================================================
# PROJECT FIXTURES
# =============================================================================

@pytest.fixture
def project_dir(tmp_path):
    """
    Project directory with a three-feature prd.json.

    feat-001 (high) passes, feat-002 (high) depends on feat-001,
    feat-003 (low) depends on feat-002.
    """
    project = tmp_path / "project"
    project.mkdir()
    write_prd(project, [
        make_feature("feat-001", passes=True),
        make_feature("feat-002", depends_on=["feat-001"]),
        make_feature("feat-003", priority="low", depends_on=["feat-002"]),
    ])
    return project


# =============================================================================
# CLI FIXTURES
# =============================================================================

@pytest.fixture
def cli_runner():
    """
    Provide Click CLI test runner.

    Usage:
        def test_my_command(cli_runner):
            from superralph.cli import cli
            result = cli_runner.invoke(cli, ['status'])
            assert result.exit_code == 0
    """
    return CliRunner()

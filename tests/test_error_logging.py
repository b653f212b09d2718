"""Tests for error logging module."""

import json
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from superralph.error_logging import (
    ErrorEntry,
    ErrorLogger,
    ErrorType,
    log_error,
    reset_default_logger,
)


def _raw_entry(timestamp, message, subcommand="build", error_type="INVOCATION_FAILED"):
    return json.dumps({
        "timestamp": timestamp,
        "command": f"superralph {subcommand}",
        "subcommand": subcommand,
        "error_type": error_type,
        "error_code": error_type,
        "message": message,
    }) + "\n"


class TestErrorEntry:
    """Tests for ErrorEntry dataclass."""

    def test_error_entry_creation(self):
        """Test creating an ErrorEntry with required fields."""
        entry = ErrorEntry(
            timestamp="2026-01-09T10:42:00Z",
            command="superralph build -n 10",
            subcommand="build",
            error_type=ErrorType.INVOCATION_FAILED,
            message="Agent failed 3 times on feat-002",
        )
        assert entry.subcommand == "build"
        assert entry.context is None
        assert entry.stack_trace is None
        assert entry.duration_ms is None

    def test_error_entry_to_dict(self):
        """Test serializing ErrorEntry to dict."""
        entry = ErrorEntry(
            timestamp="2026-01-09T10:42:00Z",
            command="superralph build",
            subcommand="build",
            error_type=ErrorType.BLOCKED,
            message="All remaining work is blocked",
            context={"feature_id": "feat-003"},
            duration_ms=45,
        )
        assert entry.to_dict() == {
            "timestamp": "2026-01-09T10:42:00Z",
            "command": "superralph build",
            "subcommand": "build",
            "error_type": "BLOCKED",
            "error_code": "BLOCKED",
            "message": "All remaining work is blocked",
            "context": {"feature_id": "feat-003"},
            "duration_ms": 45,
        }

    def test_optional_fields_omitted(self):
        """None-valued optional fields are not serialized."""
        data = ErrorEntry(
            timestamp="t", command="c", subcommand="s",
            error_type=ErrorType.CONFIG_ERROR, message="m",
        ).to_dict()
        assert "context" not in data
        assert "stack_trace" not in data
        assert "duration_ms" not in data


class TestErrorType:
    """Tests for ErrorType enum."""

    def test_error_types_exist(self):
        """Every failure the CLI records has a type."""
        assert {t.value for t in ErrorType} == {
            "PRD_NOT_FOUND",
            "PRD_INVALID",
            "CHECKPOINT_CORRUPT",
            "INVOCATION_FAILED",
            "AGENT_NOT_FOUND",
            "BLOCKED",
            "CONFIG_ERROR",
            "UNEXPECTED_ERROR",
        }


class TestErrorLogger:
    """Tests for ErrorLogger class."""

    def test_logger_creates_error_file(self, tmp_path):
        """Test that logger creates the file and parent dirs on first write."""
        error_file = tmp_path / "nested" / "errors.jsonl"
        logger = ErrorLogger(error_file=error_file)

        logger.log_error(
            command="superralph validate",
            subcommand="validate",
            error_type=ErrorType.PRD_INVALID,
            message="prd.json has 2 validation error(s)",
            context={"issues": 2},
        )

        entry = json.loads(error_file.read_text().strip())
        assert entry["error_type"] == "PRD_INVALID"
        assert entry["context"] == {"issues": 2}
        assert entry["timestamp"].endswith("Z")

    def test_logger_appends_multiple_errors(self, tmp_path):
        """Test that each error is one appended line."""
        error_file = tmp_path / "errors.jsonl"
        logger = ErrorLogger(error_file=error_file)

        for i in range(3):
            logger.log_error("superralph build", "build", ErrorType.BLOCKED, f"blocked {i}")

        lines = error_file.read_text().strip().split("\n")
        assert [json.loads(line)["message"] for line in lines] == ["blocked 0", "blocked 1", "blocked 2"]

    def test_logger_with_stack_trace(self, tmp_path):
        """Unexpected errors carry their traceback."""
        error_file = tmp_path / "errors.jsonl"
        logger = ErrorLogger(error_file=error_file)

        logger.log_error(
            "superralph build", "build", ErrorType.UNEXPECTED_ERROR, "boom",
            stack_trace="Traceback (most recent call last):\n...",
        )

        entry = json.loads(error_file.read_text())
        assert entry["stack_trace"].startswith("Traceback")

    def test_logger_rotation_on_size_limit(self, tmp_path):
        """Only the newest max_entries lines are kept."""
        error_file = tmp_path / "errors.jsonl"
        logger = ErrorLogger(error_file=error_file, max_entries=5)

        for i in range(8):
            logger.log_error("superralph build", "build", ErrorType.INVOCATION_FAILED, f"error {i}")

        lines = error_file.read_text().strip().split("\n")
        assert len(lines) == 5
        assert json.loads(lines[0])["message"] == "error 3"
        assert json.loads(lines[-1])["message"] == "error 7"


class TestGetErrorStats:
    """Tests for ErrorLogger.get_error_stats."""

    def test_get_error_stats_empty(self, tmp_path):
        """No file means zero errors."""
        stats = ErrorLogger(error_file=tmp_path / "errors.jsonl").get_error_stats()
        assert stats == {"total": 0, "by_type": {}, "by_command": {}}

    def test_get_error_stats_aggregates(self, tmp_path):
        """Counts are grouped by type and by subcommand."""
        logger = ErrorLogger(error_file=tmp_path / "errors.jsonl")
        logger.log_error("superralph build", "build", ErrorType.INVOCATION_FAILED, "a")
        logger.log_error("superralph build", "build", ErrorType.BLOCKED, "b")
        logger.log_error("superralph validate", "validate", ErrorType.PRD_INVALID, "c")
        logger.log_error("superralph build", "build", ErrorType.INVOCATION_FAILED, "d")

        stats = logger.get_error_stats(days=7)

        assert stats["total"] == 4
        assert stats["by_type"] == {"INVOCATION_FAILED": 2, "BLOCKED": 1, "PRD_INVALID": 1}
        assert stats["by_command"] == {"build": 3, "validate": 1}

    def test_get_error_stats_filters_by_days(self, tmp_path):
        """Test that stats filters by date range."""
        error_file = tmp_path / "errors.jsonl"
        logger = ErrorLogger(error_file=error_file)

        now = datetime.now()
        with open(error_file, "a") as f:
            f.write(_raw_entry((now - timedelta(days=10)).isoformat() + "Z", "Old error"))
            f.write(_raw_entry(now.isoformat() + "Z", "New error"))

        assert logger.get_error_stats(days=7)["total"] == 1
        assert logger.get_error_stats(days=30)["total"] == 2

    def test_corrupt_lines_skipped(self, tmp_path):
        """Lines that are not JSON are ignored."""
        error_file = tmp_path / "errors.jsonl"
        error_file.write_text("not json\n" + _raw_entry(datetime.now().isoformat() + "Z", "ok"))

        stats = ErrorLogger(error_file=error_file).get_error_stats()
        assert stats["total"] == 1


class TestGetRecentErrors:
    """Tests for ErrorLogger.get_recent_errors."""

    def test_get_recent_errors_empty(self, tmp_path):
        """Test with no errors."""
        assert ErrorLogger(error_file=tmp_path / "errors.jsonl").get_recent_errors() == []

    def test_most_recent_first_with_limit(self, tmp_path):
        """Newest entries come first and limit caps the count."""
        logger = ErrorLogger(error_file=tmp_path / "errors.jsonl")
        for i in range(5):
            logger.log_error("superralph build", "build", ErrorType.BLOCKED, f"error {i}")

        recent = logger.get_recent_errors(limit=2)
        assert [e["message"] for e in recent] == ["error 4", "error 3"]


class TestModuleLevelFunctions:
    """Tests for the default-logger convenience function."""

    @pytest.fixture(autouse=True)
    def fresh_default(self):
        reset_default_logger()
        yield
        reset_default_logger()

    def test_log_error_uses_default_path(self):
        """log_error writes to ~/.superralph/errors.jsonl."""
        log_error(
            command="superralph build",
            subcommand="build",
            error_type=ErrorType.AGENT_NOT_FOUND,
            message="claude CLI not found",
        )

        error_file = Path.home() / ".superralph" / "errors.jsonl"
        assert error_file.exists()
        assert json.loads(error_file.read_text())["error_type"] == "AGENT_NOT_FOUND"

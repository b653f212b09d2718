"""Error logging for superralph with local analytics.

Fatal run outcomes and command failures are appended to
~/.superralph/errors.jsonl so that recurring problems (a PRD that keeps
failing validation, an agent that keeps crashing) are visible across runs.

Entry schema:
{
    "timestamp": "2026-01-09T10:42:00Z",
    "command": "superralph build --max-iterations 10",
    "subcommand": "build",
    "error_type": "INVOCATION_FAILED",
    "error_code": "INVOCATION_FAILED",
    "message": "Agent failed 3 times on feat-002",
    "context": {"feature_id": "feat-002", "iteration": 4},
    "stack_trace": "...",  // optional, for unexpected errors
    "duration_ms": 45
}
"""

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Optional


class ErrorType(Enum):
    """Error taxonomy for superralph."""

    PRD_NOT_FOUND = "PRD_NOT_FOUND"
    PRD_INVALID = "PRD_INVALID"
    CHECKPOINT_CORRUPT = "CHECKPOINT_CORRUPT"
    INVOCATION_FAILED = "INVOCATION_FAILED"
    AGENT_NOT_FOUND = "AGENT_NOT_FOUND"
    BLOCKED = "BLOCKED"
    CONFIG_ERROR = "CONFIG_ERROR"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


@dataclass
class ErrorEntry:
    """Represents a single error log entry."""

    timestamp: str
    command: str
    subcommand: str
    error_type: ErrorType
    message: str
    context: Optional[dict[str, Any]] = None
    stack_trace: Optional[str] = None
    duration_ms: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON storage."""
        result = {
            "timestamp": self.timestamp,
            "command": self.command,
            "subcommand": self.subcommand,
            "error_type": self.error_type.value,
            "error_code": self.error_type.value,
            "message": self.message,
        }
        if self.context is not None:
            result["context"] = self.context
        if self.stack_trace is not None:
            result["stack_trace"] = self.stack_trace
        if self.duration_ms is not None:
            result["duration_ms"] = self.duration_ms
        return result


class ErrorLogger:
    """Logger for error telemetry to JSONL file.

    Logs errors to ~/.superralph/errors.jsonl with automatic rotation.
    """

    DEFAULT_MAX_ENTRIES = 10000

    def __init__(
        self,
        error_file: Optional[Path] = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        """Initialize error logger.

        Args:
            error_file: Path to errors.jsonl file. Defaults to ~/.superralph/errors.jsonl
            max_entries: Maximum entries to keep (older entries are removed)
        """
        if error_file is None:
            error_file = Path.home() / ".superralph" / "errors.jsonl"

        self.error_file = Path(error_file)
        self.max_entries = max_entries
        self.error_file.parent.mkdir(parents=True, exist_ok=True)

    def log_error(
        self,
        command: str,
        subcommand: str,
        error_type: ErrorType,
        message: str,
        context: Optional[dict[str, Any]] = None,
        stack_trace: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> None:
        """Append an error to the JSONL file.

        Args:
            command: Full command string (e.g., "superralph build --resume")
            subcommand: Subcommand name (e.g., "build")
            error_type: ErrorType enum value
            message: Human-readable error message
            context: Optional context dict with error details
            stack_trace: Optional stack trace for unexpected errors
            duration_ms: Optional command duration in milliseconds
        """
        entry = ErrorEntry(
            timestamp=datetime.now().isoformat() + "Z",
            command=command,
            subcommand=subcommand,
            error_type=error_type,
            message=message,
            context=context,
            stack_trace=stack_trace,
            duration_ms=duration_ms,
        )

        with open(self.error_file, "a") as f:
            f.write(json.dumps(entry.to_dict()) + "\n")

        self._rotate_if_needed()

    def _rotate_if_needed(self) -> None:
        """Keep only the newest max_entries lines."""
        if not self.error_file.exists():
            return

        lines = self.error_file.read_text().strip().split("\n")
        if len(lines) > self.max_entries:
            keep_lines = lines[-self.max_entries:]
            self.error_file.write_text("\n".join(keep_lines) + "\n")

    def get_error_stats(self, days: int = 7) -> dict[str, Any]:
        """Get aggregated error statistics.

        Args:
            days: Number of days to include in stats

        Returns:
            Dict with total, by_type, by_command aggregations
        """
        cutoff = datetime.now() - timedelta(days=days)
        entries = self._read_entries(cutoff=cutoff)

        stats: dict[str, Any] = {
            "total": len(entries),
            "by_type": {},
            "by_command": {},
        }

        for entry in entries:
            error_type = entry.get("error_type", "UNKNOWN")
            stats["by_type"][error_type] = stats["by_type"].get(error_type, 0) + 1

            subcommand = entry.get("subcommand", "unknown")
            stats["by_command"][subcommand] = stats["by_command"].get(subcommand, 0) + 1

        return stats

    def get_recent_errors(self, limit: int = 10) -> list[dict[str, Any]]:
        """Get recent error entries, most recent first."""
        entries = self._read_entries()
        return list(reversed(entries[-limit:]))

    def _read_entries(
        self, cutoff: Optional[datetime] = None
    ) -> list[dict[str, Any]]:
        """Read and parse entries, skipping corrupt lines and entries before cutoff."""
        if not self.error_file.exists():
            return []

        entries = []
        for line in self.error_file.read_text().strip().split("\n"):
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue

            if cutoff:
                ts_str = entry.get("timestamp", "").rstrip("Z")
                if ts_str:
                    try:
                        if datetime.fromisoformat(ts_str) < cutoff:
                            continue
                    except ValueError:
                        continue

            entries.append(entry)

        return entries


# Module-level singleton and convenience functions
_default_logger: Optional[ErrorLogger] = None


def _get_default_logger() -> ErrorLogger:
    """Get or create the default ErrorLogger instance."""
    global _default_logger
    if _default_logger is None:
        _default_logger = ErrorLogger()
    return _default_logger


def log_error(
    command: str,
    subcommand: str,
    error_type: ErrorType,
    message: str,
    context: Optional[dict[str, Any]] = None,
    stack_trace: Optional[str] = None,
    duration_ms: Optional[int] = None,
) -> None:
    """Log an error to ~/.superralph/errors.jsonl using the default logger."""
    _get_default_logger().log_error(
        command=command,
        subcommand=subcommand,
        error_type=error_type,
        message=message,
        context=context,
        stack_trace=stack_trace,
        duration_ms=duration_ms,
    )


def reset_default_logger() -> None:
    """Reset the default logger (for testing)."""
    global _default_logger
    _default_logger = None

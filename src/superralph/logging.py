"""Logging module for superralph commands with hybrid format.

Logs are written in hybrid format:
    YYYY-MM-DD HH:MM:SS LEVEL [command] Human message | {"json": "data"}

This provides both human readability (left side) and machine parseability (right side).
"""
import json
from pathlib import Path
from datetime import datetime
from typing import Dict, Any, Optional, Callable, TYPE_CHECKING

if TYPE_CHECKING:
    from superralph.events import Event

# Event types logged above INFO
_EVENT_LEVELS = {
    "error": "ERROR",
    "tool_result": "DEBUG",
    "tool_input": "DEBUG",
}


class RalphLogger:
    """Logger for superralph commands with hybrid format output.

    Logs are written to monthly files: superralph-YYYY-MM.log
    Default location: ~/.superralph/logs/
    """

    def __init__(self, log_dir: Optional[Path] = None):
        """Initialize logger with log directory.

        Args:
            log_dir: Directory for log files. Defaults to ~/.superralph/logs/
        """
        if log_dir is None:
            log_dir = Path.home() / ".superralph" / "logs"

        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def _get_log_file(self) -> Path:
        """Get current month's log file path."""
        month_str = datetime.now().strftime("%Y-%m")
        return self.log_dir / f"superralph-{month_str}.log"

    def _format_log_line(
        self,
        level: str,
        command: str,
        message: str,
        data: Dict[str, Any]
    ) -> str:
        """Format log line in hybrid format.

        Multi-line messages are collapsed so that one event is one line.
        """
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        level_padded = level.ljust(5)
        message = " ".join(message.split())
        json_str = json.dumps(data, ensure_ascii=False)
        return f"{timestamp} {level_padded} [{command}] {message} | {json_str}\n"

    def log_event(
        self,
        command: str,
        message: str,
        data: Dict[str, Any],
        level: str = "INFO"
    ) -> None:
        """Log an event with hybrid format.

        Args:
            command: Command name (build, status, validate, ...)
            message: Human-readable message
            data: Structured data as dict
            level: Log level (DEBUG, INFO, WARNING, ERROR)
        """
        log_line = self._format_log_line(level, command, message, data)
        with open(self._get_log_file(), "a") as f:
            f.write(log_line)

    def log_command_start(self, command: str, data: Dict[str, Any]) -> None:
        """Log command start event."""
        project = data.get("project_dir", "")
        message = "Starting command"
        if project:
            message = f"Starting command in {project}"
        self.log_event(command, message, data, level="INFO")

    def log_command_complete(
        self,
        command: str,
        duration_ms: int,
        data: Dict[str, Any]
    ) -> None:
        """Log command completion event.

        Args:
            command: Command name
            duration_ms: Command duration in milliseconds
            data: Result data
        """
        outcome = data.get("outcome", "")
        message = f"Command complete ({duration_ms}ms)"
        if outcome:
            message = f"Command complete: {outcome} ({duration_ms}ms)"

        if "duration_ms" not in data:
            data = {**data, "duration_ms": duration_ms}

        self.log_event(command, message, data, level="INFO")

    def log_error(
        self,
        command: str,
        message: str,
        data: Dict[str, Any]
    ) -> None:
        """Log error event. A 'reason' in data is appended to the message."""
        reason = data.get("reason", "")
        full_message = f"{message}: {reason}" if reason else message
        self.log_event(command, full_message, data, level="ERROR")

    def as_observer(self, command: str) -> Callable[["Event"], None]:
        """Return an event-bus observer that writes every event to the log.

        TEXT events carry raw agent output and are only logged by length.
        """
        def observe(event: "Event") -> None:
            kind = event.type.value
            level = _EVENT_LEVELS.get(kind, "INFO")
            data: Dict[str, Any] = {"event": kind}
            if kind == "text":
                data["chars"] = len(event.content)
                self.log_event(command, "agent output", data, level="DEBUG")
            else:
                self.log_event(command, event.content, data, level=level)
        return observe

    def get_log_files(self, months_back: int = 6) -> list[Path]:
        """Get list of available log files (most recent first)."""
        log_files = list(self.log_dir.glob("superralph-*.log"))
        return sorted(log_files, reverse=True)[:months_back]

    def read_logs(
        self,
        limit: int = 50,
        command_filter: Optional[str] = None,
        level_filter: Optional[str] = None
    ) -> list[dict]:
        """Read and parse log entries with optional filtering, newest first.

        Args:
            limit: Maximum number of entries to return
            command_filter: Only return entries for this command
            level_filter: Only return entries with this log level

        Returns:
            List of parsed log entries (dicts with timestamp, level, command, message, data)
        """
        entries = []
        for log_file in self.get_log_files():
            if not log_file.exists():
                continue

            with open(log_file, 'r') as f:
                lines = f.readlines()
            for line in reversed(lines):
                entry = self._parse_log_line(line)
                if not entry:
                    continue
                if command_filter and entry['command'] != command_filter:
                    continue
                if level_filter and entry['level'] != level_filter:
                    continue

                entries.append(entry)
                if len(entries) >= limit:
                    return entries

        return entries

    def _parse_log_line(self, line: str) -> dict | None:
        """Parse a log line into structured format, or None if it doesn't match."""
        try:
            # Format: YYYY-MM-DD HH:MM:SS LEVEL [command] message | {json}
            left_part, json_part = line.rsplit(' | ', 1)

            tokens = left_part.split(None, 3)
            if len(tokens) < 4:
                return None

            timestamp = f"{tokens[0]} {tokens[1]}"
            level = tokens[2].strip()
            command_and_message = tokens[3]
            if not command_and_message.startswith('['):
                return None

            bracket_end = command_and_message.index(']')
            command = command_and_message[1:bracket_end]
            message = command_and_message[bracket_end + 2:].strip()

            data = json.loads(json_part.strip())

            return {
                'timestamp': timestamp,
                'level': level,
                'command': command,
                'message': message,
                'data': data
            }
        except (ValueError, IndexError, json.JSONDecodeError):
            return None

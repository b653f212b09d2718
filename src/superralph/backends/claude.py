"""ClaudeInvoker: runs the claude CLI headless and streams its JSON output."""

import json
import os
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from superralph.config import DEFAULT_BASH_COMMANDS
from superralph.events import EventType

from .base import AgentInvoker, AgentNotFoundError, EmitFn, InvocationRequest, InvocationResult

# tool_result blocks longer than this are truncated in the event stream
TOOL_RESULT_PREVIEW_LINES = 5


def _known_locations() -> List[Path]:
    home = Path.home()
    return [
        home / ".claude" / "local" / "claude",
        Path("/usr/local/bin/claude"),
        Path("/usr/bin/claude"),
        home / ".local" / "bin" / "claude",
        home / "bin" / "claude",
        Path("/usr/local/lib/node_modules/@anthropic-ai/claude-cli/bin/claude"),
        home / ".npm-global" / "bin" / "claude",
    ]


def find_claude_binary(explicit: Optional[str] = None) -> str:
    """
    Locate the claude CLI.

    Priority:
        1. ``explicit`` (config claude_path) if it exists
        2. CLAUDE_PATH environment variable if it exists
        3. ``claude`` on PATH
        4. Common install locations
        5. Bare "claude" (fails later with a clear error)
    """
    for candidate in (explicit, os.environ.get("CLAUDE_PATH")):
        if candidate and Path(candidate).exists():
            return candidate

    on_path = shutil.which("claude")
    if on_path:
        return on_path

    for location in _known_locations():
        if location.exists():
            return str(location)

    return "claude"


@dataclass
class ToolConfig:
    """Which claude tools the agent may use without asking."""
    allow_read: bool = True
    allow_write: bool = True
    allow_edit: bool = True
    allowed_bash_commands: List[str] = field(default_factory=lambda: list(DEFAULT_BASH_COMMANDS))

    def build_allowed_tools_flag(self) -> str:
        """Render the --allowedTools value, e.g. ``Read,Write,Edit,Bash(go:*)``."""
        tools = []
        if self.allow_read:
            tools.append("Read")
        if self.allow_write:
            tools.append("Write")
        if self.allow_edit:
            tools.append("Edit")
        tools.extend(f"Bash({cmd}:*)" for cmd in self.allowed_bash_commands)
        return ",".join(tools)


class StreamParser:
    """
    Turns ``--output-format stream-json`` lines into typed events.

    Accumulates the assistant's text and the final result text in ``output``;
    that accumulated text is what the loop inspects for the completion
    sentinel and failure markers.
    """

    def __init__(self, started_at: Optional[float] = None):
        self.started_at = started_at if started_at is not None else time.monotonic()
        self._output: List[str] = []
        self.error: Optional[str] = None

    @property
    def output(self) -> str:
        return "".join(self._output)

    def feed(self, line: str) -> List[Tuple[EventType, str]]:
        """Parse one line; returns the events it produces (possibly none)."""
        line = line.rstrip("\n")
        if not line.strip():
            return []

        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            self._output.append(line + "\n")
            return [(EventType.TEXT, line)]
        if not isinstance(event, dict):
            self._output.append(line + "\n")
            return [(EventType.TEXT, line)]

        event_type = event.get("type")
        if event_type == "assistant":
            return self._assistant(event)
        if event_type == "user":
            return self._tool_results(event)
        if event_type == "result":
            return self._result(event)
        if event_type == "error":
            return self._error(event)
        return []

    def _content_blocks(self, event: Dict[str, Any]) -> List[Dict[str, Any]]:
        message = event.get("message")
        if not isinstance(message, dict):
            return []
        content = message.get("content")
        if not isinstance(content, list):
            return []
        return [block for block in content if isinstance(block, dict)]

    def _assistant(self, event: Dict[str, Any]) -> List[Tuple[EventType, str]]:
        out: List[Tuple[EventType, str]] = []
        for block in self._content_blocks(event):
            block_type = block.get("type")
            if block_type == "text" and isinstance(block.get("text"), str):
                text = block["text"]
                out.append((EventType.TEXT, text))
                self._output.append(text + "\n")
            elif block_type == "tool_use" and isinstance(block.get("name"), str):
                out.append((EventType.TOOL_USE, f"Using tool: {block['name']}"))
                tool_input = block.get("input")
                if isinstance(tool_input, dict):
                    for key in ("command", "file_path", "filePath"):
                        if isinstance(tool_input.get(key), str):
                            out.append((EventType.TOOL_INPUT, f"> {tool_input[key]}"))
        return out

    def _tool_results(self, event: Dict[str, Any]) -> List[Tuple[EventType, str]]:
        out: List[Tuple[EventType, str]] = []
        for block in self._content_blocks(event):
            if block.get("type") != "tool_result" or not isinstance(block.get("content"), str):
                continue
            lines = block["content"].split("\n")
            for result_line in lines[:TOOL_RESULT_PREVIEW_LINES]:
                out.append((EventType.TOOL_RESULT, f"  {result_line}"))
            hidden = len(lines) - TOOL_RESULT_PREVIEW_LINES
            if hidden > 0:
                out.append((EventType.TOOL_RESULT, f"  ... ({hidden} more lines)"))
        return out

    def _result(self, event: Dict[str, Any]) -> List[Tuple[EventType, str]]:
        out: List[Tuple[EventType, str]] = []
        result = event.get("result")
        if isinstance(result, str) and result:
            out.append((EventType.TEXT, result))
            self._output.append(result)

        elapsed = time.monotonic() - self.started_at
        stats = f"{event.get('subtype', '')}: {elapsed:.1f}s"
        cost = event.get("total_cost_usd")
        if isinstance(cost, (int, float)) and not isinstance(cost, bool):
            stats += f", ${cost:.4f}"
        out.append((EventType.INFO, stats))
        return out

    def _error(self, event: Dict[str, Any]) -> List[Tuple[EventType, str]]:
        error = event.get("error")
        message = error.get("message") if isinstance(error, dict) else None
        if not isinstance(message, str):
            message = json.dumps(error) if error is not None else "unknown error"
        self.error = message
        return [(EventType.ERROR, f"Claude error: {message}")]


class ClaudeInvoker(AgentInvoker):
    """Runs ``claude -p`` once per invocation with stream-json output."""

    def __init__(
        self,
        claude_path: Optional[str] = None,
        tool_config: Optional[ToolConfig] = None,
        debug: bool = False,
    ):
        self.claude_path = find_claude_binary(claude_path)
        self.tool_config = tool_config or ToolConfig()
        self.debug = debug
        self._lock = threading.RLock()
        self._process: Optional[subprocess.Popen] = None
        self._cancel_requested = False

    @property
    def name(self) -> str:
        """Return the backend name."""
        return "claude"

    def build_command(self, prompt: str) -> List[str]:
        """Build the argv for a headless run."""
        return [
            self.claude_path,
            "-p", prompt,
            "--permission-mode", "acceptEdits",
            "--allowedTools", self.tool_config.build_allowed_tools_flag(),
            "--output-format", "stream-json",
            "--verbose",
        ]

    def invoke(self, request: InvocationRequest, emit: EmitFn) -> InvocationResult:
        if self.debug:
            emit(EventType.INFO, f"Running {self.name} with prompt ({len(request.prompt)} chars)")

        try:
            process = subprocess.Popen(
                self.build_command(request.prompt),
                cwd=str(request.work_dir),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                # Own session: a terminal Ctrl-C reaches only us, and cancel()
                # decides whether the child is stopped
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise AgentNotFoundError(
                f"claude CLI not found ({self.claude_path}). "
                "Install it or set CLAUDE_PATH."
            ) from e

        with self._lock:
            self._process = process
            self._cancel_requested = False

        stderr_chunks: List[str] = []
        stderr_thread = threading.Thread(
            target=lambda: stderr_chunks.append(process.stderr.read()), daemon=True
        )
        stderr_thread.start()

        parser = StreamParser()
        try:
            for line in process.stdout:
                for event_type, content in parser.feed(line):
                    emit(event_type, content)
            exit_code = process.wait()
        finally:
            stderr_thread.join(timeout=5)
            with self._lock:
                self._process = None
                cancelled = self._cancel_requested

        stderr = "".join(stderr_chunks).strip()
        if self.debug and stderr:
            emit(EventType.INFO, f"claude stderr: {stderr}")
        if self.debug and exit_code != 0:
            emit(EventType.INFO, f"claude exited with code {exit_code}")

        return InvocationResult(
            output=parser.output,
            exit_code=exit_code,
            cancelled=cancelled,
            error=parser.error,
        )

    def cancel(self) -> None:
        with self._lock:
            process = self._process
            if process is None:
                return
            self._cancel_requested = True
        process.terminate()
        try:
            process.wait(timeout=10)
        except subprocess.TimeoutExpired:
            process.kill()

    def run_interactive(self, system_prompt: str, work_dir: Path, opening_message: str) -> int:
        """
        Run claude attached to the terminal (used by `superralph plan`).

        Returns:
            The process exit code

        Raises:
            AgentNotFoundError: If the binary cannot be started
        """
        cmd = [
            self.claude_path,
            "--system-prompt", system_prompt,
            "--allowedTools", "Write,Edit,Read,Bash",
            opening_message,
        ]
        try:
            return subprocess.run(cmd, cwd=str(work_dir)).returncode
        except FileNotFoundError as e:
            raise AgentNotFoundError(
                f"claude CLI not found ({self.claude_path}). "
                "Install it or set CLAUDE_PATH."
            ) from e

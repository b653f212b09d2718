"""Agent backend abstraction (the external code-generation CLI)."""

from .base import AgentInvoker, AgentNotFoundError, InvocationRequest, InvocationResult
from .claude import ClaudeInvoker, StreamParser, ToolConfig, find_claude_binary

__all__ = [
    "AgentInvoker",
    "AgentNotFoundError",
    "InvocationRequest",
    "InvocationResult",
    "ClaudeInvoker",
    "StreamParser",
    "ToolConfig",
    "find_claude_binary",
]

"""Abstract base class for agent invokers (the external code-generation CLI)."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from superralph.events import EventType, Phase

# (event type, content) callback handed to invoke()
EmitFn = Callable[[EventType, str], None]


class AgentNotFoundError(Exception):
    """Raised when the agent CLI binary cannot be started."""
    pass


@dataclass
class InvocationRequest:
    """One agent run: a self-contained prompt executed in the project directory."""
    prompt: str
    work_dir: Path
    iteration: int
    feature_id: str = ""
    phase: Optional[Phase] = None


@dataclass
class InvocationResult:
    """What the loop sees of an agent run: its text and how it ended."""
    output: str
    exit_code: int = 0
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        """True if the process exited non-zero or reported an error event."""
        return self.exit_code != 0 or self.error is not None


class AgentInvoker(ABC):
    """
    Interface for agent backends.

    The controller calls invoke() for every attempt, one at a time, and may
    call cancel() from another thread (signal handler) to tear the running
    invocation down.
    """

    @abstractmethod
    def invoke(self, request: InvocationRequest, emit: EmitFn) -> InvocationResult:
        """
        Run the agent to completion.

        Args:
            request: Prompt, working directory and iteration metadata
            emit: Called for every classified line of output as it streams

        Returns:
            InvocationResult with the accumulated text output

        Raises:
            AgentNotFoundError: If the agent binary cannot be started
        """
        pass

    @abstractmethod
    def cancel(self) -> None:
        """
        Terminate the in-flight invocation, if any.

        The pending invoke() call returns with ``cancelled=True``. No-op when
        nothing is running.
        """
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """
        Get the human-readable name of this backend.

        Returns:
            Backend name (e.g., "claude")
        """
        pass

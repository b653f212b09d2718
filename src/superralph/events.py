"""Typed event stream for the build loop.

One EventType enum crosses every boundary: the agent backend tags its output
with it, the controller emits it, and the console/log observers render it.
Raw category tags coming from anywhere else go through classify() once.

EventBus delivers events to observers on a dedicated consumer thread so the
worker never waits on a slow renderer. Delivery is FIFO.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, List, Optional, Union

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Event categories shown to observers."""

    TEXT = "text"
    TOOL_USE = "tool_use"
    TOOL_INPUT = "tool_input"
    TOOL_RESULT = "tool_result"
    PHASE = "phase"
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


class Phase(Enum):
    """Loop phase. Only the iteration controller changes it."""

    PLANNING = "planning"
    VALIDATING = "validating"
    EXECUTING = "executing"
    COMPLETE = "complete"


# Aliases seen from the agent layer, normalized (lowercase, '_' separators)
_TAG_ALIASES = {
    "phase_change": EventType.PHASE,
    "tool": EventType.TOOL_USE,
    "tool_call": EventType.TOOL_USE,
    "message": EventType.TEXT,
    "output": EventType.TEXT,
    "warning": EventType.INFO,
    "debug": EventType.INFO,
}


def classify(tag: Union[str, EventType, None]) -> EventType:
    """
    Map a raw category tag to an EventType.

    Total: never raises. Accepts EventType members, enum names and values in
    any case, with spaces, dashes or underscores as separators. Anything
    unrecognized is TEXT.

    Examples:
        classify("tool use")     -> EventType.TOOL_USE
        classify("Phase Change") -> EventType.PHASE
        classify("whatever")     -> EventType.TEXT
    """
    if isinstance(tag, EventType):
        return tag
    if not isinstance(tag, str):
        return EventType.TEXT

    normalized = tag.strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return EventType(normalized)
    except ValueError:
        pass
    return _TAG_ALIASES.get(normalized, EventType.TEXT)


@dataclass
class Event:
    """A single typed event."""
    type: EventType
    content: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }


Observer = Callable[[Event], None]

_STOP = object()


class EventBus:
    """
    FIFO fan-out of events to observers.

    Observers are fixed at construction. emit() only enqueues; a daemon
    consumer thread calls each observer in registration order. An observer
    that raises is logged and skipped for that event only.

    Usage:
        with EventBus([console.observe, run_logger.observe]) as bus:
            bus.emit(EventType.INFO, "starting")
    """

    def __init__(self, observers: Optional[Iterable[Observer]] = None):
        self._observers: List[Observer] = list(observers or [])
        self._queue: "queue.Queue" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._closed = False
        self._lock = threading.Lock()

    @property
    def observers(self) -> List[Observer]:
        return list(self._observers)

    def start(self) -> "EventBus":
        """Start the consumer thread (idempotent)."""
        with self._lock:
            if self._thread is None:
                self._thread = threading.Thread(
                    target=self._consume, name="superralph-events", daemon=True
                )
                self._thread.start()
        return self

    def emit(self, event_type: Union[EventType, str], content: str) -> Event:
        """
        Queue an event for delivery. Never blocks.

        Args:
            event_type: EventType or a raw tag (classified)
            content: Event payload

        Returns:
            The queued Event
        """
        event = Event(type=classify(event_type), content=content)
        self.publish(event)
        return event

    def publish(self, event: Event) -> None:
        """Queue an already-built event. Events after close() are dropped with a log line."""
        if self._closed:
            logger.debug("event after close dropped: %s", event.content)
            return
        self._queue.put_nowait(event)

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Stop accepting events, deliver everything queued, join the consumer."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_STOP)
        if self._thread is None:
            # Never started: deliver synchronously so nothing is lost
            self._consume()
        else:
            self._thread.join(timeout)

    def _consume(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            for observer in self._observers:
                try:
                    observer(item)
                except Exception:
                    logger.exception("event observer %r failed", observer)

    def __enter__(self) -> "EventBus":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

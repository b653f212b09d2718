"""Line-oriented rich rendering of build events."""

from typing import Optional

from rich.console import Console
from rich.markup import escape

from superralph.events import Event, EventType

# Map event type to (style, prefix)
EVENT_STYLES = {
    EventType.TEXT: ("", ""),
    EventType.TOOL_USE: ("cyan", "🔧 "),
    EventType.TOOL_INPUT: ("dim cyan", "   "),
    EventType.TOOL_RESULT: ("dim", "   "),
    EventType.PHASE: ("bold magenta", "◆ "),
    EventType.SUCCESS: ("bold green", "✅ "),
    EventType.ERROR: ("bold red", "❌ "),
    EventType.INFO: ("blue", "ℹ️  "),
}


def format_event(event: Event) -> str:
    """Rich markup for one event. Content is escaped so paths like [id] survive."""
    style, prefix = EVENT_STYLES.get(event.type, ("", ""))
    text = f"{prefix}{escape(event.content)}"
    if not style:
        return text
    return f"[{style}]{text}[/]"


class ConsoleObserver:
    """
    Event-bus observer printing each event to the terminal.

    Tool results are hidden unless ``verbose`` is set.
    """

    def __init__(self, console: Optional[Console] = None, verbose: bool = False):
        self.console = console or Console()
        self.verbose = verbose

    def __call__(self, event: Event) -> None:
        if event.type == EventType.TOOL_RESULT and not self.verbose:
            return
        self.console.print(format_event(event), highlight=False)

"""Cooperative cancellation and pause for the build loop.

CancelToken is shared process-wide and is set by SIGINT/SIGTERM. PauseGate
blocks the worker between steps while paused, and wakes immediately on
resume or cancellation.
"""

import signal
import threading
from typing import Callable, List, Optional


class CancelToken:
    """One-shot cancellation flag with callbacks fired when it is set."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.RLock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Set the token. Callbacks run once, on the first call."""
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
        for callback in callbacks:
            callback()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to ``timeout`` seconds; returns True early if cancelled."""
        return self._event.wait(timeout)

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register a callback for cancellation.

        Runs immediately if already cancelled.

        Returns:
            A function that unregisters the callback
        """
        with self._lock:
            already = self._event.is_set()
            if not already:
                self._callbacks.append(callback)
        if already:
            callback()

        def remove() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return remove


class PauseGate:
    """
    Blocks callers of wait() while paused.

    Backed by a Condition; wait() sleeps until resume() or until the linked
    CancelToken fires, without polling.
    """

    def __init__(self, token: Optional[CancelToken] = None):
        self._cond = threading.Condition()
        self._paused = False
        self._token = token
        if token is not None:
            token.on_cancel(self._wake)

    @property
    def paused(self) -> bool:
        with self._cond:
            return self._paused

    def pause(self) -> None:
        with self._cond:
            self._paused = True

    def resume(self) -> None:
        with self._cond:
            self._paused = False
            self._cond.notify_all()

    def toggle(self) -> bool:
        """Flip the paused state; returns the new state."""
        with self._cond:
            self._paused = not self._paused
            if not self._paused:
                self._cond.notify_all()
            return self._paused

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block while paused.

        Returns:
            True if the gate is open (or cancellation was requested),
            False if ``timeout`` expired while still paused.
        """
        with self._cond:
            return self._cond.wait_for(self._released, timeout)

    def _released(self) -> bool:
        if self._token is not None and self._token.cancelled:
            return True
        return not self._paused

    def _wake(self) -> None:
        with self._cond:
            self._cond.notify_all()


_SIGNAL_NAMES = {
    signal.SIGINT: "SIGINT",
    signal.SIGTERM: "SIGTERM",
}


def install_signal_handlers(token: CancelToken, on_signal: Optional[Callable[[str], None]] = None):
    """
    Route SIGINT/SIGTERM to ``token``.

    A second signal after cancellation raises KeyboardInterrupt so a stuck
    run can still be killed from the terminal.

    Must be called from the main thread.

    Returns:
        A function that restores the previous handlers
    """
    previous = {}

    def handler(signum, frame):
        name = _SIGNAL_NAMES.get(signum, str(signum))
        if token.cancelled:
            raise KeyboardInterrupt(name)
        token.cancel(reason=name)
        if on_signal is not None:
            on_signal(name)

    for signum in _SIGNAL_NAMES:
        previous[signum] = signal.signal(signum, handler)

    def restore() -> None:
        for signum, old in previous.items():
            signal.signal(signum, old)

    return restore


def install_pause_handler(gate: PauseGate, on_toggle: Optional[Callable[[bool], None]] = None):
    """
    Toggle ``gate`` on SIGUSR1 (``kill -USR1 <pid>``).

    The running agent invocation is never interrupted; the pause takes
    effect before the next iteration starts.

    Returns:
        A function that restores the previous handler (no-op where SIGUSR1
        does not exist)
    """
    signum = getattr(signal, "SIGUSR1", None)
    if signum is None:
        return lambda: None

    def handler(_signum, _frame):
        paused = gate.toggle()
        if on_toggle is not None:
            on_toggle(paused)

    previous = signal.signal(signum, handler)
    return lambda: signal.signal(signum, previous)

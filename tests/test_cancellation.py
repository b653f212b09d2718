"""Tests for cancellation token, pause gate and signal wiring."""

import os
import signal
import threading
import time

import pytest

from superralph.cancellation import (
    CancelToken,
    PauseGate,
    install_pause_handler,
    install_signal_handlers,
)


class TestCancelToken:
    """Tests for CancelToken."""

    def test_initial_state(self):
        """A new token is not cancelled."""
        token = CancelToken()
        assert token.cancelled is False
        assert token.reason is None

    def test_cancel_sets_reason_once(self):
        """The first reason wins."""
        token = CancelToken()
        token.cancel("SIGINT")
        token.cancel("SIGTERM")
        assert token.cancelled is True
        assert token.reason == "SIGINT"

    def test_callbacks_run_once(self):
        """on_cancel callbacks fire on the first cancel only."""
        token = CancelToken()
        calls = []
        token.on_cancel(lambda: calls.append(1))
        token.cancel()
        token.cancel()
        assert calls == [1]

    def test_callback_after_cancel_runs_immediately(self):
        """Registering on a cancelled token runs the callback right away."""
        token = CancelToken()
        token.cancel()
        calls = []
        token.on_cancel(lambda: calls.append(1))
        assert calls == [1]

    def test_unregister(self):
        """The returned function removes the callback."""
        token = CancelToken()
        calls = []
        remove = token.on_cancel(lambda: calls.append(1))
        remove()
        token.cancel()
        assert calls == []

    def test_wait_returns_early_on_cancel(self):
        """wait() wakes as soon as another thread cancels."""
        token = CancelToken()
        threading.Timer(0.05, token.cancel).start()
        started = time.monotonic()
        assert token.wait(5) is True
        assert time.monotonic() - started < 4

    def test_wait_times_out(self):
        """wait() returns False when nobody cancels."""
        assert CancelToken().wait(0.01) is False


class TestPauseGate:
    """Tests for PauseGate."""

    def test_open_by_default(self):
        """wait() returns immediately when not paused."""
        gate = PauseGate()
        assert gate.paused is False
        assert gate.wait(0.01) is True

    def test_paused_wait_times_out(self):
        """A paused gate blocks until the timeout."""
        gate = PauseGate()
        gate.pause()
        assert gate.wait(0.01) is False

    def test_resume_releases_waiter(self):
        """resume() wakes a blocked waiter."""
        gate = PauseGate()
        gate.pause()
        threading.Timer(0.05, gate.resume).start()
        assert gate.wait(5) is True

    def test_cancel_releases_waiter(self):
        """Cancelling the linked token wakes a paused waiter."""
        token = CancelToken()
        gate = PauseGate(token)
        gate.pause()
        threading.Timer(0.05, token.cancel).start()
        assert gate.wait(5) is True
        assert gate.paused is True

    def test_toggle(self):
        """toggle flips the state and returns it."""
        gate = PauseGate()
        assert gate.toggle() is True
        assert gate.paused is True
        assert gate.toggle() is False
        assert gate.wait(0.01) is True


class TestSignalHandlers:
    """Tests for SIGINT/SIGTERM and SIGUSR1 wiring."""

    def test_sigterm_cancels_token(self):
        """SIGTERM sets the token and reports the signal name."""
        token = CancelToken()
        names = []
        restore = install_signal_handlers(token, names.append)
        try:
            os.kill(os.getpid(), signal.SIGTERM)
            assert token.wait(5)
        finally:
            restore()

        assert token.reason == "SIGTERM"
        assert names == ["SIGTERM"]

    def test_second_signal_raises_keyboard_interrupt(self):
        """A signal on an already-cancelled token aborts."""
        token = CancelToken()
        token.cancel("SIGINT")
        restore = install_signal_handlers(token)
        try:
            with pytest.raises(KeyboardInterrupt):
                os.kill(os.getpid(), signal.SIGTERM)
                time.sleep(1)
        finally:
            restore()

    def test_restore_puts_back_previous_handlers(self):
        """restore() reinstates what was there before."""
        before = signal.getsignal(signal.SIGTERM)
        restore = install_signal_handlers(CancelToken())
        assert signal.getsignal(signal.SIGTERM) is not before
        restore()
        assert signal.getsignal(signal.SIGTERM) is before

    @pytest.mark.skipif(not hasattr(signal, "SIGUSR1"), reason="SIGUSR1 not available")
    def test_sigusr1_toggles_pause(self):
        """SIGUSR1 pauses, a second SIGUSR1 resumes."""
        gate = PauseGate()
        states = []
        restore = install_pause_handler(gate, states.append)
        try:
            os.kill(os.getpid(), signal.SIGUSR1)
            time.sleep(0.05)
            assert gate.paused is True
            os.kill(os.getpid(), signal.SIGUSR1)
            time.sleep(0.05)
        finally:
            restore()

        assert states == [True, False]
        assert gate.paused is False

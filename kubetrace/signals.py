"""Cancellation tokens and the signal listener that fires them."""

import signal
import threading
from contextlib import contextmanager
from typing import Callable, Iterator

from kubetrace.errors import TraceCancelledError

STANDARD_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CancelToken:
    """A flag that flips to cancelled exactly once and can be waited on.

    A token created with a parent is cancelled whenever the parent is, so a
    single process-wide token can fan out to several attach operations.
    Once cancelled, a child drops its registration on the parent; a child that
    is never cancelled stays registered until the parent fires.
    """

    def __init__(self, parent: "CancelToken | None" = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self.reason: str | None = None
        self._unlink_parent: Callable[[], None] | None = None
        if parent is not None:
            self._unlink_parent = parent.on_cancel(lambda: self.cancel(parent.reason))

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> bool:
        """Cancel the token. Returns False if it was already cancelled."""
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            callback()
        if self._unlink_parent is not None:
            self._unlink_parent()
            self._unlink_parent = None
        return True

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses. Returns ``cancelled``."""
        return self._event.wait(timeout)

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation (now, if already cancelled).

        Returns a function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                registered = True
            else:
                registered = False
        if not registered:
            callback()

        def unregister() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unregister

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise TraceCancelledError(self.reason or "cancelled")


@contextmanager
def with_standard_signals(
    token: CancelToken | None = None,
    signals: tuple[signal.Signals, ...] = STANDARD_SIGNALS,
) -> Iterator[CancelToken]:
    """Cancel ``token`` on the first SIGINT/SIGTERM while the block runs.

    A second signal raises KeyboardInterrupt, so cleanup that hangs after the
    first one can still be interrupted. The previous handlers come back on exit.
    Must be entered from the main thread.
    """
    token = token or CancelToken()

    def _handler(signum, frame):
        if not token.cancel(signal.Signals(signum).name):
            raise KeyboardInterrupt

    previous = {}
    try:
        for sig in signals:
            previous[sig] = signal.signal(sig, _handler)
        yield token
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

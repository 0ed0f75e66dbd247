from __future__ import annotations

import signal
import threading
from contextlib import contextmanager
from typing import Iterator


class CancelToken:
    """
    Thread-safe cancellation flag shared by the runner and running actions.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


@contextmanager
def cancel_on_signals(
    token: CancelToken,
    signals: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM),
) -> Iterator[CancelToken]:
    """
    Route SIGINT/SIGTERM into `token` for the duration of the block.

    Must be entered from the main thread.
    """
    previous: dict[signal.Signals, object] = {}

    def _handler(signum: int, _frame: object) -> None:
        token.cancel(reason=signal.Signals(signum).name)

    for sig in signals:
        previous[sig] = signal.signal(sig, _handler)
    try:
        yield token
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)  # type: ignore[arg-type]

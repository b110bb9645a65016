from __future__ import annotations

import threading

from pyenvsync.errors import ResolutionCancelled


class CancellationToken:
    """
    A thread-safe flag the solver polls between propagation steps.

    Timeouts are the caller's concern: a caller that wants one starts a
    timer that calls `cancel()`.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ResolutionCancelled("resolution was cancelled")

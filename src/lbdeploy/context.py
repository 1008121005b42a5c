"""Deadline and cancellation for one synthesis pass."""

from __future__ import annotations

import threading
import time

from .errors import ReconcileCancelledError


class ReconcileContext:
    """Carries a pass deadline and a cancellation flag to every cloud call.

    Checked before each call; an in-flight call is never interrupted and
    mutations already issued are not undone.
    """

    def __init__(
        self,
        timeout_seconds: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
        self._cancel_event = cancel_event or threading.Event()

    @classmethod
    def background(cls) -> ReconcileContext:
        """A context that never expires."""
        return cls()

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def check(self) -> None:
        """Raise ReconcileCancelledError if the pass should stop."""
        if self._cancel_event.is_set():
            raise ReconcileCancelledError("reconciliation cancelled")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise ReconcileCancelledError("reconciliation deadline exceeded")

    def sleep(self, seconds: float) -> None:
        """Sleep up to ``seconds``, waking early on cancellation."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        self._cancel_event.wait(seconds)
        self.check()

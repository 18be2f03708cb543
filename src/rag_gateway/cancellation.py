"""Cooperative cancellation and deadlines for long-running operations."""

from __future__ import annotations

import threading
import time

from rag_gateway.errors import OperationCancelled


class CancellationScope:
    """Combines an explicit cancel signal with an optional deadline.

    Work checks the scope between stages with `check()`. Backoff waits use
    `sleep()`, which returns early once the scope is cancelled.
    """

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self._event = threading.Event()
        self._deadline = (
            time.monotonic() + timeout_seconds if timeout_seconds is not None else None
        )
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.reason = self.reason or "deadline exceeded"
            return True
        return False

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def check(self) -> None:
        if self.cancelled:
            raise OperationCancelled(f"Operation aborted: {self.reason}")

    def sleep(self, seconds: float) -> None:
        """Wait up to `seconds`, raising `OperationCancelled` if aborted meanwhile."""

        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        self._event.wait(seconds)
        self.check()

"""
Cancellation tokens for long-running pipeline steps.

A token is cancelled explicitly, by an expired deadline, or through its
parent. Workers call ``raise_if_cancelled()`` at their suspension points.
"""

import threading
import time
from typing import Optional

from core.errors import OperationCancelledError, OperationTimedOutError


class CancellationToken:
    """Thread-safe cancellation signal with an optional deadline."""

    def __init__(self, timeout: Optional[float] = None, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._parent = parent
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    def linked(self, timeout: Optional[float] = None) -> "CancellationToken":
        """Child token cancelled together with this one, optionally with its own deadline."""
        return CancellationToken(timeout=timeout, parent=self)

    @property
    def timed_out(self) -> bool:
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return True
        return self._parent is not None and self._parent.timed_out

    @property
    def cancelled(self) -> bool:
        if self._event.is_set() or self.timed_out:
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def remaining(self) -> Optional[float]:
        """Seconds left before the nearest deadline, or None when unbounded."""
        candidates = []
        if self._deadline is not None:
            candidates.append(max(0.0, self._deadline - time.monotonic()))
        if self._parent is not None and self._parent.remaining is not None:
            candidates.append(self._parent.remaining)
        return min(candidates) if candidates else None

    @property
    def _cancel_requested(self) -> bool:
        return self._event.is_set() or (self._parent is not None and self._parent._cancel_requested)

    def raise_if_cancelled(self) -> None:
        # An explicit cancel wins over a deadline that expired at the same time.
        if self._cancel_requested:
            raise OperationCancelledError("operation cancelled")
        if self.timed_out:
            raise OperationTimedOutError("operation timed out")

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True early if cancelled."""
        end = time.monotonic() + seconds
        while not self.cancelled:
            left = end - time.monotonic()
            if left <= 0:
                return False
            self._event.wait(min(left, 0.05))
        return True

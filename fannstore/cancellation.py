"""
cancellation.py
~~~~~~~~~~~~~~~

Cooperative cancellation tokens with optional deadlines.
"""

import threading
import time
from typing import Optional

from .errors import Cancelled


class CancellationToken:
    """
    Signals that a long-running operation should stop.

    A token is cancelled either explicitly through :meth:`cancel` or
    implicitly once its deadline (``timeout`` seconds after creation) passes.
    Training checks the token between mini-batches; persistence calls use
    :meth:`remaining` as their I/O timeout.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = (
            time.monotonic() + timeout if timeout is not None else None
        )

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None if there is none."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self, name: Optional[str] = None) -> None:
        """
        Raise :class:`Cancelled` if the token has fired.

        Args:
            name: Model name to attach to the error details
        """
        if self.cancelled:
            reason = 'cancelled' if self._event.is_set() else 'timeout'
            raise Cancelled(
                f"Operation on '{name}' was cancelled ({reason})",
                model=name,
                reason=reason
            )

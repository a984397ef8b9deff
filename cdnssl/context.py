"""
Cancellable, deadline-bounded execution context for capability calls.

Every call into an external capability (certbot, the CDN API, SMTP) receives
a CallContext. Adapters bound their waits by ``remaining()`` and abort once
the owning orchestrator is stopped.
"""

import threading
import time
from typing import Optional


class CallCancelledError(Exception):
    """Raised when a capability call is cancelled or runs past its deadline."""
    pass


class CancellationToken:
    """Cooperative cancellation flag shared by everything in one control loop."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until cancelled or until ``timeout`` seconds have passed.

        Returns:
            True if the token was cancelled
        """
        return self._event.wait(timeout)


class CallContext:
    """
    Deadline and cancellation scope for a single capability call.

    A context created with ``timeout=None`` has no deadline; ``for_call()``
    derives a fresh per-call deadline from the configured call timeout.
    """

    def __init__(
        self,
        token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
        call_timeout: Optional[float] = None,
    ):
        """
        Args:
            token: Shared cancellation token (a private one is created if omitted)
            timeout: Seconds until this context's deadline (None = unbounded)
            call_timeout: Timeout applied to contexts derived via for_call()
        """
        self.token = token or CancellationToken()
        self.call_timeout = call_timeout
        self.deadline = time.monotonic() + timeout if timeout is not None else None

    def for_call(self) -> "CallContext":
        """Derive a context for one capability call, with its own deadline."""
        timeout = self.call_timeout
        remaining = self.remaining()
        if remaining is not None:
            timeout = remaining if timeout is None else min(timeout, remaining)
        return CallContext(self.token, timeout=timeout, call_timeout=self.call_timeout)

    @property
    def cancelled(self) -> bool:
        return self.token.is_cancelled

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self, default: Optional[float] = None) -> Optional[float]:
        """
        Seconds left before the deadline.

        Args:
            default: Value returned when the context has no deadline

        Returns:
            Remaining seconds (never negative), or ``default``
        """
        if self.deadline is None:
            return default
        return max(0.0, self.deadline - time.monotonic())

    def check(self) -> None:
        """Raise CallCancelledError if the call must not proceed."""
        if self.cancelled:
            raise CallCancelledError("operation cancelled")
        if self.expired:
            raise CallCancelledError("deadline exceeded")

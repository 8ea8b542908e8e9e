"""Error taxonomy for instance coordination and handoff."""

from __future__ import annotations

from typing import Any


class HandoffError(Exception):
    """Base class for all instance_handoff errors."""


class LockAcquisitionError(HandoffError):
    """The named lock primitive itself failed (not mere contention)."""


class LockContextClosedError(HandoffError):
    """Work was submitted to a lock coordination thread that has been closed."""


class HandoffConnectionError(HandoffError, ConnectionError):
    """A secondary instance could not hand its context to the primary."""


class ProtocolError(HandoffError):
    """A handoff payload was truncated or malformed."""


class CallbackError(HandoffError):
    """A registered handoff callback raised.

    Never raised by the library; only handed to an error hook.
    """

    def __init__(self, callback: Any, error: BaseException) -> None:
        name = getattr(callback, "__qualname__", None) or repr(callback)
        super().__init__(f"handoff callback {name} failed: {type(error).__name__}: {error}")
        self.callback = callback
        self.error = error

"""Single-instance coordination with launch-context handoff."""

from __future__ import annotations

__version__ = "0.1.0"

from .contracts.v1 import CoordinatorSettings, HandoffContext, Role, Scope
from .coordinator import Coordinator, create_manager
from .errors import (
    CallbackError,
    HandoffConnectionError,
    HandoffError,
    LockAcquisitionError,
    LockContextClosedError,
    ProtocolError,
)
from .kernel.dispatch import QueueDispatch, loop_dispatch
from .kernel.identity import InstanceIdentity, resolve_identity
from .kernel.settings import load_settings

__all__ = [
    "CallbackError",
    "Coordinator",
    "CoordinatorSettings",
    "HandoffConnectionError",
    "HandoffContext",
    "HandoffError",
    "InstanceIdentity",
    "LockAcquisitionError",
    "LockContextClosedError",
    "ProtocolError",
    "QueueDispatch",
    "Role",
    "Scope",
    "__version__",
    "create_manager",
    "load_settings",
    "loop_dispatch",
    "resolve_identity",
]

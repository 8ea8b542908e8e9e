from .handoff import HandoffContext, Role
from .settings import DEFAULT_MAX_PAYLOAD_BYTES, CoordinatorSettings, Scope, Transport

__all__ = [
    "CoordinatorSettings",
    "DEFAULT_MAX_PAYLOAD_BYTES",
    "HandoffContext",
    "Role",
    "Scope",
    "Transport",
]

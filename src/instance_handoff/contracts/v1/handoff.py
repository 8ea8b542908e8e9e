"""Handoff contracts shared by the primary and secondary sides."""

from __future__ import annotations

import os
import sys
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator


class Role(str, Enum):
    UNSET = "unset"
    PRIMARY = "primary"
    SECONDARY = "secondary"


_EMPTY_DEFAULTS: Dict[str, Any] = {
    "arguments": (),
    "environment": {},
    "working_directory": "",
}


class HandoffContext(BaseModel):
    """Launch context a secondary instance forwards to the primary."""

    arguments: Tuple[str, ...] = ()
    environment: Mapping[str, str] = Field(default_factory=dict, validate_default=True)
    working_directory: str = ""

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator("arguments", "environment", "working_directory", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            default = _EMPTY_DEFAULTS[str(info.field_name)]
            return dict(default) if isinstance(default, dict) else default
        return value

    @field_validator("environment")
    @classmethod
    def _read_only_environment(cls, value: Mapping[str, str]) -> Mapping[str, str]:
        # Every subscriber receives the same instance.
        return MappingProxyType(dict(value))

    def __hash__(self) -> int:
        return hash((self.arguments, frozenset(self.environment.items()), self.working_directory))

    @classmethod
    def capture(cls, args: Optional[Sequence[str]] = None) -> "HandoffContext":
        """Context of the running process; `args` defaults to sys.argv[1:]."""
        argv = list(sys.argv[1:]) if args is None else list(args)
        try:
            cwd = os.getcwd()
        except OSError:
            # Working directory was removed underneath us.
            cwd = ""
        return cls(arguments=tuple(argv), environment=dict(os.environ), working_directory=cwd)

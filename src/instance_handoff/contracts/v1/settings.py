from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Transport = Literal["auto", "unix", "tcp"]
Scope = Literal["local", "global"]

DEFAULT_MAX_PAYLOAD_BYTES = 16 * 1024 * 1024


class CoordinatorSettings(BaseModel):
    """Tunables for a coordinator (host supplied; no environment lookups)."""

    transport: Transport = "auto"
    runtime_dir: Optional[str] = Field(default=None, description="Overrides the base directory for lock and channel files.")
    listener_slots: int = Field(default=2, ge=1, le=16, description="Concurrently armed listener slots.")
    listen_backlog: int = Field(default=16, ge=1, le=4096)
    accept_poll_seconds: float = Field(default=0.2, gt=0, le=5.0)
    read_timeout_seconds: float = Field(default=10.0, gt=0)
    connect_timeout_seconds: Optional[float] = Field(
        default=10.0, gt=0, description="None waits for the primary indefinitely."
    )
    shutdown_grace_seconds: float = Field(default=5.0, ge=0)
    max_payload_bytes: int = Field(default=DEFAULT_MAX_PAYLOAD_BYTES, ge=64)

    model_config = ConfigDict(extra="forbid", frozen=True)

"""Instance identity: derive lock and channel names from an application identifier.

The token is the only input to both names, so two launches that resolve the
same identifier and scope always meet on the same lock and the same channel.
"""

from __future__ import annotations

import hashlib
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..contracts.v1 import Scope

LOCAL_NAMESPACE = "Local"
GLOBAL_NAMESPACE = "Global"
CHANNEL_SUFFIX = "argsStream"
FALLBACK_IDENTIFIER = "instance_handoff"

_TOKEN_SAFE_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")
_SLUG_RE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class InstanceIdentity:
    token: str
    scope: Scope
    lock_name: str
    channel_name: str

    @property
    def lock_file_name(self) -> str:
        return f"{self.token}.lock"


def _namespace(scope: Scope) -> str:
    if scope == "local":
        return LOCAL_NAMESPACE
    if scope == "global":
        return GLOBAL_NAMESPACE
    raise ValueError(f"unknown scope: {scope!r} (expected 'local' or 'global')")


def default_identifier() -> str:
    """Identifier of the running program, used when the caller supplies none."""
    main = sys.modules.get("__main__")
    spec = getattr(main, "__spec__", None)
    name = str(getattr(spec, "name", "") or "").strip()
    if name and name != "__main__":
        return name
    argv0 = str(sys.argv[0] if sys.argv else "").strip()
    if argv0 and argv0 not in ("-c", "-"):
        try:
            return str(Path(argv0).resolve())
        except OSError:
            return argv0
    exe = str(sys.executable or "").strip()
    return exe or FALLBACK_IDENTIFIER


def token_for(identifier: str) -> str:
    raw = str(identifier or "").strip()
    if not raw:
        raw = FALLBACK_IDENTIFIER
    if _TOKEN_SAFE_RE.match(raw):
        return raw
    digest = hashlib.sha256(raw.encode("utf-8", errors="surrogatepass")).hexdigest()[:16]
    slug = _SLUG_RE.sub("_", raw).strip("._-")[:40] or "app"
    return f"{slug}.{digest}"


def resolve_identity(identifier: Optional[str] = None, scope: Scope = "local") -> InstanceIdentity:
    namespace = _namespace(scope)
    ident = identifier if identifier is not None and str(identifier).strip() else default_identifier()
    token = token_for(ident)
    return InstanceIdentity(
        token=token,
        scope=scope,
        lock_name=f"{namespace}\\{token}",
        channel_name=f"{token}{CHANNEL_SUFFIX}",
    )

"""Filesystem locations for lock files and channel endpoints."""

from __future__ import annotations

import getpass
import os
import re
import tempfile
from pathlib import Path
from typing import Optional

from .contracts.v1 import Scope

_APP_DIR = "instance-handoff"
_USER_SAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")


def _user_slug() -> str:
    try:
        raw = getpass.getuser()
    except (KeyError, OSError):
        raw = str(os.getuid()) if hasattr(os, "getuid") else "user"
    return _USER_SAFE_RE.sub("_", raw).strip("._-") or "user"


def _ensure_dir(path: Path, *, mode: int) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    try:
        os.chmod(path, mode)
    except OSError:
        # Directory owned by someone else (shared global dir); keep its mode.
        pass
    return path


def scope_dir(scope: Scope, *, runtime_dir: Optional[str] = None) -> Path:
    """Directory that holds lock files and channel endpoints for a scope.

    local: per login session ($XDG_RUNTIME_DIR when set, else a per-user temp dir).
    global: one directory per machine, writable by every user.
    """
    if scope not in ("local", "global"):
        raise ValueError(f"unknown scope: {scope!r}")
    if runtime_dir:
        base = Path(runtime_dir).expanduser()
        return _ensure_dir(base / scope, mode=0o700 if scope == "local" else 0o1777)
    if scope == "global":
        return _ensure_dir(Path(tempfile.gettempdir()) / f"{_APP_DIR}-global", mode=0o1777)
    xdg = str(os.environ.get("XDG_RUNTIME_DIR") or "").strip()
    if xdg and Path(xdg).is_dir():
        return _ensure_dir(Path(xdg) / _APP_DIR, mode=0o700)
    return _ensure_dir(Path(tempfile.gettempdir()) / f"{_APP_DIR}-{_user_slug()}", mode=0o700)

from __future__ import annotations

import hashlib
import logging
import os
import socket
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..util.fs import atomic_write_json, read_json

logger = logging.getLogger("instance_handoff.serve")

# sun_path is 108 bytes on Linux and 104 on macOS; keep headroom for the NUL.
_UNIX_PATH_MAX = 100


def resolve_transport(transport: str) -> str:
    tr = str(transport or "").strip().lower() or "auto"
    has_unix = getattr(socket, "AF_UNIX", None) is not None
    if tr == "auto":
        return "unix" if has_unix else "tcp"
    if tr == "unix" and not has_unix:
        raise ValueError("unix transport requested but AF_UNIX is not supported")
    if tr not in ("unix", "tcp"):
        raise ValueError(f"unknown transport: {transport!r}")
    return tr


def channel_socket_path(scope_dir: Path, channel_name: str) -> Path:
    path = scope_dir / channel_name
    if len(str(path).encode("utf-8", errors="surrogatepass")) <= _UNIX_PATH_MAX:
        return path
    digest = hashlib.sha256(str(path).encode("utf-8", errors="surrogatepass")).hexdigest()[:24]
    short = scope_dir / f"ih-{digest}"
    if len(str(short).encode("utf-8", errors="surrogatepass")) <= _UNIX_PATH_MAX:
        return short
    return Path(tempfile.gettempdir()) / f"ih-{digest}"


def channel_addr_path(scope_dir: Path, channel_name: str) -> Path:
    # Endpoint descriptor for the TCP fallback (no AF_UNIX, e.g. Windows).
    return scope_dir / f"{channel_name}.addr.json"


def write_channel_addr(*, addr_path: Path, endpoint: Dict[str, Any], pid: int) -> None:
    atomic_write_json(
        addr_path,
        {
            "v": 1,
            "transport": "tcp",
            "host": str(endpoint.get("host") or "127.0.0.1"),
            "port": int(endpoint.get("port") or 0),
            "pid": int(pid),
        },
    )


def read_channel_addr(addr_path: Path) -> Dict[str, Any]:
    doc = read_json(addr_path)
    if not isinstance(doc, dict):
        return {}
    try:
        port = int(doc.get("port") or 0)
    except (TypeError, ValueError):
        port = 0
    if port <= 0:
        return {}
    return {"transport": "tcp", "host": str(doc.get("host") or "127.0.0.1"), "port": port}


def bind_channel_socket(
    *,
    transport: str,
    scope_dir: Path,
    channel_name: str,
    backlog: int,
    shared: bool = False,
) -> Tuple[socket.socket, Dict[str, Any]]:
    """Bind and listen on the channel. Caller must hold the instance lock.

    `shared` opens the endpoint to other local users (global scope).
    """
    tr = resolve_transport(transport)
    if tr == "unix":
        path = channel_socket_path(scope_dir, channel_name)
        # Leftover from a primary that died without cleanup; the lock makes this ours.
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            s.bind(str(path))
            if shared:
                try:
                    os.chmod(path, 0o666)
                except OSError as e:
                    logger.warning("could not share channel socket %s: %s", path, e)
            s.listen(backlog)
        except BaseException:
            s.close()
            raise
        return s, {"transport": "unix", "path": str(path)}

    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        s.bind(("127.0.0.1", 0))
        s.listen(backlog)
        host, port = s.getsockname()[:2]
        endpoint: Dict[str, Any] = {"transport": "tcp", "host": str(host), "port": int(port)}
        addr_path = channel_addr_path(scope_dir, channel_name)
        write_channel_addr(addr_path=addr_path, endpoint=endpoint, pid=os.getpid())
    except BaseException:
        s.close()
        raise
    endpoint["addr_path"] = str(addr_path)
    return s, endpoint


def cleanup_channel(listener: Optional[socket.socket], endpoint: Dict[str, Any]) -> None:
    if listener is not None:
        try:
            listener.close()
        except OSError:
            pass
    for key in ("path", "addr_path"):
        raw = str(endpoint.get(key) or "")
        if not raw:
            continue
        try:
            Path(raw).unlink(missing_ok=True)
        except OSError as e:
            logger.debug("could not remove %s: %s", raw, e)

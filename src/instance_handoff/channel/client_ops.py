"""Secondary-side handoff client."""

from __future__ import annotations

import errno
import logging
import socket
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ..errors import HandoffConnectionError
from .serve_ops import channel_addr_path, channel_socket_path, read_channel_addr, resolve_transport
from .socket_protocol_ops import send_and_wait_drained

logger = logging.getLogger("instance_handoff.client")

# The primary takes the lock before it binds the channel, so a secondary can
# briefly see "lock held" with nothing listening yet.
_RETRY_ERRNOS = {errno.ENOENT, errno.ECONNREFUSED, errno.EAGAIN}
_BACKOFF_START_S = 0.02
_BACKOFF_MAX_S = 0.5


def get_channel_endpoint(*, transport: str, scope_dir: Path, channel_name: str) -> Dict[str, Any]:
    tr = resolve_transport(transport)
    if tr == "unix":
        return {"transport": "unix", "path": str(channel_socket_path(scope_dir, channel_name))}
    return read_channel_addr(channel_addr_path(scope_dir, channel_name))


def _connect(endpoint: Dict[str, Any], timeout_s: Optional[float]) -> socket.socket:
    transport = str(endpoint.get("transport") or "").strip().lower()
    if transport == "tcp":
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        address: Any = (str(endpoint.get("host") or "127.0.0.1"), int(endpoint.get("port") or 0))
    else:
        af_unix = getattr(socket, "AF_UNIX", None)
        if af_unix is None:
            raise HandoffConnectionError("AF_UNIX not supported")
        sock = socket.socket(af_unix, socket.SOCK_STREAM)
        address = str(endpoint.get("path") or "")
    try:
        sock.settimeout(timeout_s)
        sock.connect(address)
    except BaseException:
        sock.close()
        raise
    return sock


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return deadline - time.monotonic()


def send_handoff_payload(
    resolve_endpoint: Callable[[], Dict[str, Any]],
    payload: bytes,
    *,
    timeout_s: Optional[float],
) -> None:
    """Connect to the primary, send `payload` and wait until it is drained.

    `resolve_endpoint` is re-evaluated on every attempt (the TCP descriptor
    may not exist yet). `timeout_s` bounds connect and drain together; None
    waits indefinitely.
    """
    deadline = None if timeout_s is None else time.monotonic() + float(timeout_s)
    backoff = _BACKOFF_START_S
    attempts = 0
    while True:
        attempts += 1
        endpoint = resolve_endpoint()
        remaining = _remaining(deadline)
        if remaining is not None and remaining <= 0:
            raise HandoffConnectionError(f"primary instance not reachable after {attempts - 1} attempts")
        if endpoint:
            try:
                sock = _connect(endpoint, remaining)
                break
            except socket.timeout as e:
                raise HandoffConnectionError("timed out connecting to primary instance") from e
            except OSError as e:
                if not isinstance(e, (FileNotFoundError, ConnectionRefusedError)) and e.errno not in _RETRY_ERRNOS:
                    raise HandoffConnectionError(f"cannot connect to primary instance: {e}") from e
        remaining = _remaining(deadline)
        pause = backoff if remaining is None else max(0.0, min(backoff, remaining))
        time.sleep(pause)
        backoff = min(backoff * 2, _BACKOFF_MAX_S)

    try:
        remaining = _remaining(deadline)
        if remaining is not None and remaining <= 0:
            raise HandoffConnectionError("timed out before sending handoff")
        sock.settimeout(remaining)
        send_and_wait_drained(sock, payload)
    except socket.timeout as e:
        raise HandoffConnectionError("primary instance did not drain the handoff in time") from e
    except OSError as e:
        raise HandoffConnectionError(f"handoff send failed: {e}") from e
    finally:
        try:
            sock.close()
        except OSError:
            pass
    logger.debug("handoff sent (%d bytes, %d attempts)", len(payload), attempts, extra={"op": "handoff_sent"})

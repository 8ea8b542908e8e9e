from __future__ import annotations

import socket
from typing import Callable

from ..contracts.v1 import HandoffContext
from ..kernel.wire import read_context


def recv_exact(conn: socket.socket, n: int) -> bytes:
    """Read exactly n bytes; fewer only when the peer closed early."""
    if n <= 0:
        return b""
    chunks = []
    remaining = n
    while remaining > 0:
        chunk = conn.recv(min(remaining, 65536))
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def recv_context(conn: socket.socket, *, max_payload_bytes: int) -> HandoffContext:
    return read_context(lambda n: recv_exact(conn, n), max_payload_bytes=max_payload_bytes)


def context_reader(max_payload_bytes: int) -> Callable[[socket.socket], HandoffContext]:
    def _read(conn: socket.socket) -> HandoffContext:
        return recv_context(conn, max_payload_bytes=max_payload_bytes)

    return _read


def send_and_wait_drained(sock: socket.socket, data: bytes) -> None:
    """Write `data`, half-close, and block until the peer closes its side.

    The primary closes a connection only after it has read the whole payload,
    so end-of-stream here means every byte was consumed.
    """
    sock.sendall(data)
    try:
        sock.shutdown(socket.SHUT_WR)
    except OSError:
        # Peer already gone; the recv below reports it.
        pass
    while True:
        chunk = sock.recv(4096)
        if not chunk:
            return

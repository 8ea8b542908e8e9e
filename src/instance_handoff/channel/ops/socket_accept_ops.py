"""Per-connection handling for the listener pool."""

from __future__ import annotations

import logging
import socket
from typing import Any, Callable

from ...contracts.v1 import HandoffContext
from ...errors import ProtocolError


def handle_incoming_connection(
    conn: Any,
    *,
    read_context: Callable[[Any], HandoffContext],
    deliver: Callable[[HandoffContext], Any],
    logger: logging.Logger,
) -> bool:
    """Read one handoff from an accepted connection and deliver it.

    The connection is always closed before delivery so the sender sees its
    payload drained as early as possible. Failures stay local to this
    connection.

    Returns:
        True when a context was decoded and handed to `deliver`.
    """
    try:
        ctx = read_context(conn)
    except ProtocolError as e:
        logger.warning("dropping malformed handoff: %s", e, extra={"op": "handoff_malformed"})
        return False
    except socket.timeout:
        logger.warning("dropping handoff: read timed out", extra={"op": "handoff_timeout"})
        return False
    except OSError as e:
        logger.warning("dropping handoff: %s", e, extra={"op": "handoff_io_error"})
        return False
    finally:
        try:
            conn.close()
        except OSError:
            pass

    logger.debug(
        "handoff received args=%d env=%d cwd=%s",
        len(ctx.arguments),
        len(ctx.environment),
        ctx.working_directory,
        extra={"op": "handoff_received"},
    )
    try:
        deliver(ctx)
    except Exception as e:
        logger.exception("Unexpected error delivering handoff: %s", e)
        return False
    return True

"""Pool of armed accept slots on the primary's channel.

Each slot is a thread blocked in accept() on the shared listening socket.
When a slot receives a connection it arms a replacement before it starts
reading, so a burst of secondary launches always finds a waiting acceptor.
The listen backlog absorbs connects that land in the instant between the two.
"""

from __future__ import annotations

import errno
import itertools
import logging
import socket
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("instance_handoff.listener")

# accept() errors that mean the listening socket itself is gone.
_FATAL_ACCEPT_ERRNOS = {errno.EBADF, errno.EINVAL, errno.ENOTSOCK}


class SlotState(str, Enum):
    ARMED = "armed"
    CONNECTED = "connected"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass
class ListenerSlot:
    slot_id: int
    state: SlotState = SlotState.ARMED
    thread: Optional[threading.Thread] = field(default=None, repr=False, compare=False)


class ListenerPool:
    def __init__(
        self,
        listener: socket.socket,
        *,
        handle_connection: Callable[[socket.socket], Any],
        slots: int = 2,
        poll_seconds: float = 0.2,
        read_timeout_seconds: float = 10.0,
        name: str = "instance-handoff",
    ) -> None:
        if slots < 1:
            raise ValueError("listener pool needs at least one slot")
        self._listener = listener
        self._listener.settimeout(poll_seconds)
        self._handle_connection = handle_connection
        self._max_armed = int(slots)
        self._poll_seconds = float(poll_seconds)
        self._read_timeout_seconds = float(read_timeout_seconds)
        self._name = name
        self._ids = itertools.count(1)
        self._slots: Dict[int, ListenerSlot] = {}
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._started = False

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def start(self) -> None:
        with self._cond:
            if self._started:
                return
            self._started = True
        for _ in range(self._max_armed):
            self._arm()
        logger.info("listener pool started with %d slots", self._max_armed, extra={"op": "pool_start"})

    def armed_count(self) -> int:
        with self._cond:
            return sum(1 for s in self._slots.values() if s.state is SlotState.ARMED)

    def slots(self) -> List[ListenerSlot]:
        with self._cond:
            return [ListenerSlot(slot_id=s.slot_id, state=s.state) for s in self._slots.values()]

    def stop(self, grace_seconds: float = 5.0) -> bool:
        """Stop arming, let waiting slots exit and in-flight ones finish.

        Returns True when every slot finished within the grace period.
        """
        self._stop.set()
        deadline = time.monotonic() + max(0.0, grace_seconds) + self._poll_seconds
        with self._cond:
            while self._slots:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._cond.wait(remaining)
            leftover = [s.slot_id for s in self._slots.values()]
        if leftover:
            logger.warning("listener pool stopped with %d slot(s) still busy", len(leftover), extra={"op": "pool_stop"})
            return False
        logger.info("listener pool stopped", extra={"op": "pool_stop"})
        return True

    def _arm(self) -> Optional[ListenerSlot]:
        with self._cond:
            if self._stop.is_set():
                return None
            armed = sum(1 for s in self._slots.values() if s.state is SlotState.ARMED)
            if armed >= self._max_armed:
                return None
            slot = ListenerSlot(slot_id=next(self._ids))
            t = threading.Thread(
                target=self._run_slot,
                args=(slot,),
                name=f"{self._name}-slot-{slot.slot_id}",
                daemon=True,
            )
            slot.thread = t
            self._slots[slot.slot_id] = slot
        t.start()
        return slot

    def _set_state(self, slot: ListenerSlot, state: SlotState) -> None:
        with self._cond:
            slot.state = state
            if state is SlotState.CLOSED:
                self._slots.pop(slot.slot_id, None)
            self._cond.notify_all()

    def _wait_for_connection(self) -> Optional[socket.socket]:
        while not self._stop.is_set():
            try:
                conn, _ = self._listener.accept()
                return conn
            except socket.timeout:
                continue
            except OSError as e:
                if self._stop.is_set():
                    return None
                if e.errno in _FATAL_ACCEPT_ERRNOS:
                    logger.error("listening socket unusable: %s", e, extra={"op": "accept_error"})
                    return None
                # Transient (EMFILE, ECONNABORTED, ...): back off and keep the slot armed.
                logger.warning("accept failed: %s", e, extra={"op": "accept_error"})
                self._stop.wait(self._poll_seconds)
        return None

    def _run_slot(self, slot: ListenerSlot) -> None:
        try:
            conn = self._wait_for_connection()
            if conn is None:
                return
            self._set_state(slot, SlotState.CONNECTED)
            self._arm()
            self._set_state(slot, SlotState.DRAINING)
            try:
                conn.settimeout(self._read_timeout_seconds)
                self._handle_connection(conn)
            except Exception:
                logger.exception("listener slot %d failed", slot.slot_id)
                try:
                    conn.close()
                except OSError:
                    pass
        finally:
            self._set_state(slot, SlotState.CLOSED)

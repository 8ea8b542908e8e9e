"""Dedicated coordination thread for lock operations.

Some named-lock primitives must be released by the thread that acquired them.
All lock work is therefore funneled through one long-lived thread: callers
submit a function and block until that thread has run it.
"""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future
from typing import Any, Callable, Optional, Tuple, TypeVar

from ..errors import LockContextClosedError

logger = logging.getLogger("instance_handoff.lock_context")

T = TypeVar("T")

_WorkItem = Optional[Tuple[Callable[[], Any], "Future[Any]"]]


class LockContext:
    def __init__(self, *, name: str = "instance-handoff-lock") -> None:
        self._queue: "queue.Queue[_WorkItem]" = queue.Queue()
        self._closed = False
        self._close_lock = threading.Lock()
        self._thread = threading.Thread(target=self._process_loop, name=name, daemon=True)
        self._thread.start()

    @property
    def thread_ident(self) -> Optional[int]:
        return self._thread.ident

    @property
    def closed(self) -> bool:
        return self._closed

    def on_context_thread(self) -> bool:
        return threading.get_ident() == self._thread.ident

    def execute(self, fn: Callable[[], T]) -> T:
        """Run `fn` on the coordination thread and return its result."""
        if self.on_context_thread():
            # Nested submission would deadlock waiting on ourselves.
            return fn()
        fut: "Future[T]" = Future()
        with self._close_lock:
            if self._closed:
                raise LockContextClosedError("lock coordination thread is closed")
            self._queue.put((fn, fut))
        return fut.result()

    def close(self, timeout: Optional[float] = None) -> None:
        """Stop accepting work; queued items still run before the thread exits."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(None)
        if not self.on_context_thread():
            self._thread.join(timeout)

    def _process_loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                break
            fn, fut = item
            if not fut.set_running_or_notify_cancel():
                continue
            try:
                result = fn()
            except BaseException as e:
                fut.set_exception(e)
            else:
                fut.set_result(result)
        logger.debug("lock coordination thread stopped", extra={"op": "lock_context_stop"})

"""Deliver received handoffs to registered callbacks.

A dispatch strategy is any callable that takes a zero-argument function and
arranges for it to run "somewhere": on a worker pool, on an asyncio loop,
on a UI thread. Callback failures are contained per subscriber.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Tuple

from ..contracts.v1 import HandoffContext
from ..errors import CallbackError

logger = logging.getLogger("instance_handoff.dispatch")

HandoffCallback = Callable[[HandoffContext], object]
DispatchStrategy = Callable[[Callable[[], None]], object]
CallbackErrorHook = Callable[[CallbackError], object]


def loop_dispatch(loop: asyncio.AbstractEventLoop) -> DispatchStrategy:
    """Run callbacks on `loop`'s thread."""

    def _post(fn: Callable[[], None]) -> None:
        loop.call_soon_threadsafe(fn)

    return _post


def running_loop_dispatch() -> Optional[DispatchStrategy]:
    """Affinity strategy for the calling thread's running event loop, if any."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    return loop_dispatch(loop)


class QueueDispatch:
    """Posts callbacks to a queue drained by the thread that owns it.

    Use this when handoffs must be observed on a specific thread that is not
    running an event loop, e.g. a main thread polling between frames.
    """

    def __init__(self) -> None:
        self._queue: "queue.Queue[Callable[[], None]]" = queue.Queue()

    def __call__(self, fn: Callable[[], None]) -> None:
        self._queue.put(fn)

    def pending(self) -> int:
        return self._queue.qsize()

    def run_pending(self, timeout: Optional[float] = None) -> int:
        """Run queued callbacks on the calling thread.

        Waits up to `timeout` for the first item when the queue is empty
        (None means do not wait). Returns the number of callbacks run.
        """
        ran = 0
        block = timeout is not None
        while True:
            try:
                fn = self._queue.get(block=block, timeout=timeout if block else None)
            except queue.Empty:
                return ran
            block = False
            fn()
            ran += 1


class Dispatcher:
    def __init__(
        self,
        dispatch: Optional[DispatchStrategy] = None,
        *,
        on_callback_error: Optional[CallbackErrorHook] = None,
        max_workers: int = 4,
    ) -> None:
        self._callbacks: Tuple[HandoffCallback, ...] = ()
        self._callbacks_lock = threading.Lock()
        self._on_callback_error = on_callback_error
        self._dispatch = dispatch
        self._max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()
        self._closed = False

    @property
    def callbacks(self) -> Tuple[HandoffCallback, ...]:
        return self._callbacks

    def add(self, callback: HandoffCallback) -> None:
        if not callable(callback):
            raise TypeError("handoff callback must be callable")
        with self._callbacks_lock:
            self._callbacks = self._callbacks + (callback,)

    def remove(self, callback: HandoffCallback) -> bool:
        with self._callbacks_lock:
            cbs = list(self._callbacks)
            try:
                cbs.remove(callback)
            except ValueError:
                return False
            self._callbacks = tuple(cbs)
            return True

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, ctx: HandoffContext) -> int:
        """Post one invocation per subscriber. Returns how many were posted."""
        if self._closed:
            # A slot that outlived the shutdown grace period.
            logger.debug("dropping handoff delivered after close", extra={"op": "late_delivery"})
            return 0
        snapshot = self._callbacks
        if not snapshot:
            logger.debug("handoff received with no callbacks registered")
            return 0
        posted = 0
        for cb in snapshot:
            try:
                if self._post(self._guarded(cb, ctx)):
                    posted += 1
            except RuntimeError as e:
                # Executor shut down or loop closed while shutting down.
                logger.warning("could not dispatch handoff callback: %s", e)
        return posted

    def _post(self, fn: Callable[[], None]) -> bool:
        if self._dispatch is not None:
            self._dispatch(fn)
            return True
        with self._executor_lock:
            if self._closed:
                logger.debug("dropping handoff callback posted after close", extra={"op": "late_delivery"})
                return False
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="instance-handoff-cb"
                )
            executor = self._executor
        executor.submit(fn)
        return True

    def _guarded(self, cb: HandoffCallback, ctx: HandoffContext) -> Callable[[], None]:
        def _invoke() -> None:
            try:
                cb(ctx)
            except Exception as e:
                logger.warning("handoff callback failed: %s", e, exc_info=True, extra={"op": "callback_error"})
                self._report(CallbackError(cb, e))

        return _invoke

    def _report(self, err: CallbackError) -> None:
        hook = self._on_callback_error
        if hook is None:
            return
        try:
            hook(err)
        except Exception:
            logger.exception("callback error hook failed")

    def reopen(self) -> None:
        """Accept deliveries again after close(); the worker pool is recreated on demand."""
        with self._executor_lock:
            self._closed = False

    def close(self, wait: bool = False) -> None:
        """Stop delivering and shut down the default worker pool.

        Callbacks that were already posted still run.
        """
        with self._executor_lock:
            self._closed = True
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

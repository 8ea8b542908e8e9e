"""Primary/secondary coordination for single-instance applications.

Typical use from an application entry point::

    manager = create_manager("my-app")
    if not manager.run_application(sys.argv[1:]):
        return 0  # forwarded to the running instance
    manager.on_second_instance_started(window.open_files)
    try:
        app.run()
    finally:
        manager.shutdown()
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from .channel.client_ops import get_channel_endpoint, send_handoff_payload
from .channel.listener_pool import ListenerPool
from .channel.ops.socket_accept_ops import handle_incoming_connection
from .channel.serve_ops import bind_channel_socket, cleanup_channel
from .channel.socket_protocol_ops import context_reader
from .contracts.v1 import CoordinatorSettings, HandoffContext, Role, Scope
from .errors import HandoffError
from .kernel.dispatch import (
    CallbackErrorHook,
    Dispatcher,
    DispatchStrategy,
    HandoffCallback,
    running_loop_dispatch,
)
from .kernel.identity import InstanceIdentity, resolve_identity
from .kernel.leader_lock import LeaderLock
from .kernel.lock_context import LockContext
from .kernel.wire import encode_context
from .paths import scope_dir

logger = logging.getLogger("instance_handoff.coordinator")
_listener_logger = logging.getLogger("instance_handoff.listener")


class Coordinator:
    def __init__(
        self,
        identity: InstanceIdentity,
        *,
        settings: Optional[CoordinatorSettings] = None,
        dispatch: Optional[DispatchStrategy] = None,
        on_callback_error: Optional[CallbackErrorHook] = None,
    ) -> None:
        self._identity = identity
        self._settings = settings or CoordinatorSettings()
        self._scope_dir = scope_dir(identity.scope, runtime_dir=self._settings.runtime_dir)
        self._dispatcher = Dispatcher(dispatch, on_callback_error=on_callback_error)
        self._state_lock = threading.RLock()
        self._role = Role.UNSET
        self._lock_context: Optional[LockContext] = None
        self._lock: Optional[LeaderLock] = None
        self._pool: Optional[ListenerPool] = None
        self._listener: Any = None
        self._endpoint: Dict[str, Any] = {}

    def __enter__(self) -> "Coordinator":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.shutdown()

    @property
    def identity(self) -> InstanceIdentity:
        return self._identity

    @property
    def settings(self) -> CoordinatorSettings:
        return self._settings

    @property
    def role(self) -> Role:
        return self._role

    @property
    def is_primary(self) -> bool:
        return self._role is Role.PRIMARY

    @property
    def lock_path(self) -> Path:
        return self._scope_dir / self._identity.lock_file_name

    @property
    def endpoint(self) -> Dict[str, Any]:
        return dict(self._endpoint)

    @property
    def listener_pool(self) -> Optional[ListenerPool]:
        return self._pool

    def on_second_instance_started(self, callback: HandoffCallback) -> HandoffCallback:
        """Register a handoff callback; returns it so this works as a decorator."""
        self._dispatcher.add(callback)
        return callback

    on_handoff_received = on_second_instance_started

    def remove_handler(self, callback: HandoffCallback) -> bool:
        return self._dispatcher.remove(callback)

    def try_become_primary(self) -> bool:
        """Attempt to take the instance lock and start serving handoffs.

        Raises LockAcquisitionError when the lock primitive itself fails.
        """
        with self._state_lock:
            if self._role is Role.PRIMARY:
                return True
            if self._role is Role.SECONDARY:
                return False
            if self._lock_context is None:
                self._lock_context = LockContext(name=f"instance-handoff-lock-{self._identity.token[:16]}")
                self._lock = LeaderLock(self._identity.lock_name, self.lock_path, self._lock_context)
            assert self._lock is not None
            if not self._lock.try_acquire():
                self._role = Role.SECONDARY
                logger.info(
                    "instance %s already running; acting as secondary",
                    self._identity.token,
                    extra={"op": "role_secondary"},
                )
                return False
            self._dispatcher.reopen()
            try:
                self._start_listener()
            except Exception as e:
                self._lock.release()
                raise HandoffError(f"cannot open handoff channel {self._identity.channel_name}: {e}") from e
            self._role = Role.PRIMARY
            logger.info(
                "instance %s is primary (pid=%s)",
                self._identity.token,
                os.getpid(),
                extra={"op": "role_primary"},
            )
            return True

    def run_application(self, args: Optional[Sequence[str]] = None) -> bool:
        """Return True if this process is the primary instance.

        Otherwise the launch context (args, environment, working directory) is
        handed to the primary and False is returned; the caller should exit.
        Raises HandoffConnectionError when the primary cannot be reached.
        """
        if self.try_become_primary():
            return True
        self.send_handoff(HandoffContext.capture(args))
        return False

    def send_handoff(self, context: HandoffContext) -> None:
        """Send `context` to the primary; returns once the primary drained it."""
        payload = encode_context(context)
        s = self._settings
        send_handoff_payload(
            lambda: get_channel_endpoint(
                transport=s.transport,
                scope_dir=self._scope_dir,
                channel_name=self._identity.channel_name,
            ),
            payload,
            timeout_s=s.connect_timeout_seconds,
        )

    def shutdown(self) -> None:
        with self._state_lock:
            pool, self._pool = self._pool, None
            listener, self._listener = self._listener, None
            endpoint, self._endpoint = self._endpoint, {}
            if pool is not None:
                pool.stop(self._settings.shutdown_grace_seconds)
            if listener is not None:
                cleanup_channel(listener, endpoint)
            if self._lock is not None:
                self._lock.release()
            if self._lock_context is not None:
                self._lock_context.close()
            self._lock_context = None
            self._lock = None
            self._dispatcher.close()
            if self._role is not Role.UNSET:
                logger.info("coordinator for %s shut down", self._identity.token, extra={"op": "shutdown"})
            self._role = Role.UNSET

    def _start_listener(self) -> None:
        s = self._settings
        listener, endpoint = bind_channel_socket(
            transport=s.transport,
            scope_dir=self._scope_dir,
            channel_name=self._identity.channel_name,
            backlog=s.listen_backlog,
            shared=self._identity.scope == "global",
        )
        read_context = context_reader(s.max_payload_bytes)
        pool = ListenerPool(
            listener,
            handle_connection=lambda conn: handle_incoming_connection(
                conn,
                read_context=read_context,
                deliver=self._dispatcher.deliver,
                logger=_listener_logger,
            ),
            slots=s.listener_slots,
            poll_seconds=s.accept_poll_seconds,
            read_timeout_seconds=s.read_timeout_seconds,
            name=f"instance-handoff-{self._identity.token[:16]}",
        )
        try:
            pool.start()
        except BaseException:
            pool.stop(0)
            cleanup_channel(listener, endpoint)
            raise
        self._listener = listener
        self._endpoint = endpoint
        self._pool = pool


def create_manager(
    identifier: Optional[str] = None,
    scope: Scope = "local",
    *,
    settings: Optional[CoordinatorSettings] = None,
    dispatch: Optional[DispatchStrategy] = None,
    on_callback_error: Optional[CallbackErrorHook] = None,
) -> Coordinator:
    """Build a coordinator for `identifier` (defaults to the running program).

    Callbacks run through `dispatch`; without one they run on the event loop
    running in the calling thread, if any, else on a worker pool.
    """
    identity = resolve_identity(identifier, scope)
    if dispatch is None:
        dispatch = running_loop_dispatch()
    return Coordinator(identity, settings=settings, dispatch=dispatch, on_callback_error=on_callback_error)

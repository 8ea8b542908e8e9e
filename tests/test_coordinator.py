import asyncio
import os
import tempfile
import threading
import time
import unittest
import uuid
from unittest.mock import patch

from instance_handoff import (
    CoordinatorSettings,
    HandoffConnectionError,
    HandoffContext,
    LockAcquisitionError,
    QueueDispatch,
    Role,
    create_manager,
)


class TestCoordinator(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.settings = CoordinatorSettings(
            runtime_dir=self._td.name,
            accept_poll_seconds=0.05,
            connect_timeout_seconds=5.0,
            shutdown_grace_seconds=2.0,
        )
        self.app_id = uuid.uuid4().hex
        self.managers: list = []

    def tearDown(self) -> None:
        for m in reversed(self.managers):
            m.shutdown()
        self._td.cleanup()

    def _manager(self, **kwargs):
        kwargs.setdefault("settings", self.settings)
        m = create_manager(self.app_id, **kwargs)
        self.managers.append(m)
        return m

    def test_primary_then_secondary_forwards_arguments(self) -> None:
        primary = self._manager()
        self.assertTrue(primary.run_application([]))
        self.assertIs(primary.role, Role.PRIMARY)

        got: list = []
        done = threading.Event()

        def on_started(ctx: HandoffContext) -> None:
            got.append(ctx)
            done.set()

        primary.on_second_instance_started(on_started)

        secondary = self._manager()
        self.assertFalse(secondary.run_application(["a", "b", "c with spaces"]))
        self.assertIs(secondary.role, Role.SECONDARY)
        self.assertTrue(done.wait(5.0))
        self.assertEqual(got[0].arguments, ("a", "b", "c with spaces"))
        self.assertEqual(got[0].working_directory, os.getcwd())
        self.assertEqual(got[0].environment.get("PATH"), os.environ.get("PATH"))

    def test_run_application_is_idempotent_for_decided_roles(self) -> None:
        primary = self._manager()
        self.assertTrue(primary.run_application([]))
        self.assertTrue(primary.try_become_primary())
        secondary = self._manager()
        self.assertFalse(secondary.try_become_primary())
        self.assertFalse(secondary.try_become_primary())

    def test_concurrent_secondaries_each_delivered_once(self) -> None:
        primary = self._manager()
        self.assertTrue(primary.run_application([]))
        n = 5
        seen: list = []
        seen_lock = threading.Lock()
        all_in = threading.Semaphore(0)

        def boom(ctx: HandoffContext) -> None:
            raise RuntimeError("callback failure must not reduce deliveries")

        def record(ctx: HandoffContext) -> None:
            with seen_lock:
                seen.append((ctx.arguments, ctx.working_directory))
            all_in.release()

        primary.on_second_instance_started(boom)
        primary.on_second_instance_started(record)

        results: list = []
        errors: list = []

        def launch(i: int) -> None:
            try:
                m = create_manager(self.app_id, settings=self.settings)
                try:
                    ok = m.try_become_primary()
                    if not ok:
                        m.send_handoff(
                            HandoffContext(arguments=(f"inst-{i}", "x" * (1000 * i)), working_directory=f"/work/{i}")
                        )
                    results.append(ok)
                finally:
                    m.shutdown()
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=launch, args=(i,)) for i in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(15.0)
        self.assertEqual(errors, [])
        self.assertEqual(results, [False] * n)
        for _ in range(n):
            self.assertTrue(all_in.acquire(timeout=5.0))
        time.sleep(0.1)
        with seen_lock:
            self.assertEqual(len(seen), n)
            expected = sorted(((f"inst-{i}", "x" * (1000 * i)), f"/work/{i}") for i in range(n))
            self.assertEqual(sorted(seen), expected)

    def test_throwing_callback_keeps_serving(self) -> None:
        errors: list = []
        primary = self._manager(on_callback_error=errors.append)
        self.assertTrue(primary.run_application([]))
        primary.on_second_instance_started(lambda ctx: 1 / 0)
        for i in range(3):
            self.assertFalse(self._manager().run_application([str(i)]))
        deadline = time.monotonic() + 5.0
        while len(errors) < 3 and time.monotonic() < deadline:
            time.sleep(0.01)
        self.assertEqual(len(errors), 3)
        self.assertIsInstance(errors[0].error, ZeroDivisionError)

    def test_shutdown_releases_lock_for_new_primary(self) -> None:
        first = self._manager()
        self.assertTrue(first.run_application([]))
        first.shutdown()
        first.shutdown()
        self.assertIs(first.role, Role.UNSET)

        second = self._manager()
        self.assertTrue(second.run_application([]))
        self.assertTrue(second.is_primary)

    def test_same_coordinator_can_start_again_after_shutdown(self) -> None:
        m = self._manager()
        self.assertTrue(m.run_application([]))
        m.shutdown()
        self.assertTrue(m._dispatcher.closed)
        self.assertTrue(m.run_application([]))
        self.assertFalse(m._dispatcher.closed)
        got = threading.Event()
        m.on_second_instance_started(lambda ctx: got.set())
        self.assertFalse(self._manager().run_application(["again"]))
        self.assertTrue(got.wait(5.0))

    def test_secondary_shutdown_is_noop_for_lock(self) -> None:
        primary = self._manager()
        self.assertTrue(primary.run_application([]))
        secondary = self._manager()
        self.assertFalse(secondary.try_become_primary())
        secondary.shutdown()
        self.assertTrue(primary.is_primary)
        third = self._manager()
        self.assertFalse(third.try_become_primary())

    def test_shutdown_removes_channel_endpoint(self) -> None:
        m = self._manager()
        self.assertTrue(m.run_application([]))
        endpoint = m.endpoint
        path = endpoint.get("path") or endpoint.get("addr_path")
        self.assertTrue(os.path.exists(path))
        m.shutdown()
        self.assertFalse(os.path.exists(path))
        self.assertEqual(m.endpoint, {})

    def test_send_without_primary_raises_connection_error(self) -> None:
        settings = self.settings.model_copy(update={"connect_timeout_seconds": 0.3})
        m = self._manager(settings=settings)
        with self.assertRaises(HandoffConnectionError):
            m.send_handoff(HandoffContext(arguments=("x",)))

    def test_lock_failure_is_fatal(self) -> None:
        m = self._manager()
        with patch(
            "instance_handoff.kernel.leader_lock._os_try_lock",
            side_effect=OSError(5, "I/O error"),
        ):
            with self.assertRaises(LockAcquisitionError):
                m.run_application([])
        self.assertIs(m.role, Role.UNSET)

    def test_context_manager_shuts_down(self) -> None:
        with create_manager(self.app_id, settings=self.settings) as m:
            self.assertTrue(m.run_application([]))
        self.assertIs(m.role, Role.UNSET)
        again = self._manager()
        self.assertTrue(again.run_application([]))

    def test_queue_dispatch_affinity(self) -> None:
        q = QueueDispatch()
        primary = self._manager(dispatch=q)
        self.assertTrue(primary.run_application([]))
        seen: list = []
        primary.on_second_instance_started(lambda ctx: seen.append((threading.get_ident(), ctx.arguments)))
        self.assertFalse(self._manager().run_application(["q"]))
        self.assertEqual(q.run_pending(timeout=5.0), 1)
        self.assertEqual(seen, [(threading.get_ident(), ("q",))])

    def test_running_loop_is_captured_as_affinity(self) -> None:
        async def main() -> tuple:
            loop = asyncio.get_running_loop()
            primary = create_manager(self.app_id, settings=self.settings)
            self.managers.append(primary)
            self.assertTrue(primary.run_application([]))
            fut = loop.create_future()
            primary.on_second_instance_started(lambda ctx: fut.set_result((threading.get_ident(), ctx.arguments)))
            secondary = create_manager(self.app_id, settings=self.settings)
            self.managers.append(secondary)
            forwarded = await loop.run_in_executor(None, secondary.run_application, ["from-loop"])
            ident, args = await asyncio.wait_for(fut, 5.0)
            return forwarded, ident, args, threading.get_ident()

        forwarded, ident, args, loop_ident = asyncio.run(main())
        self.assertFalse(forwarded)
        self.assertEqual(ident, loop_ident)
        self.assertEqual(args, ("from-loop",))

    def test_tcp_transport_end_to_end(self) -> None:
        settings = self.settings.model_copy(update={"transport": "tcp"})
        primary = self._manager(settings=settings)
        self.assertTrue(primary.run_application([]))
        self.assertEqual(primary.endpoint["transport"], "tcp")
        got: list = []
        done = threading.Event()
        primary.on_second_instance_started(lambda ctx: (got.append(ctx.arguments), done.set()))
        self.assertFalse(self._manager(settings=settings).run_application(["over", "tcp"]))
        self.assertTrue(done.wait(5.0))
        self.assertEqual(got, [("over", "tcp")])

    def test_global_scope_is_separate_from_local(self) -> None:
        local = self._manager()
        self.assertTrue(local.run_application([]))
        glob = create_manager(self.app_id, "global", settings=self.settings)
        self.managers.append(glob)
        self.assertTrue(glob.run_application([]))
        self.assertEqual(glob.identity.lock_name, f"Global\\{self.app_id}")


if __name__ == "__main__":
    unittest.main()

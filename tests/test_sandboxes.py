"""
Tests for the Django database sandbox.

Most cases replace ``django.db.connections`` with a mock: the sandbox's
contract is the sequence of calls it makes on connection wrappers and on the
handler. The integration cases run against a real sqlite file.
"""

import threading
from unittest.mock import MagicMock, patch

from django.db import connections
from django.test import SimpleTestCase

from sandbox_sessions.broker import SessionBroker
from sandbox_sessions.services import SandboxService
from sandbox_sessions.exceptions import SandboxError
from sandbox_sessions.base.sandbox import BaseSandbox
from sandbox_sessions.sandboxes import DatabaseSandbox


def make_connection(alias="default"):
    connection = MagicMock()
    connection.alias = alias
    return connection


class BaseSandboxTests(SimpleTestCase):
    def test_abstract_operations(self):
        sandbox = BaseSandbox()
        grantee = threading.current_thread()

        with self.assertRaises(NotImplementedError):
            sandbox.checkout("default")
        with self.assertRaises(NotImplementedError):
            sandbox.checkin("default", object())
        with self.assertRaises(NotImplementedError):
            sandbox.allow("default", object(), grantee)
        self.assertIsNone(sandbox.release("default", object(), grantee))


class DatabaseSandboxTestCase(SimpleTestCase):
    def setUp(self):
        patcher = patch("sandbox_sessions.sandboxes.connections")
        self.connections = patcher.start()
        self.addCleanup(patcher.stop)

        self.handle = make_connection()
        self.connections.create_connection.return_value = self.handle
        self.connections.all.return_value = []
        self.sandbox = DatabaseSandbox()


class CheckoutTests(DatabaseSandboxTestCase):
    def test_checkout_opens_transactional_connection(self):
        handle = self.sandbox.checkout("default")

        self.assertIs(handle, self.handle)
        self.connections.create_connection.assert_called_once_with("default")
        handle.inc_thread_sharing.assert_called_once_with()
        handle.ensure_connection.assert_called_once_with()
        handle.set_autocommit.assert_called_once_with(False)

    def test_non_transactional_checkout(self):
        handle = self.sandbox.checkout("default", transactional=False)
        handle.set_autocommit.assert_not_called()

    def test_unknown_option_is_rejected(self):
        with self.assertRaises(TypeError):
            self.sandbox.checkout("default", isolation="serializable")
        self.connections.create_connection.assert_not_called()

    def test_failed_connect_discards_connection(self):
        self.handle.ensure_connection.side_effect = ConnectionError("refused")

        with self.assertRaises(ConnectionError):
            self.sandbox.checkout("default")

        self.handle.close.assert_called_once_with()
        self.handle.dec_thread_sharing.assert_called_once_with()


class CheckinTests(DatabaseSandboxTestCase):
    def test_checkin_rolls_back_and_closes(self):
        self.handle.get_autocommit.return_value = False

        self.sandbox.checkin("default", self.handle)

        self.handle.rollback.assert_called_once_with()
        self.handle.close.assert_called_once_with()
        self.handle.dec_thread_sharing.assert_called_once_with()

    def test_checkin_skips_rollback_in_autocommit(self):
        self.handle.get_autocommit.return_value = True

        self.sandbox.checkin("default", self.handle)

        self.handle.rollback.assert_not_called()
        self.handle.close.assert_called_once_with()

    def test_checkin_closes_even_if_rollback_fails(self):
        self.handle.get_autocommit.return_value = False
        self.handle.rollback.side_effect = RuntimeError("connection lost")

        with self.assertRaises(RuntimeError):
            self.sandbox.checkin("default", self.handle)

        self.handle.close.assert_called_once_with()
        self.handle.dec_thread_sharing.assert_called_once_with()


class GrantTests(DatabaseSandboxTestCase):
    def test_allow_rejects_other_threads(self):
        with self.assertRaises(SandboxError):
            self.sandbox.allow("default", self.handle, threading.Thread())
        self.connections.__setitem__.assert_not_called()

    def test_allow_installs_handle_and_release_restores(self):
        previous = make_connection()
        self.connections.all.return_value = [previous]
        grantee = threading.current_thread()

        self.sandbox.allow("default", self.handle, grantee)
        self.connections.__setitem__.assert_called_once_with("default", self.handle)

        self.sandbox.release("default", self.handle, grantee)
        self.connections.__setitem__.assert_called_with("default", previous)
        self.connections.__delitem__.assert_not_called()

    def test_release_drops_override_without_previous_connection(self):
        grantee = threading.current_thread()

        self.sandbox.allow("default", self.handle, grantee)
        self.sandbox.release("default", self.handle, grantee)

        self.connections.__delitem__.assert_called_once_with("default")

    def test_allow_is_idempotent_for_installed_handle(self):
        self.connections.all.return_value = [self.handle]

        self.sandbox.allow("default", self.handle, threading.current_thread())

        self.connections.__setitem__.assert_not_called()

    def test_release_without_grant_is_a_no_op(self):
        self.sandbox.release("default", self.handle, threading.current_thread())

        self.connections.__setitem__.assert_not_called()
        self.connections.__delitem__.assert_not_called()

    def test_grants_are_tracked_per_thread(self):
        grantee = threading.current_thread()
        self.sandbox.allow("default", self.handle, grantee)

        def release_from_other_thread():
            self.sandbox.release("default", self.handle, threading.current_thread())

        other = threading.Thread(target=release_from_other_thread)
        other.start()
        other.join()

        self.connections.__delitem__.assert_not_called()


class DatabaseSandboxIntegrationTests(SimpleTestCase):
    """Runs the sandbox against the file-backed ``sandbox`` alias."""

    databases = {"sandbox"}

    def setUp(self):
        with connections["sandbox"].cursor() as cursor:
            cursor.execute("CREATE TABLE IF NOT EXISTS sandbox_item (name TEXT)")
            cursor.execute("DELETE FROM sandbox_item")

        self.broker = SessionBroker(sandbox=DatabaseSandbox())
        self.addCleanup(self.broker.shutdown)

    def count_items(self):
        with connections["sandbox"].cursor() as cursor:
            cursor.execute("SELECT COUNT(*) FROM sandbox_item")
            return cursor.fetchone()[0]

    def run_in_thread(self, target):
        outcome = {}

        def run():
            try:
                outcome["result"] = target()
            except Exception as exc:
                outcome["error"] = exc
            finally:
                connections.close_all()

        thread = threading.Thread(target=run)
        thread.start()
        thread.join(10)
        if "error" in outcome:
            raise outcome["error"]
        return outcome["result"]

    def test_grantee_writes_are_rolled_back_on_checkin(self):
        started = self.broker.create("sandbox")

        def write():
            session = self.broker.allow(started.metadata)
            try:
                with connections["sandbox"].cursor() as cursor:
                    cursor.execute("INSERT INTO sandbox_item (name) VALUES ('inside')")
                return self.count_items()
            finally:
                session.release(threading.current_thread())

        self.assertEqual(self.run_in_thread(write), 1)
        self.assertEqual(self.count_items(), 0)

        self.broker.destroy(started.ref)

        self.assertEqual(self.count_items(), 0)

    def test_grantees_share_the_session_connection(self):
        started = self.broker.create("sandbox")

        def write():
            session = self.broker.allow(started.metadata)
            try:
                with connections["sandbox"].cursor() as cursor:
                    cursor.execute("INSERT INTO sandbox_item (name) VALUES ('shared')")
            finally:
                session.release(threading.current_thread())

        def read():
            session = self.broker.allow(started.metadata)
            try:
                return self.count_items()
            finally:
                session.release(threading.current_thread())

        self.run_in_thread(write)

        self.assertEqual(self.run_in_thread(read), 1)
        self.broker.destroy(started.ref)

    def test_release_restores_thread_connection(self):
        started = self.broker.create("sandbox")

        def grant_and_release():
            own = connections["sandbox"]
            own.ensure_connection()
            session = self.broker.allow(started.metadata)
            granted = connections["sandbox"]
            session.release(threading.current_thread())
            return own, granted, connections["sandbox"]

        own, granted, restored = self.run_in_thread(grant_and_release)

        self.assertIs(granted, started.session.handles["sandbox"])
        self.assertIsNot(granted, own)
        self.assertIs(restored, own)
        self.broker.destroy(started.ref)

    def test_facade_stop_leaves_caller_with_working_connection(self):
        patcher = patch(
            "sandbox_sessions.services.get_broker", return_value=self.broker
        )
        patcher.start()
        self.addCleanup(patcher.stop)

        def use_and_stop():
            started = SandboxService.start_child("sandbox")
            SandboxService.allow(started.metadata)
            SandboxService.stop(started.ref)
            with connections["sandbox"].cursor() as cursor:
                cursor.execute("SELECT 1")
                return cursor.fetchone()[0]

        self.assertEqual(self.run_in_thread(use_and_stop), 1)

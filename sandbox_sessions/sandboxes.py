"""
Concrete sandboxes for Sandbox Sessions.

``DatabaseSandbox`` checks out a dedicated Django database connection per
alias and holds it inside an open transaction, so everything a test and the
server threads it grants write is rolled back on checkin.
"""

import logging
import threading

from django.db import connections
from django.db.backends.base.base import BaseDatabaseWrapper
from django.utils.translation import gettext_lazy as _

from sandbox_sessions.base.sandbox import BaseSandbox
from sandbox_sessions.exceptions import SandboxError

logger = logging.getLogger(__name__)


class DatabaseSandbox(BaseSandbox):
    """
    Sandbox backed by ``django.db.connections``.

    Django keeps one connection per alias per thread. Granting access swaps
    the session's connection into the grantee thread's slot and remembers
    the connection it displaced so that release can put it back.
    """

    def __init__(self):
        self._local = threading.local()

    def _displaced(self) -> dict:
        if not hasattr(self._local, "displaced"):
            self._local.displaced = {}
        return self._local.displaced

    def checkout(
        self, alias: str, transactional: bool = True, **options
    ) -> BaseDatabaseWrapper:
        if options:
            raise TypeError(
                f"Unsupported checkout options: {', '.join(sorted(options))}"
            )

        connection = connections.create_connection(alias)
        # Checkout, grants and checkin all happen on different threads.
        connection.inc_thread_sharing()
        try:
            connection.ensure_connection()
            if transactional:
                connection.set_autocommit(False)
        except Exception:
            self._discard(connection)
            raise

        logger.debug("Checked out connection for %r", alias)
        return connection

    def checkin(self, alias: str, handle: BaseDatabaseWrapper) -> None:
        try:
            if handle.connection is not None and not handle.get_autocommit():
                handle.rollback()
        finally:
            self._discard(handle)
        logger.debug("Checked in connection for %r", alias)

    def allow(
        self, alias: str, handle: BaseDatabaseWrapper, grantee: threading.Thread
    ) -> None:
        if grantee is not threading.current_thread():
            raise SandboxError(
                _("Database connections can only be granted to the calling thread.")
            )

        current = {
            connection.alias: connection
            for connection in connections.all(initialized_only=True)
        }.get(alias)
        if current is handle:
            return

        self._displaced().setdefault(alias, current)
        connections[alias] = handle

    def release(
        self, alias: str, handle: BaseDatabaseWrapper, grantee: threading.Thread
    ) -> None:
        if grantee is not threading.current_thread():
            return

        displaced = self._displaced()
        if alias not in displaced:
            return

        previous = displaced.pop(alias)
        if previous is not None:
            connections[alias] = previous
        else:
            del connections[alias]

    @staticmethod
    def _discard(connection: BaseDatabaseWrapper) -> None:
        try:
            connection.close()
        finally:
            connection.dec_thread_sharing()

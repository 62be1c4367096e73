"""
Abstract base sandbox for Sandbox Sessions.

A sandbox is the resource pool a session draws from. It hands out an
exclusive handle per alias, lets other threads borrow that handle, and takes
it back when the session ends. Sessions never share handles; borrowing is a
capability extended by the sandbox, not shared ownership.
"""

import threading

from sandbox_sessions.compat import Any


class BaseSandbox:
    """
    Core template for resource pools used by sandbox sessions.

    Subclasses must be safe to call from several threads at once: grants for
    the same handle may arrive concurrently from different request threads.
    """

    def checkout(self, alias: str, **options) -> Any:
        """Check out an exclusive handle for ``alias``."""
        raise NotImplementedError

    def checkin(self, alias: str, handle: Any) -> None:
        """Return ``handle`` to the pool, discarding any pending work."""
        raise NotImplementedError

    def allow(self, alias: str, handle: Any, grantee: threading.Thread) -> None:
        """Let ``grantee`` use ``handle`` until released."""
        raise NotImplementedError

    def release(self, alias: str, handle: Any, grantee: threading.Thread) -> None:
        """Withdraw a grant made by :meth:`allow`. No-op by default."""

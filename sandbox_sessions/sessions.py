"""
Sandbox sessions: single-owner holders of checked-out connections.

A session checks out one handle per alias when it starts and checks every
one of them back in exactly once when it stops, whatever the cause: an
explicit stop, the inactivity deadline, the owning thread dying, process
shutdown or an unexpected error in its watchdog.
"""

import time
import logging
import threading
from datetime import timedelta

from django.utils.translation import gettext_lazy as _

from sandbox_sessions.base.sandbox import BaseSandbox
from sandbox_sessions.choices import SESSION_STATE, STOP_REASON
from sandbox_sessions.exceptions import SessionStateError, SessionTimeout
from sandbox_sessions.compat import Any, Dict, Tuple, Callable, Optional

logger = logging.getLogger(__name__)


class SandboxSession:
    """
    An ephemeral unit owning the connections of one test.

    Every handle is checked out in :meth:`start` and checked in by
    :meth:`stop`. A daemon watchdog thread enforces the inactivity timeout
    and, when ``link_owner`` is set, stops the session once the owning
    thread is no longer alive.
    """

    def __init__(
        self,
        ref: str,
        repos: Tuple[str, ...],
        sandbox: BaseSandbox,
        owner: Optional[threading.Thread] = None,
        timeout: timedelta = timedelta(seconds=15),
        sliding: bool = True,
        link_owner: bool = False,
        owner_check_interval: timedelta = timedelta(seconds=1),
        checkout_options: Optional[dict] = None,
        on_terminate: Optional[Callable[["SandboxSession"], None]] = None,
    ) -> None:
        self.ref = ref
        self.repos = tuple(repos)
        self.sandbox = sandbox
        self.owner = owner
        self.timeout = timeout
        self.sliding = sliding
        self.link_owner = link_owner
        self.owner_check_interval = owner_check_interval
        self.checkout_options = checkout_options or {}
        self.on_terminate = on_terminate

        self.state = SESSION_STATE.STARTING
        self.stop_reason: Optional[str] = None
        self.checkouts = 0
        self.checkins = 0

        self._handles: Dict[str, Any] = {}
        self._grants: Dict[int, Dict[str, Any]] = {}
        self._lock = threading.RLock()
        self._stopped = threading.Event()
        self._deadline = 0.0
        self._watchdog: Optional[threading.Thread] = None

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.ref} {self.state} {self.repos}>"

    @property
    def is_active(self) -> bool:
        return self.state == SESSION_STATE.ACTIVE

    @property
    def handles(self) -> Dict[str, Any]:
        return dict(self._handles)

    def start(self) -> "SandboxSession":
        """
        Checks out a handle for every alias, in order.

        If any checkout fails, the handles already obtained are checked back
        in, the session is marked stopped and the sandbox's error propagates.
        """
        with self._lock:
            if self.state != SESSION_STATE.STARTING:
                raise SessionStateError(_("Session has already been started."))

            try:
                for alias in self.repos:
                    self._handles[alias] = self.sandbox.checkout(
                        alias, **self.checkout_options
                    )
                    self.checkouts += 1
            except Exception:
                logger.warning("Checkout failed for session %s", self.ref)
                self._checkin_all()
                self.state = SESSION_STATE.STOPPED
                self.stop_reason = STOP_REASON.ERROR
                self._stopped.set()
                raise

            self.state = SESSION_STATE.ACTIVE
            self._touch()

        self._watchdog = threading.Thread(
            target=self._watch,
            name=f"sandbox-session-{self.ref[:8]}",
            daemon=True,
        )
        self._watchdog.start()
        logger.info("Started sandbox session %s for %s", self.ref, self.repos)
        return self

    def allow(self, grantee: threading.Thread) -> None:
        """Grants ``grantee`` access to every handle held by this session."""
        with self._lock:
            if self.state != SESSION_STATE.ACTIVE:
                raise SessionStateError(_("Session is not active."))

            if self.sliding:
                self._touch()

            granted = self._grants.setdefault(grantee.ident, {})
            for alias, handle in self._handles.items():
                # Recorded first so a partially applied grant is still released.
                granted[alias] = handle
                self.sandbox.allow(alias, handle, grantee)

    def release(self, grantee: threading.Thread) -> None:
        """
        Withdraws grants previously made to ``grantee``.

        Works after the session has stopped, so a thread whose request
        outlived the session still gets its own connections back.
        """
        with self._lock:
            granted = self._grants.pop(grantee.ident, {})

        for alias, handle in granted.items():
            try:
                self.sandbox.release(alias, handle, grantee)
            except Exception:
                logger.exception("Failed to release %r of session %s", alias, self.ref)

    def stop(
        self, reason: str = STOP_REASON.STOPPED, timeout: Optional[float] = None
    ) -> bool:
        """
        Checks every handle back in and marks the session stopped.

        Returns ``False`` if the session had already stopped. Raises
        :class:`SessionTimeout` when the session lock cannot be acquired
        within ``timeout`` seconds.
        """
        acquired = self._lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            raise SessionTimeout(_("Timed out waiting to stop the session."))

        try:
            if self.state == SESSION_STATE.STOPPED:
                return False
            self._checkin_all()
            self.state = SESSION_STATE.STOPPED
            self.stop_reason = reason
            self._stopped.set()
        finally:
            self._lock.release()

        logger.info("Stopped sandbox session %s (%s)", self.ref, reason)
        if self.on_terminate is not None:
            try:
                self.on_terminate(self)
            except Exception:
                logger.exception("Termination callback failed for %s", self.ref)
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Blocks until the session has stopped; returns whether it did."""
        return self._stopped.wait(timeout)

    def _touch(self) -> None:
        self._deadline = time.monotonic() + self.timeout.total_seconds()

    def _owner_alive(self) -> bool:
        return self.owner is None or self.owner.is_alive()

    def _next_wakeup(self) -> float:
        remaining = max(self._deadline - time.monotonic(), 0.0)
        if self.link_owner and self.owner is not None:
            return min(remaining, self.owner_check_interval.total_seconds())
        return remaining

    def _watch(self) -> None:
        reason = STOP_REASON.ERROR
        try:
            while not self._stopped.wait(self._next_wakeup()):
                if self.link_owner and not self._owner_alive():
                    reason = STOP_REASON.OWNER_DOWN
                    break
                if time.monotonic() >= self._deadline:
                    reason = STOP_REASON.TIMEOUT
                    break
        except Exception:
            logger.exception("Watchdog failed for session %s", self.ref)
        finally:
            if not self._stopped.is_set():
                self.stop(reason)

    def _checkin_all(self) -> None:
        while self._handles:
            alias, handle = self._handles.popitem()
            self.checkins += 1
            try:
                self.sandbox.checkin(alias, handle)
            except Exception:
                logger.exception(
                    "Checkin of %r failed for session %s", alias, self.ref
                )

"""
Supervising registry of live sandbox sessions.

The broker creates sessions on demand, looks them up by their opaque
reference and stops them. It never holds a lock while talking to a sandbox:
the registry lock only guards the reference table, and each session
serialises its own lifecycle.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout

from django.utils.translation import gettext_lazy as _

from sandbox_sessions.choices import STOP_REASON
from sandbox_sessions.sessions import SandboxSession
from sandbox_sessions.base.sandbox import BaseSandbox
from sandbox_sessions.utils.tokens import metadata_for
from sandbox_sessions.settings import sandbox_sessions_settings
from sandbox_sessions.utils.generators import generate_session_ref
from sandbox_sessions.types import SandboxMetadata, StartedSession
from sandbox_sessions.compat import Dict, List, Self, Optional
from sandbox_sessions.exceptions import (
    SessionTimeout,
    SessionNotFound,
    SessionStateError,
    SessionLimitExceeded,
)

logger = logging.getLogger(__name__)


class SessionBroker:
    """
    Creates, tracks and stops :class:`SandboxSession` instances.

    ``sandbox`` overrides the ``SANDBOX`` setting; when omitted the setting
    is resolved on every :meth:`create`, so settings overrides in tests take
    effect immediately.
    """

    def __init__(self, sandbox: Optional[BaseSandbox] = None) -> None:
        self._sandbox = sandbox
        self._sandboxes: Dict[type, BaseSandbox] = {}
        self._sessions: Dict[str, SandboxSession] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(thread_name_prefix="sandbox-checkout")

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, ref: str) -> bool:
        with self._lock:
            return ref in self._sessions

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    def _get_sandbox(self) -> BaseSandbox:
        if self._sandbox is not None:
            return self._sandbox
        sandbox = sandbox_sessions_settings.SANDBOX
        if not isinstance(sandbox, type):
            return sandbox
        # One instance per class, so grants made through it share thread state.
        with self._lock:
            if sandbox not in self._sandboxes:
                self._sandboxes[sandbox] = sandbox()
            return self._sandboxes[sandbox]

    def create(
        self,
        repo=None,
        owner: Optional[threading.Thread] = None,
        **options,
    ) -> StartedSession:
        """
        Spawns a session holding a connection for each alias of ``repo``.

        Keyword ``options`` override the lifecycle settings for this session:
        ``timeout``, ``sliding``, ``link_owner``, ``owner_check_interval``,
        ``checkout_options``, ``call_timeout`` and ``sandbox``. Errors raised
        by the sandbox while checking out propagate unchanged.
        """
        conf = sandbox_sessions_settings
        if repo is None:
            repo = conf.REPO
        if not isinstance(repo, str):
            repo = tuple(repo)
        repos = (repo,) if isinstance(repo, str) else repo
        if not repos:
            raise ValueError("At least one database alias is required.")

        sandbox = options.pop("sandbox", None) or self._get_sandbox()
        call_timeout = options.pop("call_timeout", conf.CALL_TIMEOUT)

        session = SandboxSession(
            ref=generate_session_ref(),
            repos=repos,
            sandbox=sandbox,
            owner=owner or threading.current_thread(),
            timeout=options.pop("timeout", conf.TIMEOUT),
            sliding=options.pop("sliding", conf.SLIDING_TIMEOUT),
            link_owner=options.pop("link_owner", conf.LINK_OWNER),
            owner_check_interval=options.pop(
                "owner_check_interval", conf.OWNER_CHECK_INTERVAL
            ),
            checkout_options=options.pop("checkout_options", conf.CHECKOUT_OPTIONS),
            on_terminate=self._forget,
        )
        if options:
            raise TypeError(f"Unexpected options: {', '.join(sorted(options))}")

        self._register(session)
        try:
            self._start(session, call_timeout.total_seconds())
        except BaseException:
            self._forget(session)
            raise

        return StartedSession(
            session.ref, metadata_for(repo, session.ref), session
        )

    def _register(self, session: SandboxSession) -> None:
        max_sessions = sandbox_sessions_settings.MAX_SESSIONS
        with self._lock:
            if max_sessions is not None and len(self._sessions) >= max_sessions:
                raise SessionLimitExceeded(
                    _(f"At most {max_sessions} sandbox sessions may be live.")
                )
            self._sessions[session.ref] = session

    def _start(self, session: SandboxSession, timeout: float) -> None:
        future = self._executor.submit(session.start)
        try:
            future.result(timeout=timeout)
        except FutureTimeout:
            # The checkout may still succeed; make sure it is returned.
            future.add_done_callback(lambda _future: session.stop(STOP_REASON.ERROR))
            raise SessionTimeout(_("Timed out checking out sandbox connections."))

    def _forget(self, session: SandboxSession) -> None:
        with self._lock:
            if self._sessions.get(session.ref) is session:
                del self._sessions[session.ref]

    def get(self, ref: str) -> SandboxSession:
        with self._lock:
            try:
                return self._sessions[ref]
            except KeyError:
                raise SessionNotFound(_("No sandbox session for this reference."))

    def destroy(self, ref: str, timeout: Optional[float] = None) -> None:
        """
        Synchronously stops the session named by ``ref``.

        Raises :class:`SessionNotFound` for stale or unknown references and
        :class:`SessionTimeout` when the session cannot be stopped in time.
        """
        session = self.get(ref)
        if timeout is None:
            timeout = sandbox_sessions_settings.CALL_TIMEOUT.total_seconds()
        if not session.stop(STOP_REASON.STOPPED, timeout=timeout):
            raise SessionNotFound(_("Sandbox session has already stopped."))

    def allow(
        self, metadata: SandboxMetadata, grantee: Optional[threading.Thread] = None
    ) -> SandboxSession:
        """
        Grants ``grantee`` (the calling thread by default) access to the
        connections of the session named in ``metadata``.
        """
        session = self.get(metadata.owner)
        try:
            session.allow(grantee or threading.current_thread())
        except SessionStateError:
            raise SessionNotFound(_("Sandbox session is no longer active."))
        return session

    def active(self) -> List[SandboxSession]:
        with self._lock:
            return [session for session in self._sessions.values() if session.is_active]

    def shutdown(self) -> None:
        """Stops every live session. Used at interpreter exit."""
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            session.stop(STOP_REASON.SHUTDOWN)
        self._executor.shutdown(wait=False)


_default_broker: Optional[SessionBroker] = None
_default_broker_lock = threading.Lock()


def get_broker() -> SessionBroker:
    """Returns the process-wide broker used by the middleware."""
    global _default_broker
    with _default_broker_lock:
        if _default_broker is None:
            _default_broker = SessionBroker()
        return _default_broker


def shutdown_broker() -> None:
    """Stops the sessions of the default broker, if one was ever created."""
    with _default_broker_lock:
        broker = _default_broker
    if broker is not None:
        broker.shutdown()

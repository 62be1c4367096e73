"""
Orchestration layer for sandbox sessions.
"""

import threading

from sandbox_sessions.broker import get_broker
from sandbox_sessions.compat import Optional
from sandbox_sessions.sessions import SandboxSession
from sandbox_sessions.types import SandboxMetadata, StartedSession
from sandbox_sessions.utils.tokens import (
    metadata_for,
    decode_metadata,
    encode_metadata,
)


class SandboxService:
    """
    Unified interface for starting and stopping sandbox sessions from tests.

    Example::

        started = SandboxService.start_child("default")
        driver.execute_cdp_cmd(
            "Network.setUserAgentOverride",
            {"userAgent": f"Mozilla/5.0/{encode_metadata(started.metadata)}"},
        )
        ...
        SandboxService.stop(started.ref)
    """

    @staticmethod
    def start_child(
        repo=None, owner: Optional[threading.Thread] = None, **options
    ) -> StartedSession:
        """Spawns a session that checks out a connection for a remote client."""
        return get_broker().create(repo, owner=owner, **options)

    @staticmethod
    def stop(ref: str) -> None:
        """
        Stops the session holding connections for a remote client.

        Any grant the calling thread holds on the session is withdrawn first,
        so the caller gets its own connections back.
        """
        broker = get_broker()
        broker.get(ref).release(threading.current_thread())
        broker.destroy(ref)

    @staticmethod
    def metadata_for(repo, ref: str) -> SandboxMetadata:
        return metadata_for(repo, ref)

    @staticmethod
    def allow(metadata: SandboxMetadata) -> SandboxSession:
        """
        Grants the calling thread access to the session's connections.

        Pair with :meth:`release` (or :meth:`stop`) on the same thread.
        """
        return get_broker().allow(metadata)

    @staticmethod
    def release(metadata: SandboxMetadata) -> None:
        """
        Withdraws the calling thread's grant on the session's connections.

        Raises :class:`SessionNotFound` once the broker has forgotten the
        session; release through the session returned by :meth:`allow` when
        it may already have stopped.
        """
        get_broker().get(metadata.owner).release(threading.current_thread())


__all__ = [
    "SandboxService",
    "metadata_for",
    "encode_metadata",
    "decode_metadata",
]

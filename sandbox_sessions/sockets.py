"""
Sandbox access for long-lived socket connections.

Websocket consumers never pass through the middleware, so they read the
token from the handshake headers kept in the ASGI scope instead::

    class LiveConsumer(WebsocketConsumer):
        def connect(self):
            allow_sandbox_access(self.scope)
            self.accept()

        def disconnect(self, code):
            release_sandbox_access(self.scope)

Grants go to the calling thread, which makes this suitable for synchronous
consumers whose handlers run on one thread.
"""

import logging
import threading

from sandbox_sessions.broker import get_broker
from sandbox_sessions.compat import Optional
from sandbox_sessions.types import SandboxMetadata
from sandbox_sessions.utils.tokens import decode_metadata
from sandbox_sessions.exceptions import SessionNotFound

logger = logging.getLogger(__name__)

METADATA_SCOPE_KEY = "sandbox_metadata"
SESSION_SCOPE_KEY = "sandbox_session"


def get_header(scope: dict, header: str) -> Optional[bytes]:
    name = header.lower().encode("latin-1")
    for key, value in scope.get("headers", ()):
        if key.lower() == name:
            return value
    return None


def allow_sandbox_access(
    scope: dict, header: str = "user-agent"
) -> Optional[SandboxMetadata]:
    """
    Grants the calling thread access to the session named in ``scope``.

    The decoded metadata is memoised under ``scope["sandbox_metadata"]`` so
    repeated calls for one connection decode the header only once.
    """
    if METADATA_SCOPE_KEY not in scope:
        scope[METADATA_SCOPE_KEY] = decode_metadata(get_header(scope, header))

    metadata = scope[METADATA_SCOPE_KEY]
    if metadata is None:
        return None

    try:
        scope[SESSION_SCOPE_KEY] = get_broker().allow(
            metadata, threading.current_thread()
        )
    except SessionNotFound:
        logger.debug("Ignoring socket token for unknown session %s", metadata.owner)
    return metadata


def release_sandbox_access(scope: dict) -> None:
    """Withdraws the grant made by :func:`allow_sandbox_access`."""
    session = scope.pop(SESSION_SCOPE_KEY, None)
    if session is not None:
        session.release(threading.current_thread())

"""
Django middleware for concurrent, transactional acceptance tests.

Add it first in ``MIDDLEWARE`` for test runs only::

    if SANDBOX_ENABLED:
        MIDDLEWARE = ["sandbox_sessions.middleware.SandboxMiddleware", *MIDDLEWARE]

Requests carrying a token in the configured header (``user-agent`` by
default) run against the connections of the session the token names. With
``SANDBOX_SESSIONS["PATH"]`` set, external clients can also POST to that path
to start a session and DELETE it (sending the token back in the header) to
stop one.
"""

import logging
import threading

from django.http import HttpResponse

from sandbox_sessions.broker import get_broker
from sandbox_sessions.compat import Tuple, Optional
from sandbox_sessions.sessions import SandboxSession
from sandbox_sessions.types import SandboxMetadata
from sandbox_sessions.settings import sandbox_sessions_settings
from sandbox_sessions.exceptions import SessionNotFound, SessionStateError
from sandbox_sessions.utils.tokens import decode_metadata, encode_metadata

logger = logging.getLogger(__name__)


def split_path(path: Optional[str]) -> Optional[Tuple[str, ...]]:
    if path is None:
        return None
    return tuple(segment for segment in path.split("/") if segment)


class SandboxMiddleware:
    """
    Routes sandbox create/destroy requests and grants token holders access
    to the session's connections for the duration of their request.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        mount = split_path(sandbox_sessions_settings.PATH)

        if mount is not None and split_path(request.path_info) == mount:
            if request.method == "POST":
                return self.create_session(request)
            if request.method == "DELETE":
                return self.destroy_session(request)

        metadata = self.extract_metadata(request)
        request.sandbox_metadata = metadata
        if metadata is None:
            return self.get_response(request)

        session = self.allow_sandbox_access(metadata)
        try:
            return self.get_response(request)
        finally:
            # Request threads are pooled; the grant must not leak into the next request.
            if session is not None:
                session.release(threading.current_thread())

    def extract_metadata(self, request) -> Optional[SandboxMetadata]:
        return decode_metadata(request.headers.get(sandbox_sessions_settings.HEADER))

    def create_session(self, request) -> HttpResponse:
        started = get_broker().create()
        return HttpResponse(
            encode_metadata(started.metadata), content_type="text/plain", status=200
        )

    def destroy_session(self, request) -> HttpResponse:
        metadata = self.extract_metadata(request)
        if metadata is None:
            return HttpResponse(status=410)

        try:
            get_broker().destroy(metadata.owner)
        except SessionNotFound:
            return HttpResponse(status=410)

        return HttpResponse("", content_type="text/plain", status=200)

    def allow_sandbox_access(
        self, metadata: SandboxMetadata
    ) -> Optional[SandboxSession]:
        try:
            session = get_broker().get(metadata.owner)
        except SessionNotFound:
            logger.debug("Ignoring token for unknown session %s", metadata.owner)
            return None

        grantee = threading.current_thread()
        try:
            session.allow(grantee)
        except SessionStateError:
            logger.debug("Ignoring token for stopped session %s", metadata.owner)
        except Exception:
            if sandbox_sessions_settings.RAISE_ON_GRANT_ERROR:
                session.release(grantee)
                raise
            logger.exception("Failed to grant sandbox session %s", metadata.owner)
        return session

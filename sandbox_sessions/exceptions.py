"""
Exception hierarchy for sandbox sessions.

Failures raised by the sandbox itself (e.g. a database that refuses a new
connection) are never wrapped; they reach the caller unchanged.
"""


class SandboxError(Exception):
    """Base class for errors raised by this library."""


class SessionNotFound(SandboxError):
    """The reference does not name a live session."""


class SessionTimeout(SandboxError):
    """A create or stop call did not complete within its bounded wait."""


class SessionLimitExceeded(SandboxError):
    """The configured MAX_SESSIONS cap has been reached."""


class SessionStateError(SandboxError):
    """The operation is not valid in the session's current state."""


class InvalidMetadata(SandboxError):
    """A token payload could not be decoded. Never escapes the codec."""

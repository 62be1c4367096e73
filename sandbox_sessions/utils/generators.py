"""Utility functions for generating session identifiers.

References are handed out to remote clients inside tokens, so they must not
be guessable: they are drawn from the secrets module rather than derived from
thread identities or counters.
"""

import secrets


def generate_session_ref() -> str:
    """Generates an opaque, URL-safe reference for a new sandbox session."""
    return secrets.token_urlsafe(24)

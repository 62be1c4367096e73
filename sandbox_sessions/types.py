"""
Data structures for sandbox session metadata.

This module defines the containers that carry a session's identity across
library layers: the metadata embedded in transport tokens and the result of
starting a new session.
"""

from sandbox_sessions.compat import Tuple, Union, NamedTuple, TYPE_CHECKING

if TYPE_CHECKING:
    from sandbox_sessions.sessions import SandboxSession


class _SandboxMetadata(NamedTuple):
    repo: Union[str, Tuple[str, ...]]
    owner: str


class SandboxMetadata(_SandboxMetadata):
    """
    Identity of a sandbox session as carried by a token.

    ``repo`` is either a single database alias or a tuple of aliases, in the
    order they were checked out; any other iterable is stored as a tuple.
    ``owner`` is the registry-issued reference of the session holding the
    checked-out connections.
    """

    __slots__ = ()

    def __new__(cls, repo, owner: str):
        if not isinstance(repo, str):
            repo = tuple(repo)
        return super().__new__(cls, repo, owner)

    @property
    def repos(self) -> Tuple[str, ...]:
        if isinstance(self.repo, str):
            return (self.repo,)
        return self.repo


class StartedSession(NamedTuple):
    """
    Container returned when the broker spawns a session.

    Bundles the opaque reference, the metadata to hand to remote clients and
    the live session object for callers that need direct access.
    """

    ref: str
    metadata: SandboxMetadata
    session: "SandboxSession"

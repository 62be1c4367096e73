"""
Transport encoding for sandbox session metadata.

Tokens look like ``BeamMetadata (<payload>)`` where the payload is the
URL-safe, unpadded base64 of a compact JSON ``[version, metadata]`` pair. The
wrapper lets a token ride inside larger header values, typically appended to
a browser's user agent, and still be found again.
"""

import re
import json
import base64
import binascii

from django.core.exceptions import ValidationError

from sandbox_sessions.compat import Any, Optional
from sandbox_sessions.types import SandboxMetadata
from sandbox_sessions.exceptions import InvalidMetadata
from sandbox_sessions.validators import validate_metadata


METADATA_MARKER = "BeamMetadata"
METADATA_VERSION = "v1"

_TOKEN_RE = re.compile(rf"{METADATA_MARKER} \((.*?)\)")


def metadata_for(repo, owner: str) -> SandboxMetadata:
    """
    Returns the metadata that lets another thread reach the connections
    checked out by the session ``owner``.
    """
    return SandboxMetadata(repo=repo, owner=owner)


def encode_metadata(metadata: SandboxMetadata) -> str:
    """Encodes metadata for a client response or request header."""
    repo = metadata.repo if isinstance(metadata.repo, str) else list(metadata.repo)
    payload = json.dumps(
        [METADATA_VERSION, {"repo": repo, "owner": metadata.owner}],
        separators=(",", ":"),
    )
    encoded = base64.urlsafe_b64encode(payload.encode("utf-8")).rstrip(b"=")
    return f"{METADATA_MARKER} ({encoded.decode('ascii')})"


def decode_metadata(value: Any) -> Optional[SandboxMetadata]:
    """
    Decodes a header value back into metadata.

    The token may be embedded in a longer string; only the text after the
    last ``/`` is searched. Returns ``None`` for anything that is not a
    well-formed token of the current version.
    """
    if isinstance(value, bytes):
        value = value.decode("latin-1")
    if not isinstance(value, str):
        return None

    last_part = value.split("/")[-1]
    match = _TOKEN_RE.search(last_part)
    if match is None:
        return None

    try:
        return _parse_metadata(match.group(1))
    except InvalidMetadata:
        return None


def _parse_metadata(encoded: str) -> SandboxMetadata:
    # Tolerate padded payloads from older clients.
    padded = encoded.rstrip("=") + "=" * (-len(encoded.rstrip("=")) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        version, data = json.loads(raw.decode("utf-8"))
    except (
        binascii.Error,
        UnicodeError,
        ValueError,
        TypeError,
        RecursionError,
    ) as exc:
        raise InvalidMetadata("Malformed metadata payload.") from exc

    if version != METADATA_VERSION:
        raise InvalidMetadata(f"Unsupported metadata version: {version!r}.")

    try:
        validate_metadata(data)
    except ValidationError as exc:
        raise InvalidMetadata("Invalid metadata structure.") from exc

    return metadata_for(data["repo"], data["owner"])

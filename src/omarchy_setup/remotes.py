"""
Parsing of git remote URLs into comparable repository identities.
"""

import re
from typing import NamedTuple, Optional

DEFAULT_HOST = "github.com"

# https://host/owner/name, ssh://git@host:22/owner/name, git+ssh://...
_URL_RE = re.compile(
    r"^(?P<scheme>[a-z][a-z0-9+.-]*)://(?:[^@/]+@)?(?P<host>[^/:]+)(?::\d+)?/(?P<path>.+)$",
    re.IGNORECASE,
)
# git@host:owner/name
_SCP_RE = re.compile(r"^(?:[^@/]+@)?(?P<host>[^:/]+):(?P<path>[^/].*)$")


class RemoteRef(NamedTuple):
    """A repository identity, normalized for comparison."""

    host: str
    owner: str
    name: str

    @classmethod
    def from_identifier(cls, identifier: str, host: str = DEFAULT_HOST) -> "RemoteRef":
        """
        Build a reference from an ``owner/name`` identifier.

        Raises:
            ValueError: If the identifier is not exactly two non-empty parts
        """
        ref = _from_path(host, identifier)
        if ref is None:
            raise ValueError(f"Invalid repository identifier: {identifier!r}")
        return ref


def _from_path(host: str, path: str) -> Optional[RemoteRef]:
    path = path.strip().strip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    parts = path.split("/")
    if len(parts) != 2 or not all(parts):
        return None
    # GitHub treats hosts, owners and names case-insensitively
    return RemoteRef(host.lower(), parts[0].lower(), parts[1].lower())


def parse_remote_url(url: str) -> Optional[RemoteRef]:
    """
    Parse a git remote URL.

    Handles formats:
    - https://github.com/user/repo(.git)
    - ssh://git@github.com[:port]/user/repo(.git)
    - git@github.com:user/repo(.git)

    Returns:
        RemoteRef, or None for local paths, file:// URLs and anything unrecognized
    """
    url = url.strip()
    if not url:
        return None

    match = _URL_RE.match(url)
    if match:
        if match.group("scheme").lower() == "file":
            return None
        return _from_path(match.group("host"), match.group("path"))

    match = _SCP_RE.match(url)
    if match:
        return _from_path(match.group("host"), match.group("path"))

    return None


def matches_remote(url: str, expected: str, host: str = DEFAULT_HOST) -> bool:
    """Return True if ``url`` points at the ``owner/name`` repository ``expected``."""
    actual = parse_remote_url(url)
    return actual is not None and actual == RemoteRef.from_identifier(expected, host)

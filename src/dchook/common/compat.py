"""Version compatibility between webhook senders and the listener."""

from __future__ import annotations

import re
from typing import Optional

DEV_VERSION = "dev"

_INTEGER_RE = re.compile(r"[+-]?[0-9]+")


def _parse_segment(value: str) -> Optional[int]:
    if not _INTEGER_RE.fullmatch(value):
        return None
    return int(value)


def _major_minor(version: str) -> Optional[tuple[int, int]]:
    segments = version.removeprefix("v").split(".")
    if len(segments) < 2:
        return None
    major = _parse_segment(segments[0])
    minor = _parse_segment(segments[1])
    if major is None or minor is None:
        return None
    return major, minor


def is_version_compatible(
    client_version: str,
    server_version: str,
    client_commit: str,
    server_commit: str,
) -> bool:
    """
    Decide whether a sender built at ``client_version`` may trigger this listener.

    ``dev`` on either side always passes. Otherwise major.minor must match, and
    when the raw version strings are identical the commits must match as well.
    ``"1.0.0"`` and ``"v1.0.0"`` are not identical, so the commit check is
    skipped for that pair.
    """
    if client_version == DEV_VERSION or server_version == DEV_VERSION:
        return True

    client = _major_minor(client_version)
    server = _major_minor(server_version)
    if client is None or server is None:
        return False

    if client != server:
        return False

    if client_version == server_version and client_commit != server_commit:
        return False

    return True

"""Blob key construction for stored artifacts.

Keys look like ``{scope}/{YYYYmmddHHMMSS}_{id}.{ext}``. The scope is the
sanitized session id, or ``no-session`` when there is none.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

NO_SESSION = "no-session"
KEY_TIME_FORMAT = "%Y%m%d%H%M%S"

ACTIVITY_EXT = "aje"
RELATION_EXT = "ire"
FLOW_EXT = "e"

_DISALLOWED = re.compile(r'[\\?&:*"<>|]')
_KEY_RE = re.compile(r"^(?P<scope>[^/]+)/(?P<stamp>\d{14})_(?P<id>.+)\.(?P<ext>[A-Za-z]+)$")


def sanitize_segment(value: str | None) -> str:
    """Replace characters that are unsafe in a key segment with ``_``."""
    if not value:
        return NO_SESSION
    return _DISALLOWED.sub("_", value)


def artifact_key(scope: str | None, timestamp: datetime, artifact_id: str, ext: str) -> str:
    """Build the blob key for one artifact."""
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc)
    return f"{sanitize_segment(scope)}/{timestamp.strftime(KEY_TIME_FORMAT)}_{artifact_id}.{ext}"


def parse_key(key: str) -> tuple[str, datetime, str, str] | None:
    """Split a key into (scope, timestamp, id, ext), or None if it is not an artifact key."""
    match = _KEY_RE.match(key)
    if match is None:
        return None
    stamp = datetime.strptime(match.group("stamp"), KEY_TIME_FORMAT).replace(tzinfo=timezone.utc)
    return match.group("scope"), stamp, match.group("id"), match.group("ext")


def id_from_key(key: str) -> str | None:
    parsed = parse_key(key)
    return parsed[2] if parsed else None

"""Utility helpers for the IPC bridge."""

from __future__ import annotations

import re
import secrets
import string
import time
from datetime import datetime, timezone

_TOKEN_ALPHABET = string.ascii_lowercase + string.digits
_GROUP_FOLDER_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
_CATEGORY_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")


def now_ms() -> int:
    """Return the wall-clock time as integer milliseconds since the epoch."""
    return time.time_ns() // 1_000_000


def iso_now() -> str:
    """Return the current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def random_token(length: int = 6) -> str:
    """Return a short lowercase alphanumeric token for filename uniqueness."""
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(length))


def new_request_id() -> str:
    return secrets.token_hex(8)


def validate_group_folder(folder: str) -> bool:
    """Validate that a group folder is lowercase words joined by single hyphens.

    Folder names end up as directory names on the controller host, so only
    ASCII lowercase letters, digits and inner hyphens are accepted
    (e.g. ``family-chat``).
    """
    candidate = (folder or "").strip()
    if not candidate or len(candidate) > 64:
        return False
    return _GROUP_FOLDER_RE.fullmatch(candidate) is not None


def validate_category(category: str) -> bool:
    """Validate a request category (subdirectory name under the IPC root)."""
    return _CATEGORY_RE.fullmatch(category or "") is not None

"""Response filename convention shared by waiters and the controller.

Every response file is named ``<prefix>_<creationEpochMs>.json``. A waiter
selects candidates by prefix and discards files created before its request
was issued (minus a small clock-skew buffer). This is a heuristic: two
requests of the same category issued close together may each pick up the
other's answer. ``reply_prefix`` narrows the prefix to a single request
when request-id correlation is enabled.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final

_PREFIX_RE: Final = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
RESPONSE_SUFFIX: Final[str] = ".json"


def validate_prefix(prefix: str) -> str:
    """Return ``prefix`` unchanged or raise ``ValueError`` when it is unusable in a filename."""
    if not prefix or _PREFIX_RE.fullmatch(prefix) is None:
        raise ValueError(
            f"Invalid response prefix {prefix!r}: use letters, digits, '.', '_' or '-' and start with a letter or digit."
        )
    return prefix


@dataclass(frozen=True, slots=True)
class ResponsePattern:
    """Matches response filenames for one category prefix."""

    prefix: str
    regex: re.Pattern[str]

    @classmethod
    def for_prefix(cls, prefix: str) -> ResponsePattern:
        validate_prefix(prefix)
        return cls(prefix=prefix, regex=re.compile(rf"^{re.escape(prefix)}_(\d+){re.escape(RESPONSE_SUFFIX)}$"))

    def matches(self, filename: str) -> bool:
        return self.regex.fullmatch(filename) is not None

    def timestamp_of(self, filename: str) -> int | None:
        """Return the embedded creation timestamp, or None when the name is not a candidate."""
        match = self.regex.fullmatch(filename)
        if match is None:
            return None
        return int(match.group(1))


def is_fresh(embedded_ms: int, issued_at_ms: int, skew_ms: int) -> bool:
    """A response is fresh when it was created no earlier than the issue time minus the skew buffer."""
    return embedded_ms >= issued_at_ms - skew_ms


def response_filename(prefix: str, created_ms: int) -> str:
    validate_prefix(prefix)
    if created_ms < 0:
        raise ValueError(f"created_ms must be non-negative, got {created_ms}")
    return f"{prefix}_{created_ms}{RESPONSE_SUFFIX}"


def reply_prefix(prefix: str, request_id: str) -> str:
    """Prefix that ties a response to exactly one request (``<prefix>.<request_id>``)."""
    return validate_prefix(f"{validate_prefix(prefix)}.{request_id}")


_ANY_RESPONSE_RE: Final = re.compile(rf"_(\d+){re.escape(RESPONSE_SUFFIX)}$")


def embedded_timestamp(filename: str) -> int | None:
    """Timestamp of any response file regardless of prefix (used by cleanup sweeps)."""
    match = _ANY_RESPONSE_RE.search(filename)
    if match is None:
        return None
    return int(match.group(1))

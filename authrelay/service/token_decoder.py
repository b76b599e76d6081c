"""Pure decoding of a bearer token's expiry claim.

The client side cannot verify signatures (it never holds the signing key), so
this only reads the ``exp`` claim out of the JWT payload segment. Anything that
cannot be read is reported as ``Malformed`` and treated as already expired.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union


@dataclass(frozen=True)
class Ok:
    expires_at: datetime


@dataclass(frozen=True)
class Malformed:
    reason: str


ExpiryResult = Union[Ok, Malformed]


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def decode_expiry(token: Optional[str]) -> ExpiryResult:
    """Return ``Ok(expires_at)`` for a well-formed JWT, otherwise ``Malformed``.

    Never raises.
    """
    if not token or not isinstance(token, str):
        return Malformed("empty token")
    parts = token.split(".")
    if len(parts) != 3 or not parts[1]:
        return Malformed("token is not a three-segment JWT")
    try:
        payload = json.loads(_decode_segment(parts[1]))
    except (binascii.Error, ValueError, UnicodeDecodeError):
        return Malformed("payload segment is not base64url JSON")
    if not isinstance(payload, dict):
        return Malformed("payload is not an object")
    exp = payload.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return Malformed("missing or non-numeric exp claim")
    try:
        expires_at = datetime.fromtimestamp(float(exp), tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return Malformed("exp claim out of range")
    return Ok(expires_at)


def is_expired(
    result: ExpiryResult,
    *,
    now: Optional[datetime] = None,
    leeway: timedelta = timedelta(0),
) -> bool:
    """Fail-closed expiry check: ``Malformed`` always counts as expired."""
    if isinstance(result, Malformed):
        return True
    current = now or datetime.now(timezone.utc)
    return result.expires_at - leeway <= current

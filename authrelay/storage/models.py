from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ``expires_at`` value from a backend payload.

    Accepts ISO-8601 strings (``Z`` suffix allowed), epoch seconds and
    datetimes. Naive values are taken as UTC. Returns None when unparsable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class TokenPair:
    """Access/refresh credentials plus the access token's expiry.

    The opaque (same-origin) store never sees raw values, so both tokens may be
    None while ``expires_at`` is still known.
    """

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def has_raw_tokens(self) -> bool:
        return bool(self.access_token and self.refresh_token)

    def seconds_until_expiry(self, now: Optional[datetime] = None) -> Optional[float]:
        if self.expires_at is None:
            return None
        return (self.expires_at - (now or utcnow())).total_seconds()

    def with_expiry(self, expires_at: Optional[datetime]) -> "TokenPair":
        return replace(self, expires_at=expires_at)


@dataclass
class UserProfile:
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    tenant_id: Optional[str] = None
    role: str = "user"
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> Optional["UserProfile"]:
        if not isinstance(payload, dict):
            return None
        user_id = payload.get("id") or payload.get("user_id")
        if user_id is None:
            return None
        return cls(
            id=str(user_id),
            email=str(payload.get("email") or ""),
            first_name=payload.get("first_name"),
            last_name=payload.get("last_name"),
            tenant_id=payload.get("tenant_id"),
            role=payload.get("role") or "user",
            raw=dict(payload),
        )


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    # Internal: a refresh is in flight. Not surfaced as its own user-facing state.
    REFRESHING = "refreshing"


@dataclass
class Session:
    tokens: TokenPair
    user: Optional[UserProfile] = None
    created_at: datetime = field(default_factory=utcnow)
    refreshed_at: Optional[datetime] = None


class RefreshOutcome(str, Enum):
    REFRESHED = "refreshed"
    # Refresh credential rejected (401) or the new token is unusable
    IRRECOVERABLE = "irrecoverable"
    # Timeout, transport failure or non-401 error; existing tokens untouched
    RECOVERABLE = "recoverable"
    # Session was logged out or replaced while the refresh was in flight
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class RefreshResult:
    outcome: RefreshOutcome
    tokens: Optional[TokenPair] = None
    status_code: Optional[int] = None
    # Store the cycle ran against; joiners with a different store adopt the result
    source: Any = field(default=None, compare=False, repr=False)

    @property
    def ok(self) -> bool:
        return self.outcome == RefreshOutcome.REFRESHED


@dataclass(frozen=True)
class LoginResult:
    user: Optional[UserProfile]
    destination: str
    expires_at: Optional[datetime]
    is_new_company: bool = False


@dataclass(frozen=True)
class ApiResult:
    """Outcome of a JSON call that never raises for HTTP or network failures."""

    ok: bool
    status_code: int
    data: Any = None
    error: Optional[Dict[str, Any]] = None

from __future__ import annotations

from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from authrelay.service.token_decoder import ExpiryResult, Malformed, Ok, decode_expiry
from authrelay.storage.models import TokenPair, parse_timestamp, utcnow


def unwrap(payload: Any) -> Dict[str, Any]:
    """Return the body of a response, accepting both bare and enveloped shapes.

    Enveloped bodies look like ``{"status": "ok", "data": {...}}``.
    """
    if not isinstance(payload, dict):
        return {}
    data = payload.get("data")
    if "status" in payload and isinstance(data, dict):
        return data
    return payload


def error_details(payload: Any) -> Dict[str, Any]:
    """Normalize the error part of a failed response body."""
    if not isinstance(payload, dict):
        return {}
    error = payload.get("error")
    if isinstance(error, dict):
        return error
    details: Dict[str, Any] = {}
    if isinstance(error, str):
        details["code"] = error
    message = payload.get("message") or payload.get("detail")
    if isinstance(message, str):
        details["message"] = message
    return details


def error_message(payload: Any, default: str) -> str:
    message = error_details(payload).get("message")
    return message if isinstance(message, str) and message else default


def build_token_pair(
    body: Dict[str, Any],
    *,
    require_raw: bool,
    default_ttl_seconds: int,
    decoder: Callable[[Optional[str]], ExpiryResult] = decode_expiry,
) -> Optional[TokenPair]:
    """Build a TokenPair from a login/refresh payload.

    Returns None when the payload cannot describe a usable session: raw tokens
    are missing where they are required, or no expiry is reported and the
    access token cannot be decoded.
    """
    access = body.get("access_token")
    refresh = body.get("refresh_token")
    access = access if isinstance(access, str) and access else None
    refresh = refresh if isinstance(refresh, str) and refresh else None
    if require_raw and (not access or not refresh):
        return None

    expires_at = parse_timestamp(body.get("expires_at"))
    if expires_at is None and access:
        decoded = decoder(access)
        if isinstance(decoded, Malformed):
            return None
        if isinstance(decoded, Ok):
            expires_at = decoded.expires_at
    if expires_at is None:
        expires_at = utcnow() + timedelta(seconds=default_ttl_seconds)
    return TokenPair(access_token=access, refresh_token=refresh, expires_at=expires_at)

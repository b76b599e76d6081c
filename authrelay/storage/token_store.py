from __future__ import annotations

import hashlib
import uuid
from dataclasses import replace
from typing import Any, Callable, List, Mapping, Optional, Protocol, Tuple

import httpx

from authrelay.config import CookiePolicy
from authrelay.service.token_decoder import ExpiryResult, Ok, decode_expiry
from authrelay.storage.models import TokenPair


class TokenStore(Protocol):
    """Where the current credentials live for one session context."""

    holds_raw_tokens: bool

    def read(self) -> Optional[TokenPair]: ...

    def write(self, pair: TokenPair, policy: Optional[CookiePolicy] = None) -> None: ...

    def clear(self) -> None: ...

    def apply_credentials(self, headers: httpx.Headers) -> None: ...

    def has_refresh_credential(self) -> bool: ...

    def refresh_payload(self) -> Optional[dict]: ...

    def session_key(self) -> str: ...


class CookieSink(Protocol):
    """The subset of a Starlette ``Response`` the cookie store writes to."""

    def set_cookie(self, key: str, value: str = "", **kwargs: Any) -> None: ...

    def delete_cookie(self, key: str, **kwargs: Any) -> None: ...


def _hash_key(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


class _RawTokenStore:
    """Shared behaviour for stores that hold the raw token values."""

    holds_raw_tokens = True

    def __init__(self) -> None:
        self._fallback_key = f"ctx:{uuid.uuid4()}"

    def read(self) -> Optional[TokenPair]:  # pragma: no cover - abstract
        raise NotImplementedError

    def apply_credentials(self, headers: httpx.Headers) -> None:
        pair = self.read()
        if pair and pair.access_token:
            headers["Authorization"] = f"Bearer {pair.access_token}"

    def has_refresh_credential(self) -> bool:
        pair = self.read()
        return bool(pair and pair.refresh_token)

    def refresh_payload(self) -> Optional[dict]:
        pair = self.read()
        if not pair or not pair.refresh_token:
            return None
        return {"refresh_token": pair.refresh_token}

    def session_key(self) -> str:
        pair = self.read()
        if pair and pair.refresh_token:
            return f"rt:{_hash_key(pair.refresh_token)}"
        return self._fallback_key


class MemoryTokenStore(_RawTokenStore):
    """In-process store for long-lived service clients and tests."""

    def __init__(self, pair: Optional[TokenPair] = None) -> None:
        super().__init__()
        self._pair = replace(pair) if pair else None

    def read(self) -> Optional[TokenPair]:
        return replace(self._pair) if self._pair else None

    def write(self, pair: TokenPair, policy: Optional[CookiePolicy] = None) -> None:
        self._pair = replace(pair)

    def clear(self) -> None:
        self._pair = None


class CookieTokenStore(_RawTokenStore):
    """Server variant bound to one request/response cycle.

    Reads come from the incoming request's cookies. Writes are mirrored into an
    in-request overlay, so the rest of the request sees the new pair, and are
    emitted as ``Set-Cookie`` headers on the bound response. Operations issued
    before a response is bound are replayed by ``bind_response``.
    """

    def __init__(
        self,
        cookies: Mapping[str, str],
        response: Optional[CookieSink] = None,
        *,
        policy: CookiePolicy,
        access_cookie: str = "auth_token",
        refresh_cookie: str = "refresh_token",
        forward_refresh_header: bool = False,
        decoder: Callable[[Optional[str]], ExpiryResult] = decode_expiry,
    ) -> None:
        super().__init__()
        self.policy = policy
        self.access_cookie = access_cookie
        self.refresh_cookie = refresh_cookie
        self.forward_refresh_header = forward_refresh_header
        self._decode = decoder
        self._jar: dict[str, str] = {
            name: value
            for name, value in cookies.items()
            if name in (access_cookie, refresh_cookie) and value
        }
        self._pending: List[Tuple[str, str, Optional[str], Optional[int]]] = []
        self._response: Optional[CookieSink] = None
        if response is not None:
            self.bind_response(response)

    def read(self) -> Optional[TokenPair]:
        access = self._jar.get(self.access_cookie)
        refresh = self._jar.get(self.refresh_cookie)
        if not access and not refresh:
            return None
        expires_at = None
        if access:
            decoded = self._decode(access)
            if isinstance(decoded, Ok):
                expires_at = decoded.expires_at
        return TokenPair(access_token=access, refresh_token=refresh, expires_at=expires_at)

    def write(self, pair: TokenPair, policy: Optional[CookiePolicy] = None) -> None:
        active = policy or self.policy
        if pair.access_token:
            self._jar[self.access_cookie] = pair.access_token
            self._emit("set", self.access_cookie, pair.access_token, active.access_max_age)
        if pair.refresh_token:
            self._jar[self.refresh_cookie] = pair.refresh_token
            self._emit("set", self.refresh_cookie, pair.refresh_token, active.refresh_max_age)

    def clear(self) -> None:
        self._jar.pop(self.access_cookie, None)
        self._jar.pop(self.refresh_cookie, None)
        self._emit("delete", self.access_cookie, None, None)
        self._emit("delete", self.refresh_cookie, None, None)

    def apply_credentials(self, headers: httpx.Headers) -> None:
        super().apply_credentials(headers)
        if self.forward_refresh_header:
            refresh = self._jar.get(self.refresh_cookie)
            if refresh:
                headers["X-Refresh-Token"] = refresh

    def bind_response(self, response: CookieSink) -> None:
        self._response = response
        pending, self._pending = self._pending, []
        for op in pending:
            self._apply(response, *op)

    def _emit(
        self, op: str, name: str, value: Optional[str], max_age: Optional[int]
    ) -> None:
        if self._response is None:
            self._pending.append((op, name, value, max_age))
            return
        self._apply(self._response, op, name, value, max_age)

    def _apply(
        self,
        response: CookieSink,
        op: str,
        name: str,
        value: Optional[str],
        max_age: Optional[int],
    ) -> None:
        if op == "set":
            response.set_cookie(
                name,
                value or "",
                max_age=max_age,
                path=self.policy.path,
                secure=self.policy.secure,
                httponly=self.policy.httponly,
                samesite=self.policy.samesite,
            )
        else:
            response.delete_cookie(
                name,
                path=self.policy.path,
                secure=self.policy.secure,
                httponly=self.policy.httponly,
                samesite=self.policy.samesite,
            )


class OpaqueTokenStore:
    """Same-origin client variant that never reads raw token values.

    The auth cookies are httpOnly and travel in the client's cookie jar on every
    same-origin request, so attaching credentials is a no-op and only
    token-derived metadata (the expiry) is tracked here. Whether a refresh
    credential exists is for the server to decide.
    """

    holds_raw_tokens = False

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        access_cookie: str = "auth_token",
        refresh_cookie: str = "refresh_token",
    ) -> None:
        self.client = client
        self.access_cookie = access_cookie
        self.refresh_cookie = refresh_cookie
        self._expires_at = None
        self._key = f"ctx:{uuid.uuid4()}"

    def read(self) -> Optional[TokenPair]:
        if self._expires_at is None:
            return None
        return TokenPair(expires_at=self._expires_at)

    def write(self, pair: TokenPair, policy: Optional[CookiePolicy] = None) -> None:
        self._expires_at = pair.expires_at

    def clear(self) -> None:
        self._expires_at = None
        self.client.cookies.delete(self.access_cookie)
        self.client.cookies.delete(self.refresh_cookie)

    def apply_credentials(self, headers: httpx.Headers) -> None:
        return None

    def has_refresh_credential(self) -> bool:
        return True

    def refresh_payload(self) -> Optional[dict]:
        return None

    def session_key(self) -> str:
        return self._key


__all__ = [
    "TokenStore",
    "CookieSink",
    "MemoryTokenStore",
    "CookieTokenStore",
    "OpaqueTokenStore",
]

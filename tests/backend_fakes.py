"""A scriptable stand-in for the backend identity/API service."""

import asyncio
import base64
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

import httpx

from authrelay.storage.models import TokenPair

PASSWORD = "correct-horse"


def _b64url(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def make_jwt(exp: float, **claims: Any) -> str:
    header = _b64url({"alg": "HS256", "typ": "JWT"})
    payload = _b64url({"exp": int(exp), "sub": "user-1", **claims})
    return f"{header}.{payload}.c2lnbmF0dXJl"


class FakeBackend:
    """Issues JWT-shaped access tokens and rotating refresh tokens.

    Only the most recently issued pair is valid. Every request is recorded.
    """

    def __init__(self, *, access_ttl: float = 3600, refresh_delay: float = 0.0) -> None:
        self.access_ttl = access_ttl
        self.refresh_delay = refresh_delay
        self.refresh_status = 200
        self.refresh_body: Optional[Any] = None
        self.network_down: Set[str] = set()
        # per-path latency, applied before the request is authorized
        self.delays: Dict[str, float] = {}
        # hand out access tokens that are already dead on arrival
        self.revoke_issued_access = False
        self.rotate_next_response = False
        self.is_new_company = False
        self.requests: List[httpx.Request] = []
        self.refresh_calls = 0
        self.logout_calls = 0
        self.revoked: List[str] = []
        self.user = {
            "id": "user-1",
            "email": "ada@example.com",
            "first_name": "Ada",
            "last_name": "Lovelace",
            "tenant_id": "tenant-1",
            "role": "admin",
        }
        self._generation = 0
        self._issue()

    def _issue(self) -> None:
        self._generation += 1
        exp = int(time.time() + self.access_ttl)
        self.access_token = make_jwt(exp, gen=self._generation)
        self.refresh_token = f"refresh-{self._generation}"
        self.expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)

    @property
    def generation(self) -> int:
        return self._generation

    def tokens(self) -> TokenPair:
        return TokenPair(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_at=self.expires_at,
        )

    def expire_access(self) -> None:
        """Invalidate the current access token while keeping the refresh token."""
        self.access_token = make_jwt(time.time() + self.access_ttl, gen="revoked")

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def paths(self) -> List[str]:
        return [request.url.path for request in self.requests]

    def _session_body(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat().replace("+00:00", "Z"),
        }

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.network_down:
            raise httpx.ConnectError("connection refused", request=request)
        if self.delays.get(path):
            await asyncio.sleep(self.delays[path])

        if path.endswith("/auth/refresh"):
            return await self._refresh(request)
        if path.endswith("/auth/login") or path.endswith("/auth/signup"):
            return self._login(request)
        if path.endswith("/auth/logout"):
            self.logout_calls += 1
            body = json.loads(request.content or b"null") or {}
            if body.get("refresh_token"):
                self.revoked.append(body["refresh_token"])
            return httpx.Response(200, json={"status": "ok", "data": {}})

        if request.headers.get("Authorization") != f"Bearer {self.access_token}":
            return httpx.Response(
                401,
                json={"status": "error", "error": {"code": "unauthorized", "message": "Token expired"}},
            )
        headers = {}
        if self.rotate_next_response:
            self.rotate_next_response = False
            self._issue()
            headers = {
                "X-New-Access-Token": self.access_token,
                "X-New-Refresh-Token": self.refresh_token,
            }
        if path.endswith("/auth/me"):
            return httpx.Response(200, json=self.user, headers=headers)
        return httpx.Response(
            200,
            json={
                "path": path,
                "method": request.method,
                "query": dict(request.url.params),
                "token": request.headers.get("Authorization", "")[len("Bearer "):],
            },
            headers=headers,
        )

    async def _refresh(self, request: httpx.Request) -> httpx.Response:
        self.refresh_calls += 1
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_status != 200:
            return httpx.Response(
                self.refresh_status,
                json={"status": "error", "error": {"code": "refresh_failed", "message": "nope"}},
            )
        body = json.loads(request.content or b"null") or {}
        if body.get("refresh_token") != self.refresh_token:
            return httpx.Response(
                401,
                json={"status": "error", "error": {"code": "unauthorized", "message": "invalid refresh token"}},
            )
        self._issue()
        if self.refresh_body is not None:
            return httpx.Response(200, json=self.refresh_body)
        body = self._session_body()
        if self.revoke_issued_access:
            self.expire_access()
        return httpx.Response(200, json=body)

    def _login(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}")
        if body.get("password") != PASSWORD:
            return httpx.Response(
                401,
                json={
                    "status": "error",
                    "error": {"code": "AUTHENTICATION_ERROR", "message": "Invalid email or password"},
                },
            )
        self._issue()
        status = 201 if request.url.path.endswith("/signup") else 200
        return httpx.Response(
            status,
            json={
                **self._session_body(),
                "user": self.user,
                "is_new_company": self.is_new_company,
            },
        )

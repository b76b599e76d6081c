import hashlib
import time
from datetime import datetime, timezone

import httpx
from fastapi import Response

from authrelay.config import CookiePolicy
from authrelay.storage.models import TokenPair
from authrelay.storage.token_store import CookieTokenStore, MemoryTokenStore, OpaqueTokenStore
from backend_fakes import make_jwt

POLICY = CookiePolicy(access_max_age=3600, refresh_max_age=30 * 24 * 3600, secure=False)


def _set_cookie_headers(response: Response) -> list:
    return [value for name, value in response.raw_headers if name == b"set-cookie"]


class TestMemoryTokenStore:
    def test_read_returns_copies(self):
        store = MemoryTokenStore(TokenPair("a", "r"))
        pair = store.read()
        pair.access_token = "mutated"
        assert store.read().access_token == "a"

    def test_credentials_and_refresh_payload(self):
        store = MemoryTokenStore(TokenPair("access", "refresh"))
        headers = httpx.Headers()
        store.apply_credentials(headers)
        assert headers["Authorization"] == "Bearer access"
        assert store.has_refresh_credential() is True
        assert store.refresh_payload() == {"refresh_token": "refresh"}

    def test_session_key_follows_refresh_token(self):
        store = MemoryTokenStore(TokenPair("access", "refresh"))
        expected = "rt:" + hashlib.sha256(b"refresh").hexdigest()
        assert store.session_key() == expected
        assert MemoryTokenStore(TokenPair("access", "refresh")).session_key() == expected

    def test_empty_store(self):
        store = MemoryTokenStore()
        headers = httpx.Headers()
        store.apply_credentials(headers)
        assert "Authorization" not in headers
        assert store.has_refresh_credential() is False
        assert store.refresh_payload() is None
        assert store.session_key().startswith("ctx:")

    def test_clear(self):
        store = MemoryTokenStore(TokenPair("a", "r"))
        store.clear()
        assert store.read() is None


class TestCookieTokenStore:
    def test_reads_request_cookies_and_decodes_expiry(self):
        exp = int(time.time()) + 900
        access = make_jwt(exp)
        store = CookieTokenStore(
            {"auth_token": access, "refresh_token": "r1", "other": "x"}, policy=POLICY
        )
        pair = store.read()
        assert pair.access_token == access
        assert pair.refresh_token == "r1"
        assert pair.expires_at == datetime.fromtimestamp(exp, tz=timezone.utc)

    def test_no_cookies_reads_none(self):
        assert CookieTokenStore({}, policy=POLICY).read() is None

    def test_write_sets_cookie_attributes(self):
        response = Response()
        store = CookieTokenStore({}, response, policy=POLICY)
        store.write(TokenPair("new-access", "new-refresh"))

        cookies = _set_cookie_headers(response)
        assert len(cookies) == 2
        access_cookie = next(c for c in cookies if c.startswith(b"auth_token="))
        refresh_cookie = next(c for c in cookies if c.startswith(b"refresh_token="))
        assert b"HttpOnly" in access_cookie
        assert b"Path=/" in access_cookie
        assert b"SameSite=lax" in access_cookie
        assert b"Max-Age=3600" in access_cookie
        assert b"Secure" not in access_cookie
        assert f"Max-Age={30 * 24 * 3600}".encode() in refresh_cookie

    def test_secure_flag_in_production_policy(self):
        response = Response()
        policy = CookiePolicy(access_max_age=60, refresh_max_age=120, secure=True)
        CookieTokenStore({}, response, policy=policy).write(TokenPair("a", "r"))
        assert all(b"Secure" in cookie for cookie in _set_cookie_headers(response))

    def test_writes_visible_to_later_reads(self):
        store = CookieTokenStore({"auth_token": "old", "refresh_token": "r-old"}, policy=POLICY)
        store.write(TokenPair("new", "r-new"))
        pair = store.read()
        assert (pair.access_token, pair.refresh_token) == ("new", "r-new")

    def test_pending_writes_replay_on_bind(self):
        store = CookieTokenStore({}, policy=POLICY)
        store.write(TokenPair("a", "r"))
        store.clear()
        response = Response()
        store.bind_response(response)
        cookies = _set_cookie_headers(response)
        # two sets followed by two deletions
        assert len(cookies) == 4
        assert cookies[-1].startswith(b"refresh_token=")
        assert b"Max-Age=0" in cookies[-1]

    def test_clear_deletes_both_cookies(self):
        response = Response()
        store = CookieTokenStore({"auth_token": "a", "refresh_token": "r"}, response, policy=POLICY)
        store.clear()
        assert store.read() is None
        names = sorted(c.split(b"=")[0] for c in _set_cookie_headers(response))
        assert names == [b"auth_token", b"refresh_token"]

    def test_forward_refresh_header(self):
        store = CookieTokenStore(
            {"auth_token": "a", "refresh_token": "r"},
            policy=POLICY,
            forward_refresh_header=True,
        )
        headers = httpx.Headers()
        store.apply_credentials(headers)
        assert headers["Authorization"] == "Bearer a"
        assert headers["X-Refresh-Token"] == "r"

    def test_same_session_key_across_requests(self):
        first = CookieTokenStore({"refresh_token": "r"}, policy=POLICY)
        second = CookieTokenStore({"refresh_token": "r", "auth_token": "x"}, policy=POLICY)
        assert first.session_key() == second.session_key()


class TestOpaqueTokenStore:
    def test_tracks_expiry_only(self):
        client = httpx.AsyncClient()
        store = OpaqueTokenStore(client)
        assert store.read() is None
        expires_at = datetime(2030, 1, 1, tzinfo=timezone.utc)
        store.write(TokenPair(access_token="ignored", expires_at=expires_at))
        pair = store.read()
        assert pair.expires_at == expires_at
        assert pair.access_token is None

    def test_credentials_are_left_to_the_cookie_jar(self):
        client = httpx.AsyncClient()
        store = OpaqueTokenStore(client)
        headers = httpx.Headers()
        store.apply_credentials(headers)
        assert "Authorization" not in headers
        assert store.has_refresh_credential() is True
        assert store.refresh_payload() is None

    def test_clear_drops_jar_cookies(self):
        client = httpx.AsyncClient()
        client.cookies.set("auth_token", "a")
        client.cookies.set("refresh_token", "r")
        client.cookies.set("theme", "dark")
        store = OpaqueTokenStore(client)
        store.write(TokenPair(expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc)))
        store.clear()
        assert store.read() is None
        assert client.cookies.get("auth_token") is None
        assert client.cookies.get("theme") == "dark"

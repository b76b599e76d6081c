import json

import httpx
import pytest
from fastapi.testclient import TestClient

from authrelay import app as app_module
from authrelay.config import Settings
from authrelay.service.runtime import reset_runtime_for_tests
from backend_fakes import PASSWORD


@pytest.fixture
def client(runtime):
    return TestClient(app_module.app, follow_redirects=False)


def _login(client, **extra):
    response = client.post(
        "/api/auth/login",
        json={"email": "ada@example.com", "password": PASSWORD, **extra},
    )
    assert response.status_code == 200, response.text
    return response


def _set_cookie_headers(response):
    return [value.lower() for value in response.headers.get_list("set-cookie")]


class TestLogin:
    def test_sets_httponly_cookies_and_hides_tokens(self, client, backend):
        response = _login(client)
        body = response.json()

        assert body["status"] == "ok"
        assert body["data"]["user"]["email"] == "ada@example.com"
        assert body["data"]["expires_at"]
        assert backend.access_token not in response.text
        assert client.cookies.get("auth_token") == backend.access_token
        assert client.cookies.get("refresh_token") == backend.refresh_token

        headers = _set_cookie_headers(response)
        assert len(headers) == 2
        for header in headers:
            assert "httponly" in header
            assert "samesite=lax" in header
            assert "path=/" in header
            assert "; secure" not in header
        assert any("max-age=2592000" in h for h in headers if h.startswith("refresh_token"))

    def test_credentials_sent_without_bearer(self, client, backend):
        _login(client)
        sent = backend.requests[-1]
        assert sent.url.path == "/api/v1/auth/login"
        assert "Authorization" not in sent.headers

    def test_invalid_email_is_a_validation_error(self, client, backend):
        response = client.post("/api/auth/login", json={"email": "nope", "password": "x"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
        assert "valid email address" in response.json()["error"]["message"]
        assert backend.requests == []

    def test_rejected_credentials(self, client, backend):
        response = client.post(
            "/api/auth/login", json={"email": "ada@example.com", "password": "wrong"}
        )

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["message"] == "Invalid email or password"
        assert error["details"] == {"backend_code": "AUTHENTICATION_ERROR"}
        assert response.headers.get_list("set-cookie") == []

    def test_backend_unreachable(self, client, backend):
        backend.network_down.add("/api/v1/auth/login")
        response = client.post(
            "/api/auth/login", json={"email": "ada@example.com", "password": PASSWORD}
        )

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "network_error"

    def test_legacy_single_token_response(self, client, backend):
        async def legacy(request):
            return httpx.Response(200, json={"token": backend.access_token, "user": backend.user})

        reset_runtime_for_tests(transport=httpx.MockTransport(legacy))
        response = client.post(
            "/api/auth/login",
            json={"email": "ada@example.com", "password": PASSWORD, "rememberMe": True},
        )

        assert response.status_code == 200
        headers = _set_cookie_headers(response)
        assert len(headers) == 1
        assert headers[0].startswith("auth_token=")
        assert "max-age=2592000" in headers[0]

    def test_signup_returns_201_with_cookies(self, client, backend):
        response = client.post(
            "/api/auth/signup",
            json={"email": "new@example.com", "password": PASSWORD, "company_name": "Acme"},
        )

        assert response.status_code == 201
        assert client.cookies.get("refresh_token") == backend.refresh_token
        assert backend.requests[-1].url.path == "/api/v1/auth/signup"

    def test_signup_rejects_short_password(self, client, backend):
        response = client.post(
            "/api/auth/signup", json={"email": "new@example.com", "password": "short"}
        )
        assert response.status_code == 400
        assert backend.requests == []


class TestMe:
    def test_returns_user_and_access_token(self, client, backend):
        _login(client)
        response = client.get("/api/auth/me")

        data = response.json()["data"]
        assert response.status_code == 200
        assert data["user"]["id"] == "user-1"
        assert data["access_token"] == backend.access_token
        assert data["has_refresh_token"] is True
        assert data["expires_at"]

    def test_requires_cookies(self, client, backend):
        response = client.get("/api/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Please login to access this resource"
        assert backend.requests == []

    def test_expired_access_refreshes_transparently(self, client, backend):
        _login(client)
        backend.expire_access()

        response = client.get("/api/auth/me")

        assert response.status_code == 200
        assert backend.refresh_calls == 1
        assert client.cookies.get("auth_token") == backend.access_token


class TestRefresh:
    def test_rotates_cookies(self, client, backend):
        _login(client)
        response = client.post("/api/auth/refresh")

        assert response.status_code == 200
        assert response.json()["data"]["expires_at"]
        assert backend.refresh_calls == 1
        assert client.cookies.get("refresh_token") == backend.refresh_token
        assert backend.refresh_token not in response.text

    def test_rejected_refresh_clears_cookies(self, client, backend):
        _login(client)
        backend.refresh_status = 401

        response = client.post("/api/auth/refresh")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Session expired"
        assert client.cookies.get("auth_token") is None
        assert client.cookies.get("refresh_token") is None

    def test_identity_service_outage_keeps_cookies(self, client, backend):
        _login(client)
        refresh_token = backend.refresh_token
        backend.refresh_status = 503

        response = client.post("/api/auth/refresh")

        assert response.status_code == 503
        error = response.json()["error"]
        assert error["code"] == "service_unavailable"
        assert error["details"] == {"retryable": True}
        assert client.cookies.get("refresh_token") == refresh_token

    def test_missing_refresh_cookie(self, client, backend):
        client.cookies.set("auth_token", "stale")
        response = client.post("/api/auth/refresh")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "No refresh token provided"
        assert backend.refresh_calls == 0


class TestLogout:
    def test_revokes_and_deletes_cookies(self, client, backend):
        _login(client)
        refresh_token = backend.refresh_token

        response = client.post("/api/auth/logout")

        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Logged out successfully"
        assert backend.revoked == [refresh_token]
        assert client.cookies.get("auth_token") is None
        assert client.cookies.get("refresh_token") is None

    def test_backend_failure_still_clears(self, client, backend):
        _login(client)
        backend.network_down.add("/api/v1/auth/logout")

        response = client.post("/api/auth/logout")

        assert response.status_code == 200
        assert client.cookies.get("refresh_token") is None

    def test_stale_cookies_also_revoke_the_pair_that_replaced_them(self, client, backend):
        _login(client)
        stale = {"auth_token": backend.access_token, "refresh_token": backend.refresh_token}
        assert client.post("/api/auth/refresh").status_code == 200
        rotated = backend.refresh_token

        response = TestClient(app_module.app, cookies=stale).post("/api/auth/logout")

        assert response.status_code == 200
        assert backend.revoked == [stale["refresh_token"], rotated]
        # the remembered rotation is gone, so the stale cookie no longer adopts it
        late = TestClient(app_module.app, cookies=stale).post("/api/auth/refresh")
        assert late.status_code == 401
        assert backend.refresh_calls == 2


class TestProxy:
    def test_forwards_method_query_and_body(self, client, backend):
        _login(client)
        response = client.post("/api/proxy/items?page=2", json={"name": "x"})

        assert response.status_code == 200
        assert response.json() == {
            "path": "/api/v1/items",
            "method": "POST",
            "query": {"page": "2"},
            "token": backend.access_token,
        }
        assert json.loads(backend.requests[-1].content) == {"name": "x"}

    def test_refreshes_once_and_replays(self, client, backend):
        _login(client)
        backend.expire_access()

        response = client.get("/api/proxy/documents")

        assert response.status_code == 200
        assert backend.refresh_calls == 1
        assert backend.paths().count("/api/v1/documents") == 2
        assert client.cookies.get("auth_token") == backend.access_token

    def test_rotation_headers_become_cookies(self, client, backend):
        _login(client)
        backend.rotate_next_response = True

        response = client.get("/api/proxy/documents")

        assert "x-new-access-token" not in response.headers
        assert client.cookies.get("auth_token") == backend.access_token
        assert client.cookies.get("refresh_token") == backend.refresh_token

    def test_backend_errors_are_relayed(self, client, backend):
        _login(client)
        backend.expire_access()
        backend.refresh_status = 401

        response = client.get("/api/proxy/documents")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
        assert client.cookies.get("refresh_token") is None


class TestRouteGate:
    def test_api_without_cookies_gets_envelope(self, client, backend):
        response = client.get("/api/proxy/documents")

        assert response.status_code == 401
        assert response.json()["status"] == "error"
        assert backend.requests == []

    def test_page_without_cookies_redirects_to_login(self, client):
        response = client.get("/dashboard/settings")

        assert response.status_code == 307
        assert response.headers["location"] == "/login?redirect=%2Fdashboard%2Fsettings"

    def test_signed_in_user_skips_auth_pages(self, client):
        client.cookies.set("auth_token", "anything")
        response = client.get("/login")

        assert response.status_code == 307
        assert response.headers["location"] == "/dashboard"

    def test_refresh_cookie_alone_passes_the_gate(self, client):
        client.cookies.set("refresh_token", "anything")
        response = client.get("/dashboard")
        assert response.status_code == 404

    def test_static_assets_and_public_pages_pass(self, client):
        assert client.get("/favicon.ico").status_code == 404
        assert client.get("/login").status_code == 404


class TestAppSurface:
    def test_health_and_security_headers(self, client):
        response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["backend_configured"] is True
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_api_responses_are_not_cached(self, client):
        response = client.get("/api/proxy/anything")
        assert "no-store" in response.headers["Cache-Control"]

    def test_allowed_origins_override(self, monkeypatch):
        monkeypatch.setattr(
            app_module,
            "_settings",
            Settings(cors_allow_origins="https://example.com, https://demo.local"),
        )
        assert app_module._allowed_origins() == ["https://example.com", "https://demo.local"]

    def test_allowed_origins_default(self, monkeypatch):
        monkeypatch.setattr(app_module, "_settings", Settings())
        assert "http://localhost:3000" in app_module._allowed_origins()

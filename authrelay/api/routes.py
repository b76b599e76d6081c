from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta
from typing import Optional

import httpx
from fastapi import APIRouter, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from authrelay.api.error_handling import error_response
from authrelay.api.schemas import (
    Envelope,
    LoginRequest,
    LogoutResponse,
    MeResponse,
    RefreshResponse,
    SessionResponse,
    SignupRequest,
)
from authrelay.logging import fingerprint, get_logger
from authrelay.service.errors import ServiceError, SessionExpiredError
from authrelay.service.interceptor import NEW_ACCESS_TOKEN_HEADER, NEW_REFRESH_TOKEN_HEADER
from authrelay.service.payloads import build_token_pair, error_details, error_message, unwrap
from authrelay.service.runtime import RequestAuth, Runtime, get_runtime
from authrelay.storage.models import RefreshOutcome, TokenPair, utcnow

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
}

# Never relayed from the backend to the browser
_HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
    "content-length",
    "content-encoding",
    "set-cookie",
    NEW_ACCESS_TOKEN_HEADER.lower(),
    NEW_REFRESH_TOKEN_HEADER.lower(),
})

_FORWARDED_REQUEST_HEADERS = ("accept", "content-type", "accept-language", "x-request-id")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _failure(auth: RequestAuth, exc: ServiceError) -> JSONResponse:
    """Error envelope that still carries any cookie changes made during the request."""
    response = error_response(
        exc.status_code,
        exc.message,
        dict(exc.detail) if exc.detail else None,
        code=exc.error_code,
    )
    auth.store.bind_response(response)
    return response


def _ok(auth: RequestAuth, response: Response, data) -> Envelope:
    auth.store.bind_response(response)
    return Envelope(status="ok", data=data)


def _backend_failure(backend: httpx.Response, default_message: str) -> HTTPException:
    try:
        payload = backend.json()
    except ValueError:
        payload = None
    status_code = backend.status_code
    if status_code >= 500:
        return _http_error("server_error", "Server error. Please try again later.", 502)
    details = error_details(payload)
    backend_code = details.get("code")
    return _http_error(
        _code_for_status(status_code),
        error_message(payload, default_message),
        status_code,
        details={"backend_code": backend_code} if backend_code else None,
    )


async def _exchange_credentials(
    runtime: Runtime,
    auth: RequestAuth,
    endpoint: str,
    payload: dict,
    *,
    remember_me: bool = False,
    default_message: str,
) -> SessionResponse:
    backend = await auth.interceptor.fetch(runtime.url(endpoint), method="POST", json=payload)
    if not backend.is_success:
        logger.info(
            "credential_exchange_rejected",
            endpoint=endpoint,
            status_code=backend.status_code,
            email_hash=fingerprint(payload.get("email")),
        )
        raise _backend_failure(backend, default_message)

    try:
        body = unwrap(backend.json())
    except ValueError:
        body = {}
    ttl = runtime.settings.default_session_ttl_seconds
    pair = build_token_pair(body, require_raw=True, default_ttl_seconds=ttl)
    policy = runtime.cookie_policy
    if pair is None and isinstance(body.get("token"), str):
        # Older backends return a single access token
        pair = build_token_pair(
            {"access_token": body["token"], "expires_at": body.get("expires_at")},
            require_raw=False,
            default_ttl_seconds=ttl,
        )
        access_max_age = policy.refresh_max_age if remember_me else 24 * 60 * 60
        policy = replace(policy, access_max_age=access_max_age)
    if pair is None:
        logger.error("credential_exchange_malformed", endpoint=endpoint)
        raise _http_error("server_error", "Invalid token response from server", 502)

    auth.store.write(pair, policy)
    user = body.get("user") if isinstance(body.get("user"), dict) else None
    return SessionResponse(
        user=user,
        expires_at=pair.expires_at,
        is_new_company=bool(body.get("is_new_company")),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Exchange credentials with the backend and set the auth cookies."""
    runtime = get_runtime()
    auth = runtime.bind_request({})
    try:
        data = await _exchange_credentials(
            runtime,
            auth,
            runtime.endpoints.login,
            {"email": body.email, "password": body.password},
            remember_me=body.remember_me,
            default_message="Invalid credentials",
        )
    except ServiceError as exc:
        return _failure(auth, exc)
    return _ok(auth, response, data)


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, response: Response):
    runtime = get_runtime()
    auth = runtime.bind_request({})
    try:
        data = await _exchange_credentials(
            runtime,
            auth,
            f"{runtime.settings.backend_api_prefix.rstrip('/')}/auth/signup",
            body.model_dump(exclude_none=True),
            default_message="Invalid signup data",
        )
    except ServiceError as exc:
        return _failure(auth, exc)
    return _ok(auth, response, data)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    """Revoke the refresh token (best effort) and delete both auth cookies."""
    runtime = get_runtime()
    auth = runtime.bind_request(request.cookies)
    current = auth.store.read()
    key = auth.store.session_key()
    # A pair rotated moments ago under this refresh token, or one still being
    # rotated, belongs to the session being ended
    recent = runtime.registry.recent(key)
    pending = runtime.registry.invalidate(key)

    if current is not None and current.refresh_token:
        await _revoke(runtime, current)
    rotated = [recent.tokens] if recent is not None and recent.tokens else []
    if pending is not None:
        result = await asyncio.shield(pending)
        if result.tokens is not None:
            rotated.append(result.tokens)
    for pair in rotated:
        if pair.refresh_token and pair.refresh_token != (current and current.refresh_token):
            await _revoke(runtime, pair)

    auth.store.clear()
    return _ok(auth, response, LogoutResponse())


async def _revoke(runtime: Runtime, pair: TokenPair) -> None:
    headers = httpx.Headers()
    if pair.access_token:
        headers["Authorization"] = f"Bearer {pair.access_token}"
    try:
        backend = await runtime.client.post(
            runtime.url(runtime.endpoints.logout),
            json={"refresh_token": pair.refresh_token},
            headers=headers,
        )
        if not backend.is_success:
            logger.warning("logout_revoke_rejected", status_code=backend.status_code)
    except httpx.HTTPError as exc:
        logger.warning("logout_revoke_failed", error_type=type(exc).__name__)


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(request: Request, response: Response):
    """Current user plus token-derived metadata for same-origin clients."""
    runtime = get_runtime()
    auth = runtime.bind_request(request.cookies)
    if auth.store.read() is None:
        raise _http_error("unauthorized", "Not authenticated", 401)
    try:
        backend = await auth.interceptor.fetch(runtime.url(runtime.endpoints.me))
    except ServiceError as exc:
        return _failure(auth, exc)

    if backend.status_code == 401:
        # Tokens are left alone; the client decides whether to refresh
        return _failure(auth, SessionExpiredError("Token expired"))
    if not backend.is_success:
        return _failure(
            auth,
            ServiceError(
                "Unable to retrieve user information",
                status_code=backend.status_code if backend.status_code < 500 else 502,
                error_code=_code_for_status(backend.status_code),
            ),
        )

    try:
        body = unwrap(backend.json())
    except ValueError:
        body = {}
    user = body.get("user") if isinstance(body.get("user"), dict) else body
    pair = auth.store.read()
    expires_at = pair.expires_at if pair and pair.expires_at else None
    if expires_at is None:
        expires_at = utcnow() + timedelta(seconds=runtime.settings.default_session_ttl_seconds)
    return _ok(
        auth,
        response,
        MeResponse(
            user=user,
            access_token=pair.access_token if pair else None,
            has_refresh_token=bool(pair and pair.refresh_token),
            expires_at=expires_at,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(request: Request, response: Response):
    """Rotate the cookie pair through the shared per-session coordinator."""
    runtime = get_runtime()
    auth = runtime.bind_request(request.cookies)
    if not auth.store.has_refresh_credential():
        raise _http_error("unauthorized", "No refresh token provided", 401)

    outcome = await auth.coordinator.refresh()
    if outcome == RefreshOutcome.REFRESHED:
        pair = auth.store.read()
        return _ok(auth, response, RefreshResponse(expires_at=pair.expires_at if pair else None))
    if outcome == RefreshOutcome.RECOVERABLE:
        return _failure(
            auth,
            ServiceError(
                "Unable to refresh authentication",
                status_code=503,
                error_code="service_unavailable",
                detail={"retryable": True},
            ),
        )
    return _failure(
        auth,
        ServiceError("Session expired", status_code=401, error_code="unauthorized"),
    )


@router.api_route(
    "/proxy/{path:path}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    tags=["proxy"],
)
async def proxy(path: str, request: Request):
    """Authenticated pass-through to ``{backend}{prefix}/{path}``."""
    runtime = get_runtime()
    auth = runtime.bind_request(request.cookies)
    prefix = runtime.settings.backend_api_prefix.rstrip("/")
    headers = {
        name: request.headers[name]
        for name in _FORWARDED_REQUEST_HEADERS
        if name in request.headers
    }
    content = await request.body()
    try:
        backend = await auth.interceptor.fetch(
            runtime.url(f"{prefix}/{path}"),
            method=request.method,
            params=list(request.query_params.multi_items()),
            content=content or None,
            headers=headers,
        )
    except ServiceError as exc:
        return _failure(auth, exc)

    relayed = Response(
        content=backend.content,
        status_code=backend.status_code,
        headers={
            name: value
            for name, value in backend.headers.items()
            if name.lower() not in _HOP_BY_HOP_HEADERS
        },
    )
    auth.store.bind_response(relayed)
    return relayed

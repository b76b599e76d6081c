from __future__ import annotations

from typing import Any, Callable, Optional
from urllib.parse import urlsplit

import httpx

from authrelay.config import Settings
from authrelay.logging import get_logger, sanitize_error_message
from authrelay.service.errors import (
    ConfigurationError,
    NetworkError,
    RefreshIrrecoverableError,
    RefreshRecoverableError,
    ServiceError,
)
from authrelay.service.payloads import build_token_pair, error_details, unwrap
from authrelay.service.refresh import DEFAULT_SESSION_TTL_SECONDS, RefreshCoordinator
from authrelay.service.token_decoder import ExpiryResult, decode_expiry
from authrelay.storage.models import ApiResult, RefreshOutcome
from authrelay.storage.token_store import TokenStore

logger = get_logger(__name__)

NEW_ACCESS_TOKEN_HEADER = "X-New-Access-Token"
NEW_REFRESH_TOKEN_HEADER = "X-New-Refresh-Token"

_CREDENTIAL_EXCHANGE_SUFFIXES = ("/login", "/signup", "/refresh")


def is_credential_exchange(url: str) -> bool:
    """True for the auth endpoints that must never carry or refresh credentials."""
    path = urlsplit(str(url)).path.rstrip("/")
    return "/auth/" in path and path.endswith(_CREDENTIAL_EXCHANGE_SUFFIXES)


def backend_url(settings: Settings, endpoint: str) -> str:
    if not settings.backend_base_url:
        raise ConfigurationError("FASTAPI_BASE_URL is not configured")
    return f"{settings.backend_base_url}/{endpoint.lstrip('/')}"


class RequestInterceptor:
    """Authenticated ``fetch`` over an ``httpx.AsyncClient``.

    Attaches the store's credentials, turns a 401 into one coordinated refresh
    and replays the original request exactly once. Transport failures surface as
    ``NetworkError`` and never trigger a refresh.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        store: TokenStore,
        coordinator: RefreshCoordinator,
        *,
        default_ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        decoder: Callable[[Optional[str]], ExpiryResult] = decode_expiry,
    ) -> None:
        self.client = client
        self.store = store
        self.coordinator = coordinator
        self.default_ttl_seconds = default_ttl_seconds
        self._decode = decoder

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        skip_auth: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        skip_auth = skip_auth or is_credential_exchange(url)
        sent_with = self.coordinator.credential_version
        response = await self._send(method, url, skip_auth, kwargs)
        if response.status_code != 401 or skip_auth:
            return response
        if self.coordinator.credential_version != sent_with:
            # A refresh settled while this request was on the wire
            return await self._replay(response, method, url, kwargs, refreshed=False)
        if not self.store.has_refresh_credential():
            logger.debug("unauthorized_without_refresh_credential", path=_path(url))
            return response

        outcome = await self.coordinator.refresh()
        if outcome == RefreshOutcome.REFRESHED:
            return await self._replay(response, method, url, kwargs, refreshed=True)

        if outcome == RefreshOutcome.RECOVERABLE:
            raise RefreshRecoverableError(
                "Session refresh is temporarily unavailable", response=response
            )
        if outcome == RefreshOutcome.SUPERSEDED:
            raise RefreshIrrecoverableError("Session ended during refresh", response=response)
        raise RefreshIrrecoverableError("Session expired", response=response)

    async def fetch_json(
        self,
        url: str,
        *,
        method: str = "GET",
        skip_auth: bool = False,
        **kwargs: Any,
    ) -> ApiResult:
        """Like ``fetch`` but folds every failure into an ``ApiResult``."""
        try:
            response = await self.fetch(url, method=method, skip_auth=skip_auth, **kwargs)
        except ServiceError as exc:
            status_code = exc.status_code
            response = getattr(exc, "response", None)
            if response is not None:
                status_code = response.status_code
            return ApiResult(
                ok=False,
                status_code=status_code,
                error={"code": exc.error_code, "message": exc.message},
            )

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not response.is_success:
            error = error_details(payload) or {"message": "An error occurred"}
            return ApiResult(ok=False, status_code=response.status_code, error=error)
        if payload is None and response.content:
            return ApiResult(
                ok=False,
                status_code=response.status_code,
                error={"code": "invalid_response", "message": "Response was not valid JSON"},
            )
        data = unwrap(payload) if isinstance(payload, dict) else payload
        return ApiResult(ok=True, status_code=response.status_code, data=data)

    async def _replay(
        self,
        rejected: httpx.Response,
        method: str,
        url: str,
        kwargs: dict,
        *,
        refreshed: bool,
    ) -> httpx.Response:
        await rejected.aclose()
        retried = await self._send(method, url, False, kwargs)
        logger.info(
            "request_replayed",
            method=method.upper(),
            path=_path(url),
            status_code=retried.status_code,
            refreshed=refreshed,
        )
        return retried

    async def _send(
        self, method: str, url: str, skip_auth: bool, kwargs: dict
    ) -> httpx.Response:
        generation = self.coordinator.generation
        request = self.client.build_request(method, url, **kwargs)
        if not skip_auth:
            self.store.apply_credentials(request.headers)
        try:
            response = await self.client.send(request)
        except httpx.TransportError as exc:
            logger.warning(
                "request_network_error",
                method=method.upper(),
                path=_path(url),
                error_type=type(exc).__name__,
            )
            message = str(exc)
            raise NetworkError(
                sanitize_error_message(message) if message else "Network request failed",
                detail={"error_type": type(exc).__name__},
            ) from exc
        self._capture_rotation(response, generation)
        return response

    def _capture_rotation(self, response: httpx.Response, generation: int) -> None:
        access = response.headers.get(NEW_ACCESS_TOKEN_HEADER)
        refresh = response.headers.get(NEW_REFRESH_TOKEN_HEADER)
        if not access or not refresh:
            return
        pair = build_token_pair(
            {"access_token": access, "refresh_token": refresh},
            require_raw=True,
            default_ttl_seconds=self.default_ttl_seconds,
            decoder=self._decode,
        )
        if pair is None:
            logger.warning("rotated_tokens_rejected", reason="malformed access token")
            return
        logger.info("rotated_tokens_received")
        self.coordinator.record_rotation(pair, generation=generation)


def _path(url: str) -> str:
    return urlsplit(str(url)).path


__all__ = [
    "RequestInterceptor",
    "backend_url",
    "is_credential_exchange",
    "NEW_ACCESS_TOKEN_HEADER",
    "NEW_REFRESH_TOKEN_HEADER",
]

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import urlparse, urlunparse

import httpx

from authrelay.config import AppEnv, get_settings, reset_settings_cache
from authrelay.logging import get_logger
from authrelay.service.interceptor import RequestInterceptor, backend_url
from authrelay.service.refresh import RefreshCoordinator, RefreshRegistry
from authrelay.storage.token_store import CookieSink, CookieTokenStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


@dataclass
class RequestAuth:
    """Per-request wiring: a cookie store over the shared process registry."""

    store: CookieTokenStore
    coordinator: RefreshCoordinator
    interceptor: RequestInterceptor


class Runtime:
    """Holds process-wide singletons for the FastAPI app."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = get_settings()
        self.cookie_policy = self.settings.cookie_policy()
        self.endpoints = self.settings.backend_endpoints()
        self.client = httpx.AsyncClient(
            transport=transport,
            timeout=self.settings.request_timeout_seconds,
        )
        # Keyed by session so one user's refresh never gates another's request
        self.registry = RefreshRegistry(grace_seconds=self.settings.refresh_grace_seconds)
        logger.info(
            "runtime_initialized",
            app_env=self.settings.app_env.value,
            backend_base_url=_mask_url_password(self.settings.backend_base_url),
            secure_cookies=self.cookie_policy.secure,
            refresh_grace_seconds=self.settings.refresh_grace_seconds,
        )

    def bind_request(
        self,
        cookies: Mapping[str, str],
        response: Optional[CookieSink] = None,
    ) -> RequestAuth:
        store = CookieTokenStore(
            cookies,
            response,
            policy=self.cookie_policy,
            access_cookie=self.settings.access_cookie_name,
            refresh_cookie=self.settings.refresh_cookie_name,
            forward_refresh_header=self.settings.forward_refresh_header,
        )
        coordinator = RefreshCoordinator(
            self.client,
            store,
            refresh_url=backend_url(self.settings, self.endpoints.refresh),
            registry=self.registry,
            timeout=self.settings.refresh_timeout_seconds,
            policy=self.cookie_policy,
            default_ttl_seconds=self.settings.default_session_ttl_seconds,
        )
        interceptor = RequestInterceptor(
            self.client,
            store,
            coordinator,
            default_ttl_seconds=self.settings.default_session_ttl_seconds,
        )
        return RequestAuth(store=store, coordinator=coordinator, interceptor=interceptor)

    def url(self, endpoint: str) -> str:
        return backend_url(self.settings, endpoint)

    async def close(self) -> None:
        await self.client.aclose()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked: the lock is only taken while the runtime does not exist yet.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(transport: Optional[httpx.AsyncBaseTransport] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        previous = runtime
        if previous is not None and not previous.client.is_closed:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(previous.close())
            else:
                loop.create_task(previous.close())

        reset_settings_cache()
        settings = get_settings()
        if settings.app_env != AppEnv.TEST:
            raise RuntimeError("runtime reset is only allowed with APP_ENV=test")
        runtime = Runtime(transport=transport)
        return runtime


__all__ = ["Runtime", "RequestAuth", "get_runtime", "reset_runtime_for_tests"]

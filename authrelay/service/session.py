"""Long-lived session controller.

``SessionContext`` is the surface the rest of an application talks to. It owns
one store, one coordinator, one interceptor and one expiry scheduler, and keeps
the public session state (``is_authenticated``, ``user``) in step with the
refresh outcomes reported by the coordinator.

Two ready-made shapes exist:

* ``SessionContext.same_origin()`` talks to this package's FastAPI app under
  ``/api``; the httpOnly cookies live in the client's jar and are never read.
* ``SessionContext.backend()`` talks to the backend under ``/api/v1`` directly
  and keeps the raw pair in memory (service clients, CLIs, tests).
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import httpx

from authrelay.config import AuthEndpoints, CookiePolicy, Settings, get_settings
from authrelay.logging import fingerprint, get_logger
from authrelay.service.errors import (
    AuthenticationError,
    ConfigurationError,
    RefreshError,
    ServiceError,
    ValidationError,
)
from authrelay.service.interceptor import RequestInterceptor
from authrelay.service.payloads import build_token_pair, error_details, error_message, unwrap
from authrelay.service.refresh import RefreshCoordinator, RefreshListener, RefreshRegistry
from authrelay.service.scheduler import ExpiryScheduler
from authrelay.service.token_decoder import Ok, decode_expiry
from authrelay.storage.models import (
    ApiResult,
    LoginResult,
    RefreshOutcome,
    Session,
    SessionState,
    TokenPair,
    UserProfile,
    utcnow,
)
from authrelay.storage.token_store import MemoryTokenStore, OpaqueTokenStore, TokenStore

logger = get_logger(__name__)

LOGIN_PATH = "/login"
ONBOARDING_PATH = "/onboarding"
DASHBOARD_PATH = "/dashboard"

Navigate = Callable[[str], None]


class SessionContext:
    def __init__(
        self,
        client: httpx.AsyncClient,
        store: TokenStore,
        *,
        endpoints: AuthEndpoints,
        settings: Optional[Settings] = None,
        navigate: Optional[Navigate] = None,
        registry: Optional[RefreshRegistry] = None,
        policy: Optional[CookiePolicy] = None,
        owns_client: bool = False,
    ) -> None:
        self.settings = settings or get_settings()
        self.client = client
        self.store = store
        self.endpoints = endpoints
        self._navigate = navigate
        self._owns_client = owns_client
        self.coordinator = RefreshCoordinator(
            client,
            store,
            refresh_url=endpoints.refresh,
            registry=registry,
            timeout=self.settings.refresh_timeout_seconds,
            policy=policy,
            default_ttl_seconds=self.settings.default_session_ttl_seconds,
        )
        self.interceptor = RequestInterceptor(
            client,
            store,
            self.coordinator,
            default_ttl_seconds=self.settings.default_session_ttl_seconds,
        )
        self.scheduler = ExpiryScheduler(
            self.coordinator, skew_seconds=self.settings.refresh_skew_seconds
        )
        self.coordinator.add_listener(
            RefreshListener(
                on_started=self._on_refresh_started,
                on_refreshed=self._on_refreshed,
                on_failed=self._on_refresh_failed,
            )
        )
        self._state = SessionState.UNAUTHENTICATED
        self._session: Optional[Session] = None
        self._checked = False
        self._check_in_progress = False
        self._is_loading = False
        self._closed = False

    @classmethod
    def same_origin(
        cls,
        settings: Optional[Settings] = None,
        *,
        navigate: Optional[Navigate] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "SessionContext":
        settings = settings or get_settings()
        client = httpx.AsyncClient(
            base_url=settings.app_base_url,
            transport=transport,
            timeout=settings.request_timeout_seconds,
        )
        store = OpaqueTokenStore(
            client,
            access_cookie=settings.access_cookie_name,
            refresh_cookie=settings.refresh_cookie_name,
        )
        return cls(
            client,
            store,
            endpoints=settings.same_origin_endpoints(),
            settings=settings,
            navigate=navigate,
            owns_client=True,
        )

    @classmethod
    def backend(
        cls,
        settings: Optional[Settings] = None,
        *,
        tokens: Optional[TokenPair] = None,
        navigate: Optional[Navigate] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "SessionContext":
        settings = settings or get_settings()
        if not settings.backend_base_url:
            raise ConfigurationError("FASTAPI_BASE_URL is not configured")
        client = httpx.AsyncClient(
            base_url=settings.backend_base_url,
            transport=transport,
            timeout=settings.request_timeout_seconds,
        )
        return cls(
            client,
            MemoryTokenStore(tokens),
            endpoints=settings.backend_endpoints(),
            settings=settings,
            navigate=navigate,
            owns_client=True,
        )

    async def __aenter__(self) -> "SessionContext":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        # REFRESHING is internal; the session is still signed in meanwhile
        return self._state != SessionState.UNAUTHENTICATED

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def user(self) -> Optional[UserProfile]:
        return self._session.user if self._session else None

    @property
    def expires_at(self) -> Optional[datetime]:
        pair = self.store.read()
        if pair and pair.expires_at:
            return pair.expires_at
        return self._session.tokens.expires_at if self._session else None

    async def fetch(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.interceptor.fetch(url, **kwargs)

    async def fetch_json(self, url: str, **kwargs: Any) -> ApiResult:
        return await self.interceptor.fetch_json(url, **kwargs)

    async def check_auth(self, *, force: bool = False) -> bool:
        """Hydrate session state from the persisted credentials.

        Runs once per context unless ``force`` is given; a call made while a check
        is already running returns the current state instead of checking again.
        """
        if self._check_in_progress or self._closed:
            return self.is_authenticated
        if self._checked and not force:
            return self.is_authenticated

        self._check_in_progress = True
        self._is_loading = True
        generation = self.coordinator.generation
        try:
            if self.store.holds_raw_tokens and self.store.read() is None:
                self._reset_state()
                return False
            try:
                response = await self.interceptor.fetch(self.endpoints.me)
            except RefreshError:
                self._reset_state()
                return False
            except ServiceError as exc:
                logger.warning(
                    "auth_check_failed",
                    error_code=exc.error_code,
                    error=exc.message,
                )
                self._reset_state()
                return False

            if response.status_code == 401:
                self._reset_state()
                return False
            if not response.is_success:
                logger.warning("auth_check_failed", status_code=response.status_code)
                self._reset_state()
                return False

            try:
                body = unwrap(response.json())
            except ValueError:
                body = {}
            if self.coordinator.generation != generation:
                # logged out while the check was running
                return False
            user_payload = body.get("user") if isinstance(body.get("user"), dict) else body
            user = UserProfile.from_payload(user_payload)
            expires_at = self._expiry_from(body)
            current = self.store.read() or TokenPair()
            self.coordinator.resume()
            if current.expires_at != expires_at:
                self.store.write(current.with_expiry(expires_at), self.coordinator.policy)
            self._establish(user, expires_at)
            return True
        finally:
            self._check_in_progress = False
            self._is_loading = False
            self._checked = True

    async def login(self, email: str, password: str, *, remember_me: bool = False) -> LoginResult:
        payload = {"email": email, "password": password}
        if remember_me:
            payload["remember_me"] = True
        response = await self.interceptor.fetch(
            self.endpoints.login, method="POST", json=payload, skip_auth=True
        )
        try:
            data = response.json()
        except ValueError:
            data = {}

        if not response.is_success:
            logger.info(
                "login_rejected",
                status_code=response.status_code,
                email_hash=fingerprint(email.strip().lower()),
            )
            raise _login_error(response.status_code, data)

        body = unwrap(data)
        pair = build_token_pair(
            body,
            require_raw=self.store.holds_raw_tokens,
            default_ttl_seconds=self.settings.default_session_ttl_seconds,
        )
        if pair is None:
            raise AuthenticationError("Login response did not include a usable session")

        self.coordinator.seed(pair)
        user = UserProfile.from_payload(body.get("user"))
        self._establish(user, pair.expires_at)
        self._checked = True

        is_new_company = bool(body.get("is_new_company"))
        destination = ONBOARDING_PATH if is_new_company else DASHBOARD_PATH
        logger.info(
            "login_succeeded",
            user_id=user.id if user else None,
            is_new_company=is_new_company,
        )
        self._go(destination)
        return LoginResult(
            user=user,
            destination=destination,
            expires_at=pair.expires_at,
            is_new_company=is_new_company,
        )

    async def logout(self) -> None:
        """Revoke server-side (best effort) and drop every trace of the session.

        No refresh can start once this is called. A refresh already on the
        wire is discarded when it lands, and the refresh token it obtained is
        revoked too.
        """
        self.scheduler.cancel()
        self.coordinator.invalidate()
        pending = self.coordinator.pending()
        was_authenticated = self.is_authenticated
        self._reset_state()

        payload = self.store.refresh_payload()
        headers = httpx.Headers()
        self.store.apply_credentials(headers)
        await self._revoke(payload, headers)
        if pending is not None:
            result = await asyncio.shield(pending)
            discarded = result.tokens
            if (
                discarded is not None
                and discarded.refresh_token
                and discarded.refresh_token != (payload or {}).get("refresh_token")
            ):
                headers = httpx.Headers()
                if discarded.access_token:
                    headers["Authorization"] = f"Bearer {discarded.access_token}"
                await self._revoke({"refresh_token": discarded.refresh_token}, headers)

        self.store.clear()
        logger.info("logout_completed", was_authenticated=was_authenticated)
        self._go(LOGIN_PATH)

    async def _revoke(self, payload: Optional[dict], headers: httpx.Headers) -> None:
        try:
            response = await self.client.post(self.endpoints.logout, json=payload, headers=headers)
            if not response.is_success:
                logger.warning("logout_revoke_rejected", status_code=response.status_code)
        except httpx.HTTPError as exc:
            logger.warning("logout_revoke_failed", error_type=type(exc).__name__)

    async def refresh_tokens(self) -> bool:
        outcome = await self.coordinator.refresh()
        return outcome == RefreshOutcome.REFRESHED

    async def get_access_token(self) -> Optional[str]:
        """Current access token, refreshed first when it is about to expire."""
        expires_at = self.expires_at
        if expires_at is not None:
            remaining = (expires_at - utcnow()).total_seconds()
            if remaining < self.settings.near_expiry_seconds:
                if not await self.refresh_tokens():
                    return None

        if self.store.holds_raw_tokens:
            pair = self.store.read()
            return pair.access_token if pair else None

        result = await self.interceptor.fetch_json(self.endpoints.me)
        if result.ok and isinstance(result.data, dict):
            return result.data.get("access_token") or None
        return None

    def on_foreground(self):
        if not self.is_authenticated:
            return None
        return self.scheduler.on_foreground()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.scheduler.close()
        if self._owns_client:
            await self.client.aclose()

    def _expiry_from(self, body: dict) -> datetime:
        access = body.get("access_token")
        if isinstance(access, str) and access:
            decoded = decode_expiry(access)
            if isinstance(decoded, Ok):
                return decoded.expires_at
        pair = self.store.read()
        if pair and pair.expires_at:
            return pair.expires_at
        reported = build_token_pair(
            {"expires_at": body.get("expires_at")},
            require_raw=False,
            default_ttl_seconds=self.settings.default_session_ttl_seconds,
        )
        if reported is not None and reported.expires_at is not None:
            return reported.expires_at
        return utcnow() + timedelta(seconds=self.settings.default_session_ttl_seconds)

    def _establish(self, user: Optional[UserProfile], expires_at: Optional[datetime]) -> None:
        self._session = Session(tokens=TokenPair(expires_at=expires_at), user=user)
        self._state = SessionState.AUTHENTICATED
        self.scheduler.arm(expires_at)

    def _reset_state(self) -> None:
        self._session = None
        self._state = SessionState.UNAUTHENTICATED
        self.scheduler.cancel()

    def _go(self, path: str) -> None:
        if self._navigate is None:
            return
        try:
            self._navigate(path)
        except Exception as exc:
            logger.error("navigate_failed", path=path, error=str(exc))

    def _on_refresh_started(self) -> None:
        if self._state == SessionState.AUTHENTICATED:
            self._state = SessionState.REFRESHING

    def _on_refreshed(self, pair: TokenPair) -> None:
        if self._session is None:
            return
        self._session.tokens = TokenPair(expires_at=pair.expires_at)
        self._session.refreshed_at = utcnow()
        self._state = SessionState.AUTHENTICATED

    def _on_refresh_failed(self, outcome: RefreshOutcome) -> None:
        if outcome == RefreshOutcome.IRRECOVERABLE:
            if self._state == SessionState.UNAUTHENTICATED:
                return
            logger.warning("session_lost", user_id=self.user.id if self.user else None)
            self._reset_state()
            self._go(LOGIN_PATH)
        elif self._state == SessionState.REFRESHING:
            self._state = SessionState.AUTHENTICATED


def _login_error(status_code: int, payload: Any) -> ServiceError:
    details = error_details(payload)
    if status_code in (400, 422):
        return ValidationError(error_message(payload, "Invalid login request"), detail=details)
    if status_code in (401, 403):
        return AuthenticationError(
            error_message(payload, "Invalid credentials"),
            status_code=status_code,
            detail=details,
        )
    if status_code == 429:
        return ServiceError(
            error_message(payload, "Too many requests. Please try again later."),
            status_code=429,
            error_code="rate_limited",
            detail=details,
        )
    return ServiceError(
        "Server error. Please try again later.",
        status_code=status_code if status_code >= 500 else 502,
        error_code="server_error",
        detail=details,
    )


__all__ = ["SessionContext", "LOGIN_PATH", "ONBOARDING_PATH", "DASHBOARD_PATH"]

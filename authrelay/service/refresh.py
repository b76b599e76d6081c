"""Single-flight token refresh.

At most one refresh network call is outstanding per session key. The first
caller starts a task and parks it in the registry slot; every later caller for
the same key awaits that task instead of issuing its own call. The slot is
emptied inside the task, before it completes, so no waiter can observe a
settled-but-still-registered refresh.

Execution is cooperative: there must be no ``await`` between looking up the
slot and filling it.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Set, Tuple

import httpx

from authrelay.config import CookiePolicy
from authrelay.logging import get_logger
from authrelay.service.payloads import build_token_pair, unwrap
from authrelay.service.token_decoder import ExpiryResult, decode_expiry
from authrelay.storage.models import RefreshOutcome, RefreshResult, TokenPair
from authrelay.storage.token_store import TokenStore

logger = get_logger(__name__)

DEFAULT_REFRESH_TIMEOUT_SECONDS = 10.0
DEFAULT_SESSION_TTL_SECONDS = 60 * 60


def _log_key(key: str) -> str:
    return key[:15]


class RefreshRegistry:
    """In-flight refresh slots keyed by session.

    One registry is shared by every coordinator that may serve the same
    session: per process on the server, per context on a client. With
    ``grace_seconds`` > 0 a successful result is also kept for that long under
    the old key, so a concurrent request that still presents the rotated-out
    refresh token adopts the new pair instead of replaying a revoked one.
    """

    def __init__(
        self,
        *,
        grace_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.grace_seconds = grace_seconds
        self._clock = clock
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._recent: Dict[str, Tuple[RefreshResult, float]] = {}
        self._ended: Set[str] = set()

    def get(self, key: str) -> Optional[asyncio.Task]:
        return self._in_flight.get(key)

    def put(self, key: str, task: asyncio.Task) -> None:
        if key in self._in_flight:
            raise RuntimeError("refresh already in flight for this session")
        self._in_flight[key] = task

    def release(self, key: str, task: Optional[asyncio.Task]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
            self._ended.discard(key)

    def invalidate(self, key: str) -> Optional[asyncio.Task]:
        """End the session behind ``key``.

        The remembered result is forgotten and a refresh still on the wire
        settles as SUPERSEDED without touching any store. Returns that refresh
        so the caller can wait for the pair it discards.
        """
        self._recent.pop(key, None)
        task = self._in_flight.get(key)
        if task is not None:
            self._ended.add(key)
        return task

    def is_ended(self, key: str) -> bool:
        return key in self._ended

    def remember(self, key: str, result: RefreshResult) -> None:
        if self.grace_seconds <= 0 or not result.ok:
            return
        self._recent[key] = (result, self._clock() + self.grace_seconds)

    def recent(self, key: str) -> Optional[RefreshResult]:
        if not self._recent:
            return None
        now = self._clock()
        for stale in [k for k, (_, until) in self._recent.items() if until <= now]:
            del self._recent[stale]
        entry = self._recent.get(key)
        return entry[0] if entry else None

    def __len__(self) -> int:
        return len(self._in_flight)


@dataclass
class RefreshListener:
    """Callbacks fired once per refresh cycle by the coordinator that ran it."""

    on_started: Optional[Callable[[], None]] = None
    on_refreshed: Optional[Callable[[TokenPair], None]] = None
    on_failed: Optional[Callable[[RefreshOutcome], None]] = None


class RefreshCoordinator:
    """Deduplicates refreshes for one session context and settles every caller."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        store: TokenStore,
        *,
        refresh_url: str,
        registry: Optional[RefreshRegistry] = None,
        timeout: float = DEFAULT_REFRESH_TIMEOUT_SECONDS,
        policy: Optional[CookiePolicy] = None,
        default_ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        decoder: Callable[[Optional[str]], ExpiryResult] = decode_expiry,
    ) -> None:
        self.client = client
        self.store = store
        self.refresh_url = refresh_url
        self.registry = registry if registry is not None else RefreshRegistry()
        self.timeout = timeout
        self.policy = policy
        self.default_ttl_seconds = default_ttl_seconds
        self._decode = decoder
        self._listeners: List[RefreshListener] = []
        self._generation = 0
        self._accepting = True
        self._credential_version = 0

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def credential_version(self) -> int:
        """Bumped every time this coordinator writes a new pair to its store."""
        return self._credential_version

    @property
    def in_flight(self) -> bool:
        return self.registry.get(self.store.session_key()) is not None

    def pending(self) -> Optional[asyncio.Task]:
        return self.registry.get(self.store.session_key())

    def add_listener(self, listener: RefreshListener) -> None:
        self._listeners.append(listener)

    def invalidate(self) -> None:
        """Mark the current session superseded.

        A refresh already on the wire is allowed to finish, but its result is
        discarded instead of being written to the store. New refreshes are
        refused until ``seed()`` installs the next session.
        """
        self._generation += 1
        self._accepting = False

    def resume(self) -> None:
        self._accepting = True

    def seed(self, pair: TokenPair) -> None:
        """Install a freshly issued pair (login) and accept refreshes again."""
        self.resume()
        self._write(pair)

    async def refresh(self) -> RefreshOutcome:
        """Join the in-flight refresh for this session or start one."""
        if not self._accepting:
            logger.debug("refresh_refused_session_ended")
            return RefreshOutcome.SUPERSEDED

        key = self.store.session_key()
        recent = self.registry.recent(key)
        if recent is not None:
            logger.debug("refresh_reused_recent", session_key=_log_key(key))
            self._adopt(recent)
            return recent.outcome

        task = self.registry.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run_cycle(key, self._generation))
            self.registry.put(key, task)
        else:
            logger.debug("refresh_joined", session_key=_log_key(key))

        # Shielded so a cancelled caller cannot cancel the refresh others wait on
        result = await asyncio.shield(task)
        self._adopt(result)
        return result.outcome

    def record_rotation(self, pair: TokenPair, *, generation: Optional[int] = None) -> None:
        """Apply a pair the backend rotated outside the refresh endpoint.

        ``generation`` is the value of ``self.generation`` when the carrying
        request was sent; a rotation from before a logout is ignored.
        """
        sent_in = self._generation if generation is None else generation
        if not self._accepting or sent_in != self._generation:
            logger.info("rotated_tokens_discarded")
            return
        self._write(pair)
        self._notify_refreshed(pair)

    def _is_current(self, key: str, generation: int) -> bool:
        return generation == self._generation and not self.registry.is_ended(key)

    def _write(self, pair: TokenPair) -> None:
        self.store.write(pair, self.policy)
        self._credential_version += 1

    def _adopt(self, result: RefreshResult) -> None:
        """Bring this coordinator's store in line with a cycle another store ran."""
        if result.source is self.store:
            return
        if result.ok and result.tokens is not None:
            self._write(result.tokens)
        elif result.outcome == RefreshOutcome.IRRECOVERABLE:
            self.store.clear()

    async def _run_cycle(self, key: str, generation: int) -> RefreshResult:
        logger.info("refresh_started", session_key=_log_key(key))
        self._notify_started()
        started = time.monotonic()
        result = RefreshResult(RefreshOutcome.RECOVERABLE, source=self.store)
        try:
            result = await self._perform_refresh(key, generation)
        finally:
            self.registry.release(key, asyncio.current_task())
            self.registry.remember(key, result)

        duration_ms = int((time.monotonic() - started) * 1000)
        if result.ok:
            logger.info(
                "refresh_succeeded",
                session_key=_log_key(key),
                duration_ms=duration_ms,
                expires_at=result.tokens.expires_at.isoformat()
                if result.tokens and result.tokens.expires_at
                else None,
            )
            self._notify_refreshed(result.tokens)
        else:
            logger.warning(
                "refresh_failed",
                session_key=_log_key(key),
                outcome=result.outcome.value,
                status_code=result.status_code,
                duration_ms=duration_ms,
            )
            self._notify_failed(result.outcome)
        return result

    async def _perform_refresh(self, key: str, generation: int) -> RefreshResult:
        payload = self.store.refresh_payload()
        if self.store.holds_raw_tokens and payload is None:
            self.store.clear()
            return RefreshResult(RefreshOutcome.IRRECOVERABLE, source=self.store)

        try:
            response = await asyncio.wait_for(
                self.client.post(self.refresh_url, json=payload, timeout=self.timeout),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning("refresh_timeout", timeout_seconds=self.timeout)
            return RefreshResult(RefreshOutcome.RECOVERABLE, source=self.store)
        except httpx.TransportError as exc:
            logger.warning(
                "refresh_transport_error",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return RefreshResult(RefreshOutcome.RECOVERABLE, source=self.store)

        if not self._is_current(key, generation):
            logger.info("refresh_result_discarded", status_code=response.status_code)
            if not self.store.holds_raw_tokens:
                # The client jar has already taken the relay's Set-Cookie headers
                self.store.clear()
            return RefreshResult(
                RefreshOutcome.SUPERSEDED,
                tokens=self._pair_from(response) if response.is_success else None,
                status_code=response.status_code,
                source=self.store,
            )

        if response.status_code == 401:
            self.store.clear()
            return RefreshResult(
                RefreshOutcome.IRRECOVERABLE, status_code=401, source=self.store
            )
        if not response.is_success:
            return RefreshResult(
                RefreshOutcome.RECOVERABLE,
                status_code=response.status_code,
                source=self.store,
            )

        pair = self._pair_from(response)
        if pair is None:
            # The old refresh token has already been rotated out server-side
            logger.error("refresh_response_malformed", status_code=response.status_code)
            self.store.clear()
            return RefreshResult(
                RefreshOutcome.IRRECOVERABLE,
                status_code=response.status_code,
                source=self.store,
            )

        self._write(pair)
        return RefreshResult(
            RefreshOutcome.REFRESHED,
            tokens=replace(pair),
            status_code=response.status_code,
            source=self.store,
        )

    def _pair_from(self, response: httpx.Response) -> Optional[TokenPair]:
        try:
            body = unwrap(response.json())
        except ValueError:
            body = {}
        return build_token_pair(
            body,
            require_raw=self.store.holds_raw_tokens,
            default_ttl_seconds=self.default_ttl_seconds,
            decoder=self._decode,
        )

    def _notify_started(self) -> None:
        for listener in list(self._listeners):
            if listener.on_started:
                self._safe_call("on_started", listener.on_started)

    def _notify_refreshed(self, pair: Optional[TokenPair]) -> None:
        if pair is None:
            return
        for listener in list(self._listeners):
            if listener.on_refreshed:
                self._safe_call("on_refreshed", listener.on_refreshed, pair)

    def _notify_failed(self, outcome: RefreshOutcome) -> None:
        for listener in list(self._listeners):
            if listener.on_failed:
                self._safe_call("on_failed", listener.on_failed, outcome)

    @staticmethod
    def _safe_call(name: str, callback: Callable, *args) -> None:
        try:
            callback(*args)
        except Exception as exc:
            logger.error(
                "refresh_listener_failed",
                listener=name,
                error_type=type(exc).__name__,
                error=str(exc),
            )


__all__ = [
    "RefreshCoordinator",
    "RefreshListener",
    "RefreshRegistry",
    "DEFAULT_REFRESH_TIMEOUT_SECONDS",
]

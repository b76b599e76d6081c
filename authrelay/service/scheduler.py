from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

from authrelay.logging import get_logger
from authrelay.service.refresh import RefreshCoordinator, RefreshListener
from authrelay.storage.models import RefreshOutcome, TokenPair, utcnow

logger = get_logger(__name__)

DEFAULT_SKEW_SECONDS = 5 * 60


class ExpiryScheduler:
    """Proactive refresh shortly before the access token expires.

    Fires through the coordinator's single entry point, so a timer that races a
    reactive 401 refresh joins it instead of starting a second one. Successful
    refreshes from any source re-arm the timer via the coordinator listener.
    """

    def __init__(
        self,
        coordinator: RefreshCoordinator,
        *,
        skew_seconds: float = DEFAULT_SKEW_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.coordinator = coordinator
        self.skew_seconds = skew_seconds
        self._clock = clock
        self._expires_at: Optional[datetime] = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self._fire_task: Optional[asyncio.Task] = None
        self._active = False
        self._closed = False
        coordinator.add_listener(RefreshListener(on_refreshed=self._on_refreshed))

    @property
    def armed(self) -> bool:
        return self._handle is not None

    @property
    def expires_at(self) -> Optional[datetime]:
        return self._expires_at

    def trigger_at(self, expires_at: datetime, now: Optional[datetime] = None) -> datetime:
        """``expires_at - skew``, with skew capped at half the remaining lifetime."""
        now = now or self._clock()
        remaining = max((expires_at - now).total_seconds(), 0.0)
        skew = min(float(self.skew_seconds), remaining / 2)
        return expires_at - timedelta(seconds=skew)

    def delay_for(self, expires_at: datetime, now: Optional[datetime] = None) -> float:
        now = now or self._clock()
        return max((self.trigger_at(expires_at, now) - now).total_seconds(), 0.0)

    def arm(self, expires_at: Optional[datetime]) -> None:
        """(Re)arm the one-shot timer for a session expiring at ``expires_at``."""
        if self._closed:
            return
        self._cancel_timer()
        self._expires_at = expires_at
        if expires_at is None:
            self._active = False
            return
        self._active = True
        delay = self.delay_for(expires_at)
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay, self._fire)
        logger.debug(
            "refresh_timer_armed",
            delay_seconds=round(delay, 3),
            expires_at=expires_at.isoformat(),
        )

    def on_foreground(self) -> Optional[asyncio.Task]:
        """Re-check wall-clock time after the owner was suspended or backgrounded.

        Timers may have been delayed or dropped while backgrounded, so the wall
        clock decides: inside the skew window the refresh starts now, otherwise
        the timer is re-armed from the current time.
        """
        if not self._active or self._expires_at is None or self._closed:
            return None
        now = self._clock()
        if now >= self._expires_at - timedelta(seconds=self.skew_seconds):
            self._cancel_timer()
            logger.info("refresh_due_on_foreground")
            return self._start_fire()
        self.arm(self._expires_at)
        return None

    def cancel(self) -> None:
        """Disarm on logout; a fire already underway stops waiting for its result."""
        self._active = False
        self._expires_at = None
        self._cancel_timer()
        if self._fire_task is not None and not self._fire_task.done():
            self._fire_task.cancel()
        self._fire_task = None

    async def close(self) -> None:
        task = self._fire_task
        self.cancel()
        self._closed = True
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        if not self._active or self._closed:
            return
        self._start_fire()

    def _start_fire(self) -> asyncio.Task:
        if self._fire_task is None or self._fire_task.done():
            self._fire_task = asyncio.ensure_future(self._run_refresh())
        return self._fire_task

    async def _run_refresh(self) -> RefreshOutcome:
        logger.info("scheduled_refresh_fired")
        outcome = await self.coordinator.refresh()
        if outcome != RefreshOutcome.REFRESHED:
            # The next real request goes through the reactive path
            logger.warning("scheduled_refresh_failed", outcome=outcome.value)
        return outcome

    def _on_refreshed(self, pair: TokenPair) -> None:
        if not self._active or self._closed or pair.expires_at is None:
            return
        remaining = pair.seconds_until_expiry(self._clock())
        if remaining is not None and remaining <= 0:
            logger.warning("refreshed_token_already_expired")
            self._cancel_timer()
            return
        self.arm(pair.expires_at)


__all__ = ["ExpiryScheduler", "DEFAULT_SKEW_SECONDS"]

"""
Refresh coalescing for bursts of staleness signals.

A single backend write usually touches several watched tables, so the change
stream delivers a burst of near-simultaneous notifications. Each signal
(re)starts a quiet-period timer; the refetch runs once, when the timer
elapses without a further signal.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

import structlog

logger = structlog.get_logger(__name__)

RefetchCallback = Callable[[], Union[None, Awaitable[Any]]]


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    """Schedules a callback after a delay in seconds."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class AsyncioScheduler:
    """Scheduler backed by the running asyncio event loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class RefreshCoalescer:
    """Collapses staleness signals into one refetch per quiet period."""

    def __init__(
        self,
        refetch: RefetchCallback,
        quiet_period_seconds: float,
        scheduler: Optional[Scheduler] = None,
        name: str = "roster"
    ):
        if quiet_period_seconds <= 0:
            raise ValueError("quiet_period_seconds must be positive")
        self._refetch = refetch
        self.quiet_period_seconds = quiet_period_seconds
        self._scheduler = scheduler or AsyncioScheduler()
        self.name = name
        self._timer: Optional[TimerHandle] = None
        self._pending_signals = 0
        self._closed = False
        self._tasks = set()
        self.fired = 0

    @property
    def pending(self) -> bool:
        return self._timer is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def signal(self, *_: Any) -> None:
        """Record a staleness signal and restart the quiet period."""
        if self._closed:
            return
        if self._timer is not None:
            self._timer.cancel()
        self._pending_signals += 1
        self._timer = self._scheduler.call_later(self.quiet_period_seconds, self._on_quiet)

    def refresh_now(self) -> Union[None, Awaitable[Any]]:
        """Run a refetch immediately, outside of coalescing (user-initiated)."""
        if self._closed:
            return None
        return self._refetch()

    def cancel_pending(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending_signals = 0

    def close(self) -> None:
        """Invalidate any pending timer and ignore all further signals."""
        self._closed = True
        self.cancel_pending()
        for task in list(self._tasks):
            task.cancel()

    def _on_quiet(self) -> None:
        self._timer = None
        if self._closed:
            return
        merged = self._pending_signals
        self._pending_signals = 0
        self.fired += 1
        logger.debug("Coalesced refresh firing", coalescer=self.name, merged_signals=merged)
        try:
            result = self._refetch()
        except Exception as e:
            logger.error("Coalesced refresh failed", coalescer=self.name, error=str(e))
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_refetch_done)

    def _on_refetch_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Coalesced refresh failed", coalescer=self.name, error=str(error))

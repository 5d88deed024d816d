from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class CancelToken:
    """
    Handle for a repeating callback. After cancel() the callback never runs again.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class Scheduler(Protocol):
    def every(self, interval: float, callback: Callable[[], None]) -> CancelToken:
        ...


class AsyncioScheduler:
    """Interval timers on the running event loop, re-armed with call_later."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def every(self, interval: float, callback: Callable[[], None]) -> CancelToken:
        if interval <= 0:
            raise ValueError("interval must be positive")
        loop = self._loop or asyncio.get_running_loop()
        token = CancelToken()

        def _fire() -> None:
            if token.cancelled:
                return
            token._handle = loop.call_later(interval, _fire)
            try:
                callback()
            except Exception:
                logger.exception("Scheduled callback failed")

        token._handle = loop.call_later(interval, _fire)
        return token

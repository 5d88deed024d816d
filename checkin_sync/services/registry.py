"""
Per-participant runtimes held by the API process.

Each signed-in partner gets their own store and clocks; both partners of a
couple converge through the shared change feed, not through shared objects.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional
from uuid import UUID

from checkin_sync.core.errors import SubscriptionError
from checkin_sync.schemas.checkin import CheckInSession, CheckInStateOut, ClockOut, TurnOut
from checkin_sync.schemas.settings import SessionSettings
from checkin_sync.services.checkin import CheckInStore
from checkin_sync.services.clock import SessionClock, TurnClock
from checkin_sync.services.feed import ChangeFeed
from checkin_sync.services.gateway import PersistenceGateway
from checkin_sync.services.notifications import SummaryNotifier
from checkin_sync.services.scheduler import AsyncioScheduler, CancelToken, Scheduler

logger = logging.getLogger(__name__)


@dataclass
class ParticipantRuntime:
    store: CheckInStore
    session_clock: SessionClock
    turn_clock: TurnClock
    settings: SessionSettings
    last_used: float = 0.0
    _unlisten: Optional[Callable[[], None]] = field(default=None, repr=False)

    def state(self) -> CheckInStateOut:
        clock, turn = self.session_clock, self.turn_clock
        return CheckInStateOut(
            session=self.store.session,
            progress_percentage=self.store.progress_percentage,
            timer=ClockOut(
                time_remaining=clock.time_remaining,
                is_running=clock.is_running,
                is_paused=clock.is_paused,
                formatted_time=clock.formatted_time,
            ),
            turn=TurnOut(
                is_active=turn.is_active,
                current_turn=turn.current_turn,
                turn_time_remaining=turn.turn_time_remaining,
                formatted_turn_time=turn.formatted_turn_time,
                extensions_used=turn.extensions_used,
                max_extensions=turn.max_extensions,
            ),
        )

    def _on_session(self, session: Optional[CheckInSession]) -> None:
        # a finished or abandoned check-in puts the clocks back to idle
        if session is None:
            self.session_clock.reset()
            self.turn_clock.stop()

    async def close(self) -> None:
        if self._unlisten is not None:
            self._unlisten()
            self._unlisten = None
        self.session_clock.close()
        self.turn_clock.close()
        await self.store.close()


class SessionRegistry:
    """
    Holds one runtime per (couple, user). Runtimes left idle for
    `idle_seconds` without a running session clock are closed by the periodic
    sweep; the next request rebuilds them from the database.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        *,
        feed: Optional[ChangeFeed] = None,
        notifier: Optional[SummaryNotifier] = None,
        scheduler: Optional[Scheduler] = None,
        idle_seconds: float = 1800,
        now: Callable[[], float] = time.monotonic,
    ):
        self._gateway = gateway
        self._feed = feed
        self._notifier = notifier
        self._scheduler = scheduler or AsyncioScheduler()
        self._idle_seconds = idle_seconds
        self._now = now
        self._runtimes: dict[tuple[UUID, UUID], ParticipantRuntime] = {}
        self._lock = asyncio.Lock()
        self._sweep: Optional[CancelToken] = None
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._runtimes)

    def get(self, couple_id: UUID, user_id: UUID) -> Optional[ParticipantRuntime]:
        return self._runtimes.get((couple_id, user_id))

    async def get_or_create(self, couple_id: UUID, user_id: UUID) -> ParticipantRuntime:
        key = (couple_id, user_id)
        async with self._lock:
            runtime = self._runtimes.get(key)
            if runtime is None:
                runtime = await self._build(couple_id, user_id)
                self._runtimes[key] = runtime
            elif not runtime.store.is_subscribed:
                await self._resubscribe(runtime)
            runtime.last_used = self._now()
            return runtime

    async def _build(self, couple_id: UUID, user_id: UUID) -> ParticipantRuntime:
        couple_settings = await self._gateway.fetch_session_settings(couple_id)
        store = CheckInStore(
            couple_id=couple_id,
            user_id=user_id,
            gateway=self._gateway,
            feed=self._feed,
            notifier=self._notifier,
        )
        session_clock = SessionClock(
            couple_settings.session_duration,
            scheduler=self._scheduler,
            on_time_up=lambda: logger.info("Session time is up for couple %s", couple_id),
        )
        turn_clock = TurnClock(
            couple_settings.turn_duration,
            scheduler=self._scheduler,
            enabled=couple_settings.turn_based_mode,
            max_extensions=couple_settings.max_extensions,
            allow_extensions=couple_settings.allow_extensions,
        )
        runtime = ParticipantRuntime(store, session_clock, turn_clock, couple_settings)
        runtime._unlisten = store.add_listener(runtime._on_session)
        try:
            await store.open()
        except Exception:
            logger.error("Could not open check-in runtime for user %s in couple %s", user_id, couple_id)
            await runtime.close()
            raise
        logger.info("Opened check-in runtime for user %s in couple %s", user_id, couple_id)
        return runtime

    async def _resubscribe(self, runtime: ParticipantRuntime) -> bool:
        try:
            await runtime.store.resubscribe()
        except SubscriptionError as exc:
            logger.error("Could not re-bind change feed for couple %s: %s", runtime.store.couple_id, exc)
            return False
        return True

    async def resubscribe_all(self) -> int:
        """Re-bind every open runtime's change feed; returns how many succeeded."""
        async with self._lock:
            runtimes = list(self._runtimes.values())
            restored = 0
            for runtime in runtimes:
                if await self._resubscribe(runtime):
                    restored += 1
        logger.info("Re-bound change feed for %d of %d runtimes", restored, len(runtimes))
        return restored

    def on_feed_error(self, exc: SubscriptionError) -> None:
        """Change feed error callback: re-bind all runtimes in the background."""
        logger.error("Change feed unavailable: %s", exc)
        self._spawn(self.resubscribe_all())

    async def evict_idle(self) -> int:
        cutoff = self._now() - self._idle_seconds
        async with self._lock:
            stale = [
                key for key, runtime in self._runtimes.items()
                if runtime.last_used < cutoff and not runtime.session_clock.is_running
            ]
            evicted = [self._runtimes.pop(key) for key in stale]
        for runtime in evicted:
            await runtime.close()
        if evicted:
            logger.info("Evicted %d idle check-in runtimes", len(evicted))
        return len(evicted)

    def start_sweeping(self, interval: float) -> None:
        if self._sweep is None:
            self._sweep = self._scheduler.every(interval, lambda: self._spawn(self.evict_idle()))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def close_all(self) -> None:
        if self._sweep is not None:
            self._sweep.cancel()
            self._sweep = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        runtimes, self._runtimes = list(self._runtimes.values()), {}
        for runtime in runtimes:
            await runtime.close()

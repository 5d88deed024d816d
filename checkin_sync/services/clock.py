from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Literal, Optional

from checkin_sync.services.scheduler import CancelToken, Scheduler
from checkin_sync.utils.time import elapsed_seconds, format_countdown

logger = logging.getLogger(__name__)

TICK_SECONDS = 1
EXTENSION_SECONDS = 60
DEFAULT_MAX_EXTENSIONS = 2

TurnOwner = Literal["user", "partner"]


def format_time(seconds: int) -> str:
    """
    MM:SS display for a countdown.
    """
    return format_countdown(seconds)


def other_turn(turn: TurnOwner) -> TurnOwner:
    return "partner" if turn == "user" else "user"


@dataclass(frozen=True, slots=True)
class ClockState:
    time_remaining: int
    is_running: bool
    is_paused: bool


class SessionClock:
    """
    Overall session countdown.

    start() always restarts from the full duration; pause/resume keep the
    remaining value. Reaching zero stops the clock and fires on_time_up once.
    """

    def __init__(
        self,
        duration_minutes: int,
        *,
        scheduler: Scheduler,
        on_time_up: Optional[Callable[[], None]] = None,
    ):
        self.total_seconds = int(duration_minutes) * 60
        self.time_remaining = self.total_seconds
        self.is_running = False
        self.is_paused = False
        self.on_time_up = on_time_up
        self._scheduler = scheduler
        self._token: Optional[CancelToken] = None

    @property
    def formatted_time(self) -> str:
        return format_time(self.time_remaining)

    @property
    def is_expired(self) -> bool:
        return not self.is_running and self.time_remaining == 0

    def start(self) -> None:
        self._cancel()
        self.time_remaining = self.total_seconds
        self.is_running = True
        self.is_paused = False
        self._arm()

    def pause(self) -> None:
        if not self.is_running or self.is_paused:
            return
        self.is_paused = True
        self._cancel()

    def resume(self) -> None:
        if not self.is_running or not self.is_paused:
            return
        self.is_paused = False
        self._arm()

    def reset(self) -> None:
        self._cancel()
        self.time_remaining = self.total_seconds
        self.is_running = False
        self.is_paused = False

    def snapshot(self) -> ClockState:
        return ClockState(self.time_remaining, self.is_running, self.is_paused)

    def restore(self, state: ClockState, saved_at: datetime, *, now: Optional[datetime] = None) -> None:
        """
        Resume from a saved snapshot. A clock that was ticking when saved has
        the wall-clock time since saved_at deducted; an already expired
        restore stays stopped without firing on_time_up.
        """
        self._cancel()
        remaining = state.time_remaining
        ticking = state.is_running and not state.is_paused
        if ticking:
            remaining -= elapsed_seconds(saved_at, now=now)
        self.time_remaining = max(0, remaining)
        if self.time_remaining == 0:
            self.is_running = False
            self.is_paused = False
            return
        self.is_running = state.is_running
        self.is_paused = state.is_paused
        if ticking:
            self._arm()

    def close(self) -> None:
        self._cancel()

    def _arm(self) -> None:
        self._token = self._scheduler.every(TICK_SECONDS, self._tick)

    def _cancel(self) -> None:
        if self._token is not None:
            self._token.cancel()
            self._token = None

    def _tick(self) -> None:
        if not self.is_running or self.is_paused:
            return
        self.time_remaining -= TICK_SECONDS
        if self.time_remaining > 0:
            return
        self.time_remaining = 0
        self.is_running = False
        self.is_paused = False
        self._cancel()
        logger.info("Session timer expired")
        if self.on_time_up is not None:
            self.on_time_up()


class TurnClock:
    """
    Speaking-turn countdown for turn-based sessions.

    Expiry and a manual switch_turn() share one post-condition: the turn
    flips, on_turn_switch fires with the new owner, the countdown goes back to
    the full turn duration and the extension counter clears.
    """

    def __init__(
        self,
        turn_duration: int,
        *,
        scheduler: Scheduler,
        enabled: bool = True,
        on_turn_switch: Optional[Callable[[TurnOwner], None]] = None,
        max_extensions: Optional[int] = None,
        allow_extensions: bool = False,
    ):
        self.turn_duration = int(turn_duration)
        self.enabled = enabled
        self.on_turn_switch = on_turn_switch
        self.max_extensions = DEFAULT_MAX_EXTENSIONS if max_extensions is None else max_extensions
        self.allow_extensions = allow_extensions
        self.current_turn: TurnOwner = "user"
        self.turn_time_remaining = self.turn_duration
        self.extensions_used = 0
        self._scheduler = scheduler
        self._token: Optional[CancelToken] = None

    @property
    def is_active(self) -> bool:
        return self._token is not None

    @property
    def formatted_turn_time(self) -> str:
        return format_time(self.turn_time_remaining)

    def start(self) -> None:
        """Enter the active state; stays idle when disabled or without a duration."""
        if self._token is not None or not self.enabled or self.turn_duration <= 0:
            return
        self._token = self._scheduler.every(TICK_SECONDS, self._tick)

    def stop(self) -> None:
        if self._token is not None:
            self._token.cancel()
            self._token = None

    def set_turn_duration(self, seconds: int) -> None:
        self.turn_duration = int(seconds)
        self.turn_time_remaining = self.turn_duration
        if self.turn_duration <= 0:
            self.stop()

    def switch_turn(self) -> TurnOwner:
        self.current_turn = other_turn(self.current_turn)
        self.turn_time_remaining = self.turn_duration
        self.extensions_used = 0
        if self.on_turn_switch is not None:
            self.on_turn_switch(self.current_turn)
        return self.current_turn

    def extend_turn(self) -> bool:
        if not self.allow_extensions or self.extensions_used >= self.max_extensions:
            return False
        self.turn_time_remaining += EXTENSION_SECONDS
        self.extensions_used += 1
        return True

    def close(self) -> None:
        self.stop()

    def _tick(self) -> None:
        self.turn_time_remaining -= TICK_SECONDS
        if self.turn_time_remaining <= 0:
            logger.debug("Turn expired for %s", self.current_turn)
            self.switch_turn()

"""
Row-level change feed scoped to one table and one couple.

Transports deliver ChangeEvents to handlers registered with `listen()`;
ChangeFeedBridge turns them into insert/update/delete callbacks and owns the
subscribe/unsubscribe lifecycle for a (table, couple_id) identity.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol
from uuid import UUID

import asyncpg

from checkin_sync.core.errors import SubscriptionError

logger = logging.getLogger(__name__)

EVENT_TYPES = ("INSERT", "UPDATE", "DELETE")

REALTIME_TABLES = frozenset({
    "check_ins",
    "notes",
    "action_items",
    "requests",
    "love_languages",
    "love_actions",
    "categories",
    "session_settings_proposals",
    "love_language_discoveries",
    "reminders",
    "milestones",
})

Row = dict[str, Any]
Handler = Callable[["ChangeEvent"], None]
Unlisten = Callable[[], Awaitable[None]]
RowCallback = Callable[[Row], None]


def channel_name(table: str) -> str:
    return f"{table}_changes"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    type: str
    table: str
    record: Optional[Row] = None
    old_record: Optional[Row] = None

    @property
    def couple_id(self) -> Optional[str]:
        row = self.record or self.old_record or {}
        value = row.get("couple_id")
        return str(value) if value is not None else None

    @classmethod
    def from_json(cls, payload: str) -> "ChangeEvent":
        """
        Parse a NOTIFY payload produced by the notify_row_change() trigger.
        """
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValueError(f"payload is not JSON: {exc}") from exc
        if not isinstance(data, dict) or data.get("type") not in EVENT_TYPES or not data.get("table"):
            raise ValueError("payload is missing type or table")
        return cls(
            type=data["type"],
            table=data["table"],
            record=data.get("record"),
            old_record=data.get("old_record"),
        )


class ChangeFeed(Protocol):
    async def listen(self, table: str, couple_id: str, handler: Handler) -> Unlisten:
        ...


class InMemoryChangeFeed:
    """Process-local fan-out; the gateway publishes to it after each commit."""

    def __init__(self) -> None:
        self._handlers: dict[tuple[str, str], list[Handler]] = defaultdict(list)

    async def listen(self, table: str, couple_id: str, handler: Handler) -> Unlisten:
        key = (table, str(couple_id))
        self._handlers[key].append(handler)

        async def unlisten() -> None:
            handlers = self._handlers.get(key)
            if not handlers:
                return
            for i, h in enumerate(handlers):
                if h is handler:
                    del handlers[i]
                    break
            if not handlers:
                del self._handlers[key]

        return unlisten

    def publish(self, event: ChangeEvent) -> None:
        if event.couple_id is None:
            return
        for handler in list(self._handlers.get((event.table, event.couple_id), ())):
            handler(event)

    def subscriber_count(self, table: str, couple_id: str | UUID) -> int:
        return len(self._handlers.get((table, str(couple_id)), ()))


class PostgresChangeFeed:
    """
    LISTEN/NOTIFY transport over a single asyncpg connection.

    NOTIFY carries no server-side filter, so couple scoping happens here.
    A dropped connection is reported once through `on_error`; nothing is
    re-established until callers bind again.
    """

    def __init__(self, dsn: str, *, on_error: Optional[Callable[[SubscriptionError], None]] = None):
        self._dsn = dsn
        self.on_error = on_error
        self._conn: Optional[asyncpg.Connection] = None
        self._lock = asyncio.Lock()

    async def _connection(self) -> asyncpg.Connection:
        async with self._lock:
            if self._conn is None or self._conn.is_closed():
                try:
                    self._conn = await asyncpg.connect(self._dsn)
                except (asyncpg.PostgresError, OSError) as exc:
                    raise SubscriptionError("Could not connect change feed", cause=exc) from exc
                self._conn.add_termination_listener(self._on_terminated)
            return self._conn

    async def listen(self, table: str, couple_id: str, handler: Handler) -> Unlisten:
        conn = await self._connection()
        channel = channel_name(table)
        wanted = str(couple_id)

        def _listener(connection, pid, ch, payload):
            try:
                event = ChangeEvent.from_json(payload)
            except ValueError as exc:
                logger.warning("Dropping malformed notification on %s: %s", ch, exc)
                return
            if event.table != table or event.couple_id != wanted:
                return
            handler(event)

        try:
            await conn.add_listener(channel, _listener)
        except (asyncpg.PostgresError, OSError) as exc:
            raise SubscriptionError(f"Could not listen on {channel}", cause=exc) from exc
        logger.info("Listening on %s for couple %s", channel, wanted)

        async def unlisten() -> None:
            if conn.is_closed():
                return
            await conn.remove_listener(channel, _listener)

        return unlisten

    def _on_terminated(self, connection) -> None:
        logger.error("Change feed connection terminated; subscriptions stay down until re-bound")
        if self.on_error is not None:
            self.on_error(SubscriptionError("Change feed connection terminated"))

    async def close(self) -> None:
        if self._conn is not None and not self._conn.is_closed():
            self._conn.remove_termination_listener(self._on_terminated)
            await self._conn.close()
        self._conn = None


class ChangeFeedBridge:
    """
    Exactly one subscription per (table, couple_id). Re-binding to a new
    identity tears the previous subscription down before creating the next.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        *,
        on_insert: Optional[RowCallback] = None,
        on_update: Optional[RowCallback] = None,
        on_delete: Optional[RowCallback] = None,
    ):
        self._feed = feed
        self.on_insert = on_insert
        self.on_update = on_update
        self.on_delete = on_delete
        self._key: Optional[tuple[str, str]] = None
        self._unlisten: Optional[Unlisten] = None

    @property
    def key(self) -> Optional[tuple[str, str]]:
        return self._key

    @property
    def is_subscribed(self) -> bool:
        return self._unlisten is not None

    async def bind(self, table: str, couple_id: str | UUID | None) -> None:
        if table not in REALTIME_TABLES:
            raise ValueError(f"Table {table!r} is not published on the change feed")
        key = (table, str(couple_id)) if couple_id is not None else None
        if key is not None and key == self._key and self._unlisten is not None:
            return
        await self.close()
        if key is None:
            return
        self._unlisten = await self._feed.listen(key[0], key[1], self._dispatch)
        self._key = key

    async def rebind(self) -> None:
        """Re-establish the current subscription, e.g. after a dropped connection."""
        if self._key is None:
            return
        table, couple_id = self._key
        await self.close()
        await self.bind(table, couple_id)

    async def close(self) -> None:
        unlisten, self._unlisten, self._key = self._unlisten, None, None
        if unlisten is not None:
            await unlisten()

    def _dispatch(self, event: ChangeEvent) -> None:
        if event.type == "INSERT":
            callback, row = self.on_insert, event.record
        elif event.type == "UPDATE":
            callback, row = self.on_update, event.record
        elif event.type == "DELETE":
            callback, row = self.on_delete, event.old_record
        else:
            return
        if callback is None or row is None:
            return
        try:
            callback(row)
        except Exception:
            logger.exception("Change feed %s callback failed for %s", event.type, event.table)


async def subscribe(
    feed: ChangeFeed,
    *,
    table: str,
    couple_id: str | UUID | None,
    on_insert: Optional[RowCallback] = None,
    on_update: Optional[RowCallback] = None,
    on_delete: Optional[RowCallback] = None,
) -> Unlisten:
    """
    One-shot form of ChangeFeedBridge; returns the unsubscribe coroutine function.
    """
    bridge = ChangeFeedBridge(feed, on_insert=on_insert, on_update=on_update, on_delete=on_delete)
    await bridge.bind(table, couple_id)
    return bridge.close

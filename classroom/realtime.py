"""
Realtime row changes.

The backend publishes a ChangeEvent after every committed insert/update/delete.
Anyone interested (the chapter list cache, the SSE endpoint) subscribes to a
table and reads events off its own asyncio.Queue.

LiveTable is the local side: a list of rows kept in sync from those events.
Local writes are applied right away (optimistic), and when the same write comes
back through the channel it's merged by primary key, never appended twice.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

EVENT_TYPES = ("INSERT", "UPDATE", "DELETE")


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: str  # "INSERT" | "UPDATE" | "DELETE"
    old: Optional[Dict[str, Any]] = None
    new: Optional[Dict[str, Any]] = None

    def as_dict(self) -> dict:
        return {"table": self.table, "eventType": self.event_type, "old": self.old, "new": self.new}


class Channel:
    """One subscriber's view of a table. Iterate it with `async for`."""

    def __init__(self, broadcaster: "Broadcaster", table: str, event_types: Iterable[str]) -> None:
        self._broadcaster = broadcaster
        self.table = table
        self.event_types = frozenset(event_types)
        self.queue: asyncio.Queue = asyncio.Queue()

    def wants(self, event: ChangeEvent) -> bool:
        return event.table == self.table and event.event_type in self.event_types

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        return await self.queue.get()

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)


class Broadcaster:
    def __init__(self) -> None:
        self.subscribers: List[Channel] = []

    def subscribe(self, table: str, event_types: Iterable[str] = EVENT_TYPES) -> Channel:
        event_types = tuple(event_types)
        unknown = set(event_types) - set(EVENT_TYPES)
        if unknown:
            raise ValueError(f"unknown event types: {sorted(unknown)}")
        ch = Channel(self, table, event_types)
        self.subscribers.append(ch)
        return ch

    def unsubscribe(self, ch: Channel) -> None:
        try:
            self.subscribers.remove(ch)
        except ValueError:
            pass

    def publish(self, event: ChangeEvent) -> None:
        for ch in list(self.subscribers):
            if ch.wants(event):
                ch.queue.put_nowait(event)


@dataclass
class LiveTable:
    """Rows of one table, keyed by primary key and kept sorted."""
    key: str = "id"
    sort_key: Optional[str] = None
    _rows: Dict[Any, Dict[str, Any]] = field(default_factory=dict)

    def load(self, rows: Iterable[Dict[str, Any]]) -> None:
        self._rows = {r[self.key]: dict(r) for r in rows}

    def apply_local(self, row: Dict[str, Any]) -> None:
        self._rows[row[self.key]] = dict(row)

    def remove_local(self, pk: Any) -> None:
        self._rows.pop(pk, None)

    def apply(self, event: ChangeEvent) -> bool:
        """Merge one change event. Returns True if the cache changed."""
        if event.event_type in ("INSERT", "UPDATE"):
            if not event.new:
                return False
            pk = event.new[self.key]
            # server copy wins, an echo of our own optimistic insert just replaces it
            before = self._rows.get(pk)
            self._rows[pk] = dict(event.new)
            return before != self._rows[pk]

        if event.event_type == "DELETE":
            if not event.old:
                return False
            return self._rows.pop(event.old[self.key], None) is not None

        logger.warning("ignoring unknown change event type %s", event.event_type)
        return False

    def get(self, pk: Any) -> Optional[Dict[str, Any]]:
        row = self._rows.get(pk)
        return dict(row) if row else None

    def rows(self) -> List[Dict[str, Any]]:
        out = list(self._rows.values())
        if self.sort_key:
            out.sort(key=lambda r: (r.get(self.sort_key) is None, r.get(self.sort_key) or 0, r[self.key]))
        return [dict(r) for r in out]

    def __len__(self) -> int:
        return len(self._rows)


async def pump(channel: Channel, table: LiveTable) -> None:
    """Feed a channel into a LiveTable until cancelled."""
    async for event in channel:
        if table.apply(event):
            logger.debug("%s %s merged into live %s", event.event_type, (event.new or event.old or {}).get(table.key), event.table)

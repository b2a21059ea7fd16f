"""
Change notifications for table rows.

A ChangeEvent is the push payload delivered to subscribers: insert and
update events carry the reduced row as stored (no joined display fields);
delete events carry only the prior row's id. ChangeFeed is the in-process
broker that filters events per subscription (table plus one column
equality) and schedules each delivery as its own event-loop callback.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """
    One row change on a table.

    ``new`` is set for INSERT/UPDATE and holds the reduced row. ``old`` is
    set for DELETE and holds ``{"id": ...}`` only.
    """

    model_config = ConfigDict(frozen=True)

    table: str
    kind: ChangeKind
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None
    commit_timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def affected_id(self) -> Optional[str]:
        row = self.old if self.kind == ChangeKind.DELETE else self.new
        return row.get("id") if row else None

    @property
    def requires_refetch(self) -> bool:
        """Insert/update payloads are reduced rows; the full view must be re-read."""
        return self.kind in (ChangeKind.INSERT, ChangeKind.UPDATE)

    @classmethod
    def for_row(cls, table: str, kind: ChangeKind, row: Dict[str, Any]) -> "ChangeEvent":
        if kind == ChangeKind.DELETE:
            return cls(table=table, kind=kind, old={"id": row["id"]})
        return cls(table=table, kind=kind, new=dict(row))


ChangeCallback = Callable[[ChangeEvent], Any]


class Subscription:
    """Handle for a live subscription; ``close()`` is idempotent."""

    def __init__(self, unsubscribe: Callable[[], Any]):
        self._unsubscribe = unsubscribe
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._unsubscribe()


@dataclass
class _Listener:
    table: str
    column: str
    value: Any
    callback: ChangeCallback

    def matches(self, table: str, row: Dict[str, Any]) -> bool:
        return table == self.table and row.get(self.column) == self.value


class ChangeFeed:
    """
    Filtered publish/subscribe broker for row changes.

    Delivery is scheduled with ``loop.call_soon`` so every notification runs
    as a separate handler on the event loop, after the publishing coroutine
    yields. Without a running loop, delivery is synchronous.
    """

    def __init__(self):
        self._listeners: Dict[int, _Listener] = {}
        self._ids = itertools.count(1)

    def subscribe(self, table: str, column: str, value: Any,
                  callback: ChangeCallback) -> Subscription:
        """
        Register a callback for changes to rows where ``column == value``.

        Returns:
            Subscription whose close() removes the listener
        """
        listener_id = next(self._ids)
        self._listeners[listener_id] = _Listener(table, column, value, callback)
        logger.debug(f"Subscribed #{listener_id} to {table} where {column}={value}")
        return Subscription(lambda: self._listeners.pop(listener_id, None))

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)

    def publish(self, table: str, kind: ChangeKind, row: Dict[str, Any]) -> int:
        """
        Publish a change of ``row`` (the new row, or the prior row for deletes).

        Filters are evaluated on the full row; subscribers receive the
        reduced payload built by ChangeEvent.for_row.

        Returns:
            Number of subscribers the event was scheduled for
        """
        event = ChangeEvent.for_row(table, kind, row)
        targets = [l.callback for l in list(self._listeners.values()) if l.matches(table, row)]
        if not targets:
            return 0

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for callback in targets:
            if loop is not None:
                loop.call_soon(self._deliver, callback, event)
            else:
                self._deliver(callback, event)
        return len(targets)

    @staticmethod
    def _deliver(callback: ChangeCallback, event: ChangeEvent) -> None:
        try:
            callback(event)
        except Exception as e:
            # A faulty subscriber must not break delivery to the others
            logger.error(f"Change subscriber failed on {event.table} {event.kind.value}: {e}")

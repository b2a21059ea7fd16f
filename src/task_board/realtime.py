"""
Change Subscription Adapter: bridges a push-notification channel into a
Row Store.

Lifecycle: open() subscribes to the channel, then loads a baseline with one
full fetch (replace_all). Insert/update notifications carry a reduced row,
so the adapter re-fetches the full record by id and applies it; delete
notifications are applied directly with the id from the payload. A failed
or empty re-fetch is dropped; the next full load repairs the store.

Applies happen in the order re-fetches resolve, not the order events were
emitted. The Row Store's idempotent insert and ignore-if-unknown
update/delete absorb the reordering.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, List, Optional, Set, TypeVar

from .backend import Backend
from .changes import ChangeEvent, ChangeKind, Subscription
from .errors import BackendError
from .row_store import RowStore

logger = logging.getLogger(__name__)

R = TypeVar("R")

FetchAll = Callable[[], Awaitable[List[R]]]
FetchOne = Callable[[str], Awaitable[Optional[R]]]


class ChangeSubscriptionAdapter(Generic[R]):
    """
    One live channel for rows of ``table`` where ``column == value``.

    Args:
        backend: Backend providing the subscription
        store: Row Store to keep in sync
        table: Table to watch (e.g. "tasks")
        column: Filter column (e.g. "project_id")
        value: Filter value
        fetch_all: Coroutine function returning the baseline records
        fetch_one: Coroutine function re-reading one record by id
        on_insert: Optional hook called with each newly inserted record
    """

    def __init__(self, backend: Backend, store: RowStore, table: str, column: str,
                 value: Any, fetch_all: FetchAll, fetch_one: FetchOne,
                 on_insert: Optional[Callable[[R], Any]] = None):
        self.backend = backend
        self.store = store
        self.table = table
        self.column = column
        self.value = value
        self.fetch_all = fetch_all
        self.fetch_one = fetch_one
        self.on_insert = on_insert
        self._subscription: Optional[Subscription] = None
        self._pending: Set[asyncio.Task] = set()

    @property
    def channel_name(self) -> str:
        return f"{self.table}:{self.value}"

    @property
    def is_open(self) -> bool:
        return self._subscription is not None and not self._subscription.closed

    async def open(self) -> None:
        """
        Subscribe, then establish the baseline.

        Raises:
            RuntimeError: If the adapter is already open
            BackendError: If the baseline fetch fails (the channel is closed again)
        """
        if self.is_open:
            raise RuntimeError(f"Channel {self.channel_name} is already open")

        self._subscription = self.backend.subscribe(self.table, self.column, self.value,
                                                    self._on_event)
        logger.info(f"Opened channel {self.channel_name}")
        try:
            await self.reload()
        except BackendError:
            self.close()
            raise

    async def reload(self) -> None:
        """Full resync from the backend."""
        records = await self.fetch_all()
        self.store.replace_all(records)

    def close(self) -> None:
        """Unsubscribe. In-flight re-fetches are allowed to finish."""
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
            logger.info(f"Closed channel {self.channel_name}")

    async def drain(self) -> None:
        """Wait until every scheduled re-fetch has resolved."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _on_event(self, event: ChangeEvent) -> None:
        if not self.is_open:
            return

        record_id = event.affected_id
        if record_id is None:
            logger.debug(f"Ignoring {event.kind.value} on {self.channel_name} without id")
            return

        if event.kind == ChangeKind.DELETE:
            self.store.apply_delete(record_id)
        elif event.requires_refetch:
            task = asyncio.ensure_future(self._refetch_and_apply(event.kind, record_id))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _refetch_and_apply(self, kind: ChangeKind, record_id: str) -> None:
        try:
            record = await self.fetch_one(record_id)
        except BackendError as e:
            logger.debug(f"Dropped re-fetch of {record_id} on {self.channel_name}: {e}")
            return
        except Exception as e:
            logger.warning(f"Unexpected re-fetch failure for {record_id} on {self.channel_name}: {e}")
            return

        if record is None:
            logger.debug(f"Row {record_id} vanished before re-fetch on {self.channel_name}")
            return

        if kind == ChangeKind.INSERT:
            if self.store.apply_insert(record) and self.on_insert is not None:
                try:
                    self.on_insert(record)
                except Exception as e:
                    logger.error(f"Insert hook failed for {record_id} on {self.channel_name}: {e}")
        else:
            self.store.apply_update(record)

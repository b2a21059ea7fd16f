"""
Row Store: the client-held authoritative cache of one view's records.

Holds records keyed by id with a stable render order. The store is the only
writer of its own sequence; holders mutate it through apply_insert,
apply_update, apply_delete and replace_all. Every operation tolerates
duplicate and out-of-order notifications.
"""

import logging
from typing import Callable, Dict, Generic, Iterable, Iterator, List, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

R = TypeVar("R")  # any record with an ``id`` attribute

StoreListener = Callable[["RowStore"], None]


class RowStore(Generic[R]):
    """
    Ordered id -> record mapping.

    Invariant: never holds two records with the same id.

    Args:
        newest_first: Place inserted records at the front (task lists) or
            at the back (comment threads)
    """

    def __init__(self, newest_first: bool = True):
        self.newest_first = newest_first
        self._records: Dict[str, R] = {}
        self._order: List[str] = []
        self._listeners: List[StoreListener] = []
        self.version = 0

    # Reads

    def get(self, record_id: str) -> Optional[R]:
        return self._records.get(record_id)

    def snapshot(self) -> Tuple[R, ...]:
        """Records in render order."""
        return tuple(self._records[record_id] for record_id in self._order)

    def ids(self) -> Tuple[str, ...]:
        return tuple(self._order)

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def __iter__(self) -> Iterator[R]:
        return iter(self.snapshot())

    # Listeners

    def add_listener(self, listener: StoreListener) -> Callable[[], None]:
        """
        Call ``listener(store)`` after every effective change.

        Returns:
            Function removing the listener
        """
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return remove

    def _changed(self) -> None:
        self.version += 1
        for listener in list(self._listeners):
            listener(self)

    # Writes

    def apply_insert(self, record: R) -> bool:
        """
        Add a record if its id is absent; duplicate notifications are no-ops.

        Returns:
            True if the record was added
        """
        record_id = record.id
        if record_id in self._records:
            return False
        self._records[record_id] = record
        if self.newest_first:
            self._order.insert(0, record_id)
        else:
            self._order.append(record_id)
        self._changed()
        return True

    def apply_update(self, record: R) -> bool:
        """
        Replace the record for a known id in place; unknown ids are ignored.

        Returns:
            True if a record was replaced
        """
        record_id = record.id
        if record_id not in self._records:
            logger.debug(f"Ignoring update for unknown id {record_id}")
            return False
        if self._records[record_id] == record:
            return False
        self._records[record_id] = record
        self._changed()
        return True

    def apply_delete(self, record_id: str) -> bool:
        """
        Remove a record; absent ids are a no-op.

        Returns:
            True if a record was removed
        """
        if record_id not in self._records:
            return False
        del self._records[record_id]
        self._order.remove(record_id)
        self._changed()
        return True

    def replace_all(self, records: Iterable[R]) -> None:
        """
        Full resync in the given order.

        A repeated id keeps its first position and its last value.
        """
        new_records: Dict[str, R] = {}
        new_order: List[str] = []
        for record in records:
            if record.id not in new_records:
                new_order.append(record.id)
            new_records[record.id] = record
        self._records = new_records
        self._order = new_order
        self._changed()

    def clear(self) -> None:
        self.replace_all(())

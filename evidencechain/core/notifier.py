"""
Change Notifier - Snapshot + Live Feed

Subscribers get the current records as a snapshot, then every committed
insert of the same record type, in commit order.

Registration happens BEFORE the snapshot is taken, so nothing committed
in between is missed. The price is possible duplicates across the
snapshot/live boundary; consumers dedupe by record id (DeduplicatedView).

Delivery is best effort. Each subscriber has a bounded queue; when it
overflows the subscription is marked lost and closed, and the consumer
must resubscribe for a fresh snapshot.
"""

import queue
from collections import deque
from threading import Lock
from typing import TYPE_CHECKING, Iterator, Optional
from uuid import UUID

from ..observability import get_logger
from ..schemas import ChangeEvent, RecordType
from .errors import SubscriptionLostError

if TYPE_CHECKING:
    from ..db.store import RecordStore, StoredRecord

logger = get_logger(__name__)


class Subscription:
    """A per-subscriber view of the change feed."""

    POLL_INTERVAL_SECONDS = 0.5

    def __init__(self, notifier: "ChangeNotifier", record_type: RecordType, max_queue_size: int):
        self.record_type = record_type
        self._notifier = notifier
        self._snapshot: deque[ChangeEvent] = deque()
        self._live: queue.Queue[ChangeEvent] = queue.Queue(maxsize=max_queue_size)
        self._closed = False
        self._lost = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def lost(self) -> bool:
        return self._lost

    def _load_snapshot(self, events: list[ChangeEvent]) -> None:
        self._snapshot.extend(events)

    def _offer(self, event: ChangeEvent) -> bool:
        """Enqueue a live event. False if the subscriber fell behind."""
        if self._closed:
            return False
        try:
            self._live.put_nowait(event)
        except queue.Full:
            self._lost = True
            self._closed = True
            return False
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """
        Next event: snapshot first, then live.

        Returns None on timeout or once a closed subscription is drained.

        Raises:
            SubscriptionLostError: events were dropped; resubscribe
        """
        if self._lost:
            raise SubscriptionLostError(
                f"Subscription to {self.record_type.value} fell behind; resubscribe"
            )
        if self._snapshot:
            return self._snapshot.popleft()
        try:
            return self._live.get(block=not self._closed, timeout=timeout)
        except queue.Empty:
            if self._lost:
                raise SubscriptionLostError(
                    f"Subscription to {self.record_type.value} fell behind; resubscribe"
                ) from None
            return None

    def __iter__(self) -> Iterator[ChangeEvent]:
        while True:
            if self._closed and not self._snapshot and self._live.empty() and not self._lost:
                return
            event = self.get(timeout=self.POLL_INTERVAL_SECONDS)
            if event is not None:
                yield event

    def close(self) -> None:
        self._closed = True
        self._notifier._discard(self)


class ChangeNotifier:
    """
    Fans committed inserts out to subscribers.

    Hooked into the store as a commit listener, so events arrive in commit
    order. Only commits made through this process's store are seen.
    """

    DEFAULT_MAX_QUEUE_SIZE = 1000

    def __init__(self, store: "RecordStore", max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE):
        self._store = store
        self._max_queue_size = max_queue_size
        self._subscriptions: list[Subscription] = []
        self._lock = Lock()
        self._unregister = store.add_commit_listener(self._on_commit)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def subscribe(self, record_type: RecordType) -> Subscription:
        """Register for live events, then load the snapshot."""
        subscription = Subscription(self, record_type, self._max_queue_size)
        with self._lock:
            self._subscriptions.append(subscription)

        # Listings are newest first; deliver oldest first like the live feed
        snapshot = list(reversed(self._list(record_type)))
        subscription._load_snapshot([
            ChangeEvent(record_type=record_type, record=record) for record in snapshot
        ])
        logger.debug("Subscribed to change feed", record_type=record_type.value,
                     snapshot_size=len(snapshot))
        return subscription

    def _list(self, record_type: RecordType) -> list["StoredRecord"]:
        if record_type == RecordType.EVIDENCE:
            return self._store.list_evidence()
        return self._store.list_cases()

    def _on_commit(self, event: ChangeEvent) -> None:
        with self._lock:
            targets = [s for s in self._subscriptions if s.record_type == event.record_type]
        for subscription in targets:
            if not subscription._offer(event):
                self._discard(subscription)
                logger.warning("Subscriber fell behind, subscription dropped",
                               record_type=event.record_type.value)

    def _discard(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def close(self) -> None:
        self._unregister()
        with self._lock:
            subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription._closed = True


class DeduplicatedView:
    """Folds a snapshot + live stream into unique records, newest first."""

    def __init__(self):
        self._seen: set[UUID] = set()
        self._records: list["StoredRecord"] = []

    def apply(self, event: ChangeEvent) -> bool:
        """Add the event's record. False if it was already seen."""
        if event.record_id in self._seen:
            return False
        self._seen.add(event.record_id)
        self._records.append(event.record)
        return True

    @property
    def records(self) -> list["StoredRecord"]:
        return list(reversed(self._records))

    def __len__(self) -> int:
        return len(self._records)

"""In-memory idempotency guard for messages and attachments.

Best-effort and process-local: it saves redundant provider calls and
duplicate notifications within one process lifetime.  Durable dedup is
the ``(company_id, storage_ref)`` key in the document table.
"""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Hashable

import structlog

logger = structlog.get_logger()


class BoundedSeenSet:
    """Insertion-ordered set with a hard capacity.

    When an insert pushes the size past ``capacity`` the oldest half is
    evicted in one pass, so eviction cost is amortised over many inserts.
    """

    def __init__(self, capacity: int, *, name: str = "seen") -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.name = name
        self._items: OrderedDict[Hashable, None] = OrderedDict()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)

    def add(self, key: Hashable) -> None:
        if key in self._items:
            return
        self._items[key] = None
        if len(self._items) > self.capacity:
            self._evict_oldest_half()

    def _evict_oldest_half(self) -> None:
        to_remove = max(1, len(self._items) // 2)
        for _ in range(to_remove):
            self._items.popitem(last=False)
        logger.info("seen_set_evicted", set=self.name, evicted=to_remove, remaining=len(self._items))


class IdempotencyGuard:
    """Processed-message, processed-attachment and email-notified marks.

    A message left unmarked for retry keeps its notified mark, so its
    email notification goes out once.

    Construct one per process in production; tests build a fresh one.
    Not thread-safe: it relies on the single-threaded event loop.
    """

    def __init__(self, message_capacity: int = 1000, attachment_capacity: int = 1000) -> None:
        self.messages = BoundedSeenSet(message_capacity, name="messages")
        self.attachments = BoundedSeenSet(attachment_capacity, name="attachments")
        self.notified = BoundedSeenSet(message_capacity, name="notified")

    def already_seen_message(self, message_id: str) -> bool:
        return message_id in self.messages

    def mark_message_seen(self, message_id: str) -> None:
        self.messages.add(message_id)

    def already_seen_attachment(self, message_id: str, attachment_key: str) -> bool:
        return (message_id, attachment_key) in self.attachments

    def mark_attachment_seen(self, message_id: str, attachment_key: str) -> None:
        self.attachments.add((message_id, attachment_key))

    def already_notified(self, message_id: str) -> bool:
        return message_id in self.notified

    def mark_notified(self, message_id: str) -> None:
        self.notified.add(message_id)

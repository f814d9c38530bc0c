"""
Local queues for payloads that could not be delivered while offline.

Two queues exist per page: form submissions and analytics events. The cache
dispatcher flushes them on background sync; an item leaves its queue only
after the remote endpoint acknowledged it with a 2xx.
"""

from typing import Any, Dict, List, Optional

from app.models.offline import QueuedItem


class OfflineQueue:
    """Insertion-ordered queue with removal by id."""

    def __init__(self, name: str):
        self.name = name
        self._items: Dict[str, QueuedItem] = {}

    def enqueue(self, data: Dict[str, Any]) -> QueuedItem:
        item = QueuedItem(data=data)
        self._items[item.id] = item
        return item

    def items(self) -> List[QueuedItem]:
        """Snapshot of the queued items, oldest first."""
        return list(self._items.values())

    def get(self, item_id: str) -> Optional[QueuedItem]:
        return self._items.get(item_id)

    def remove(self, item_id: str) -> bool:
        return self._items.pop(item_id, None) is not None

    def mark_attempt(self, item_id: str) -> None:
        item = self._items.get(item_id)
        if item is not None:
            item.attempts += 1

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

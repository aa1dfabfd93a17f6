"""Shared upcoming-track queue with per-item voting."""

from __future__ import annotations

import logging
from typing import Iterable

from .models import QueueItem, TrackRef

logger = logging.getLogger(__name__)


class QueueEngine:
    """Ordered queue mirror kept by every client.

    Mutations are applied locally first and then announced by the
    coordinator; remote announcements are applied through the same methods,
    which are idempotent so redelivered events do no harm.
    """

    def __init__(self) -> None:
        self._items: list[QueueItem] = []

    @property
    def items(self) -> list[QueueItem]:
        return list(self._items)

    @property
    def order(self) -> list[str]:
        return [item.id for item in self._items]

    def __len__(self) -> int:
        return len(self._items)

    def get(self, item_id: str) -> QueueItem | None:
        for item in self._items:
            if item.id == item_id:
                return item
        return None

    def add(self, track: TrackRef, *, added_by: str, added_at: int) -> QueueItem:
        item = QueueItem(track=track, added_by=added_by, added_at=added_at)
        self._items.append(item)
        return item

    def insert(self, item: QueueItem) -> bool:
        """Append an item received from a peer unless it is already queued."""

        if self.get(item.id) is not None:
            return False
        self._items.append(item)
        return True

    def remove(self, item_id: str) -> bool:
        before = len(self._items)
        self._items = [item for item in self._items if item.id != item_id]
        return len(self._items) != before

    def clear(self) -> None:
        self._items.clear()

    def vote(self, item_id: str, voter_id: str) -> QueueItem | None:
        """Count ``voter_id`` once for ``item_id``; ``None`` when nothing changed."""

        item = self.get(item_id)
        if item is None or voter_id in item.voter_ids:
            return None
        item.voter_ids.add(voter_id)
        item.votes = len(item.voter_ids)
        return item

    def reorder(self, order: Iterable[str]) -> list[str]:
        """Apply an absolute order; unknown ids are ignored, unlisted items keep their relative order at the end."""

        by_id = {item.id: item for item in self._items}
        arranged: list[QueueItem] = []
        for item_id in order:
            item = by_id.pop(item_id, None)
            if item is not None:
                arranged.append(item)
        arranged.extend(item for item in self._items if item.id in by_id)
        self._items = arranged
        return self.order

    def move(self, item_id: str, new_index: int) -> list[str] | None:
        item = self.get(item_id)
        if item is None:
            return None
        self._items.remove(item)
        index = max(0, min(new_index, len(self._items)))
        self._items.insert(index, item)
        return self.order

    def promote(self, item_id: str) -> list[str] | None:
        return self.move(item_id, 0)

    def pop_head(self) -> QueueItem | None:
        if not self._items:
            return None
        return self._items.pop(0)

    @staticmethod
    def has_majority(item: QueueItem, connected: int) -> bool:
        """True when the item's votes exceed half of the connected roster."""

        return connected > 0 and item.votes * 2 > connected

"""
WorkQueue: copy-on-write container for work items.

The collection is an immutable tuple that is replaced, never mutated, on
every change, so a snapshot handed out earlier never changes underneath
its reader. Listeners are notified synchronously after each replacement.
"""

from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Optional, Tuple

from labsupply.errors import InvalidTransitionError
from labsupply.logger import get_logger
from labsupply.models import ExtractedFields, ImageUpload, ItemStatus, WorkItem

logger = get_logger(__name__)

Snapshot = Tuple[WorkItem, ...]
Listener = Callable[[Snapshot], None]

_ALLOWED_TRANSITIONS = {
    ItemStatus.QUEUED: {ItemStatus.LOADING},
    ItemStatus.LOADING: {ItemStatus.DONE, ItemStatus.ERROR},
    ItemStatus.DONE: set(),
    ItemStatus.ERROR: set(),
}


class WorkQueue:
    """
    Session-scoped collection of work items.

    Transition methods return the updated item, or ``None`` when the id is
    unknown (typically because the user deleted the item while its
    extraction was in flight).
    """

    def __init__(self) -> None:
        self._items: Snapshot = ()
        self._listeners: List[Listener] = []

    # -- reading -------------------------------------------------------------

    def snapshot(self) -> Snapshot:
        return self._items

    def get(self, item_id: str) -> Optional[WorkItem]:
        for item in self._items:
            if item.id == item_id:
                return item
        return None

    def by_status(self, status: ItemStatus) -> List[WorkItem]:
        return [item for item in self._items if item.status == status]

    def done_items(self) -> List[WorkItem]:
        return self.by_status(ItemStatus.DONE)

    def counts(self) -> Dict[ItemStatus, int]:
        counts = {status: 0 for status in ItemStatus}
        for item in self._items:
            counts[item.status] += 1
        return counts

    def __len__(self) -> int:
        return len(self._items)

    # -- listeners -----------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _replace(self, items: Snapshot) -> None:
        self._items = items
        for listener in list(self._listeners):
            listener(items)

    # -- transitions ---------------------------------------------------------

    def enqueue(self, uploads: Iterable[ImageUpload]) -> List[WorkItem]:
        new_items = [WorkItem.from_upload(upload) for upload in uploads]
        if not new_items:
            return []
        self._replace(self._items + tuple(new_items))
        logger.info("Queued %d image(s) (total=%d)", len(new_items), len(self._items))
        return new_items

    def mark_loading(self, item_id: str) -> Optional[WorkItem]:
        return self._transition(item_id, ItemStatus.LOADING)

    def mark_done(self, item_id: str, fields: ExtractedFields) -> Optional[WorkItem]:
        return self._transition(item_id, ItemStatus.DONE, extracted=fields, error_message=None)

    def mark_error(self, item_id: str, message: str) -> Optional[WorkItem]:
        return self._transition(item_id, ItemStatus.ERROR, error_message=message or "Unknown error")

    def delete(self, item_id: str) -> bool:
        remaining = tuple(item for item in self._items if item.id != item_id)
        if len(remaining) == len(self._items):
            return False
        self._replace(remaining)
        logger.info("Deleted item %s (remaining=%d)", item_id, len(remaining))
        return True

    def _transition(self, item_id: str, status: ItemStatus, **changes) -> Optional[WorkItem]:
        for index, item in enumerate(self._items):
            if item.id != item_id:
                continue
            if status not in _ALLOWED_TRANSITIONS[item.status]:
                raise InvalidTransitionError(
                    f"Cannot move {item.filename} from {item.status.value} to {status.value}"
                )
            updated = item.transition(status, **changes)
            self._replace(self._items[:index] + (updated,) + self._items[index + 1:])
            return updated

        logger.debug("Discarding %s transition for unknown item %s", status.value, item_id)
        return None

import logging
from collections import OrderedDict
from typing import Iterable, Optional, Protocol

log = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000


class ProcessedMirror(Protocol):
    def remember_message_id(self, message_id: str) -> None:
        ...

    def recent_message_ids(self, limit: int) -> Iterable[str]:
        ...


class Deduplicator:
    """Bounded, insertion-ordered memory of handled message ids.

    When an insert pushes the window past `capacity`, the oldest half is
    dropped in one sweep so eviction cost stays amortised.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY, *, mirror: Optional[ProcessedMirror] = None):
        if capacity < 2:
            raise ValueError("capacity must be at least 2")
        self.capacity = capacity
        self.mirror = mirror
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._seen

    def load(self) -> int:
        """Warm the window from the mirror; returns the number of ids loaded."""
        if not self.mirror:
            return 0
        try:
            ids = list(self.mirror.recent_message_ids(self.capacity))
        except Exception as exc:
            log.warning("Failed to load processed message ids: %s", exc)
            return 0
        for message_id in ids:
            self._insert(str(message_id))
        return len(self._seen)

    def has_processed(self, message_id: str) -> bool:
        return message_id in self._seen

    def mark_processed(self, message_id: str) -> None:
        if message_id in self._seen:
            return
        self._insert(message_id)
        if self.mirror:
            try:
                self.mirror.remember_message_id(message_id)
            except Exception as exc:
                log.warning("Failed to mirror processed id %s: %s", message_id, exc)

    def _insert(self, message_id: str) -> None:
        self._seen[message_id] = None
        if len(self._seen) > self.capacity:
            keep = self.capacity // 2
            drop = len(self._seen) - keep
            for _ in range(drop):
                self._seen.popitem(last=False)
            log.debug("Dedup window trimmed by %d ids", drop)

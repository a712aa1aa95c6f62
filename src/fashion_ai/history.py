from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Final

DEFAULT_HISTORY_SIZE: Final[int] = 5


@dataclass(frozen=True)
class HistoryEntry:
    label: str
    probability: float
    image_ref: str
    timestamp: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "label": self.label,
            "probability": self.probability,
            "image_ref": self.image_ref,
            "timestamp": self.timestamp.isoformat(),
        }


class PredictionHistory:
    """Newest-first list of recent top predictions, bounded to ``capacity``.

    ``record`` is the only mutator; it inserts and evicts under one lock.
    """

    def __init__(self, capacity: int = DEFAULT_HISTORY_SIZE) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._lock = threading.Lock()
        self._entries: deque[HistoryEntry] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(
        self,
        label: str,
        probability: float,
        image_ref: str,
        timestamp: datetime | None = None,
    ) -> HistoryEntry:
        with self._lock:
            entry = HistoryEntry(
                label=label,
                probability=float(probability),
                image_ref=image_ref,
                timestamp=timestamp if timestamp is not None else datetime.now(UTC),
            )
            # maxlen drops the oldest entry from the right end
            self._entries.appendleft(entry)
        return entry

    def entries(self) -> tuple[HistoryEntry, ...]:
        with self._lock:
            return tuple(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

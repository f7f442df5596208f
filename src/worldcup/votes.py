"""
In-memory vote queue for one play session.

Votes are never written to disk, so a partially played world cup cannot leak
into another session or device.
"""
import threading
from typing import List, Optional

from .errors import AccumulatorFull
from .models import VoteRecord

DEFAULT_CAPACITY = 1024


class VoteAccumulator:
    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        self.capacity = capacity
        self._records: List[VoteRecord] = []
        # Re-entrant: a signal handler on the same thread may drain mid-append
        self._lock = threading.RLock()

    def append(self, record: VoteRecord):
        with self._lock:
            if len(self._records) >= self.capacity:
                raise AccumulatorFull(f"Vote queue is full ({self.capacity} records)")
            self._records.append(record)

    def drain(self) -> List[VoteRecord]:
        """Take every queued record and leave the queue empty."""
        with self._lock:
            records, self._records = self._records, []
        return records

    def remove_last(self, winner_id: str) -> Optional[VoteRecord]:
        """Remove the most recent record for this winner, if it is still queued."""
        with self._lock:
            for index in range(len(self._records) - 1, -1, -1):
                if self._records[index].winner_id == winner_id:
                    return self._records.pop(index)
        return None

    def clear(self):
        with self._lock:
            self._records = []

    def snapshot(self) -> List[VoteRecord]:
        with self._lock:
            return list(self._records)

    def size(self) -> int:
        with self._lock:
            return len(self._records)

    def __len__(self):
        return self.size()

    def __repr__(self):
        return f"VoteAccumulator(size={self.size()}, capacity={self.capacity})"

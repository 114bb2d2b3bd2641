from __future__ import annotations

import threading
from typing import List, Optional

import numpy as np

from .types import RECORD_SIZE, Detection

MAX_OUTPUT_BBOX_COUNT = 1000


class CandidateBuffer:
    """
    Fixed-capacity arena of candidate records for one image.

    Writers reserve slots with `reserve(n)`, an atomic fetch-and-add on the write
    cursor. A reservation that starts at or past capacity returns None and the
    caller drops its records; a partial reservation returns only the slots that fit.
    Records are (cx, cy, w, h, conf, class_id) float32 rows.
    """

    def __init__(self, capacity: int = MAX_OUTPUT_BBOX_COUNT):
        if capacity <= 0:
            raise ValueError(f"capacity must be > 0, got {capacity}")
        self.capacity = int(capacity)
        self._records = np.zeros((self.capacity, RECORD_SIZE), dtype=np.float32)
        self._cursor = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return self.count

    @property
    def count(self) -> int:
        return min(self._cursor, self.capacity)

    @property
    def dropped(self) -> int:
        """Records requested after the buffer filled up."""
        return max(0, self._cursor - self.capacity)

    def reset(self) -> None:
        with self._lock:
            self._cursor = 0

    def reserve(self, n: int = 1) -> Optional[slice]:
        if n <= 0:
            return None
        with self._lock:
            start = self._cursor
            self._cursor += n
        if start >= self.capacity:
            return None
        return slice(start, min(start + n, self.capacity))

    def push(self, records: np.ndarray) -> int:
        """
        Reserve room for `records` (N, 6) and copy in what fits. Returns the number written.
        """

        records = np.asarray(records, dtype=np.float32).reshape(-1, RECORD_SIZE)
        slots = self.reserve(records.shape[0])
        if slots is None:
            return 0
        written = slots.stop - slots.start
        self._records[slots] = records[:written]
        return written

    def records(self) -> np.ndarray:
        return self._records[: self.count]

    def candidates(self) -> List[Detection]:
        return [Detection.from_record(r) for r in self.records()]

    def to_flat(self) -> np.ndarray:
        """
        Flat float32 layout: [count, rec_0 (6 floats), rec_1, ...] sized 1 + capacity * 6.
        """

        flat = np.zeros(1 + self.capacity * RECORD_SIZE, dtype=np.float32)
        flat[0] = self.count
        flat[1:] = self._records.reshape(-1)
        return flat

    @classmethod
    def from_flat(cls, flat: np.ndarray, capacity: Optional[int] = None) -> "CandidateBuffer":
        flat = np.asarray(flat, dtype=np.float32).reshape(-1)
        if flat.size < 1:
            raise ValueError("flat buffer is empty")
        stored = (flat.size - 1) // RECORD_SIZE
        if capacity is None:
            capacity = max(stored, 1)
        buf = cls(capacity)
        count = min(int(flat[0]), stored, buf.capacity)
        if count > 0:
            buf.push(flat[1 : 1 + count * RECORD_SIZE])
        return buf

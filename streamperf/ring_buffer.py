"""Thread-safe bounded history for measurement samples.

Unlike a producer/consumer queue, writes never fail: once the buffer is at
capacity the oldest sample is evicted to make room for the newest.
"""

import logging
import threading
import time
from collections import deque
from typing import Iterator, Optional

from streamperf.models import Sample

logger = logging.getLogger(__name__)


class RingBuffer:
    """Bounded, thread-safe ring buffer of timestamped samples."""

    def __init__(self, capacity: int = 20):
        """Initialize ring buffer.

        Args:
            capacity: Maximum number of samples retained (default 20)
        """
        if capacity < 1:
            raise ValueError(f"Capacity must be >= 1, got {capacity}")

        self.capacity = capacity
        self._samples: deque[Sample] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self.evicted = 0

    def append(self, value: float, timestamp: Optional[float] = None) -> Sample:
        """Append a sample, evicting the oldest when full.

        Args:
            value: Measured value
            timestamp: Measurement time (seconds since epoch); defaults to now

        Returns:
            The stored sample
        """
        sample = Sample(value=value, timestamp=time.time() if timestamp is None else timestamp)
        with self._lock:
            if len(self._samples) == self.capacity:
                self.evicted += 1
            self._samples.append(sample)
        return sample

    def values(self) -> list[float]:
        """Return sample values, oldest first."""
        with self._lock:
            return [s.value for s in self._samples]

    def snapshot(self) -> list[Sample]:
        """Return a copy of the stored samples, oldest first."""
        with self._lock:
            return list(self._samples)

    def latest(self) -> Optional[Sample]:
        """Return the newest sample, or None if empty."""
        with self._lock:
            return self._samples[-1] if self._samples else None

    def clear(self) -> None:
        """Remove all samples."""
        with self._lock:
            self._samples.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    def __iter__(self) -> Iterator[Sample]:
        return iter(self.snapshot())

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"RingBuffer(capacity={self.capacity}, size={len(self)})"

"""Fixed-capacity rolling time series for a single entity."""

from __future__ import annotations

import math
from collections import deque
from collections.abc import Callable

from entityfeed.ingestion.normalize import now_ms
from entityfeed.models.sample import Sample


class RollingBuffer:
    """Circular buffer of ``(timestamp, value)`` samples.

    Capacity is fixed at construction.  Pushing onto a full buffer evicts
    the oldest sample, so memory stays constant no matter how fast the
    feed runs.  Samples are kept in insertion order; callers push in
    non-decreasing timestamp order.
    """

    def __init__(self, capacity: int, *, clock: Callable[[], int] = now_ms) -> None:
        if capacity < 1:
            raise ValueError("RollingBuffer capacity must be at least 1")
        self._capacity = capacity
        self._clock = clock
        self._timestamps: deque[int] = deque(maxlen=capacity)
        self._values: deque[float] = deque(maxlen=capacity)
        self._pushes = 0
        self._evictions = 0
        self._queries = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def is_full(self) -> bool:
        return len(self._timestamps) == self._capacity

    def __len__(self) -> int:
        return len(self._timestamps)

    def push(self, timestamp: int, value: float) -> None:
        """Append a sample, evicting the oldest one when full."""
        if self.is_full:
            self._evictions += 1
        self._timestamps.append(int(timestamp))
        self._values.append(float(value))
        self._pushes += 1

    def get_arrays(self) -> tuple[list[int], list[float]]:
        """Return ``(timestamps, values)`` oldest-first as fresh lists."""
        self._queries += 1
        return list(self._timestamps), list(self._values)

    def samples(self) -> list[Sample]:
        """Return the buffered samples oldest-first."""
        self._queries += 1
        return [Sample(t, v) for t, v in zip(self._timestamps, self._values, strict=True)]

    def slice_since(self, window_ms: float) -> tuple[list[int], list[float]]:
        """Return samples with ``timestamp >= now - window_ms``, oldest-first.

        An empty pair is returned when nothing qualifies or when *window_ms*
        is not a positive finite number.
        """
        self._queries += 1
        if not self._timestamps or not math.isfinite(window_ms) or window_ms <= 0:
            return [], []

        cutoff = self._clock() - window_ms
        timestamps = list(self._timestamps)
        start = len(timestamps)
        for index, ts in enumerate(timestamps):
            if ts >= cutoff:
                start = index
                break
        values = list(self._values)
        return timestamps[start:], values[start:]

    def last(self) -> Sample | None:
        """Most recently pushed sample, or ``None`` when empty."""
        if not self._timestamps:
            return None
        return Sample(self._timestamps[-1], self._values[-1])

    def first(self) -> Sample | None:
        """Oldest retained sample, or ``None`` when empty."""
        if not self._timestamps:
            return None
        return Sample(self._timestamps[0], self._values[0])

    def clear(self) -> None:
        self._timestamps.clear()
        self._values.clear()

    def stats(self) -> dict[str, float | int]:
        size = len(self._timestamps)
        return {
            "capacity": self._capacity,
            "size": size,
            "utilization": size / self._capacity,
            "pushes": self._pushes,
            "evictions": self._evictions,
            "queries": self._queries,
        }

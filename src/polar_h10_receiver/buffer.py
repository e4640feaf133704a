"""Thread-safe ring buffer for decoded samples.

The buffer is written from the session's event loop and read from the monitor's
web callbacks, which run on other threads. Indices are monotonic so a reader can
tell when it fell behind and samples were overwritten.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Optional, Sequence


# Trailing window for the ingest rate, and the minimum history before it is reported
RATE_WINDOW_SECONDS = 5.0
RATE_MIN_SPAN_SECONDS = 1.0


@dataclass
class BufferStats:
    """Fill level and ingest rate of a ``SampleBuffer``.

    ``sample_rate`` counts the samples appended during the trailing
    ``window`` seconds and divides by the window (or by the elapsed time while
    the first window fills). Samples of one notification arrive back to back,
    so the rate stays 0.0 until ``min_span`` seconds of history exist; a rate
    taken over a single burst would be meaningless.

    Attributes:
        fill_level: Samples currently held by the buffer.
        sample_rate: Samples per second over the trailing window.
        last_update: Epoch time of the last append, 0.0 before any.
        first_update: Epoch time of the first append, 0.0 before any.
    """

    fill_level: int = 0
    sample_rate: float = 0.0
    last_update: float = 0.0
    first_update: float = 0.0
    window: float = RATE_WINDOW_SECONDS
    min_span: float = RATE_MIN_SPAN_SECONDS
    _recent: deque = field(default_factory=deque, repr=False)
    _window_count: int = field(default=0, repr=False)

    def update(self, count: int, now: Optional[float] = None) -> None:
        """Record ``count`` appended samples at ``now`` (default: current time)."""
        current_time = time.time() if now is None else now
        if self.first_update == 0.0:
            self.first_update = current_time
        self._recent.append((current_time, count))
        self._window_count += count
        while self._recent and current_time - self._recent[0][0] > self.window:
            _, expired = self._recent.popleft()
            self._window_count -= expired

        span = min(self.window, current_time - self.first_update)
        self.sample_rate = self._window_count / span if span >= self.min_span else 0.0
        self.last_update = current_time


class SampleBuffer:
    """Circular buffer of sample value tuples with drop detection.

    Args:
        max_size: Samples retained before the oldest are overwritten. The
            default keeps about 15 seconds of ECG at 130 Hz.
    """

    def __init__(self, max_size: int = 2000):
        self._max_size = max_size
        self._buffer: deque[tuple[float, ...]] = deque(maxlen=max_size)
        self._lock = threading.RLock()
        self._stats = BufferStats()

        self._write_index = 0  # Monotonic counter for all writes
        self._base_index = 0  # Index of first element currently in buffer

    def append(self, values: Sequence[float]) -> None:
        """Append one sample.

        Args:
            values: Channel values of the sample (1 for ECG, 3 for ACC).

        Note:
            When the buffer is full the oldest sample is overwritten and the
            base index advances, which ``get_since_index()`` reports as a drop.
        """
        self.extend([values])

    def extend(self, rows: Sequence[Sequence[float]]) -> None:
        """Append several samples under one lock acquisition."""
        if not rows:
            return
        with self._lock:
            for values in rows:
                if len(self._buffer) == self._max_size:
                    self._base_index += 1
                self._buffer.append(tuple(values))
                self._write_index += 1
            self._stats.fill_level = len(self._buffer)
            self._stats.update(len(rows))

    def get_recent(self, count: int) -> list[tuple[float, ...]]:
        """Return the newest ``count`` samples, oldest first."""
        with self._lock:
            if count <= 0:
                return []
            return list(self._buffer)[-count:]

    def get_since_index(
        self, last_index: int
    ) -> tuple[list[tuple[float, ...]], int, bool]:
        """Return samples written after ``last_index``.

        Returns:
            ``(samples, next_index, dropped)``. ``dropped`` is True when some
            samples after ``last_index`` were already overwritten; all retained
            samples are returned in that case.
        """
        with self._lock:
            dropped = last_index < self._base_index
            if dropped:
                return list(self._buffer), self._write_index, True

            start_offset = last_index - self._base_index
            if start_offset >= len(self._buffer):
                return [], self._write_index, False
            return list(self._buffer)[start_offset:], self._write_index, False

    def clear(self) -> None:
        """Drop every sample and reset the indices and statistics.

        Note:
            Readers holding an index from before the clear must restart from 0.
        """
        with self._lock:
            self._buffer.clear()
            self._stats = BufferStats()
            self._write_index = 0
            self._base_index = 0

    @property
    def stats(self) -> BufferStats:
        with self._lock:
            return self._stats

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._buffer)

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def current_write_index(self) -> int:
        with self._lock:
            return self._write_index

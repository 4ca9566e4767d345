"""Thread-safe timestamped sample buffers.

Each sensor stream owns one buffer with its own lock, so a producer on one
stream never waits on another stream. Readers copy a window under the lock and
do all further work on the copy.
"""

from __future__ import annotations

import bisect
import logging
import threading
from collections import deque
from typing import Generic, Protocol, TypeVar

logger = logging.getLogger(__name__)


class Timestamped(Protocol):
    """Anything with a `timestamp` attribute in seconds."""

    timestamp: float


SampleT = TypeVar("SampleT", bound=Timestamped)


class SampleBuffer(Generic[SampleT]):
    """Bounded, time-ordered sample queue for one sensor stream.

    Producers append with `push`; the oldest sample is evicted once the
    capacity is reached. Samples are kept in non-decreasing timestamp order: a
    sample older than the newest stored one is dropped, never inserted.

    Example usage:
        buffer = SampleBuffer[GyroSample](capacity=200, name="gyro")
        buffer.push(sample)
        recent = buffer.snapshot_since(last_correction_timestamp)
    """

    def __init__(self, capacity: int, name: str = "samples") -> None:
        """Initialize buffer.

        Args:
            capacity: Maximum number of samples kept
            name: Stream name used in log messages
        """
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")

        self._name = name
        self._capacity = capacity
        self._samples: deque[SampleT] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._num_out_of_order = 0

    def push(self, sample: SampleT) -> bool:
        """Append a sample, evicting the oldest one past capacity.

        Args:
            sample: New sample

        Returns:
            True if stored, False if dropped for being older than the newest
            stored sample
        """
        accepted, _ = self.push_evicting(sample)
        return accepted

    def push_evicting(self, sample: SampleT) -> tuple[bool, SampleT | None]:
        """Append a sample and return the one evicted to make room.

        Args:
            sample: New sample

        Returns:
            Tuple of (stored, evicted sample or None)
        """
        evicted = None
        with self._lock:
            if self._samples and sample.timestamp < self._samples[-1].timestamp:
                self._num_out_of_order += 1
                newest = self._samples[-1].timestamp
                accepted = False
            else:
                if len(self._samples) == self._capacity:
                    evicted = self._samples.popleft()
                self._samples.append(sample)
                accepted = True

        if not accepted:
            logger.debug(
                "Dropped out-of-order %s sample at t=%.6f (newest t=%.6f)",
                self._name,
                sample.timestamp,
                newest,
            )
        return accepted, evicted

    def snapshot_since(self, timestamp: float | None) -> list[SampleT]:
        """Copy all samples strictly newer than `timestamp`.

        Args:
            timestamp: Lower bound (exclusive), or None for all samples

        Returns:
            Samples in ascending timestamp order
        """
        with self._lock:
            samples = list(self._samples)

        if timestamp is None:
            return samples

        # Binary search on the copy, outside the lock
        timestamps = [s.timestamp for s in samples]
        start_idx = bisect.bisect_right(timestamps, timestamp)
        return samples[start_idx:]

    def discard_before(self, timestamp: float) -> int:
        """Drop samples strictly older than `timestamp`.

        Args:
            timestamp: Oldest timestamp to keep

        Returns:
            Number of samples removed
        """
        removed = 0
        with self._lock:
            while self._samples and self._samples[0].timestamp < timestamp:
                self._samples.popleft()
                removed += 1
        return removed

    def latest(self) -> SampleT | None:
        """Return the newest sample, or None if empty."""
        with self._lock:
            return self._samples[-1] if self._samples else None

    def clear(self) -> None:
        """Remove all samples."""
        with self._lock:
            self._samples.clear()
            self._num_out_of_order = 0

    @property
    def capacity(self) -> int:
        """Maximum number of stored samples."""
        return self._capacity

    @property
    def name(self) -> str:
        """Stream name."""
        return self._name

    @property
    def num_out_of_order(self) -> int:
        """Number of samples dropped for arriving out of order."""
        return self._num_out_of_order

    def __len__(self) -> int:
        """Number of stored samples."""
        with self._lock:
            return len(self._samples)


class LatestSampleCell(Generic[SampleT]):
    """Single-slot cell holding only the most recent sample.

    Each `put` overwrites the previous value.
    """

    def __init__(self) -> None:
        self._sample: SampleT | None = None
        self._lock = threading.Lock()

    def put(self, sample: SampleT) -> None:
        """Replace the stored sample."""
        with self._lock:
            self._sample = sample

    def get(self) -> SampleT | None:
        """Return the stored sample, or None if empty."""
        with self._lock:
            return self._sample

    def clear(self) -> None:
        """Empty the cell."""
        with self._lock:
            self._sample = None

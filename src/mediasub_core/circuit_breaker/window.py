"""Time-bucketed rolling window of call outcomes."""

from collections import deque
from dataclasses import dataclass


@dataclass(slots=True)
class _Bucket:
    index: int
    successes: int = 0
    failures: int = 0


class RollingWindow:
    """Count successes and failures over the most recent ``duration`` seconds.

    The window is split into ``buckets`` equal slices; whole slices expire at
    once, so the effective horizon is between ``duration - slice`` and
    ``duration`` seconds.
    """

    def __init__(self, *, duration: float, buckets: int) -> None:
        if duration <= 0:
            raise ValueError("duration must be > 0")
        if buckets < 1:
            raise ValueError("buckets must be >= 1")
        self._bucket_width = duration / buckets
        self._max_buckets = buckets
        self._buckets: deque[_Bucket] = deque()

    def _current(self, now: float) -> _Bucket:
        index = int(now // self._bucket_width)
        self._expire(index)
        if not self._buckets or self._buckets[-1].index != index:
            self._buckets.append(_Bucket(index=index))
        return self._buckets[-1]

    def _expire(self, current_index: int) -> None:
        oldest_live = current_index - self._max_buckets + 1
        while self._buckets and self._buckets[0].index < oldest_live:
            self._buckets.popleft()

    def record_success(self, now: float) -> None:
        self._current(now).successes += 1

    def record_failure(self, now: float) -> None:
        self._current(now).failures += 1

    def counts(self, now: float) -> tuple[int, int]:
        """Return ``(successes, failures)`` still inside the window."""
        self._expire(int(now // self._bucket_width))
        successes = sum(bucket.successes for bucket in self._buckets)
        failures = sum(bucket.failures for bucket in self._buckets)
        return successes, failures

    def reset(self) -> None:
        self._buckets.clear()

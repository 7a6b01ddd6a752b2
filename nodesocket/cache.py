"""Time-ordered cache of received packets, used for rate checks and metrics.

The cache keeps `time_window` seconds of entries. Of those, only the ones
received within the last `ENFORCED_SIZE_TIME` seconds count against `target`.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Generic, TypeVar

ENFORCED_SIZE_TIME = 1
"""Seconds over which `target` is enforced; must be below the time window."""

T = TypeVar("T")


@dataclass(frozen=True)
class ReceivedPacket(Generic[T]):
    """An entry of the cache: what was received and when."""

    content: T
    received: float


class ReceivedPacketCache(Generic[T]):
    """Holds `time_window` seconds of entries, at most `target` per enforced second."""

    def __init__(
        self,
        target: int,
        time_window: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.target = target
        self.time_window = time_window
        self.within_enforced_time = 0
        self._clock = clock
        self._inner: deque[ReceivedPacket[T]] = deque()

    def reset(self) -> None:
        """Drop entries older than the time window and recount recent ones."""
        now = self._clock()
        window_start = now - self.time_window
        while self._inner and not self._inner[0].received > window_start:
            self._inner.popleft()

        enforced_start = now - ENFORCED_SIZE_TIME
        count = 0
        for packet in reversed(self._inner):
            if packet.received > enforced_start:
                count += 1
            else:
                break
        self.within_enforced_time = count

    def cache_insert(self, content: T) -> bool:
        """Insert after expiring old entries; False if the target is reached."""
        self.reset()
        if self.within_enforced_time >= self.target:
            return False
        self._inner.append(ReceivedPacket(content, self._clock()))
        self.within_enforced_time += 1
        return True

    def __len__(self) -> int:
        return len(self._inner)

    def __iter__(self) -> Iterator[ReceivedPacket[T]]:
        return iter(self._inner)
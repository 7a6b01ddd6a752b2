"""GCRA based rate limiting of inbound requests, per node, per IP and in total."""

from __future__ import annotations

import enum
import math
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

_U64_MAX = 2**64 - 1

Duration = float | timedelta


def _to_nanos(duration: Duration) -> int:
    """Convert seconds (or a timedelta) into whole nanoseconds."""
    if isinstance(duration, timedelta):
        nanos = (duration // timedelta(microseconds=1)) * 1000
    else:
        nanos = int(round(float(duration) * 1_000_000_000))
    if nanos < 0:
        raise ValueError("durations must not be negative")
    return nanos


def _to_seconds(duration: Duration) -> float:
    if isinstance(duration, timedelta):
        return duration.total_seconds()
    return float(duration)


def _round_half_away(value: float) -> float:
    return float(math.copysign(math.floor(abs(value) + 0.5), value))


@dataclass(frozen=True)
class Quota:
    """`max_tokens` tokens replenished in full every `replenish_all_every`.

    One token comes back every `replenish_all_every / max_tokens`, and bursts
    of up to `max_tokens` are allowed. A `max_tokens` of 1 gives a hard limit.
    """

    replenish_all_every: Duration
    max_tokens: int


class RateLimitedError(Exception):
    """A request does not conform to the rate limit."""


class TooLargeError(RateLimitedError):
    """The tokens asked for exceed what the bucket can ever hold."""

    def __init__(self) -> None:
        super().__init__("required tokens exceed the maximum")


class TooSoonError(RateLimitedError):
    """The request does not fit the quota yet; `retry_after` says how long to wait."""

    def __init__(self, retry_after: timedelta) -> None:
        super().__init__(f"request too soon, retry after {retry_after}")
        self.retry_after = retry_after


class LimitKind(enum.Enum):
    """Which limit a request counts against."""

    TOTAL = "total"
    NODE_ID = "node_id"
    IP = "ip"


class Limiter:
    """Per-key token bucket following the GCRA, with times in nanoseconds."""

    def __init__(self, tau: int, t: int) -> None:
        self.tau = tau
        self.t = t
        self._tat_per_key: dict[Hashable, int] = {}

    @classmethod
    def from_quota(cls, quota: Quota) -> Limiter:
        if quota.max_tokens <= 0:
            raise ValueError("Max number of tokens should be positive")
        tau = _to_nanos(quota.replenish_all_every)
        if tau == 0:
            raise ValueError("Replenish time must be positive")
        t = tau // quota.max_tokens
        if tau > _U64_MAX or t > _U64_MAX:
            raise ValueError("total replenish time is too long")
        return cls(tau, t)

    def allows(self, time_since_start: Duration, key: Hashable, tokens: int) -> None:
        """Accept `tokens` for `key` at the given time, or raise RateLimitedError."""
        now = _to_nanos(time_since_start)
        additional_time = self.t * tokens
        if additional_time > self.tau:
            raise TooLargeError()
        # A new key starts with a full bucket.
        tat = self._tat_per_key.setdefault(key, now)
        earliest_time = max(tat + additional_time - self.tau, 0)
        if now < earliest_time:
            raise TooSoonError(timedelta(microseconds=(earliest_time - now) / 1000))
        self._tat_per_key[key] = max(now, tat) + additional_time

    def prune(self, time_limit: Duration) -> None:
        """Forget keys whose bucket is full by `time_limit`."""
        limit = _to_nanos(time_limit)
        self._tat_per_key = {
            key: tat for key, tat in self._tat_per_key.items() if tat >= limit
        }

    def __len__(self) -> int:
        return len(self._tat_per_key)

    def __contains__(self, key: object) -> bool:
        return key in self._tat_per_key


class RateLimiter:
    """Rate limits requests in total and, optionally, per node id and per IP."""

    def __init__(
        self,
        total_rl: Limiter,
        node_rl: Limiter | None,
        ip_rl: Limiter | None,
        total_requests_per_second: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._total_rl = total_rl
        self._node_rl = node_rl
        self._ip_rl = ip_rl
        self._total_requests_per_second = total_requests_per_second
        self._clock = clock
        self._init_time = clock()

    def _elapsed(self) -> float:
        return max(self._clock() - self._init_time, 0.0)

    def allows(self, kind: LimitKind, key: Any = None) -> None:
        """Count one request of `kind` for `key`; raise RateLimitedError if refused."""
        elapsed = self._elapsed()
        tokens = 1
        match kind:
            case LimitKind.TOTAL:
                self._total_rl.allows(elapsed, None, tokens)
            case LimitKind.IP:
                if self._ip_rl is not None:
                    self._ip_rl.allows(elapsed, key, tokens)
            case LimitKind.NODE_ID:
                if self._node_rl is not None:
                    self._node_rl.allows(elapsed, key, tokens)

    def total_requests_per_second(self) -> float:
        """The expected total requests per second, used to size metric caches."""
        return self._total_requests_per_second

    def prune(self) -> None:
        """Drop stale entries; meant to be called regularly."""
        elapsed = self._elapsed()
        self._total_rl.prune(elapsed)
        if self._ip_rl is not None:
            self._ip_rl.prune(elapsed)
        if self._node_rl is not None:
            self._node_rl.prune(elapsed)


@dataclass
class RateLimiterBuilder:
    """Builds a RateLimiter; the total quota must be set, the others are optional."""

    clock: Callable[[], float] = field(default=time.monotonic)
    total_quota: Quota | None = None
    node_quota: Quota | None = None
    ip_quota: Quota | None = None

    def total_one_every(self, time_period: Duration) -> RateLimiterBuilder:
        self.total_quota = Quota(time_period, 1)
        return self

    def node_one_every(self, time_period: Duration) -> RateLimiterBuilder:
        self.node_quota = Quota(time_period, 1)
        return self

    def ip_one_every(self, time_period: Duration) -> RateLimiterBuilder:
        self.ip_quota = Quota(time_period, 1)
        return self

    def total_n_every(self, n: int, time_period: Duration) -> RateLimiterBuilder:
        self.total_quota = Quota(time_period, n)
        return self

    def node_n_every(self, n: int, time_period: Duration) -> RateLimiterBuilder:
        self.node_quota = Quota(time_period, n)
        return self

    def ip_n_every(self, n: int, time_period: Duration) -> RateLimiterBuilder:
        self.ip_quota = Quota(time_period, n)
        return self

    def build(self) -> RateLimiter:
        if self.total_quota is None:
            raise ValueError("Total quota not specified and must be set.")
        total_quota = self.total_quota
        total_rl = Limiter.from_quota(total_quota)
        node_rl = Limiter.from_quota(self.node_quota) if self.node_quota else None
        ip_rl = Limiter.from_quota(self.ip_quota) if self.ip_quota else None

        seconds = _to_seconds(total_quota.replenish_all_every)
        if total_quota.max_tokens == 1:
            per_second = _round_half_away(1.0 / seconds)
        else:
            # Doubled to account for bursts.
            per_second = _round_half_away(2.0 * total_quota.max_tokens / seconds)

        return RateLimiter(total_rl, node_rl, ip_rl, per_second, clock=self.clock)
"""Packet filter deciding whether inbound UDP packets are accepted or rejected."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Generic, TypeVar

from .cache import ReceivedPacketCache
from .rate_limiter import LimitKind, RateLimitedError, RateLimiter

log = logging.getLogger(__name__)

KNOWN_ADDRS_SIZE = 500
"""Maximum number of IPs retained when counting node ids per IP."""

BANNED_NODES_SIZE = 50
"""Number of IPs with banned nodes retained at any given time."""

DEFAULT_PACKETS_PER_SECOND = 20
"""Packets per second recorded for metrics when no rate limiter is given."""

SocketAddr = tuple[str, int]

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class _LruCache(Generic[K, V]):
    """A bounded mapping that evicts the least recently used entry."""

    def __init__(self, capacity: int) -> None:
        self._capacity = capacity
        self._items: OrderedDict[K, V] = OrderedDict()

    def get(self, key: K) -> V | None:
        if key not in self._items:
            return None
        self._items.move_to_end(key)
        return self._items[key]

    def put(self, key: K, value: V) -> None:
        self._items[key] = value
        self._items.move_to_end(key)
        while len(self._items) > self._capacity:
            self._items.popitem(last=False)

    def pop(self, key: K) -> V | None:
        return self._items.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)


def _seconds(duration: float | timedelta) -> float:
    if isinstance(duration, timedelta):
        return duration.total_seconds()
    return float(duration)


@dataclass
class FilterConfig:
    """Configuration of the packet filter."""

    enabled: bool = True
    rate_limiter: RateLimiter | None = None
    max_nodes_per_ip: int | None = 10
    max_bans_per_ip: int | None = 5


@dataclass(frozen=True)
class NodeAddress:
    """A node id together with the socket address it was seen at."""

    socket_addr: SocketAddr
    node_id: bytes

    @property
    def ip(self) -> str:
        return self.socket_addr[0]

    def __str__(self) -> str:
        host, port = self.socket_addr
        return f"Node: {self.node_id.hex()}, addr: {host}:{port}"


@dataclass
class PermitBanList:
    """IPs and node ids that are always permitted or banned.

    Bans map to the monotonic time they expire at, or None for no expiry.
    """

    permit_ips: set[str] = field(default_factory=set)
    ban_ips: dict[str, float | None] = field(default_factory=dict)
    permit_nodes: set[bytes] = field(default_factory=set)
    ban_nodes: dict[bytes, float | None] = field(default_factory=dict)


@dataclass
class FilterMetrics:
    """Metrics gathered from unsolicited packets over a moving window."""

    moving_window: int = 5
    unsolicited_requests_per_window: int = 0
    requests_per_ip_per_second: dict[str, float] = field(default_factory=dict)


class Filter:
    """Decides whether unsolicited inbound packets are accepted."""

    def __init__(
        self,
        config: FilterConfig,
        ban_duration: float | timedelta | None = None,
        *,
        permit_ban_list: PermitBanList | None = None,
        metrics: FilterMetrics | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.enabled = config.enabled
        self.rate_limiter = config.rate_limiter
        self.max_nodes_per_ip = config.max_nodes_per_ip
        self.max_bans_per_ip = config.max_bans_per_ip
        self.ban_duration = None if ban_duration is None else _seconds(ban_duration)
        self.permit_ban_list = permit_ban_list if permit_ban_list is not None else PermitBanList()
        self.metrics = metrics if metrics is not None else FilterMetrics()
        self._clock = clock

        if self.rate_limiter is not None:
            expected = int(round(self.rate_limiter.total_requests_per_second()))
        else:
            expected = DEFAULT_PACKETS_PER_SECOND
        self.raw_packets_received: ReceivedPacketCache[SocketAddr] = ReceivedPacketCache(
            expected, self.metrics.moving_window, clock=clock
        )
        self.known_addrs: _LruCache[str, set[bytes]] = _LruCache(KNOWN_ADDRS_SIZE)
        self.banned_nodes: _LruCache[str, int] = _LruCache(BANNED_NODES_SIZE)

    def _ban_timeout(self) -> float | None:
        if self.ban_duration is None:
            return None
        return self._clock() + self.ban_duration

    def initial_pass(self, src: SocketAddr) -> bool:
        """First check on an unsolicited packet: should it be decoded at all."""
        ip = src[0]
        lists = self.permit_ban_list
        if ip in lists.permit_ips:
            return True
        if ip in lists.ban_ips:
            log.debug("Dropped unsolicited packet from banned src: %s", src)
            return False

        # Beyond the cache target the entry is simply not recorded; the rate
        # limiter enforces the limits.
        self.raw_packets_received.cache_insert(src)

        self.metrics.unsolicited_requests_per_window = len(self.raw_packets_received)
        per_ip: dict[str, float] = {}
        share = 1.0 / self.metrics.moving_window
        for packet in self.raw_packets_received:
            packet_ip = packet.content[0]
            per_ip[packet_ip] = per_ip.get(packet_ip, 0.0) + share
        self.metrics.requests_per_ip_per_second = per_ip

        if not self.enabled:
            return True

        if self.rate_limiter is not None:
            try:
                self.rate_limiter.allows(LimitKind.IP, ip)
            except RateLimitedError:
                log.warning("Banning IP for excessive requests: %s", ip)
                lists.ban_ips[ip] = self._ban_timeout()
                return False
            try:
                self.rate_limiter.allows(LimitKind.TOTAL)
            except RateLimitedError:
                log.debug("Dropped unsolicited packet from RPC limit: %s", ip)
                return False
        return True

    def final_pass(self, node_address: NodeAddress, packet: Any) -> bool:
        """Second check, once the sending node id is known."""
        lists = self.permit_ban_list
        node_id = node_address.node_id
        if node_id in lists.permit_nodes:
            return True
        if node_id in lists.ban_nodes:
            log.debug("Dropped unsolicited packet from banned node_id: %s", node_address)
            return False

        if not self.enabled:
            return True

        ip = node_address.ip
        if self.rate_limiter is not None:
            try:
                self.rate_limiter.allows(LimitKind.NODE_ID, node_id)
            except RateLimitedError:
                log.warning(
                    "Node has exceeded its request limit and is now banned %s",
                    node_id.hex(),
                )
                ban_timeout = self._ban_timeout()
                lists.ban_nodes[node_id] = ban_timeout
                if self.max_bans_per_ip is not None:
                    banned_count = self.banned_nodes.get(ip)
                    if banned_count is not None:
                        banned_count += 1
                        self.banned_nodes.put(ip, banned_count)
                        if banned_count >= self.max_bans_per_ip:
                            lists.ban_ips[ip] = ban_timeout
                    else:
                        self.banned_nodes.put(ip, 0)
                return False

        if self.max_nodes_per_ip is not None:
            known = self.known_addrs.get(ip)
            if known is not None:
                known.add(node_id)
                known_nodes = len(known)
            else:
                self.known_addrs.put(ip, {node_id})
                known_nodes = 1

            if known_nodes >= self.max_nodes_per_ip:
                log.warning("IP has exceeded its node-id limit and is now banned %s", ip)
                lists.ban_ips[ip] = self._ban_timeout()
                self.known_addrs.pop(ip)
                return False

        return True

    def prune_limiter(self) -> None:
        """Drop stale rate limiter entries."""
        if self.rate_limiter is not None:
            self.rate_limiter.prune()
"""Task that handles UDP packets as they arrive.

Every packet passes the filter before it is decoded and handed over.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Protocol

from .filter import (
    Filter,
    FilterConfig,
    FilterMetrics,
    NodeAddress,
    PermitBanList,
    SocketAddr,
)
from .send import MAX_PACKET_SIZE

log = logging.getLogger(__name__)

PRUNE_INTERVAL = 30.0
"""Seconds between prunes of the rate limiter."""

HANDLER_CHANNEL_SIZE = 30
"""Number of decoded packets that may wait to be consumed."""


class DecodedPacket(Protocol):
    """What a decoder produces from a datagram."""

    header: Any
    message: bytes

    def src_id(self) -> bytes | None: ...


Decoder = Callable[[bytes, bytes], tuple[DecodedPacket, bytes]]
"""Takes the local node id and a datagram and returns the packet and its
authenticated data; raises ValueError on malformed input."""


@dataclass
class InboundPacket:
    """A filtered and decoded inbound packet."""

    src_address: SocketAddr
    header: Any
    message: bytes
    authenticated_data: bytes


@dataclass
class RecvHandlerConfig:
    """Everything the receive handler needs."""

    filter_config: FilterConfig
    local_node_id: bytes
    decode: Decoder
    datagrams: asyncio.Queue[tuple[bytes, SocketAddr]] = field(
        default_factory=asyncio.Queue
    )
    expected_responses: Mapping[SocketAddr, int] = field(default_factory=dict)
    ban_duration: float | timedelta | None = None
    permit_ban_list: PermitBanList | None = None
    metrics: FilterMetrics | None = None
    prune_interval: float = PRUNE_INTERVAL
    max_packet_size: int = MAX_PACKET_SIZE
    clock: Callable[[], float] = time.monotonic


class RecvHandler:
    """Filters and decodes inbound datagrams and queues the results in `packets`."""

    def __init__(self, config: RecvHandlerConfig) -> None:
        self._datagrams = config.datagrams
        self._decode = config.decode
        self._node_id = config.local_node_id
        self._filter_enabled = config.filter_config.enabled
        self._prune_interval = config.prune_interval
        self._max_packet_size = config.max_packet_size
        self.expected_responses = config.expected_responses
        self.filter = Filter(
            config.filter_config,
            config.ban_duration,
            permit_ban_list=config.permit_ban_list,
            metrics=config.metrics,
            clock=config.clock,
        )
        self.packets: asyncio.Queue[InboundPacket] = asyncio.Queue(
            maxsize=HANDLER_CHANNEL_SIZE
        )
        self._stopped = asyncio.Event()

    async def handle_inbound(
        self, data: bytes, src_address: SocketAddr
    ) -> InboundPacket | None:
        """Filter, decode and queue one datagram; returns what was queued, if anything."""
        data = data[: self._max_packet_size]
        # Expected responses bypass the filter.
        permitted = src_address in self.expected_responses

        if not permitted and not self.filter.initial_pass(src_address):
            log.debug("Packet filtered from source: %s", src_address)
            return None

        try:
            packet, authenticated_data = self._decode(self._node_id, data)
        except ValueError as exc:
            log.debug("Packet decoding failed: %r", exc)
            return None

        # Challenge packets carry no source id and skip the second pass.
        node_id = packet.src_id()
        if node_id is not None:
            node_address = NodeAddress(socket_addr=src_address, node_id=node_id)
            if not permitted and not self.filter.final_pass(node_address, packet):
                return None

        inbound = InboundPacket(
            src_address=src_address,
            header=packet.header,
            message=packet.message,
            authenticated_data=authenticated_data,
        )
        await self.packets.put(inbound)
        return inbound

    def stop(self) -> None:
        """Ask the running handler to shut down."""
        self._stopped.set()

    async def _receive_one(self) -> None:
        data, src_address = await self._datagrams.get()
        await self.handle_inbound(data, src_address)

    async def _prune_periodically(self) -> None:
        while True:
            await asyncio.sleep(self._prune_interval)
            self.filter.prune_limiter()

    async def run(self) -> None:
        """Handle datagrams as they arrive, until `stop` is called."""
        log.debug("Recv handler starting")
        stopper = asyncio.ensure_future(self._stopped.wait())
        pruner = (
            asyncio.ensure_future(self._prune_periodically())
            if self._filter_enabled
            else None
        )
        receiver: asyncio.Future[None] | None = None
        try:
            while True:
                receiver = asyncio.ensure_future(self._receive_one())
                done, _ = await asyncio.wait(
                    {receiver, stopper}, return_when=asyncio.FIRST_COMPLETED
                )
                if receiver in done:
                    receiver.result()
                    receiver = None
                    continue
                log.debug("Recv handler shutdown")
                return
        finally:
            pending = [task for task in (receiver, stopper, pruner) if task is not None]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
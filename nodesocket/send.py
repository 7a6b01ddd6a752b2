"""Task that encodes outbound packets and sends them over UDP."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

from .filter import NodeAddress, SocketAddr

log = logging.getLogger(__name__)

MAX_PACKET_SIZE = 1280
"""Largest datagram, in bytes, that is expected on the wire."""

HANDLER_CHANNEL_SIZE = 30
"""Number of outbound packets that may wait to be sent."""


class EncodablePacket(Protocol):
    """A packet that can encode itself for a destination node."""

    def encode(self, dst_node_id: bytes) -> bytes: ...


class DatagramSink(Protocol):
    """Anything datagrams can be sent through, such as a datagram transport."""

    def sendto(self, data: bytes, addr: SocketAddr) -> None: ...


@dataclass
class OutboundPacket:
    """A packet together with the node it is sent to."""

    node_address: NodeAddress
    packet: EncodablePacket


class SendHandler:
    """Sends queued outbound packets until stopped."""

    def __init__(
        self, transport: DatagramSink, *, max_packet_size: int = MAX_PACKET_SIZE
    ) -> None:
        self._transport = transport
        self._max_packet_size = max_packet_size
        self._queue: asyncio.Queue[OutboundPacket] = asyncio.Queue(
            maxsize=HANDLER_CHANNEL_SIZE
        )
        self._stopped = asyncio.Event()

    async def send(self, packet: OutboundPacket) -> None:
        """Queue a packet to be sent, waiting while the queue is full."""
        await self._queue.put(packet)

    def stop(self) -> None:
        """Ask the running handler to shut down."""
        self._stopped.set()

    def _transmit(self, outbound: OutboundPacket) -> None:
        destination = outbound.node_address
        encoded = outbound.packet.encode(destination.node_id)
        if len(encoded) > self._max_packet_size:
            log.warning(
                "Sending packet larger than max size: %d max: %d",
                len(encoded),
                self._max_packet_size,
            )
        try:
            self._transport.sendto(encoded, destination.socket_addr)
        except OSError as exc:
            log.debug("Could not send packet. Error: %r", exc)

    async def _send_next(self) -> None:
        self._transmit(await self._queue.get())

    async def run(self) -> None:
        """Send packets as they are queued, until `stop` is called."""
        log.debug("Send handler starting")
        stopper = asyncio.ensure_future(self._stopped.wait())
        sender: asyncio.Future[None] | None = None
        try:
            while True:
                sender = asyncio.ensure_future(self._send_next())
                done, _ = await asyncio.wait(
                    {sender, stopper}, return_when=asyncio.FIRST_COMPLETED
                )
                if sender in done:
                    sender.result()
                    sender = None
                    continue
                log.debug("Send handler shutdown")
                return
        finally:
            pending = [task for task in (sender, stopper) if task is not None]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
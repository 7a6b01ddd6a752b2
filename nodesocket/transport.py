"""A UDP socket with its send and receive handlers running alongside."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import MutableMapping
from dataclasses import dataclass, field
from datetime import timedelta

from .filter import FilterConfig, FilterMetrics, PermitBanList, SocketAddr
from .recv import Decoder, InboundPacket, RecvHandler, RecvHandlerConfig
from .send import OutboundPacket, SendHandler

log = logging.getLogger(__name__)


class _DatagramReceiver(asyncio.DatagramProtocol):
    """Queues every received datagram with its source address."""

    def __init__(self) -> None:
        self.datagrams: asyncio.Queue[tuple[bytes, SocketAddr]] = asyncio.Queue()

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        self.datagrams.put_nowait((data, (addr[0], addr[1])))

    def error_received(self, exc: Exception) -> None:
        log.debug("Socket error: %r", exc)


async def new_socket(
    socket_addr: SocketAddr,
) -> tuple[asyncio.DatagramTransport, _DatagramReceiver]:
    """Bind a UDP socket; received datagrams go to the protocol's `datagrams` queue."""
    loop = asyncio.get_running_loop()
    return await loop.create_datagram_endpoint(_DatagramReceiver, local_addr=socket_addr)


@dataclass
class SocketConfig:
    """Settings for opening a Socket."""

    socket_addr: SocketAddr
    local_node_id: bytes
    decode: Decoder
    filter_config: FilterConfig = field(default_factory=FilterConfig)
    ban_duration: float | timedelta | None = None
    expected_responses: MutableMapping[SocketAddr, int] = field(default_factory=dict)
    permit_ban_list: PermitBanList | None = None
    metrics: FilterMetrics | None = None


class Socket:
    """A bound UDP socket whose send and receive handlers run as tasks.

    Closing the socket stops both handlers.
    """

    def __init__(
        self,
        transport: asyncio.DatagramTransport,
        recv_handler: RecvHandler,
        send_handler: SendHandler,
    ) -> None:
        self._transport = transport
        self._recv_handler = recv_handler
        self._send_handler = send_handler
        self._tasks = [
            asyncio.create_task(recv_handler.run()),
            asyncio.create_task(send_handler.run()),
        ]
        self._closed = False

    @classmethod
    async def open(cls, config: SocketConfig) -> Socket:
        """Bind the socket and start its handlers."""
        transport, protocol = await new_socket(config.socket_addr)
        recv_handler = RecvHandler(
            RecvHandlerConfig(
                filter_config=config.filter_config,
                local_node_id=config.local_node_id,
                decode=config.decode,
                datagrams=protocol.datagrams,
                expected_responses=config.expected_responses,
                ban_duration=config.ban_duration,
                permit_ban_list=config.permit_ban_list,
                metrics=config.metrics,
            )
        )
        return cls(transport, recv_handler, SendHandler(transport))

    @property
    def local_address(self) -> SocketAddr:
        host, port = self._transport.get_extra_info("sockname")[:2]
        return (host, port)

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, packet: OutboundPacket) -> None:
        """Queue a packet for sending."""
        await self._send_handler.send(packet)

    async def recv(self) -> InboundPacket:
        """Wait for the next filtered and decoded inbound packet."""
        return await self._recv_handler.packets.get()

    async def close(self) -> None:
        """Stop both handlers and close the socket."""
        if self._closed:
            return
        self._closed = True
        self._send_handler.stop()
        self._recv_handler.stop()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._transport.close()

    async def __aenter__(self) -> Socket:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
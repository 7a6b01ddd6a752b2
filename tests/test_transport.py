import asyncio
import socket
from dataclasses import dataclass

import pytest

from nodesocket.filter import NodeAddress, PermitBanList
from nodesocket.send import OutboundPacket
from nodesocket.transport import Socket, SocketConfig, new_socket

LOOPBACK = ("127.0.0.1", 0)


@dataclass
class FakePacket:
    src: bytes | None
    header: bytes
    message: bytes

    def src_id(self):
        return self.src

    def encode(self, dst_node_id):
        return b"P" + self.src + self.header + self.message


def decode(local_node_id, data):
    if data[:1] != b"P":
        raise ValueError("unknown packet kind")
    return FakePacket(data[1:5], data[5:6], data[6:]), data[:6]


def make_config(node_id, **kwargs):
    return SocketConfig(socket_addr=LOOPBACK, local_node_id=node_id, decode=decode, **kwargs)


@pytest.mark.asyncio
async def test_new_socket_queues_received_datagrams():
    transport, protocol = await new_socket(LOOPBACK)
    host, port = transport.get_extra_info("sockname")[:2]
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as client:
        client.bind(LOOPBACK)
        client.sendto(b"ping", (host, port))
        client_addr = client.getsockname()
        data, addr = await asyncio.wait_for(protocol.datagrams.get(), 2)
    transport.close()
    assert data == b"ping"
    assert addr == client_addr


@pytest.mark.asyncio
async def test_two_sockets_exchange_packets():
    async with await Socket.open(make_config(b"aaaa")) as a:
        async with await Socket.open(make_config(b"bbbb")) as b:
            packet = FakePacket(b"aaaa", b"H", b"hello")
            await a.send(OutboundPacket(NodeAddress(b.local_address, b"bbbb"), packet))
            inbound = await asyncio.wait_for(b.recv(), 2)
            sender_address = a.local_address
    assert inbound.src_address == sender_address
    assert inbound.header == b"H"
    assert inbound.message == b"hello"
    assert inbound.authenticated_data == b"Paaaa" + b"H"


@pytest.mark.asyncio
async def test_banned_source_is_filtered_unless_response_expected():
    lists = PermitBanList(ban_ips={"127.0.0.1": None})
    receiver_config = make_config(b"bbbb", permit_ban_list=lists)
    async with await Socket.open(make_config(b"aaaa")) as a:
        async with await Socket.open(receiver_config) as b:
            target = NodeAddress(b.local_address, b"bbbb")
            await a.send(OutboundPacket(target, FakePacket(b"aaaa", b"H", b"dropped")))
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(b.recv(), 0.3)

            receiver_config.expected_responses[a.local_address] = 1
            await a.send(OutboundPacket(target, FakePacket(b"aaaa", b"H", b"allowed")))
            inbound = await asyncio.wait_for(b.recv(), 2)
    assert inbound.message == b"allowed"


@pytest.mark.asyncio
async def test_close_is_idempotent_and_marks_socket_closed():
    sock = await Socket.open(make_config(b"aaaa"))
    assert not sock.closed
    await sock.close()
    await sock.close()
    assert sock.closed


@pytest.mark.asyncio
async def test_context_manager_closes_socket():
    async with await Socket.open(make_config(b"aaaa")) as sock:
        port = sock.local_address[1]
        assert port > 0
    assert sock.closed
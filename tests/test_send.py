import asyncio
import logging
from dataclasses import dataclass

import pytest

from nodesocket.filter import NodeAddress
from nodesocket.send import MAX_PACKET_SIZE, OutboundPacket, SendHandler

NODE_ID = b"node"
ADDR = ("10.0.0.2", 9000)


@dataclass
class FakePacket:
    payload: bytes

    def encode(self, dst_node_id):
        return b"to:" + dst_node_id + self.payload


class RecordingTransport:
    def __init__(self, failures=0):
        self.sent = []
        self.failures = failures

    def sendto(self, data, addr):
        if self.failures:
            self.failures -= 1
            raise OSError("network unreachable")
        self.sent.append((data, addr))


async def wait_until(condition, timeout=2.0):
    async with asyncio.timeout(timeout):
        while not condition():
            await asyncio.sleep(0.01)


def outbound(payload):
    return OutboundPacket(NodeAddress(ADDR, NODE_ID), FakePacket(payload))


@pytest.mark.asyncio
async def test_packet_is_encoded_for_destination_and_sent():
    transport = RecordingTransport()
    handler = SendHandler(transport)
    task = asyncio.create_task(handler.run())
    await handler.send(outbound(b"payload"))
    await wait_until(lambda: transport.sent)
    handler.stop()
    await asyncio.wait_for(task, 2)
    assert transport.sent == [(b"to:" + NODE_ID + b"payload", ADDR)]


@pytest.mark.asyncio
async def test_packets_are_sent_in_order():
    transport = RecordingTransport()
    handler = SendHandler(transport)
    task = asyncio.create_task(handler.run())
    for payload in (b"1", b"2", b"3"):
        await handler.send(outbound(payload))
    await wait_until(lambda: len(transport.sent) == 3)
    handler.stop()
    await asyncio.wait_for(task, 2)
    assert [data[-1:] for data, _ in transport.sent] == [b"1", b"2", b"3"]


@pytest.mark.asyncio
async def test_oversized_packet_is_sent_with_warning(caplog):
    transport = RecordingTransport()
    handler = SendHandler(transport)
    task = asyncio.create_task(handler.run())
    big = b"x" * (MAX_PACKET_SIZE + 1)
    with caplog.at_level(logging.WARNING, logger="nodesocket.send"):
        await handler.send(outbound(big))
        await wait_until(lambda: transport.sent)
    handler.stop()
    await asyncio.wait_for(task, 2)
    assert "larger than max size" in caplog.text
    assert transport.sent[0][0].endswith(big)


@pytest.mark.asyncio
async def test_send_error_does_not_stop_handler():
    transport = RecordingTransport(failures=1)
    handler = SendHandler(transport)
    task = asyncio.create_task(handler.run())
    await handler.send(outbound(b"lost"))
    await handler.send(outbound(b"kept"))
    await wait_until(lambda: transport.sent)
    handler.stop()
    await asyncio.wait_for(task, 2)
    assert transport.sent == [(b"to:" + NODE_ID + b"kept", ADDR)]


@pytest.mark.asyncio
async def test_stopped_handler_sends_nothing():
    transport = RecordingTransport()
    handler = SendHandler(transport)
    task = asyncio.create_task(handler.run())
    handler.stop()
    await asyncio.wait_for(task, 2)
    await handler.send(outbound(b"late"))
    await asyncio.sleep(0.05)
    assert transport.sent == []
    assert task.done()
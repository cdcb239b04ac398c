from __future__ import annotations

import asyncio

import pytest

from msp_config.core.commands import MSPCommand
from msp_config.core.msp import Direction, FrameDecoder, NotSupportedError, TransportClosedError, encode_frame
from msp_config.core.runtime import open_connection
from msp_config.io.transport import UdpTransport


class _Board(asyncio.DatagramProtocol):
    """Answers API_VERSION and rejects everything else."""

    def __init__(self):
        self.decoder = FrameDecoder()
        self.transport = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        for frame in self.decoder.feed(data):
            if frame.command == MSPCommand.MSP_API_VERSION:
                reply = encode_frame(frame.command, b"\x00\x02\x05", frame.version, direction=Direction.REPLY)
            else:
                reply = encode_frame(frame.command, b"", frame.version, direction=Direction.ERROR)
            self.transport.sendto(reply, addr)


async def _until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate() and loop.time() < deadline:
        await asyncio.sleep(0.01)
    return predicate()


def test_requests_over_udp(sim_profile):
    async def scenario():
        loop = asyncio.get_running_loop()
        board, _ = await loop.create_datagram_endpoint(_Board, local_addr=("127.0.0.1", 0))
        port = board.get_extra_info("sockname")[1]
        try:
            conn = await open_connection(f"udp://127.0.0.1:{port}", profile=sim_profile(request_timeout=1.0))
            api = await conn.request(MSPCommand.MSP_API_VERSION)
            with pytest.raises(NotSupportedError):
                await conn.request(MSPCommand.MSP_STATUS)
            await conn.close()
            with pytest.raises(TransportClosedError):
                await conn.request(MSPCommand.MSP_API_VERSION)
            return api, conn.transport.is_open
        finally:
            board.close()

    api, still_open = asyncio.run(scenario())
    assert api == bytes([0, 2, 5])
    assert still_open is False


def test_listening_endpoint_answers_first_sender():
    async def scenario():
        listener = UdpTransport("udp://:0")
        await listener.open()
        with pytest.raises(OSError):
            await listener.write(b"early")
        port = listener.local_address[1]
        peer = UdpTransport(f"udp://127.0.0.1:{port}")
        await peer.open()
        heard, answered, closed = [], [], []
        listener.subscribe(heard.append)
        peer.subscribe(answered.append)
        listener.subscribe_close(lambda: closed.append("listener"))

        await peer.write(b"$M<\x00\x01\x01")
        got_request = await _until(lambda: heard)
        await listener.write(b"$M>\x03\x01\x00\x02\x05\x05")
        got_reply = await _until(lambda: answered)

        await listener.close()
        await peer.close()
        return got_request, heard, answered, closed, listener.is_open

    got_request, heard, answered, closed, is_open = asyncio.run(scenario())
    assert got_request and heard == [b"$M<\x00\x01\x01"]
    assert answered == [b"$M>\x03\x01\x00\x02\x05\x05"]
    assert closed == ["listener"]
    assert is_open is False


def test_bad_udp_url_is_a_closed_transport():
    async def scenario():
        await open_connection("udp://127.0.0.1")

    with pytest.raises(TransportClosedError):
        asyncio.run(scenario())

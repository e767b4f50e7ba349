import asyncio
import json
import struct

import pytest

from games.query import ProbeResult, QueryError, _read_varint, pack_varint, parse_a2s_info, probe
from shared.dal.models import QueryType


def _a2s_info_reply(players: int) -> bytes:
    return (
        b"\xff\xff\xff\xffI\x11"
        + b"Lighthouse #1\x00"
        + b"cp_badlands\x00"
        + b"tf\x00"
        + b"Team Fortress\x00"
        + struct.pack("<hBBB", 440, players, 24, 0)
        + b"dl\x00\x01"
    )


class _FakeA2SServer(asyncio.DatagramProtocol):
    def __init__(self, *, players: int, challenge: bytes | None = None) -> None:
        self.players = players
        self.challenge = challenge
        self.requests: list[bytes] = []
        self.transport: asyncio.DatagramTransport | None = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.requests.append(data)
        if self.challenge is not None and not data.endswith(self.challenge):
            self.transport.sendto(b"\xff\xff\xff\xffA" + self.challenge, addr)
            return
        self.transport.sendto(_a2s_info_reply(self.players), addr)


async def _start_a2s(server: _FakeA2SServer) -> tuple[asyncio.DatagramTransport, int]:
    loop = asyncio.get_running_loop()
    transport, _ = await loop.create_datagram_endpoint(lambda: server, local_addr=("127.0.0.1", 0))
    return transport, transport.get_extra_info("sockname")[1]


class TestA2S:
    def test_parse_info_reply(self):
        result = parse_a2s_info(_a2s_info_reply(players=7))

        assert result.player_count == 7
        assert result.raw["map"] == "cp_badlands"
        assert result.raw["max_players"] == 24
        assert result.raw["app_id"] == 440

    async def test_probe_reads_player_count(self):
        fake = _FakeA2SServer(players=3)
        transport, port = await _start_a2s(fake)
        try:
            result = await probe("127.0.0.1", port, QueryType.A2S, timeout=2.0)
        finally:
            transport.close()

        assert isinstance(result, ProbeResult)
        assert result.player_count == 3
        assert len(fake.requests) == 1

    async def test_probe_answers_challenge(self):
        fake = _FakeA2SServer(players=12, challenge=b"\x0a\x0b\x0c\x0d")
        transport, port = await _start_a2s(fake)
        try:
            result = await probe("127.0.0.1", port, QueryType.A2S, timeout=2.0)
        finally:
            transport.close()

        assert result.player_count == 12
        assert fake.requests[1].endswith(b"\x0a\x0b\x0c\x0d")

    async def test_silent_server_raises_query_error(self):
        # Bound socket that never answers
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(asyncio.DatagramProtocol, local_addr=("127.0.0.1", 0))
        port = transport.get_extra_info("sockname")[1]
        try:
            with pytest.raises(QueryError):
                await probe("127.0.0.1", port, QueryType.A2S, timeout=0.2)
        finally:
            transport.close()


class TestMinecraft:
    @pytest.mark.parametrize("value", [0, 1, 127, 128, 25565, 2**31 - 1])
    async def test_varint_encoding_is_read_back(self, value):
        reader = asyncio.StreamReader()
        reader.feed_data(pack_varint(value))
        assert await _read_varint(reader) == value

    def test_negative_varint_uses_five_bytes(self):
        assert pack_varint(-1) == b"\xff\xff\xff\xff\x0f"

    async def test_probe_reads_online_players(self):
        received: list[int] = []
        status = json.dumps({"version": {"name": "1.20.4"}, "players": {"max": 20, "online": 4}}).encode()

        async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            for _ in range(2):  # handshake + status request
                length = await _read_varint(reader)
                packet = await reader.readexactly(length)
                received.append(packet[0])
            body = pack_varint(0) + pack_varint(len(status)) + status
            writer.write(pack_varint(len(body)) + body)
            await writer.drain()
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            result = await probe("127.0.0.1", port, QueryType.MINECRAFT, timeout=2.0)
        finally:
            server.close()
            await server.wait_closed()

        assert result.player_count == 4
        assert result.raw["version"] == "1.20.4"
        assert received == [0x00, 0x00]

    async def test_refused_connection_raises_query_error(self):
        server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

        with pytest.raises(QueryError, match="failed"):
            await probe("127.0.0.1", port, QueryType.MINECRAFT, timeout=1.0)


class TestProbe:
    async def test_missing_address_raises(self):
        with pytest.raises(QueryError, match="no address"):
            await probe(None, None, QueryType.A2S)

"""Health and occupancy probes for running game servers.

Two wire protocols cover the catalog:

- Source engine A2S_INFO over UDP (TF2, Valheim and most Steam dedicated servers).
- Minecraft Java edition server list ping over TCP.

A failed probe is an expected outcome (the server is still booting or has
gone away) and is reported as QueryError for the caller to fold into
status and deadlines.
"""

from __future__ import annotations

import asyncio
import json
import struct
from typing import Any

from pydantic import BaseModel, Field

from shared.dal.models import QueryType

_A2S_HEADER = b"\xff\xff\xff\xff"
_A2S_INFO_REQUEST = _A2S_HEADER + b"TSource Engine Query\x00"
_A2S_CHALLENGE = 0x41
_A2S_INFO_REPLY = 0x49
_A2S_SPLIT_HEADER = b"\xfe\xff\xff\xff"

_MINECRAFT_PROTOCOL_VERSION = 47
_MINECRAFT_MAX_VARINT_BYTES = 5


class QueryError(Exception):
    """The server did not answer the probe, or answered with garbage."""


class ProbeResult(BaseModel, frozen=True):
    player_count: int
    raw: dict[str, Any] = Field(default_factory=dict)


class _DatagramReceiver(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.packets: asyncio.Queue[bytes] = asyncio.Queue()
        self.error: Exception | None = None

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self.packets.put_nowait(data)

    def error_received(self, exc: Exception) -> None:
        self.error = exc
        self.packets.put_nowait(b"")


def _read_cstring(payload: bytes, offset: int) -> tuple[str, int]:
    end = payload.index(b"\x00", offset)
    return payload[offset:end].decode("utf-8", errors="replace"), end + 1


def parse_a2s_info(payload: bytes) -> ProbeResult:
    """Parse an A2S_INFO reply (header already verified, type byte at index 4)."""
    offset = 5
    protocol = payload[offset]
    offset += 1
    name, offset = _read_cstring(payload, offset)
    map_name, offset = _read_cstring(payload, offset)
    folder, offset = _read_cstring(payload, offset)
    game, offset = _read_cstring(payload, offset)
    app_id, players, max_players, bots = struct.unpack_from("<hBBB", payload, offset)
    return ProbeResult(
        player_count=players,
        raw={
            "protocol": protocol,
            "name": name,
            "map": map_name,
            "folder": folder,
            "game": game,
            "app_id": app_id,
            "max_players": max_players,
            "bots": bots,
        },
    )


async def query_a2s(host: str, port: int, *, timeout: float) -> ProbeResult:
    loop = asyncio.get_running_loop()
    transport, receiver = await loop.create_datagram_endpoint(_DatagramReceiver, remote_addr=(host, port))
    try:
        request = _A2S_INFO_REQUEST
        # At most one challenge round trip.
        for _ in range(2):
            transport.sendto(request)
            payload = await asyncio.wait_for(receiver.packets.get(), timeout)
            if receiver.error is not None:
                raise QueryError(f"A2S socket error: {receiver.error}")
            if payload.startswith(_A2S_SPLIT_HEADER):
                raise QueryError("A2S split responses are not supported for A2S_INFO")
            if len(payload) < 5 or not payload.startswith(_A2S_HEADER):
                raise QueryError("Malformed A2S response")
            if payload[4] == _A2S_CHALLENGE:
                request = _A2S_INFO_REQUEST + payload[5:9]
                continue
            if payload[4] != _A2S_INFO_REPLY:
                raise QueryError(f"Unexpected A2S response type 0x{payload[4]:02x}")
            return parse_a2s_info(payload)
        raise QueryError("A2S server kept answering with challenges")
    finally:
        transport.close()


def pack_varint(value: int) -> bytes:
    value &= 0xFFFFFFFF
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


async def _read_varint(reader: asyncio.StreamReader) -> int:
    result = 0
    for shift in range(0, 7 * _MINECRAFT_MAX_VARINT_BYTES, 7):
        byte = (await reader.readexactly(1))[0]
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result
    raise QueryError("VarInt too long")


def _minecraft_packet(packet_id: int, payload: bytes = b"") -> bytes:
    body = pack_varint(packet_id) + payload
    return pack_varint(len(body)) + body


async def query_minecraft(host: str, port: int, *, timeout: float) -> ProbeResult:
    async def _ping() -> ProbeResult:
        reader, writer = await asyncio.open_connection(host, port)
        try:
            encoded_host = host.encode("utf-8")
            handshake = (
                pack_varint(_MINECRAFT_PROTOCOL_VERSION)
                + pack_varint(len(encoded_host))
                + encoded_host
                + struct.pack(">H", port)
                + pack_varint(1)  # next state: status
            )
            writer.write(_minecraft_packet(0x00, handshake) + _minecraft_packet(0x00))
            await writer.drain()

            await _read_varint(reader)  # packet length
            packet_id = await _read_varint(reader)
            if packet_id != 0x00:
                raise QueryError(f"Unexpected Minecraft packet id {packet_id}")
            length = await _read_varint(reader)
            status = json.loads(await reader.readexactly(length))
        finally:
            writer.close()
        players = status.get("players") or {}
        return ProbeResult(
            player_count=int(players.get("online", 0)),
            raw={
                "version": (status.get("version") or {}).get("name"),
                "max_players": players.get("max"),
                "description": status.get("description"),
            },
        )

    return await asyncio.wait_for(_ping(), timeout)


async def probe(host: str | None, port: int | None, query_type: QueryType, *, timeout: float = 5.0) -> ProbeResult:
    """Query a game server once. Raises QueryError on any failure."""
    if not host or not port:
        raise QueryError("Server has no address yet")
    try:
        if query_type == QueryType.A2S:
            return await query_a2s(host, port, timeout=timeout)
        return await query_minecraft(host, port, timeout=timeout)
    except QueryError:
        raise
    except (OSError, TimeoutError, asyncio.IncompleteReadError, ValueError, IndexError, struct.error) as e:
        raise QueryError(f"{query_type} query to {host}:{port} failed: {e!r}") from e

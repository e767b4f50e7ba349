"""Source RCON client used for one-off setup commands."""

from __future__ import annotations

import asyncio
import itertools
import struct
from typing import Self

import structlog

logger = structlog.get_logger()

SERVERDATA_AUTH = 3
SERVERDATA_AUTH_RESPONSE = 2
SERVERDATA_EXECCOMMAND = 2
SERVERDATA_RESPONSE_VALUE = 0

_AUTH_FAILED_ID = -1
_MAX_PACKET_SIZE = 4096 + 10


class RconError(Exception):
    """Connection, authentication or protocol failure talking to RCON."""


def encode_packet(request_id: int, packet_type: int, body: str) -> bytes:
    payload = struct.pack("<ii", request_id, packet_type) + body.encode("utf-8") + b"\x00\x00"
    return struct.pack("<i", len(payload)) + payload


class RconClient:
    """Minimal async Source RCON client.

    Multi-packet replies are collected by following every command with an
    empty SERVERDATA_RESPONSE_VALUE; the server echoes it only after the
    full reply to the command has been sent.
    """

    def __init__(self, host: str, port: int, password: str, *, timeout: float = 5.0) -> None:
        self._host = host
        self._port = port
        self._password = password
        self._timeout = timeout
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._ids = itertools.count(1)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, self._port),
                self._timeout,
            )
        except (OSError, TimeoutError) as e:
            raise RconError(f"Could not connect to {self._host}:{self._port}: {e!r}") from e

        auth_id = next(self._ids)
        await self._write(auth_id, SERVERDATA_AUTH, self._password)
        while True:
            response_id, response_type, _ = await self._read()
            if response_type != SERVERDATA_AUTH_RESPONSE:
                continue  # servers send an empty RESPONSE_VALUE before the auth result
            if response_id == _AUTH_FAILED_ID:
                await self.disconnect()
                raise RconError("RCON authentication failed")
            if response_id == auth_id:
                return

    async def send(self, command: str) -> str:
        command_id = next(self._ids)
        mirror_id = next(self._ids)
        await self._write(command_id, SERVERDATA_EXECCOMMAND, command)
        await self._write(mirror_id, SERVERDATA_RESPONSE_VALUE, "")

        chunks: list[str] = []
        while True:
            response_id, _, body = await self._read()
            if response_id == mirror_id:
                return "".join(chunks)
            if response_id == command_id:
                chunks.append(body)

    async def disconnect(self) -> None:
        writer, self._reader, self._writer = self._writer, None, None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            logger.debug("rcon connection closed uncleanly", host=self._host, port=self._port)

    async def _write(self, request_id: int, packet_type: int, body: str) -> None:
        if self._writer is None:
            raise RconError("RCON client is not connected")
        try:
            self._writer.write(encode_packet(request_id, packet_type, body))
            await self._writer.drain()
        except OSError as e:
            raise RconError(f"RCON write failed: {e!r}") from e

    async def _read(self) -> tuple[int, int, str]:
        if self._reader is None:
            raise RconError("RCON client is not connected")
        try:
            async with asyncio.timeout(self._timeout):
                (size,) = struct.unpack("<i", await self._reader.readexactly(4))
                if size < 10 or size > _MAX_PACKET_SIZE:
                    raise RconError(f"Invalid RCON packet size {size}")
                data = await self._reader.readexactly(size)
        except (OSError, TimeoutError, asyncio.IncompleteReadError) as e:
            raise RconError(f"RCON read failed: {e!r}") from e
        request_id, packet_type = struct.unpack_from("<ii", data)
        return request_id, packet_type, data[8:-2].decode("utf-8", errors="replace")

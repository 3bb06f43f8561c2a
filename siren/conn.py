"""WebSocket-backed byte stream that sniffs the client protocol and relays traffic."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, Awaitable, Callable
from contextlib import suppress
from typing import Any, Protocol

import aiohttp

from .common import ProtocolError
from .config import Config
from .dns import doh
from .shadowsocks import process_shadowsocks
from .trojan import process_trojan
from .vless import process_vless
from .vmess import process_vmess

logger = logging.getLogger(__name__)

SNIFF_LENGTH = 62
UDP_BUFFER_SIZE = 65535
_COPY_CHUNK = 8 * 1024
_CLOSED = object()
_CLOSING_TYPES = (
    aiohttp.WSMsgType.CLOSE,
    aiohttp.WSMsgType.CLOSING,
    aiohttp.WSMsgType.CLOSED,
)

Connector = Callable[[str, int], Awaitable[tuple[asyncio.StreamReader, asyncio.StreamWriter]]]
Resolver = Callable[[bytes], Awaitable[bytes]]


class WebSocket(Protocol):
    async def send_bytes(self, data: bytes) -> None: ...


class ProxyStream:
    """Byte stream over a server-side WebSocket.

    Incoming events are raw ``bytes`` (binary messages), ``str`` (text
    messages, ignored) or aiohttp ``WSMessage`` objects; the end of the
    event iterator means the client closed the socket.
    """

    def __init__(
        self,
        config: Config,
        ws: WebSocket,
        events: AsyncIterable[Any] | None = None,
        *,
        connector: Connector | None = None,
        resolver: Resolver | None = None,
    ) -> None:
        self.config = config
        self._ws = ws
        self._events = aiter(events if events is not None else ws)  # type: ignore[arg-type]
        self._connector: Connector = connector or asyncio.open_connection
        self._resolver: Resolver = resolver or doh
        self._buffer = bytearray()
        self._closed = False

    async def _next_message(self) -> Any:
        """Next binary payload, ``None`` for a message without one, or ``_CLOSED``."""
        try:
            event = await anext(self._events)
        except StopAsyncIteration:
            return _CLOSED
        if isinstance(event, (bytes, bytearray, memoryview)):
            return bytes(event)
        if isinstance(event, str):
            return None
        kind = getattr(event, "type", None)
        if kind == aiohttp.WSMsgType.BINARY:
            return bytes(event.data)
        if kind == aiohttp.WSMsgType.ERROR:
            raise OSError(str(event.data))
        if kind in _CLOSING_TYPES:
            return _CLOSED
        return None

    async def fill_buffer_until(self, n: int) -> None:
        """Buffer incoming data until ``n`` bytes are held or the client closes."""
        while len(self._buffer) < n and not self._closed:
            message = await self._next_message()
            if message is _CLOSED:
                self._closed = True
            elif message:
                self._buffer += message

    def peek_buffer(self, n: int) -> bytes:
        """Up to ``n`` buffered bytes, without consuming them."""
        return bytes(self._buffer[:n])

    async def read(self, n: int) -> bytes:
        """Read up to ``n`` bytes; ``b""`` means the client is gone."""
        if n < 0:
            raise ValueError("cannot read a negative number of bytes")
        if n == 0:
            return b""
        while not self._buffer:
            if self._closed:
                return b""
            try:
                message = await self._next_message()
            except OSError:
                message = _CLOSED
            if message is _CLOSED:
                self._closed = True
                return b""
            if message:
                self._buffer += message
        chunk = bytes(self._buffer[:n])
        del self._buffer[:n]
        return chunk

    async def read_exact(self, n: int) -> bytes:
        """Read exactly ``n`` bytes or raise ``EOFError``."""
        collected = bytearray()
        while len(collected) < n:
            chunk = await self.read(n - len(collected))
            if not chunk:
                raise EOFError(f"wanted {n} bytes, got {len(collected)}")
            collected += chunk
        return bytes(collected)

    async def read_u8(self) -> int:
        return (await self.read_exact(1))[0]

    async def read_u16(self) -> int:
        return int.from_bytes(await self.read_exact(2), "big")

    async def write(self, data: bytes) -> int:
        """Send ``data`` to the client as one binary message."""
        payload = bytes(data)
        await self._ws.send_bytes(payload)
        return len(payload)

    async def process(self) -> None:
        """Detect the client protocol from the first bytes and serve it."""
        await self.fill_buffer_until(SNIFF_LENGTH)
        head = self.peek_buffer(SNIFF_LENGTH)
        if not head:
            raise ProtocolError("empty request")

        if head[0] == 0:
            logger.info("VLESS detected!")
            await process_vless(self)
        elif head[0] in (1, 3):
            logger.info("Shadowsocks detected!")
            await process_shadowsocks(self)
        elif len(head) < 58:
            raise ProtocolError("request header too short")
        elif head[56:58] == b"\r\n":
            logger.info("Trojan detected!")
            await process_trojan(self)
        else:
            logger.info("Vmess detected!")
            await process_vmess(self)

    async def _copy_to_remote(self, writer: asyncio.StreamWriter) -> None:
        while chunk := await self.read(_COPY_CHUNK):
            writer.write(chunk)
            await writer.drain()
        if writer.can_write_eof():
            writer.write_eof()

    async def _copy_from_remote(self, reader: asyncio.StreamReader) -> None:
        while chunk := await reader.read(_COPY_CHUNK):
            await self.write(chunk)

    async def handle_tcp_outbound(self, addr: str, port: int) -> None:
        """Connect to ``addr:port`` and relay in both directions until both end."""
        logger.info("connecting to upstream %s:%s", addr, port)
        reader, writer = await self._connector(addr, port)
        uplink = asyncio.ensure_future(self._copy_to_remote(writer))
        downlink = asyncio.ensure_future(self._copy_from_remote(reader))
        try:
            await asyncio.gather(uplink, downlink)
        finally:
            for task in (uplink, downlink):
                task.cancel()
            await asyncio.gather(uplink, downlink, return_exceptions=True)
            writer.close()
            with suppress(OSError):
                await writer.wait_closed()

    async def handle_udp_outbound(self) -> None:
        """Forward a DNS query over HTTPS; on success the query is echoed back."""
        data = await self.read(UDP_BUFFER_SIZE)
        try:
            await self._resolver(data)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as exc:
            logger.debug("DNS over HTTPS failed: %s", exc)
            return
        await self.write(data)

    async def connect_pool(self, remote_addr: str, remote_port: int) -> None:
        """Relay to the requested target, then to the configured fallback proxy."""
        pool = (
            (remote_addr, remote_port),
            (self.config.proxy_addr, self.config.proxy_port),
        )
        for addr, port in pool:
            try:
                await self.handle_tcp_outbound(addr, port)
            except OSError as exc:
                logger.error("error handling tcp: %s", exc)
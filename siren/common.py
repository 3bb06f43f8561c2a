"""Shared protocol constants and address parsing for all proxy protocols."""

from __future__ import annotations

import ipaddress
from typing import Protocol

KDFSALT_CONST_VMESS_HEADER_PAYLOAD_LENGTH_AEAD_KEY = b"VMess Header AEAD Key_Length"
KDFSALT_CONST_VMESS_HEADER_PAYLOAD_LENGTH_AEAD_IV = b"VMess Header AEAD Nonce_Length"
KDFSALT_CONST_VMESS_HEADER_PAYLOAD_AEAD_KEY = b"VMess Header AEAD Key"
KDFSALT_CONST_VMESS_HEADER_PAYLOAD_AEAD_IV = b"VMess Header AEAD Nonce"
KDFSALT_CONST_AEAD_RESP_HEADER_LEN_KEY = b"AEAD Resp Header Len Key"
KDFSALT_CONST_AEAD_RESP_HEADER_LEN_IV = b"AEAD Resp Header Len IV"
KDFSALT_CONST_AEAD_RESP_HEADER_KEY = b"AEAD Resp Header Key"
KDFSALT_CONST_AEAD_RESP_HEADER_IV = b"AEAD Resp Header IV"


class ProtocolError(Exception):
    """Raised when a client sends a malformed request header."""


class AsyncReader(Protocol):
    async def read_exact(self, n: int) -> bytes: ...

    async def read_u8(self) -> int: ...


class ByteReader:
    """Async reader over an in-memory byte string."""

    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        self._pos = 0

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos

    async def read_exact(self, n: int) -> bytes:
        if n < 0:
            raise ValueError("cannot read a negative number of bytes")
        if n > self.remaining:
            raise EOFError(f"wanted {n} bytes, only {self.remaining} left")
        chunk = self._data[self._pos:self._pos + n]
        self._pos += n
        return chunk

    async def read_u8(self) -> int:
        return (await self.read_exact(1))[0]

    async def read_u16(self) -> int:
        return int.from_bytes(await self.read_exact(2), "big")


async def parse_addr(reader: AsyncReader) -> str:
    """Read an address type byte and the address that follows it."""
    kind = await reader.read_u8()
    if kind == 1:
        return str(ipaddress.IPv4Address(await reader.read_exact(4)))
    if kind in (2, 3):
        length = await reader.read_u8()
        return (await reader.read_exact(length)).decode("utf-8", errors="replace")
    if kind == 4:
        return str(ipaddress.IPv6Address(await reader.read_exact(16)))
    raise ProtocolError("invalid address")


async def read_port(reader: AsyncReader) -> int:
    """Read a big-endian 16-bit port number."""
    return int.from_bytes(await reader.read_exact(2), "big")
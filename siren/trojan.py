"""Trojan request handling."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .common import parse_addr, read_port

if TYPE_CHECKING:
    from .conn import ProxyStream

logger = logging.getLogger(__name__)

_CONNECT = 1
_PASSWORD_HASH_LENGTH = 56


async def _skip_crlf(stream: "ProxyStream") -> None:
    await stream.read_u16()


async def process_trojan(stream: "ProxyStream") -> None:
    """Parse a Trojan request header from ``stream`` and relay the connection."""
    await stream.read_exact(_PASSWORD_HASH_LENGTH)  # not checked
    await _skip_crlf(stream)

    command = await stream.read_u8()
    target = (await parse_addr(stream), await read_port(stream))
    await _skip_crlf(stream)

    if command != _CONNECT:
        try:
            await stream.handle_udp_outbound()
        except OSError:
            logger.exception("trojan udp relay failed")
        return

    await stream.connect_pool(*target)
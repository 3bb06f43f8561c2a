"""VLESS request handling."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .common import parse_addr, read_port

if TYPE_CHECKING:
    from .conn import ProxyStream

logger = logging.getLogger(__name__)

_TCP = 1
_USER_ID_LENGTH = 16
_RESPONSE_HEADER = b"\x00\x00"


async def process_vless(stream: "ProxyStream") -> None:
    """Parse a VLESS request header from ``stream`` and relay the connection."""
    await stream.read_u8()  # version
    await stream.read_exact(_USER_ID_LENGTH)  # user id, not checked
    await stream.read_exact(await stream.read_u8())  # protobuf add-ons

    network = await stream.read_u8()
    port = await read_port(stream)
    host = await parse_addr(stream)

    if network == _TCP:
        await stream.write(_RESPONSE_HEADER)
        await stream.connect_pool(host, port)
    else:
        try:
            await stream.handle_udp_outbound()
        except OSError as exc:
            logger.error("vless udp relay failed: %s", exc)
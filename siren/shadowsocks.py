"""Shadowsocks (plain, unencrypted header) request handling."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .common import parse_addr, read_port

if TYPE_CHECKING:
    from .conn import ProxyStream


async def process_shadowsocks(stream: "ProxyStream") -> None:
    """Parse a Shadowsocks target address from ``stream`` and relay over TCP.

    UDP cannot be told apart from the header, so every request is relayed as TCP.
    """
    await stream.connect_pool(await parse_addr(stream), await read_port(stream))
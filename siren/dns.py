"""DNS-over-HTTPS forwarding for UDP DNS queries."""

from __future__ import annotations

import aiohttp

DOH_URL = "https://1.1.1.1/dns-query"
DNS_MESSAGE_TYPE = "application/dns-message"

_HEADERS = {
    "Content-Type": DNS_MESSAGE_TYPE,
    "Accept": DNS_MESSAGE_TYPE,
}


async def doh(req_wireformat: bytes, session: aiohttp.ClientSession | None = None) -> bytes:
    """Send a wire-format DNS query over HTTPS and return the raw answer."""
    if session is None:
        async with aiohttp.ClientSession() as own_session:
            return await _post(own_session, req_wireformat)
    return await _post(session, req_wireformat)


async def _post(session: aiohttp.ClientSession, query: bytes) -> bytes:
    async with session.post(DOH_URL, headers=dict(_HEADERS), data=bytes(query)) as response:
        return await response.read()
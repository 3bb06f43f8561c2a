"""Per-request configuration of the proxy."""

from __future__ import annotations

import dataclasses
import uuid as _uuid
from dataclasses import dataclass

DEFAULT_PROXY_PORT = 443


@dataclass(frozen=True)
class Config:
    """Identity, fallback proxy target and page URLs for one request."""

    uuid: _uuid.UUID
    host: str
    proxy_addr: str = ""
    proxy_port: int = DEFAULT_PROXY_PORT
    main_page_url: str = ""
    sub_page_url: str = ""
    link_page_url: str = ""
    vmess_page_url: str = ""

    def __post_init__(self) -> None:
        if not self.proxy_addr:
            object.__setattr__(self, "proxy_addr", self.host)
        if not 0 <= self.proxy_port <= 0xFFFF:
            raise ValueError(f"port out of range: {self.proxy_port}")

    def with_proxy(self, addr: str, port: int) -> "Config":
        """Return a copy that falls back to ``addr:port``."""
        return dataclasses.replace(self, proxy_addr=addr, proxy_port=port)
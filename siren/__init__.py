"""WebSocket tunnel server for VLESS, VMess, Trojan and Shadowsocks clients."""

__version__ = "0.1.0"
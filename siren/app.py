"""HTTP front end: static pages plus the WebSocket tunnel endpoint."""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import time
import uuid as _uuid
from collections.abc import Callable, Mapping

import aiohttp
from aiohttp import web

from .config import DEFAULT_PROXY_PORT, Config
from .conn import ProxyStream

logger = logging.getLogger(__name__)

PROXYIP_PATTERN = re.compile(r".+-\d+")
PROXYKV_PATTERN = re.compile(r"[A-Z]{2}")
PROXY_KV_TTL = 60 * 60 * 24
PROXY_KV_URL_VAR = "PROXY_KV_URL"
NON_WEBSOCKET_REPLY = "hi from wasm!"


class _ProxyKvStore:
    """Holds the proxy list document for a limited time."""

    def __init__(self, ttl: float = PROXY_KV_TTL, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._value = ""
        self._expires = 0.0

    def get(self) -> str:
        """The stored document, or an empty string once it has expired."""
        if self._value and self._clock() < self._expires:
            return self._value
        return ""

    def put(self, value: str) -> None:
        self._value = value
        self._expires = self._clock() + self._ttl


ENV = web.AppKey("siren_env", dict)
PROXY_KV_STORE = web.AppKey("siren_proxy_kv_store", _ProxyKvStore)


def parse_proxyip(proxyip: str) -> tuple[str, int] | None:
    """Split ``addr-port`` into its parts; ``None`` if it is not of that form."""
    if not PROXYIP_PATTERN.fullmatch(proxyip):
        return None
    addr, _, port_text = proxyip.partition("-")
    if not (port_text.isascii() and port_text.isdigit()):
        return None
    port = int(port_text)
    if port > 0xFFFF:
        return None
    return addr, port


def select_proxy(proxyip: str, proxy_kv: Mapping[str, list[str]], rand_byte: int) -> str:
    """Resolve a comma-separated list of country codes to one ``addr-port`` entry.

    Anything that does not start with two capital letters is returned unchanged.
    """
    if not PROXYKV_PATTERN.match(proxyip):
        return proxyip
    codes = proxyip.split(",")
    code = codes[rand_byte % len(codes)]
    if code not in proxy_kv:
        raise KeyError(f"unknown proxy group: {code}")
    entries = proxy_kv[code]
    if not entries:
        raise ValueError(f"proxy group {code} is empty")
    return entries[rand_byte % len(entries)].replace(":", "-")


def load_config(env: Mapping[str, str], host: str) -> Config:
    """Build the request configuration from environment variables."""

    def required(name: str) -> str:
        try:
            return env[name]
        except KeyError:
            raise KeyError(f"missing environment variable {name}") from None

    try:
        user_id = _uuid.UUID(required("UUID"))
    except ValueError:
        user_id = _uuid.UUID(int=0)

    return Config(
        uuid=user_id,
        host=host,
        proxy_addr=host,
        proxy_port=DEFAULT_PROXY_PORT,
        main_page_url=required("MAIN_PAGE_URL"),
        sub_page_url=required("SUB_PAGE_URL"),
        link_page_url=required("LINK_PAGE_URL"),
        vmess_page_url=required("VMESS_PAGE_URL"),
    )


def _request_config(request: web.Request) -> Config:
    try:
        return load_config(request.app[ENV], request.url.host or "")
    except KeyError as exc:
        raise web.HTTPInternalServerError(text=str(exc.args[0])) from exc


async def _fetch_html(url: str) -> web.Response:
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(url) as upstream:
                body = await upstream.text()
    except (aiohttp.ClientError, ValueError) as exc:
        raise web.HTTPInternalServerError(text=f"error fetching page: {exc}") from exc
    return web.Response(text=body, content_type="text/html")


def _page_handler(field: str) -> Callable[[web.Request], object]:
    async def handler(request: web.Request) -> web.Response:
        config = _request_config(request)
        return await _fetch_html(getattr(config, field))

    return handler


async def _load_proxy_kv(app: web.Application) -> dict[str, list[str]]:
    store = app[PROXY_KV_STORE]
    document = store.get()
    if not document:
        source = app[ENV].get(PROXY_KV_URL_VAR)
        if not source:
            raise web.HTTPInternalServerError(text=f"{PROXY_KV_URL_VAR} is not set")
        logger.info("getting proxy kv from %s...", source)
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(source) as upstream:
                    if upstream.status != 200:
                        raise web.HTTPInternalServerError(
                            text=f"error getting proxy kv: {upstream.status}"
                        )
                    document = await upstream.text()
        except (aiohttp.ClientError, ValueError) as exc:
            raise web.HTTPInternalServerError(text=f"error getting proxy kv: {exc}") from exc
        store.put(document)
    try:
        return json.loads(document)
    except ValueError as exc:
        raise web.HTTPInternalServerError(text=f"invalid proxy kv: {exc}") from exc


async def _tunnel(request: web.Request) -> web.StreamResponse:
    config = _request_config(request)
    proxyip = request.match_info["proxyip"]

    if PROXYKV_PATTERN.match(proxyip):
        proxy_kv = await _load_proxy_kv(request.app)
        try:
            proxyip = select_proxy(proxyip, proxy_kv, os.urandom(1)[0])
        except (KeyError, ValueError) as exc:
            raise web.HTTPInternalServerError(text=str(exc)) from exc

    target = parse_proxyip(proxyip)
    if target is not None:
        config = config.with_proxy(*target)

    if request.headers.get("Upgrade", "") != "websocket":
        return web.Response(text=NON_WEBSOCKET_REPLY, content_type="text/html")

    ws = web.WebSocketResponse()
    await ws.prepare(request)
    try:
        await ProxyStream(config, ws).process()
    except Exception as exc:  # the tunnel logs every failure and closes
        logger.error("[tunnel]: %s", exc)
    finally:
        await ws.close()
    return ws


def create_app(env: Mapping[str, str]) -> web.Application:
    """Build the web application serving pages and the tunnel."""
    app = web.Application()
    app[ENV] = dict(env)
    app[PROXY_KV_STORE] = _ProxyKvStore()
    app.router.add_route("*", "/", _page_handler("main_page_url"))
    app.router.add_route("*", "/sub", _page_handler("sub_page_url"))
    app.router.add_route("*", "/link", _page_handler("link_page_url"))
    app.router.add_route("*", "/vmess", _page_handler("vmess_page_url"))
    app.router.add_route("*", "/{proxyip}", _tunnel)
    return app


def main(argv: list[str] | None = None) -> int:
    """Run the proxy server with settings from the environment."""
    parser = argparse.ArgumentParser(prog="siren", description="WebSocket proxy server.")
    parser.add_argument("--host", default="0.0.0.0", help="address to listen on")
    parser.add_argument("--port", type=int, default=8080, help="port to listen on")
    args = parser.parse_args(argv)
    if not 0 <= args.port <= 0xFFFF:
        parser.error(f"port out of range: {args.port}")
    logging.basicConfig(level=logging.INFO)
    web.run_app(create_app(os.environ), host=args.host, port=args.port)
    return 0
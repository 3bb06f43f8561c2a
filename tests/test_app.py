import asyncio
import uuid

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from siren.app import (
    NON_WEBSOCKET_REPLY,
    PROXY_KV_STORE,
    _ProxyKvStore,
    create_app,
    load_config,
    main,
    parse_proxyip,
    select_proxy,
)

USER_ID = "96850032-1b92-46e9-a4f2-b99631456894"


def make_env(**overrides):
    env = {
        "UUID": USER_ID,
        "MAIN_PAGE_URL": "http://127.0.0.1:9/main",
        "SUB_PAGE_URL": "http://127.0.0.1:9/sub",
        "LINK_PAGE_URL": "http://127.0.0.1:9/link",
        "VMESS_PAGE_URL": "http://127.0.0.1:9/vmess",
    }
    env.update(overrides)
    return env


# parse_proxyip


def test_parse_proxyip_addr_and_port():
    assert parse_proxyip("1.2.3.4-443") == ("1.2.3.4", 443)


@pytest.mark.parametrize("text", ["nohyphen", "host-", "host-99999", "a-b-443", "-443"])
def test_parse_proxyip_rejects(text):
    assert parse_proxyip(text) is None


def test_parse_proxyip_max_port():
    assert parse_proxyip("example.com-65535") == ("example.com", 65535)


# select_proxy

PROXY_KV = {"ID": ["a:1", "b:2"], "SG": ["c:3"]}


def test_select_proxy_first_group():
    assert select_proxy("ID,SG", PROXY_KV, 0) == "a-1"


def test_select_proxy_second_group():
    assert select_proxy("ID,SG", PROXY_KV, 1) == "c-3"
    assert select_proxy("ID,SG", PROXY_KV, 3) == "c-3"


def test_select_proxy_single_group_wraps():
    assert select_proxy("ID", PROXY_KV, 3) == "b-2"


def test_select_proxy_result_comes_from_list():
    for rand_byte in range(256):
        assert select_proxy("ID,SG", PROXY_KV, rand_byte) in {"a-1", "b-2", "c-3"}


@pytest.mark.parametrize("text", ["1.2.3.4-443", "id", "x"])
def test_select_proxy_leaves_others_unchanged(text):
    assert select_proxy(text, PROXY_KV, 7) == text


def test_select_proxy_unknown_group():
    with pytest.raises(KeyError):
        select_proxy("XX", PROXY_KV, 0)


def test_select_proxy_empty_group():
    with pytest.raises(ValueError):
        select_proxy("ID", {"ID": []}, 0)


# load_config


def test_load_config_defaults():
    config = load_config(make_env(), "example.com")
    assert config.uuid == uuid.UUID(USER_ID)
    assert config.host == "example.com"
    assert config.proxy_addr == "example.com"
    assert config.proxy_port == 443
    assert config.vmess_page_url == "http://127.0.0.1:9/vmess"


def test_load_config_invalid_uuid_is_nil():
    config = load_config(make_env(UUID="not-a-uuid"), "example.com")
    assert config.uuid == uuid.UUID(int=0)


def test_load_config_missing_variable():
    env = make_env()
    del env["MAIN_PAGE_URL"]
    with pytest.raises(KeyError):
        load_config(env, "example.com")


# kv store


def test_kv_store_expires():
    now = [0.0]
    store = _ProxyKvStore(ttl=10, clock=lambda: now[0])
    store.put("{}")
    assert store.get() == "{}"
    now[0] = 10.5
    assert store.get() == ""


# main


def test_main_help_exits_cleanly():
    with pytest.raises(SystemExit) as info:
        main(["--help"])
    assert info.value.code == 0


def test_main_rejects_bad_port():
    with pytest.raises(SystemExit) as info:
        main(["--port", "70000"])
    assert info.value.code == 2


# HTTP routes


def _upstream_app(pages, status=200):
    app = web.Application()
    for path, body in pages.items():

        async def handler(request, body=body):
            return web.Response(text=body, status=status)

        app.router.add_get(path, handler)
    return app


@pytest.mark.asyncio
@pytest.mark.parametrize("route,var", [
    ("/", "MAIN_PAGE_URL"),
    ("/sub", "SUB_PAGE_URL"),
    ("/link", "LINK_PAGE_URL"),
    ("/vmess", "VMESS_PAGE_URL"),
])
async def test_pages_are_fetched(route, var):
    body = f"<h1>{var}</h1>"
    async with TestServer(_upstream_app({"/page": body})) as upstream:
        env = make_env(**{var: str(upstream.make_url("/page"))})
        async with TestClient(TestServer(create_app(env))) as client:
            response = await client.get(route)
            assert response.status == 200
            assert response.content_type == "text/html"
            assert await response.text() == body


@pytest.mark.asyncio
async def test_tunnel_without_upgrade_replies_plainly():
    async with TestClient(TestServer(create_app(make_env()))) as client:
        response = await client.get("/1.2.3.4-8443")
        assert response.status == 200
        assert await response.text() == NON_WEBSOCKET_REPLY


@pytest.mark.asyncio
async def test_tunnel_uses_cached_proxy_kv():
    app = create_app(make_env())
    app[PROXY_KV_STORE].put('{"ID": ["1.2.3.4:443"]}')
    async with TestClient(TestServer(app)) as client:
        response = await client.get("/ID")
        assert response.status == 200
        assert await response.text() == NON_WEBSOCKET_REPLY


@pytest.mark.asyncio
async def test_tunnel_fetches_and_stores_proxy_kv():
    document = '{"SG": ["5.6.7.8:443"]}'
    async with TestServer(_upstream_app({"/kv": document})) as upstream:
        app = create_app(make_env(PROXY_KV_URL=str(upstream.make_url("/kv"))))
        async with TestClient(TestServer(app)) as client:
            response = await client.get("/SG")
            assert response.status == 200
        assert app[PROXY_KV_STORE].get() == document


@pytest.mark.asyncio
async def test_tunnel_reports_proxy_kv_status():
    async with TestServer(_upstream_app({"/kv": "gone"}, status=404)) as upstream:
        app = create_app(make_env(PROXY_KV_URL=str(upstream.make_url("/kv"))))
        async with TestClient(TestServer(app)) as client:
            response = await client.get("/SG")
            assert response.status == 500
            assert "error getting proxy kv: 404" in await response.text()


@pytest.mark.asyncio
async def test_tunnel_without_kv_source_fails():
    async with TestClient(TestServer(create_app(make_env()))) as client:
        response = await client.get("/ID")
        assert response.status == 500


@pytest.mark.asyncio
async def test_tunnel_unknown_group_fails():
    app = create_app(make_env())
    app[PROXY_KV_STORE].put('{"ID": ["1.2.3.4:443"]}')
    async with TestClient(TestServer(app)) as client:
        response = await client.get("/SG")
        assert response.status == 500


async def _echo(reader, writer):
    while data := await reader.read(1024):
        writer.write(data)
        await writer.drain()
    writer.close()


@pytest.mark.asyncio
async def test_websocket_vless_relay():
    echo = await asyncio.start_server(_echo, "127.0.0.1", 0)
    port = echo.sockets[0].getsockname()[1]
    header = (
        b"\x00"
        + uuid.UUID(USER_ID).bytes
        + b"\x00"
        + b"\x01"
        + port.to_bytes(2, "big")
        + b"\x01"
        + bytes([127, 0, 0, 1])
    )
    payload = bytes(range(48))

    async def exchange():
        async with TestClient(TestServer(create_app(make_env()))) as client:
            ws = await client.ws_connect(f"/127.0.0.1-{port}")
            await ws.send_bytes(header + payload)
            received = b""
            while len(received) < 2 + len(payload):
                message = await ws.receive()
                assert message.type == aiohttp.WSMsgType.BINARY
                received += message.data
            await ws.close()
            return received

    try:
        received = await asyncio.wait_for(exchange(), 10)
    finally:
        echo.close()
        await echo.wait_closed()
    assert received == b"\x00\x00" + payload
# siren

An asyncio WebSocket tunnel server built on aiohttp. A client opens a
WebSocket to the server. The server reads the first bytes of the stream to
pick the protocol (VLESS, VMess with AEAD header, Trojan or Shadowsocks). It
then connects to the requested destination over TCP and relays traffic in
both directions. After that relay ends, or if the connection fails, it also
tries the configured fallback proxy address.

## Installation

```
pip install .
```

To also install the test tools:

```
pip install ".[test]"
```

## Configuration

The server reads its settings from environment variables:

| Variable         | Meaning                                                        |
|------------------|----------------------------------------------------------------|
| `UUID`           | User identifier used to derive VMess header keys               |
| `MAIN_PAGE_URL`  | Page fetched and served at `/`                                 |
| `SUB_PAGE_URL`   | Page fetched and served at `/sub`                              |
| `LINK_PAGE_URL`  | Page fetched and served at `/link`                             |
| `VMESS_PAGE_URL` | Page fetched and served at `/vmess`                            |
| `PROXY_KV_URL`   | URL of the JSON proxy list used for country-code routing       |

The four page variables must be set. If one is missing, every request answers
with HTTP 500. If `UUID` does not parse, the server uses the all-zero
identifier `00000000-0000-0000-0000-000000000000`.

## Running

```
siren --host 0.0.0.0 --port 8080
```

Both options are optional. The defaults are `0.0.0.0` and `8080`.

## Routes

- `/`, `/sub`, `/link` and `/vmess` fetch the configured page and return it
  as HTML.
- `/{proxyip}` is the tunnel endpoint. A request with `Upgrade: websocket`
  opens a tunnel. Any other request gets a short greeting page.

The `proxyip` segment sets the fallback proxy in one of two ways:

- `host-port`, for example `/10.0.0.1-443`. It is used as given. If the
  segment has no valid `host-port` form, the fallback is the request's own
  host on port 443.
- One or more two-letter country codes separated by commas, for example
  `/SG,JP`. The server downloads the JSON document at `PROXY_KV_URL`, which
  maps each code to a list of `host:port` strings, and keeps it in memory for
  24 hours. One random byte picks the code, and the same byte picks the entry.

## Library use

The building blocks can be used on their own:

```python
import asyncio

from siren.hash import kdf, md5
from siren.common import ByteReader, parse_addr, read_port
from siren.app import parse_proxyip, select_proxy

key = md5(bytes(16), b"c48619fe-8f02-49e0-b9e9-edf763e17e21")
derived = kdf(key, [b"AES Auth ID Encryption"])   # 32 bytes


async def demo():
    reader = ByteReader(bytes([1, 127, 0, 0, 1, 0x01, 0xBB]))
    address = await parse_addr(reader)   # "127.0.0.1"
    port = await read_port(reader)       # 443
    return address, port

asyncio.run(demo())

parse_proxyip("10.0.0.1-443")                             # ("10.0.0.1", 443)
select_proxy("SG", {"SG": ["10.0.0.2:8443"]}, 0)          # "10.0.0.2-8443"
```

`siren.vless`, `siren.trojan`, `siren.shadowsocks` and `siren.vmess` hold the
protocol handlers. `siren.vmess.encode_response_header` builds the sealed VMess
response. `siren.conn.ProxyStream` buffers the WebSocket, detects the protocol
and relays the data. `siren.app.create_app` returns the aiohttp application.

## Limitations

- Users are not authenticated. VLESS user ids and Trojan password hashes are
  read and discarded. The VMess `UUID` is used only to open the request
  header.
- Only the request header is decrypted for VMess. The data after it is relayed
  as-is, without body encryption.
- Shadowsocks requests are expected with a plain, unencrypted address header,
  and are always relayed as TCP.
- UDP is not relayed. A UDP request is treated as a single DNS query, which is
  sent over HTTPS to `1.1.1.1`. If that succeeds, the query bytes are written
  back to the client. The DNS answer is not.
- The proxy list cache is held in process memory only.
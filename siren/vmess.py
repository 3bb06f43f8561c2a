"""VMess AEAD request handling."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from uuid import UUID

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .common import (
    KDFSALT_CONST_AEAD_RESP_HEADER_IV,
    KDFSALT_CONST_AEAD_RESP_HEADER_KEY,
    KDFSALT_CONST_AEAD_RESP_HEADER_LEN_IV,
    KDFSALT_CONST_AEAD_RESP_HEADER_LEN_KEY,
    KDFSALT_CONST_VMESS_HEADER_PAYLOAD_AEAD_IV,
    KDFSALT_CONST_VMESS_HEADER_PAYLOAD_AEAD_KEY,
    KDFSALT_CONST_VMESS_HEADER_PAYLOAD_LENGTH_AEAD_IV,
    KDFSALT_CONST_VMESS_HEADER_PAYLOAD_LENGTH_AEAD_KEY,
    AsyncReader,
    ByteReader,
    ProtocolError,
    parse_addr,
    read_port,
)
from .hash import kdf, md5, sha256

if TYPE_CHECKING:
    from .conn import ProxyStream

logger = logging.getLogger(__name__)

CMD_KEY_SUFFIX = b"c48619fe-8f02-49e0-b9e9-edf763e17e21"
_VERSION = 1
_TCP = 0x01
_TAG_LENGTH = 16
_RESPONSE_HEADER_LENGTH = 4


def _open(key: bytes, nonce: bytes, sealed: bytes, aad: bytes) -> bytes:
    try:
        return AESGCM(key).decrypt(nonce, sealed, aad)
    except InvalidTag as exc:
        raise ProtocolError("header authentication failed") from exc


async def aead_decrypt(stream: AsyncReader, uuid: UUID) -> bytes:
    """Read and decrypt the AEAD-sealed command section of a VMess request."""
    cmd_key = md5(uuid.bytes, CMD_KEY_SUFFIX)

    # auth id (16) | sealed length (18) | nonce (8)
    auth_id = await stream.read_exact(16)
    sealed_length = await stream.read_exact(18)
    nonce = await stream.read_exact(8)

    def derive(salt: bytes, size: int) -> bytes:
        return kdf(cmd_key, [salt, auth_id, nonce])[:size]

    length = _open(
        derive(KDFSALT_CONST_VMESS_HEADER_PAYLOAD_LENGTH_AEAD_KEY, 16),
        derive(KDFSALT_CONST_VMESS_HEADER_PAYLOAD_LENGTH_AEAD_IV, 12),
        sealed_length,
        auth_id,
    )
    header_length = int.from_bytes(length[:2], "big")

    sealed_header = await stream.read_exact(header_length + _TAG_LENGTH)
    return _open(
        derive(KDFSALT_CONST_VMESS_HEADER_PAYLOAD_AEAD_KEY, 16),
        derive(KDFSALT_CONST_VMESS_HEADER_PAYLOAD_AEAD_IV, 12),
        sealed_header,
        auth_id,
    )


def encode_response_header(key: bytes, iv: bytes, option: int) -> tuple[bytes, bytes]:
    """Build the sealed response length and response header for a request.

    ``key`` and ``iv`` are the data encryption key and IV from the request;
    ``option`` is its response authentication value.
    """
    response_key = sha256(key)[:16]
    response_iv = sha256(iv)[:16]

    length_key = kdf(response_key, [KDFSALT_CONST_AEAD_RESP_HEADER_LEN_KEY])[:16]
    length_iv = kdf(response_iv, [KDFSALT_CONST_AEAD_RESP_HEADER_LEN_IV])[:12]
    length = AESGCM(length_key).encrypt(
        length_iv, _RESPONSE_HEADER_LENGTH.to_bytes(2, "big"), None
    )

    header_key = kdf(response_key, [KDFSALT_CONST_AEAD_RESP_HEADER_KEY])[:16]
    header_iv = kdf(response_iv, [KDFSALT_CONST_AEAD_RESP_HEADER_IV])[:12]
    header = AESGCM(header_key).encrypt(header_iv, bytes([option, 0, 0, 0]), None)
    return length, header


async def process_vmess(stream: "ProxyStream") -> None:
    """Decrypt a VMess request header, answer it and relay the connection."""
    command = ByteReader(await aead_decrypt(stream, stream.config.uuid))

    if await command.read_u8() != _VERSION:
        raise ProtocolError("invalid version")

    iv = await command.read_exact(16)
    key = await command.read_exact(16)
    # response auth value, options, security, reserved
    options = await command.read_exact(4)

    is_tcp = await command.read_u8() == _TCP
    remote_port = await read_port(command)
    remote_addr = await parse_addr(command)

    length, header = encode_response_header(key, iv, options[0])
    await stream.write(length)
    await stream.write(header)

    if is_tcp:
        await stream.connect_pool(remote_addr, remote_port)
        return

    try:
        await stream.handle_udp_outbound()
    except OSError as exc:
        logger.error("error handling udp: %s", exc)
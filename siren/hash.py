"""Hashing helpers: the nested-HMAC key derivation used by VMess AEAD."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from typing import Protocol

_BLOCK_SIZE = 64
_KDF_ROOT_KEY = b"VMess AEAD KDF"


class _Hasher(Protocol):
    def copy(self) -> "_Hasher": ...

    def update(self, data: bytes) -> None: ...

    def digest(self) -> bytes: ...


class _Sha256:
    """Plain SHA-256 behind the hasher interface."""

    def __init__(self, state: "hashlib._Hash | None" = None) -> None:
        self._state = state if state is not None else hashlib.sha256()

    def copy(self) -> "_Sha256":
        return _Sha256(self._state.copy())

    def update(self, data: bytes) -> None:
        self._state.update(data)

    def digest(self) -> bytes:
        return self._state.digest()


class _NestedHmac:
    """HMAC whose underlying hash may itself be another HMAC."""

    def __init__(self, key: bytes, base: _Hasher, *, _clone: "_NestedHmac | None" = None) -> None:
        if _clone is not None:
            self._inner = _clone._inner.copy()
            self._outer = _clone._outer.copy()
            self._opad = _clone._opad
            return
        if len(key) > _BLOCK_SIZE:
            raise ValueError(f"key longer than {_BLOCK_SIZE} bytes")
        padded = key.ljust(_BLOCK_SIZE, b"\x00")
        ipad = bytes(b ^ 0x36 for b in padded)
        self._opad = bytes(b ^ 0x5C for b in padded)
        self._inner = base.copy()
        self._outer = base
        self._inner.update(ipad)

    def copy(self) -> "_NestedHmac":
        return _NestedHmac(b"", self._outer, _clone=self)

    def update(self, data: bytes) -> None:
        self._inner.update(data)

    def digest(self) -> bytes:
        inner_result = self._inner.digest()
        outer = self._outer.copy()
        outer.update(self._opad)
        outer.update(inner_result)
        return outer.digest()


def kdf(key: bytes, path: Iterable[bytes]) -> bytes:
    """Derive a 32-byte value from ``key`` through the chain of salts in ``path``."""
    current: _Hasher = _NestedHmac(_KDF_ROOT_KEY, _Sha256())
    for salt in path:
        current = _NestedHmac(bytes(salt), current)
    current.update(bytes(key))
    return current.digest()


def md5(*args: bytes) -> bytes:
    """MD5 digest of all arguments fed in order."""
    h = hashlib.md5()
    for chunk in args:
        h.update(chunk)
    return h.digest()


def sha256(*args: bytes) -> bytes:
    """SHA-256 digest of all arguments fed in order."""
    h = hashlib.sha256()
    for chunk in args:
        h.update(chunk)
    return h.digest()
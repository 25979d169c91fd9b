"""S/Kademlia node identities and XOR-metric helpers."""

from __future__ import annotations

import hashlib
from typing import Any

from ..payload import PayloadError, Reader, Writer
from ..protocol import ID as ProtocolID


def _blake2b256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


class ID(ProtocolID):
    """An address and public key, identified by the BLAKE2b-256 hash of the key."""

    def __init__(self, address: str = "", public_key: bytes = b"", nonce: bytes = b"") -> None:
        self._address = address
        self._public_key = bytes(public_key)
        self._nonce = bytes(nonce)
        self._digest = _blake2b256(self._public_key)

    @classmethod
    def _from_parts(cls, address: str, public_key: bytes, digest: bytes, nonce: bytes = b"") -> ID:
        instance = cls.__new__(cls)
        instance._address = address
        instance._public_key = bytes(public_key)
        instance._nonce = bytes(nonce)
        instance._digest = bytes(digest)
        return instance

    @property
    def address(self) -> str:
        return self._address

    @property
    def public_key(self) -> bytes:
        return self._public_key

    @property
    def nonce(self) -> bytes:
        return self._nonce

    def equals(self, other: Any) -> bool:
        """Whether ``other`` is an ID with the same hash."""
        return isinstance(other, ID) and self._digest == other._digest

    def digest(self) -> bytes:
        """BLAKE2b-256 hash of the public key."""
        return self._digest

    @classmethod
    def read(cls, reader: Reader) -> ID:
        """Deserialize an ID written by ``write``."""
        try:
            address = reader.read_string()
        except PayloadError as exc:
            raise PayloadError(f"skademlia: failed to deserialize ID address: {exc}") from exc
        try:
            public_key = reader.read_bytes()
        except PayloadError as exc:
            raise PayloadError(f"skademlia: failed to deserialize ID public key: {exc}") from exc
        try:
            nonce = reader.read_bytes()
        except PayloadError as exc:
            raise PayloadError(f"skademlia: failed to deserialize ID nonce: {exc}") from exc
        return cls(address, public_key, nonce)

    def write(self) -> bytes:
        return (
            Writer()
            .write_string(self._address)
            .write_bytes(self._public_key)
            .write_bytes(self._nonce)
            .to_bytes()
        )

    def __str__(self) -> str:
        return (
            f"S/Kademlia(address: {self._address}, publicKey: {self._public_key[:16].hex()}, "
            f"hash: {self._digest[:16].hex()}, nonce: {self._nonce.hex()})"
        )

    def __repr__(self) -> str:
        return f"ID(address={self._address!r}, hash={self._digest.hex()})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ID):
            return NotImplemented
        return (
            self._address == other._address
            and self._public_key == other._public_key
            and self._digest == other._digest
            and self._nonce == other._nonce
        )

    def __hash__(self) -> int:
        return hash((self._address, self._public_key, self._digest, self._nonce))


def prefix_len(buf: bytes) -> int:
    """Number of leading zero bits; an all-zero buffer gives ``8 * len - 1``."""
    for index, byte in enumerate(buf):
        if byte:
            return index * 8 + 8 - byte.bit_length()
    return len(buf) * 8 - 1


def xor(a: bytes, b: bytes) -> bytes:
    """Bytewise XOR of two equally long byte strings."""
    if len(a) != len(b):
        raise ValueError("skademlia: len(a) and len(b) must be equal for xor(a, b)")
    return (int.from_bytes(a, "big") ^ int.from_bytes(b, "big")).to_bytes(len(a), "big")


def prefix_diff(a: bytes, b: bytes, n: int) -> int:
    """Number of differing bits among the first ``n`` bits of ``a`` and ``b``."""
    total = 0
    for index, byte in enumerate(xor(a, b)):
        if n <= 8 * index:
            break
        if n < 8 * (index + 1):
            byte >>= 8 - n % 8
        total += bin(byte).count("1")
    return total
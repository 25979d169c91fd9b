"""S/Kademlia key pairs validated by static and dynamic crypto puzzles."""

from __future__ import annotations

import hashlib
import os

from ..signature import PRIVATE_KEY_SIZE, generate_key
from .identifier import prefix_len, xor

DEFAULT_C1 = 8
"""Prefix-matching length for the static crypto puzzle."""

DEFAULT_C2 = 8
"""Prefix-matching length for the dynamic crypto puzzle."""

MAX_PUZZLE_ITERATIONS = 1_000_000
"""Upper bound on attempts when solving a puzzle."""


class PuzzleError(ValueError):
    """Raised when keys do not satisfy the S/Kademlia crypto puzzles."""


def _blake2b256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


class Keypair:
    """An Ed25519 key pair with a nonce solving the dynamic puzzle."""

    def __init__(self, private_key: bytes, public_key: bytes, nonce: bytes, c1: int, c2: int) -> None:
        self._private_key = bytes(private_key)
        self._public_key = bytes(public_key)
        self.nonce = bytes(nonce)
        self.c1 = c1
        self.c2 = c2

    def id(self) -> bytes:
        """BLAKE2b-256 hash of the public key."""
        return _blake2b256(self._public_key)

    def public_key(self) -> bytes:
        return self._public_key

    def private_key(self) -> bytes:
        return self._private_key

    def __str__(self) -> str:
        return f"S/Kademlia(public: {self._public_key.hex()}, private: {self._private_key.hex()})"

    def __repr__(self) -> str:
        return f"Keypair(public={self._public_key.hex()}, c1={self.c1}, c2={self.c2})"


def check_hashed_bytes_prefix_len(data: bytes, c: int) -> bool:
    """Whether the hash of ``data`` starts with at least ``c`` zero bits."""
    return prefix_len(_blake2b256(data)) >= c


def random_bytes(length: int) -> bytes:
    """Cryptographically random bytes of the given length."""
    return os.urandom(length)


def check_dynamic_puzzle(id: bytes, buf: bytes, c: int) -> bool:
    """Whether ``xor(id, buf)`` solves the dynamic puzzle for prefix length ``c``."""
    return check_hashed_bytes_prefix_len(xor(id, buf), c)


def generate_nonce(id: bytes, c: int) -> bytes | None:
    """Search for a nonce solving the dynamic puzzle; None if none is found."""
    for _ in range(MAX_PUZZLE_ITERATIONS):
        nonce = random_bytes(len(id))
        if check_dynamic_puzzle(id, nonce, c):
            return nonce
    return None


def load_keys(private_key: bytes, c1: int, c2: int) -> Keypair:
    """Load a 64-byte Ed25519 private key and validate it against both puzzles."""
    if len(private_key) != PRIVATE_KEY_SIZE:
        raise ValueError(f"skademlia: private key is not {PRIVATE_KEY_SIZE} bytes")
    private_key = bytes(private_key)
    public_key = private_key[32:]
    id = _blake2b256(public_key)

    if not check_hashed_bytes_prefix_len(id, c1):
        raise PuzzleError(
            f"skademlia: private key provided does not have a prefix of C1: {id.hex()}"
        )

    nonce = generate_nonce(id, c2)
    if nonce is None:
        raise PuzzleError("skademlia: keypair has an invalid nonce")

    return Keypair(private_key, public_key, nonce, c1, c2)


def new_keys(c1: int, c2: int) -> Keypair:
    """Generate random keys solving both puzzles for ``c1`` and ``c2``."""
    private_key = b""
    for _ in range(MAX_PUZZLE_ITERATIONS):
        public_key, private_key = generate_key()
        if check_hashed_bytes_prefix_len(_blake2b256(public_key), c1):
            break
    return load_keys(private_key, c1, c2)


def random_keys() -> Keypair:
    """Generate random keys with the default puzzle difficulties."""
    return new_keys(DEFAULT_C1, DEFAULT_C2)


def verify_puzzle(public_key: bytes, id: bytes, nonce: bytes, c1: int, c2: int) -> bool:
    """Whether ``id`` is a valid S/Kademlia id for ``public_key`` and ``nonce``."""
    return (
        _blake2b256(public_key) == id
        and check_hashed_bytes_prefix_len(id, c1)
        and check_dynamic_puzzle(id, nonce, c2)
    )
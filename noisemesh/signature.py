"""Signature schemes, with Ed25519 as the provided implementation."""

from __future__ import annotations

from abc import ABC, abstractmethod

from nacl.exceptions import CryptoError
from nacl.signing import SigningKey, VerifyKey

PRIVATE_KEY_SIZE = 64
PUBLIC_KEY_SIZE = 32
SIGNATURE_SIZE = 64


class SignatureError(ValueError):
    """Raised when signing fails or a signature does not verify."""


class Scheme(ABC):
    """A signature scheme."""

    @abstractmethod
    def sign(self, private_key: bytes, message: bytes) -> bytes:
        """Sign ``message`` with ``private_key``."""

    @abstractmethod
    def verify(self, public_key: bytes, message: bytes, signature: bytes) -> None:
        """Raise SignatureError unless ``signature`` is valid for ``message``."""


class EdDSA(Scheme):
    """Ed25519 signatures over 64-byte private keys (seed followed by public key)."""

    def sign(self, private_key: bytes, message: bytes) -> bytes:
        return sign(private_key, message)

    def verify(self, public_key: bytes, message: bytes, signature: bytes) -> None:
        verify(public_key, message, signature)


def generate_key() -> tuple[bytes, bytes]:
    """Generate a random Ed25519 key pair as (public key, private key)."""
    signing_key = SigningKey.generate()
    public_key = bytes(signing_key.verify_key)
    return public_key, bytes(signing_key) + public_key


def sign(private_key: bytes, message: bytes) -> bytes:
    """Sign ``message`` with a 64-byte Ed25519 private key."""
    if len(private_key) != PRIVATE_KEY_SIZE:
        raise SignatureError(
            f"edwards25519: private key expected to be {PRIVATE_KEY_SIZE} bytes, "
            f"but is {len(private_key)} bytes"
        )
    signing_key = SigningKey(bytes(private_key[:32]))
    return signing_key.sign(bytes(message)).signature


def verify(public_key: bytes, message: bytes, signature: bytes) -> None:
    """Raise SignatureError unless ``signature`` is a valid Ed25519 signature."""
    if len(public_key) != PUBLIC_KEY_SIZE:
        raise SignatureError(
            f"edwards25519: public key expected to be {PUBLIC_KEY_SIZE} bytes, "
            f"but is {len(public_key)} bytes"
        )
    if len(signature) != SIGNATURE_SIZE:
        raise SignatureError("unable to verify signature")
    try:
        VerifyKey(bytes(public_key)).verify(bytes(message), bytes(signature))
    except (CryptoError, ValueError) as exc:
        raise SignatureError("unable to verify signature") from exc
"""Peer identities stored in metadata, and sequential protocol blocks."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable

from .opcode import Message

KEY_SHARED_KEY = "identity.shared_key"
KEY_ID = "node.id"
KEY_PEER_ID = "peer.id"

KEY_PROTOCOL_CURRENT_BLOCK_INDEX = "protocol.current_block_index"
KEY_PROTOCOL_ENFORCE_ONCE = "protocol.enforce_once"

_log = logging.getLogger(__name__)


class DisconnectPeer(Exception):
    """Raised by a block to ask for the peer to be disconnected."""

    def __init__(self, message: str = "peer disconnect requested") -> None:
        super().__init__(message)


class ID(Message):
    """An identity that can be sent over the wire."""

    @abstractmethod
    def equals(self, other: Any) -> bool:
        """Whether ``other`` denotes the same identity."""

    @abstractmethod
    def digest(self) -> bytes:
        """Hash identifying this identity."""


class Block(ABC):
    """One step of a protocol that every peer goes through in order."""

    @abstractmethod
    def on_register(self, protocol: Protocol, node: Any) -> None:
        """Called once when the protocol is enforced on a node."""

    @abstractmethod
    def on_begin(self, protocol: Protocol, peer: Any) -> None:
        """Run this step for ``peer``; raise to stop the protocol."""

    @abstractmethod
    def on_end(self, protocol: Protocol, peer: Any) -> None:
        """Called when ``peer`` disconnects while at this step."""


def _requests_disconnect(error: BaseException | None) -> bool:
    while error is not None:
        if isinstance(error, DisconnectPeer):
            return True
        error = error.__cause__
    return False


class _Once:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._done = False

    def do(self, action: Callable[[], Any]) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True
            action()


class Protocol:
    """An ordered list of blocks that peers of a node must follow."""

    def __init__(self) -> None:
        self._blocks: list[Block] = []
        self._sealed = False

    @property
    def blocks(self) -> tuple[Block, ...]:
        return tuple(self._blocks)

    def register(self, block: Block) -> Protocol:
        """Append ``block``; not allowed once the protocol is enforced."""
        if self._sealed:
            raise RuntimeError("register() cannot be called after enforce()")
        self._blocks.append(block)
        return self

    def enforce(self, node: Any) -> None:
        """Have every peer of ``node`` run through the blocks; only the first call per node acts."""
        self._sealed = True
        once = node.load_or_store(KEY_PROTOCOL_ENFORCE_ONCE, _Once())
        once.do(lambda: self._install(node))

    def _install(self, node: Any) -> None:
        for block in self._blocks:
            block.on_register(self, node)
        node.on_peer_init(self._on_peer_init)

    def _on_peer_init(self, node: Any, peer: Any) -> None:
        threading.Thread(
            target=self._follow, args=(peer,), name="protocol", daemon=True
        ).start()

    def _current_index(self, peer: Any) -> int:
        return peer.load_or_store(KEY_PROTOCOL_CURRENT_BLOCK_INDEX, 0)

    def _on_peer_disconnect(self, node: Any, peer: Any) -> None:
        index = self._current_index(peer)
        if index >= len(self._blocks):
            return
        self._blocks[index].on_end(self, peer)

    def _follow(self, peer: Any) -> None:
        peer.on_disconnect(self._on_peer_disconnect)
        while True:
            index = self._current_index(peer)
            if index >= len(self._blocks):
                return
            try:
                self._blocks[index].on_begin(self, peer)
            except Exception as exc:  # noqa: BLE001 - a failing block ends the protocol
                if _requests_disconnect(exc):
                    peer.disconnect()
                else:
                    _log.warning("Received an error following protocol: %s", exc)
                return
            peer.set(KEY_PROTOCOL_CURRENT_BLOCK_INDEX, index + 1)


def has_shared_key(peer: Any) -> bool:
    return peer.has(KEY_SHARED_KEY)


def load_shared_key(peer: Any) -> bytes | None:
    """Shared key established with ``peer``, or None."""
    shared_key = peer.get(KEY_SHARED_KEY)
    if isinstance(shared_key, (bytes, bytearray)):
        return bytes(shared_key)
    return None


def must_shared_key(peer: Any) -> bytes | None:
    """Shared key established with ``peer``; LookupError if there is none."""
    if not has_shared_key(peer):
        raise LookupError("shared key must be established via protocol for peer")
    return load_shared_key(peer)


def set_shared_key(peer: Any, shared_key: bytes) -> None:
    peer.set(KEY_SHARED_KEY, shared_key)


def delete_shared_key(peer: Any) -> None:
    peer.delete(KEY_SHARED_KEY)


def set_node_id(node: Any, id: ID) -> None:
    node.set(KEY_ID, id)


def delete_node_id(node: Any) -> None:
    node.delete(KEY_ID)


def _peer_key(id: ID) -> str:
    return KEY_PEER_ID + id.digest().hex()


def has_peer_id(peer: Any) -> bool:
    return peer.has(KEY_ID)


def set_peer_id(peer: Any, id: ID) -> None:
    """Record ``id`` for ``peer`` and index the peer by it on its node."""
    peer.node.set(_peer_key(id), peer)
    peer.set(KEY_ID, id)


def delete_peer_id(peer: Any) -> None:
    current = peer_id(peer)
    if current is not None:
        peer.node.delete(_peer_key(current))
    peer.delete(KEY_ID)


def node_id(node: Any) -> ID | None:
    value = node.get(KEY_ID)
    return value if isinstance(value, ID) else None


def peer_id(peer: Any) -> ID | None:
    value = peer.get(KEY_ID)
    return value if isinstance(value, ID) else None


def find_peer(node: Any, id: ID) -> Any:
    """Peer of ``node`` registered under ``id``, or None."""
    from .peer import Peer

    value = node.get(_peer_key(id))
    return value if isinstance(value, Peer) else None
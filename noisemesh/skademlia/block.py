"""Protocol block that authenticates peers and maintains the S/Kademlia table."""

from __future__ import annotations

import contextlib
import logging
import threading
from typing import Any

from ..opcode import OPCODE_NIL, next_available_opcode, register_message
from ..payload import Reader, Writer
from ..peer import SendError
from ..protocol import Block as ProtocolBlock
from ..protocol import (
    DisconnectPeer,
    Protocol,
    delete_peer_id,
    has_peer_id,
    node_id,
    peer_id,
    set_node_id,
    set_peer_id,
)
from ..signature import Scheme
from .identifier import ID, prefix_diff
from .keys import DEFAULT_C1, DEFAULT_C2, Keypair, PuzzleError, verify_puzzle
from .messages import Evict, LookupRequest, LookupResponse, Ping
from .table import KEY_KADEMLIA_TABLE, Table, bucket_size, find_closest_peers, table_of, update_table

DEFAULT_PREFIX_DIFF_LEN = 128
DEFAULT_PREFIX_DIFF_MIN = 32

KEY_AUTH_CHANNEL = "kademlia.auth.ch"

_PING_TIMEOUT = 3.0
_LOOKUP_POLL = 0.5

_log = logging.getLogger(__name__)


class Block(ProtocolBlock):
    """Exchanges and verifies S/Kademlia IDs, then keeps the routing table current."""

    def __init__(self) -> None:
        self.scheme: Scheme | None = None
        self.c1 = DEFAULT_C1
        self.c2 = DEFAULT_C2
        self.prefix_diff_len = DEFAULT_PREFIX_DIFF_LEN
        self.prefix_diff_min = DEFAULT_PREFIX_DIFF_MIN

        self.opcode_ping = OPCODE_NIL
        self.opcode_evict = OPCODE_NIL
        self.opcode_lookup_request = OPCODE_NIL
        self.opcode_lookup_response = OPCODE_NIL

    def with_c1(self, c1: int) -> Block:
        self.c1 = c1
        return self

    def with_c2(self, c2: int) -> Block:
        self.c2 = c2
        return self

    def with_prefix_diff_len(self, prefix_diff_len: int) -> Block:
        self.prefix_diff_len = prefix_diff_len
        return self

    def with_prefix_diff_min(self, prefix_diff_min: int) -> Block:
        self.prefix_diff_min = prefix_diff_min
        return self

    def with_signature_scheme(self, scheme: Scheme | None) -> Block:
        self.scheme = scheme
        return self

    def on_register(self, protocol: Protocol, node: Any) -> None:
        """Register the S/Kademlia messages and give ``node`` its ID and table."""
        self.opcode_ping = register_message(next_available_opcode(), Ping)
        self.opcode_evict = register_message(next_available_opcode(), Evict)
        self.opcode_lookup_request = register_message(next_available_opcode(), LookupRequest)
        self.opcode_lookup_response = register_message(next_available_opcode(), LookupResponse)

        keys = node.keys
        if not isinstance(keys, Keypair):
            raise TypeError(
                "skademlia: node keys must be a skademlia Keypair; "
                "set params.keys = new_keys(c1, c2)"
            )

        identity = ID(node.external_address(), keys.public_key(), keys.nonce)
        set_node_id(node, identity)
        node.set(KEY_KADEMLIA_TABLE, Table(identity))

    def on_begin(self, protocol: Protocol, peer: Any) -> None:
        """Exchange pings, verify the remote ID and start serving lookups."""
        try:
            peer.send_message(Ping(node_id(peer.node)))
        except SendError as exc:
            raise DisconnectPeer(f"failed to send ping: {exc}") from exc

        try:
            ping = peer.receive(self.opcode_ping).get(timeout=_PING_TIMEOUT)
        except TimeoutError as exc:
            raise DisconnectPeer("skademlia: timed out waiting for pong") from exc

        remote = ping.id
        if not verify_puzzle(remote.public_key, remote.digest(), remote.nonce, self.c1, self.c2):
            raise PuzzleError(
                "skademlia: peer connected with ID that fails to solve static/dynamic crypto puzzle"
            )

        set_peer_id(peer, remote)
        _enforce_signatures(peer, self.scheme)

        with contextlib.suppress(Exception):
            self._log_peer_activity(peer)

        peer.before_message_received(self._on_message_received)

        stop = threading.Event()
        peer.on_disconnect(lambda node, _peer: stop.set())
        threading.Thread(
            target=self._handle_lookups, args=(peer, stop), name="skademlia-lookups", daemon=True
        ).start()

        peer.load_or_store(KEY_AUTH_CHANNEL, threading.Event()).set()

    def on_end(self, protocol: Protocol, peer: Any) -> None:
        """Forget the ID of a departing peer."""
        if has_peer_id(peer):
            delete_peer_id(peer)

    def _on_message_received(self, node: Any, peer: Any, msg: bytes) -> bytes:
        self._log_peer_activity(peer)
        return msg

    def _log_peer_activity(self, peer: Any) -> None:
        own = node_id(peer.node)
        remote = peer_id(peer)
        if own is None or remote is None:
            return
        if prefix_diff(own.digest(), remote.digest(), self.prefix_diff_len) > self.prefix_diff_min:
            try:
                update_table(peer.node, remote)
            except Exception as exc:
                raise DisconnectPeer(
                    f"kademlia: failed to update table with peer ID: {exc}"
                ) from exc

    def _handle_lookups(self, peer: Any, stop: threading.Event) -> None:
        inbox = peer.receive(self.opcode_lookup_request)
        while not stop.is_set():
            try:
                request = inbox.get(timeout=_LOOKUP_POLL)
            except TimeoutError:
                continue

            table = table_of(peer.node)
            response = LookupResponse(
                list(find_closest_peers(table, request.id.digest(), bucket_size()))
            )
            _log.info("Connected to peer(s): %s", table.peers())

            try:
                peer.send_message(response)
            except SendError as exc:
                _log.warning(
                    "Failed to send lookup response to peer %s: %s", peer_id(peer), exc
                )


def _enforce_signatures(peer: Any, scheme: Scheme | None) -> None:
    if scheme is None:
        return

    def sign_footer(node: Any, _codec: Any, footer: bytes, msg: bytes) -> bytes:
        signature = scheme.sign(node.keys.private_key(), msg)
        return Writer(footer).write_bytes(signature).to_bytes()

    def verify_footer(node: Any, _codec: Any, msg: bytes, reader: Reader) -> None:
        try:
            signature = reader.read_bytes()
        except Exception as exc:
            peer.disconnect_async()
            raise ValueError(f"signature: failed to read message signature: {exc}") from exc

        remote = peer_id(peer)
        try:
            if remote is None:
                raise ValueError("peer has no ID")
            scheme.verify(remote.public_key, msg, signature)
        except Exception as exc:
            peer.disconnect_async()
            raise ValueError(f"signature: peer sent an invalid signature: {exc}") from exc

    peer.on_encode_footer(sign_footer)
    peer.on_decode_footer(verify_footer)


def wait_until_authenticated(peer: Any) -> None:
    """Block until ``peer`` has completed the S/Kademlia handshake."""
    peer.load_or_store(KEY_AUTH_CHANNEL, threading.Event()).wait()
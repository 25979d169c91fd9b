"""A network node that listens for, dials and tracks peers."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from .hooks import SequentialHooks
from .nat import is_private_ip
from .params import Parameters
from .peer import Peer

_log = logging.getLogger(__name__)

_NAT_MAPPING_LIFETIME = 3600.0


class NodeError(Exception):
    """Raised when a node cannot be created, reach a peer or shut down cleanly."""


class Node:
    """Listens for incoming peers and dials outgoing ones over a transport layer.

    Callbacks receive this node as their first argument.
    """

    def __init__(self, params: Parameters) -> None:
        port = params.port
        if port != 0 and not 1024 <= port <= 65535:
            raise NodeError(
                f"port must be either 0 or between [1024, 65535]; port specified was {port}"
            )
        if params.transport is None:
            raise NodeError(
                "no transport layer was registered; set params.transport to a layer such as TCP()"
            )

        try:
            listener = params.transport.listen(params.host, port)
        except OSError as exc:
            raise NodeError(
                f"failed to start listening for peers on port {port}: {exc}"
            ) from exc

        self.keys = params.keys
        self.nat = params.nat
        self.transport = params.transport
        self.host = params.host

        self.max_message_size = params.max_message_size
        self.send_message_timeout = params.send_message_timeout
        self.receive_message_timeout = params.receive_message_timeout
        self.send_worker_busy_timeout = params.send_worker_busy_timeout

        self._listener = listener
        self._internal_port = self.transport.port(listener.address())
        self._external_port = (
            params.external_port if params.external_port > 0 else self._internal_port
        )

        self._listener_error_hooks = SequentialHooks()
        self._peer_connected_hooks = SequentialHooks()
        self._peer_dialed_hooks = SequentialHooks()
        self._peer_init_hooks = SequentialHooks()

        self._metadata: dict[str, Any] = dict(params.metadata)
        self._metadata_lock = threading.Lock()

        self._listen_cond = threading.Condition()
        self._listen_threads: set[int] = set()
        self._killed = threading.Event()
        self._dead = threading.Event()

        if self.nat is not None:
            try:
                self.nat.add_mapping(
                    str(self.transport),
                    self._internal_port,
                    self._external_port,
                    _NAT_MAPPING_LIFETIME,
                )
            except Exception as exc:
                listener.close()
                raise NodeError(f"nat: failed to port-forward: {exc}") from exc

    def internal_port(self) -> int:
        """Port the node listens on locally."""
        return self._internal_port

    def external_port(self) -> int:
        """Port the node is reachable on from outside."""
        return self._external_port

    def listen(self) -> None:
        """Accept incoming peers until the node is killed."""
        ident = threading.get_ident()
        with self._listen_cond:
            if self._killed.is_set():
                return
            self._listen_threads.add(ident)
        try:
            while not self._killed.is_set():
                try:
                    conn = self._listener.accept()
                except OSError as exc:
                    if self._killed.is_set():
                        break
                    self._listener_error_hooks.run(exc)
                    continue

                if self._killed.is_set():
                    conn.close()
                    break

                peer = Peer(self, conn)
                peer.start()

                errors = self._peer_connected_hooks.run(peer)
                if errors:
                    _log.warning("Got errors running OnPeerConnected callbacks: %s", errors)

                errors = self._peer_init_hooks.run(peer)
                if errors:
                    _log.warning("Got errors running OnPeerInit callbacks: %s", errors)
        finally:
            with self._listen_cond:
                self._listen_threads.discard(ident)
                self._listen_cond.notify_all()

    def dial(self, address: str) -> Peer:
        """Connect to the peer at ``address`` and start talking to it."""
        if self.external_address() == address:
            raise NodeError("node attempted to dial itself")

        try:
            conn = self.transport.dial(address)
        except OSError as exc:
            raise NodeError(f"failed to connect to peer {address}: {exc}") from exc

        peer = Peer(self, conn)
        peer.start()

        errors = self._peer_dialed_hooks.run(peer)
        if errors:
            _log.error("Got errors running OnPeerDialed callbacks: %s", errors)

        errors = self._peer_init_hooks.run(peer)
        if errors:
            _log.error("Got errors running OnPeerInit callbacks: %s", errors)

        return peer

    def on_listener_error(self, callback: Callable[[Node, Exception], Any]) -> None:
        """Register ``callback(node, error)`` for failures to accept a peer."""

        def hook(error: Exception) -> Any:
            wrapped = NodeError(f"failed to accept an incoming peer: {error}")
            wrapped.__cause__ = error
            return callback(self, wrapped)

        self._listener_error_hooks.register(hook)

    def on_peer_connected(self, callback: Callable[[Node, Peer], Any]) -> None:
        """Register ``callback(node, peer)`` for every accepted peer."""
        self._peer_connected_hooks.register(lambda peer: callback(self, peer))

    def on_peer_disconnected(self, *args: Callable[[Node, Peer], Any]) -> None:
        """Register callbacks ``(node, peer)`` run whenever any peer disconnects."""

        def hook(peer: Peer) -> None:
            peer.on_disconnect(*args)

        self._peer_init_hooks.register(hook)

    def on_peer_dialed(self, callback: Callable[[Node, Peer], Any]) -> None:
        """Register ``callback(node, peer)`` for every successfully dialed peer."""
        self._peer_dialed_hooks.register(lambda peer: callback(self, peer))

    def on_peer_init(self, *args: Callable[[Node, Peer], Any]) -> None:
        """Register callbacks ``(node, peer)`` for peers both accepted and dialed."""
        self._peer_init_hooks.register(
            *(lambda peer, callback=callback: callback(self, peer) for callback in args)
        )

    def set(self, key: str, value: Any) -> None:
        with self._metadata_lock:
            self._metadata[key] = value

    def get(self, key: str) -> Any:
        """Value stored under ``key``, or None."""
        with self._metadata_lock:
            return self._metadata.get(key)

    def load_or_store(self, key: str, value: Any) -> Any:
        """Existing value under ``key``, storing ``value`` first if there is none."""
        with self._metadata_lock:
            return self._metadata.setdefault(key, value)

    def has(self, key: str) -> bool:
        with self._metadata_lock:
            return key in self._metadata

    def delete(self, key: str) -> None:
        with self._metadata_lock:
            self._metadata.pop(key, None)

    def fence(self) -> None:
        """Block until the node has been killed."""
        self._dead.wait()

    def kill(self) -> None:
        """Stop listening, wait for listen loops to end and remove any port-forward."""
        with self._listen_cond:
            if self._killed.is_set():
                return
            self._killed.set()

        try:
            self._listener.close()
        except OSError as exc:
            self._listener_error_hooks.run(exc)

        current = threading.get_ident()
        with self._listen_cond:
            self._listen_cond.wait_for(lambda: self._listen_threads <= {current})

        self._dead.set()

        if self.nat is not None:
            try:
                self.nat.delete_mapping(
                    str(self.transport), self._internal_port, self._external_port
                )
            except Exception as exc:
                raise NodeError(f"nat: failed to remove port-forward: {exc}") from exc

    def external_address(self) -> str:
        """Address other peers should use to reach this node."""
        if self.nat is not None and is_private_ip(self.host):
            return f"{self.nat.external_ip()}:{self._external_port}"
        return f"{self.host}:{self._external_port}"
"""S/Kademlia broadcasting and iterative disjoint-path node lookup."""

from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any

from ..node import NodeError
from ..opcode import Message, OpcodeError, opcode_from_message
from ..peer import SendError
from ..protocol import find_peer, node_id
from .block import wait_until_authenticated
from .identifier import ID, xor
from .messages import LookupRequest, LookupResponse
from .table import Table, bucket_size, find_closest_peers, table_of

_LOOKUP_TIMEOUT = 3.0


def _closest_connected_peers(node: Any) -> list[Any]:
    own = node_id(node)
    peers = []
    for identity in find_closest_peers(table_of(node), own.digest(), bucket_size()):
        peer = find_peer(node, identity)
        if peer is not None:
            peers.append(peer)
    return peers


def broadcast(node: Any, message: Message) -> list[BaseException]:
    """Send ``message`` to the closest connected peers and wait; return the errors."""
    futures = [peer.send_message_async(message) for peer in _closest_connected_peers(node)]
    errors = []
    for future in futures:
        error = future.exception()
        if error is not None:
            errors.append(error)
    return errors


def broadcast_async(node: Any, message: Message) -> None:
    """Queue ``message`` for the closest connected peers without waiting."""
    for peer in _closest_connected_peers(node):
        peer.send_message_async(message)


class _Visited:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._seen: set[bytes] = set()

    def add(self, digest: bytes) -> bool:
        """Mark ``digest`` as seen; whether it was new."""
        with self._lock:
            if digest in self._seen:
                return False
            self._seen.add(digest)
            return True


def _query_peer(node: Any, peer_identity: ID, target: ID) -> list[ID]:
    if peer_identity.equals(node_id(node)):
        return []

    peer = find_peer(node, peer_identity)
    if peer is None:
        try:
            peer = node.dial(peer_identity.address)
        except NodeError:
            return []
        wait_until_authenticated(peer)

    try:
        opcode = opcode_from_message(LookupResponse())
    except OpcodeError as exc:
        raise RuntimeError("skademlia: response opcode not registered") from exc

    try:
        peer.send_message(LookupRequest(target))
    except SendError:
        return []

    try:
        response = peer.receive(opcode).get(timeout=_LOOKUP_TIMEOUT)
    except TimeoutError:
        return []
    return list(response.peers)


def _perform_lookup(
    node: Any, queue: deque[ID], target: ID, alpha: int, visited: _Visited
) -> list[ID]:
    results: list[ID] = []
    if alpha < 1:
        return results

    with ThreadPoolExecutor(max_workers=alpha) as pool:
        pending: set[Future] = set()

        def refill() -> None:
            while len(pending) < alpha and queue:
                pending.add(pool.submit(_query_peer, node, queue.popleft(), target))
            queue.clear()

        refill()
        while pending:
            done, _ = wait(pending, return_when=FIRST_COMPLETED)
            for future in done:
                pending.discard(future)
                for identity in future.result():
                    if visited.add(identity.digest()):
                        results.append(identity)
                        queue.append(identity)
                refill()
    return results


def find_node(node: Any, target_id: ID, alpha: int, num_disjoint_paths: int) -> list[ID]:
    """Look up at most a bucket's worth of IDs closest to ``target_id``.

    Lookups run over ``num_disjoint_paths`` disjoint paths in parallel, each
    querying at most ``alpha`` peers at a time.
    """
    if num_disjoint_paths < 1:
        raise ValueError("number of disjoint paths must be at least 1")

    table: Table = table_of(node)
    visited = _Visited()
    visited.add(node_id(node).digest())
    visited.add(target_id.digest())

    lookups: list[deque[ID]] = []
    results: list[ID] = []

    for index, identity in enumerate(find_closest_peers(table, target_id.digest(), alpha)):
        visited.add(identity.digest())
        if len(lookups) < num_disjoint_paths:
            lookups.append(deque())
        lookups[index % num_disjoint_paths].append(identity)
        results.append(identity)

    if lookups:
        with ThreadPoolExecutor(max_workers=len(lookups)) as pool:
            futures = [
                pool.submit(_perform_lookup, node, queue, target_id, alpha, visited)
                for queue in lookups
            ]
            for future in futures:
                results.extend(future.result())

    target = target_id.digest()
    results.sort(key=lambda identity: xor(identity.digest(), target))
    return results[: bucket_size()]
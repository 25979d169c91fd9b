"""S/Kademlia routing table of XOR-distance buckets."""

from __future__ import annotations

import threading
from typing import Any, Iterator

from ..opcode import opcode_from_message
from ..peer import SendError
from ..protocol import ID as ProtocolID
from ..protocol import find_peer
from .identifier import ID, prefix_len, xor
from .messages import Evict

KEY_KADEMLIA_TABLE = "kademlia.table"

_EVICT_TIMEOUT = 3.0
_bucket_size = 16


class BucketFullError(Exception):
    """Raised when an ID cannot be added because its bucket is full."""

    def __init__(self, message: str = "kademlia: cannot add ID, bucket is full") -> None:
        super().__init__(message)


def bucket_size() -> int:
    """Maximum number of IDs held by one bucket."""
    return _bucket_size


def set_bucket_size(size: int) -> None:
    """Change the maximum number of IDs held by one bucket."""
    global _bucket_size
    if size < 1:
        raise ValueError("bucket size must be at least 1")
    _bucket_size = size


class _Bucket:
    """IDs ordered from most to least recently seen."""

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self._items: list[ProtocolID] = []

    def __len__(self) -> int:
        with self.lock:
            return len(self._items)

    def __iter__(self) -> Iterator[ProtocolID]:
        with self.lock:
            return iter(list(self._items))

    def _index(self, item: ProtocolID) -> int:
        for index, current in enumerate(self._items):
            if current is item:
                return index
        raise ValueError("item not in bucket")

    def find(self, digest: bytes) -> ProtocolID | None:
        with self.lock:
            return next((item for item in self._items if item.digest() == digest), None)

    def push_front(self, item: ProtocolID) -> None:
        with self.lock:
            self._items.insert(0, item)

    def move_to_front(self, item: ProtocolID) -> None:
        with self.lock:
            self._items.insert(0, self._items.pop(self._index(item)))

    def remove(self, item: ProtocolID) -> None:
        with self.lock:
            del self._items[self._index(item)]

    def back(self) -> ProtocolID | None:
        with self.lock:
            return self._items[-1] if self._items else None


class Table:
    """Routing table with one bucket per bit of the owner's ID hash."""

    def __init__(self, self_id: ProtocolID) -> None:
        if self_id is None:
            raise ValueError("kademlia: self ID must not be nil")
        self.self_id = self_id
        self.num_buckets = len(self_id.digest()) * 8
        self._buckets = [_Bucket() for _ in range(self.num_buckets)]
        self.update(self_id)

    def update(self, target: ProtocolID) -> None:
        """Move ``target`` to the front of its bucket, adding it if there is room."""
        digest = target.digest()
        if len(self.self_id.digest()) != len(digest):
            raise ValueError("kademlia: got invalid hash size for target ID on update")
        bucket = self.bucket(self.bucket_id(digest))
        with bucket.lock:
            found = bucket.find(digest)
            if found is not None:
                bucket.move_to_front(found)
            elif len(bucket) < bucket_size():
                bucket.push_front(target)
            else:
                raise BucketFullError()

    def get(self, target: ProtocolID) -> ProtocolID | None:
        """The stored ID with the same hash as ``target``, or None."""
        return self.bucket(self.bucket_id(target.digest())).find(target.digest())

    def delete(self, target: ProtocolID) -> bool:
        """Remove the ID with the hash of ``target``; whether one was removed."""
        bucket = self.bucket(self.bucket_id(target.digest()))
        with bucket.lock:
            found = bucket.find(target.digest())
            if found is None:
                return False
            bucket.remove(found)
            return True

    def peers(self) -> list[str]:
        """Addresses of all distinct peers in the table, excluding the owner."""
        seen = {self.self_id.digest()}
        addresses = []
        for bucket in self._buckets:
            for identity in bucket:
                digest = identity.digest()
                if digest not in seen:
                    seen.add(digest)
                    addresses.append(identity.address)
        return addresses

    def bucket_id(self, id: bytes) -> int:
        """Index of the bucket that an ID hash belongs to."""
        return prefix_len(xor(id, self.self_id.digest()))

    def bucket(self, index: int) -> _Bucket | None:
        """Bucket at ``index``, or None if out of range."""
        if 0 <= index < len(self._buckets):
            return self._buckets[index]
        return None


def table_of(node: Any) -> Table:
    """The routing table stored on ``node``."""
    table = node.get(KEY_KADEMLIA_TABLE)
    if table is None:
        raise LookupError(
            "kademlia: node has not enforced identity policy, and thus has no table associated to it"
        )
    if not isinstance(table, Table):
        raise TypeError("kademlia: table associated to node is not an instance of a kademlia table")
    return table


def find_closest_peers(table: Table, target: bytes, k: int) -> list[ProtocolID]:
    """At most ``k`` peers in ascending XOR distance to ``target``."""
    self_id = table.self_id
    bucket_id = table.bucket_id(xor(target, self_id.digest()))

    def collect(index: int) -> list[ProtocolID]:
        return [item for item in table.bucket(index) if not item.equals(self_id)]

    peers = collect(bucket_id)
    offset = 1
    while len(peers) < k and (bucket_id - offset >= 0 or bucket_id + offset < table.num_buckets):
        if bucket_id - offset >= 0:
            peers.extend(collect(bucket_id - offset))
        if bucket_id + offset < table.num_buckets:
            peers.extend(collect(bucket_id + offset))
        offset += 1

    peers.sort(key=lambda peer: xor(peer.digest(), target))
    return peers[:k]


def update_table(node: Any, target: ID) -> None:
    """Record activity of ``target``, challenging the stalest peer if its bucket is full."""
    opcode_evict = opcode_from_message(Evict())

    target_peer = find_peer(node, target)
    if target_peer is None:
        raise LookupError("skademlia: target peer could not be found actually connected to our node")

    table = table_of(node)
    try:
        table.update(target)
        return
    except BucketFullError:
        pass

    bucket = table.bucket(table.bucket_id(target.digest()))
    last = bucket.back()
    last_peer = find_peer(node, last) if last is not None else None
    if last_peer is None:
        raise LookupError("skademlia: last peer in bucket was not actually connected to our node")

    def evict_last_peer() -> None:
        last_peer.disconnect()
        with bucket.lock:
            bucket.remove(last)
            bucket.push_front(target)

    def evict_target_peer() -> None:
        target_peer.disconnect()
        bucket.move_to_front(last)

    try:
        last_peer.send_message(Evict())
    except SendError:
        evict_last_peer()
        return

    try:
        last_peer.receive(opcode_evict).get(timeout=_EVICT_TIMEOUT)
    except TimeoutError:
        evict_last_peer()
    else:
        evict_target_peer()
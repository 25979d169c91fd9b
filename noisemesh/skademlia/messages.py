"""Wire messages exchanged by the S/Kademlia protocol."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..opcode import EmptyMessage, Message
from ..payload import PayloadError, Reader, Writer
from .identifier import ID

MAX_NUM_PEERS_TO_LOOKUP = 64


@dataclass
class Ping(Message):
    """Announces the sender's identity."""

    id: ID = field(default_factory=ID)

    @classmethod
    def read(cls, reader: Reader) -> Ping:
        try:
            return cls(ID.read(reader))
        except PayloadError as exc:
            raise PayloadError(f"skademlia: failed to read id: {exc}") from exc

    def write(self) -> bytes:
        return self.id.write()


class Evict(EmptyMessage):
    """Asks a peer to confirm it is alive before it is evicted."""

    @classmethod
    def read(cls, reader: Reader) -> Evict:
        return cls()

    def write(self) -> bytes:
        return b""

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Evict)

    def __hash__(self) -> int:
        return hash(Evict)


@dataclass
class LookupRequest(Message):
    """Asks a peer for the peers it knows closest to an ID."""

    id: ID = field(default_factory=ID)

    @classmethod
    def read(cls, reader: Reader) -> LookupRequest:
        try:
            return cls(ID.read(reader))
        except PayloadError as exc:
            raise PayloadError(f"skademlia: failed to read id: {exc}") from exc

    def write(self) -> bytes:
        return self.id.write()


@dataclass
class LookupResponse(Message):
    """The peers a node believes are closest to a requested ID."""

    peers: list[ID] = field(default_factory=list)

    @classmethod
    def read(cls, reader: Reader) -> LookupResponse:
        try:
            count = reader.read_uint32()
        except PayloadError as exc:
            raise PayloadError(f"failed to read number of peers: {exc}") from exc

        if count > MAX_NUM_PEERS_TO_LOOKUP:
            raise PayloadError(
                f"received too many peers on lookup response; got {count} peer IDs when at "
                f"most we can only handle {MAX_NUM_PEERS_TO_LOOKUP} peer IDs"
            )

        peers = []
        for _ in range(count):
            try:
                peers.append(ID.read(reader))
            except PayloadError as exc:
                raise PayloadError(f"failed to decode peer ID: {exc}") from exc
        return cls(peers)

    def write(self) -> bytes:
        writer = Writer().write_uint32(len(self.peers))
        for peer in self.peers:
            writer.write(peer.write())
        return writer.to_bytes()
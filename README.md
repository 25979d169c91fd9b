# noisemesh

A small peer-to-peer networking library. Nodes listen and dial over a
pluggable transport layer (real TCP sockets, or the in-memory `Buffered`
transport that is handy in tests), exchange length-prefixed messages
identified by one-byte opcodes, and can run a protocol made of sequential
blocks for every peer. An S/Kademlia block provides crypto-puzzle
identities, a routing table, optional Ed25519-signed messages and node
lookups.

## Installing

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Modules

- `noisemesh.payload` – `Reader` and `Writer` for little-endian integers
  (`uint16`, `uint32`, `uint64`), single bytes and `uint32`-length-prefixed
  byte strings and strings. Short or malformed input raises `PayloadError`.
- `noisemesh.transport` – the `Layer` interface with `TCP` and `Buffered`
  implementations, plus `Connection`, `Listener` and `Address`. Failures
  raise `TransportError`.
- `noisemesh.opcode` – the process-wide registry pairing opcodes with
  `Message` types: `register_message`, `next_available_opcode`,
  `message_from_opcode`, `opcode_from_message`, `reset_opcodes`,
  `debug_opcodes`. Opcode 0 is always `EmptyMessage`.
- `noisemesh.codec` – `MessageCodec`, which frames a message as
  header + opcode + body + footer, with hooks to add and consume custom
  headers and footers.
- `noisemesh.hooks` – `SequentialHooks` and `ReduceHooks`, the callback
  collections used throughout.
- `noisemesh.params` – `Parameters` and `default_params()` (host
  `127.0.0.1`, TCP transport, 1 MiB maximum message size, 3-second
  timeouts).
- `noisemesh.node` – `Node`.
- `noisemesh.peer` – `Peer`, `SendError`.
- `noisemesh.protocol` – `Protocol`, `Block`, `ID`, `DisconnectPeer` and
  helpers that keep identities and shared keys in node and peer metadata.
- `noisemesh.signature` – the `Scheme` interface and `EdDSA`, with
  `sign`, `verify` and `generate_key` for 64-byte Ed25519 private keys.
- `noisemesh.nat` – the `Provider` interface for port forwarding and
  `is_private_ip`.
- `noisemesh.skademlia` – `identifier`, `keys`, `messages`, `table`,
  `block` and `rpc`.

## Messages

A message type subclasses `noisemesh.opcode.Message`, reading itself from a
`Reader` in the classmethod `read` and returning its bytes from `write`.

```python
from noisemesh.opcode import Message, register_message, next_available_opcode
from noisemesh.payload import Writer


class Chat(Message):
    def __init__(self, text=""):
        self.text = text

    @classmethod
    def read(cls, reader):
        return cls(reader.read_string())

    def write(self):
        return Writer().write_string(self.text).to_bytes()


CHAT = register_message(next_available_opcode(), Chat)
```

Registering a type that is already registered returns its existing opcode.

## Nodes and peers

```python
import threading

from noisemesh.node import Node
from noisemesh.params import default_params
from noisemesh.transport import Buffered

layer = Buffered()

params = default_params()
params.transport = layer
params.port = 7000
alice = Node(params)

params = default_params()
params.transport = layer
params.port = 7001
bob = Node(params)

threading.Thread(target=bob.listen, daemon=True).start()

peer = alice.dial(bob.external_address())
peer.send_message(Chat("hello"))
```

A port must be 0 (pick one) or within 1024–65535; otherwise, or without a
transport, `Node` raises `NodeError`. `Node.listen` blocks, accepting peers
until `Node.kill` is called; `Node.fence` blocks until then.

On the receiving side, `peer.receive(CHAT)` returns an inbox whose
`get(timeout=...)` waits for the next `Chat` message and raises
`TimeoutError` if none arrives. `Peer.send_message` blocks until the message
is written and raises `SendError` on failure; `Peer.send_message_async`
returns a `concurrent.futures.Future` instead. Messages are sent in order.

Hooks let you observe and transform traffic:

- on a node: `on_peer_connected`, `on_peer_dialed`, `on_peer_init`,
  `on_peer_disconnected`, `on_listener_error`;
- on a peer: `before_message_sent`, `after_message_sent`,
  `before_message_received`, `after_message_received`, `on_conn_error`,
  `on_disconnect`, and the codec's `on_encode_header`, `on_encode_footer`,
  `on_decode_header`, `on_decode_footer`.

Callbacks receive the node first and, for peer hooks, the peer second.
Nodes and peers both hold metadata through `set`, `get`, `has`, `delete`
and `load_or_store`. `Peer.disconnect` closes the connection and runs the
disconnect callbacks; `Peer.disconnect_async` does the same in the
background and returns a `threading.Event` set when it is done.

## Protocols

A `Protocol` is an ordered list of `Block` objects. After
`Protocol.enforce(node)`, every peer of the node runs through the blocks'
`on_begin` in order, in its own thread; a block that raises
`DisconnectPeer` has the peer disconnected, any other exception stops the
protocol for that peer. `on_end` of the current block is called when the
peer disconnects.

## S/Kademlia

```python
from noisemesh.protocol import Protocol
from noisemesh.signature import EdDSA
from noisemesh.skademlia.block import Block
from noisemesh.skademlia.keys import random_keys

params = default_params()
params.keys = random_keys()
node = Node(params)

Protocol().register(Block().with_signature_scheme(EdDSA())).enforce(node)
```

Keys come from `random_keys()`, `new_keys(c1, c2)` or
`load_keys(private_key, c1, c2)`, which raises `PuzzleError` when the key
does not solve the static puzzle. The block exchanges `Ping` messages,
checks the remote ID with `verify_puzzle`, records it in the routing table
(`table_of(node)`) and answers lookup requests. With a signature scheme set,
every message carries a signature in its footer.

Once a peer is authenticated (`wait_until_authenticated(peer)`),
`noisemesh.skademlia.rpc.broadcast(node, message)` sends a message to the
closest connected peers and returns the errors, `broadcast_async` does so
without waiting, and `find_node(node, target_id, alpha, num_disjoint_paths)`
performs disjoint-path lookups, returning at most `bucket_size()` IDs sorted
by XOR distance to the target.

## What is not included

- No NAT traversal implementation: `noisemesh.nat` only defines the
  `Provider` interface. A node given a provider through `Parameters.nat`
  uses it to add and remove a port mapping and to find its external
  address, but UPnP or NAT-PMP clients are not part of this package.
- No command-line tool or standalone server; the package is a library.
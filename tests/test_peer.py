import ipaddress
import threading
from dataclasses import dataclass

import pytest

from noisemesh.opcode import Message, next_available_opcode, register_message, reset_opcodes
from noisemesh.payload import Writer
from noisemesh.peer import Peer, SendError
from noisemesh.transport import Buffered

PORT = 8888


@dataclass(frozen=True)
class TextMessage(Message):
    text: str = ""

    @classmethod
    def read(cls, reader):
        return cls(reader.read_string())

    def write(self):
        return Writer().write_string(self.text).to_bytes()


@dataclass(frozen=True)
class UnregisteredMessage(Message):
    @classmethod
    def read(cls, reader):
        return cls()

    def write(self):
        return b""


@dataclass
class _StubNode:
    transport: Buffered
    max_message_size: int = 1048576
    send_message_timeout: float = 3.0
    receive_message_timeout: float = 3.0
    send_worker_busy_timeout: float = 3.0


@pytest.fixture(autouse=True)
def opcode():
    reset_opcodes()
    yield register_message(next_available_opcode(), TextMessage)
    reset_opcodes()


@pytest.fixture
def link():
    layer = Buffered()
    listener = layer.listen("127.0.0.1", PORT)
    client = layer.dial(f"127.0.0.1:{PORT}")
    server = listener.accept()
    yield layer, client, server
    client.close()
    server.close()
    listener.close()


def _uvarint(value):
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def _frame(payload):
    return _uvarint(len(payload)) + payload


def _read_exactly(conn, size):
    buf = bytearray()
    while len(buf) < size:
        chunk = conn.read(size - len(buf))
        if not chunk:
            raise EOFError
        buf += chunk
    return bytes(buf)


def _read_frame(conn):
    size = 0
    shift = 0
    while True:
        byte = _read_exactly(conn, 1)[0]
        size |= (byte & 0x7F) << shift
        shift += 7
        if byte < 0x80:
            break
    return _read_exactly(conn, size)


def test_peer_flow_runs_callbacks_in_order(link, opcode):
    layer, client, server = link
    remote = Peer(None, None)
    events = []
    received = []
    sent = threading.Event()
    after_received = threading.Event()

    def serve():
        data = _read_frame(server)
        _, msg = remote.decode_message(data)
        received.append(msg.text)
        sent.wait(5)
        server.write(_frame(remote.encode_message(TextMessage("hello"))))

    server_thread = threading.Thread(target=serve, daemon=True)
    server_thread.start()

    peer = Peer(_StubNode(layer), client)

    def mark(name, result=None):
        def callback(*args):
            events.append(name)
            return args[-1] if result == "last" else None

        return callback

    peer.on_encode_header(mark("encode_header"))
    peer.on_encode_footer(mark("encode_footer"))
    peer.before_message_sent(mark("before_sent", "last"))

    def on_after_sent(node, p):
        events.append("after_sent")
        sent.set()

    peer.after_message_sent(on_after_sent)
    peer.before_message_received(mark("before_received", "last"))
    peer.on_decode_header(mark("decode_header"))
    peer.on_decode_footer(mark("decode_footer"))

    def on_after_received(node, p):
        events.append("after_received")
        after_received.set()

    peer.after_message_received(on_after_received)
    peer.on_conn_error(mark("conn_error"))
    peer.on_disconnect(mark("disconnect"))

    peer.start()
    peer.send_message(TextMessage("hello"))

    msg = peer.receive(opcode).get(timeout=5)
    assert msg == TextMessage("hello")
    assert after_received.wait(5)
    events.append("main")

    peer.disconnect()
    server_thread.join(5)

    assert received == ["hello"]
    assert events == [
        "encode_header",
        "encode_footer",
        "before_sent",
        "after_sent",
        "before_received",
        "decode_header",
        "decode_footer",
        "after_received",
        "main",
        "conn_error",
        "disconnect",
    ]


def test_addresses_and_metadata(link):
    layer, client, _ = link
    peer = Peer(_StubNode(layer), client)
    peer.start()
    try:
        loopback = ipaddress.ip_address("127.0.0.1")
        assert peer.local_ip() == loopback
        assert peer.local_port() == PORT
        assert peer.remote_ip() == loopback
        assert peer.remote_port() == PORT
        assert peer.remote_address() == f"127.0.0.1:{PORT}"

        assert peer.get("key") is None
        assert not peer.has("key")

        assert peer.load_or_store("key", "value") == "value"
        assert peer.load_or_store("key", "other") == "value"
        peer.delete("key")
        assert peer.get("key") is None
        assert not peer.has("key")

        peer.set("key", "value")
        assert peer.get("key") == "value"
        assert peer.has("key")
    finally:
        peer.disconnect()


def test_remote_disconnect_is_not_a_conn_error(link, opcode):
    layer, client, server = link
    server_peer = Peer(_StubNode(layer), server)
    server_peer.start()

    peer = Peer(_StubNode(layer), client)
    conn_errors = []
    disconnected = threading.Event()
    peer.on_conn_error(lambda node, p, err: conn_errors.append(err))
    peer.on_disconnect(lambda node, p: disconnected.set())
    peer.start()

    peer.send_message(TextMessage("hello"))
    assert server_peer.receive(opcode).get(timeout=5) == TextMessage("hello")
    server_peer.disconnect()

    assert disconnected.wait(5)
    assert conn_errors == []


def test_send_async_writes_framed_payload(link):
    layer, client, server = link
    peer = Peer(_StubNode(layer), client)
    peer.start()
    try:
        message = TextMessage("payload")
        future = peer.send_message_async(message)
        assert future.result(timeout=5) is None
        assert _read_frame(server) == peer.encode_message(message)
    finally:
        peer.disconnect()


def test_unregistered_message_cannot_be_sent(link):
    layer, client, _ = link
    peer = Peer(_StubNode(layer), client)
    with pytest.raises(SendError, match="failed to serialize"):
        peer.send_message(UnregisteredMessage())
    future = peer.send_message_async(UnregisteredMessage())
    assert isinstance(future.exception(timeout=1), SendError)


def test_before_message_sent_error_fails_send(link):
    layer, client, _ = link
    peer = Peer(_StubNode(layer), client)

    def refuse(node, p, msg):
        raise ValueError("refused")

    peer.before_message_sent(refuse)
    peer.start()
    try:
        with pytest.raises(SendError, match="BeforeMessageSent") as info:
            peer.send_message(TextMessage("hello"))
        assert str(info.value.errors[0]) == "refused"
    finally:
        peer.disconnect()


def test_oversized_message_disconnects(link):
    layer, client, server = link
    peer = Peer(_StubNode(layer, max_message_size=4), client)
    conn_errors = []
    disconnected = threading.Event()
    peer.on_conn_error(lambda node, p, err: conn_errors.append(str(err)))
    peer.on_disconnect(lambda node, p: disconnected.set())
    peer.start()

    server.write(_frame(b"x" * 10))

    assert disconnected.wait(5)
    assert "exceeded max message size; got size 10" in conn_errors[0]


def test_unknown_opcode_reports_decode_failure(link):
    layer, client, server = link
    peer = Peer(_StubNode(layer), client)
    conn_errors = []
    disconnected = threading.Event()
    peer.on_conn_error(lambda node, p, err: conn_errors.append(str(err)))
    peer.on_disconnect(lambda node, p: disconnected.set())
    peer.start()

    server.write(_frame(bytes([222]) + TextMessage("hello").write()))

    assert disconnected.wait(5)
    assert conn_errors[0].startswith("failed to decode message")


def test_before_message_received_runs_latest_first(link, opcode):
    layer, client, server = link
    peer = Peer(_StubNode(layer), client)
    order = []

    def tracker(name):
        def callback(node, p, msg):
            order.append(name)
            return msg

        return callback

    peer.before_message_received(tracker("first"))
    peer.before_message_received(tracker("second"))
    peer.start()
    try:
        server.write(_frame(peer.encode_message(TextMessage("hi"))))
        assert peer.receive(opcode).get(timeout=5) == TextMessage("hi")
        assert order == ["second", "first"]
    finally:
        peer.disconnect()


def test_lock_on_receive_holds_back_processing(link, opcode):
    layer, client, server = link
    peer = Peer(_StubNode(layer), client)
    processed = threading.Event()
    peer.after_message_received(lambda node, p: processed.set())
    peer.start()
    try:
        handle = peer.lock_on_receive(opcode)
        server.write(_frame(peer.encode_message(TextMessage("held"))))
        assert handle.hub.get(timeout=5) == TextMessage("held")
        assert not processed.wait(0.2)
        handle.unlock()
        assert processed.wait(5)
    finally:
        peer.disconnect()


def test_receive_returns_same_inbox_and_times_out(link, opcode):
    layer, client, _ = link
    peer = Peer(_StubNode(layer), client)
    assert peer.receive(opcode) is peer.receive(opcode)
    with pytest.raises(TimeoutError):
        peer.receive(opcode).get(timeout=0.05)


def test_disconnect_is_idempotent(link):
    layer, client, _ = link
    peer = Peer(_StubNode(layer), client)
    calls = []
    peer.on_disconnect(lambda node, p: calls.append(p))
    peer.start()

    peer.disconnect()
    peer.disconnect()
    done = peer.disconnect_async()

    assert done.is_set()
    assert calls == [peer]
    assert peer.node.transport is layer
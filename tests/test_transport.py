import threading

import pytest

from noisemesh.transport import Address, Buffered, TCP, TransportError

HOST = "127.0.0.1"


def _read_exactly(conn, size):
    data = b""
    while len(data) < size:
        chunk = conn.read(size - len(data))
        assert chunk, "stream ended early"
        data += chunk
    return data


def _buffered_exchange(layer, port):
    listener = layer.listen(HOST, port)
    dial_conn = layer.dial(f"{HOST}:{port}")
    lis_conn = listener.accept()

    observed = {
        "ip": str(layer.ip(dial_conn.remote_address())),
        "port": layer.port(dial_conn.remote_address()),
        "dial_write": dial_conn.write(b"hello"),
        "lis_write": lis_conn.write(b"hello"),
    }

    dial_conn.close()

    with pytest.raises(TransportError):
        lis_conn.write(b"hello")
    with pytest.raises(TransportError):
        dial_conn.write(b"hello")
    with pytest.raises(TransportError):
        dial_conn.read(6)

    observed["lis_read"] = lis_conn.read(6)
    observed["lis_eof"] = lis_conn.read(6)
    return observed


@pytest.mark.parametrize("port", range(8900, 8910))
def test_buffered_connection_lifecycle(port):
    observed = _buffered_exchange(Buffered(), port)
    assert observed == {
        "ip": HOST,
        "port": port,
        "dial_write": 5,
        "lis_write": 5,
        "lis_read": b"hello",
        "lis_eof": b"",
    }


def test_buffered_concurrent_ports_share_layer():
    layer = Buffered()
    results = {}
    errors = []

    def run(port):
        try:
            results[port] = _buffered_exchange(layer, port)["lis_read"]
        except Exception as exc:  # collected and asserted below
            errors.append(exc)

    threads = [threading.Thread(target=run, args=(p,)) for p in range(8900, 8910)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5)

    assert errors == []
    assert results == {p: b"hello" for p in range(8900, 8910)}


def test_buffered_name():
    assert str(Buffered()) == "buffered"


def test_buffered_bad_host():
    with pytest.raises(TransportError):
        Buffered().listen("bad host", 10000)


def test_buffered_port_zero():
    layer = Buffered()
    listener = layer.listen(HOST, 0)
    port = layer.port(listener.address())
    assert port > 1024
    assert 10000 <= port < 60000


def test_buffered_listen_same_address_reuses_listener():
    layer = Buffered()
    first = layer.listen(HOST, 9000)
    second = layer.listen(HOST, 9000)
    assert second is first
    assert second.address() == Address(HOST, 9000)
    assert layer.port(second.address()) == 9000


def test_buffered_dial_unknown_address():
    with pytest.raises(TransportError, match="no listener"):
        Buffered().dial(f"{HOST}:9999")


def test_buffered_local_and_remote_address():
    layer = Buffered()
    layer.listen(HOST, 9001)
    conn = layer.dial(f"{HOST}:9001")
    assert conn.local_address() == Address(HOST, 9001)
    assert conn.remote_address() == Address(HOST, 9001)


def test_buffered_accept_wakes_on_close():
    layer = Buffered()
    listener = layer.listen(HOST, 9002)
    outcome = []

    def accept():
        try:
            listener.accept()
        except TransportError as exc:
            outcome.append(exc)

    thread = threading.Thread(target=accept)
    thread.start()
    listener.close()
    thread.join(5)
    assert not thread.is_alive()
    assert len(outcome) == 1
    assert isinstance(outcome[0], TransportError)
    assert listener.address() == Address(HOST, 9002)


def test_buffered_dial_closed_listener_fails():
    layer = Buffered()
    listener = layer.listen(HOST, 9003)
    listener.close()
    with pytest.raises(TransportError):
        listener.accept()


def test_buffered_blocking_read_receives_later_write():
    layer = Buffered()
    listener = layer.listen(HOST, 9004)
    dial_conn = layer.dial(f"{HOST}:9004")
    lis_conn = listener.accept()
    received = []

    def read():
        received.append(lis_conn.read(16))

    thread = threading.Thread(target=read)
    thread.start()
    written = dial_conn.write(b"ping")
    thread.join(5)
    assert written == 4
    assert not thread.is_alive()
    assert received == [b"ping"]


def test_address_string():
    assert str(Address(HOST, 8080)) == "127.0.0.1:8080"
    assert str(Address("::1", 80)) == "[::1]:80"


def test_tcp_name():
    assert str(TCP()) == "tcp"


def test_tcp_bad_host():
    with pytest.raises(TransportError):
        TCP().listen("bad host", 10000)


def test_tcp_port_zero():
    layer = TCP()
    with layer.listen(HOST, 0) as listener:
        assert layer.port(listener.address()) > 1024


def test_tcp_dial_invalid_address():
    with pytest.raises(TransportError):
        TCP().dial("nohostport")


def test_tcp_connection_lifecycle():
    layer = TCP()
    listener = layer.listen(HOST, 0)
    port = layer.port(listener.address())
    try:
        dial_conn = layer.dial(f"{HOST}:{port}")
        lis_conn = listener.accept()

        assert str(layer.ip(dial_conn.remote_address())) == HOST
        assert layer.port(dial_conn.remote_address()) == port

        assert dial_conn.write(b"hello") == 5
        assert lis_conn.write(b"hello") == 5
        assert _read_exactly(lis_conn, 5) == b"hello"
        assert _read_exactly(dial_conn, 5) == b"hello"

        dial_conn.close()

        with pytest.raises(TransportError):
            dial_conn.write(b"hello")
        with pytest.raises(TransportError):
            dial_conn.read(6)
        assert lis_conn.read(6) == b""
        lis_conn.close()
    finally:
        listener.close()


def test_tcp_accept_after_close_fails():
    listener = TCP().listen(HOST, 0)
    listener.close()
    with pytest.raises(TransportError):
        listener.accept()
"""Stream transports: real TCP sockets and an in-memory buffered layer."""

from __future__ import annotations

import ipaddress
import random
import socket
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass

DIAL_TIMEOUT = 3.0
_ACCEPT_POLL_INTERVAL = 0.1


class TransportError(OSError):
    """Raised when a transport operation fails."""


@dataclass(frozen=True)
class Address:
    """A host and port pair."""

    host: str
    port: int

    def __str__(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port_text = address.rpartition(":")
    if not sep or not host:
        raise TransportError(f"invalid address {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_text)
    except ValueError as exc:
        raise TransportError(f"invalid port in address {address!r}") from exc
    if not 0 <= port <= 65535:
        raise TransportError(f"port out of range in address {address!r}")
    return host, port


def _check_host(host: str) -> None:
    try:
        ipaddress.ip_address(host)
    except ValueError as exc:
        raise TransportError(f"unable to parse host as IP: {host}") from exc


def _check_port(port: int) -> None:
    if not 0 <= port <= 65535:
        raise TransportError(f"port must be within [0, 65535]; got {port}")


class Connection(ABC):
    """A bidirectional byte stream."""

    @abstractmethod
    def read(self, size: int) -> bytes:
        """Block until data is available and return up to ``size`` bytes; b"" at end of stream."""

    @abstractmethod
    def write(self, data: bytes) -> int:
        """Write all of ``data`` and return its length."""

    @abstractmethod
    def close(self) -> None:
        """Close this end of the connection."""

    @abstractmethod
    def local_address(self) -> Address:
        """Address of this end."""

    @abstractmethod
    def remote_address(self) -> Address:
        """Address of the other end."""

    def __enter__(self) -> Connection:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class Listener(ABC):
    """Accepts incoming connections."""

    @abstractmethod
    def accept(self) -> Connection:
        """Block until a connection arrives; raise TransportError once closed."""

    @abstractmethod
    def close(self) -> None:
        """Stop accepting connections."""

    @abstractmethod
    def address(self) -> Address:
        """Address the listener is bound to."""

    def __enter__(self) -> Listener:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class Layer(ABC):
    """A transport that can listen for and dial connections."""

    name = "layer"

    def __str__(self) -> str:
        return self.name

    @abstractmethod
    def listen(self, host: str, port: int) -> Listener:
        """Start listening on ``host`` and ``port``; port 0 picks one."""

    @abstractmethod
    def dial(self, address: str) -> Connection:
        """Connect to ``host:port``."""

    @abstractmethod
    def ip(self, address: Address) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
        """IP part of an address."""

    @abstractmethod
    def port(self, address: Address) -> int:
        """Port part of an address."""


class _SocketConnection(Connection):
    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._closed = False
        self._local = Address(*sock.getsockname()[:2])
        self._remote = Address(*sock.getpeername()[:2])

    def read(self, size: int) -> bytes:
        if self._closed:
            raise TransportError("read on closed connection")
        try:
            return self._sock.recv(size)
        except OSError as exc:
            raise TransportError(f"read failed: {exc}") from exc

    def write(self, data: bytes) -> int:
        if self._closed:
            raise TransportError("write on closed connection")
        try:
            self._sock.sendall(data)
        except OSError as exc:
            raise TransportError(f"write failed: {exc}") from exc
        return len(data)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()

    def local_address(self) -> Address:
        return self._local

    def remote_address(self) -> Address:
        return self._remote


class _SocketListener(Listener):
    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._address = Address(*sock.getsockname()[:2])
        self._closed = threading.Event()
        sock.settimeout(_ACCEPT_POLL_INTERVAL)

    def accept(self) -> Connection:
        while not self._closed.is_set():
            try:
                sock, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if self._closed.is_set():
                    break
                raise TransportError(f"failed to accept connection: {exc}") from exc
            sock.settimeout(None)
            try:
                return _SocketConnection(sock)
            except OSError as exc:
                sock.close()
                raise TransportError(f"failed to accept connection: {exc}") from exc
        raise TransportError("listener closed")

    def close(self) -> None:
        self._closed.set()
        self._sock.close()

    def address(self) -> Address:
        return self._address


class TCP(Layer):
    """Transport over operating-system TCP sockets."""

    name = "tcp"

    def listen(self, host: str, port: int) -> Listener:
        _check_host(host)
        _check_port(port)
        try:
            sock = socket.create_server(("", port))
        except OSError as exc:
            raise TransportError(f"failed to listen on port {port}: {exc}") from exc
        return _SocketListener(sock)

    def dial(self, address: str) -> Connection:
        host, port = _split_address(address)
        try:
            sock = socket.create_connection((host, port), timeout=DIAL_TIMEOUT)
        except OSError as exc:
            raise TransportError(f"failed to dial {address}: {exc}") from exc
        sock.settimeout(None)
        return _SocketConnection(sock)

    def ip(self, address: Address) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
        return ipaddress.ip_address(address.host)

    def port(self, address: Address) -> int:
        return address.port


class _Pipe:
    """One direction of an in-memory stream."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._buffer = bytearray()
        self._write_closed = False
        self._read_closed = False

    def write(self, data: bytes) -> int:
        with self._cond:
            if self._write_closed or self._read_closed:
                raise TransportError("write on closed pipe")
            self._buffer += data
            self._cond.notify_all()
        return len(data)

    def read(self, size: int) -> bytes:
        with self._cond:
            while not self._buffer and not self._write_closed and not self._read_closed:
                self._cond.wait()
            if self._read_closed:
                raise TransportError("read on closed pipe")
            chunk = bytes(self._buffer[:size])
            del self._buffer[:size]
            return chunk

    def close_write(self) -> None:
        with self._cond:
            self._write_closed = True
            self._cond.notify_all()

    def close_read(self) -> None:
        with self._cond:
            self._read_closed = True
            self._buffer.clear()
            self._cond.notify_all()


class _PipeConnection(Connection):
    def __init__(self, incoming: _Pipe, outgoing: _Pipe, address: Address) -> None:
        self._incoming = incoming
        self._outgoing = outgoing
        self._address = address

    def read(self, size: int) -> bytes:
        if size <= 0:
            return b""
        return self._incoming.read(size)

    def write(self, data: bytes) -> int:
        return self._outgoing.write(bytes(data))

    def close(self) -> None:
        self._outgoing.close_write()
        self._incoming.close_read()

    def local_address(self) -> Address:
        return self._address

    def remote_address(self) -> Address:
        return self._address


class _PipeListener(Listener):
    def __init__(self, address: Address) -> None:
        self._address = address
        self._cond = threading.Condition()
        self._pending: deque[_PipeConnection] = deque()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def dial(self) -> Connection:
        upstream, downstream = _Pipe(), _Pipe()
        client = _PipeConnection(downstream, upstream, self._address)
        server = _PipeConnection(upstream, downstream, self._address)
        with self._cond:
            if self._closed:
                raise TransportError(f"listener at {self._address} is closed")
            self._pending.append(server)
            self._cond.notify_all()
        return client

    def accept(self) -> Connection:
        with self._cond:
            while not self._pending and not self._closed:
                self._cond.wait()
            if self._closed:
                raise TransportError("listener closed")
            return self._pending.popleft()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            pending = list(self._pending)
            self._pending.clear()
            self._cond.notify_all()
        for conn in pending:
            conn.close()

    def address(self) -> Address:
        return self._address


class Buffered(Layer):
    """In-memory transport whose listeners live in this layer instance."""

    name = "buffered"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: dict[str, _PipeListener] = {}

    def listen(self, host: str, port: int) -> Listener:
        with self._lock:
            _check_host(host)
            _check_port(port)
            if port == 0:
                port = random.randrange(10000, 60000)
            address = Address(host, port)
            key = str(address)
            existing = self._listeners.get(key)
            if existing is not None and not existing.closed:
                return existing
            listener = _PipeListener(address)
            self._listeners[key] = listener
            return listener

    def dial(self, address: str) -> Connection:
        with self._lock:
            listener = self._listeners.get(address)
        if listener is None:
            raise TransportError(f"no listener setup for address {address}")
        return listener.dial()

    def ip(self, address: Address) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
        return ipaddress.ip_address(address.host)

    def port(self, address: Address) -> int:
        return address.port
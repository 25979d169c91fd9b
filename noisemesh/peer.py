"""A connected remote peer with ordered send and per-opcode receive workers."""

from __future__ import annotations

import concurrent.futures
import ipaddress
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from .codec import MessageCodec, MessageError
from .hooks import ReduceHooks, SequentialHooks
from .opcode import OPCODE_NIL, Message
from .params import default_params

_log = logging.getLogger(__name__)

_DEFAULTS = default_params()
_SEND_QUEUE_SIZE = 128
_POLL_INTERVAL = 0.05
_READ_CHUNK = 4096
_MAX_VARINT_LEN = 10


class SendError(Exception):
    """Raised when a message could not be sent to a peer."""

    def __init__(self, message: str, errors: Sequence[BaseException] = ()) -> None:
        super().__init__(message)
        self.errors = tuple(errors)


def _hook_send_error(what: str, errors: list[Exception]) -> SendError:
    error = SendError(f"{what}: {errors[0]}", errors)
    error.__cause__ = errors[0]
    return error


def _encode_uvarint(value: int) -> bytes:
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def _is_reset(exc: BaseException) -> bool:
    return isinstance(exc, ConnectionResetError) or isinstance(
        exc.__cause__, ConnectionResetError
    )


class _StreamReader:
    """Buffered reading of frames from a connection."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn
        self._buffer = bytearray()

    def _fill(self) -> bool:
        chunk = self._conn.read(_READ_CHUNK)
        if not chunk:
            return False
        self._buffer += chunk
        return True

    def read_byte(self) -> int | None:
        if not self._buffer and not self._fill():
            return None
        value = self._buffer[0]
        del self._buffer[0]
        return value

    def read_exact(self, size: int) -> bytes:
        while len(self._buffer) < size and self._fill():
            pass
        chunk = bytes(self._buffer[:size])
        del self._buffer[:size]
        return chunk

    def read_uvarint(self) -> int:
        """Read an unsigned varint; EOFError on a clean end of stream."""
        value = 0
        shift = 0
        for index in range(_MAX_VARINT_LEN):
            byte = self.read_byte()
            if byte is None:
                if index == 0:
                    raise EOFError("end of stream")
                raise ValueError("unexpected EOF while reading varint")
            if byte < 0x80:
                if index == _MAX_VARINT_LEN - 1 and byte > 1:
                    raise ValueError("varint overflows a 64-bit integer")
                return value | (byte << shift)
            value |= (byte & 0x7F) << shift
            shift += 7
        raise ValueError("varint overflows a 64-bit integer")


class _Inbox:
    """Hand-off point where the receive worker passes messages to a reader."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._pending = False
        self._item: Message | None = None

    def get(self, timeout: float | None = None) -> Message:
        """Block until a message is handed over; TimeoutError if none comes in time."""
        with self._cond:
            if not self._cond.wait_for(lambda: self._pending, timeout):
                raise TimeoutError("no message received in time")
            item = self._item
            self._item = None
            self._pending = False
            self._cond.notify_all()
            return item

    def _offer(self, item: Message, timeout: float, stop: threading.Event) -> bool:
        deadline = time.monotonic() + timeout
        with self._cond:
            self._item = item
            self._pending = True
            self._cond.notify_all()
            while self._pending:
                remaining = deadline - time.monotonic()
                if remaining <= 0 or stop.is_set():
                    self._pending = False
                    self._item = None
                    return False
                self._cond.wait(min(remaining, _POLL_INTERVAL))
            return True


@dataclass
class ReceiveHandle:
    """Inbox of one opcode and the lock that holds back its delivery."""

    hub: _Inbox = field(default_factory=_Inbox)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def unlock(self) -> None:
        """Release a hold taken with Peer.lock_on_receive."""
        self.lock.release()


@dataclass
class _SendCommand:
    payload: bytes
    future: concurrent.futures.Future


def _resolve(future: concurrent.futures.Future, error: BaseException | None) -> None:
    if future.done():
        return
    try:
        if error is None:
            future.set_result(None)
        else:
            future.set_exception(error)
    except concurrent.futures.InvalidStateError:
        pass


class Peer(MessageCodec):
    """A remote peer reached over a connection on behalf of a node.

    Callbacks receive the node first and this peer second.
    """

    def __init__(self, node: Any, conn: Any) -> None:
        super().__init__(node)
        self._conn = conn

        self._conn_error_hooks = SequentialHooks()
        self._disconnect_hooks = SequentialHooks()
        self._before_sent_hooks = ReduceHooks()
        self._before_received_hooks = ReduceHooks(reverse=True)
        self._after_sent_hooks = SequentialHooks()
        self._after_received_hooks = SequentialHooks()

        self._send_queue: queue.Queue[_SendCommand] = queue.Queue(_SEND_QUEUE_SIZE)
        self._handles: dict[int, ReceiveHandle] = {}
        self._handles_lock = threading.Lock()

        self._metadata: dict[str, Any] = {}
        self._metadata_lock = threading.Lock()

        self._killed = threading.Event()
        self._state_lock = threading.Lock()
        self._workers: list[threading.Thread] = []

    @property
    def node(self) -> Any:
        """The node this peer belongs to."""
        return self._node

    @node.setter
    def node(self, value: Any) -> None:
        self._node = value

    def _setting(self, name: str) -> Any:
        value = getattr(self._node, name, None) if self._node is not None else None
        return getattr(_DEFAULTS, name) if value is None else value

    def start(self) -> None:
        """Start the send and receive workers; later calls do nothing."""
        with self._state_lock:
            if self._workers:
                return
            self._workers = [
                threading.Thread(target=self._send_loop, name="peer-send", daemon=True),
                threading.Thread(target=self._receive_loop, name="peer-receive", daemon=True),
            ]
            workers = list(self._workers)
        for worker in workers:
            worker.start()

    # Sending

    def _send_loop(self) -> None:
        while not self._killed.is_set():
            try:
                command = self._send_queue.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            self._process_send(command)
        while True:
            try:
                command = self._send_queue.get_nowait()
            except queue.Empty:
                break
            _resolve(command.future, SendError("peer disconnected before the message was sent"))

    def _process_send(self, command: _SendCommand) -> None:
        payload, errors = self._before_sent_hooks.run(command.payload, self._node)
        if errors:
            _resolve(
                command.future,
                _hook_send_error("got errors running BeforeMessageSent callbacks", errors),
            )
            return
        payload = b"" if payload is None else bytes(payload)

        try:
            self._conn.write(_encode_uvarint(len(payload)) + payload)
        except OSError as exc:
            error = SendError(f"failed to send message to peer: {exc}", [exc])
            error.__cause__ = exc
            _resolve(command.future, error)
            return

        errors = self._after_sent_hooks.run(self._node)
        if errors:
            _resolve(
                command.future,
                _hook_send_error("got errors running AfterMessageSent callbacks", errors),
            )
            return

        _resolve(command.future, None)

    def _enqueue(self, message: Message) -> concurrent.futures.Future:
        try:
            payload = self.encode_message(message)
        except MessageError as exc:
            raise SendError(
                f"failed to serialize message contents to be sent to a peer: {exc}", [exc]
            ) from exc
        future: concurrent.futures.Future = concurrent.futures.Future()
        try:
            self._send_queue.put(
                _SendCommand(payload, future), timeout=self._setting("send_worker_busy_timeout")
            )
        except queue.Full:
            raise SendError("send message queue is full and not being processed") from None
        return future

    def send_message(self, message: Message) -> None:
        """Send ``message`` and block until it is written; raise SendError on failure."""
        future = self._enqueue(message)
        try:
            future.result(timeout=self._setting("send_message_timeout"))
        except concurrent.futures.TimeoutError:
            raise SendError("timed out attempting to send a message") from None

    def send_message_async(self, message: Message) -> concurrent.futures.Future:
        """Queue ``message``; the returned future completes or fails with SendError."""
        try:
            return self._enqueue(message)
        except SendError as exc:
            future: concurrent.futures.Future = concurrent.futures.Future()
            future.set_exception(exc)
            return future

    # Receiving

    def _report(self, message: str, cause: BaseException | None = None) -> None:
        error = ConnectionError(message if cause is None else f"{message}: {cause}")
        error.__cause__ = cause
        self._conn_error_hooks.run(self._node, error)

    def _handle(self, opcode: int) -> ReceiveHandle:
        with self._handles_lock:
            return self._handles.setdefault(opcode, ReceiveHandle())

    def _pass_lock(self, handle: ReceiveHandle) -> bool:
        while True:
            if handle.lock.acquire(timeout=_POLL_INTERVAL):
                handle.lock.release()
                return True
            if self._killed.is_set():
                return False

    def _receive_loop(self) -> None:
        reader = _StreamReader(self._conn)
        while not self._killed.is_set():
            try:
                size = reader.read_uvarint()
            except EOFError:
                self.disconnect_async()
                continue
            except (OSError, ValueError) as exc:
                if not _is_reset(exc):
                    self._report("failed to read message size", exc)
                self.disconnect_async()
                continue

            if size > self._setting("max_message_size"):
                self._report(f"exceeded max message size; got size {size}")
                self.disconnect_async()
                continue

            try:
                data = reader.read_exact(size)
            except OSError as exc:
                self._report("failed to read remaining message contents", exc)
                self.disconnect_async()
                continue
            if len(data) < size:
                self._report(
                    f"failed to read remaining message contents: only read {len(data)} "
                    f"bytes when expected to read {size} from peer"
                )
                self.disconnect_async()
                continue

            data, errors = self._before_received_hooks.run(data, self._node)
            if errors:
                _log.warning("Got errors running BeforeMessageReceived callbacks: %s", errors)
                self.disconnect_async()
                continue

            try:
                opcode, message = self.decode_message(data)
            except MessageError as exc:
                self._report("failed to decode message", exc)
                self.disconnect_async()
                continue
            if opcode == OPCODE_NIL:
                self.disconnect_async()
                continue

            handle = self._handle(opcode)
            if not handle.hub._offer(
                message, self._setting("receive_message_timeout"), self._killed
            ):
                self.disconnect_async()
                continue
            if not self._pass_lock(handle):
                continue

            errors = self._after_received_hooks.run(self._node)
            if errors:
                _log.warning("Got errors running AfterMessageReceived callbacks: %s", errors)
                self.disconnect_async()

    def receive(self, opcode: int) -> _Inbox:
        """Inbox delivering messages of ``opcode``; call ``get`` on it to take one."""
        return self._handle(opcode).hub

    def lock_on_receive(self, opcode: int) -> ReceiveHandle:
        """Hold back processing after the next ``opcode`` message until unlocked."""
        handle = self._handle(opcode)
        handle.lock.acquire()
        return handle

    # Callbacks

    def before_message_sent(self, callback: Callable[[Any, Peer, bytes], bytes]) -> None:
        """Register ``callback(node, peer, msg)`` returning the bytes to send."""
        self._before_sent_hooks.register(lambda data, node: callback(node, self, data))

    def before_message_received(self, callback: Callable[[Any, Peer, bytes], bytes]) -> None:
        """Register ``callback(node, peer, msg)`` returning the bytes to decode."""
        self._before_received_hooks.register(lambda data, node: callback(node, self, data))

    def after_message_sent(self, callback: Callable[[Any, Peer], Any]) -> None:
        """Register ``callback(node, peer)`` run after each message is written."""
        self._after_sent_hooks.register(lambda node: callback(node, self))

    def after_message_received(self, callback: Callable[[Any, Peer], Any]) -> None:
        """Register ``callback(node, peer)`` run after each message is delivered."""
        self._after_received_hooks.register(lambda node: callback(node, self))

    def on_conn_error(self, callback: Callable[[Any, Peer, Exception], Any]) -> None:
        """Register ``callback(node, peer, error)`` for connection failures."""
        self._conn_error_hooks.register(lambda node, error: callback(node, self, error))

    def on_disconnect(self, *args: Callable[[Any, Peer], Any]) -> None:
        """Register callbacks ``(node, peer)`` run once the peer has disconnected."""
        self._disconnect_hooks.register(
            *(lambda node, callback=callback: callback(node, self) for callback in args)
        )

    # Disconnecting

    def _begin_disconnect(self) -> bool:
        with self._state_lock:
            if self._killed.is_set():
                return False
            self._killed.set()
        if self._conn is not None:
            try:
                self._conn.close()
            except OSError as exc:
                self._report("got errors closing peer connection", exc)
        return True

    def _finish_disconnect(self) -> None:
        current = threading.current_thread()
        for worker in self._workers:
            if worker is not current and worker.ident is not None:
                worker.join()
        self._disconnect_hooks.run(self._node)

    def disconnect(self) -> None:
        """Close the connection, stop the workers and run disconnect callbacks."""
        if self._begin_disconnect():
            self._finish_disconnect()

    def disconnect_async(self) -> threading.Event:
        """Start disconnecting; the returned event is set once it is done."""
        done = threading.Event()
        if not self._begin_disconnect():
            done.set()
            return done

        def finish() -> None:
            try:
                self._finish_disconnect()
            finally:
                done.set()

        threading.Thread(target=finish, name="peer-disconnect", daemon=True).start()
        return done

    # Addresses

    def _ip_of(self, address: Any) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
        transport = getattr(self._node, "transport", None)
        if transport is not None:
            return transport.ip(address)
        return ipaddress.ip_address(address.host)

    def _port_of(self, address: Any) -> int:
        transport = getattr(self._node, "transport", None)
        if transport is not None:
            return transport.port(address)
        return address.port

    def local_ip(self) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
        return self._ip_of(self._conn.local_address())

    def local_port(self) -> int:
        return self._port_of(self._conn.local_address())

    def local_address(self) -> str:
        return f"{self.local_ip()}:{self.local_port()}"

    def remote_ip(self) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
        return self._ip_of(self._conn.remote_address())

    def remote_port(self) -> int:
        return self._port_of(self._conn.remote_address())

    def remote_address(self) -> str:
        return f"{self.remote_ip()}:{self.remote_port()}"

    # Metadata

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
"""Framing of registered messages with their opcode and custom header/footer."""

from __future__ import annotations

from typing import Any, Callable, Sequence

from .hooks import ReduceHooks, SequentialHooks
from .opcode import OPCODE_NIL, Message, OpcodeError, message_from_opcode, opcode_from_message
from .payload import PayloadError, Reader, Writer


class MessageError(Exception):
    """Raised when a message cannot be encoded or decoded.

    ``opcode`` is the opcode that was read before the failure, or the nil
    opcode when none applies; ``errors`` holds every underlying error.
    """

    def __init__(
        self,
        message: str,
        *,
        opcode: int = OPCODE_NIL,
        errors: Sequence[BaseException] = (),
    ) -> None:
        super().__init__(message)
        self.opcode = opcode
        self.errors = tuple(errors)


def _hook_failure(what: str, errors: list[Exception], opcode: int = OPCODE_NIL) -> MessageError:
    error = MessageError(f"{what}: {errors[0]}", opcode=opcode, errors=errors)
    error.__cause__ = errors[0]
    return error


def _as_bytes(value: Any) -> bytes:
    return b"" if value is None else bytes(value)


class MessageCodec:
    """Encodes messages to wire bytes and decodes them back.

    Callbacks registered with the ``on_*`` methods receive this codec as
    their second argument, after the node.
    """

    def __init__(self, node: Any) -> None:
        self._node = node
        self._encode_header_hooks = ReduceHooks()
        self._encode_footer_hooks = ReduceHooks()
        self._decode_header_hooks = SequentialHooks()
        self._decode_footer_hooks = SequentialHooks()

    def encode_message(self, message: Message) -> bytes:
        """Serialize ``message`` prefixed by its opcode, framed by header and footer."""
        try:
            opcode = opcode_from_message(message)
        except OpcodeError as exc:
            raise MessageError(f"could not find opcode registered for message: {exc}") from exc

        body = Writer().write_byte(opcode).to_bytes() + bytes(message.write())

        header, errors = self._encode_header_hooks.run(b"", self._node, body)
        if errors:
            raise _hook_failure("failed to serialize custom header", errors)

        footer, errors = self._encode_footer_hooks.run(b"", self._node, body)
        if errors:
            raise _hook_failure("failed to serialize custom footer", errors)

        return _as_bytes(header) + body + _as_bytes(footer)

    def decode_message(self, data: bytes | None) -> tuple[int, Message]:
        """Parse wire bytes into ``(opcode, message)``."""
        data = bytes(data or b"")
        reader = Reader(data)

        errors = self._decode_header_hooks.run(self._node, reader)
        if errors:
            raise _hook_failure("failed to decode custom headers", errors)

        after_header = len(data) - len(reader)

        try:
            opcode = reader.read_byte()
        except PayloadError as exc:
            raise MessageError(f"failed to read opcode: {exc}", errors=[exc]) from exc

        try:
            message_type = message_from_opcode(opcode)
        except OpcodeError as exc:
            raise MessageError(
                f"opcode<->message pairing not registered: {exc}", opcode=opcode, errors=[exc]
            ) from exc

        try:
            message = message_type.read(reader)
        except Exception as exc:
            raise MessageError(
                f"failed to read message contents: {exc}", opcode=opcode, errors=[exc]
            ) from exc

        after_message = len(data) - len(reader)

        errors = self._decode_footer_hooks.run(
            self._node, data[after_header:after_message], reader
        )
        if errors:
            raise _hook_failure("failed to decode custom footer", errors)

        return opcode, message

    def on_encode_header(self, callback: Callable[[Any, Any, bytes, bytes], bytes | None]) -> None:
        """Register ``callback(node, codec, header, msg)`` returning the new header."""

        def hook(header: bytes, node: Any, body: bytes) -> bytes:
            return _as_bytes(callback(node, self, header, body))

        self._encode_header_hooks.register(hook)

    def on_encode_footer(self, callback: Callable[[Any, Any, bytes, bytes], bytes | None]) -> None:
        """Register ``callback(node, codec, footer, msg)`` returning the new footer."""

        def hook(footer: bytes, node: Any, body: bytes) -> bytes:
            return _as_bytes(callback(node, self, footer, body))

        self._encode_footer_hooks.register(hook)

    def on_decode_header(self, callback: Callable[[Any, Any, Reader], Any]) -> None:
        """Register ``callback(node, codec, reader)`` to consume an incoming header."""

        def hook(node: Any, reader: Reader) -> None:
            callback(node, self, reader)

        self._decode_header_hooks.register(hook)

    def on_decode_footer(self, callback: Callable[[Any, Any, bytes, Reader], Any]) -> None:
        """Register ``callback(node, codec, msg, reader)`` to consume an incoming footer."""

        def hook(node: Any, body: bytes, reader: Reader) -> None:
            callback(node, self, body, reader)

        self._decode_footer_hooks.register(hook)
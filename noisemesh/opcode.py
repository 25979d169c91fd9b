"""Registry pairing one-byte opcodes with message types."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass

OPCODE_NIL = 0

_log = logging.getLogger(__name__)


class OpcodeError(LookupError):
    """Raised when an opcode or message type is not registered."""


class Message(ABC):
    """A value that can be written to and read from a payload."""

    @classmethod
    @abstractmethod
    def read(cls, reader) -> Message:
        """Decode a message from a payload reader."""

    @abstractmethod
    def write(self) -> bytes:
        """Encode this message into bytes."""


@dataclass(frozen=True)
class EmptyMessage(Message):
    """A message with no content."""

    @classmethod
    def read(cls, reader) -> EmptyMessage:
        return cls()

    def write(self) -> bytes:
        return b""


_lock = threading.Lock()
_opcodes: dict[int, type[Message]] = {}
_messages: dict[type[Message], int] = {}


def next_available_opcode() -> int:
    """The next opcode not yet taken in the registry."""
    with _lock:
        return len(_opcodes)


def debug_opcodes() -> None:
    """Print every registered opcode with its message type."""
    with _lock:
        _log.debug("Here are all opcodes registered so far.")
        for opcode in range(len(_opcodes)):
            message_type = _opcodes.get(opcode)
            if message_type is None:
                continue
            name = f"{message_type.__module__}.{message_type.__qualname__}"
            print(f"Opcode {opcode} is registered to: {name}")


def message_from_opcode(opcode: int) -> type[Message]:
    """Return the message type registered to ``opcode``."""
    with _lock:
        try:
            return _opcodes[opcode]
        except KeyError:
            raise OpcodeError(
                f"there is no message type registered to opcode {opcode}"
            ) from None


def opcode_from_message(message) -> int:
    """Return the opcode registered for a message instance or type."""
    message_type = message if isinstance(message, type) else type(message)
    with _lock:
        try:
            return _messages[message_type]
        except KeyError:
            raise OpcodeError(
                f"there is no opcode registered for message type {message_type.__qualname__}"
            ) from None


def register_message(opcode: int, message_type: type[Message]) -> int:
    """Register ``message_type`` under ``opcode``; an already registered type keeps its opcode."""
    if not (isinstance(message_type, type) and issubclass(message_type, Message)):
        raise TypeError(f"{message_type!r} is not a Message type")
    if not 0 <= opcode <= 255:
        raise ValueError(f"opcode must be within [0, 255]; got {opcode}")
    with _lock:
        existing = _messages.get(message_type)
        if existing is not None:
            return existing
        _opcodes[opcode] = message_type
        _messages[message_type] = opcode
        return opcode


def reset_opcodes() -> None:
    """Clear the registry, leaving only the empty message at opcode 0."""
    with _lock:
        _opcodes.clear()
        _messages.clear()
        _opcodes[OPCODE_NIL] = EmptyMessage
        _messages[EmptyMessage] = OPCODE_NIL


reset_opcodes()
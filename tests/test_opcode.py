from dataclasses import dataclass

import pytest

from noisemesh.opcode import (
    EmptyMessage,
    Message,
    OpcodeError,
    debug_opcodes,
    message_from_opcode,
    next_available_opcode,
    opcode_from_message,
    register_message,
    reset_opcodes,
)
from noisemesh.payload import Reader, Writer


@dataclass(frozen=True)
class _TextMessage(Message):
    text: str = ""

    @classmethod
    def read(cls, reader):
        return cls(reader.read_string())

    def write(self):
        return Writer().write_string(self.text).to_bytes()


@pytest.fixture(autouse=True)
def _fresh_registry():
    reset_opcodes()
    yield
    reset_opcodes()


def test_next_available_opcode_flow():
    assert message_from_opcode(0) is EmptyMessage

    with pytest.raises(OpcodeError):
        message_from_opcode(1)

    with pytest.raises(OpcodeError):
        opcode_from_message(_TextMessage())

    register_message(1, _TextMessage)

    assert message_from_opcode(1) is _TextMessage
    assert opcode_from_message(_TextMessage()) == 1


def test_next_available_opcode_counts_registrations():
    assert next_available_opcode() == 1
    opcode = register_message(next_available_opcode(), _TextMessage)
    assert opcode == 1
    assert next_available_opcode() == 2


def test_register_is_idempotent_per_type():
    assert register_message(123, _TextMessage) == 123
    assert register_message(9, _TextMessage) == 123
    assert opcode_from_message(_TextMessage) == 123


def test_register_rejects_non_message_type():
    with pytest.raises(TypeError):
        register_message(5, int)


def test_register_rejects_out_of_range_opcode():
    with pytest.raises(ValueError):
        register_message(256, _TextMessage)


def test_reset_forgets_registrations():
    register_message(7, _TextMessage)
    reset_opcodes()
    with pytest.raises(OpcodeError):
        message_from_opcode(7)
    assert opcode_from_message(EmptyMessage()) == 0


def test_empty_message_round_trip():
    assert EmptyMessage().write() == b""
    assert EmptyMessage.read(Reader(EmptyMessage().write())) == EmptyMessage()


def test_registered_type_decodes_its_payload():
    register_message(3, _TextMessage)
    message_type = message_from_opcode(3)
    assert message_type.read(Reader(_TextMessage("hello").write())) == _TextMessage("hello")


def test_debug_opcodes_lists_registrations(capsys):
    register_message(1, _TextMessage)
    debug_opcodes()
    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "Opcode 0 is registered to: noisemesh.opcode.EmptyMessage"
    assert lines[1].startswith("Opcode 1 is registered to: ")
    assert lines[1].endswith("_TextMessage")
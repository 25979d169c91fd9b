import struct

import pytest
from hypothesis import given
from hypothesis import strategies as st

from noisemesh.payload import PayloadError, Reader, Writer


def _generate_payload():
    return (
        struct.pack("<I", 2)
        + b"ab"
        + struct.pack("<I", 3)
        + b"str"
        + b"c"
        + struct.pack("<H", 10)
        + struct.pack("<I", 11)
        + struct.pack("<Q", 12)
    )


def test_reader_reads_every_field():
    reader = Reader(_generate_payload())

    assert reader.read_bytes() == b"ab"
    assert reader.read_string() == "str"
    assert reader.read_byte() == ord("c")
    assert reader.read_uint16() == 10
    assert reader.read_uint32() == 11
    assert reader.read_uint64() == 12
    assert len(reader) == 0


def test_writer_tracks_length_and_bytes():
    writer = Writer()
    expected = b""

    writer.write_bytes(bytes(2))
    expected += struct.pack("<I", 2) + bytes(2)
    assert len(writer) == 6
    assert writer.to_bytes() == expected

    writer.write_string("str")
    expected += struct.pack("<I", 3) + b"str"
    assert len(writer) == 13
    assert writer.to_bytes() == expected

    writer.write_byte(0)
    expected += b"\x00"
    assert len(writer) == 14
    assert writer.to_bytes() == expected

    writer.write_uint16(10)
    expected += struct.pack("<H", 10)
    assert len(writer) == 16
    assert writer.to_bytes() == expected

    writer.write_uint32(10)
    expected += struct.pack("<I", 10)
    assert len(writer) == 20
    assert writer.to_bytes() == expected

    writer.write_uint64(10)
    expected += struct.pack("<Q", 10)
    assert len(writer) == 28
    assert writer.to_bytes() == expected


def test_writer_starts_from_initial_bytes_and_chains():
    writer = Writer(b"\x01").write_byte(2).write_uint16(3)
    assert writer.to_bytes() == b"\x01\x02\x03\x00"


def test_write_returns_count():
    writer = Writer()
    assert writer.write(b"abc") == 3
    assert writer.to_bytes() == b"abc"


def test_read_returns_what_is_left():
    reader = Reader(b"abc")
    assert reader.read(2) == b"ab"
    assert reader.read(10) == b"c"
    assert len(reader) == 0
    assert reader.read(1) == b""


def test_read_bytes_out_of_bounds():
    reader = Reader(struct.pack("<I", 10) + b"abc")
    with pytest.raises(PayloadError, match="out of bounds"):
        reader.read_bytes()


def test_read_bytes_from_short_payload():
    with pytest.raises(PayloadError):
        Reader(b"bad").read_bytes()


def test_read_byte_from_empty_payload():
    with pytest.raises(PayloadError):
        Reader(b"").read_byte()


@pytest.mark.parametrize(
    "method, size",
    [("read_uint16", 1), ("read_uint32", 3), ("read_uint64", 7)],
)
def test_short_integer_reads_fail(method, size):
    with pytest.raises(PayloadError):
        getattr(Reader(bytes(size)), method)()


@pytest.mark.parametrize(
    "method, value",
    [
        ("write_byte", 256),
        ("write_uint16", 1 << 16),
        ("write_uint32", 1 << 32),
        ("write_uint64", 1 << 64),
        ("write_uint16", -1),
    ],
)
def test_out_of_range_writes_fail(method, value):
    with pytest.raises(PayloadError):
        getattr(Writer(), method)(value)


@given(
    data=st.binary(max_size=64),
    text=st.text(max_size=32),
    byte=st.integers(0, 255),
    u16=st.integers(0, (1 << 16) - 1),
    u32=st.integers(0, (1 << 32) - 1),
    u64=st.integers(0, (1 << 64) - 1),
)
def test_round_trip(data, text, byte, u16, u32, u64):
    encoded = (
        Writer()
        .write_bytes(data)
        .write_string(text)
        .write_byte(byte)
        .write_uint16(u16)
        .write_uint32(u32)
        .write_uint64(u64)
        .to_bytes()
    )
    reader = Reader(encoded)
    assert reader.read_bytes() == data
    assert reader.read_string() == text
    assert reader.read_byte() == byte
    assert reader.read_uint16() == u16
    assert reader.read_uint32() == u32
    assert reader.read_uint64() == u64
    assert len(reader) == 0
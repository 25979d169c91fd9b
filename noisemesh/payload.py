"""Little-endian binary payload reading and writing."""

from __future__ import annotations

import struct

_U8 = struct.Struct("<B")
_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")

_TEXT_ENCODING = "utf-8"
_TEXT_ERRORS = "surrogateescape"


class PayloadError(ValueError):
    """Raised when a payload cannot be read or written."""


class Reader:
    """Sequential reader over an immutable byte payload."""

    def __init__(self, data: bytes = b"") -> None:
        self._data = bytes(data or b"")
        self._pos = 0

    def __len__(self) -> int:
        """Number of bytes not yet read."""
        return len(self._data) - self._pos

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes; all remaining bytes if ``size`` is negative."""
        end = len(self._data) if size < 0 else min(self._pos + size, len(self._data))
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def _take(self, size: int, what: str) -> bytes:
        if len(self) < size:
            raise PayloadError(
                f"not enough bytes to read {what}: need {size}, have {len(self)}"
            )
        return self.read(size)

    def read_bytes(self) -> bytes:
        """Read a byte string prefixed by its 32-bit length."""
        size = self.read_uint32()
        if size > len(self):
            raise PayloadError("bytes out of bounds")
        return self.read(size)

    def read_string(self) -> str:
        """Read a length-prefixed string."""
        return self.read_bytes().decode(_TEXT_ENCODING, _TEXT_ERRORS)

    def read_byte(self) -> int:
        return _U8.unpack(self._take(1, "byte"))[0]

    def read_uint16(self) -> int:
        return _U16.unpack(self._take(2, "uint16"))[0]

    def read_uint32(self) -> int:
        return _U32.unpack(self._take(4, "uint32"))[0]

    def read_uint64(self) -> int:
        return _U64.unpack(self._take(8, "uint64"))[0]


class Writer:
    """Growable little-endian payload builder; writing methods chain."""

    def __init__(self, initial: bytes | None = None) -> None:
        self._buffer = bytearray(initial or b"")

    def __len__(self) -> int:
        """Number of bytes written so far."""
        return len(self._buffer)

    def to_bytes(self) -> bytes:
        return bytes(self._buffer)

    def write(self, data: bytes) -> int:
        """Append raw bytes and return how many were written."""
        self._buffer += data
        return len(data)

    def _pack(self, packer: struct.Struct, value: int, what: str) -> Writer:
        try:
            self._buffer += packer.pack(value)
        except struct.error as exc:
            raise PayloadError(f"cannot write {value!r} as {what}: {exc}") from exc
        return self

    def write_bytes(self, data: bytes) -> Writer:
        """Append a byte string prefixed by its 32-bit length."""
        self.write_uint32(len(data))
        self.write(data)
        return self

    def write_string(self, text: str) -> Writer:
        return self.write_bytes(text.encode(_TEXT_ENCODING, _TEXT_ERRORS))

    def write_byte(self, value: int) -> Writer:
        return self._pack(_U8, value, "byte")

    def write_uint16(self, value: int) -> Writer:
        return self._pack(_U16, value, "uint16")

    def write_uint32(self, value: int) -> Writer:
        return self._pack(_U32, value, "uint32")

    def write_uint64(self, value: int) -> Writer:
        return self._pack(_U64, value, "uint64")
"""Binary reading utilities for little-endian KCAP data."""

import struct
from io import BytesIO
from typing import BinaryIO, Union


class BinaryReader:
    """Helper for reading little-endian binary data from bytes or a stream.

    Only ``read`` is required of the wrapped stream, so forward-only
    sources such as pipes work as long as ``seek`` is not used.
    """

    def __init__(self, data: Union[bytes, bytearray, memoryview, BinaryIO]):
        if isinstance(data, (bytes, bytearray, memoryview)):
            self._stream = BytesIO(data)
        else:
            self._stream = data

    def seek(self, offset: int, whence: int = 0) -> int:
        return self._stream.seek(offset, whence)

    def read_available(self, size: int) -> bytes:
        """Read up to ``size`` bytes, retrying short reads until EOF."""
        chunks = []
        remaining = size
        while remaining > 0:
            chunk = self._stream.read(remaining)
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def read_bytes(self, size: int) -> bytes:
        """Read exactly ``size`` bytes."""
        data = self.read_available(size)
        if len(data) < size:
            raise EOFError(f"Expected {size} bytes, got {len(data)}")
        return data

    def read_u32(self) -> int:
        return struct.unpack("<I", self.read_bytes(4))[0]

    def read_fixed_string(self, length: int, encoding: str = "utf-8") -> str:
        """Read a fixed-length string, stripping NUL and space padding."""
        data = self.read_bytes(length)
        return data.decode(encoding, errors="replace").rstrip("\x00 ")

    def skip(self, count: int) -> None:
        """Skip forward by count bytes.

        Streams that cannot seek have the bytes read and discarded.
        """
        seekable = getattr(self._stream, "seekable", None)
        if seekable is not None and seekable():
            self._stream.seek(count, 1)
        else:
            self.read_bytes(count)


def read_u32_le(data: bytes, offset: int = 0) -> int:
    """Read a little-endian 32-bit unsigned integer from bytes."""
    return struct.unpack_from("<I", data, offset)[0]


def read_i32_le(data: bytes, offset: int = 0) -> int:
    """Read a little-endian 32-bit signed integer from bytes."""
    return struct.unpack_from("<i", data, offset)[0]

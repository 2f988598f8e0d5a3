"""LZSS decompression for KCAP pack entries.

KCAP uses an LZSS variant with:
- 4096 byte sliding window, zero filled, write cursor starting at
  4078 (SLIDING_WINDOW_SIZE - MAXIMUM_REFERENCE_LENGTH)
- One flag byte per 8 operations, read LSB first: bit=1 is a literal,
  bit=0 is a back-reference
- References: two bytes, 12-bit window position + 4-bit length (length += 3,
  so 3-18 bytes)

Every method-1 data region starts with an 8-byte data header
(compressed size, original size) followed by the bitstream.
"""

import logging
from typing import Optional, Union

from ..exceptions import TruncatedDataError, UseError
from .header import DATA_HEADER_SIZE, DataHeader

__all__ = ["LZSSDecompressor", "decompress"]

logger = logging.getLogger(__name__)

SLIDING_WINDOW_SIZE = 0x1000
WINDOW_MASK = SLIDING_WINDOW_SIZE - 1
MAXIMUM_REFERENCE_LENGTH = 0x12
MINIMUM_REFERENCE_LENGTH = 3
BLOCK_SIZE = 8

Buffer = Union[bytes, bytearray, memoryview]


class LZSSDecompressor:
    """Stateful decoder for one LZSS entry.

    The compressed source can be any buffer (bytes, bytearray, or a
    memoryview over a mapped file region). Each instance owns its
    dictionary and must not be shared between consumers or reused for
    another entry.
    """

    def __init__(self, data: Buffer):
        self._data = memoryview(data).cast("B")
        try:
            header = DataHeader.from_bytes(self._data[:DATA_HEADER_SIZE].tobytes())
        except Exception:
            self._data.release()
            raise
        self._header = header
        self._pos = DATA_HEADER_SIZE
        self._remaining = header.original_size
        self._total_out = 0

        self._dictionary = bytearray(SLIDING_WINDOW_SIZE)
        self._cursor = SLIDING_WINDOW_SIZE - MAXIMUM_REFERENCE_LENGTH

        self._flags = 0
        self._flags_remaining = 0

        self._reference = bytearray(MAXIMUM_REFERENCE_LENGTH)
        self._reference_length = 0
        self._reference_remaining = 0

        self._closed = False

    def __enter__(self) -> "LZSSDecompressor":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def compressed_size(self) -> int:
        return self._header.compressed_size

    @property
    def original_size(self) -> int:
        return self._header.original_size

    size = original_size

    @property
    def total_in(self) -> int:
        """Compressed bytes consumed so far, data header included."""
        self._ensure_open()
        return self._pos

    @property
    def total_out(self) -> int:
        """Decompressed bytes returned so far."""
        self._ensure_open()
        return self._total_out

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def window(self) -> bytes:
        """Snapshot of the sliding window."""
        return bytes(self._dictionary)

    @property
    def cursor(self) -> int:
        """Next write position in the sliding window."""
        return self._cursor

    @property
    def closed(self) -> bool:
        return self._closed

    def available(self) -> int:
        """Return 1 while more output is expected, 0 after the end.

        This is a hint, not the number of bytes that can be read.
        """
        self._ensure_open()
        return 1 if self._remaining > 0 else 0

    def decompress(self, buffer, offset: int = 0, length: Optional[int] = None) -> int:
        """Decompress into ``buffer`` and return the number of bytes written.

        Returns 0 once the declared original size has been produced. Raises
        TruncatedDataError when the compressed data runs out first; a call
        that still made progress returns its partial count and the next
        call raises.
        """
        view = memoryview(buffer).cast("B")
        if length is None:
            length = len(view) - offset
        if offset < 0 or length < 0 or offset + length > len(view):
            raise ValueError(f"Invalid buffer range: offset={offset}, length={length}")
        if length == 0:
            return 0
        self._ensure_open()

        if self._remaining <= 0:
            return 0
        length = min(length, self._remaining)

        produced = 0
        decode_byte = self._decode_byte
        while produced < length:
            c = decode_byte()
            if c is None:
                break
            view[offset + produced] = c
            produced += 1

        if produced == 0:
            raise TruncatedDataError(
                f"Compressed data ended after {self._total_out} of "
                f"{self._header.original_size} bytes"
            )

        self._remaining -= produced
        self._total_out += produced
        return produced

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` decompressed bytes (all remaining if negative)."""
        self._ensure_open()
        if size is None or size < 0:
            size = self._remaining
        size = min(size, self._remaining)
        out = bytearray(size)
        pos = 0
        while pos < size:
            n = self.decompress(out, pos, size - pos)
            if n == 0:
                break
            pos += n
        del out[pos:]
        return bytes(out)

    def close(self) -> None:
        """Release the compressed source and discard pending output."""
        if self._closed:
            return
        self._data.release()
        self._closed = True

    def _ensure_open(self) -> None:
        if self._closed:
            raise UseError("Decompressor has been closed")

    def _decode_byte(self) -> Optional[int]:
        """Produce one output byte, or None when the source is exhausted."""
        if self._reference_remaining > 0:
            c = self._reference[self._reference_length - self._reference_remaining]
            self._reference_remaining -= 1
            return c

        if self._flags_remaining == 0:
            flags = self._read_compressed_byte()
            if flags is None:
                return None
            self._flags = flags
            self._flags_remaining = BLOCK_SIZE

        bit = BLOCK_SIZE - self._flags_remaining
        self._flags_remaining -= 1

        r1 = self._read_compressed_byte()
        if r1 is None:
            return None
        if (self._flags >> bit) & 1:
            self._put_literal(r1)
            return r1

        r2 = self._read_compressed_byte()
        if r2 is None:
            return None
        self._reference_length = self._copy_reference(r1, r2)
        self._reference_remaining = self._reference_length - 1
        return self._reference[0]

    def _read_compressed_byte(self) -> Optional[int]:
        if self._pos >= len(self._data):
            return None
        c = self._data[self._pos]
        self._pos += 1
        return c

    def _put_literal(self, c: int) -> None:
        self._dictionary[self._cursor] = c
        self._cursor = (self._cursor + 1) & WINDOW_MASK

    def _copy_reference(self, r1: int, r2: int) -> int:
        """Copy a back-reference through the window into the replay buffer."""
        position = r1 | ((r2 >> 4) & 0xF) << 8
        length = (r2 & 0xF) + MINIMUM_REFERENCE_LENGTH

        dictionary = self._dictionary
        reference = self._reference
        cursor = self._cursor
        for i in range(length):
            # Reads may overlap bytes written earlier in this same copy
            c = dictionary[(position + i) & WINDOW_MASK]
            dictionary[cursor] = c
            cursor = (cursor + 1) & WINDOW_MASK
            reference[i] = c
        self._cursor = cursor
        return length

    def __repr__(self) -> str:
        return (
            f"LZSSDecompressor(compressed_size={self._header.compressed_size}, "
            f"original_size={self._header.original_size}, total_out={self._total_out})"
        )


def decompress(data: Buffer) -> bytes:
    """Decompress a whole method-1 data region (data header included)."""
    with LZSSDecompressor(data) as decompressor:
        result = decompressor.read()
        logger.debug("Decompressed %d bytes into %d bytes", decompressor.total_in, len(result))
        return result

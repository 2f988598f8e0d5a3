"""Shared fixtures for building KCAP test data in memory."""

import struct
from typing import List, Optional, Sequence, Tuple

import pytest


def create_entry_header(name: str, method: int, offset: int, compressed_size: int) -> bytes:
    """Create a 44-byte directory record."""
    raw_name = name.encode("cp932")
    assert len(raw_name) <= 24
    return (
        struct.pack("<I", method)
        + raw_name.ljust(24, b"\x00")
        + b"\x00" * 8
        + struct.pack("<II", offset, compressed_size)
    )


def create_pack(entries: Sequence[Tuple[str, int, bytes]], gap: int = 0, signature: bytes = b"KCAP") -> bytes:
    """Create a pack from (name, method, data region) tuples.

    Data regions follow the directory in order, each preceded by ``gap``
    padding bytes.
    """
    header = signature + b"\x00" * 8 + struct.pack("<i", len(entries))
    offset = len(header) + 44 * len(entries)

    records = []
    body = bytearray()
    for name, method, data in entries:
        body += b"\xee" * gap
        offset += gap
        records.append(create_entry_header(name, method, offset, len(data)))
        body += data
        offset += len(data)

    return header + b"".join(records) + bytes(body)


def create_lzss_region(bitstream: bytes, original_size: int, compressed_size: Optional[int] = None) -> bytes:
    """Prefix an LZSS bitstream with its 8-byte data header."""
    if compressed_size is None:
        compressed_size = min(len(bitstream), original_size)
    return struct.pack("<II", compressed_size, original_size) + bitstream


def literal_bitstream(data: bytes) -> bytes:
    """Encode ``data`` as all-literal blocks (flag byte 0xFF)."""
    out = bytearray()
    for i in range(0, len(data), 8):
        chunk = data[i : i + 8]
        out.append(0xFF)
        out += chunk
    return bytes(out)


def reference(position: int, length: int) -> bytes:
    """Encode a back-reference to a window position."""
    assert 3 <= length <= 18
    return bytes([position & 0xFF, ((position >> 4) & 0xF0) | (length - 3)])


def lzss_compress(data: bytes) -> bytes:
    """Greedy encoder producing bitstreams the decoder accepts.

    Only references bytes already emitted, never the initial window fill.
    """
    start = 0x1000 - 0x12
    out = bytearray()
    candidates = {}
    i = 0
    n = len(data)

    def remember(pos: int) -> None:
        if pos + 3 <= n:
            candidates.setdefault(data[pos : pos + 3], []).append(pos)

    while i < n:
        flag_index = len(out)
        out.append(0)
        flags = 0
        for bit in range(8):
            if i >= n:
                break
            best_length = 0
            best_source = 0
            max_length = min(18, n - i)
            if max_length >= 3:
                for source in reversed(candidates.get(data[i : i + 3], [])[-32:]):
                    if i - source >= 0x1000:
                        break
                    length = 0
                    while length < max_length and data[source + length] == data[i + length]:
                        length += 1
                    if length > best_length:
                        best_length, best_source = length, source
                        if length == max_length:
                            break
            if best_length >= 3:
                out += reference((start + best_source) & 0xFFF, best_length)
                for pos in range(i, i + best_length):
                    remember(pos)
                i += best_length
            else:
                flags |= 1 << bit
                out.append(data[i])
                remember(i)
                i += 1
        out[flag_index] = flags
    return bytes(out)


@pytest.fixture
def make_pack():
    return create_pack


@pytest.fixture
def make_lzss_region():
    return create_lzss_region


@pytest.fixture
def make_literals():
    return literal_bitstream


@pytest.fixture
def make_reference():
    return reference


@pytest.fixture
def compress():
    """Return a function producing a full LZSS data region for ``data``."""

    def _compress(data: bytes) -> bytes:
        return create_lzss_region(lzss_compress(data), len(data))

    return _compress


@pytest.fixture
def sample_entries(compress) -> List[Tuple[str, int, bytes, bytes]]:
    """(name, method, region, expected content) for a small mixed pack."""
    text = b"The quick brown fox jumps over the lazy dog. " * 40
    script = bytes(range(256)) * 20
    return [
        ("readme.txt", 0, b"hello", b"hello"),
        ("script.bin", 1, compress(script), script),
        ("story.txt", 1, compress(text), text),
        ("empty.dat", 0, b"", b""),
    ]


@pytest.fixture
def sample_pack(make_pack, sample_entries) -> bytes:
    return make_pack([(name, method, region) for name, method, region, _ in sample_entries])


@pytest.fixture
def sample_pack_path(tmp_path, sample_pack):
    path = tmp_path / "sample.pak"
    path.write_bytes(sample_pack)
    return path

"""Tests for the KCAP header and directory parser."""

import io
import struct

import pytest

from kcap_toolkit.exceptions import FormatError
from kcap_toolkit.pack.header import (
    DataHeader,
    DirectoryReader,
    PackEntry,
    PackMethod,
)


def create_header(entry_count: int, signature: bytes = b"KCAP") -> bytes:
    return signature + b"\x00" * 8 + struct.pack("<i", entry_count)


class TestReadHeader:
    def test_entry_count(self):
        reader = DirectoryReader(io.BytesIO(create_header(3)))
        assert reader.read_header() == 3

    def test_zero_entries(self):
        reader = DirectoryReader(create_header(0))
        assert reader.read_header() == 0

    def test_short_header(self):
        reader = DirectoryReader(create_header(1)[:15])
        with pytest.raises(FormatError, match="header size"):
            reader.read_header()

    def test_bad_signature(self):
        reader = DirectoryReader(create_header(1, signature=b"LAC\x00"))
        with pytest.raises(FormatError, match="signature"):
            reader.read_header()

    def test_negative_entry_count(self):
        reader = DirectoryReader(create_header(-1))
        with pytest.raises(FormatError, match="entry count"):
            reader.read_header()

    def test_reserved_bytes_ignored(self):
        data = b"KCAP" + b"\xab" * 8 + struct.pack("<I", 2)
        assert DirectoryReader(data).read_header() == 2


class TestReadEntryHeader:
    def test_fields(self, make_pack):
        data = make_pack([("test.txt", 0, b"hello")])
        reader = DirectoryReader(data)
        reader.read_header()
        entry = reader.read_entry_header()

        assert entry.name == "test.txt"
        assert entry.method == PackMethod.STORED
        assert entry.offset == 16 + 44
        assert entry.compressed_size == 5
        assert not entry.is_resolved
        assert entry.size is None

    def test_cp932_name(self, make_pack):
        data = make_pack([("シナリオ.bin", 1, b"\x00" * 8)])
        reader = DirectoryReader(data)
        reader.read_header()
        entry = reader.read_entry_header()
        assert entry.name == "シナリオ.bin"
        assert entry.is_compressed

    def test_space_padded_name(self):
        record = struct.pack("<I", 0) + b"a.txt".ljust(24, b" ") + b"\x00" * 8 + struct.pack("<II", 100, 4)
        entry = DirectoryReader(record).read_entry_header()
        assert entry.name == "a.txt"
        assert entry.offset == 100

    def test_unknown_method_is_kept(self):
        record = struct.pack("<I", 7) + b"odd".ljust(24, b"\x00") + b"\x00" * 8 + struct.pack("<II", 0, 0)
        entry = DirectoryReader(record).read_entry_header()
        assert entry.method == 7
        assert not entry.is_compressed
        assert entry.method_name == "unknown(7)"

    def test_short_record(self):
        reader = DirectoryReader(b"\x00" * 43)
        with pytest.raises(FormatError, match="Entry header"):
            reader.read_entry_header()


class TestReadDirectory:
    def test_order_preserved(self, make_pack):
        names = ["c.txt", "a.txt", "b.txt"]
        data = make_pack([(name, 0, b"x") for name in names])
        entries = DirectoryReader(data).read_directory()
        assert [e.name for e in entries] == names

    def test_truncated_directory(self, make_pack):
        data = make_pack([("a", 0, b""), ("b", 0, b"")])
        with pytest.raises(FormatError):
            DirectoryReader(data[: 16 + 44 + 10]).read_directory()

    def test_consumes_only_directory(self, make_pack):
        stream = io.BytesIO(make_pack([("a", 0, b"data")]))
        DirectoryReader(stream).read_directory()
        assert stream.tell() == 16 + 44

    def test_duplicate_names_logged(self, make_pack, caplog):
        data = make_pack([("dup", 0, b"1"), ("dup", 0, b"2")])
        entries = DirectoryReader(data).read_directory()
        assert len(entries) == 2
        assert "Duplicate entry name" in caplog.text


class TestPackEntry:
    def test_resolve_size(self):
        entry = PackEntry(name="a", method=0, offset=0, compressed_size=4)
        entry.resolve_size(4)
        assert entry.is_resolved
        assert entry.size == 4

    def test_resolve_negative_size(self):
        entry = PackEntry(name="a", method=0, offset=0, compressed_size=4)
        with pytest.raises(FormatError):
            entry.resolve_size(-1)


class TestDataHeader:
    def test_from_bytes(self):
        header = DataHeader.from_bytes(struct.pack("<II", 10, 20))
        assert header.compressed_size == 10
        assert header.original_size == 20

    def test_equal_sizes_allowed(self):
        header = DataHeader.from_bytes(struct.pack("<II", 20, 20))
        assert header.original_size == 20

    def test_original_smaller_than_compressed(self):
        with pytest.raises(FormatError, match="smaller"):
            DataHeader.from_bytes(struct.pack("<II", 21, 20))

    def test_too_short(self):
        with pytest.raises(FormatError):
            DataHeader.from_bytes(b"\x00" * 7)

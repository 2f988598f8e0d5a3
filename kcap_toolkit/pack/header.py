"""KCAP pack header, directory and data header structures."""

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import BinaryIO, List, Optional, Union

from ..exceptions import FormatError
from ..utils.binary import BinaryReader, read_i32_le, read_u32_le

logger = logging.getLogger(__name__)

# Names and the signature use the Windows-31J code page
PACK_ENCODING = "cp932"
KCAP_SIGNATURE = "KCAP"

PACK_HEADER_SIZE = 16
SIGNATURE_SIZE = 4
ENTRY_COUNT_OFF = 12

ENTRY_HEADER_SIZE = 44
ENTRY_NAME_SIZE = 24
ENTRY_RESERVED_SIZE = 8

DATA_HEADER_SIZE = 8
DATA_SIZE_OFF = 4


class PackMethod(IntEnum):
    """Per-entry storage method."""

    STORED = 0
    LZSS = 1


@dataclass
class PackHeader:
    """KCAP archive header (16 bytes)."""

    signature: str  # 4 bytes: "KCAP"
    entry_count: int  # 4 bytes at offset 12, 8 reserved bytes before it

    @property
    def is_valid(self) -> bool:
        return self.signature == KCAP_SIGNATURE


@dataclass
class PackEntry:
    """KCAP directory entry (44 bytes)."""

    name: str  # 24 bytes, cp932, space/NUL padded
    method: int  # 4 bytes: 0 = stored, 1 = LZSS
    offset: int  # 4 bytes: absolute offset of the data region
    compressed_size: int  # 4 bytes: size of the data region

    # Resolved from the data header (LZSS) or compressed_size (stored)
    original_size: Optional[int] = None

    @property
    def is_compressed(self) -> bool:
        return self.method == PackMethod.LZSS

    @property
    def is_resolved(self) -> bool:
        return self.original_size is not None

    @property
    def size(self) -> Optional[int]:
        """Decompressed size, or None before it has been resolved."""
        return self.original_size

    def resolve_size(self, size: int) -> None:
        if size < 0:
            raise FormatError(f"Invalid size {size} for entry {self.name!r}")
        self.original_size = size

    @property
    def method_name(self) -> str:
        try:
            return PackMethod(self.method).name.lower()
        except ValueError:
            return f"unknown({self.method})"


@dataclass
class DataHeader:
    """Sub-header at the start of every LZSS entry's data region (8 bytes)."""

    compressed_size: int
    original_size: int

    @classmethod
    def from_bytes(cls, data: Union[bytes, memoryview]) -> "DataHeader":
        if len(data) < DATA_HEADER_SIZE:
            raise FormatError(
                f"Data header is broken: expected {DATA_HEADER_SIZE} bytes, got {len(data)}"
            )
        compressed_size = read_u32_le(data, 0)
        original_size = read_u32_le(data, DATA_SIZE_OFF)
        if original_size < compressed_size:
            raise FormatError(
                f"Invalid data header: original size {original_size} "
                f"is smaller than compressed size {compressed_size}"
            )
        return cls(compressed_size=compressed_size, original_size=original_size)


class DirectoryReader:
    """Reads the KCAP header and entry table from a sequential byte source.

    Only ``read`` is used on the source, so both seekable files and
    forward-only streams can be parsed. Call ``read_header`` once, then
    ``read_entry_header`` exactly ``entry_count`` times, or use
    ``read_directory`` to do both.
    """

    def __init__(self, source: Union[bytes, BinaryIO]):
        self._reader = BinaryReader(source)

    def read_header(self) -> int:
        """Read the 16-byte archive header and return the entry count."""
        try:
            data = self._reader.read_bytes(PACK_HEADER_SIZE)
        except EOFError as e:
            raise FormatError("KCAP header is broken (header size does not match)") from e

        header = PackHeader(
            signature=data[:SIGNATURE_SIZE].decode(PACK_ENCODING, errors="replace"),
            entry_count=read_i32_le(data, ENTRY_COUNT_OFF),
        )
        if not header.is_valid:
            raise FormatError(
                f"Unsupported archive signature {data[:SIGNATURE_SIZE]!r}, "
                f"expected {KCAP_SIGNATURE!r}"
            )
        if header.entry_count < 0:
            raise FormatError(f"KCAP header is broken (invalid entry count {header.entry_count})")
        return header.entry_count

    def read_entry_header(self) -> PackEntry:
        """Read one 44-byte entry record.

        The decompressed size is not part of the record and stays
        unresolved.
        """
        try:
            data = self._reader.read_bytes(ENTRY_HEADER_SIZE)
        except EOFError as e:
            raise FormatError("Entry header is broken (header size does not match)") from e

        reader = BinaryReader(data)
        method = reader.read_u32()
        name = reader.read_fixed_string(ENTRY_NAME_SIZE, PACK_ENCODING)
        reader.skip(ENTRY_RESERVED_SIZE)
        offset = reader.read_u32()
        compressed_size = reader.read_u32()

        return PackEntry(
            name=name,
            method=method,
            offset=offset,
            compressed_size=compressed_size,
        )

    def read_directory(self) -> List[PackEntry]:
        """Read the header and every entry record, in directory order."""
        entry_count = self.read_header()
        entries = [self.read_entry_header() for _ in range(entry_count)]
        logger.debug("Read %d directory entries", len(entries))

        seen = set()
        for entry in entries:
            if entry.name in seen:
                logger.warning("Duplicate entry name %r, only the first is reachable by name", entry.name)
            seen.add(entry.name)
            if entry.method not in (PackMethod.STORED, PackMethod.LZSS):
                logger.warning("Entry %r uses unknown method %d, reading it as stored", entry.name, entry.method)
        return entries

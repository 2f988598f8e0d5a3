"""Single-pass KCAP pack reader over forward-only streams."""

import io
import logging
from enum import Enum
from typing import BinaryIO, Iterator, List, Optional

from ..exceptions import FormatError, TruncatedDataError, UseError
from ..utils.binary import BinaryReader
from .header import ENTRY_HEADER_SIZE, PACK_HEADER_SIZE, DirectoryReader, PackEntry
from .lzss import LZSSDecompressor

logger = logging.getLogger(__name__)

TMP_BUFFER_SIZE = 512


class StreamState(Enum):
    """Lifecycle of a PackInputStream."""

    UNOPENED = "unopened"
    BETWEEN_ENTRIES = "between_entries"
    IN_ENTRY = "in_entry"
    EXHAUSTED = "exhausted"
    CLOSED = "closed"


class PackInputStream(io.RawIOBase):
    """Reads a KCAP pack from a stream that cannot seek.

    The directory is parsed on the first ``next_entry`` call. Entries are
    delivered strictly in directory order and reads return the bytes of
    the current entry only. Moving to the next entry drains whatever is
    left of the current one so the stream stays aligned.

    LZSS entries are buffered whole (``compressed_size`` bytes) before
    decoding; stored entries are read through from the source.
    """

    def __init__(self, stream: BinaryIO):
        super().__init__()
        self._in = stream
        self._reader = BinaryReader(stream)
        self._state = StreamState.UNOPENED

        self._entries: List[PackEntry] = []
        self._next_index = 0
        # Bytes consumed from the source so far
        self._position = 0

        self._entry: Optional[PackEntry] = None
        self._decompressor: Optional[LZSSDecompressor] = None
        self._data_remaining = 0

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def entry(self) -> Optional[PackEntry]:
        """The entry currently being read, if any."""
        return self._entry

    @property
    def entries(self) -> List[PackEntry]:
        """Directory entries parsed so far (empty before the first entry)."""
        return list(self._entries)

    def readable(self) -> bool:
        return True

    def next_entry(self) -> Optional[PackEntry]:
        """Advance to the next entry and return it, or None at the end.

        Calling this again after it has returned None raises UseError.
        """
        self._ensure_open()
        if self._state is StreamState.EXHAUSTED:
            raise UseError("No more entries in the pack stream")
        if self._entry is not None:
            self.close_entry()

        if self._state is StreamState.UNOPENED:
            self._read_directory()
        if self._next_index >= len(self._entries):
            self._state = StreamState.EXHAUSTED
            logger.debug("Pack stream exhausted after %d entries", len(self._entries))
            return None

        entry = self._entries[self._next_index]
        self._next_index += 1
        self._skip_to(entry)

        if entry.is_compressed:
            data = self._reader.read_available(entry.compressed_size)
            self._position += len(data)
            # A short body is reported by the decoder once reading hits it
            self._decompressor = LZSSDecompressor(data)
            entry.resolve_size(self._decompressor.original_size)
        else:
            entry.resolve_size(entry.compressed_size)

        self._entry = entry
        self._data_remaining = entry.size
        self._state = StreamState.IN_ENTRY
        logger.debug("Entering %s entry %r (%d bytes)", entry.method_name, entry.name, entry.size)
        return entry

    def iter_entries(self) -> Iterator[PackEntry]:
        """Yield entries in directory order until the pack is exhausted."""
        while True:
            entry = self.next_entry()
            if entry is None:
                return
            yield entry

    def close_entry(self) -> None:
        """Drain the rest of the current entry."""
        self._ensure_open()
        buf = bytearray(TMP_BUFFER_SIZE)
        while self.readinto(buf):
            pass

    def readinto(self, b) -> int:
        self._ensure_open()
        view = memoryview(b).cast("B")
        if len(view) == 0 or self._entry is None:
            return 0
        if self._data_remaining <= 0:
            self._finish_entry()
            return 0

        length = min(len(view), self._data_remaining)
        if self._decompressor is not None:
            try:
                count = self._decompressor.decompress(view, 0, length)
            except TruncatedDataError as e:
                raise FormatError(f"Data is broken (data size does not match): {e}") from e
        else:
            data = self._in.read(length) or b""
            count = len(data)
            view[:count] = data
            self._position += count

        if count == 0:
            raise FormatError(
                f"Data is broken (data size does not match): entry {self._entry.name!r} "
                f"ended {self._data_remaining} bytes early"
            )

        self._data_remaining -= count
        if self._data_remaining == 0:
            self._finish_entry()
        return count

    def skip(self, n: int) -> int:
        """Skip up to ``n`` bytes of the current entry."""
        if n < 0:
            raise ValueError("negative skip length")
        self._ensure_open()

        buf = bytearray(TMP_BUFFER_SIZE)
        skipped = 0
        while skipped < n:
            count = self.readinto(memoryview(buf)[: min(n - skipped, len(buf))])
            if count == 0:
                break
            skipped += count
        return skipped

    def available(self) -> int:
        """Return 1 while the current entry has data left, 0 otherwise."""
        self._ensure_open()
        if self._entry is None or self._data_remaining <= 0:
            return 0
        return 1

    def close(self) -> None:
        """Close the source stream and drop any pending decoder."""
        if self.closed:
            return
        try:
            self._in.close()
        finally:
            if self._decompressor is not None:
                self._decompressor.close()
                self._decompressor = None
            self._entry = None
            self._entries = []
            self._state = StreamState.CLOSED
            super().close()

    def _read_directory(self) -> None:
        self._entries = DirectoryReader(self._in).read_directory()
        self._position = PACK_HEADER_SIZE + ENTRY_HEADER_SIZE * len(self._entries)
        self._state = StreamState.BETWEEN_ENTRIES

    def _skip_to(self, entry: PackEntry) -> None:
        """Discard bytes up to the start of ``entry``'s data region."""
        if entry.offset < self._position:
            raise FormatError(
                f"Entry {entry.name!r} starts at {entry.offset}, "
                f"behind the stream position {self._position}"
            )
        gap = entry.offset - self._position
        if gap:
            logger.debug("Skipping %d bytes before entry %r", gap, entry.name)
            skipped = 0
            while skipped < gap:
                chunk = self._in.read(min(gap - skipped, TMP_BUFFER_SIZE))
                if not chunk:
                    break
                skipped += len(chunk)
            self._position += skipped
            if skipped < gap:
                raise FormatError(f"Stream ended before entry {entry.name!r}")

    def _finish_entry(self) -> None:
        if self._decompressor is not None:
            self._decompressor.close()
            self._decompressor = None
        self._entry = None
        self._state = StreamState.BETWEEN_ENTRIES

    def _ensure_open(self) -> None:
        if self.closed:
            raise UseError("Stream closed")

    def __repr__(self) -> str:
        name = self._entry.name if self._entry else None
        return f"PackInputStream(state={self._state.value}, entry={name!r})"

"""KCAP pack archive reader and extractor."""

import abc
import io
import logging
import mmap
import os
import threading
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, List, Optional, Set, Tuple, Union

from ..exceptions import FormatError, UseError
from ..utils.binary import BinaryReader
from .header import DATA_SIZE_OFF, DirectoryReader, PackEntry
from .lzss import LZSSDecompressor

logger = logging.getLogger(__name__)

SKIP_BUFFER_SIZE = 512


class MappedRegion:
    """Read-only memory map of ``[offset, offset + length)`` of a file.

    mmap offsets must be multiples of the allocation granularity, so the
    mapping starts at the aligned offset below ``offset`` and ``view``
    exposes only the requested bytes.
    """

    def __init__(self, fileno: int, offset: int, length: int):
        self._mmap: Optional[mmap.mmap] = None
        if length == 0:
            self.view = memoryview(b"")
            return

        aligned = offset - offset % mmap.ALLOCATIONGRANULARITY
        delta = offset - aligned
        self._mmap = mmap.mmap(fileno, delta + length, access=mmap.ACCESS_READ, offset=aligned)
        self.view = memoryview(self._mmap)[delta : delta + length]

    def close(self) -> None:
        """Release the view, then the mapping."""
        self.view.release()
        if self._mmap is not None:
            self._mmap.close()
            self._mmap = None


class EntryStream(io.RawIOBase):
    """Readable stream over a single entry of a PackFile.

    Each stream has its own state. Closing the owning PackFile closes
    every stream it issued; reading a closed stream raises UseError.
    """

    def __init__(self, entry: PackEntry, region: MappedRegion, on_close: Optional[Callable] = None):
        super().__init__()
        self.entry = entry
        self._region = region
        self._on_close = on_close

    @property
    def name(self) -> str:
        return self.entry.name

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        self._ensure_open()
        view = memoryview(b).cast("B")
        if len(view) == 0:
            return 0
        return self._read_into(view)

    @abc.abstractmethod
    def _read_into(self, view: memoryview) -> int:
        """Copy the next bytes of the entry into ``view``."""

    def skip(self, n: int) -> int:
        """Skip up to ``n`` bytes and return how many were skipped."""
        if n < 0:
            raise ValueError("negative skip length")
        self._ensure_open()

        buf = bytearray(SKIP_BUFFER_SIZE)
        skipped = 0
        while skipped < n:
            count = self.readinto(memoryview(buf)[: min(n - skipped, len(buf))])
            if count == 0:
                break
            skipped += count
        return skipped

    @abc.abstractmethod
    def available(self) -> int:
        """Return 1 while more data is expected, 0 at the end of the entry."""

    def close(self) -> None:
        if self.closed:
            return
        try:
            self._release()
            self._region.close()
        finally:
            super().close()
            if self._on_close is not None:
                self._on_close(self)
            logger.debug("Closed stream for %r", self.entry.name)

    def _release(self) -> None:
        pass

    def _ensure_open(self) -> None:
        if self.closed:
            raise UseError(f"Stream for entry {self.entry.name!r} is closed")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.entry.name!r}, closed={self.closed})"


class StoredEntryStream(EntryStream):
    """Serves the raw bytes of a stored entry from its mapped region."""

    def __init__(self, entry: PackEntry, region: MappedRegion, on_close: Optional[Callable] = None):
        super().__init__(entry, region, on_close)
        self._pos = 0
        self._remaining = len(region.view)

    def _read_into(self, view: memoryview) -> int:
        if self._remaining <= 0:
            return 0
        count = min(len(view), self._remaining)
        view[:count] = self._region.view[self._pos : self._pos + count]
        self._pos += count
        self._remaining -= count
        return count

    def available(self) -> int:
        self._ensure_open()
        return 1 if self._remaining > 0 else 0


class LZSSEntryStream(EntryStream):
    """Decompresses an LZSS entry straight from its mapped region."""

    def __init__(
        self,
        entry: PackEntry,
        region: MappedRegion,
        decompressor: LZSSDecompressor,
        on_close: Optional[Callable] = None,
    ):
        super().__init__(entry, region, on_close)
        self._decompressor = decompressor

    @property
    def decompressor(self) -> LZSSDecompressor:
        return self._decompressor

    def _read_into(self, view: memoryview) -> int:
        return self._decompressor.decompress(view)

    def available(self) -> int:
        self._ensure_open()
        return self._decompressor.available()

    def _release(self) -> None:
        self._decompressor.close()


class PackFile:
    """Random-access reader for KCAP pack files.

    ``open_entry`` always returns a fresh, independent stream; streams
    are not cached by name. A single lock guards the closed state and the
    set of live streams.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._file: Optional[BinaryIO] = None
        self._file_size = 0
        self._entries: List[PackEntry] = []
        self._streams: Set[EntryStream] = set()
        self._lock = threading.Lock()
        self._closed = False

    def __enter__(self) -> "PackFile":
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def open(self) -> None:
        """Open the archive, parse the directory and resolve entry sizes."""
        with self._lock:
            if self._closed:
                raise UseError("PackFile closed")
            if self._file is not None:
                raise UseError("PackFile already opened")
            self._file = open(self.path, "rb")

        try:
            self._file_size = os.fstat(self._file.fileno()).st_size
            self._entries = DirectoryReader(self._file).read_directory()
            self._resolve_sizes()
        except BaseException:
            self.close()
            raise
        logger.debug("Opened %s with %d entries", self.path, len(self._entries))

    def _resolve_sizes(self) -> None:
        """Read the original size of every LZSS entry from its data header."""
        reader = BinaryReader(self._file)
        for entry in self._entries:
            if entry.is_compressed:
                reader.seek(entry.offset + DATA_SIZE_OFF)
                try:
                    entry.resolve_size(reader.read_u32())
                except EOFError as e:
                    raise FormatError(f"Data header of entry {entry.name!r} is out of bounds") from e
            else:
                entry.resolve_size(entry.compressed_size)

    def close(self) -> None:
        """Close the archive and every stream it issued. Closing twice is a no-op."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            streams = list(self._streams)
            self._streams.clear()

        try:
            for stream in streams:
                stream.close()
        finally:
            if self._file is not None:
                self._file.close()
                self._file = None
            self._entries = []
            logger.debug("Closed %s", self.path)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def entries(self) -> List[PackEntry]:
        self._ensure_open()
        return self._entries

    def _ensure_open(self) -> None:
        if self._closed:
            raise UseError("PackFile closed")
        if self._file is None:
            raise UseError("PackFile not opened")

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[PackEntry]:
        self._ensure_open()
        for entry in self._entries:
            with self._lock:
                self._ensure_open()
            yield entry

    def list_files(self) -> List[str]:
        """List all entry names in directory order."""
        return [e.name for e in self.entries]

    def get_entry(self, name: str) -> Optional[PackEntry]:
        """Find an entry by name. The first match wins."""
        with self._lock:
            self._ensure_open()
            for entry in self._entries:
                if entry.name == name:
                    return entry
        return None

    def _resolve_entry(self, entry: Union[PackEntry, str]) -> PackEntry:
        if isinstance(entry, PackEntry):
            return entry
        found = self.get_entry(entry)
        if found is None:
            raise KeyError(f"There is no entry named {entry!r} in the archive")
        return found

    def open_entry(self, entry: Union[PackEntry, str]) -> EntryStream:
        """Return a new stream over the decompressed contents of an entry."""
        entry = self._resolve_entry(entry)

        with self._lock:
            self._ensure_open()
            if entry.is_compressed:
                length = entry.compressed_size
            else:
                length = entry.size
            if entry.offset + length > self._file_size:
                raise FormatError(
                    f"Entry {entry.name!r} data [{entry.offset}, {entry.offset + length}) "
                    f"exceeds archive size {self._file_size}"
                )

            region = MappedRegion(self._file.fileno(), entry.offset, length)
            if entry.is_compressed:
                try:
                    decompressor = LZSSDecompressor(region.view)
                except BaseException:
                    region.close()
                    raise
                stream = LZSSEntryStream(entry, region, decompressor, self._forget_stream)
            else:
                stream = StoredEntryStream(entry, region, self._forget_stream)
            self._streams.add(stream)

        logger.debug("Opened %s stream for %r", entry.method_name, entry.name)
        return stream

    def _forget_stream(self, stream: EntryStream) -> None:
        with self._lock:
            self._streams.discard(stream)

    def read_entry(self, entry: Union[PackEntry, str]) -> bytes:
        """Read the whole decompressed contents of an entry."""
        with self.open_entry(entry) as stream:
            return stream.read()

    def extract_all(
        self, output_dir: Path, progress_callback: Optional[Callable] = None
    ) -> Iterator[Tuple[str, Path]]:
        """Extract all entries to the output directory.

        Yields (name, output_path) for each extracted entry.
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        entries = self.entries
        used: Set[Path] = set()
        for i, entry in enumerate(entries):
            output_path = entry_output_path(output_dir, entry.name, i, used)
            output_path.parent.mkdir(parents=True, exist_ok=True)
            output_path.write_bytes(self.read_entry(entry))

            if progress_callback:
                progress_callback(i, len(entries), entry.name)

            yield entry.name, output_path

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open" if self._file else "unopened"
        return f"PackFile(path={str(self.path)!r}, entries={len(self._entries)}, {state})"


def entry_output_path(output_dir: Path, name: str, index: int, used: Optional[Set[Path]] = None) -> Path:
    """Map an entry name to a path below ``output_dir``.

    When ``used`` is given, a path already handed out gets the entry index
    appended to its stem and the new path is recorded.
    """
    parts = [p for p in name.replace("\\", "/").split("/") if p not in ("", ".", "..")]
    if not parts:
        parts = [f"unknown_{index}"]
    path = Path(output_dir).joinpath(*parts)
    if used is not None:
        if path in used:
            renamed = path.with_name(f"{path.stem}_{index}{path.suffix}")
            logger.warning("Duplicate output path for entry %r, writing %s instead", name, renamed.name)
            path = renamed
        used.add(path)
    return path

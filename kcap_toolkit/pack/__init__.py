"""KCAP pack archive support."""

from .header import DataHeader, DirectoryReader, PackEntry, PackHeader, PackMethod
from .lzss import LZSSDecompressor, decompress
from .reader import EntryStream, PackFile
from .stream import PackInputStream, StreamState

__all__ = [
    "DataHeader",
    "DirectoryReader",
    "EntryStream",
    "LZSSDecompressor",
    "PackEntry",
    "PackFile",
    "PackHeader",
    "PackInputStream",
    "PackMethod",
    "StreamState",
    "decompress",
]

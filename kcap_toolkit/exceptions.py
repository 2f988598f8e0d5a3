__all__ = [
    "PackError",
    "FormatError",
    "TruncatedDataError",
    "UseError",
]


class PackError(Exception):
    """Base class for errors raised by kcap_toolkit."""

    pass


class FormatError(PackError, ValueError):
    """The archive or entry data is structurally invalid."""

    pass


class TruncatedDataError(FormatError):
    """Compressed data ended before the declared size was produced."""

    pass


class UseError(PackError, ValueError):
    """An archive, stream or decoder was used outside its lifecycle."""

    pass

"""KCAP Toolkit - Read KCAP pack archives and their LZSS-compressed entries."""

__version__ = "0.1.0"

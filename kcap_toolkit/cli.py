"""KCAP Toolkit CLI."""

import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

import click
import coloredlogs

from . import __version__
from .exceptions import PackError

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def main(verbose: bool):
    """KCAP Toolkit - List and extract KCAP pack archives.

    \b
    Entries are either stored raw or LZSS-compressed; both are
    decompressed transparently on extraction.
    """
    coloredlogs.install(level=logging.DEBUG if verbose else logging.INFO)


@main.command("list")
@click.argument("archive", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def list_entries(archive: Path):
    """List the entries of a pack archive."""
    from .pack import PackFile

    try:
        with PackFile(archive) as pack:
            click.echo(f"Entries in archive ({len(pack)}):")
            for entry in pack:
                click.echo(
                    f"  {entry.name:<24} {entry.method_name:<8} "
                    f"{entry.compressed_size:>10} {entry.size:>10}"
                )
    except (PackError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@main.command()
@click.argument("archive", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("names", nargs=-1)
@click.option(
    "-o",
    "--output",
    type=click.Path(file_okay=False, path_type=Path),
    help="Output directory (default: <archive_name>_extracted)",
)
@click.option(
    "--stream",
    is_flag=True,
    help="Read the archive front to back instead of memory-mapping it",
)
def extract(archive: Path, names: Tuple[str, ...], output: Optional[Path], stream: bool):
    """Extract entries from a pack archive.

    Extracts every entry unless NAMES are given.
    """
    if output is None:
        output = archive.parent / f"{archive.stem}_extracted"

    click.echo(f"Opening: {archive}")
    click.echo(f"Output:  {output}")

    try:
        if stream:
            extracted = extract_streaming(archive, output, set(names))
        else:
            extracted = extract_random_access(archive, output, set(names))
    except (PackError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    missing = set(names) - set(extracted)
    for name in sorted(missing):
        click.echo(f"Warning: no entry named {name!r}", err=True)

    click.echo()
    click.echo(f"Extracted: {len(extracted)} files")
    if missing:
        sys.exit(1)


@main.command()
@click.argument("archive", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("name")
def cat(archive: Path, name: str):
    """Write a single entry to standard output."""
    from .pack import PackFile

    try:
        with PackFile(archive) as pack:
            entry = pack.get_entry(name)
            if entry is None:
                click.echo(f"Error: no entry named {name!r}", err=True)
                sys.exit(1)
            out = click.get_binary_stream("stdout")
            with pack.open_entry(entry) as reader:
                while True:
                    chunk = reader.read(0x10000)
                    if not chunk:
                        break
                    out.write(chunk)
            out.flush()
    except (PackError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def extract_random_access(archive: Path, output: Path, names: set) -> list:
    """Extract entries with PackFile. Returns the names extracted."""
    from .pack import PackFile
    from .pack.reader import entry_output_path

    extracted = []
    with PackFile(archive) as pack:
        if not names:
            with click.progressbar(
                list(pack.extract_all(output)),
                label="Extracting",
                item_show_func=lambda x: x[0] if x else "",
            ) as items:
                for name, _ in items:
                    extracted.append(name)
            return extracted

        for i, entry in enumerate(pack.entries):
            if entry.name not in names or entry.name in extracted:
                continue
            path = entry_output_path(output, entry.name, i)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(pack.read_entry(entry))
            logger.info("Extracted %s", entry.name)
            extracted.append(entry.name)
    return extracted


def extract_streaming(archive: Path, output: Path, names: set) -> list:
    """Extract entries with PackInputStream. Returns the names extracted."""
    from .pack import PackInputStream
    from .pack.reader import entry_output_path

    extracted = []
    used = set()
    with PackInputStream(open(archive, "rb")) as pack:
        for i, entry in enumerate(pack.iter_entries()):
            if names and entry.name not in names:
                continue
            path = entry_output_path(output, entry.name, i, used)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(pack.read())
            logger.info("Extracted %s", entry.name)
            extracted.append(entry.name)
    return extracted


if __name__ == "__main__":
    main()

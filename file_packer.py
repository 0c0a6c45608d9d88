#!/usr/bin/env python3
"""
File Packer - minimal binary archiver

Concatenates files into a single container, each entry prefixed by a
fixed-size header holding the stored name and payload length, and splits
such a container back into its files.

Container layout (repeated until EOF, no global header or footer):
    int64   size        native byte order
    char    name[256]   NUL-terminated, NUL-padded, at most 255 name bytes
    byte    payload[size]
"""

import argparse
import logging
import os
import re
import struct
import sys
import traceback
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Iterator, List, Optional, Sequence, Union

from rich.console import Console
from rich.progress import (
    Progress,
    SpinnerColumn,
    TextColumn,
    BarColumn,
    TimeElapsedColumn,
    MofNCompleteColumn,
)
from tqdm import tqdm


__version__ = "1.0.0"
__author__ = "File Packer Project"
__license__ = "MIT"


# 64-bit size variant; "=" keeps native byte order without struct padding
HEADER_STRUCT = struct.Struct("=q256s")
HEADER_SIZE = HEADER_STRUCT.size
NAME_CAPACITY = 256
DEFAULT_BUFFER_SIZE = 4096

SOURCE_OPEN_SKIPPED = "source-open-skipped"
DESTINATION_OPEN_SKIPPED = "destination-open-skipped"
DESTINATION_WRITE_SKIPPED = "destination-write-skipped"

PathLike = Union[str, bytes, Path]


class FilePackerError(Exception):
    """Base exception for file packer errors"""

    pass


class PackError(FilePackerError):
    """Fatal error while writing a container"""

    pass


class DestinationUnavailableError(PackError):
    """The container could not be opened or written"""

    pass


class SourceChangedError(PackError):
    """A source yielded fewer bytes than its header declared"""

    pass


class UnpackError(FilePackerError):
    """Fatal error while reading a container"""

    pass


class SourceUnavailableError(UnpackError):
    """The container could not be opened for reading"""

    pass


class TruncatedContainerError(UnpackError):
    """The container ends before a declared payload is complete"""

    pass


class CorruptContainerError(UnpackError):
    """A header in the container cannot be valid"""

    pass


class ShortReadError(FilePackerError):
    """A stream ran dry before the requested number of bytes"""

    def __init__(self, expected: int, transferred: int):
        super().__init__(
            f"expected {expected} bytes, stream ended after {transferred}"
        )
        self.expected = expected
        self.transferred = transferred


class DestinationWriteError(FilePackerError):
    """Writing or flushing an output stream failed"""

    pass


@dataclass
class EntryHeader:
    """One container entry header"""

    name: str
    size: int
    offset: Optional[int] = None

    def encode(self) -> bytes:
        return encode_header(self.name, self.size)

    @classmethod
    def decode(cls, data: bytes) -> "EntryHeader":
        return decode_header(data)


@dataclass
class SkippedEntry:
    """An entry left out of a pack or unpack operation"""

    kind: str
    path: str
    reason: str


@dataclass
class PackReport:
    """Outcome of a pack operation"""

    container: str
    entries: List[EntryHeader] = field(default_factory=list)
    skipped: List[SkippedEntry] = field(default_factory=list)
    bytes_written: int = 0


@dataclass
class UnpackReport:
    """Outcome of an unpack operation"""

    container: str
    entries: List[EntryHeader] = field(default_factory=list)
    skipped: List[SkippedEntry] = field(default_factory=list)
    bytes_extracted: int = 0


def display_name(name: PathLike) -> str:
    """Printable form of a name; undecodable bytes become backslash escapes"""
    return os.fsencode(name).decode("utf-8", "backslashreplace")


def encode_name(name: PathLike) -> bytes:
    """Return the stored form of a name, truncated to fit the header"""
    return os.fsencode(name)[: NAME_CAPACITY - 1]


def encode_header(name: PathLike, size: int) -> bytes:
    """Serialize an entry header; names longer than 255 bytes are truncated"""
    if size < 0:
        raise ValueError(f"Entry size cannot be negative: {size}")
    # struct pads the name field with NULs, which also terminates it
    return HEADER_STRUCT.pack(size, encode_name(name))


def decode_header(data: bytes) -> EntryHeader:
    """Parse exactly HEADER_SIZE bytes into an EntryHeader"""
    if len(data) != HEADER_SIZE:
        raise ValueError(f"Header must be {HEADER_SIZE} bytes, got {len(data)}")

    size, raw_name = HEADER_STRUCT.unpack(data)
    if size < 0:
        raise CorruptContainerError(f"Negative entry size in header: {size}")

    # No terminator means all 256 bytes are the name
    raw_name = raw_name.split(b"\x00", 1)[0]
    return EntryHeader(name=os.fsdecode(raw_name), size=size)


def read_header(stream: BinaryIO) -> Optional[EntryHeader]:
    """Read the next header, or None at the end of the container.

    A short read is treated as the clean end of the container. The
    returned header carries the offset of its payload.
    """
    data = stream.read(HEADER_SIZE)
    if len(data) < HEADER_SIZE:
        if data:
            logging.getLogger("file_packer").warning(
                f"Ignoring {len(data)} trailing bytes shorter than a header"
            )
        return None

    header = decode_header(data)
    header.offset = stream.tell()
    return header


def copy_exact(
    src: BinaryIO,
    dst: BinaryIO,
    size: int,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
) -> int:
    """Copy exactly ``size`` bytes from src to dst in bounded chunks.

    Raises ShortReadError if src returns no data while bytes remain and
    DestinationWriteError if dst rejects a write.
    """
    remaining = size
    while remaining > 0:
        chunk = src.read(min(buffer_size, remaining))
        if not chunk:
            raise ShortReadError(size, size - remaining)
        write_all(dst, chunk)
        remaining -= len(chunk)
    return size


def write_all(dst: BinaryIO, data: bytes) -> None:
    try:
        dst.write(data)
    except OSError as e:
        raise DestinationWriteError(f"write failed: {e}") from e


def close_output(dst: BinaryIO) -> None:
    """Close an output stream; errors from the final flush are write errors"""
    try:
        dst.close()
    except OSError as e:
        raise DestinationWriteError(f"close failed: {e}") from e


def skip_exact(stream: BinaryIO, size: int) -> None:
    """Advance a seekable stream by exactly ``size`` bytes"""
    start = stream.tell()
    end = stream.seek(0, os.SEEK_END)
    if end - start < size:
        raise ShortReadError(size, end - start)
    stream.seek(start + size)


def iter_entries(stream: BinaryIO) -> Iterator[EntryHeader]:
    """Yield every header of a container stream, skipping payloads"""
    while True:
        header = read_header(stream)
        if header is None:
            return
        try:
            skip_exact(stream, header.size)
        except ShortReadError as e:
            raise TruncatedContainerError(
                f"Entry '{display_name(header.name)}' declares {header.size} bytes: {e}"
            ) from e
        yield header


class FilePacker:
    """Packs files into a container and unpacks them again"""

    def __init__(self, config: Optional[Dict] = None):
        self.config = config or {}

        self.console = Console(highlight=False)
        self.logger = self._setup_logging()

        buffer_size = self.config.get("buffer_size", DEFAULT_BUFFER_SIZE)
        if isinstance(buffer_size, str):
            buffer_size = self._parse_size(buffer_size)
        if not isinstance(buffer_size, int) or buffer_size <= 0:
            raise ValueError(f"buffer_size must be a positive integer: {buffer_size!r}")
        self.buffer_size = buffer_size

        self.quiet = self.config.get("quiet", False)
        self.progress = self.config.get("progress", True)
        self.progress_backend = self.config.get("progress_backend", "rich")
        if self.progress_backend not in ("rich", "tqdm"):
            raise ValueError(f"Unknown progress backend: {self.progress_backend}")
        self.make_parents = self.config.get("make_parents", False)

        # Progress bars only make sense on an interactive terminal
        self.is_tty = sys.stdout.isatty()

        self.stats = self._empty_stats()

    def _setup_logging(self) -> logging.Logger:
        """Setup structured logging"""
        level = logging.DEBUG if self.config.get("verbose") else logging.INFO

        logger = logging.getLogger("file_packer")
        logger.setLevel(level)

        # Avoid duplicate handlers
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                "%(asctime)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)

        return logger

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {
            "files_processed": 0,
            "files_skipped": 0,
            "bytes_processed": 0,
            "errors": 0,
        }

    def _parse_size(self, size_str: str) -> int:
        """Parse human-readable size to bytes with validation"""
        if not isinstance(size_str, str):
            raise ValueError(f"Size must be a string, got {type(size_str)}")

        size_str = size_str.upper().strip()
        if size_str.endswith("B"):
            size_str = size_str[:-1]

        match = re.match(r"^(\d*\.?\d+)([KMG]?)$", size_str)
        if not match:
            raise ValueError(f"Invalid size format: {size_str}")

        number, unit = match.groups()
        multipliers = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3}
        return int(float(number) * multipliers[unit])

    def _format_size(self, size: int) -> str:
        """Format size in human-readable format"""
        if size < 0:
            return "0B"

        for unit in ["B", "KB", "MB", "GB", "TB"]:
            if size < 1024.0:
                return f"{size:.1f}{unit}"
            size /= 1024.0
        return f"{size:.1f}PB"

    def _echo(self, message: str, style: Optional[str] = None) -> None:
        """Per-file diagnostics on standard output"""
        if not self.quiet:
            self.console.print(message, style=style, markup=False, soft_wrap=True)

    def _skip(self, report, kind: str, path: str, error: Exception) -> None:
        reason = error.strerror if isinstance(error, OSError) and error.strerror else str(error)
        report.skipped.append(SkippedEntry(kind=kind, path=path, reason=reason))
        self.stats["files_skipped"] += 1
        shown = display_name(path)
        self.logger.debug(f"{kind}: {shown}: {error}")
        self._echo(f"Skipped: {shown} ({reason})", style="yellow")

    @contextmanager
    def _progress_bar(
        self, total: int, description: str, unit: str, enabled: Optional[bool]
    ) -> Iterator[Callable[[int], None]]:
        """Yield an ``advance(n)`` callable backed by rich or tqdm"""
        if enabled is None:
            enabled = self.progress

        if not (enabled and self.is_tty and total > 0):
            yield lambda n: None
            return

        if self.progress_backend == "tqdm":
            with tqdm(total=total, desc=description, unit=unit) as pbar:
                yield pbar.update
        else:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=self.console,
            ) as progress_bar:
                task = progress_bar.add_task(description, total=total)
                yield lambda n: progress_bar.update(task, advance=n)

    def pack(
        self,
        source_paths: Sequence[PathLike],
        destination_path: PathLike,
        progress: Optional[bool] = None,
    ) -> PackReport:
        """Write every openable source into a new container, in order.

        Sources that cannot be opened (or sought) are skipped and recorded
        in the report; the container is still produced. Raises
        DestinationUnavailableError if the container cannot be created or
        written, SourceChangedError if a source shrinks while copied.
        """
        sources = [os.fsdecode(p) for p in source_paths]
        destination_path = Path(destination_path)
        report = PackReport(container=str(destination_path))
        self.stats = self._empty_stats()

        try:
            container = open(destination_path, "wb")
        except OSError as e:
            self.logger.error(f"Cannot open container for writing: {destination_path}")
            raise DestinationUnavailableError(
                f"Cannot open container for writing: {destination_path}: {e}"
            ) from e

        try:
            try:
                with self._progress_bar(len(sources), "Packing", "files", progress) as advance:
                    for source in sources:
                        self._pack_source(container, source, report)
                        advance(1)
            finally:
                close_output(container)
        except DestinationWriteError as e:
            self.logger.error(f"Cannot write container: {destination_path}")
            raise DestinationUnavailableError(
                f"Cannot write container: {destination_path}: {e}"
            ) from e

        self.logger.info(
            f"Packed {len(report.entries)} files "
            f"({self._format_size(report.bytes_written)}) into {destination_path}"
        )
        if report.skipped:
            self.logger.warning(f"Skipped {len(report.skipped)} unreadable sources")
        return report

    def _pack_source(self, container: BinaryIO, source: str, report: PackReport) -> None:
        try:
            handle = open(source, "rb")
        except OSError as e:
            self._skip(report, SOURCE_OPEN_SKIPPED, source, e)
            return

        with handle:
            try:
                size = handle.seek(0, os.SEEK_END)
                handle.seek(0)
            except OSError as e:
                # Pipes and other unseekable sources cannot report a length
                self._skip(report, SOURCE_OPEN_SKIPPED, source, e)
                return

            shown = display_name(source)
            self._echo(f"Opened: {shown}")
            self._echo(f"Size: {size} bytes")

            header = EntryHeader(name=os.fsdecode(encode_name(source)), size=size)
            if header.name != source:
                self.logger.warning(
                    f"Name truncated to {NAME_CAPACITY - 1} bytes: {display_name(header.name)}"
                )

            write_all(container, header.encode())
            header.offset = container.tell()
            try:
                copy_exact(handle, container, size, self.buffer_size)
            except ShortReadError as e:
                self.stats["errors"] += 1
                raise SourceChangedError(
                    f"Source changed while packing: {shown}: {e}"
                ) from e

        report.entries.append(header)
        report.bytes_written += size
        self.stats["files_processed"] += 1
        self.stats["bytes_processed"] += size
        self._echo(f"Packed: {shown}", style="green")

    def unpack(
        self,
        container_path: PathLike,
        output_dir: Optional[PathLike] = None,
        progress: Optional[bool] = None,
    ) -> UnpackReport:
        """Recreate every entry of a container at its stored name.

        Stored names are used verbatim, relative to ``output_dir`` when
        given (otherwise the working directory). Entries whose destination
        cannot be created or written are skipped without losing stream
        alignment. Raises SourceUnavailableError, TruncatedContainerError or
        CorruptContainerError.
        """
        container_path = Path(container_path)
        base_dir = Path(output_dir) if output_dir is not None else None
        report = UnpackReport(container=str(container_path))
        self.stats = self._empty_stats()

        try:
            container = open(container_path, "rb")
        except OSError as e:
            self.logger.error(f"Cannot open container for reading: {container_path}")
            raise SourceUnavailableError(
                f"Cannot open container for reading: {container_path}: {e}"
            ) from e

        with container:
            total = os.fstat(container.fileno()).st_size
            with self._progress_bar(total, "Unpacking", "B", progress) as advance:
                while True:
                    header = read_header(container)
                    if header is None:
                        break
                    self._unpack_entry(container, header, base_dir, report)
                    advance(HEADER_SIZE + header.size)

        self.logger.info(
            f"Unpacked {len(report.entries)} files "
            f"({self._format_size(report.bytes_extracted)}) from {container_path}"
        )
        if report.skipped:
            self.logger.warning(f"Skipped {len(report.skipped)} unwritable entries")
        return report

    def _unpack_entry(
        self,
        container: BinaryIO,
        header: EntryHeader,
        base_dir: Optional[Path],
        report: UnpackReport,
    ) -> None:
        target = Path(header.name) if base_dir is None else base_dir / header.name

        try:
            if self.make_parents:
                target.parent.mkdir(parents=True, exist_ok=True)
            handle = open(target, "wb")
        except OSError as e:
            self._skip(report, DESTINATION_OPEN_SKIPPED, header.name, e)
            self._skip_payload(container, header)
            return

        try:
            try:
                copy_exact(container, handle, header.size, self.buffer_size)
            finally:
                close_output(handle)
        except ShortReadError as e:
            self.stats["errors"] += 1
            raise TruncatedContainerError(
                f"Entry '{display_name(header.name)}' declares {header.size} bytes: {e}"
            ) from e
        except DestinationWriteError as e:
            # The partial file stays behind; realign on the next header
            self._skip(report, DESTINATION_WRITE_SKIPPED, header.name, e.__cause__ or e)
            self._skip_payload(container, header)
            return

        report.entries.append(header)
        report.bytes_extracted += header.size
        self.stats["files_processed"] += 1
        self.stats["bytes_processed"] += header.size
        self._echo(
            f"Extracted: {display_name(target)} ({self._format_size(header.size)})",
            style="green",
        )

    def _skip_payload(self, container: BinaryIO, header: EntryHeader) -> None:
        """Position the container right after this entry's payload"""
        container.seek(header.offset)
        try:
            skip_exact(container, header.size)
        except ShortReadError as e:
            raise TruncatedContainerError(
                f"Entry '{display_name(header.name)}' declares {header.size} bytes: {e}"
            ) from e

    def list_entries(self, container_path: PathLike) -> List[EntryHeader]:
        """Read the header sequence of a container without extracting"""
        container_path = Path(container_path)
        try:
            container = open(container_path, "rb")
        except OSError as e:
            raise SourceUnavailableError(
                f"Cannot open container for reading: {container_path}: {e}"
            ) from e

        with container:
            return list(iter_entries(container))


def create_config_file(config_path: Path) -> bool:
    """Create a default configuration file"""
    default_config = """# File Packer Configuration
# Uncomment and modify values as needed

# Transfer buffer size for copying payloads (e.g., "4K", "64K", "1M")
# buffer_size = "4K"

# Create missing parent directories when unpacking
# make_parents = false

# Output
# verbose = false
# quiet = false
# progress = true

# Progress bar backend: "rich" or "tqdm"
# progress_backend = "rich"
"""

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            f.write(default_config)
        return True
    except OSError as e:
        print(f"Error creating config file: {e}")
        return False


def load_config_file(config_path: Path) -> Dict:
    """Load configuration from file with error handling"""
    if not config_path.exists():
        return {}

    config = {}
    line_num = 0
    try:
        with open(config_path, "r") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line or line.startswith("#"):
                    continue

                if "=" in line:
                    key, value = line.split("=", 1)
                    key = key.strip()
                    value = value.strip().strip("\"'")

                    if value.lower() in ("true", "false"):
                        config[key] = value.lower() == "true"
                    elif value.isdigit():
                        config[key] = int(value)
                    else:
                        config[key] = value

    except (OSError, UnicodeDecodeError) as e:
        print(f"Warning: Error loading config file on line {line_num}: {e}")

    return config


class _OperationAction(argparse.Action):
    """Record operations in the order they appear on the command line"""

    def __call__(self, parser, namespace, values, option_string=None):
        if self.dest == "pack" and len(values) < 2:
            parser.error(f"{option_string} requires at least one source and a destination")
        operations = list(getattr(namespace, "operations", None) or [])
        operations.append((self.dest, values))
        namespace.operations = operations


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="file-packer",
        description="Pack files into a single container and unpack them again",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Pack two files
  %(prog)s -p notes.txt photo.jpg bundle.pack

  # Unpack into the current directory
  %(prog)s -up bundle.pack

  # Unpack somewhere else, creating missing directories
  %(prog)s -up bundle.pack -C restored --make-parents

  # Show what a container holds
  %(prog)s -l bundle.pack
        """,
    )
    parser.set_defaults(operations=[])

    parser.add_argument(
        "-p", "--pack", dest="pack", nargs="+", action=_OperationAction,
        metavar="PATH", help="Pack SRC... into DEST (last path is the container)",
    )
    parser.add_argument(
        "-up", "--unpack", dest="unpack", action=_OperationAction,
        metavar="ARCHIVE", help="Unpack all entries of ARCHIVE",
    )
    parser.add_argument(
        "-l", "--list", dest="list", action=_OperationAction,
        metavar="ARCHIVE", help="List the entries of ARCHIVE",
    )
    parser.add_argument(
        "-C", "--directory", type=Path, default=None,
        help="Directory to unpack into (default: current directory)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument(
        "-q", "--quiet", action="store_true", help="Suppress per-file output"
    )
    parser.add_argument(
        "--no-progress", action="store_true", help="Disable progress bars"
    )
    parser.add_argument(
        "--make-parents", action="store_true",
        help="Create missing parent directories when unpacking",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path.home() / ".config" / "file-packer" / "config",
        help="Configuration file path",
    )
    parser.add_argument(
        "--create-config", action="store_true", help="Create default config"
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    return parser


def _print_entries(packer: FilePacker, entries: List[EntryHeader]) -> None:
    for header in entries:
        packer.console.print(
            f"{header.size:>12}  {display_name(header.name)}", markup=False, soft_wrap=True
        )
    packer.console.print(
        f"{len(entries)} entries, "
        f"{packer._format_size(sum(h.size for h in entries))}",
        style="bold",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point with comprehensive error handling"""
    parser = build_parser()
    args, unknown = parser.parse_known_args(argv)

    for arg in unknown:
        print(f"Unknown argument: {arg}")

    try:
        if args.create_config:
            if create_config_file(args.config):
                print(f"Created default configuration file: {args.config}")
            else:
                print(f"Failed to create configuration file: {args.config}")
                return 1
            return 0

        if not args.operations:
            if not unknown:
                parser.print_usage()
            return 0

        config = load_config_file(args.config)
        if args.verbose:
            config["verbose"] = True
        if args.quiet:
            config["quiet"] = True
        if args.no_progress:
            config["progress"] = False
        if args.make_parents:
            config["make_parents"] = True

        packer = FilePacker(config)

        for operation, values in args.operations:
            if operation == "pack":
                packer.pack(values[:-1], values[-1])
            elif operation == "unpack":
                packer.unpack(values, output_dir=args.directory)
            elif operation == "list":
                _print_entries(packer, packer.list_entries(values))

        return 0

    except KeyboardInterrupt:
        print("\nOperation cancelled by user", file=sys.stderr)
        return 130
    except FilePackerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        if args.verbose:
            traceback.print_exc()
        return 1


def cli_main():
    """Synchronous entry point for console scripts"""
    return main()


if __name__ == "__main__":
    sys.exit(cli_main())

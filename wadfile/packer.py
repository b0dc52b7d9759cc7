#!/usr/bin/env python3
"""
Pack a directory tree into a WAD archive and unpack it again.

Payload records follow the archive's compression flag:
- Without HAS_COMPRESSED_FILES a record is the raw file content.
- With it, a record starts with a signed 32-bit length. -1 means the rest of
  the record is the raw content (used when deflate would not make it
  smaller), any other value is the decompressed length of the zlib stream
  that follows.

Packing writes a stub header, then every record, then seeks back and
rewrites the header with the final sizes and offsets. Compression of
independent files runs in parallel; only the writer touches the output.

Supports both sync and async operations.
Also provides PackedArchive class for reading files directly from an archive.
"""

import os
import sys
import asyncio
import argparse
import zlib
import aiofiles
from concurrent.futures import ProcessPoolExecutor, as_completed
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Tuple

from wadfile.format import (
    S32,
    ArchiveFlags,
    FileEntry,
    MalformedHeaderError,
    StructuralInconsistencyError,
    WadFile,
    WadFormatError,
    WadWriter,
    check_header,
    read_exact,
    render_header,
)

DEFAULT_WAD_VERSION = 0x202
EXPECTED_WAD_VERSIONS = (0x201, 0x202)
DEFAULT_HEADER_NAME = '@header.xml'
ZLIB_LEVEL = 9  # Best compression
UNCOMPRESSED_MARKER = -1

# Files to ignore during packing (macOS, Windows, etc. junk files)
IGNORED_FILES = {
    '.DS_Store',
    '._.DS_Store',
    'Thumbs.db',
    'desktop.ini'
}

# File patterns to ignore (starting with)
IGNORED_PREFIXES = ('._',)


def should_ignore_file(filename: str) -> bool:
    """Check if a file should be ignored during packing."""
    if filename in IGNORED_FILES:
        return True
    for prefix in IGNORED_PREFIXES:
        if filename.startswith(prefix):
            return True
    return False


# ============== PAYLOAD RECORDS ==============

def encode_record(data: bytes, compress: bool) -> bytes:
    """
    Build the stored record for a file's content.

    When compressing, the deflated form is only kept if it is strictly
    smaller than the input; otherwise the content is stored raw behind a -1
    length prefix.
    """
    if not compress:
        return data

    compressed = zlib.compress(data, ZLIB_LEVEL)
    if len(compressed) < len(data):
        return S32.pack(len(data)) + compressed
    return S32.pack(UNCOMPRESSED_MARKER) + data


def decode_record(record: bytes, compressed: bool) -> bytes:
    """Recover a file's content from its stored record."""
    if not compressed:
        return record

    if len(record) < S32.size:
        raise StructuralInconsistencyError(f"Compressed record is only {len(record)} bytes long")

    length = S32.unpack_from(record)[0]
    if length == UNCOMPRESSED_MARKER:
        return record[S32.size:]

    try:
        data = zlib.decompress(record[S32.size:])
    except zlib.error as e:
        raise StructuralInconsistencyError(f"Corrupt deflate stream in record: {e}") from e
    if len(data) != length:
        raise StructuralInconsistencyError(f"Record inflated to {len(data)} bytes, expected {length}")
    return data


def is_deflated_record(record: bytes) -> bool:
    """Check if a record from a compressed archive holds a zlib stream."""
    return len(record) >= S32.size and S32.unpack_from(record)[0] != UNCOMPRESSED_MARKER


def compress_file_task(file_path: str) -> Tuple[str, bytes, int]:
    """
    Read and compress one file. Used for parallel processing.
    Returns: (file_path, record, original_size)
    """
    with open(file_path, 'rb') as f:
        content = f.read()
    return file_path, encode_record(content, compress=True), len(content)


# ============== TREE BUILDING ==============

def parse_version(value: str) -> int:
    """Parse a WAD version given either in decimal or as 0x-prefixed hex."""
    try:
        if value.lower().startswith('0x'):
            return int(value[2:], 16)
        return int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid WAD version: {value!r}")


def resolve_header_path(input_dir: str, header_name: str) -> str:
    if os.path.isabs(header_name):
        return os.path.abspath(header_name)
    return os.path.abspath(os.path.join(input_dir, header_name))


def collect_files(input_dir: str, header_path: str, uppercase: bool = False) -> List[Tuple[str, str]]:
    """
    Collect files below input_dir.

    Returns:
        Sorted list of (archive_path, file_path), archive paths '/'-separated.
    """
    paths: Dict[str, str] = {}

    for root, dirs, files in os.walk(input_dir):
        for filename in files:
            if should_ignore_file(filename):
                continue

            file_path = os.path.abspath(os.path.join(root, filename))
            if file_path == header_path:
                continue

            archive_path = os.path.relpath(file_path, input_dir).replace(os.sep, '/')
            if uppercase:
                archive_path = archive_path.upper()

            # Names that collide after case folding keep the first file seen
            if archive_path in paths:
                continue
            paths[archive_path] = file_path

    return sorted(paths.items())


def build_wad(files: List[Tuple[str, str]], version: int, compress: bool,
              header_blob: Optional[bytes] = None) -> Tuple[WadFile, List[Tuple[FileEntry, str]]]:
    """Create the archive tree for the collected files, one data offset per file."""
    flags = ArchiveFlags.UNKNOWN6_OBSERVED | ArchiveFlags.HAS_DATA_TYPES
    if compress:
        flags |= ArchiveFlags.HAS_COMPRESSED_FILES

    wad = WadFile(version=version, flags=flags, header_blob=header_blob)
    entries = []
    for archive_path, file_path in files:
        directory_path, _, name = archive_path.rpartition('/')
        entries.append((wad.add_file(directory_path, name), file_path))
    return wad, entries


def _prepare_pack(input_dir: str, output_file: Optional[str], version: int, compress: bool,
                  uppercase: bool, header_name: str, verbose: bool):
    input_dir = os.path.abspath(input_dir)
    if output_file is None:
        output_file = input_dir + '.wad'

    if version not in EXPECTED_WAD_VERSIONS:
        print("Warning: unexpected WAD version specified.")

    header_path = resolve_header_path(input_dir, header_name)
    header_blob = None
    if version >= 0x202:
        if not os.path.isfile(header_path):
            raise FileNotFoundError(f"Could not find header file '{header_path}'")
        with open(header_path, 'rb') as f:
            header_blob = f.read()

    print("Collecting files...")
    files = collect_files(input_dir, header_path, uppercase=uppercase)
    wad, entries = build_wad(files, version, compress, header_blob=header_blob)

    if verbose:
        print(f"Collected {len(entries)} files.")
    return output_file, wad, entries


def _remove_partial(output_file: str) -> None:
    if os.path.exists(output_file):
        os.remove(output_file)


# ============== SYNC FUNCTIONS ==============

def pack_directory(input_dir: str, output_file: Optional[str] = None, version: int = DEFAULT_WAD_VERSION,
                   compress: bool = False, uppercase: bool = False, header_name: str = DEFAULT_HEADER_NAME,
                   verbose: bool = False, max_workers: int = None) -> str:
    """
    Pack all files from a directory tree into a WAD archive (sync).

    Args:
        input_dir: Directory to pack
        output_file: Output WAD path (default: <input_dir>.wad)
        version: WAD version to write
        compress: Deflate file contents where that makes them smaller
        uppercase: Uppercase all archive paths
        header_name: Header blob file, relative to input_dir unless absolute
        verbose: Print every file as it is written
        max_workers: Maximum number of parallel compression workers (default: CPU count)

    Returns:
        Path of the written archive.
    """
    output_file, wad, entries = _prepare_pack(
        input_dir, output_file, version, compress, uppercase, header_name, verbose
    )

    records: Dict[str, bytes] = {}
    if compress and entries:
        if max_workers is None:
            max_workers = os.cpu_count() or 4
        print(f"Compressing {len(entries)} files using {max_workers} workers...")

        with ProcessPoolExecutor(max_workers=max_workers) as executor:
            futures = [executor.submit(compress_file_task, file_path) for _, file_path in entries]
            completed = 0

            for future in as_completed(futures):
                file_path, record, original_size = future.result()
                records[file_path] = record
                completed += 1
                if verbose:
                    print(f"  [{completed}/{len(entries)}] Compressed: {file_path} ({original_size} -> {len(record)} bytes)")

    try:
        with open(output_file, 'wb') as out:
            writer = WadWriter(wad, out)

            print("Writing stub header...")
            writer.begin()

            print("Writing file data...")
            for entry, file_path in entries:
                if verbose:
                    print(f">> {entry.path}")

                if compress:
                    record = records[file_path]
                else:
                    with open(file_path, 'rb') as f:
                        record = f.read()
                writer.write_payload(entry, record)

            print("Writing header...")
            writer.finish()
    except BaseException:
        _remove_partial(output_file)
        raise

    print("Done!")
    return output_file


def read_wad(input_file: str) -> WadFile:
    """Parse the header of a WAD file on disk, rejecting bad headers before anything else."""
    with open(input_file, 'rb') as f:
        magic, version, reason = check_header(f)
        if reason is not None:
            raise MalformedHeaderError(f"{reason} (magic = 0x{magic:04X}, version = 0x{version:04X})")
        f.seek(0)
        return WadFile.deserialize(f)


def entry_output_path(output_dir: str, entry: FileEntry, lowercase: bool = False) -> str:
    """Path an entry extracts to, refusing names that would leave output_dir."""
    name = entry.path.lower() if lowercase else entry.path
    root = os.path.abspath(output_dir)
    path = os.path.abspath(os.path.join(root, *name.split('/')))
    if os.path.commonpath([root, path]) != root:
        raise StructuralInconsistencyError(f"Entry {entry.path!r} escapes the output directory")
    return path


def _default_output_dir(input_file: str) -> str:
    return os.path.splitext(input_file)[0] + '_unpacked'


def _warn_unknown_flags(wad: WadFile) -> None:
    if wad.unknown_flags:
        print("Warning: unknown archive flags present! (things may blow up past this point)")
        print(f"  0x{int(wad.flags):08X}")


def unpack_archive(input_file: str, output_dir: Optional[str] = None, overwrite: bool = False,
                   lowercase: bool = False, verbose: bool = False) -> str:
    """
    Unpack a WAD archive to a directory tree (sync).

    The embedded header blob, when the version carries one, is written to
    @header.xml in the output directory.

    Returns:
        The output directory.
    """
    if output_dir is None:
        output_dir = _default_output_dir(input_file)

    print("Reading header...")
    wad = read_wad(input_file)
    _warn_unknown_flags(wad)

    print("Writing files...")
    if wad.version >= 0x202:
        os.makedirs(output_dir, exist_ok=True)
        with open(os.path.join(output_dir, DEFAULT_HEADER_NAME), 'wb') as f:
            f.write(wad.header_blob or b'')

    with open(input_file, 'rb') as archive:
        for entry in wad.all_files():
            entry_path = entry_output_path(output_dir, entry, lowercase)
            if not overwrite and os.path.exists(entry_path):
                continue

            if verbose:
                print(f">> {entry.path}")

            os.makedirs(os.path.dirname(entry_path), exist_ok=True)
            archive.seek(wad.data_offset_for(entry))
            data = decode_record(read_exact(archive, entry.size), wad.has_compressed_files)

            with open(entry_path, 'wb') as f:
                f.write(data)

    print("Done!")
    return output_dir


# ============== ASYNC FUNCTIONS ==============

async def pack_directory_async(input_dir: str, output_file: Optional[str] = None,
                               version: int = DEFAULT_WAD_VERSION, compress: bool = False,
                               uppercase: bool = False, header_name: str = DEFAULT_HEADER_NAME,
                               verbose: bool = False, max_workers: int = None) -> str:
    """
    Pack all files from a directory tree into a WAD archive (async).
    Takes the same arguments as pack_directory.
    """
    output_file, wad, entries = _prepare_pack(
        input_dir, output_file, version, compress, uppercase, header_name, verbose
    )

    records: Dict[str, bytes] = {}
    loop = asyncio.get_event_loop()

    if compress and entries:
        if max_workers is None:
            max_workers = os.cpu_count() or 4
        print(f"Compressing {len(entries)} files using {max_workers} workers...")

        with ProcessPoolExecutor(max_workers=max_workers) as executor:
            tasks = [loop.run_in_executor(executor, compress_file_task, file_path) for _, file_path in entries]
            completed = 0

            for coro in asyncio.as_completed(tasks):
                file_path, record, original_size = await coro
                records[file_path] = record
                completed += 1
                if verbose:
                    print(f"  [{completed}/{len(entries)}] Compressed: {file_path} ({original_size} -> {len(record)} bytes)")

    try:
        async with aiofiles.open(output_file, 'wb') as out:
            print("Writing stub header...")
            start = await out.tell()
            header = render_header(wad)
            await out.write(header)

            print("Writing file data...")
            for entry, file_path in entries:
                if verbose:
                    print(f">> {entry.path}")

                if compress:
                    record = records[file_path]
                else:
                    async with aiofiles.open(file_path, 'rb') as f:
                        record = await f.read()

                wad.place_payload(entry, await out.tell(), len(record))
                await out.write(record)

            print("Writing header...")
            final_header = render_header(wad, expected_size=len(header))
            await out.seek(start)
            await out.write(final_header)
    except BaseException:
        _remove_partial(output_file)
        raise

    print("Done!")
    return output_file


async def unpack_archive_async(input_file: str, output_dir: Optional[str] = None, overwrite: bool = False,
                               lowercase: bool = False, verbose: bool = False) -> str:
    """Unpack a WAD archive to a directory tree (async)."""
    if output_dir is None:
        output_dir = _default_output_dir(input_file)

    print("Reading header...")
    loop = asyncio.get_event_loop()
    wad = await loop.run_in_executor(None, read_wad, input_file)
    _warn_unknown_flags(wad)

    print("Writing files...")
    if wad.version >= 0x202:
        os.makedirs(output_dir, exist_ok=True)
        async with aiofiles.open(os.path.join(output_dir, DEFAULT_HEADER_NAME), 'wb') as f:
            await f.write(wad.header_blob or b'')

    async with aiofiles.open(input_file, 'rb') as archive:
        for entry in wad.all_files():
            entry_path = entry_output_path(output_dir, entry, lowercase)
            if not overwrite and os.path.exists(entry_path):
                continue

            if verbose:
                print(f">> {entry.path}")

            os.makedirs(os.path.dirname(entry_path), exist_ok=True)
            await archive.seek(wad.data_offset_for(entry))
            record = await archive.read(entry.size)
            if len(record) != entry.size:
                raise StructuralInconsistencyError(
                    f"Record for {entry.path!r} is truncated: {len(record)} of {entry.size} bytes"
                )
            data = decode_record(record, wad.has_compressed_files)

            async with aiofiles.open(entry_path, 'wb') as f:
                await f.write(data)

    print("Done!")
    return output_dir


# ============== PACKED ARCHIVE CLASS ==============

class PackedArchiveFile:
    """
    A file-like object for reading a single file from a PackedArchive.
    Supports read(), readline() and iteration over lines.
    """

    def __init__(self, data: bytes, deflated: bool = False):
        """
        Args:
            data: The file data, or its zlib stream when deflated is True
            deflated: If True, data is still deflate-compressed
        """
        self._data = data
        self._position = 0
        self.deflated = deflated

    @property
    def data(self) -> bytes:
        return self._data

    def read(self, size: int = -1) -> bytes:
        """Read up to size bytes. If size is -1, read all remaining data."""
        if size == -1:
            result = self._data[self._position:]
            self._position = len(self._data)
        else:
            result = self._data[self._position:self._position + size]
            self._position += len(result)
        return result

    def readline(self, size: int = -1) -> bytes:
        """Read a line (up to newline or size bytes)."""
        if self._position >= len(self._data):
            return b''

        newline_pos = self._data.find(b'\n', self._position)
        end = len(self._data) if newline_pos == -1 else newline_pos + 1

        if size != -1:
            end = min(end, self._position + size)

        result = self._data[self._position:end]
        self._position = end
        return result

    def readlines(self) -> List[bytes]:
        lines = []
        while True:
            line = self.readline()
            if not line:
                break
            lines.append(line)
        return lines

    def seek(self, offset: int, whence: int = 0) -> int:
        """Seek to position. whence: 0=start, 1=current, 2=end."""
        if whence == 0:
            self._position = offset
        elif whence == 1:
            self._position += offset
        elif whence == 2:
            self._position = len(self._data) + offset
        self._position = max(0, min(self._position, len(self._data)))
        return self._position

    def tell(self) -> int:
        return self._position

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self):
        return self

    def __next__(self) -> bytes:
        line = self.readline()
        if not line:
            raise StopIteration
        return line


class PackedArchive:
    """
    Async class to read files from a WAD archive as if it were a folder.

    Usage:
        archive = PackedArchive('DATA_ALL_PLATFORMS.WAD')
        await archive.init()

        async with archive.open('DATA_ALL_PLATFORMS/CARDS/CARD.XML') as f:
            data = f.read()

        # keep_deflate=True returns the stored zlib stream of compressed records
        async with archive.open('DATA_ALL_PLATFORMS/CARDS/CARD.XML', keep_deflate=True) as f:
            if f.deflated:
                zlib_data = f.read()

        files = archive.list_files()
        folders = archive.list_folders()
    """

    def __init__(self, archive_path: str):
        self._path = archive_path
        self._wad: Optional[WadFile] = None
        self._entries: Dict[str, FileEntry] = {}  # full_path -> FileEntry
        self._folders: Dict[str, List[str]] = {}  # folder_path -> list of filenames
        self._initialized = False

    @property
    def path(self) -> str:
        return self._path

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def wad(self) -> WadFile:
        self._check_initialized()
        return self._wad

    @property
    def header_blob(self) -> Optional[bytes]:
        return self.wad.header_blob

    async def init(self) -> None:
        """
        Read the archive header and build the file index.
        Must be called before using open().
        """
        if self._initialized:
            return

        loop = asyncio.get_event_loop()
        self._wad = await loop.run_in_executor(None, read_wad, self._path)
        self._build_index()
        self._initialized = True

    def _build_index(self) -> None:
        pending = list(self._wad.directories)
        while pending:
            directory = pending.pop(0)
            folder = directory.path
            self._folders.setdefault(folder, [])
            for entry in directory.files:
                self._folders[folder].append(entry.name)
                self._entries[entry.path] = entry
            pending.extend(directory.directories)

    def _check_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError("Archive not initialized. Call init() first.")

    def list_folders(self) -> List[str]:
        """List all folders in the archive."""
        self._check_initialized()
        return list(self._folders.keys())

    def list_files(self, folder: Optional[str] = None) -> List[str]:
        """
        List files in the archive.

        Args:
            folder: If provided, list file names only in this folder.
                    If None, list all files with full paths.
        """
        self._check_initialized()
        if folder is not None:
            return list(self._folders.get(folder, []))
        return list(self._entries.keys())

    def exists(self, path: str) -> bool:
        self._check_initialized()
        return path in self._entries

    def get_entry(self, path: str) -> FileEntry:
        self._check_initialized()
        if path not in self._entries:
            raise FileNotFoundError(f"File not found in archive: {path}")
        return self._entries[path]

    @asynccontextmanager
    async def open(self, path: str, keep_deflate: bool = False):
        """
        Open a file from the archive.

        Args:
            path: Path to the file, e.g. 'DATA_ALL_PLATFORMS/CARDS/CARD.XML'
            keep_deflate: If True and the record is stored deflated, return
                          the zlib stream instead of inflating it.

        Yields:
            PackedArchiveFile object for reading the file data.

        Raises:
            FileNotFoundError: If the file doesn't exist in the archive.
        """
        entry = self.get_entry(path)

        async with aiofiles.open(self._path, 'rb') as f:
            await f.seek(self._wad.data_offset_for(entry))
            record = await f.read(entry.size)

        if len(record) != entry.size:
            raise StructuralInconsistencyError(
                f"Record for {path!r} is truncated: {len(record)} of {entry.size} bytes"
            )

        compressed = self._wad.has_compressed_files
        if compressed and keep_deflate and is_deflated_record(record):
            yield PackedArchiveFile(record[S32.size:], deflated=True)
        else:
            yield PackedArchiveFile(decode_record(record, compressed))

    async def read_file(self, path: str) -> bytes:
        """Read and return the entire (inflated) file content."""
        async with self.open(path) as f:
            return f.read()


# ============== CLI ==============

def build_argparser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='wadtool', description="Pack and unpack Duels of the Planeswalkers WADs.")
    subparsers = parser.add_subparsers(dest='command', required=True)

    pack = subparsers.add_parser('pack', help="pack a directory into a WAD")
    pack.add_argument('input_dir')
    pack.add_argument('output_wad', nargs='?', default=None)
    pack.add_argument('-c', '--compress', action='store_true', help="deflate file contents")
    pack.add_argument('-u', '--uppercase', action='store_true', help="uppercase file names")
    pack.add_argument('--wad-header', default=DEFAULT_HEADER_NAME,
                      help=f"WAD header file name (default: {DEFAULT_HEADER_NAME})")
    pack.add_argument('--wad-version', type=parse_version, default=DEFAULT_WAD_VERSION,
                      help="WAD version, decimal or 0x-prefixed hex (default: 0x202)")
    pack.add_argument('--workers', type=int, default=None,
                      help="number of parallel compression workers (default: CPU count)")
    pack.add_argument('-v', '--verbose', action='store_true', help="show verbose messages")

    unpack = subparsers.add_parser('unpack', help="unpack a WAD into a directory")
    unpack.add_argument('input_wad')
    unpack.add_argument('output_path', nargs='?', default=None)
    unpack.add_argument('-o', '--overwrite', action='store_true', help="overwrite existing files")
    unpack.add_argument('-l', '--lowercase', action='store_true', help="lowercase file names")
    unpack.add_argument('-v', '--verbose', action='store_true', help="show verbose messages")

    listing = subparsers.add_parser('list', help="list the files of a WAD")
    listing.add_argument('input_wad')

    return parser


def list_archive(input_file: str) -> None:
    wad = read_wad(input_file)
    print(f"Version: 0x{wad.version:03X}, flags: 0x{int(wad.flags):08X}")
    print(f"Files: {wad.total_file_count}, directories: {wad.total_directory_count}")
    for entry in wad.all_files():
        print(f"  {entry.path} ({entry.size} bytes)")


def main(argv: Optional[List[str]] = None) -> None:
    args = build_argparser().parse_args(argv)

    try:
        if args.command == 'pack':
            if not os.path.isdir(args.input_dir):
                print(f"Error: {args.input_dir} is not a directory")
                sys.exit(1)
            pack_directory(
                args.input_dir,
                args.output_wad,
                version=args.wad_version,
                compress=args.compress,
                uppercase=args.uppercase,
                header_name=args.wad_header,
                verbose=args.verbose,
                max_workers=args.workers,
            )
        elif args.command == 'unpack':
            if not os.path.isfile(args.input_wad):
                print(f"Error: {args.input_wad} is not a file")
                sys.exit(1)
            unpack_archive(
                args.input_wad,
                args.output_path,
                overwrite=args.overwrite,
                lowercase=args.lowercase,
                verbose=args.verbose,
            )
        else:
            list_archive(args.input_wad)
    except (WadFormatError, OSError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()

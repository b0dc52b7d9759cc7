"""
Reader and writer for the Duels of the Planeswalkers WAD archive container.

A WAD bundles a directory tree of named files into one blob. Five on-disk
revisions exist (0x100, 0x101, 0x200, 0x201, 0x202) and each one toggles
which header sections are present and in which order.

Format (little-endian throughout):
- Magic (u16): always 0x1234
- Version (u16)
- Flags (u32): only when version == 0x101 or version >= 0x200
- Header blob length (u32) + bytes: only when version >= 0x202
- String table size (u32)
- String table bytes: here when version >= 0x200
- Data type count (u32) + (index u32, reserved u32) pairs: only with HAS_DATA_TYPES
- Total file count (u32), total directory count (u32)
- Data offset count (u32) + absolute offsets (u32): only when version >= 0x200
- String table bytes: here instead when version == 0x100
- File table: top-level directory entries until the region is consumed

Every directory and file record in the file table is 16 bytes:
- Directory: name offset, file count, directory count, reserved (0),
  followed by its child directories (recursively) and then its files
- File: name offset, stored size, packed word (bits 0-23 offset index,
  bits 24-31 offset count, always 1), reserved (0)

Names live in the string table as null-terminated cp1252 strings, each
stored once, the table padded with zeros to a 16 byte boundary.

File payloads are not written here. A writer serializes a placeholder
header, streams payloads while recording their offsets, then seeks back
and serializes the header again (see WadWriter).
"""

import io
import struct
from dataclasses import dataclass, field
from enum import IntFlag
from typing import BinaryIO, Callable, Dict, Iterator, List, Optional, Tuple


MAGIC = 0x1234
VALID_VERSIONS = (0x100, 0x101, 0x200, 0x201, 0x202)

ENTRY_SIZE = 16
STRING_TABLE_ALIGNMENT = 16
STRING_ENCODING = 'cp1252'
READ_CHUNK_SIZE = 1 << 20

OFFSET_INDEX_MASK = 0x00FFFFFF
OFFSET_COUNT_SHIFT = 24
MAX_OFFSET_COUNT = 0xFF

U16 = struct.Struct('<H')
U32 = struct.Struct('<I')
S32 = struct.Struct('<i')


class ArchiveFlags(IntFlag):
    NONE = 0
    HAS_COMPRESSED_FILES = 1 << 0
    HAS_DATA_TYPES = 1 << 1
    UNKNOWN6_OBSERVED = 1 << 6
    VALID_FLAGS = HAS_COMPRESSED_FILES | HAS_DATA_TYPES | UNKNOWN6_OBSERVED


# ============== ERRORS ==============

class WadFormatError(ValueError):
    """Base class for every WAD format failure."""


class MalformedHeaderError(WadFormatError):
    """Bad magic or a version outside the known set."""


class UnsupportedLayoutError(WadFormatError, NotImplementedError):
    """The version is known but its layout cannot be read."""


class StructuralInconsistencyError(WadFormatError):
    """The stream parsed but its contents contradict each other."""


class TruncatedDataError(StructuralInconsistencyError, EOFError):
    """The stream ended before a complete value could be read."""


class StringTableModeError(RuntimeError):
    """A string table was used in the wrong direction."""


# ============== BINARY PRIMITIVES ==============

def read_exact(stream: BinaryIO, size: int) -> bytes:
    """
    Read exactly size bytes or raise TruncatedDataError.

    Sizes come from the stream itself, so large reads are done in chunks
    and a corrupt length fails at EOF instead of allocating it up front.
    """
    if size <= READ_CHUNK_SIZE:
        data = stream.read(size)
    else:
        chunks = []
        remaining = size
        while remaining > 0:
            chunk = stream.read(min(remaining, READ_CHUNK_SIZE))
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
        data = b''.join(chunks)
    if len(data) != size:
        raise TruncatedDataError(f"Expected {size} bytes, got {len(data)}")
    return data


def read_u16(stream: BinaryIO) -> int:
    return U16.unpack(read_exact(stream, U16.size))[0]


def read_u32(stream: BinaryIO) -> int:
    return U32.unpack(read_exact(stream, U32.size))[0]


def write_u16(stream: BinaryIO, value: int) -> None:
    stream.write(U16.pack(value))


def write_u32(stream: BinaryIO, value: int) -> None:
    stream.write(U32.pack(value))


def write_s32(stream: BinaryIO, value: int) -> None:
    stream.write(S32.pack(value))


def read_blob(stream: BinaryIO) -> bytes:
    """Read a u32 length prefix followed by that many bytes."""
    return read_exact(stream, read_u32(stream))


def write_blob(stream: BinaryIO, data: Optional[bytes]) -> None:
    """Write a u32 length prefix and the bytes. None is written as zero length."""
    if data is None:
        write_u32(stream, 0)
        return
    write_u32(stream, len(data))
    stream.write(data)


def align(value: int, alignment: int) -> int:
    """Round value up to the next multiple of alignment."""
    return (value + alignment - 1) // alignment * alignment


def pad_to_alignment(buffer: bytearray, alignment: int) -> None:
    """Zero-pad buffer in place so its length is a multiple of alignment."""
    buffer.extend(b'\x00' * (align(len(buffer), alignment) - len(buffer)))


# ============== STRING TABLE ==============

class StringTable:
    """
    Deduplicated table of null-terminated names addressed by byte offset.

    A table is either being written (put) or read (get), never both:
        table = StringTable()                 # write mode
        offset = table.put('CARDS')
        data = table.getvalue()               # padded to 16 bytes

        table = StringTable(data)             # read mode
        name = table.get(offset)
    """

    def __init__(self, data: Optional[bytes] = None):
        self._writable = data is None
        self._buffer = bytearray() if data is None else bytearray(data)
        self._offsets: Dict[str, int] = {}

    @property
    def writable(self) -> bool:
        return self._writable

    def put(self, value: str) -> int:
        """Intern value and return its offset, reusing the first offset for repeats."""
        if not self._writable:
            raise StringTableModeError("Cannot put strings into a string table opened for reading")
        if '\x00' in value:
            raise ValueError(f"Name {value!r} contains a NUL character")

        offset = self._offsets.get(value)
        if offset is not None:
            return offset

        offset = len(self._buffer)
        self._buffer.extend(value.encode(STRING_ENCODING))
        self._buffer.append(0)
        self._offsets[value] = offset
        return offset

    def get(self, offset: int) -> str:
        """Read the null-terminated string starting at offset."""
        if self._writable:
            raise StringTableModeError("Cannot get strings from a string table opened for writing")

        if offset >= len(self._buffer):
            raise StructuralInconsistencyError(
                f"String offset {offset} is outside the string table ({len(self._buffer)} bytes)"
            )
        end = self._buffer.find(b'\x00', offset)
        if end == -1:
            raise StructuralInconsistencyError(f"Unterminated string at offset {offset}")
        return self._buffer[offset:end].decode(STRING_ENCODING)

    def getvalue(self) -> bytes:
        """Return the table bytes zero-padded to a 16 byte boundary."""
        data = bytearray(self._buffer)
        pad_to_alignment(data, STRING_TABLE_ALIGNMENT)
        return bytes(data)

    def __len__(self) -> int:
        return len(self._buffer)


# ============== FILE / DIRECTORY ENTRIES ==============

@dataclass
class FileEntry:
    """A leaf of the file table. size is the stored record length."""
    name: str
    size: int = 0
    offset_index: int = 0
    offset_count: int = 1
    reserved: int = 0
    directory: Optional['DirectoryEntry'] = field(default=None, repr=False, compare=False)

    @property
    def flags(self) -> int:
        """Packed word: low 24 bits offset index, high 8 bits offset count."""
        if not 0 <= self.offset_index <= OFFSET_INDEX_MASK:
            raise ValueError(f"Offset index out of range: {self.offset_index}")
        if not 0 <= self.offset_count <= MAX_OFFSET_COUNT:
            raise ValueError(f"Offset count out of range: {self.offset_count}")
        return (self.offset_count << OFFSET_COUNT_SHIFT) | self.offset_index

    @flags.setter
    def flags(self, value: int) -> None:
        self.offset_index = value & OFFSET_INDEX_MASK
        self.offset_count = (value >> OFFSET_COUNT_SHIFT) & MAX_OFFSET_COUNT

    @property
    def path(self) -> str:
        if self.directory is None:
            return self.name
        return join_path(self.directory.path, self.name)

    def serialize(self, stream: BinaryIO, strings: StringTable) -> None:
        write_u32(stream, strings.put(self.name))
        write_u32(stream, self.size)
        write_u32(stream, self.flags)
        write_u32(stream, self.reserved)

    @classmethod
    def deserialize(cls, stream: BinaryIO, strings: StringTable,
                    directory: Optional['DirectoryEntry'] = None) -> 'FileEntry':
        name = strings.get(read_u32(stream))
        entry = cls(name=name, size=read_u32(stream), directory=directory)
        entry.flags = read_u32(stream)
        entry.reserved = read_u32(stream)

        if entry.offset_count != 1:
            raise StructuralInconsistencyError(
                f"File {entry.path!r} spans {entry.offset_count} data offsets, only 1 is supported"
            )
        if entry.reserved != 0:
            raise StructuralInconsistencyError(
                f"File {entry.path!r} has non-zero reserved field 0x{entry.reserved:08X}"
            )
        return entry


@dataclass
class DirectoryEntry:
    """A node of the file table owning child directories and files."""
    name: str
    directories: List['DirectoryEntry'] = field(default_factory=list)
    files: List[FileEntry] = field(default_factory=list)
    parent: Optional['DirectoryEntry'] = field(default=None, repr=False, compare=False)

    @property
    def path(self) -> str:
        if self.parent is None:
            return self.name
        return join_path(self.parent.path, self.name)

    @property
    def total_file_count(self) -> int:
        return len(self.files) + sum(d.total_file_count for d in self.directories)

    @property
    def total_directory_count(self) -> int:
        """Number of descendant directories, not counting this one."""
        return len(self.directories) + sum(d.total_directory_count for d in self.directories)

    def all_files(self) -> Iterator[FileEntry]:
        yield from self.files
        for directory in self.directories:
            yield from directory.all_files()

    def get_directory(self, name: str) -> Optional['DirectoryEntry']:
        for directory in self.directories:
            if directory.name == name:
                return directory
        return None

    def add_directory(self, name: str) -> 'DirectoryEntry':
        directory = DirectoryEntry(name=name, parent=self)
        self.directories.append(directory)
        return directory

    def add_file(self, entry: FileEntry) -> FileEntry:
        entry.directory = self
        self.files.append(entry)
        return entry

    def serialize(self, stream: BinaryIO, strings: StringTable) -> None:
        write_u32(stream, strings.put(self.name))
        write_u32(stream, len(self.files))
        write_u32(stream, len(self.directories))
        write_u32(stream, 0)

        # Child directories go first, the reader consumes them in that order
        for directory in self.directories:
            directory.serialize(stream, strings)
        for entry in self.files:
            entry.serialize(stream, strings)

    @classmethod
    def deserialize(cls, stream: BinaryIO, strings: StringTable,
                    parent: Optional['DirectoryEntry'] = None) -> 'DirectoryEntry':
        directory = cls(name=strings.get(read_u32(stream)), parent=parent)
        file_count = read_u32(stream)
        directory_count = read_u32(stream)
        reserved = read_u32(stream)

        if reserved != 0:
            raise StructuralInconsistencyError(
                f"Directory {directory.path!r} has non-zero reserved field 0x{reserved:08X}"
            )

        for _ in range(directory_count):
            directory.directories.append(cls.deserialize(stream, strings, parent=directory))
        for _ in range(file_count):
            directory.files.append(FileEntry.deserialize(stream, strings, directory=directory))
        return directory


def join_path(*parts: str) -> str:
    """Join tree names with '/', skipping empty names."""
    return '/'.join(part for part in parts if part)


@dataclass
class DataType:
    index: int
    reserved: int = 0


# ============== SECTION LAYOUT ==============

@dataclass(frozen=True)
class Section:
    """One header section and the condition under which it is in the stream."""
    name: str
    present: Callable[[int, int], bool]
    required_on_read: bool = False


def _always(version: int, flags: int) -> bool:
    return True


FLAGS_SECTION = Section('flags', lambda version, flags: version == 0x101 or version >= 0x200)

# Consulted in order by both serialize and deserialize. Flags are read
# before any section that depends on them.
SECTION_LAYOUT: Tuple[Section, ...] = (
    FLAGS_SECTION,
    Section('header_blob', lambda version, flags: version >= 0x202),
    Section('string_table_size', _always),
    Section('string_table', lambda version, flags: version >= 0x200),
    Section('data_types', lambda version, flags: bool(flags & ArchiveFlags.HAS_DATA_TYPES)),
    Section('totals', _always),
    Section('data_offsets', lambda version, flags: version >= 0x200, required_on_read=True),
    Section('late_string_table', lambda version, flags: version == 0x100),
    Section('file_table', _always),
)


def is_valid_version(version: int) -> bool:
    return version in VALID_VERSIONS


def check_header(stream: BinaryIO) -> Tuple[int, int, Optional[str]]:
    """
    Read magic and version and report whether they are acceptable.

    Returns:
        (magic, version, reason) where reason is None for a good header.
    """
    magic = read_u16(stream)
    version = read_u16(stream)

    if magic != MAGIC:
        return magic, version, "invalid WAD magic"
    if not is_valid_version(version):
        return magic, version, "invalid or unsupported version"
    return magic, version, None


@dataclass
class _WriteState:
    string_table: bytes
    file_table: bytes


@dataclass
class _ReadState:
    string_table_size: int = 0
    string_table: Optional[bytes] = None
    declared_file_count: int = 0
    declared_directory_count: int = 0


# ============== ARCHIVE ==============

@dataclass
class WadFile:
    """
    A WAD archive header and file table.

    Usage:
        wad = WadFile(version=0x202, flags=ArchiveFlags.HAS_DATA_TYPES)
        entry = wad.add_file('DATA_ALL_PLATFORMS/CARDS', 'CARD.XML')

        with open('out.wad', 'wb') as f:
            writer = WadWriter(wad, f)
            writer.begin()
            writer.write_payload(entry, data)
            writer.finish()

        with open('out.wad', 'rb') as f:
            wad = WadFile.deserialize(f)
    """
    version: int = 0x202
    flags: ArchiveFlags = ArchiveFlags.NONE
    header_blob: Optional[bytes] = None
    data_types: List[DataType] = field(default_factory=list)
    data_offsets: List[int] = field(default_factory=list)
    directories: List[DirectoryEntry] = field(default_factory=list)

    @property
    def total_file_count(self) -> int:
        return sum(d.total_file_count for d in self.directories)

    @property
    def total_directory_count(self) -> int:
        return len(self.directories) + sum(d.total_directory_count for d in self.directories)

    @property
    def has_compressed_files(self) -> bool:
        return bool(self.flags & ArchiveFlags.HAS_COMPRESSED_FILES)

    @property
    def unknown_flags(self) -> int:
        return int(self.flags) & ~int(ArchiveFlags.VALID_FLAGS)

    def all_files(self) -> Iterator[FileEntry]:
        for directory in self.directories:
            yield from directory.all_files()

    def get_or_create_directory(self, path: str) -> DirectoryEntry:
        """Find or create the directory at a '/'-separated path."""
        parts = path.split('/')

        current = None
        for directory in self.directories:
            if directory.name == parts[0]:
                current = directory
                break
        if current is None:
            current = DirectoryEntry(name=parts[0])
            self.directories.append(current)

        for part in parts[1:]:
            current = current.get_directory(part) or current.add_directory(part)
        return current

    def add_file(self, directory_path: str, name: str) -> FileEntry:
        """Create a file entry and reserve its slot in the data offset table."""
        directory = self.get_or_create_directory(directory_path)
        entry = FileEntry(name=name, offset_index=len(self.data_offsets), offset_count=1)
        self.data_offsets.append(0)
        return directory.add_file(entry)

    def data_offset_for(self, entry: FileEntry) -> int:
        if not 0 <= entry.offset_index < len(self.data_offsets):
            raise StructuralInconsistencyError(
                f"File {entry.path!r} references data offset {entry.offset_index}, "
                f"table has {len(self.data_offsets)} entries"
            )
        return self.data_offsets[entry.offset_index]

    def place_payload(self, entry: FileEntry, offset: int, size: int) -> None:
        """Record where entry's stored record was written and how long it is."""
        self.data_offset_for(entry)
        self.data_offsets[entry.offset_index] = offset
        entry.size = size

    @property
    def stored_flags(self) -> ArchiveFlags:
        """Flags as a reader will see them; versions without a flags field have none."""
        if FLAGS_SECTION.present(self.version, self.flags):
            return self.flags
        return ArchiveFlags.NONE

    def sections(self) -> List[str]:
        """Names of the sections present for this archive's version and flags."""
        return [s.name for s in SECTION_LAYOUT if s.present(self.version, self.stored_flags)]

    # ---------- writing ----------

    def serialize(self, stream: BinaryIO) -> None:
        """Write the header, string table and file table. Payloads are not written."""
        if not is_valid_version(self.version):
            raise MalformedHeaderError(f"Cannot write unsupported WAD version 0x{self.version:X}")

        file_table = io.BytesIO()
        strings = StringTable()
        for directory in self.directories:
            directory.serialize(file_table, strings)
        state = _WriteState(string_table=strings.getvalue(), file_table=file_table.getvalue())

        write_u16(stream, MAGIC)
        write_u16(stream, self.version)
        flags = self.stored_flags
        for section in SECTION_LAYOUT:
            if section.present(self.version, flags):
                getattr(self, f'_write_{section.name}')(stream, state)

    def _write_flags(self, stream: BinaryIO, state: _WriteState) -> None:
        write_u32(stream, int(self.flags))

    def _write_header_blob(self, stream: BinaryIO, state: _WriteState) -> None:
        write_blob(stream, self.header_blob)

    def _write_string_table_size(self, stream: BinaryIO, state: _WriteState) -> None:
        write_u32(stream, len(state.string_table))

    def _write_string_table(self, stream: BinaryIO, state: _WriteState) -> None:
        stream.write(state.string_table)

    def _write_data_types(self, stream: BinaryIO, state: _WriteState) -> None:
        write_s32(stream, len(self.data_types))
        for data_type in self.data_types:
            write_u32(stream, data_type.index)
            write_u32(stream, data_type.reserved)

    def _write_totals(self, stream: BinaryIO, state: _WriteState) -> None:
        write_s32(stream, self.total_file_count)
        write_s32(stream, self.total_directory_count)

    def _write_data_offsets(self, stream: BinaryIO, state: _WriteState) -> None:
        write_s32(stream, len(self.data_offsets))
        for offset in self.data_offsets:
            write_u32(stream, offset)

    _write_late_string_table = _write_string_table

    def _write_file_table(self, stream: BinaryIO, state: _WriteState) -> None:
        stream.write(state.file_table)

    def to_bytes(self) -> bytes:
        buffer = io.BytesIO()
        self.serialize(buffer)
        return buffer.getvalue()

    # ---------- reading ----------

    @classmethod
    def deserialize(cls, stream: BinaryIO) -> 'WadFile':
        """Parse a WAD header and file table from the current stream position."""
        magic = read_u16(stream)
        if magic != MAGIC:
            raise MalformedHeaderError(f"Not a WAD file (magic 0x{magic:04X})")
        version = read_u16(stream)
        if not is_valid_version(version):
            raise MalformedHeaderError(f"Invalid or unsupported WAD version 0x{version:04X}")

        wad = cls(version=version, flags=ArchiveFlags.NONE)
        state = _ReadState()
        for section in SECTION_LAYOUT:
            if section.present(wad.version, wad.flags):
                getattr(wad, f'_read_{section.name}')(stream, state)
            elif section.required_on_read:
                raise UnsupportedLayoutError(
                    f"Reading the {section.name} section of WAD version 0x{version:03X} is not implemented"
                )
        return wad

    def _read_flags(self, stream: BinaryIO, state: _ReadState) -> None:
        self.flags = ArchiveFlags(read_u32(stream))

    def _read_header_blob(self, stream: BinaryIO, state: _ReadState) -> None:
        self.header_blob = read_blob(stream)

    def _read_string_table_size(self, stream: BinaryIO, state: _ReadState) -> None:
        state.string_table_size = read_u32(stream)

    def _read_string_table(self, stream: BinaryIO, state: _ReadState) -> None:
        state.string_table = read_exact(stream, state.string_table_size)

    def _read_data_types(self, stream: BinaryIO, state: _ReadState) -> None:
        count = read_u32(stream)
        self.data_types = [DataType(index=read_u32(stream), reserved=read_u32(stream)) for _ in range(count)]

    def _read_totals(self, stream: BinaryIO, state: _ReadState) -> None:
        state.declared_file_count = read_u32(stream)
        state.declared_directory_count = read_u32(stream)

    def _read_data_offsets(self, stream: BinaryIO, state: _ReadState) -> None:
        count = read_u32(stream)
        self.data_offsets = [read_u32(stream) for _ in range(count)]

    _read_late_string_table = _read_string_table

    def _read_file_table(self, stream: BinaryIO, state: _ReadState) -> None:
        strings = StringTable(state.string_table)
        region_size = (state.declared_directory_count + state.declared_file_count) * ENTRY_SIZE
        region = io.BytesIO(read_exact(stream, region_size))

        self.directories = []
        try:
            while region.tell() < region_size:
                self.directories.append(DirectoryEntry.deserialize(region, strings))
        except RecursionError:
            raise StructuralInconsistencyError(
                "File table nests directories deeper than the interpreter recursion limit"
            ) from None

        if (self.total_file_count != state.declared_file_count or
                self.total_directory_count != state.declared_directory_count):
            raise StructuralInconsistencyError(
                f"Header declares {state.declared_file_count} files and "
                f"{state.declared_directory_count} directories, file table holds "
                f"{self.total_file_count} files and {self.total_directory_count} directories"
            )
        if region.tell() != region_size:
            raise StructuralInconsistencyError(
                f"File table ended at {region.tell()}, expected {region_size}"
            )

    @classmethod
    def from_bytes(cls, data: bytes) -> 'WadFile':
        return cls.deserialize(io.BytesIO(data))


# ============== TWO-PASS WRITER ==============

class WadWriter:
    """
    Writes a WAD to a seekable stream in two passes.

    begin() writes a placeholder header, write_payload() appends each file's
    stored record and records where it went, finish() seeks back and writes
    the header again with the real sizes and offsets.
    """

    def __init__(self, wad: WadFile, stream: BinaryIO):
        if not stream.seekable():
            raise ValueError("WAD output requires a seekable stream")
        self.wad = wad
        self.stream = stream
        self._start: Optional[int] = None
        self._header_size = 0

    def begin(self) -> None:
        self._start = self.stream.tell()
        header = render_header(self.wad)
        self.stream.write(header)
        self._header_size = len(header)

    def write_payload(self, entry: FileEntry, record: bytes) -> int:
        """Append a stored record for entry and return its absolute offset."""
        if self._start is None:
            raise RuntimeError("begin() must be called before writing payloads")

        offset = self.stream.tell()
        self.wad.place_payload(entry, offset, len(record))
        self.stream.write(record)
        return offset

    def finish(self) -> None:
        if self._start is None:
            raise RuntimeError("begin() must be called before finish()")

        header = render_header(self.wad, expected_size=self._header_size)
        end = self.stream.tell()
        self.stream.seek(self._start)
        self.stream.write(header)
        self.stream.seek(end)


def render_header(wad: WadFile, expected_size: Optional[int] = None) -> bytes:
    """
    Serialize wad's header and file table.

    The second pass of a two-pass write must overwrite the placeholder in
    place, so expected_size is the placeholder's length and any other size
    raises StructuralInconsistencyError.
    """
    header = wad.to_bytes()
    if expected_size is not None and len(header) != expected_size:
        raise StructuralInconsistencyError(
            f"Header grew from {expected_size} to {len(header)} bytes between passes"
        )
    return header

import io
import struct

import pytest

from wadfile.format import (
    MAGIC,
    ArchiveFlags,
    DataType,
    DirectoryEntry,
    FileEntry,
    MalformedHeaderError,
    StringTable,
    StringTableModeError,
    StructuralInconsistencyError,
    TruncatedDataError,
    UnsupportedLayoutError,
    WadFile,
    WadWriter,
    align,
    check_header,
    read_exact,
    render_header,
)


def make_wad(version=0x202, flags=ArchiveFlags.HAS_DATA_TYPES | ArchiveFlags.UNKNOWN6_OBSERVED):
    wad = WadFile(version=version, flags=flags, header_blob=b'<header/>' if version >= 0x202 else None)
    if flags & ArchiveFlags.HAS_DATA_TYPES:
        wad.data_types.append(DataType(index=3, reserved=0))

    layout = [
        ('DATA/CARDS', 'ANGEL.XML'),
        ('DATA/CARDS', 'BOLT.XML'),
        ('DATA/AUDIO', 'THEME.OGG'),
        ('OTHER', 'README.TXT'),
    ]
    for i, (directory, name) in enumerate(layout):
        entry = wad.add_file(directory, name)
        entry.size = 10 + i
        wad.data_offsets[entry.offset_index] = 0x1000 + i * 0x100
    return wad


def make_single_file_wad(version, flags=ArchiveFlags.NONE):
    wad = WadFile(version=version, flags=flags)
    entry = wad.add_file('D', 'F')
    entry.size = 7
    return wad


# ---------- string table ----------

def test_string_table_deduplicates():
    table = StringTable()
    first = table.put('CARDS')
    second = table.put('AUDIO')
    again = table.put('CARDS')

    assert first == 0
    assert second == len('CARDS') + 1
    assert again == first


def test_string_table_pads_to_sixteen_bytes():
    table = StringTable()
    for name in ['abc', 'de', 'abc', 'fghij']:
        table.put(name)

    unique_length = len('abc') + 1 + len('de') + 1 + len('fghij') + 1
    data = table.getvalue()
    assert len(data) == align(unique_length, 16) == 16
    assert data[:unique_length] == b'abc\x00de\x00fghij\x00'
    assert data[unique_length:] == b'\x00' * (16 - unique_length)


def test_string_table_reads_back_windows_1252():
    writer = StringTable()
    offset = writer.put('Æther Vial')
    data = writer.getvalue()
    assert data[offset] == 0xC6

    reader = StringTable(data)
    assert reader.get(offset) == 'Æther Vial'


def test_string_table_direction_is_enforced():
    with pytest.raises(StringTableModeError):
        StringTable().get(0)
    with pytest.raises(StringTableModeError):
        StringTable(b'abc\x00').put('abc')


def test_string_table_rejects_bad_offsets():
    reader = StringTable(b'ab')
    with pytest.raises(StructuralInconsistencyError):
        reader.get(0)
    with pytest.raises(StructuralInconsistencyError):
        reader.get(5)


def test_string_table_rejects_embedded_nul():
    with pytest.raises(ValueError):
        StringTable().put('A\x00B')

    wad = WadFile(version=0x202)
    wad.add_file('D', 'A\x00B')
    with pytest.raises(ValueError):
        wad.to_bytes()


# ---------- entries ----------

def test_file_entry_packs_offset_index_and_count():
    entry = FileEntry(name='X', offset_index=0x123456, offset_count=1)
    assert entry.flags == 0x01123456

    entry.flags = 0x02000010
    assert entry.offset_index == 0x10
    assert entry.offset_count == 2


def test_file_entry_rejects_oversized_index():
    entry = FileEntry(name='X', offset_index=0x1000000)
    with pytest.raises(ValueError):
        entry.serialize(io.BytesIO(), StringTable())


def test_directories_serialize_before_files():
    root = DirectoryEntry(name='root')
    root.add_file(FileEntry(name='top.txt'))
    for name in ['a', 'b']:
        child = root.add_directory(name)
        child.add_file(FileEntry(name=f'{name}.txt'))

    strings = StringTable()
    stream = io.BytesIO()
    root.serialize(stream, strings)
    data = stream.getvalue()
    names = StringTable(strings.getvalue())

    records = [struct.unpack_from('<IIII', data, offset) for offset in range(0, len(data), 16)]
    assert [names.get(record[0]) for record in records] == ['root', 'a', 'a.txt', 'b', 'b.txt', 'top.txt']
    assert records[0][1:] == (1, 2, 0)

    parsed = DirectoryEntry.deserialize(io.BytesIO(data), names)
    assert parsed == root
    assert [d.name for d in parsed.directories] == ['a', 'b']
    assert parsed.directories[0].parent is parsed
    assert parsed.directories[1].files[0].directory is parsed.directories[1]
    assert parsed.directories[1].files[0].path == 'root/b/b.txt'


def test_derived_counts():
    wad = make_wad()
    assert wad.total_file_count == 4
    assert len(list(wad.all_files())) == 4
    # DATA, OTHER, DATA/CARDS, DATA/AUDIO
    assert wad.total_directory_count == 4
    data = wad.directories[0]
    assert data.total_directory_count == 2
    assert data.total_file_count == 3


def test_add_file_reuses_directories_and_reserves_offsets():
    wad = WadFile()
    first = wad.add_file('A/B', 'one')
    second = wad.add_file('A/B', 'two')
    third = wad.add_file('A', 'three')

    assert len(wad.directories) == 1
    assert [f.offset_index for f in (first, second, third)] == [0, 1, 2]
    assert wad.data_offsets == [0, 0, 0]
    assert first.directory is second.directory
    assert first.path == 'A/B/one'
    assert third.path == 'A/three'


# ---------- archive layout ----------

def test_section_order_per_version():
    assert WadFile(version=0x100).sections() == [
        'string_table_size', 'totals', 'late_string_table', 'file_table']
    assert WadFile(version=0x101).sections() == [
        'flags', 'string_table_size', 'totals', 'file_table']
    assert WadFile(version=0x201, flags=ArchiveFlags.HAS_DATA_TYPES).sections() == [
        'flags', 'string_table_size', 'string_table', 'data_types', 'totals', 'data_offsets', 'file_table']
    assert WadFile(version=0x202).sections() == [
        'flags', 'header_blob', 'string_table_size', 'string_table', 'totals', 'data_offsets', 'file_table']


def test_version_0x202_byte_layout():
    wad = make_single_file_wad(0x202)
    wad.data_offsets[0] = 0x40

    strings = b'D\x00F\x00' + b'\x00' * 12
    expected = (
        struct.pack('<HHI', MAGIC, 0x202, 0)
        + struct.pack('<I', 0)
        + struct.pack('<I', 16) + strings
        + struct.pack('<II', 1, 1)
        + struct.pack('<II', 1, 0x40)
        + struct.pack('<IIII', 0, 1, 0, 0)
        + struct.pack('<IIII', 2, 7, 0x01000000, 0)
    )
    assert wad.to_bytes() == expected


def test_version_0x201_writes_data_types_after_strings():
    wad = make_single_file_wad(0x201, flags=ArchiveFlags.HAS_DATA_TYPES)
    wad.data_types = [DataType(index=5, reserved=9)]

    data = wad.to_bytes()
    assert data[:8] == struct.pack('<HHI', MAGIC, 0x201, int(ArchiveFlags.HAS_DATA_TYPES))
    assert data[8:12] == struct.pack('<I', 16)
    assert data[28:40] == struct.pack('<III', 1, 5, 9)
    assert data[40:48] == struct.pack('<II', 1, 1)


def test_version_0x100_writes_strings_after_counts():
    wad = make_single_file_wad(0x100)

    expected = (
        struct.pack('<HH', MAGIC, 0x100)
        + struct.pack('<I', 16)
        + struct.pack('<II', 1, 1)
        + b'D\x00F\x00' + b'\x00' * 12
        + struct.pack('<IIII', 0, 1, 0, 0)
        + struct.pack('<IIII', 2, 7, 0x01000000, 0)
    )
    assert wad.to_bytes() == expected


def test_version_0x100_omits_data_types_it_cannot_flag():
    wad = make_single_file_wad(0x100, flags=ArchiveFlags.HAS_DATA_TYPES)
    wad.data_types = [DataType(index=5, reserved=9)]

    assert wad.stored_flags == ArchiveFlags.NONE
    assert 'data_types' not in wad.sections()
    assert wad.to_bytes() == make_single_file_wad(0x100).to_bytes()


@pytest.mark.parametrize('version', [0x200, 0x201, 0x202])
@pytest.mark.parametrize('flags', [
    ArchiveFlags.NONE,
    ArchiveFlags.HAS_DATA_TYPES | ArchiveFlags.UNKNOWN6_OBSERVED,
    ArchiveFlags.HAS_COMPRESSED_FILES | ArchiveFlags.HAS_DATA_TYPES,
])
def test_round_trip(version, flags):
    wad = make_wad(version, flags)
    parsed = WadFile.from_bytes(wad.to_bytes())

    assert parsed == wad
    assert [f.path for f in parsed.all_files()] == [f.path for f in wad.all_files()]


@pytest.mark.parametrize('version', [0x100, 0x101])
def test_old_versions_cannot_be_read(version):
    data = make_wad(version).to_bytes()
    with pytest.raises(UnsupportedLayoutError):
        WadFile.from_bytes(data)


def test_unknown_flag_bits_survive():
    wad = make_single_file_wad(0x202, flags=ArchiveFlags(0x80) | ArchiveFlags.HAS_DATA_TYPES)
    parsed = WadFile.from_bytes(wad.to_bytes())
    assert int(parsed.flags) == 0x82
    assert parsed.unknown_flags == 0x80


def test_empty_header_blob_reads_as_empty_bytes():
    wad = make_single_file_wad(0x202)
    assert WadFile.from_bytes(wad.to_bytes()).header_blob == b''


# ---------- header errors ----------

def test_rejects_bad_magic_before_reading_further():
    stream = io.BytesIO(struct.pack('<HH', 0x4321, 0x202) + b'\x00' * 64)
    with pytest.raises(MalformedHeaderError):
        WadFile.deserialize(stream)
    assert stream.tell() == 2


def test_rejects_unknown_version():
    stream = io.BytesIO(struct.pack('<HH', MAGIC, 0x199) + b'\x00' * 64)
    with pytest.raises(MalformedHeaderError):
        WadFile.deserialize(stream)


def test_refuses_to_write_unknown_version():
    with pytest.raises(MalformedHeaderError):
        WadFile(version=0x300).to_bytes()


def test_check_header_reports_reason():
    assert check_header(io.BytesIO(struct.pack('<HH', MAGIC, 0x202))) == (MAGIC, 0x202, None)
    assert check_header(io.BytesIO(struct.pack('<HH', 0, 0x202)))[2] == "invalid WAD magic"
    assert check_header(io.BytesIO(struct.pack('<HH', MAGIC, 0x199)))[2] == "invalid or unsupported version"


# ---------- structural errors ----------

def _patch(data, offset, value):
    patched = bytearray(data)
    struct.pack_into('<I', patched, offset, value)
    return bytes(patched)


def test_rejects_non_zero_directory_reserved():
    data = make_single_file_wad(0x202).to_bytes()
    with pytest.raises(StructuralInconsistencyError):
        WadFile.from_bytes(_patch(data, len(data) - 32 + 12, 1))


def test_rejects_multi_part_files():
    data = make_single_file_wad(0x202).to_bytes()
    with pytest.raises(StructuralInconsistencyError):
        WadFile.from_bytes(_patch(data, len(data) - 16 + 8, 0x02000000))


def test_rejects_non_zero_file_reserved():
    data = make_single_file_wad(0x202).to_bytes()
    with pytest.raises(StructuralInconsistencyError):
        WadFile.from_bytes(_patch(data, len(data) - 16 + 12, 3))


def test_rejects_mismatched_totals():
    # magic, version, flags, blob length, string table size, 16 string bytes
    totals_offset = 2 + 2 + 4 + 4 + 4 + 16
    data = make_single_file_wad(0x202).to_bytes()
    data = _patch(data, totals_offset, 2)
    data = _patch(data, totals_offset + 4, 0)

    with pytest.raises(StructuralInconsistencyError, match="declares"):
        WadFile.from_bytes(data)


def test_rejects_truncated_stream():
    data = make_wad().to_bytes()
    with pytest.raises(TruncatedDataError):
        WadFile.from_bytes(data[:-8])


def test_rejects_directories_nested_past_recursion_limit():
    depth = 3000
    header = struct.pack('<HHII', MAGIC, 0x200, 0, 16) + b'D'.ljust(16, b'\x00')
    header += struct.pack('<III', 0, depth, 0)
    chain = struct.pack('<IIII', 0, 0, 1, 0) * (depth - 1) + struct.pack('<IIII', 0, 0, 0, 0)

    with pytest.raises(StructuralInconsistencyError, match="nests directories"):
        WadFile.from_bytes(header + chain)


def test_read_exact_reads_large_sizes_in_chunks():
    data = bytes(range(256)) * 5000
    assert read_exact(io.BytesIO(data), len(data)) == data

    with pytest.raises(TruncatedDataError):
        read_exact(io.BytesIO(data), 0xFFFFFFFF)


def test_data_offset_for_checks_range():
    wad = make_wad()
    entry = next(wad.all_files())
    assert wad.data_offset_for(entry) == 0x1000

    entry.offset_index = 99
    with pytest.raises(StructuralInconsistencyError):
        wad.data_offset_for(entry)


# ---------- two-pass writer ----------

def test_two_pass_writer_patches_offsets_and_sizes():
    wad = WadFile(version=0x202, flags=ArchiveFlags.HAS_DATA_TYPES)
    first = wad.add_file('DATA', 'ONE.TXT')
    second = wad.add_file('DATA/SUB', 'TWO.TXT')

    stream = io.BytesIO()
    writer = WadWriter(wad, stream)
    writer.begin()
    header_size = stream.tell()
    writer.write_payload(first, b'hello')
    writer.write_payload(second, b'world!')
    writer.finish()

    data = stream.getvalue()
    assert stream.tell() == len(data) == header_size + 11

    parsed = WadFile.from_bytes(data)
    assert parsed.data_offsets == [header_size, header_size + 5]
    one, two = sorted(parsed.all_files(), key=lambda f: f.offset_index)
    assert (one.size, two.size) == (5, 6)
    assert data[parsed.data_offset_for(one):][:one.size] == b'hello'
    assert data[parsed.data_offset_for(two):][:two.size] == b'world!'


def test_render_header_checks_expected_size():
    wad = make_wad()
    header = render_header(wad)
    assert header == wad.to_bytes()
    assert render_header(wad, expected_size=len(header)) == header

    wad.add_file('DATA', 'LATE.TXT')
    with pytest.raises(StructuralInconsistencyError, match="grew"):
        render_header(wad, expected_size=len(header))


def test_two_pass_writer_requires_seekable_stream():
    class Unseekable(io.BytesIO):
        def seekable(self):
            return False

    with pytest.raises(ValueError):
        WadWriter(WadFile(), Unseekable())


def test_two_pass_writer_detects_header_growth():
    wad = WadFile(version=0x202)
    wad.add_file('DATA', 'ONE.TXT')

    writer = WadWriter(wad, io.BytesIO())
    writer.begin()
    wad.add_file('DATA', 'LATE.TXT')
    with pytest.raises(StructuralInconsistencyError):
        writer.finish()

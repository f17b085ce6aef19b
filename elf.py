# Copyright (c) 2022 Anton Kolesov
# SPDX-License-Identifier: MIT

"""Classes specific to reading ELF files.

Only the parts needed to find a section by name and to apply dynamic
relocations to it are supported: the file header, section headers, string
tables, symbol tables and relocation tables.

For documentation see http://www.sco.com/developers/gabi/latest/contents.html."""

__all__ = [
    'ElfClass',
    'DataFormat',
    'Endianness',
    'ElfMachineType',
    'ElfHeader',
    'SectionType',
    'SectionHeader',
    'StringTable',
    'SymbolTableEntry',
    'RelocationEntry',
    'RelocationTypeAmd64',
    'RelocationTypeAarch64',
    'Section',
    'Symbol',
    'Relocation',
    'Elf',
]

import dataclasses
from enum import Enum, IntEnum
from io import SEEK_END
import struct
from typing import BinaryIO, get_type_hints, Iterable, Iterator, NamedTuple, Sequence, TypeVar


#
# Common declarations.
#
def _missing_enum_value(cls, value):
    """An implementation of Enum._missing_ function for open-ended enums.

    Values that are not listed in the enum are still accepted, and get a name
    equal to their hex representation."""
    if not isinstance(value, int):
        return None
    obj = object.__new__(cls)
    obj._value_ = value
    obj._name_ = hex(value)
    return obj


class ElfClass(Enum):
    ELF32 = 1
    ELF64 = 2

    address_size: int
    """Amount of bytes needed to represent address for this ELF class."""

    def __init__(self, value: int) -> None:
        self.address_size = 4 * value


_T = TypeVar('_T')


@dataclasses.dataclass(frozen=True)
class DataFormat:
    """A class to represent combination of bitness and byte order.

    Provides a facility to read data in the specified format from byte-buffers."""

    bits: ElfClass
    """An ELF class of the data format."""

    byte_order: 'Endianness'
    """A byte order of the ELF file data."""

    @property
    def pointer_format(self) -> str:
        """Return a ``struct`` format for the pointer on the data format.

        :return: ``L`` for 32-bit data, ``Q`` for 64-bit data."""
        return 'L' if self.bits == ElfClass.ELF32 else 'Q'

    @property
    def byte_order_format(self) -> str:
        """Return a byte-order prefix for the ``struct`` format string.

        :return: ``<`` for the little endian, ``>`` otherwise."""
        return '<' if self.byte_order == Endianness.LITTLE else '>'

    @property
    def byteorder(self) -> str:
        """Return the byte order in the notation of ``int.from_bytes``."""
        return 'little' if self.byte_order == Endianness.LITTLE else 'big'

    def read_values(
        self,
        buffer: bytes,
        types: Iterable[type],
        format: str,
    ) -> Iterator[tuple]:
        """Read multiple values from the buffer using the ``struct`` module.

        The ``format`` argument is almost the same as the format string for
        ``struct`` module, except that ``P`` stands for a *target*
        architecture pointer and is replaced with a correctly-sized unsigned
        integer. The byte order prefix is added by this function.

        :param buffer: An incomming bytes data, must be a multiple of the
            format size.
        :param types: An iterable of types to which to convert the read-out values.
        :param format: A format string to read data from the buffer.

        :return: An iterator of tuples, where each tuple consists of objects that
            were created using the ``types`` sequence, and with arguments read
            from the buffer."""
        real_fmt = self.adjust_format_string(format)
        # `types` can be an iterator and thus can't be iterated repeatedly.
        types_copy = tuple(types)
        for raw_values in struct.iter_unpack(real_fmt, buffer):
            yield tuple(t(a) for t, a in zip(types_copy, raw_values, strict=True))

    def read_dataclass_values(
        self,
        buffer: bytes,
        type: type[_T],
        format: str,
    ) -> Iterator[_T]:
        """Read multiple dataclass instances from the buffer.

        Fields in the dataclass must be in the same order as in the buffer."""
        assert dataclasses.is_dataclass(type)
        hints = get_type_hints(type)
        yield from (type(*a) for a in self.read_values(
            buffer,
            (hints[f.name] for f in dataclasses.fields(type)),
            format,
        ))

    def pack_pointer(self, value: int) -> bytes:
        """Encode an address-sized value, as it would be stored by the loader.

        Negative values are stored in two's complement."""
        size = self.bits.address_size
        return (value & ((1 << (size * 8)) - 1)).to_bytes(size, self.byteorder)

    def adjust_format_string(self, format: str) -> str:
        """Adjust specified format string to this data format.

        Sets endianness and provides exact size to pointers."""
        return self.byte_order_format + format.replace('P', self.pointer_format)

    def calc_size(self, format: str) -> int:
        """Just like ``struct.calcsize`` except with support for target pointers."""
        return struct.calcsize(self.adjust_format_string(format))


#
# ELF header.
#
class Endianness(Enum):
    NONE = 0
    LITTLE = 1
    BIG = 2


class ElfMachineType(Enum):
    # Only machines that are relevant for stackmaps are listed, everything
    # else gets a numeric name.
    EM_NONE = 0
    EM_386 = 3
    EM_ARM = 40
    EM_X86_64 = 62
    EM_AARCH64 = 183
    EM_RISCV = 243

    @classmethod
    def _missing_(cls, value):
        return _missing_enum_value(cls, value)


@dataclasses.dataclass(frozen=True)
class ElfHeader:
    magic: int
    elf_class: ElfClass
    endianness: Endianness
    version: int
    osabi: int
    abiversion: int
    object_type: int
    machine: ElfMachineType
    version2: int
    entry: int
    program_header_offset: int
    section_header_offset: int
    flags: int
    elf_header_size: int  # Size of this header.
    program_header_size: int
    program_header_entries: int
    section_header_size: int
    section_header_entries: int
    section_header_names_index: int

    @property
    def data_format(self) -> DataFormat:
        """A data format specified in this header."""
        return DataFormat(self.elf_class, self.endianness)

    @staticmethod
    def get_data_format(header_bytes: bytes) -> DataFormat:
        """Check ELF magic bytes and retrieve ELF class and byte order.

        ELF class is quite important because it affects the size of
        address-sized fields, therefore it is parsed before the header itself."""
        if len(header_bytes) < 6 or header_bytes[:4] != b'\x7fELF':
            raise ValueError('The input stream is not a valid ELF file.')
        endianness = Endianness(header_bytes[5])
        if endianness == Endianness.NONE:
            raise ValueError('The ELF file has no valid byte order.')
        return DataFormat(ElfClass(header_bytes[4]), endianness)

    @staticmethod
    def parse_elf_header(header_bytes: bytes) -> 'ElfHeader':
        """Parse an ELF header from a given bytes from the file."""
        df = ElfHeader.get_data_format(header_bytes)
        size = df.calc_size('L5B7xHHLPPPL6H')
        if len(header_bytes) < size:
            raise ValueError('The ELF header is truncated.')
        return next(df.read_dataclass_values(header_bytes[:size], ElfHeader, 'L5B7xHHLPPPL6H'))

    @staticmethod
    def read_elf_header(stream: BinaryIO) -> 'ElfHeader':
        """Read ELF header from a binary stream.

        Changes the current position of the stream."""
        stream.seek(0)
        return ElfHeader.parse_elf_header(stream.read(64))


#
# Section header.
#
class SectionType(Enum):
    NULL = 0x0  # Section header table entry unused
    PROGBITS = 0x1  # Program data
    SYMTAB = 0x2  # Symbol table
    STRTAB = 0x3  # String table
    RELA = 0x4  # Relocation entries with addends
    HASH = 0x5  # Symbol hash table
    DYNAMIC = 0x6  # Dynamic linking information
    NOTE = 0x7  # Notes
    NOBITS = 0x8  # Program space with no data (bss)
    REL = 0x9  # Relocation entries, no addends
    DYNSYM = 0x0B  # Dynamic linker symbol table

    @classmethod
    def _missing_(cls, value):
        return _missing_enum_value(cls, value)


@dataclasses.dataclass(frozen=True)
class SectionHeader:
    name_offset: int
    """An offset to a string in the .shstrtab section with the name of this section."""

    type: SectionType
    flags: int
    address: int
    offset: int
    size: int
    link: int
    info: int
    address_alignment: int
    entry_size: int

    @property
    def file_range(self) -> range | None:
        """The range of file offsets occupied by the section content.

        NOBITS sections have no content in the file and thus no range."""
        if self.type == SectionType.NOBITS:
            return None
        return range(self.offset, self.offset + self.size)

    @staticmethod
    def read(
        buffer: bytes,
        data_format: DataFormat,
    ) -> Iterator['SectionHeader']:
        """Read section headers from the specified buffer."""
        yield from data_format.read_dataclass_values(buffer, SectionHeader, 'LLPPPPLLPP')


#
# String table
#
class StringTable:
    """A representation of a string table section from the ELF file.

    String table can't be represented as a simple mapping because offsets into
    the table may point into the middle of the string. For example if there are
    strings `name` and `rename` then the table would contain only the `rename`
    and whenever `name` is needed its offset would point into the third
    character of that string."""

    _data: bytes
    """The section content."""

    def __init__(self, data: bytes) -> None:
        self._data = data

    def get(self, offset: int) -> str:
        """Get a string from the table starting at the specified offset."""
        if not 0 <= offset < len(self._data):
            raise ValueError(f'String offset {offset:#x} is outside of the string table.')
        end = self._data.find(b'\x00', offset)
        if end < 0:
            end = len(self._data)
        return self._data[offset:end].decode('ascii', errors='replace')

    def __getitem__(self, offset: int) -> str:
        return self.get(offset)


#
# Symbol table.
#
@dataclasses.dataclass(frozen=True)
class SymbolTableEntry:
    name_offset: int
    info: int
    other: int
    section_index: int
    """The index of the section for which this symbol entry is defined."""
    value: int
    size: int

    @staticmethod
    def read(
        buffer: bytes,
        data_format: DataFormat,
    ) -> Iterator['SymbolTableEntry']:
        """Read the symbol table from the specified buffer."""
        if data_format.bits == ElfClass.ELF64:
            # Fields in the class are in order for Elf64.
            yield from data_format.read_dataclass_values(buffer, SymbolTableEntry, 'LBBHPP')
        else:
            # Fields in the class are not in order for Elf32.
            arguments = data_format.read_values(buffer, (int,) * 6, 'LPPBBH')
            yield from (SymbolTableEntry(a[0], a[3], a[4], a[5], a[1], a[2]) for a in arguments)


#
# Relocations
#
@dataclasses.dataclass(frozen=True)
class RelocationEntry:
    """An entry of a RELA section. Dynamic loaders on supported machines use
    only this kind of relocations."""
    offset: int
    type: int
    symbol_index: int
    addend: int

    @staticmethod
    def read(
        buffer: bytes,
        data_format: DataFormat,
    ) -> Iterator['RelocationEntry']:
        """Read entries from the provided buffer."""
        if data_format.bits == ElfClass.ELF64:
            raw_values = data_format.read_values(buffer, (int, int, int), 'PQq')
            yield from (RelocationEntry(a[0], a[1] & 0xFFFFFFFF, a[1] >> 32, a[2]) for a in raw_values)
        else:
            raw_values = data_format.read_values(buffer, (int, int, int), 'PLl')
            yield from (RelocationEntry(a[0], a[1] & 0xFF, a[1] >> 8, a[2]) for a in raw_values)


class RelocationTypeAmd64(IntEnum):
    # Comes from https://www.uclibc.org/docs/psABI-x86_64.pdf
    R_X86_64_NONE = 0
    R_X86_64_64 = 1
    R_X86_64_PC32 = 2
    R_X86_64_GOT32 = 3
    R_X86_64_PLT32 = 4
    R_X86_64_COPY = 5
    R_X86_64_GLOB_DAT = 6
    R_X86_64_JUMP_SLOT = 7
    R_X86_64_RELATIVE = 8
    R_X86_64_GOTPCREL = 9
    R_X86_64_32 = 10
    R_X86_64_32S = 11
    R_X86_64_DTPMOD64 = 16
    R_X86_64_DTPOFF64 = 17
    R_X86_64_TPOFF64 = 18
    R_X86_64_IRELATIVE = 37


class RelocationTypeAarch64(IntEnum):
    # Comes from the ELF for the Arm 64-bit Architecture document.
    R_AARCH64_NONE = 0
    R_AARCH64_ABS64 = 257
    R_AARCH64_ABS32 = 258
    R_AARCH64_COPY = 1024
    R_AARCH64_GLOB_DAT = 1025
    R_AARCH64_JUMP_SLOT = 1026
    R_AARCH64_RELATIVE = 1027
    R_AARCH64_TLS_DTPMOD = 1028
    R_AARCH64_TLS_DTPREL = 1029
    R_AARCH64_TLS_TPREL = 1030
    R_AARCH64_TLSDESC = 1031
    R_AARCH64_IRELATIVE = 1032


#
# ELF container
#
class Section(NamedTuple):
    number: int
    name: str
    header: SectionHeader


class Symbol(NamedTuple):
    number: int
    name: str
    entry: SymbolTableEntry


class Relocation(NamedTuple):
    relocation: RelocationEntry
    symbol: Symbol | None


class Elf:
    @staticmethod
    def _read_section_headers(
        stream: BinaryIO,
        elf_header: ElfHeader,
        file_size: int,
    ) -> Iterator['SectionHeader']:
        """Read section headers from the stream and parse them.

        State of the stream cursor will change during the function execution."""
        section_header_count = elf_header.section_header_entries
        section_header_size = elf_header.section_header_size
        if section_header_count and section_header_size != elf_header.data_format.calc_size('LLPPPPLLPP'):
            raise ValueError(f'Unexpected section header size {section_header_size}.')

        table_size = section_header_count * section_header_size
        if elf_header.section_header_offset + table_size > file_size:
            raise ValueError('Section headers table is outside of the file.')

        stream.seek(elf_header.section_header_offset)
        data = stream.read(table_size)
        if len(data) != table_size:
            raise ValueError('Section headers table is truncated.')
        yield from SectionHeader.read(data, elf_header.data_format)

    def __init__(self, stream: BinaryIO) -> None:
        self.__stream = stream
        self.__file_size = stream.seek(0, SEEK_END)
        self.file_header = ElfHeader.read_elf_header(stream)
        self.section_headers = tuple(Elf._read_section_headers(stream, self.file_header, self.__file_size))

        names_index = self.file_header.section_header_names_index
        if names_index == 0:
            # SHN_UNDEF: the file has no section names.
            self.section_names = tuple('' for _ in self.section_headers)
        else:
            name_table = self.strings(names_index)
            self.section_names = tuple(name_table[s.name_offset] for s in self.section_headers)

    file_header: ElfHeader
    section_headers: Sequence[SectionHeader]
    section_names: Sequence[str]

    @property
    def sections(self) -> Iterable[Section]:
        return (Section(nr, n, h) for nr, n, h in zip(
            range(len(self.section_headers)),
            self.section_names,
            self.section_headers,
        ))

    @property
    def elf_class(self) -> ElfClass:
        return self.file_header.elf_class

    @property
    def data_format(self) -> DataFormat:
        return self.file_header.data_format

    @property
    def machine(self) -> ElfMachineType:
        return self.file_header.machine

    def strings(self, section_number: int) -> StringTable:
        return StringTable(self.section_content(section_number))

    def symbols(self, section_number: int) -> Iterator[Symbol]:
        section = self.section_headers[section_number]
        name_table = self.strings(section.link)
        syms = SymbolTableEntry.read(self.section_content(section_number), self.data_format)
        for num, symbol in enumerate(syms):
            # The first entry is a null symbol and has no name.
            name = name_table[symbol.name_offset] if symbol.name_offset else ''
            yield Symbol(num, name, symbol)

    def relocations(self, section_number: int) -> Iterator[Relocation]:
        section = self.section_headers[section_number]
        assert section.type == SectionType.RELA
        symbols = list(self.symbols(section.link)) if section.link else []

        def get_symbol(index: int) -> Symbol | None:
            if 0 < index < len(symbols):
                return symbols[index]
            return None

        relocations = RelocationEntry.read(self.section_content(section_number), self.data_format)
        yield from (Relocation(reloc, get_symbol(reloc.symbol_index)) for reloc in relocations)

    def dynamic_relocation_sections(self) -> Iterator[Section]:
        """Return RELA sections processed by the dynamic loader.

        Those are the relocation sections that refer to the dynamic symbol
        table, as opposed to the relocations for the static linker."""
        for s in self.sections_of_type(SectionType.RELA):
            link = s.header.link
            if 0 < link < len(self.section_headers) and self.section_headers[link].type == SectionType.DYNSYM:
                yield s

    def section_by_name(self, name: str) -> Section | None:
        """Return the first section with the specified name."""
        return next((s for s in self.sections if s.name == name), None)

    def read(self, offset: int, size: int) -> bytes:
        """Return the content of the file at specified offset."""
        if offset + size > self.__file_size:
            raise ValueError(
                f'Reading {size:#x} bytes at offset {offset:#x} goes past the end of the file.'
            )
        self.__stream.seek(offset)
        data = self.__stream.read(size)
        if len(data) != size:
            raise ValueError(f'Unexpected end of file reading {size} bytes at offset {offset:#x}.')
        return data

    def section_content(self, section_number: int) -> bytes:
        """Return content of the specified section as bytes."""
        section = self.section_headers[section_number]
        if section.type == SectionType.NOBITS:
            return b''
        return self.read(section.offset, section.size)

    def sections_of_type(self, shtype: SectionType) -> Iterator[Section]:
        for s in self.sections:
            if s.header.type == shtype:
                yield s

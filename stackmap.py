# Copyright (c) 2022 Anton Kolesov
# SPDX-License-Identifier: MIT

"""Classes specific to parsing of LLVM stackmap sections.

The format is described in https://llvm.org/docs/StackMaps.html. Only the
version 3 of the format is supported. The section content is not bound to any
particular object file format, see ``stackmap_elf`` for ELF files."""

__all__ = [
    # Errors.
    'StackMapError',
    'TruncatedError',
    'UnsupportedVersionError',
    'MalformedError',
    'InvalidLocationTypeError',
    'SectionNotFoundError',
    'StackMapIOError',
    # Classes.
    'StreamReader',
    'Header',
    'FunctionRecord',
    'LocationType',
    'Location',
    'LiveOut',
    'PatchPointRecord',
    'StackMap',
    # Functions.
    'decode',
    'decode_all',
]

import dataclasses
from enum import Enum
import logging
import struct
import sys
from typing import Iterator, Sequence

log = logging.getLogger(__name__)

SUPPORTED_VERSION = 3
"""The only revision of the stackmap format this module understands."""


#
# Errors.
#
class StackMapError(Exception):
    """Base class for all errors raised while reading stackmaps."""


class TruncatedError(StackMapError):
    """The buffer ends before a field that must be present."""

    def __init__(self, position: int, required: int, available: int) -> None:
        super().__init__(
            f'Need {required} bytes at offset {position:#x}, but only {available} are left.'
        )
        self.position = position
        self.required = required
        self.available = available


class UnsupportedVersionError(StackMapError):
    def __init__(self, version: int) -> None:
        super().__init__(f'Unsupported stackmap version {version}, only version {SUPPORTED_VERSION} is supported.')
        self.version = version


class MalformedError(StackMapError):
    """The data is complete, but violates the format."""


class InvalidLocationTypeError(MalformedError):
    def __init__(self, value: int) -> None:
        super().__init__(f'Not a valid location type: {value}.')
        self.value = value


class SectionNotFoundError(StackMapError):
    def __init__(self, section_name: str) -> None:
        super().__init__(f'There is no section `{section_name}` in the file.')
        self.section_name = section_name


class StackMapIOError(StackMapError, OSError):
    """Failed to read the input file."""


#
# Byte reader.
#
class StreamReader:
    """A forward-only reader of stackmap fields from an in-memory buffer.

    Unlike reading from a file stream, every read is checked against the end
    of the buffer first: a short buffer raises ``TruncatedError`` and leaves
    the position unchanged."""

    def __init__(
        self,
        buffer: bytes | bytearray,
        byteorder: str = sys.byteorder,
        position: int = 0,
    ) -> None:
        if byteorder not in ('little', 'big'):
            raise ValueError(f'Unknown byte order `{byteorder}`.')
        self.__buffer = buffer
        self.__byte_order_format = '<' if byteorder == 'little' else '>'
        self.__position = position

    def values(self, format: str) -> tuple:
        """Read several fields described by the ``struct`` format string.

        The format must not include the byte order prefix, it is added by the
        reader. Fields are not aligned, only explicit padding is skipped."""
        real_fmt = self.__byte_order_format + format
        size = struct.calcsize(real_fmt)
        if self.remaining < size:
            raise TruncatedError(self.__position, size, self.remaining)
        result = struct.unpack_from(real_fmt, self.__buffer, self.__position)
        self.__position += size
        return result

    def skip(self, size: int) -> None:
        """Consume padding bytes."""
        if self.remaining < size:
            raise TruncatedError(self.__position, size, self.remaining)
        self.__position += size

    def uint1(self) -> int:
        return self.values('B')[0]

    def uint2(self) -> int:
        return self.values('H')[0]

    def uint4(self) -> int:
        return self.values('L')[0]

    def uint8(self) -> int:
        return self.values('Q')[0]

    def sint4(self) -> int:
        return self.values('l')[0]

    @property
    def current_position(self) -> int:
        """Return current position in the buffer."""
        return self.__position

    @property
    def remaining(self) -> int:
        return len(self.__buffer) - self.__position

    @property
    def at_eof(self) -> bool:
        return self.remaining <= 0


#
# Fixed-size records.
#
@dataclasses.dataclass(frozen=True)
class Header:
    version: int
    reserved0: int
    reserved1: int

    @staticmethod
    def read(reader: StreamReader) -> 'Header':
        """Read the stackmap header.

        The version is checked before anything else is read: the layout of
        the rest of the header is unknown for other versions."""
        version = reader.uint1()
        if version != SUPPORTED_VERSION:
            raise UnsupportedVersionError(version)
        reserved0, reserved1 = reader.values('BH')
        if reserved0 != 0 or reserved1 != 0:
            raise MalformedError('Reserved fields of the stackmap header are not zero.')
        return Header(version, reserved0, reserved1)


@dataclasses.dataclass(frozen=True)
class FunctionRecord:
    function_address: int
    """VMA of the function. For PIC binaries it is relocated at load time."""
    stack_size: int
    """Amount of bytes the function allocates on the stack."""
    record_count: int
    """Amount of patch point records that belong to this function."""

    @staticmethod
    def read(reader: StreamReader) -> 'FunctionRecord':
        return FunctionRecord(*reader.values('QQQ'))


class LocationType(Enum):
    INVALID = 0
    REGISTER = 1  # Value is in the register.
    DIRECT = 2  # Value is the address register + offset.
    INDIRECT = 3  # Value is stored at [register + offset].
    CONSTANT = 4  # Value is offset_or_constant itself.
    CONST_INDEX = 5  # Value is large_constants[offset_or_constant].

    @classmethod
    def decode(cls, value: int) -> 'LocationType':
        """Convert a raw byte from the section to a location type.

        ``INVALID`` is a valid enum value, but it is never emitted by the
        compiler, so it is rejected as well."""
        try:
            result = cls(value)
        except ValueError:
            raise InvalidLocationTypeError(value) from None
        if result == cls.INVALID:
            raise InvalidLocationTypeError(value)
        return result


@dataclasses.dataclass(frozen=True)
class Location:
    loc_type: LocationType
    reserved0: int
    loc_size: int
    """Size of the value in bytes."""
    dwarf_regnum: int
    reserved1: int
    offset_or_constant: int
    """Interpretation depends on the ``loc_type``."""

    @staticmethod
    def read(reader: StreamReader) -> 'Location':
        loc_type = LocationType.decode(reader.uint1())
        return Location(loc_type, *reader.values('BHHHl'))


@dataclasses.dataclass(frozen=True)
class LiveOut:
    """A register that must stay valid across the patch point."""

    dwarf_regnum: int
    reserved0: int
    size: int

    @staticmethod
    def read(reader: StreamReader) -> 'LiveOut':
        dwarf_regnum, reserved0, size = reader.values('HBB')
        if reserved0 != 0:
            raise MalformedError(f'Reserved field of the live-out for R#{dwarf_regnum} is not zero.')
        return LiveOut(dwarf_regnum, reserved0, size)


#
# Variable-size records.
#
@dataclasses.dataclass(frozen=True)
class PatchPointRecord:
    patch_point_id: int
    """An ID assigned to the patch point during compilation."""
    instruction_offset: int
    """Offset from the start of the owning function."""
    reserved0: int
    locations: Sequence[Location]
    live_outs: Sequence[LiveOut]

    @property
    def num_locations(self) -> int:
        return len(self.locations)

    @property
    def num_live_outs(self) -> int:
        return len(self.live_outs)

    @staticmethod
    def read(
        reader: StreamReader,
        stream_offset: int,
    ) -> tuple['PatchPointRecord', int]:
        """Read one record.

        Records are padded to 8 bytes twice: after the locations array and
        after the live-outs array. Whether the padding is present is decided
        by the running offset from the start of the stackmap, which is passed
        in ``stream_offset``. Returns the record and an updated offset for the
        next record."""
        start = reader.current_position
        patch_point_id, instruction_offset, reserved0, num_locations = reader.values('QLHH')
        locations = tuple(Location.read(reader) for _ in range(num_locations))
        stream_offset += reader.current_position - start

        start = reader.current_position
        if stream_offset % 8 != 0:
            reader.skip(4)
        reader.skip(2)
        num_live_outs = reader.uint2()
        live_outs = tuple(LiveOut.read(reader) for _ in range(num_live_outs))
        # The offset is updated with the first conditional padding as well,
        # since `start` was taken before it.
        stream_offset += reader.current_position - start

        if stream_offset % 8 != 0:
            reader.skip(4)
            stream_offset += 4

        record = PatchPointRecord(patch_point_id, instruction_offset, reserved0, locations, live_outs)
        return record, stream_offset


@dataclasses.dataclass(frozen=True)
class StackMap:
    header: Header
    num_functions: int
    num_constants: int
    num_records: int
    stk_size_records: Sequence[FunctionRecord]
    """One record for each function that contains patch points."""
    large_constants: Sequence[int]
    """Constants referenced by ``CONST_INDEX`` locations."""
    stk_map_records: Sequence[PatchPointRecord]
    """One record for each patch point."""

    @property
    def version(self) -> int:
        return self.header.version

    @staticmethod
    def read(reader: StreamReader) -> 'StackMap':
        """Read one stackmap starting at the current position of the reader.

        A section can contain several stackmaps if several object files were
        linked together, so there might be data left after this one."""
        start = reader.current_position
        header = Header.read(reader)
        num_functions, num_constants, num_records = reader.values('LLL')
        functions = tuple(FunctionRecord.read(reader) for _ in range(num_functions))
        constants = tuple(reader.uint8() for _ in range(num_constants))

        stream_offset = reader.current_position - start
        records: list[PatchPointRecord] = []
        for _ in range(num_records):
            record, stream_offset = PatchPointRecord.read(reader, stream_offset)
            records.append(record)

        return StackMap(
            header,
            num_functions,
            num_constants,
            num_records,
            functions,
            constants,
            tuple(records),
        )

    def constant(self, location: Location) -> int:
        """Return the large constant referenced by a ``CONST_INDEX`` location."""
        if location.loc_type != LocationType.CONST_INDEX:
            raise ValueError(f'Location of type {location.loc_type.name} does not reference a constant.')
        index = location.offset_or_constant
        if not 0 <= index < len(self.large_constants):
            raise MalformedError(
                f'Constant index {index} is out of range, there are {len(self.large_constants)} constants.'
            )
        return self.large_constants[index]

    def records_by_function(self) -> Iterator[tuple[FunctionRecord, Sequence[PatchPointRecord]]]:
        """Group patch point records by the function they belong to.

        Records of the functions are stored consecutively, in the order of
        function records, each function owning ``record_count`` of them."""
        start = 0
        for function in self.stk_size_records:
            end = start + function.record_count
            if end > len(self.stk_map_records):
                raise MalformedError(
                    f'Function at {function.function_address:#x} claims records {start}..{end}, '
                    f'but there are only {len(self.stk_map_records)} records.'
                )
            yield function, self.stk_map_records[start:end]
            start = end


def decode_all(
    buffer: bytes | bytearray,
    byteorder: str = sys.byteorder,
) -> list[StackMap]:
    """Read all stackmaps stored one after another in the buffer.

    The section content must be in the byte order of the machine that produced
    it, which by default is assumed to be the same as of this machine."""
    reader = StreamReader(buffer, byteorder)
    result: list[StackMap] = []
    while not reader.at_eof:
        # `read` raises on failure, so this loop always makes progress.
        result.append(StackMap.read(reader))
        log.debug('Decoded stackmap #%d, ends at offset %#x.', len(result), reader.current_position)
    return result


def decode(
    buffer: bytes | bytearray,
    byteorder: str = sys.byteorder,
) -> StackMap:
    """Read exactly one stackmap from the buffer."""
    reader = StreamReader(buffer, byteorder)
    stack_map = StackMap.read(reader)
    if not reader.at_eof:
        raise MalformedError(f'Unexpected {reader.remaining} bytes after the end of the stackmap.')
    return stack_map

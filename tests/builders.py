# Copyright (c) 2022 Anton Kolesov
# SPDX-License-Identifier: MIT

"""Helpers to produce stackmap sections and ELF files for tests."""

import struct
import sys
from typing import Iterable, Sequence

from stackmap import FunctionRecord, Header, LiveOut, Location, LocationType, PatchPointRecord, StackMap

# File offset of the stackmap section in files produced by `build_elf`.
STACKMAP_OFFSET = 0x40

EM_X86_64 = 62
EM_AARCH64 = 183
R_X86_64_64 = 1
R_X86_64_GLOB_DAT = 6
R_X86_64_RELATIVE = 8
R_AARCH64_RELATIVE = 1027
SHT_PROGBITS = 1
SHT_NOBITS = 8


def location(
    loc_type: LocationType,
    dwarf_regnum: int = 0,
    offset_or_constant: int = 0,
    loc_size: int = 8,
) -> Location:
    return Location(loc_type, 0, loc_size, dwarf_regnum, 0, offset_or_constant)


def record(
    patch_point_id: int,
    instruction_offset: int,
    locations: Iterable[Location] = (),
    live_outs: Iterable[tuple[int, int]] = (),
) -> PatchPointRecord:
    return PatchPointRecord(
        patch_point_id,
        instruction_offset,
        0,
        tuple(locations),
        tuple(LiveOut(regnum, 0, size) for regnum, size in live_outs),
    )


def stack_map(
    functions: Iterable[tuple[int, int, int]] = (),
    constants: Iterable[int] = (),
    records: Iterable[PatchPointRecord] = (),
) -> StackMap:
    functions = tuple(FunctionRecord(*f) for f in functions)
    constants = tuple(constants)
    records = tuple(records)
    return StackMap(
        Header(3, 0, 0),
        len(functions),
        len(constants),
        len(records),
        functions,
        constants,
        records,
    )


def encode(sm: StackMap, byteorder: str = sys.byteorder) -> bytes:
    """Encode the stackmap with the padding the compiler emits."""
    bo = '<' if byteorder == 'little' else '>'
    out = bytearray()

    def put(format: str, *values: int) -> None:
        out.extend(struct.pack(bo + format, *values))

    def align() -> None:
        if len(out) % 8 != 0:
            out.extend(bytes(4))

    put('BBH', sm.header.version, sm.header.reserved0, sm.header.reserved1)
    put('LLL', sm.num_functions, sm.num_constants, sm.num_records)
    for f in sm.stk_size_records:
        put('QQQ', f.function_address, f.stack_size, f.record_count)
    for c in sm.large_constants:
        put('Q', c)
    for r in sm.stk_map_records:
        put('QLHH', r.patch_point_id, r.instruction_offset, r.reserved0, len(r.locations))
        for loc in r.locations:
            put(
                'BBHHHl',
                loc.loc_type.value,
                loc.reserved0,
                loc.loc_size,
                loc.dwarf_regnum,
                loc.reserved1,
                loc.offset_or_constant,
            )
        align()
        put('H', 0)
        put('H', len(r.live_outs))
        for lo in r.live_outs:
            put('HBB', lo.dwarf_regnum, lo.reserved0, lo.size)
        align()
    return bytes(out)


def _align8(data: bytearray) -> None:
    data.extend(bytes(-len(data) % 8))


def build_elf(
    section_content: bytes,
    relocations: Sequence[tuple[int, int, int, int]] = (),
    symbols: Sequence[tuple[str, int]] = (),
    machine: int = EM_X86_64,
    section_name: str = '.llvm_stackmaps',
    section_type: int = SHT_PROGBITS,
) -> bytes:
    """Produce a minimal little-endian ELF64 shared object.

    The stackmap section is placed at `STACKMAP_OFFSET`, and every section
    has its address equal to its file offset.

    :param relocations: Tuples of (file offset, type, symbol index, addend)
        for the .rela.dyn section.
    :param symbols: Tuples of (name, value) for the .dynsym section, the null
        symbol is added automatically."""
    names = [section_name, '.dynstr', '.dynsym', '.rela.dyn', '.shstrtab']
    shstrtab = bytearray(b'\x00')
    name_offsets = []
    for n in names:
        name_offsets.append(len(shstrtab))
        shstrtab.extend(n.encode('ascii') + b'\x00')

    dynstr = bytearray(b'\x00')
    dynsym = bytearray(bytes(24))
    for name, value in symbols:
        dynsym.extend(struct.pack('<LBBHQQ', len(dynstr), 0x12, 0, 1, value, 0))
        dynstr.extend(name.encode('ascii') + b'\x00')

    rela = bytearray()
    for offset, rtype, symbol_index, addend in relocations:
        rela.extend(struct.pack('<QQq', offset, (symbol_index << 32) | rtype, addend))

    data = bytearray(64)
    # (type, flags, link, alignment, entry size, content)
    sections = [
        (section_type, 0x2, 0, 8, 0, section_content),
        (3, 0x2, 0, 1, 0, bytes(dynstr)),
        (11, 0x2, 2, 8, 24, bytes(dynsym)),
        (4, 0x2, 3, 8, 24, bytes(rela)),
        (3, 0, 0, 1, 0, bytes(shstrtab)),
    ]
    offsets = []
    for _, _, _, _, _, content in sections:
        _align8(data)
        offsets.append(len(data))
        data.extend(content)
    assert offsets[0] == STACKMAP_OFFSET

    _align8(data)
    section_header_offset = len(data)
    data.extend(bytes(64))  # Null section.
    for name_offset, offset, (stype, flags, link, alignment, entry_size, content) in zip(
        name_offsets, offsets, sections, strict=True,
    ):
        data.extend(struct.pack(
            '<LLQQQQLLQQ',
            name_offset, stype, flags, offset, offset, len(content), link, 0, alignment, entry_size,
        ))

    data[0:64] = struct.pack(
        '<4sBBBBB7xHHLQQQLHHHHHH',
        b'\x7fELF', 2, 1, 1, 0, 0,
        3, machine, 1,
        0, 0, section_header_offset,
        0, 64, 56, 0, 64, len(sections) + 1, len(sections),
    )
    return bytes(data)

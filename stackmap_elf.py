# Copyright (c) 2022 Anton Kolesov
# SPDX-License-Identifier: MIT

"""Reading of LLVM stackmaps from ELF files.

In position independent binaries function addresses in the stackmap section
are subject to dynamic relocations, so the raw section content holds zeroes
or stale values in their place. Functions here apply those relocations to a
private copy of the section as the loader would do with a zero load bias."""

__all__ = [
    'STACKMAP_SECTION_NAME',
    'locate_section',
    'relocate',
    'has_stackmap',
    'load',
]

from enum import IntEnum
from io import BytesIO
import logging
import os
from pathlib import Path
import struct

import elf
from stackmap import decode_all, MalformedError, SectionNotFoundError, StackMap, StackMapIOError

log = logging.getLogger(__name__)

STACKMAP_SECTION_NAME = '.llvm_stackmaps'

# Errors that the ELF reader raises on corrupt input.
_ELF_ERRORS = (ValueError, IndexError, struct.error)

# Relocation types that can target a stackmap section, per machine: the first
# one stores the addend (load-bias relative), the second one stores the symbol
# value (absolute address).
_RELOCATION_KINDS: dict[elf.ElfMachineType, tuple[int, int]] = {
    elf.ElfMachineType.EM_X86_64: (
        elf.RelocationTypeAmd64.R_X86_64_RELATIVE,
        elf.RelocationTypeAmd64.R_X86_64_64,
    ),
    elf.ElfMachineType.EM_AARCH64: (
        elf.RelocationTypeAarch64.R_AARCH64_RELATIVE,
        elf.RelocationTypeAarch64.R_AARCH64_ABS64,
    ),
}

_RELOCATION_TYPE_NAMES: dict[elf.ElfMachineType, type[IntEnum]] = {
    elf.ElfMachineType.EM_X86_64: elf.RelocationTypeAmd64,
    elf.ElfMachineType.EM_AARCH64: elf.RelocationTypeAarch64,
}


def _relocation_type_name(machine: elf.ElfMachineType, rtype: int) -> str:
    names = _RELOCATION_TYPE_NAMES.get(machine)
    if names is None:
        return str(rtype)
    try:
        return names(rtype).name
    except ValueError:
        return str(rtype)


def locate_section(elf_obj: elf.Elf, name: str) -> range | None:
    """Return the range of file offsets of the first section with the name.

    A section that takes no space in the file, like ``.bss``, is treated as
    missing."""
    section = elf_obj.section_by_name(name)
    if section is None:
        return None
    log.debug('Found section %s at offset %#x, size %#x.', name, section.header.offset, section.header.size)
    return section.header.file_range


def relocate(
    elf_obj: elf.Elf,
    section_range: range,
    section_bytes: bytearray,
) -> None:
    """Apply dynamic relocations that target the section, in place.

    :param section_range: The file offsets of the section.
    :param section_bytes: A copy of the section content, it is modified by
        this function."""
    df = elf_obj.data_format
    pointer_size = elf_obj.elf_class.address_size
    relative, absolute = _RELOCATION_KINDS.get(elf_obj.machine, (None, None))

    for section in elf_obj.dynamic_relocation_sections():
        for rela, symbol in elf_obj.relocations(section.number):
            if rela.offset not in section_range:
                continue

            type_name = _relocation_type_name(elf_obj.machine, rela.type)
            offset = rela.offset - section_range.start
            if offset + pointer_size > len(section_bytes):
                raise MalformedError(
                    f'Relocation {type_name} at {rela.offset:#x} runs past the end of the section.'
                )

            if rela.type == relative:
                value = rela.addend
            elif rela.type == absolute:
                if symbol is None:
                    raise MalformedError(
                        f'Relocation {type_name} at {rela.offset:#x} refers to a missing '
                        f'dynamic symbol #{rela.symbol_index}.'
                    )
                value = symbol.entry.value
            else:
                raise MalformedError(
                    f'Unsupported relocation {type_name} at {rela.offset:#x} in the stackmap section '
                    f'for machine {elf_obj.machine.name}.'
                )

            log.debug('Applying %s at section offset %#x: %#x.', type_name, offset, value)
            section_bytes[offset:offset + pointer_size] = df.pack_pointer(value)


def has_stackmap(path: str | os.PathLike) -> bool:
    """Check whether the file is an ELF with a stackmap section.

    Never raises: files that don't exist or can't be parsed don't have a
    stackmap."""
    try:
        with open(path, 'rb') as stream:
            return locate_section(elf.Elf(stream), STACKMAP_SECTION_NAME) is not None
    except (OSError, *_ELF_ERRORS) as e:
        log.debug('%s is not an ELF file with a stackmap: %s', path, e)
        return False


def load(
    path: str | os.PathLike,
    section_name: str = STACKMAP_SECTION_NAME,
) -> list[StackMap]:
    """Read all the stackmaps stored in the ELF file."""
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise StackMapIOError(e.errno, e.strerror, e.filename) from e

    try:
        elf_obj = elf.Elf(BytesIO(data))
        section_range = locate_section(elf_obj, section_name)
        if section_range is None:
            raise SectionNotFoundError(section_name)
        section_bytes = bytearray(elf_obj.read(section_range.start, section_range.stop - section_range.start))
        relocate(elf_obj, section_range, section_bytes)
    except _ELF_ERRORS as e:
        raise MalformedError(f'Error while parsing ELF: {e}') from e

    return decode_all(section_bytes, elf_obj.data_format.byteorder)

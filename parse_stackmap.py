#!/usr/bin/env python

# Copyright (c) 2022 Anton Kolesov
# SPDX-License-Identifier: MIT

from argparse import ArgumentParser
import dataclasses
from enum import Enum
import json
import logging
from pathlib import Path
import sys
from typing import Any, cast, Iterator, Sequence, TextIO

import stackmap
import stackmap_elf

log = logging.getLogger(__name__)


class Arguments:
    input: Path
    raw: bool
    section: str
    byte_order: str
    json: bool
    verbose: bool


def create_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog='parse-stackmap',
        description="""Print the LLVM stackmap section of an ELF file.
            Similar to llvm-readobj --stackmap.""",
    )
    parser.add_argument(
        '--raw',
        help='The input is the content of the stackmap section, not an ELF file',
        action='store_true',
    )
    parser.add_argument(
        '--section', '-j',
        metavar='NAME',
        help=f'Name of the stackmap section (default: {stackmap_elf.STACKMAP_SECTION_NAME})',
        default=stackmap_elf.STACKMAP_SECTION_NAME,
    )
    parser.add_argument(
        '--byte-order',
        help='Byte order of the raw section content (default: native)',
        choices=('little', 'big', 'native'),
        default='native',
    )
    parser.add_argument(
        '--json',
        help='Print the stackmaps as JSON',
        action='store_true',
    )
    parser.add_argument(
        '--verbose', '-v',
        help='Print debug messages',
        action='store_true',
    )
    parser.add_argument(
        'input',
        type=Path,
        help='input file path',
    )
    return parser


def format_location(stack_map: stackmap.StackMap, location: stackmap.Location) -> str:
    regnum = location.dwarf_regnum
    offset = location.offset_or_constant
    match location.loc_type:
        case stackmap.LocationType.REGISTER:
            return f'Register R#{regnum}'
        case stackmap.LocationType.DIRECT:
            return f'Direct R#{regnum} + {offset}'
        case stackmap.LocationType.INDIRECT:
            return f'Indirect [ R#{regnum} + {offset}]'
        case stackmap.LocationType.CONSTANT:
            return f'Constant {offset}'
        case stackmap.LocationType.CONST_INDEX:
            try:
                value = str(stack_map.constant(location))
            except stackmap.MalformedError:
                value = 'invalid'
            return f'ConstantIndex #{offset} ({value})'
    return f'Invalid location type {location.loc_type.value}'


def format_stackmap(stack_map: stackmap.StackMap) -> Iterator[str]:
    """Format the stackmap in the notation of llvm-readobj --stackmap."""
    yield f'LLVM StackMap Version: {stack_map.version}'
    yield f'Num Functions: {stack_map.num_functions}'
    for f in stack_map.stk_size_records:
        yield (
            f'  Function address: {f.function_address}, stack size: {f.stack_size}, '
            f'callsite record count: {f.record_count}'
        )
    yield f'Num Constants: {stack_map.num_constants}'
    for nr, c in enumerate(stack_map.large_constants, start=1):
        yield f'  #{nr}: {c}'
    yield f'Num Records: {stack_map.num_records}'
    for r in stack_map.stk_map_records:
        yield f'  Record ID: {r.patch_point_id}, instruction offset: {r.instruction_offset}'
        yield f'    {r.num_locations} locations:'
        for nr, loc in enumerate(r.locations, start=1):
            yield f'      #{nr}: {format_location(stack_map, loc)}, size: {loc.loc_size}'
        live_outs = ''.join(f'R#{lo.dwarf_regnum} ({lo.size}-bytes) ' for lo in r.live_outs)
        yield f'    {r.num_live_outs} live-outs: [ {live_outs}]'


def print_stackmap(stack_map: stackmap.StackMap, out: TextIO | None = None) -> None:
    # `print` writes to the current sys.stdout when `out` is None.
    for line in format_stackmap(stack_map):
        print(line, file=out)


def _as_dict_factory(items: list[tuple[str, Any]]) -> dict[str, Any]:
    return {k: (v.name if isinstance(v, Enum) else v) for k, v in items}


def stackmap_as_dict(stack_map: stackmap.StackMap) -> dict[str, Any]:
    """Convert the stackmap into a dictionary that can be serialized to JSON."""
    return dataclasses.asdict(stack_map, dict_factory=_as_dict_factory)


def read_stackmaps(args: Arguments) -> Sequence[stackmap.StackMap]:
    if not args.raw:
        return stackmap_elf.load(args.input, args.section)
    try:
        data = args.input.read_bytes()
    except OSError as e:
        raise stackmap.StackMapIOError(e.errno, e.strerror, e.filename) from e
    byteorder = sys.byteorder if args.byte_order == 'native' else args.byte_order
    return stackmap.decode_all(data, byteorder)


def main(argv: Sequence[str] | None = None) -> int:
    parser = create_parser()
    args = cast(Arguments, parser.parse_args(argv))
    logging.basicConfig(
        format='%(levelname)s: %(name)s: %(message)s',
        level=logging.DEBUG if args.verbose else logging.WARNING,
    )

    try:
        stack_maps = read_stackmaps(args)
    except stackmap.StackMapError as e:
        print(f'{parser.prog}: error: {e}', file=sys.stderr)
        return 1
    log.debug('Read %d stackmaps from %s.', len(stack_maps), args.input)

    if args.json:
        json.dump([stackmap_as_dict(sm) for sm in stack_maps], sys.stdout, indent=2)
        print()
        return 0

    for nr, sm in enumerate(stack_maps):
        if nr:
            print()
        print_stackmap(sm)
    return 0


if __name__ == "__main__":
    sys.exit(main())

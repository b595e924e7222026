"""Resolving symbols from the kallsyms tables of a raw kernel image."""

from __future__ import annotations

import logging
import sys
from typing import Iterator, Optional, TextIO, Tuple

from kite_patcher.common import uint_unpack
from kite_patcher.kallsyms_scan import (
    ELF64_KERNEL_MIN_VA,
    CurrentType,
    KallsymInfo,
    KallsymsError,
    decompress_symbol_name,
    find_approx_addresses_or_offsets,
    find_linux_banner,
    find_markers,
    find_names,
    find_num_syms,
    find_token_index,
    find_token_table,
    try_find_arm64_relo_table,
)

logger = logging.getLogger(__name__)

_SP_EL0_SYSREG = 0xC208
_VECTORS_ALIGN_MASK = (1 << 11) - 1
_VECTORS_MIN_SIZE = 0x600
_BANNER_SEARCH_SPAN = 4096


def _s32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value & 0x80000000 else value


def _read_u(img, pos: int, size: int, is_be: bool) -> Optional[int]:
    try:
        return uint_unpack(img, pos, size, is_be)
    except ValueError:
        return None


def _table_elem_size(info: KallsymInfo) -> int:
    return info.offsets_elem_size() if info.has_relative_base else info.addresses_elem_size()


def arm64_verify_pid_vnr(info: KallsymInfo, img, offset: int) -> bool:
    """Check the first instructions of pid_vnr for an access to the current task."""
    for i in range(6):
        insn = _read_u(img, offset + i * 4, 4, False)
        if insn is None:
            return False
        enc = (insn >> 25) & 0xF
        if enc == 0xD:
            sysreg = ((insn >> 5) & 0xFFFF) | ((insn >> 10) & 0x7C00)
            if sysreg == _SP_EL0_SYSREG:
                logger.info("pid_vnr verified sp_el0, insn: 0x%x", insn)
                info.current_type = CurrentType.SP_EL0
                return True
        elif enc == 0x2:
            if insn & 0x1F == 31:
                logger.info("pid_vnr verified sp, insn: 0x%x", insn)
                info.current_type = CurrentType.SP
                return True
    return False


def _names_until_markers(info: KallsymInfo, img) -> Iterator[Tuple[int, str]]:
    pos = info.names_offset
    index = 0
    while pos < info.markers_offset:
        _, name, pos = decompress_symbol_name(info, img, pos)
        yield index, name
        index += 1


def _correct_by_banner(info: KallsymInfo, img) -> int:
    index = next(
        (i for i, name in _names_until_markers(info, img) if name == "linux_banner"),
        None,
    )
    if index is None:
        raise KallsymsError("no linux_banner in names table")
    logger.info("names table linux_banner index: 0x%08x", index)

    info.symbol_banner_idx = -1
    elem = _table_elem_size(info)
    found: Optional[int] = None
    for banner_idx, target in enumerate(info.linux_banner_offsets):
        start = info.approx_offset
        for pos in range(start, start + _BANNER_SEARCH_SPAN + elem, elem):
            base = _read_u(img, pos, elem, info.is_be)
            value = _read_u(img, pos + index * elem, elem, info.is_be)
            if base is None or value is None:
                break
            if _s32(value - base) == target:
                found = pos
                break
        if found is not None:
            info.symbol_banner_idx = banner_idx
            logger.info("linux_banner index: %d", banner_idx)
            break
    if found is None:
        raise KallsymsError("correct address or offsets error")

    if info.has_relative_base:
        info.offsets_offset = found
        logger.info("kallsyms_offsets offset: 0x%08x", found)
    else:
        info.addresses_offset = found
        info.kernel_base = uint_unpack(img, found, elem, info.is_be)
        logger.info("kallsyms_addresses offset: 0x%08x", found)
        logger.info("kernel base address: 0x%x", info.kernel_base)

    try:
        pid_vnr_offset: Optional[int] = get_symbol_offset(info, img, "pid_vnr")
    except KallsymsError:
        pid_vnr_offset = None
    if pid_vnr_offset is None or not arm64_verify_pid_vnr(info, img, pid_vnr_offset):
        logger.warning("pid_vnr verification failed")
    return found


def _correct_by_vectors(info: KallsymInfo, img) -> int:
    vector_index = 0
    pid_vnr_index = 0
    located = False
    for index, name in _names_until_markers(info, img):
        if not vector_index and name == "vectors":
            vector_index = index
        elif not pid_vnr_index and name == "pid_vnr":
            pid_vnr_index = index
        if vector_index and pid_vnr_index:
            logger.info("names table vector index: 0x%08x, pid_vnr index: 0x%08x",
                        vector_index, pid_vnr_index)
            located = True
            break
    if not located:
        raise KallsymsError("no verify symbol in names table")

    elem = _table_elem_size(info)
    bases = [0]
    if not info.has_relative_base:
        bases = [uint_unpack(img, info.approx_offset, elem, info.is_be)]
        if info.kernel_base:
            bases.append(info.kernel_base)
        if info.kernel_base != ELF64_KERNEL_MIN_VA:
            bases.append(ELF64_KERNEL_MIN_VA)

    search_start = info.approx_offset
    search_end = info.approx_end - pid_vnr_index * elem
    found: Optional[int] = None
    for base in bases:
        for pos in range(search_start, search_end, elem):
            vec = _read_u(img, pos + vector_index * elem, elem, info.is_be)
            vec_next = _read_u(img, pos + vector_index * elem + elem, elem, info.is_be)
            if vec is None or vec_next is None:
                continue
            vector_offset = _s32(vec - base)
            vector_next_offset = _s32(vec_next - base)
            if (vector_next_offset - vector_offset >= _VECTORS_MIN_SIZE
                    and vector_offset & _VECTORS_ALIGN_MASK == 0):
                pid = _read_u(img, pos + pid_vnr_index * elem, elem, info.is_be)
                if pid is None:
                    continue
                pid_vnr_offset = _s32(pid - base)
                if arm64_verify_pid_vnr(info, img, pid_vnr_offset):
                    logger.info("vectors index: %d, offset: 0x%08x", vector_index, vector_offset)
                    logger.info("pid_vnr offset: 0x%08x", pid_vnr_offset)
                    info.kernel_base = base
                    found = pos
                    break
        if found is not None:
            break
    if found is None:
        raise KallsymsError("can't locate vectors")

    if info.has_relative_base:
        info.offsets_offset = found
        logger.info("kallsyms_offsets offset: 0x%08x", found)
    else:
        info.addresses_offset = found
        logger.info("kallsyms_addresses offset: 0x%08x", found)
        logger.info("kernel base address: 0x%x", info.kernel_base)
    return found


def correct_addresses_or_offsets(info: KallsymInfo, img) -> int:
    """Pin down the exact start of the address or offset table; return it."""
    try:
        pos = _correct_by_banner(info, img)
    except KallsymsError:
        info.is_kallsyms_all_yes = False
        logger.warning("no linux_banner, CONFIG_KALLSYMS_ALL=n")
    else:
        info.is_kallsyms_all_yes = True
        return pos
    return _correct_by_vectors(info, img)


_RELO_STEPS = (
    try_find_arm64_relo_table,
    find_markers,
    find_approx_addresses_or_offsets,
    find_names,
    find_num_syms,
    correct_addresses_or_offsets,
)


def _attempt(info: KallsymInfo, img: bytearray) -> Optional[KallsymsError]:
    try:
        for step in _RELO_STEPS:
            step(info, img)
    except KallsymsError as exc:
        return exc
    except ValueError as exc:
        return KallsymsError(str(exc))
    return None


def analyze_kallsym_info(img, is_64: bool = True) -> KallsymInfo:
    """Locate every kallsyms table of an ARM64 image.

    A ``bytearray`` image is updated in place with the relocations applied.
    """
    info = KallsymInfo(
        is_64=is_64,
        asm_long_size=4,
        asm_ptr_size=8 if is_64 else 4,
        try_relo=True,
    )
    find_linux_banner(info, img)
    find_token_table(info, img)
    find_token_index(info, img)

    working = bytearray(img)
    error = _attempt(info, working)
    if error is not None and not info.try_relo:
        working = bytearray(img)
        error = _attempt(info, working)
    if error is not None and info.kernel_base != ELF64_KERNEL_MIN_VA:
        info.kernel_base = ELF64_KERNEL_MIN_VA
        working = bytearray(img)
        error = _attempt(info, working)

    if isinstance(img, bytearray):
        img[:] = working
    if error is not None:
        raise error
    return info


def get_symbol_index_offset(info: KallsymInfo, img, index: int) -> int:
    """Return the image offset of the symbol with the given table index."""
    if info.has_relative_base:
        elem = info.offsets_elem_size()
        pos = info.offsets_offset
    else:
        elem = info.addresses_elem_size()
        pos = info.addresses_offset
    try:
        target = uint_unpack(img, pos + index * elem, elem, info.is_be)
    except ValueError as exc:
        raise KallsymsError(f"symbol index {index} lies outside the image") from exc
    if info.has_relative_base:
        return _s32(target)
    return _s32(target - info.kernel_base)


def _iter_names(info: KallsymInfo, img) -> Iterator[Tuple[int, str, str]]:
    pos = info.names_offset
    for index in range(info.num_syms):
        sym_type, name, pos = decompress_symbol_name(info, img, pos)
        yield index, sym_type, name


def iter_symbols(info: KallsymInfo, img) -> Iterator[Tuple[int, str, str, int]]:
    """Yield (index, type, name, offset) for every symbol."""
    for index, sym_type, name in _iter_names(info, img):
        yield index, sym_type, name, get_symbol_index_offset(info, img, index)


def get_symbol_offset(info: KallsymInfo, img, symbol: str) -> int:
    """Return the image offset of ``symbol``."""
    for index, sym_type, name in _iter_names(info, img):
        if name == symbol:
            offset = get_symbol_index_offset(info, img, index)
            logger.info("%s: type: %s, offset: 0x%08x", symbol, sym_type, offset)
            return offset
    raise KallsymsError(f"no symbol: {symbol}")


def get_symbol_offset_and_size(info: KallsymInfo, img, symbol: str) -> Tuple[int, int]:
    """Return the offset of ``symbol`` and the distance to the next distinct symbol."""
    for index, sym_type, name in _iter_names(info, img):
        if name != symbol:
            continue
        offset = get_symbol_index_offset(info, img, index)
        size = 0
        for j in range(index + 1, info.num_syms):
            next_offset = get_symbol_index_offset(info, img, j)
            if next_offset != offset:
                size = next_offset - offset
                break
        logger.info("%s: type: %s, offset: 0x%08x, size: 0x%x", symbol, sym_type, offset, size)
        return offset, size
    raise KallsymsError(f"no symbol: {symbol}")


def dump_all_symbols(info: KallsymInfo, img, out: Optional[TextIO] = None) -> int:
    """Write one "offset type name" line per symbol; return how many were written."""
    stream = sys.stdout if out is None else out
    count = 0
    for _, sym_type, name, offset in iter_symbols(info, img):
        stream.write(f"0x{offset & 0xFFFFFFFF:08x} {sym_type} {name}\n")
        count += 1
    return count
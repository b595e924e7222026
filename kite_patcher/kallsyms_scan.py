"""Locating the compressed kallsyms tables inside a raw kernel image."""

from __future__ import annotations

import logging
import re
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional, Tuple

from kite_patcher.common import align_ceil, int_unpack, uint_unpack

logger = logging.getLogger(__name__)

KSYM_TOKEN_NUMS = 256
KSYM_SYMBOL_LEN = 512
KSYM_MIN_NEQ_SYMS = 25600
KSYM_MIN_MARKER = KSYM_MIN_NEQ_SYMS // 256
KSYM_FIND_NAMES_USED_MARKER = 5
ELF64_KERNEL_MIN_VA = 0xFFFFFF8008080000
ELF64_KERNEL_MAX_VA = 0xFFFFFFFFFFFFFFFF
ARM64_RELO_MIN_NUM = 4000
NSYMS_MAX_GAP = 10

_BANNER_PREFIX = b"Linux version "
_U64_MASK = 0xFFFFFFFFFFFFFFFF


class KallsymsError(Exception):
    """Raised when a kallsyms table cannot be located or decoded."""


class CurrentType(IntEnum):
    """How the kernel finds the current task."""

    UNKNOWN = 0
    SP_EL0 = 1
    SP = 2


@dataclass
class KallsymInfo:
    """Everything learned so far about the kallsyms layout of an image."""

    is_64: bool = True
    is_be: bool = False
    asm_long_size: int = 4
    asm_ptr_size: int = 8
    try_relo: bool = True
    relo_applied: bool = False
    kernel_base: int = 0
    version_major: int = 0
    version_minor: int = 0
    version_patch: int = 0
    linux_banner_offsets: List[int] = field(default_factory=list)
    symbol_banner_idx: int = -1
    token_table_offset: int = 0
    token_table: List[bytes] = field(default_factory=list)
    token_index_offset: int = 0
    markers_offset: int = 0
    marker_num: int = 0
    markers_elem_size_found: int = 0
    names_offset: int = 0
    num_syms: int = 0
    num_syms_offset: int = 0
    approx_offset: int = 0
    approx_end: int = 0
    approx_num: int = 0
    has_relative_base: bool = False
    addresses_offset: int = 0
    offsets_offset: int = 0
    is_kallsyms_all_yes: bool = False
    current_type: CurrentType = CurrentType.UNKNOWN

    def _old_layout(self) -> bool:
        return self.version_major < 4 or (self.version_major == 4 and self.version_minor < 20)

    def markers_elem_size(self) -> int:
        """Width of one kallsyms_markers entry."""
        if self.markers_elem_size_found:
            return self.markers_elem_size_found
        return self.asm_ptr_size if self._old_layout() else self.asm_long_size

    def addresses_elem_size(self) -> int:
        """Width of one kallsyms_addresses entry."""
        return self.asm_ptr_size

    def offsets_elem_size(self) -> int:
        """Width of one kallsyms_offsets entry."""
        return self.asm_long_size


def _byte(img, pos: int) -> int:
    return img[pos] if 0 <= pos < len(img) else 0


def _s32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value & 0x80000000 else value


def _leading_number(text: bytes, pos: int) -> Tuple[int, int]:
    match = re.match(rb"\d*", text[pos:])
    digits = match.group(0)
    return (int(digits) if digits else 0), pos + len(digits)


def find_linux_banner(info: KallsymInfo, img) -> int:
    """Find every "Linux version" banner; set the version and return it packed."""
    data = bytes(img)
    info.linux_banner_offsets = []
    pos = data.find(_BANNER_PREFIX, 1)
    while pos >= 0:
        after = pos + len(_BANNER_PREFIX)
        if chr(_byte(data, after)).isdigit() and _byte(data, after + 1) == ord("."):
            info.linux_banner_offsets.append(pos)
            logger.info("linux_banner offset: 0x%x", pos)
        pos = data.find(_BANNER_PREFIX, pos + 1)
    if not info.linux_banner_offsets:
        raise KallsymsError("no linux_banner found")

    start = info.linux_banner_offsets[-1] + len(_BANNER_PREFIX)
    major, p = _leading_number(data, start)
    minor, p = _leading_number(data, p + 1)
    patch, _ = _leading_number(data, p + 1)
    info.version_major = major & 0xFF
    info.version_minor = minor & 0xFF
    info.version_patch = patch if patch <= 256 else 255
    logger.info("kernel version major: %d, minor: %d, patch: %d",
                info.version_major, info.version_minor, info.version_patch)
    return (info.version_major << 16) + (info.version_minor << 8) + info.version_patch


def find_token_table(info: KallsymInfo, img) -> int:
    """Locate kallsyms_token_table and load its 256 tokens."""
    data = bytes(img)
    nums = b"".join(bytes((c, 0)) for c in range(ord("0"), ord("0") + 10))
    letters = b"".join(bytes((c, 0)) for c in range(ord("a"), ord("a") + 10))
    gap = ord("a") - ord("9") - 1

    pos = 0
    while True:
        num_start = data.find(nums, pos)
        if num_start < 0:
            raise KallsymsError("find token_table error")
        pos = num_start + 1
        num_end = num_start + len(nums)
        if not _byte(data, num_end) or not _byte(data, num_end + 1):
            continue
        letter = num_end
        zeros = 0
        while letter < len(data) and zeros < gap:
            if not data[letter]:
                zeros += 1
            letter += 1
        if data[letter:letter + len(letters)] != letters:
            continue
        break

    back = num_start
    zeros = 0
    while back > 0 and zeros < ord("0") + 1:
        if not data[back]:
            zeros += 1
        back -= 1
    offset = align_ceil(back + 2, 4)
    info.token_table_offset = offset
    logger.info("kallsyms_token_table offset: 0x%08x", offset)

    tokens = []
    p = offset
    for _ in range(KSYM_TOKEN_NUMS):
        end = data.find(b"\x00", p)
        if end < 0:
            raise KallsymsError("token table runs past the end of the image")
        tokens.append(data[p:end])
        p = end + 1
    info.token_table = tokens
    return offset


def find_token_index(info: KallsymInfo, img) -> int:
    """Locate kallsyms_token_index and detect the image's byte order."""
    data = bytes(img)
    start = info.token_table_offset
    indexes = []
    offset = start
    for _ in range(KSYM_TOKEN_NUMS):
        indexes.append((offset - start) & 0xFFFF)
        end = data.find(b"\x00", offset)
        if end < 0:
            raise KallsymsError("token table runs past the end of the image")
        offset = end + 1
    le_pos = data.find(struct.pack(f"<{KSYM_TOKEN_NUMS}H", *indexes))
    be_pos = data.find(struct.pack(f">{KSYM_TOKEN_NUMS}H", *indexes))
    if le_pos < 0 and be_pos < 0:
        raise KallsymsError("kallsyms_token_index error")
    info.is_be = le_pos < 0
    info.token_index_offset = be_pos if info.is_be else le_pos
    logger.info("endian: %s", "big" if info.is_be else "little")
    logger.info("kallsyms_token_index offset: 0x%08x", info.token_index_offset)
    return info.token_index_offset


def _rela(img, cand: int, is_be: bool) -> Tuple[int, int, int]:
    return (uint_unpack(img, cand, 8, is_be), uint_unpack(img, cand + 8, 8, is_be),
            uint_unpack(img, cand + 16, 8, is_be))


def try_find_arm64_relo_table(info: KallsymInfo, img: bytearray) -> int:
    """Find the ARM64 RELA table and apply it to ``img`` in place; return entries applied."""
    if not info.try_relo:
        return 0
    imglen = len(img)
    min_va, max_va = ELF64_KERNEL_MIN_VA, ELF64_KERNEL_MAX_VA
    kernel_va = max_va
    cand = 0
    rela_num = 0
    while cand < imglen - 24:
        r_offset, r_info, r_addend = _rela(img, cand, info.is_be)
        r_type = r_info & 0xFFFFFFFF
        if (r_offset & 0xFFFF000000000000) == 0xFFFF000000000000 and r_type in (0x101, 0x403):
            if not (r_addend & 0xFFF) and min_va <= r_addend < kernel_va:
                kernel_va = r_addend
            cand += 24
            rela_num += 1
        elif rela_num and not r_offset and not r_info and not r_addend:
            cand += 24
            rela_num += 1
        else:
            if rela_num >= ARM64_RELO_MIN_NUM:
                break
            cand += 8
            rela_num = 0
            kernel_va = max_va

    if info.kernel_base:
        logger.info("arm64 relocation kernel_va: 0x%x, try: %x", kernel_va, info.kernel_base)
        kernel_va = info.kernel_base
    else:
        info.kernel_base = kernel_va
        logger.info("arm64 relocation kernel_va: 0x%x", kernel_va)

    cand_start = cand - 24 * rela_num
    cand_end = cand - 24
    while cand_end >= cand_start:
        if (uint_unpack(img, cand_end, 8, False) and uint_unpack(img, cand_end + 8, 8, False)
                and uint_unpack(img, cand_end + 16, 8, False)):
            break
        cand_end -= 24
    cand_end += 24

    rela_num = (cand_end - cand_start) // 24
    if rela_num < ARM64_RELO_MIN_NUM:
        logger.warning("can't find arm64 relocation table")
        return 0

    max_offset = imglen - 8
    applied = 0
    for cand in range(cand_start, cand_end, 24):
        r_offset, r_info, r_addend = _rela(img, cand, info.is_be)
        if not r_offset and not r_info and not r_addend:
            continue
        if r_offset <= kernel_va or r_offset >= max_va - imglen:
            continue
        offset = _s32(r_offset - kernel_va)
        if offset < 0 or offset >= max_offset:
            info.try_relo = False
            raise KallsymsError(f"bad rela offset: 0x{r_offset:x}")
        if (r_info & 0xFFFFFFFF) == 0x101:
            r_addend = (r_addend + kernel_va) & _U64_MASK
        value = uint_unpack(img, offset, 8, info.is_be)
        if value == r_addend:
            continue
        img[offset:offset + 8] = ((value + r_addend) & _U64_MASK).to_bytes(8, "little")
        applied += 1
    if applied:
        applied -= 1
    logger.info("apply 0x%08x relocation entries", applied)
    if applied:
        info.relo_applied = True
    return applied


def _find_approx_addresses(info: KallsymInfo, img) -> None:
    imglen = len(img)
    elem = info.asm_ptr_size
    sym_num = 0
    prev = 0
    cand = 0
    while cand < imglen - KSYM_MIN_NEQ_SYMS * elem:
        address = uint_unpack(img, cand, elem, info.is_be)
        if not sym_num:
            ok = not (address & 0xFF)
            if ok and elem == 4 and (address & 0xFF800000) != 0xFF800000:
                ok = False
            if ok and elem == 8 and (address & 0xFFFF000000000000) != 0xFFFF000000000000:
                ok = False
            if ok:
                prev = address
                sym_num += 1
            cand += elem
            continue
        if address >= prev:
            prev = address
            sym_num += 1
            if sym_num - 1 >= KSYM_MIN_NEQ_SYMS:
                break
        else:
            prev = 0
            sym_num = 0
        cand += elem
    if sym_num < KSYM_MIN_NEQ_SYMS:
        raise KallsymsError("find approximate kallsyms_addresses error")

    cand -= KSYM_MIN_NEQ_SYMS * elem
    approx = cand
    prev = 0
    while cand < imglen:
        value = uint_unpack(img, cand, elem, info.is_be)
        if value < prev:
            break
        prev = value
        cand += elem
    info.approx_offset = approx
    info.approx_end = cand
    info.has_relative_base = False
    info.approx_num = (cand - approx) // elem
    if info.relo_applied:
        logger.warning("mismatch relo applied, subsequent operations may be undefined")


def _find_approx_offsets(info: KallsymInfo, img) -> None:
    imglen = len(img)
    elem = info.asm_long_size
    sym_num = 0
    prev = 0
    cand = 0
    while cand < imglen - KSYM_MIN_NEQ_SYMS * elem:
        offset = int_unpack(img, cand, elem, info.is_be)
        if offset > prev:
            prev = offset
            sym_num += 1
            if sym_num - 1 >= KSYM_MIN_NEQ_SYMS:
                break
        elif offset < prev:
            prev = 0
            sym_num = 0
        cand += elem
    if sym_num < KSYM_MIN_NEQ_SYMS:
        raise KallsymsError("find approximate kallsyms_offsets error")

    cand -= KSYM_MIN_NEQ_SYMS * elem
    while cand >= 0 and int_unpack(img, cand, elem, info.is_be):
        cand -= elem
    zero_num = 0
    while cand >= 0:
        if int_unpack(img, cand, elem, info.is_be):
            break
        if zero_num >= 10:
            break
        zero_num += 1
        cand -= elem
    if cand < 0:
        raise KallsymsError("kallsyms_offsets start runs before the image")
    cand += elem
    approx = cand
    prev = 0
    while cand < imglen:
        value = int_unpack(img, cand, elem, info.is_be)
        if value < prev:
            break
        prev = value
        cand += elem
    info.approx_offset = approx
    info.approx_end = cand
    info.has_relative_base = True
    info.approx_num = (cand - approx) // elem


def find_approx_addresses_or_offsets(info: KallsymInfo, img) -> int:
    """Roughly locate kallsyms_offsets (4.6+) or kallsyms_addresses; return the count."""
    if info.version_major > 4 or (info.version_major == 4 and info.version_minor >= 6):
        try:
            _find_approx_offsets(info, img)
            return info.approx_num
        except KallsymsError:
            logger.warning("find approximate kallsyms_offsets error")
    _find_approx_addresses(info, img)
    return info.approx_num


def _find_markers_internal(info: KallsymInfo, img, elem: int) -> None:
    imglen = len(img)
    cand = info.token_table_offset
    last = imglen
    count = 0
    while cand > 0x10000:
        marker = int_unpack(img, cand, elem, info.is_be)
        if last > marker:
            count += 1
            if not marker and count > KSYM_MIN_MARKER:
                break
        else:
            count = 0
        last = marker
        cand -= elem
    if count < KSYM_MIN_MARKER:
        raise KallsymsError("find kallsyms_markers error")
    info.markers_offset = cand
    info.marker_num = count
    info.markers_elem_size_found = elem
    logger.info("kallsyms_markers offset: 0x%08x, count: 0x%08x", cand, count)


def find_markers(info: KallsymInfo, img) -> int:
    """Locate kallsyms_markers just below the token table; return its offset."""
    elem = info.markers_elem_size()
    try:
        _find_markers_internal(info, img, elem)
    except KallsymsError:
        if elem != 8:
            raise
        _find_markers_internal(info, img, 4)
    return info.markers_offset


def _name_len(img, pos: int) -> Tuple[int, int]:
    length = _byte(img, pos)
    pos += 1
    if length > 0x7F:
        length = (length & 0x7F) + (_byte(img, pos) << 7)
        pos += 1
    return length, pos


def find_names(info: KallsymInfo, img) -> int:
    """Locate kallsyms_names by checking entries against the markers."""
    elem = info.markers_elem_size()
    markers = info.markers_offset
    remaining = -1
    cand = 0x4000
    while cand < markers:
        pos = cand
        remaining = KSYM_FIND_NAMES_USED_MARKER
        i = 0
        while True:
            length, pos = _name_len(img, pos)
            if not length or length >= KSYM_SYMBOL_LEN:
                break
            pos += length
            if pos >= markers:
                break
            if i and (i & 0xFF) == 0xFF:
                mark = _s32(int_unpack(img, markers + ((i >> 8) + 1) * elem, elem, info.is_be))
                if pos - cand != mark:
                    break
                remaining -= 1
                if not remaining:
                    break
            i += 1
        if not remaining:
            break
        cand += 1
    if remaining:
        raise KallsymsError("find kallsyms_names error")
    info.names_offset = cand
    logger.info("kallsyms_names offset: 0x%08x", cand)
    return cand


def find_num_syms(info: KallsymInfo, img) -> int:
    """Find kallsyms_num_syms near the names table, falling back to an estimate."""
    approx_end = info.names_offset
    approx_num = info.approx_num
    for cand in range(approx_end, approx_end - 4096, -4):
        if cand < 0:
            break
        nsyms = int_unpack(img, cand, 4, info.is_be)
        if not nsyms or abs(nsyms - approx_num) > NSYMS_MAX_GAP:
            continue
        info.num_syms = nsyms
        info.num_syms_offset = cand
        break
    if not info.num_syms_offset or not info.num_syms:
        info.num_syms = approx_num - NSYMS_MAX_GAP
        logger.warning("can't find kallsyms_num_syms, try: 0x%08x", info.num_syms)
    else:
        logger.info("kallsyms_num_syms offset: 0x%08x, value: 0x%08x",
                    info.num_syms_offset, info.num_syms)
    return info.num_syms


def decompress_symbol_name(info: KallsymInfo, img, pos: int) -> Tuple[str, str, int]:
    """Expand the name entry at ``pos``; return (type, name, position of next entry)."""
    length, pos = _name_len(img, pos)
    if not length or length >= KSYM_SYMBOL_LEN:
        raise KallsymsError(f"invalid symbol name length {length}")
    parts: List[bytes] = []
    sym_type: Optional[str] = None
    for i in range(length):
        token = info.token_table[_byte(img, pos + i)]
        if not i:
            sym_type = chr(token[0]) if token else "\x00"
            token = token[1:]
        parts.append(token)
    return sym_type or "\x00", b"".join(parts).decode("latin-1"), pos + length
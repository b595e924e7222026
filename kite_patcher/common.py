"""Low-level helpers shared by the patcher: alignment, branches, integer decoding, file I/O."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]

_B_INSN_MASK = 0xFC000000
_B_INSN_OPCODE = 0x14000000
_B_IMM26_MASK = 0x03FFFFFF
_B_RANGE = 1 << 25 << 2


def align_ceil(value: int, align: int) -> int:
    """Round ``value`` up to the next multiple of ``align``."""
    if align <= 0:
        raise ValueError(f"alignment must be positive, got {align}")
    return -(-value // align) * align


def sign_extend(value: int, bits: int) -> int:
    """Interpret the low ``bits`` bits of ``value`` as a two's-complement number."""
    if bits <= 0:
        raise ValueError(f"bit width must be positive, got {bits}")
    mask = (1 << bits) - 1
    value &= mask
    if value & (1 << (bits - 1)):
        value -= 1 << bits
    return value


def can_b_imm(from_addr: int, to_addr: int) -> bool:
    """Return True if an ARM64 ``B`` instruction at ``from_addr`` can reach ``to_addr``."""
    return abs(to_addr - from_addr) <= _B_RANGE


def encode_branch(from_addr: int, to_addr: int) -> int:
    """Encode an ARM64 ``B`` instruction jumping from ``from_addr`` to ``to_addr``."""
    if not can_b_imm(from_addr, to_addr):
        raise ValueError(
            f"branch target 0x{to_addr:x} out of range from 0x{from_addr:x}"
        )
    return _B_INSN_OPCODE | (((to_addr - from_addr) & 0x0FFFFFFF) >> 2)


def relo_branch_func(img: bytes, func_offset: int) -> int:
    """Follow a ``B`` instruction at ``func_offset``; return the offset it lands on."""
    inst = uint_unpack(img, func_offset, 4, False)
    if (inst & _B_INSN_MASK) != _B_INSN_OPCODE:
        return func_offset
    imm = sign_extend((inst & _B_IMM26_MASK) << 2, 28)
    relo_offset = func_offset + imm
    logger.info("relocate branch function 0x%x to 0x%x", func_offset, relo_offset)
    return relo_offset


def _field(data: bytes, offset: int, size: int) -> bytes:
    width = size if size in (2, 4, 8) else 1
    if offset < 0 or offset + width > len(data):
        raise ValueError(
            f"cannot read {width} bytes at offset {offset} from {len(data)} bytes"
        )
    return bytes(data[offset:offset + width])


def int_unpack(data: bytes, offset: int, size: int, is_be: bool) -> int:
    """Read a signed integer of ``size`` bytes (8, 4, 2, otherwise 1) at ``offset``."""
    order = "big" if is_be else "little"
    return int.from_bytes(_field(data, offset, size), order, signed=True)


def uint_unpack(data: bytes, offset: int, size: int, is_be: bool) -> int:
    """Read an unsigned integer of ``size`` bytes (8, 4, 2, otherwise 1) at ``offset``."""
    order = "big" if is_be else "little"
    return int.from_bytes(_field(data, offset, size), order, signed=False)


def read_file_align(path: PathLike, align: int) -> bytearray:
    """Read a file and pad it with zero bytes to a multiple of ``align``."""
    content = bytearray(Path(path).read_bytes())
    padded_len = align_ceil(len(content), align)
    content.extend(bytes(padded_len - len(content)))
    return content


def write_file(path: PathLike, data: bytes, append: bool = False) -> None:
    """Write ``data`` to ``path``, appending instead of truncating when asked."""
    with open(path, "ab" if append else "wb") as fout:
        fout.write(data)
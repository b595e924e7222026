"""Parsing and adjusting the ARM64 Linux kernel image header."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from kite_patcher.common import uint_unpack

logger = logging.getLogger(__name__)

EFI_MAGIC_SIG = b"MZ"
KERNEL_MAGIC = b"ARM\x64"

_KERNEL_OFFSET_POS = 8
_KERNEL_SIZE_POS = 16
_KERNEL_FLAG_POS = 24
_MAGIC_POS = 56
HEADER_SIZE = 72


class KernelImageError(Exception):
    """Raised when a kernel image header is missing or unusable."""


@dataclass
class KernelInfo:
    """What the ARM64 image header says about the kernel."""

    is_be: bool = False
    uefi: bool = False
    b_stext_insn_offset: int = 0
    primary_entry_offset: int = 0
    load_offset: int = 0
    kernel_size: int = 0
    page_shift: int = 12


def get_kernel_info(img: bytes) -> KernelInfo:
    """Parse the ARM64 image header at the start of ``img``."""
    if len(img) < _MAGIC_POS + len(KERNEL_MAGIC):
        raise KernelImageError(f"kernel image too short: {len(img)} bytes")

    magic = bytes(img[_MAGIC_POS:_MAGIC_POS + len(KERNEL_MAGIC)])
    if magic != KERNEL_MAGIC:
        raise KernelImageError(f"kernel image magic error: {magic!r}")

    info = KernelInfo()
    info.uefi = bytes(img[: len(EFI_MAGIC_SIG)]) == EFI_MAGIC_SIG
    info.b_stext_insn_offset = 4 if info.uefi else 0

    b_insn = uint_unpack(img, info.b_stext_insn_offset, 4, False)
    if (b_insn & 0xFC000000) != 0x14000000:
        raise KernelImageError(f"kernel primary entry: {b_insn:x}")
    info.primary_entry_offset = ((b_insn & 0x03FFFFFF) << 2) + info.b_stext_insn_offset

    info.load_offset = uint_unpack(img, _KERNEL_OFFSET_POS, 8, False)
    info.kernel_size = uint_unpack(img, _KERNEL_SIZE_POS, 8, False)

    flag = uint_unpack(img, _KERNEL_FLAG_POS, 8, False) & 0x0F
    info.is_be = bool(flag & 0x01)
    if info.is_be:
        raise KernelImageError("kernel unexpected arm64 big endian img")

    info.page_shift = {2: 14, 3: 16}.get((flag & 0b0110) >> 1, 12)

    logger.info("kernel image_size: 0x%08x", len(img))
    logger.info("kernel uefi header: %s", "true" if info.uefi else "false")
    logger.info("kernel load_offset: 0x%08x", info.load_offset)
    logger.info("kernel kernel_size: 0x%08x", info.kernel_size)
    logger.info("kernel page_shift: %d", info.page_shift)
    return info


def kernel_resize(kinfo: KernelInfo, img: bytearray, size: int) -> None:
    """Store ``size`` into the header's kernel size field, in place."""
    if len(img) < _KERNEL_SIZE_POS + 8:
        raise KernelImageError(f"kernel image too short: {len(img)} bytes")
    order = "big" if kinfo.is_be else "little"
    img[_KERNEL_SIZE_POS:_KERNEL_SIZE_POS + 8] = (size & 0xFFFFFFFFFFFFFFFF).to_bytes(8, order)
    kinfo.kernel_size = size
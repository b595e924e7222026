"""Reading, extracting and repacking Android boot images."""

from __future__ import annotations

import hashlib
import io
import logging
import os
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar, Optional, Tuple, Union

from kite_patcher.common import align_ceil
from kite_patcher.compression import (
    CompressionError,
    CompressMethod,
    auto_decompress,
    compress_gzip,
    compress_lz4_frame,
    compress_lz4_legacy,
    detect_compress_method,
)

logger = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]

BOOT_MAGIC = b"ANDROID!"
DTB_MAGIC = b"\xd0\x0d\xfe\xed"
FDT_HEADER_SIZE = 40
_FDT_BEGIN_NODE = 0x00000001
_MIN_FDT_TOTALSIZE = 0x48
_V3_PAGE_SIZE = 4096

_AVB_VBMETA_SIG = b"AVB0" + b"\x00\x00\x00\x01" + bytes(11)
_U32_LE = struct.Struct("<I")
_U32_BE = struct.Struct(">I")


class BootImageError(Exception):
    """Raised when a boot image cannot be read, extracted or repacked."""


@dataclass
class BootImageHeader:
    """The Android boot image header, in the layout of header versions 0 to 2."""

    FORMAT: ClassVar[struct.Struct] = struct.Struct("<8s10I16s512s8I1024sIQIIQ")
    SIZE: ClassVar[int] = FORMAT.size

    magic: bytes = BOOT_MAGIC
    kernel_size: int = 0
    kernel_addr: int = 0
    ramdisk_size: int = 0
    ramdisk_addr: int = 0
    second_size: int = 0
    second_addr: int = 0
    tags_addr: int = 0
    page_size: int = 2048
    header_version: int = 0
    os_version: int = 0
    name: bytes = bytes(16)
    cmdline: bytes = bytes(512)
    id: Tuple[int, ...] = field(default=(0,) * 8)
    extra_cmdline: bytes = bytes(1024)
    recovery_dtbo_size: int = 0
    recovery_dtbo_offset: int = 0
    header_size: int = 0
    dtb_size: int = 0
    dtb_addr: int = 0

    @classmethod
    def unpack(cls, data: bytes) -> "BootImageHeader":
        """Decode a header from the start of ``data``; missing bytes read as zero."""
        data = bytes(data[: cls.SIZE]).ljust(cls.SIZE, b"\x00")
        fields = cls.FORMAT.unpack(data)
        if fields[0] != BOOT_MAGIC:
            raise BootImageError("invalid boot image magic")
        return cls(
            *fields[:13],
            id=tuple(fields[13:21]),
            extra_cmdline=fields[21],
            recovery_dtbo_size=fields[22],
            recovery_dtbo_offset=fields[23],
            header_size=fields[24],
            dtb_size=fields[25],
            dtb_addr=fields[26],
        )

    def pack(self) -> bytes:
        """Encode the header into its on-disk bytes."""
        if len(self.id) != 8:
            raise BootImageError("boot image id must hold eight words")
        try:
            return self.FORMAT.pack(
                self.magic,
                self.kernel_size,
                self.kernel_addr,
                self.ramdisk_size,
                self.ramdisk_addr,
                self.second_size,
                self.second_addr,
                self.tags_addr,
                self.page_size,
                self.header_version,
                self.os_version,
                self.name,
                self.cmdline,
                *self.id,
                self.extra_cmdline,
                self.recovery_dtbo_size,
                self.recovery_dtbo_offset,
                self.header_size,
                self.dtb_size,
                self.dtb_addr,
            )
        except struct.error as exc:
            raise BootImageError(f"cannot pack boot image header: {exc}") from exc


@dataclass
class AvbFooter:
    """The AVB footer at the end of a boot image partition."""

    FORMAT: ClassVar[struct.Struct] = struct.Struct(">4sIIIIII36s")
    SIZE: ClassVar[int] = FORMAT.size

    magic: bytes = b"AVBf"
    version_major: int = 0
    version_minor: int = 0
    original_image_size_hi: int = 0
    data_size1: int = 0
    vbmeta_offset_hi: int = 0
    data_size2: int = 0
    tail: bytes = bytes(36)

    @classmethod
    def unpack(cls, data: bytes) -> "AvbFooter":
        """Decode a footer from the first bytes of ``data``."""
        if len(data) < cls.SIZE:
            raise BootImageError(f"AVB footer needs {cls.SIZE} bytes, got {len(data)}")
        return cls(*cls.FORMAT.unpack_from(bytes(data)))

    def pack(self) -> bytes:
        """Encode the footer into its on-disk bytes."""
        try:
            return self.FORMAT.pack(
                self.magic,
                self.version_major,
                self.version_minor,
                self.original_image_size_hi,
                self.data_size1,
                self.vbmeta_offset_hi,
                self.data_size2,
                self.tail,
            )
        except struct.error as exc:
            raise BootImageError(f"cannot pack AVB footer: {exc}") from exc


def is_sha256(id_words) -> int:
    """Classify a header id: 1 if empty, 2 if it holds a SHA-256 digest, else 0."""
    words = tuple(id_words)
    if len(words) != 8:
        raise ValueError("boot image id must hold eight words")
    if not any(words[:6]):
        return 1
    if words[6] or words[7]:
        return 2
    return 0


def find_dtb_offset(buf: bytes) -> Optional[int]:
    """Return the offset of a device tree blob inside ``buf``, or None."""
    buf = bytes(buf)
    end = len(buf)
    if end < FDT_HEADER_SIZE:
        return None
    curr = 0
    while curr < end - FDT_HEADER_SIZE:
        curr = buf.find(DTB_MAGIC, curr)
        if curr < 0 or curr + 12 > end:
            return None
        totalsize = _U32_BE.unpack_from(buf, curr + 4)[0]
        off_dt_struct = _U32_BE.unpack_from(buf, curr + 8)[0]
        if totalsize > end - curr or totalsize <= _MIN_FDT_TOTALSIZE:
            curr += 4
            continue
        tag_pos = curr + off_dt_struct
        if tag_pos + 4 <= end and _U32_BE.unpack_from(buf, tag_pos)[0] == _FDT_BEGIN_NODE:
            return curr
        curr += 4
    return None


def _write_output(path: PathLike, data: bytes) -> None:
    Path(path).write_bytes(data)
    os.chmod(path, 0o644)


def extract_kernel(bootimg_path: PathLike, out_path: PathLike) -> bytes:
    """Extract and decompress the kernel of a boot image into ``out_path``."""
    data = Path(bootimg_path).read_bytes()
    hdr = BootImageHeader.unpack(data)

    kernel_offset = hdr.page_size
    if hdr.header_version >= 3:
        kernel_offset = _V3_PAGE_SIZE
    if hdr.header_version > 10:
        kernel_offset = hdr.page_size

    logger.info(
        "Kernel size: %d,Header Version: %d, Offset: %d",
        hdr.kernel_size, hdr.header_version, kernel_offset,
    )
    kernel = data[kernel_offset:kernel_offset + hdr.kernel_size]
    kernel_data = auto_decompress(kernel)
    _write_output(out_path, kernel_data)
    logger.info("Decompressed to %s", out_path)
    return kernel_data


def _compress_like(method: CompressMethod, raw: bytes, old_head: bytes) -> bytes:
    if method is CompressMethod.GZIP:
        logger.info("Compressing new kernel with GZIP...")
        try:
            return compress_gzip(raw)
        except CompressionError:
            return raw
    if method is CompressMethod.LZ4_FRAME:
        logger.info("Compressing new kernel with LZ4 Frame...")
        try:
            return compress_lz4_frame(raw, old_head)
        except CompressionError:
            return raw
    if method is CompressMethod.LZ4_LEGACY:
        logger.info("Compressing new kernel with LZ4 Legacy...")
        try:
            return compress_lz4_legacy(raw)
        except CompressionError:
            return raw
    if method is CompressMethod.ZSTD:
        raise BootImageError("kernel uses zstd, not supported yet")
    if method is CompressMethod.BZIP2:
        raise BootImageError("BZIP2 not supported in this build")
    if method in (CompressMethod.XZ, CompressMethod.LZMA):
        logger.info("Original was XZ/LZMA. Repacking as GZIP for compatibility...")
        try:
            packed = compress_gzip(raw)
        except CompressionError as exc:
            raise BootImageError(
                "GZIP compression failed during XZ-to-GZIP conversion"
            ) from exc
        logger.info("Repacked as GZIP. New Size: %d bytes", len(packed))
        return packed
    return raw


def _image_digest(hasher, kernel_section: bytes, hdr: BootImageHeader, rest: bytes,
                  header_ver: int, page_size: int, fmt_size: int,
                  extracted_size: int) -> bytes:
    def region(start: int, length: int) -> bytes:
        return rest[start:start + length]

    hasher.update(kernel_section)
    hasher.update(_U32_LE.pack(hdr.kernel_size))

    aligned = align_ceil(fmt_size, page_size)
    if fmt_size > 0:
        hasher.update(region(0, fmt_size))
        hasher.update(_U32_LE.pack(fmt_size))

    hasher.update(region(aligned, hdr.second_size))
    hasher.update(_U32_LE.pack(hdr.second_size))
    if hdr.second_size > 0:
        aligned += align_ceil(hdr.second_size, page_size)

    if extracted_size:
        hasher.update(region(aligned, page_size))
        hasher.update(_U32_LE.pack(extracted_size))
        aligned += align_ceil(extracted_size, page_size)

    if header_ver in (1, 2):
        hasher.update(region(aligned, hdr.recovery_dtbo_size))
        hasher.update(_U32_LE.pack(hdr.recovery_dtbo_size))
        aligned += align_ceil(hdr.recovery_dtbo_size, page_size)

    if header_ver == 2:
        hasher.update(region(aligned, hdr.dtb_size))
        hasher.update(_U32_LE.pack(hdr.dtb_size))

    return hasher.digest()


def _find_last_vbmeta(rest: bytes) -> int:
    for last_byte in (0, 1, 2):
        sig = _AVB_VBMETA_SIG[:-1] + bytes((last_byte,))
        if rest.find(sig) >= 0:
            return rest.rfind(sig)
    return -1


def repack_bootimg(orig_boot_path: PathLike, new_kernel_path: PathLike,
                   out_boot_path: PathLike) -> BootImageHeader:
    """Replace the kernel of a boot image and write the result; return the new header."""
    logger.info("Starting automatic repack...")
    data = Path(orig_boot_path).read_bytes()
    hdr = BootImageHeader.unpack(data)

    total_size = len(data)
    if total_size < AvbFooter.SIZE:
        raise BootImageError("boot image too short for an AVB footer")
    avb = AvbFooter.unpack(data[total_size - AvbFooter.SIZE:])

    header_ver = hdr.header_version
    extracted_size = 0
    if header_ver > 10:
        extracted_size = header_ver
        header_ver = 0
    page_size = _V3_PAGE_SIZE if header_ver >= 3 else hdr.page_size
    if page_size <= 0:
        raise BootImageError(f"invalid page size: {page_size}")
    fmt_size = hdr.kernel_addr if header_ver >= 3 else hdr.ramdisk_size
    logger.info("Header Version: %d, Page Size: %d, fmt_size: %d",
                header_ver, page_size, fmt_size)

    old_kernel_size = hdr.kernel_size
    old_kernel = data[page_size:page_size + old_kernel_size]
    method = detect_compress_method(old_kernel)

    dtb = b""
    if header_ver < 3:
        dtb_off = find_dtb_offset(old_kernel)
        if dtb_off is not None and dtb_off > 0:
            dtb = old_kernel[dtb_off:]
            logger.info("Detected DTB appended to kernel. Size: %d", len(dtb))

    raw_kernel = Path(new_kernel_path).read_bytes()
    final_kernel = _compress_like(method, raw_kernel, old_kernel[:16])
    logger.info("Final kernel size after compression (if applied): %d bytes",
                len(final_kernel))

    rest_data_offset = page_size + align_ceil(old_kernel_size, page_size)
    rest_data_size = max(total_size - rest_data_offset, 0)
    hdr.kernel_size = len(final_kernel) + len(dtb)

    rest_buf: Optional[bytes] = None
    if rest_data_size > 0:
        tmp = bytearray(rest_data_size)
        chunk = data[rest_data_offset:rest_data_offset + max(rest_data_size - AvbFooter.SIZE, 0)]
        tmp[:len(chunk)] = chunk
        used = len(tmp.rstrip(b"\x00"))
        if used > rest_data_size // 3 * 2:
            logger.warning("overload size of rest data")
            rest_buf = bytes(tmp)
            rest_data_size = used + AvbFooter.SIZE
        else:
            rest_buf = bytes(tmp[:used])
            logger.info("Rest data size: %d bytes, Actual used size: %d bytes",
                        rest_data_size, used)
            rest_data_size = used

    use_sha256 = is_sha256(hdr.id)
    if use_sha256 != 1 or header_ver <= 3:
        hasher = hashlib.sha256() if use_sha256 else hashlib.sha1()
        digest = _image_digest(hasher, final_kernel + dtb, hdr, rest_buf or b"",
                               header_ver, page_size, fmt_size, extracted_size)
        id_bytes = struct.pack("<8I", *hdr.id)
        hdr.id = struct.unpack("<8I", digest + id_bytes[len(digest):])
        logger.info("Recalculated %s hash for boot image",
                    "SHA256" if use_sha256 else "SHA1")
    else:
        logger.info("Skipped hash recalculation for v%d with SHA256 (keeping original)",
                    header_ver)

    out = io.BytesIO()
    out.write(hdr.pack())
    out.seek(page_size)
    out.write(final_kernel)
    out.write(dtb)
    logger.info("dtb_size=%d", len(dtb))

    new_k_aligned = align_ceil(hdr.kernel_size, page_size)
    out.seek(page_size + new_k_aligned)

    if rest_buf is not None:
        avb_offset = _find_last_vbmeta(rest_buf[:rest_data_size])
        if avb_offset >= 0:
            logger.info("avb_offset=%d", avb_offset)
            avb_size = (page_size + avb_offset + new_k_aligned) & 0xFFFFFFFF
            avb.data_size1 = avb_size
            avb.data_size2 = avb_size
        if rest_data_size > total_size - page_size - new_k_aligned:
            total_size = align_ceil(page_size + new_k_aligned + rest_data_size, page_size)
            length = max(total_size - page_size - new_k_aligned - AvbFooter.SIZE, 0)
            out.write(rest_buf[:length].ljust(length, b"\x00"))
            out.write(avb.pack())
        else:
            out.write(rest_buf[:rest_data_size])

    current_pos = out.tell()
    if current_pos < total_size - AvbFooter.SIZE:
        out.write(bytes(total_size - current_pos - AvbFooter.SIZE))
        out.write(avb.pack())

    _write_output(out_boot_path, out.getvalue())
    logger.info("Repack completed: %s", out_boot_path)
    return hdr
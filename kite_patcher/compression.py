"""Detection, compression and decompression of boot image kernel payloads."""

from __future__ import annotations

import logging
import lzma
import struct
import zlib
from enum import IntEnum
from typing import Any, Dict

import lz4.block
import lz4.frame

logger = logging.getLogger(__name__)

LZ4_MAGIC = 0x184C2102
LZ4_FRAME_MAGIC = 0x184D2204
LZ4_BLOCK_SIZE = 8 << 20
LZ4HC_CLEVEL = 12

_MAX_OUTPUT = 128 * 1024 * 1024
_U32 = struct.Struct("<I")

_LZ4_FRAME_BLOCK_SIZES = {
    4: lz4.frame.BLOCKSIZE_MAX64KB,
    5: lz4.frame.BLOCKSIZE_MAX256KB,
    6: lz4.frame.BLOCKSIZE_MAX1MB,
    7: lz4.frame.BLOCKSIZE_MAX4MB,
}


class CompressMethod(IntEnum):
    """Compression formats a kernel payload may use."""

    RAW = 0
    GZIP = 1
    LZ4_FRAME = 2
    LZ4_LEGACY = 3
    ZSTD = 4
    BZIP2 = 5
    XZ = 6
    LZMA = 7


class CompressionError(Exception):
    """Raised when data cannot be compressed or decompressed."""


_SIGNATURES = (
    (b"\x1f\x8b", CompressMethod.GZIP),
    (b"\x1f\x9e", CompressMethod.GZIP),
    (b"\x04\x22\x4d\x18", CompressMethod.LZ4_FRAME),
    (b"\x03\x21\x4c\x18", CompressMethod.LZ4_FRAME),
    (b"\x02\x21\x4c\x18", CompressMethod.LZ4_LEGACY),
    (b"\x28\xb5\x2f\xfd", CompressMethod.ZSTD),
    (b"\x42\x5a\x68", CompressMethod.BZIP2),
    (b"\xfd\x37\x7a\x58", CompressMethod.XZ),
    (b"\x5d\x00\x00", CompressMethod.LZMA),
)


def _lz4_compress_bound(size: int) -> int:
    return size + size // 255 + 16


def detect_compress_method(head: bytes) -> CompressMethod:
    """Identify the compression format from the leading magic bytes."""
    prefix = bytes(head[:8])
    for magic, method in _SIGNATURES:
        if prefix.startswith(magic):
            return method
    return CompressMethod.RAW


def compress_gzip(data: bytes) -> bytes:
    """Compress ``data`` into a gzip stream at the highest level."""
    try:
        compressor = zlib.compressobj(
            9, zlib.DEFLATED, 16 + zlib.MAX_WBITS, 8, zlib.Z_DEFAULT_STRATEGY
        )
        return compressor.compress(bytes(data)) + compressor.flush(zlib.Z_FINISH)
    except zlib.error as exc:
        raise CompressionError(f"gzip compression failed: {exc}") from exc


def decompress_gzip(data: bytes) -> bytes:
    """Decompress a complete gzip stream; trailing bytes are ignored."""
    decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
    try:
        out = decompressor.decompress(bytes(data))
        out += decompressor.flush()
    except zlib.error as exc:
        raise CompressionError(f"gzip decompression failed: {exc}") from exc
    if not decompressor.eof:
        raise CompressionError("gzip stream is truncated")
    return out


def compress_lz4_legacy(data: bytes) -> bytes:
    """Compress ``data`` into the LZ4 legacy block format used by kernels."""
    out = bytearray(_U32.pack(LZ4_MAGIC))
    view = memoryview(bytes(data))
    for start in range(0, len(view), LZ4_BLOCK_SIZE):
        chunk = view[start:start + LZ4_BLOCK_SIZE]
        try:
            block = lz4.block.compress(
                chunk,
                mode="high_compression",
                compression=LZ4HC_CLEVEL,
                store_size=False,
            )
        except lz4.block.LZ4BlockError as exc:
            raise CompressionError(f"lz4 block compression failed: {exc}") from exc
        if not block:
            raise CompressionError("lz4 block compression produced no output")
        out += _U32.pack(len(block))
        out += block
    return bytes(out)


def decompress_lz4_legacy(data: bytes) -> bytes:
    """Decompress the LZ4 legacy block format."""
    data = bytes(data)
    if len(data) < 4 or _U32.unpack_from(data)[0] != LZ4_MAGIC:
        raise CompressionError("not an lz4 legacy stream")

    bound = _lz4_compress_bound(LZ4_BLOCK_SIZE)
    out = bytearray()
    decoded_any = False
    pos = 4
    while pos + 4 <= len(data):
        (block_size,) = _U32.unpack_from(data, pos)
        pos += 4
        if block_size == 0:
            break
        if block_size > bound:
            raise CompressionError(f"lz4 legacy block too large: {block_size}")
        if pos + block_size > len(data):
            raise CompressionError("lz4 legacy block runs past the end of data")
        try:
            block = lz4.block.decompress(
                data[pos:pos + block_size], uncompressed_size=LZ4_BLOCK_SIZE
            )
        except lz4.block.LZ4BlockError as exc:
            raise CompressionError(f"lz4 legacy block is corrupt: {exc}") from exc
        decoded_any = True
        out += block
        pos += block_size

    if not decoded_any:
        raise CompressionError("lz4 legacy stream holds no blocks")
    logger.info("LZ4 block decompressed: %d bytes", len(out))
    return bytes(out)


def parse_lz4_frame_header(head: bytes) -> Dict[str, Any]:
    """Read frame options from an LZ4 frame header as ``lz4.frame`` keyword arguments."""
    head = bytes(head)
    if len(head) < 6:
        raise CompressionError("lz4 frame header is too short")
    if _U32.unpack_from(head)[0] != LZ4_FRAME_MAGIC:
        raise CompressionError("not an lz4 frame header")

    flg = head[4]
    block_size_id = (head[5] >> 4) & 0x07
    if block_size_id not in _LZ4_FRAME_BLOCK_SIZES:
        raise CompressionError(f"invalid lz4 frame block size id: {block_size_id}")
    return {
        "block_size": _LZ4_FRAME_BLOCK_SIZES[block_size_id],
        "block_linked": not flg & 0x20,
        "block_checksum": bool(flg & 0x10),
        "content_checksum": bool(flg & 0x08),
    }


def compress_lz4_frame(data: bytes, head: bytes) -> bytes:
    """Compress ``data`` as an LZ4 frame with the options found in ``head``."""
    options = parse_lz4_frame_header(head)
    try:
        return lz4.frame.compress(
            bytes(data), compression_level=0, store_size=False, **options
        )
    except RuntimeError as exc:
        raise CompressionError(f"lz4 frame compression failed: {exc}") from exc


def decompress_lz4_frame(data: bytes) -> bytes:
    """Decompress an LZ4 frame, producing at most 128 MiB."""
    decompressor = lz4.frame.LZ4FrameDecompressor()
    try:
        out = decompressor.decompress(bytes(data), max_length=_MAX_OUTPUT)
    except RuntimeError as exc:
        raise CompressionError(f"lz4 frame decompression failed: {exc}") from exc
    logger.info("LZ4 Frame Decompressed: %d bytes", len(out))
    return out


def _decompress_lzma_format(data: bytes, fmt: int, name: str) -> bytes:
    decompressor = lzma.LZMADecompressor(format=fmt)
    try:
        out = decompressor.decompress(bytes(data), max_length=_MAX_OUTPUT)
    except lzma.LZMAError as exc:
        raise CompressionError(f"{name} decompression failed: {exc}") from exc
    if not decompressor.eof:
        raise CompressionError(f"{name} stream is truncated or too large")
    return out


def decompress_xz(data: bytes) -> bytes:
    """Decompress a complete XZ stream of at most 128 MiB."""
    return _decompress_lzma_format(data, lzma.FORMAT_XZ, "XZ")


def _decompress_lzma(data: bytes) -> bytes:
    return _decompress_lzma_format(data, lzma.FORMAT_ALONE, "LZMA")


def auto_decompress(data: bytes) -> bytes:
    """Detect the payload's format and return its decompressed contents."""
    data = bytes(data)
    if len(data) < 4:
        raise CompressionError("payload too short to detect compression")

    method = detect_compress_method(data)
    logger.info("Auto-detect compression method: %d", method)

    if method is CompressMethod.GZIP:
        logger.info("Detected GZIP compressed kernel.")
        return decompress_gzip(data)
    if method is CompressMethod.LZ4_FRAME:
        logger.info("Detected LZ4 Frame format. Decompressing...")
        return decompress_lz4_frame(data)
    if method is CompressMethod.LZ4_LEGACY:
        logger.info("Probing LZ4 Legacy (block-based)...")
        try:
            return decompress_lz4_legacy(data)
        except CompressionError:
            logger.info("Not LZ4 block format, fallback.")
    if method is CompressMethod.BZIP2:
        raise CompressionError("BZIP2 not supported in this build")
    if method is CompressMethod.XZ:
        logger.info("Detected XZ format. Decompressing...")
        return decompress_xz(data)
    if method is CompressMethod.LZMA:
        logger.info("Detected Legacy LZMA format. Decompressing...")
        return _decompress_lzma(data)

    logger.info("Treating as Raw Kernel (or unknown format).")
    return data
import gzip
import lzma
import struct

import lz4.frame
import pytest

from kite_patcher.compression import (
    CompressionError,
    CompressMethod,
    auto_decompress,
    compress_gzip,
    compress_lz4_frame,
    compress_lz4_legacy,
    decompress_gzip,
    decompress_lz4_frame,
    decompress_lz4_legacy,
    decompress_xz,
    detect_compress_method,
    parse_lz4_frame_header,
)

PAYLOAD = b"kernel payload " * 2000 + bytes(range(256))


@pytest.mark.parametrize(
    "head, method",
    [
        (b"\x1f\x8b\x08\x00", CompressMethod.GZIP),
        (b"\x1f\x9e\x00\x00", CompressMethod.GZIP),
        (b"\x04\x22\x4d\x18", CompressMethod.LZ4_FRAME),
        (b"\x03\x21\x4c\x18", CompressMethod.LZ4_FRAME),
        (b"\x02\x21\x4c\x18", CompressMethod.LZ4_LEGACY),
        (b"\x28\xb5\x2f\xfd", CompressMethod.ZSTD),
        (b"BZh9", CompressMethod.BZIP2),
        (b"\xfd7zXZ\x00", CompressMethod.XZ),
        (b"\x5d\x00\x00\x80", CompressMethod.LZMA),
        (b"MZ\x00\x00", CompressMethod.RAW),
    ],
)
def test_detect_magic(head, method):
    assert detect_compress_method(head) is method


def test_detect_real_streams():
    assert detect_compress_method(gzip.compress(PAYLOAD)) is CompressMethod.GZIP
    assert detect_compress_method(lzma.compress(PAYLOAD)) is CompressMethod.XZ
    alone = lzma.compress(PAYLOAD, format=lzma.FORMAT_ALONE)
    assert detect_compress_method(alone) is CompressMethod.LZMA
    assert detect_compress_method(lz4.frame.compress(PAYLOAD)) is CompressMethod.LZ4_FRAME


def test_gzip_round_trip():
    packed = compress_gzip(PAYLOAD)
    assert packed[:2] == b"\x1f\x8b"
    assert len(packed) < len(PAYLOAD)
    assert decompress_gzip(packed) == PAYLOAD
    assert gzip.decompress(packed) == PAYLOAD


def test_gzip_reads_stdlib_stream_with_trailing_data():
    assert decompress_gzip(gzip.compress(PAYLOAD) + b"\x00" * 16) == PAYLOAD


def test_gzip_truncated_raises():
    packed = compress_gzip(PAYLOAD)
    with pytest.raises(CompressionError):
        decompress_gzip(packed[: len(packed) // 2])


def test_gzip_garbage_raises():
    with pytest.raises(CompressionError):
        decompress_gzip(b"\x1f\x8b" + b"\xff" * 40)


def test_lz4_legacy_layout():
    packed = compress_lz4_legacy(PAYLOAD)
    assert packed[:4] == b"\x02\x21\x4c\x18"
    (block_size,) = struct.unpack_from("<I", packed, 4)
    assert block_size == len(packed) - 8


def test_lz4_legacy_round_trip():
    assert decompress_lz4_legacy(compress_lz4_legacy(PAYLOAD)) == PAYLOAD


def test_lz4_legacy_stops_at_zero_block():
    packed = compress_lz4_legacy(PAYLOAD) + b"\x00\x00\x00\x00" + b"junk"
    assert decompress_lz4_legacy(packed) == PAYLOAD


def test_lz4_legacy_bad_magic_raises():
    with pytest.raises(CompressionError):
        decompress_lz4_legacy(b"\x00\x01\x02\x03\x04\x05\x06\x07")


def test_lz4_legacy_empty_stream_raises():
    with pytest.raises(CompressionError):
        decompress_lz4_legacy(compress_lz4_legacy(b""))


def test_lz4_legacy_truncated_block_raises():
    packed = compress_lz4_legacy(PAYLOAD)
    with pytest.raises(CompressionError):
        decompress_lz4_legacy(packed[:-5])


def test_parse_lz4_frame_header_from_real_frame():
    frame = lz4.frame.compress(
        PAYLOAD,
        block_size=lz4.frame.BLOCKSIZE_MAX256KB,
        block_linked=False,
        content_checksum=True,
    )
    options = parse_lz4_frame_header(frame)
    assert options["block_size"] == lz4.frame.BLOCKSIZE_MAX256KB
    assert options["block_linked"] is False
    assert options["content_checksum"] is True
    assert options["block_checksum"] is False


def test_parse_lz4_frame_header_bad_magic():
    with pytest.raises(CompressionError):
        parse_lz4_frame_header(b"\x02\x21\x4c\x18\x60\x40")


def test_parse_lz4_frame_header_bad_block_size():
    with pytest.raises(CompressionError):
        parse_lz4_frame_header(b"\x04\x22\x4d\x18\x60\x00")


def test_lz4_frame_round_trip_keeps_options():
    original = lz4.frame.compress(
        b"seed", block_size=lz4.frame.BLOCKSIZE_MAX1MB, block_linked=True
    )
    packed = compress_lz4_frame(PAYLOAD, original[:7])
    assert packed[:4] == b"\x04\x22\x4d\x18"
    assert parse_lz4_frame_header(packed) == parse_lz4_frame_header(original)
    assert decompress_lz4_frame(packed) == PAYLOAD


def test_lz4_frame_garbage_raises():
    with pytest.raises(CompressionError):
        decompress_lz4_frame(b"\x04\x22\x4d\x18" + b"\xff" * 32)


def test_xz_round_trip():
    assert decompress_xz(lzma.compress(PAYLOAD)) == PAYLOAD


def test_xz_truncated_raises():
    packed = lzma.compress(PAYLOAD)
    with pytest.raises(CompressionError):
        decompress_xz(packed[: len(packed) // 2])


def test_auto_decompress_formats():
    assert auto_decompress(compress_gzip(PAYLOAD)) == PAYLOAD
    assert auto_decompress(compress_lz4_legacy(PAYLOAD)) == PAYLOAD
    assert auto_decompress(lz4.frame.compress(PAYLOAD)) == PAYLOAD
    assert auto_decompress(lzma.compress(PAYLOAD)) == PAYLOAD
    assert auto_decompress(lzma.compress(PAYLOAD, format=lzma.FORMAT_ALONE)) == PAYLOAD


def test_auto_decompress_raw_passthrough():
    raw = b"MZ" + bytes(100)
    assert auto_decompress(raw) == raw


def test_auto_decompress_zstd_is_kept_raw():
    data = b"\x28\xb5\x2f\xfd" + bytes(20)
    assert auto_decompress(data) == data


def test_auto_decompress_bad_lz4_legacy_falls_back_to_raw():
    data = b"\x02\x21\x4c\x18" + struct.pack("<I", 0xFFFFFFF0) + bytes(8)
    assert auto_decompress(data) == data


def test_auto_decompress_bzip2_unsupported():
    with pytest.raises(CompressionError):
        auto_decompress(b"BZh91AY&SY" + bytes(10))


def test_auto_decompress_too_short():
    with pytest.raises(CompressionError):
        auto_decompress(b"\x1f\x8b")


def test_auto_decompress_bad_gzip_raises():
    with pytest.raises(CompressionError):
        auto_decompress(b"\x1f\x8b\x08\x00" + b"\xff" * 20)
import struct

import pytest

from kite_patcher.kallsyms_scan import (
    KSYM_TOKEN_NUMS,
    KallsymInfo,
    KallsymsError,
    decompress_symbol_name,
    find_linux_banner,
    find_markers,
    find_token_index,
    find_token_table,
)


def _tokens():
    tokens = []
    for i in range(KSYM_TOKEN_NUMS):
        if ord("0") <= i <= ord("9") or ord("a") <= i <= ord("j"):
            tokens.append(bytes([i]))
        elif i == ord(":"):
            tokens.append(b"xy")
        else:
            tokens.append(b"zz")
    return tokens


def _token_image(start=64):
    table = b"".join(t + b"\x00" for t in _tokens())
    return bytes(start) + table + bytes(64), table


def test_find_linux_banner():
    img = b"\x00" * 8 + b"Linux version 5.10.43-x (gcc) #1\x00junk"
    info = KallsymInfo()
    kver = find_linux_banner(info, img)
    assert (info.version_major, info.version_minor, info.version_patch) == (5, 10, 43)
    assert kver == (5 << 16) + (10 << 8) + 43
    assert info.linux_banner_offsets == [8]


def test_find_linux_banner_missing():
    with pytest.raises(KallsymsError):
        find_linux_banner(KallsymInfo(), b"\x00" * 32 + b"Linux version x")


def test_find_token_table():
    img, _ = _token_image()
    info = KallsymInfo()
    assert find_token_table(info, img) == 64
    assert info.token_table[ord("0")] == b"0"
    assert info.token_table[ord(":")] == b"xy"
    assert len(info.token_table) == KSYM_TOKEN_NUMS


def test_find_token_table_missing():
    with pytest.raises(KallsymsError):
        find_token_table(KallsymInfo(), bytes(256))


@pytest.mark.parametrize("order,is_be", [("<", False), (">", True)])
def test_find_token_index(order, is_be):
    img, table = _token_image()
    idx, off = [], 0
    for tok in _tokens():
        idx.append(off)
        off += len(tok) + 1
    index_bytes = struct.pack(f"{order}{KSYM_TOKEN_NUMS}H", *idx)
    full = img + index_bytes
    info = KallsymInfo(token_table_offset=64)
    assert find_token_index(info, full) == len(img)
    assert info.is_be is is_be


def test_decompress_symbol_name():
    info = KallsymInfo(token_table=_tokens())
    img = bytes([3, ord("a"), ord("b"), ord("c"), 0])
    sym_type, name, nxt = decompress_symbol_name(info, img, 0)
    assert sym_type == "a"
    assert name == "bc"
    assert nxt == 4


def test_decompress_symbol_name_zero_length():
    info = KallsymInfo(token_table=_tokens())
    with pytest.raises(KallsymsError):
        decompress_symbol_name(info, bytes(4), 0)


def test_markers_elem_size_depends_on_version():
    old = KallsymInfo(version_major=4, version_minor=19)
    new = KallsymInfo(version_major=5, version_minor=4)
    assert old.markers_elem_size() == old.asm_ptr_size
    assert new.markers_elem_size() == new.asm_long_size
    assert KallsymInfo(markers_elem_size_found=4).markers_elem_size() == 4


def test_find_markers():
    token_off = 0x12000
    count = 150
    start = token_off - count * 4
    img = bytearray(0x13000)
    img[start:token_off] = struct.pack(f"<{count}I", *(i * 16 for i in range(count)))
    info = KallsymInfo(version_major=5, version_minor=10, token_table_offset=token_off)
    assert find_markers(info, img) == start
    assert info.marker_num == count - 1
    assert info.markers_elem_size_found == 4


def test_find_markers_missing():
    info = KallsymInfo(version_major=5, version_minor=10, token_table_offset=0x12000)
    with pytest.raises(KallsymsError):
        find_markers(info, bytes(0x13000))
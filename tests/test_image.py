import pytest

from kite_patcher.common import encode_branch
from kite_patcher.image import (
    KERNEL_MAGIC,
    KernelImageError,
    KernelInfo,
    get_kernel_info,
    kernel_resize,
)


def make_image(*, uefi=False, entry=0x40, load_offset=0x80000, kernel_size=0x200000, flags=2, size=128):
    img = bytearray(size)
    if uefi:
        img[0:2] = b"MZ"
        img[4:8] = encode_branch(4, entry).to_bytes(4, "little")
    else:
        img[0:4] = encode_branch(0, entry).to_bytes(4, "little")
    img[8:16] = load_offset.to_bytes(8, "little")
    img[16:24] = kernel_size.to_bytes(8, "little")
    img[24:32] = flags.to_bytes(8, "little")
    img[56:60] = KERNEL_MAGIC
    return img


def test_plain_header_fields():
    info = get_kernel_info(bytes(make_image(entry=0x40, load_offset=0x80000, kernel_size=0x200000)))
    assert info.uefi is False
    assert info.b_stext_insn_offset == 0
    assert info.primary_entry_offset == 0x40
    assert info.load_offset == 0x80000
    assert info.kernel_size == 0x200000
    assert info.is_be is False


def test_uefi_header_fields():
    info = get_kernel_info(bytes(make_image(uefi=True, entry=0x10000)))
    assert info.uefi is True
    assert info.b_stext_insn_offset == 4
    assert info.primary_entry_offset == 0x10000


@pytest.mark.parametrize("flags,shift", [(0, 12), (2, 12), (4, 14), (6, 16)])
def test_page_shift(flags, shift):
    assert get_kernel_info(bytes(make_image(flags=flags))).page_shift == shift


def test_big_endian_rejected():
    with pytest.raises(KernelImageError):
        get_kernel_info(bytes(make_image(flags=1)))


def test_bad_magic_rejected():
    img = make_image()
    img[56:60] = b"XXXX"
    with pytest.raises(KernelImageError):
        get_kernel_info(bytes(img))


def test_non_branch_entry_rejected():
    img = make_image()
    img[0:4] = bytes(4)
    with pytest.raises(KernelImageError):
        get_kernel_info(bytes(img))


def test_short_image_rejected():
    with pytest.raises(KernelImageError):
        get_kernel_info(bytes(20))


def test_kernel_resize_round_trip():
    img = make_image(kernel_size=0x1000)
    info = get_kernel_info(bytes(img))
    kernel_resize(info, img, 0x345000)
    assert info.kernel_size == 0x345000
    assert get_kernel_info(bytes(img)).kernel_size == 0x345000


def test_kernel_resize_big_endian_layout():
    img = bytearray(64)
    kernel_resize(KernelInfo(is_be=True), img, 0x1234)
    assert bytes(img[16:24]) == (0x1234).to_bytes(8, "big")
import pytest

from kite_patcher.formats import (
    IOC_NONE,
    IOC_READ,
    IOC_WRITE,
    KITE_IOCTL_CALL_CTL0,
    KITE_IOCTL_GET_VERSION,
    KITE_PRESET_MAGIC,
    KPM_MAGIC,
    KPM_VERSION,
    FormatError,
    KitePreset,
    KpmHeader,
    ioc,
)


def test_kpm_header_round_trip():
    header = KpmHeader(load_size=0x2000, name_size=5, author_size=7, desc_size=11,
                       target_size=3, license_size=4, depends_size=2, reserved=(1, 2, 3, 4))
    packed = header.pack()
    assert len(packed) == KpmHeader.SIZE
    assert KpmHeader.unpack(packed) == header


def test_kpm_header_starts_with_magic_and_version():
    packed = KpmHeader().pack()
    assert packed[:4] == KPM_MAGIC
    assert int.from_bytes(packed[4:8], "little") == KPM_VERSION


def test_kpm_header_bad_magic():
    packed = bytearray(KpmHeader().pack())
    packed[:4] = b"ELF\x00"
    with pytest.raises(FormatError):
        KpmHeader.unpack(bytes(packed))


def test_kpm_header_short_data():
    with pytest.raises(FormatError):
        KpmHeader.unpack(KpmHeader().pack()[:-1])


def test_kpm_header_bad_reserved():
    with pytest.raises(FormatError):
        KpmHeader(reserved=(0, 0)).pack()


def test_preset_round_trip():
    preset = KitePreset(kernel_pa=0x40000000, paging_init_offset=0x1234,
                        map_cave_offset=0x5678, start_offset=0x9ABC,
                        kernel_version=0x050A66, flags=3)
    packed = preset.pack()
    assert len(packed) == KitePreset.SIZE
    assert KitePreset.unpack(packed) == preset


def test_preset_magic_bytes():
    packed = KitePreset().pack()
    assert packed[:4] == KITE_PRESET_MAGIC.to_bytes(4, "little")


def test_preset_bad_magic_and_short():
    with pytest.raises(FormatError):
        KitePreset.unpack(bytes(KitePreset.SIZE))
    with pytest.raises(FormatError):
        KitePreset.unpack(KitePreset().pack()[:10])


def test_preset_field_overflow():
    with pytest.raises(FormatError):
        KitePreset(flags=1 << 40).pack()


def test_ioc_get_version_value():
    assert ioc(IOC_READ, "K", 4, 4) == 0x80044B04
    assert KITE_IOCTL_GET_VERSION == ioc(IOC_READ, "K", 4, 4)


def test_ioc_accepts_char_or_int():
    assert ioc(IOC_READ, "K", 4, 4) == ioc(IOC_READ, ord("K"), 4, 4)


def test_ioc_directions_are_distinct_bits():
    base = ioc(IOC_NONE, "K", 2, 8)
    assert KITE_IOCTL_CALL_CTL0 == base | (ioc(IOC_READ, "K", 2, 8) ^ base) | (ioc(IOC_WRITE, "K", 2, 8) ^ base)


@pytest.mark.parametrize("args", [(4, "K", 0, 0), (IOC_READ, "K", 256, 0), (IOC_READ, "K", 0, 1 << 14)])
def test_ioc_out_of_range(args):
    with pytest.raises(ValueError):
        ioc(*args)
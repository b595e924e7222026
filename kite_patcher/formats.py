"""Binary layouts shared with the injected core: KPM headers, presets, ioctl numbers."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import ClassVar, Tuple, Union

KITE_VERSION_MAJOR = 6
KITE_VERSION_MINOR = 0
KITE_VERSION_PATCH = 0
KITE_VERSION_STR = "6.0.0"

KPM_MAGIC = b"KPM\x00"
KPM_VERSION = 1

KITE_PRESET_MAGIC = 0x4B495445

KITE_DEV_PATH = "/dev/kite"
KITE_IOCTL_MAGIC = "K"

IOC_NONE = 0
IOC_WRITE = 1
IOC_READ = 2

_IOC_NRBITS = 8
_IOC_TYPEBITS = 8
_IOC_SIZEBITS = 14
_IOC_DIRBITS = 2
_IOC_NRSHIFT = 0
_IOC_TYPESHIFT = _IOC_NRSHIFT + _IOC_NRBITS
_IOC_SIZESHIFT = _IOC_TYPESHIFT + _IOC_TYPEBITS
_IOC_DIRSHIFT = _IOC_SIZESHIFT + _IOC_SIZEBITS

_POINTER_SIZE = 8
_U32_SIZE = 4


class FormatError(ValueError):
    """Raised when a binary structure cannot be decoded."""


@dataclass
class KpmHeader:
    """Header at the start of a KPM module package."""

    FORMAT: ClassVar[struct.Struct] = struct.Struct("<4s13I")
    SIZE: ClassVar[int] = FORMAT.size

    magic: bytes = KPM_MAGIC
    version: int = KPM_VERSION
    header_size: int = FORMAT.size
    load_size: int = 0
    name_size: int = 0
    author_size: int = 0
    desc_size: int = 0
    target_size: int = 0
    license_size: int = 0
    depends_size: int = 0
    reserved: Tuple[int, int, int, int] = field(default=(0, 0, 0, 0))

    def pack(self) -> bytes:
        if len(self.reserved) != 4:
            raise FormatError("KPM header needs exactly four reserved words")
        try:
            return self.FORMAT.pack(
                self.magic,
                self.version,
                self.header_size,
                self.load_size,
                self.name_size,
                self.author_size,
                self.desc_size,
                self.target_size,
                self.license_size,
                self.depends_size,
                *self.reserved,
            )
        except struct.error as exc:
            raise FormatError(f"cannot pack KPM header: {exc}") from exc

    @classmethod
    def unpack(cls, data: bytes) -> "KpmHeader":
        if len(data) < cls.SIZE:
            raise FormatError(f"KPM header needs {cls.SIZE} bytes, got {len(data)}")
        fields = cls.FORMAT.unpack_from(data)
        if fields[0] != KPM_MAGIC:
            raise FormatError(f"bad KPM magic: {fields[0]!r}")
        return cls(*fields[:10], reserved=tuple(fields[10:]))


@dataclass
class KitePreset:
    """Preset block the patcher fills in for the injected core."""

    FORMAT: ClassVar[struct.Struct] = struct.Struct("<IIQQQQII")
    SIZE: ClassVar[int] = FORMAT.size

    magic: int = KITE_PRESET_MAGIC
    version: int = KITE_VERSION_MAJOR
    kernel_pa: int = 0
    paging_init_offset: int = 0
    map_cave_offset: int = 0
    start_offset: int = 0
    kernel_version: int = 0
    flags: int = 0

    def pack(self) -> bytes:
        try:
            return self.FORMAT.pack(
                self.magic,
                self.version,
                self.kernel_pa,
                self.paging_init_offset,
                self.map_cave_offset,
                self.start_offset,
                self.kernel_version,
                self.flags,
            )
        except struct.error as exc:
            raise FormatError(f"cannot pack preset: {exc}") from exc

    @classmethod
    def unpack(cls, data: bytes) -> "KitePreset":
        if len(data) < cls.SIZE:
            raise FormatError(f"preset needs {cls.SIZE} bytes, got {len(data)}")
        fields = cls.FORMAT.unpack_from(data)
        if fields[0] != KITE_PRESET_MAGIC:
            raise FormatError(f"bad preset magic: 0x{fields[0]:08x}")
        return cls(*fields)


def ioc(direction: int, type_char: Union[str, int], number: int, size: int) -> int:
    """Build a Linux ioctl request number from its four fields."""
    type_value = ord(type_char) if isinstance(type_char, str) else type_char
    limits = (
        ("direction", direction, _IOC_DIRBITS),
        ("type", type_value, _IOC_TYPEBITS),
        ("number", number, _IOC_NRBITS),
        ("size", size, _IOC_SIZEBITS),
    )
    for name, value, bits in limits:
        if not 0 <= value < (1 << bits):
            raise ValueError(f"ioctl {name} {value} does not fit in {bits} bits")
    return (
        (direction << _IOC_DIRSHIFT)
        | (type_value << _IOC_TYPESHIFT)
        | (number << _IOC_NRSHIFT)
        | (size << _IOC_SIZESHIFT)
    )


KITE_IOCTL_LOAD_MODULE = ioc(IOC_WRITE, KITE_IOCTL_MAGIC, 0, _POINTER_SIZE)
KITE_IOCTL_UNLOAD_MODULE = ioc(IOC_WRITE, KITE_IOCTL_MAGIC, 1, _POINTER_SIZE)
KITE_IOCTL_CALL_CTL0 = ioc(IOC_READ | IOC_WRITE, KITE_IOCTL_MAGIC, 2, _POINTER_SIZE)
KITE_IOCTL_CALL_CTL1 = ioc(IOC_READ | IOC_WRITE, KITE_IOCTL_MAGIC, 3, _POINTER_SIZE)
KITE_IOCTL_GET_VERSION = ioc(IOC_READ, KITE_IOCTL_MAGIC, 4, _U32_SIZE)
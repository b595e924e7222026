# kite_patcher

A pure-Python library for working with arm64 Linux kernel images and
Android boot images.

- `kite_patcher.common`: alignment, sign extension, arm64 `B` instruction
  encoding (`can_b_imm`, `encode_branch`, `relo_branch_func`), integer
  decoding (`int_unpack`, `uint_unpack`) and file helpers (`read_file_align`,
  `write_file`).
- `kite_patcher.image`: read the arm64 kernel image header into a
  `KernelInfo` (`get_kernel_info`) and rewrite its size field
  (`kernel_resize`).
- `kite_patcher.compression`: identify a kernel payload's format
  (`detect_compress_method`, returning a `CompressMethod`), compress and
  decompress gzip, LZ4 frame and LZ4 legacy streams, decompress XZ, and
  unpack whatever is detected with `auto_decompress` (gzip, LZ4 frame,
  LZ4 legacy, XZ and LZMA; anything unrecognised is returned unchanged).
- `kite_patcher.bootimg`: the Android boot image header (`BootImageHeader`)
  and AVB footer (`AvbFooter`), taking the kernel out of a boot image
  (`extract_kernel`) and putting a new kernel back in (`repack_bootimg`).
  Repacking compresses the new kernel the way the old one was compressed,
  keeps a DTB appended to the kernel, works out the header id hash again
  (SHA-1 or SHA-256) and updates the AVB footer sizes.
- `kite_patcher.kallsyms_scan` and `kite_patcher.kallsyms`: find the
  kallsyms tables in a raw kernel (`analyze_kallsym_info`, giving a
  `KallsymInfo`) and look up symbols (`get_symbol_offset`,
  `get_symbol_offset_and_size`, `iter_symbols`, `dump_all_symbols`).
- `kite_patcher.formats`: pack and unpack the KPM module header
  (`KpmHeader`) and the patcher preset record (`KitePreset`), and build ioctl
  request numbers (`ioc`, plus the `KITE_IOCTL_*` constants).

## Installation

```
pip install .
```

The LZ4 formats need the `lz4` package, which is installed as a dependency.

## Examples

Take the kernel out of a boot image, then repack it after you patch it:

```python
from kite_patcher.bootimg import extract_kernel, repack_bootimg

extract_kernel("boot.img", "kernel")
# ... patch "kernel" ...
repack_bootimg("boot.img", "kernel", "boot-new.img")
```

XZ and LZMA kernels are repacked as gzip.

Read the kernel header and look up symbols:

```python
from kite_patcher.common import read_file_align
from kite_patcher.image import get_kernel_info
from kite_patcher.kallsyms import analyze_kallsym_info, get_symbol_offset, iter_symbols

img = read_file_align("kernel", 4096)
kinfo = get_kernel_info(img)
print(hex(kinfo.primary_entry_offset), kinfo.page_shift)

info = analyze_kallsym_info(img, True)
print(hex(get_symbol_offset(info, img, "pid_vnr")))

for index, sym_type, name, offset in iter_symbols(info, img):
    print(index, sym_type, name, offset)
```

When `img` is a `bytearray`, `analyze_kallsym_info` writes any relocations
it applies back into it.

Every failure raises an exception, for example `BootImageError`,
`CompressionError`, `KernelImageError`, `KallsymsError` or `FormatError`.

## What it does not do

- There is no command-line tool; everything is used from Python.
- It does not talk to a running kernel: `kite_patcher.formats` only builds
  the ioctl request numbers and record layouts.
- zstd and bzip2 kernels cannot be repacked, and bzip2 payloads cannot be
  decompressed.

## Running the tests

```
pip install .[test]
python -m pytest
```
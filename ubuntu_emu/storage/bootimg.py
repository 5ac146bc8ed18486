"""Android boot image decomposition.

Boot and recovery images bundle a kernel, a ramdisk and an optional second
stage loader behind a one-page header::

    0   magic "ANDROID!"       8 bytes
    8   kernel_size            uint32 LE
    12  kernel_addr            uint32 LE
    16  ramdisk_size           uint32 LE
    20  ramdisk_addr           uint32 LE
    24  second_size            uint32 LE
    28  second_addr            uint32 LE
    32  tags_addr              uint32 LE
    36  page_size              uint32 LE

Each segment starts on a page boundary, right after the previous one:
kernel at 1 page, ramdisk at ``(1 + pages(kernel)) * page``, second after
the ramdisk, where ``pages(n) = ceil(n / page_size)``.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from pathlib import Path

from ubuntu_emu.logging import LoggerFactory
from ubuntu_emu.storage.exceptions import FormatError

log = LoggerFactory.for_storage()

BOOT_MAGIC = b"ANDROID!"
HEADER_FORMAT = "<8s8I"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)


def pages(size: int, page_size: int) -> int:
    return (size + page_size - 1) // page_size


@dataclass(frozen=True)
class BootImageHeader:
    magic: bytes
    kernel_size: int
    kernel_addr: int
    ramdisk_size: int
    ramdisk_addr: int
    second_size: int
    second_addr: int
    tags_addr: int
    page_size: int

    @classmethod
    def parse(cls, data: bytes) -> BootImageHeader:
        if len(data) < HEADER_SIZE:
            raise FormatError(f"Boot image header truncated ({len(data)} bytes)")
        header = cls(*struct.unpack_from(HEADER_FORMAT, data))
        if header.magic != BOOT_MAGIC:
            raise FormatError(f"Bad boot image magic {header.magic!r}")
        if header.page_size == 0:
            raise FormatError("Boot image page size is zero")
        return header

    @property
    def kernel_offset(self) -> int:
        return self.page_size

    @property
    def ramdisk_offset(self) -> int:
        return self.kernel_offset + pages(self.kernel_size, self.page_size) * self.page_size

    @property
    def second_offset(self) -> int:
        return self.ramdisk_offset + pages(self.ramdisk_size, self.page_size) * self.page_size

    def segments(self) -> dict[str, tuple[int, int]]:
        """Segment name -> (offset, size); second only when present."""
        segments = {
            "kernel": (self.kernel_offset, self.kernel_size),
            "ramdisk": (self.ramdisk_offset, self.ramdisk_size),
        }
        if self.second_size:
            segments["second"] = (self.second_offset, self.second_size)
        return segments


class BootImageExtractor:
    """Writes the segments of a boot image to individual files."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._header: BootImageHeader | None = None

    @property
    def header(self) -> BootImageHeader:
        if self._header is None:
            with open(self.path, "rb") as f:
                self._header = BootImageHeader.parse(f.read(HEADER_SIZE))
        return self._header

    def extract(self, output_dir: Path, names: dict[str, str] | None = None) -> dict[str, Path]:
        """Extract kernel, ramdisk and second stage into ``output_dir``.

        Args:
            output_dir: Destination directory, created if missing
            names: Output file name per segment; defaults to the segment name

        Returns:
            Mapping of segment name to the written file

        Raises:
            FormatError: Bad magic or a segment that runs past the end of file
        """
        names = names or {}
        header = self.header
        file_size = self.path.stat().st_size
        segments = header.segments()
        for segment, (offset, size) in segments.items():
            if offset + size > file_size:
                raise FormatError(
                    f"{segment} segment ({size} bytes at {offset}) exceeds "
                    f"{self.path.name} ({file_size} bytes)",
                    path=str(self.path),
                )

        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        written = {}
        with open(self.path, "rb") as f:
            for segment, (offset, size) in segments.items():
                target = output_dir / names.get(segment, segment)
                f.seek(offset)
                target.write_bytes(f.read(size))
                written[segment] = target
        log.debug(f"Extracted {', '.join(written)} from {self.path}")
        return written


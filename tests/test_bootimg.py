"""Tests for android boot image decomposition."""

import pytest

from ubuntu_emu.storage.bootimg import BootImageExtractor, BootImageHeader, pages
from ubuntu_emu.storage.exceptions import FormatError


class TestHeader:
    """Tests for header parsing and segment offsets."""

    def test_offsets_are_page_aligned(self, boot_image_bytes):
        header = BootImageHeader.parse(boot_image_bytes)

        assert header.page_size == 2048
        assert header.kernel_offset == 2048
        assert header.ramdisk_offset == 6144
        assert header.segments() == {"kernel": (2048, 4096), "ramdisk": (6144, 2048)}

    def test_partial_pages_round_up(self, make_boot_image):
        header = BootImageHeader.parse(make_boot_image(b"K" * 10, b"R" * 2049, b"S" * 3))

        assert header.ramdisk_offset == 4096
        assert header.second_offset == 4096 + 2 * 2048
        assert "second" in header.segments()

    def test_bad_magic(self, make_boot_image):
        data = make_boot_image(b"K", b"R", magic=b"NOTBOOT!")

        with pytest.raises(FormatError, match="magic"):
            BootImageHeader.parse(data)

    def test_truncated_header(self):
        with pytest.raises(FormatError, match="truncated"):
            BootImageHeader.parse(b"ANDROID!\x00\x01")

    def test_zero_page_size(self, make_boot_image):
        data = bytearray(make_boot_image(b"K", b"R"))
        data[36:40] = b"\0\0\0\0"

        with pytest.raises(FormatError, match="page size"):
            BootImageHeader.parse(bytes(data))

    @pytest.mark.parametrize(
        "size,expected",
        [(0, 0), (1, 1), (2048, 1), (2049, 2)],
    )
    def test_pages(self, size, expected):
        assert pages(size, 2048) == expected


class TestExtractor:
    """Tests for BootImageExtractor.extract."""

    def test_extract_with_names(self, tmp_path, boot_image_bytes):
        source = tmp_path / "boot.img"
        source.write_bytes(boot_image_bytes)

        written = BootImageExtractor(source).extract(
            tmp_path / "out", {"kernel": "ubuntu-kernel", "ramdisk": "ramdisk.img"}
        )

        assert written["kernel"] == tmp_path / "out" / "ubuntu-kernel"
        assert written["kernel"].read_bytes() == b"K" * 4096
        assert written["ramdisk"].read_bytes() == b"R" * 2048
        assert "second" not in written

    def test_extract_second_stage(self, tmp_path, make_boot_image):
        source = tmp_path / "recovery.img"
        source.write_bytes(make_boot_image(b"K" * 100, b"R" * 100, b"S" * 100))

        written = BootImageExtractor(source).extract(tmp_path)

        assert written["second"].read_bytes() == b"S" * 100
        assert written["second"].name == "second"

    def test_segment_past_end_of_file(self, tmp_path, boot_image_bytes):
        source = tmp_path / "boot.img"
        source.write_bytes(boot_image_bytes[:7000])

        with pytest.raises(FormatError, match="ramdisk segment"):
            BootImageExtractor(source).extract(tmp_path / "out")

        assert not (tmp_path / "out").exists()

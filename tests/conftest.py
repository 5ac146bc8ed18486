"""
Pytest configuration and shared fixtures for ubuntu-emu tests.

This module provides common fixtures and utilities used across all test modules.
"""

import io
import shutil
import struct
import subprocess
import tarfile
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from ubuntu_emu.domain import ImageFile, Release
from ubuntu_emu.storage.privileges import PrivilegeGuard


# ==============================================================================
# Command Runner Fixtures
# ==============================================================================


class FakeRunner:
    """Stand-in for run_command that records calls instead of running tools.

    - ``losetup --find --show`` returns ``loop_device``
    - ``parted ... print`` reports one partition per ``mkpart`` issued for
      the image since its last ``mklabel``
    - ``qemu-img convert`` creates its output file
    - ``cp`` copies its source to its destination
    Failures are registered with ``fail_on(prefix, error, times)``.
    """

    def __init__(self, loop_device: str = "/dev/loop7"):
        self.loop_device = loop_device
        self.calls: List[List[str]] = []
        self.failures: List[list] = []
        self.stdout: Dict[tuple, str] = {}
        self._mkpart: Dict[str, int] = {}

    def fail_on(self, prefix, error: Exception, times: Optional[int] = None) -> None:
        self.failures.append([list(prefix), error, times])

    def respond(self, prefix, stdout: str) -> None:
        self.stdout[tuple(prefix)] = stdout

    def commands(self, tool: str) -> List[List[str]]:
        return [call for call in self.calls if call[0] == tool]

    def __call__(self, command, **kwargs):
        command = [str(part) for part in command]
        self.calls.append(command)

        for failure in self.failures:
            prefix, error, times = failure
            if command[: len(prefix)] == prefix and times != 0:
                if times is not None:
                    failure[2] = times - 1
                raise error

        for prefix, stdout in self.stdout.items():
            if tuple(command[: len(prefix)]) == prefix:
                return subprocess.CompletedProcess(command, 0, stdout=stdout, stderr="")

        stdout = ""
        if command[0] == "losetup" and "--find" in command:
            stdout = self.loop_device + "\n"
        elif command[0] == "parted":
            stdout = self._parted(command)
        elif command[:2] == ["qemu-img", "convert"]:
            Path(command[-1]).write_bytes(b"QFI\xfb")
        elif command[0] == "cp":
            shutil.copyfile(command[-2], command[-1])
        return subprocess.CompletedProcess(command, 0, stdout=stdout, stderr="")

    def _parted(self, command: List[str]) -> str:
        image = next(part for part in command if part.endswith(".img"))
        if "mklabel" in command:
            self._mkpart[image] = 0
        elif "mkpart" in command:
            self._mkpart[image] = self._mkpart.get(image, 0) + 1
        elif "print" in command:
            lines = ["BYT;", f"{image}:4294967296B:file:512:512:msdos::;"]
            start = 1048576
            for number in range(1, self._mkpart.get(image, 0) + 1):
                size = 134217728
                lines.append(f"{number}:{start}B:{start + size - 1}B:{size}B:ext4::;")
                start += size
            return "\n".join(lines) + "\n"
        return ""


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Fixture providing a recording command runner."""
    return FakeRunner()


@pytest.fixture
def mock_guard() -> MagicMock:
    """Fixture providing a PrivilegeGuard whose scopes do nothing."""
    return MagicMock(spec=PrivilegeGuard)


@pytest.fixture
def mount_base(tmp_path, mocker) -> Path:
    """Fixture pinning the temporary mount directory of DiskImage.mount."""
    base = tmp_path / "mnt"
    base.mkdir()
    mocker.patch(
        "ubuntu_emu.storage.diskimage.tempfile.mkdtemp", return_value=str(base)
    )
    return base


# ==============================================================================
# Archive and Boot Image Fixtures
# ==============================================================================


def write_tarball(path: Path, members: Dict[str, bytes]) -> Path:
    """Write a tar.xz containing ``members`` (name -> content)."""
    with tarfile.open(path, "w:xz") as tar:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return path


def build_boot_image(
    kernel: bytes,
    ramdisk: bytes,
    second: bytes = b"",
    page_size: int = 2048,
    magic: bytes = b"ANDROID!",
) -> bytes:
    """Assemble an android boot image with page-aligned segments."""

    def padded(data: bytes) -> bytes:
        remainder = len(data) % page_size
        return data + b"\0" * ((page_size - remainder) % page_size)

    header = struct.pack(
        "<8s8I",
        magic,
        len(kernel),
        0x10008000,
        len(ramdisk),
        0x11000000,
        len(second),
        0x10F00000,
        0x10000100,
        page_size,
    )
    image = padded(header) + padded(kernel) + padded(ramdisk)
    if second:
        image += padded(second)
    return image


@pytest.fixture
def make_tarball(tmp_path):
    """Factory fixture writing tarballs into tmp_path."""

    def _make(name: str, members: Dict[str, bytes]) -> Path:
        return write_tarball(tmp_path / name, members)

    return _make


@pytest.fixture
def make_boot_image():
    """Factory fixture assembling boot images."""
    return build_boot_image


@pytest.fixture
def boot_image_bytes() -> bytes:
    """Boot image with a 4096 byte kernel and a 2048 byte ramdisk."""
    return build_boot_image(b"K" * 4096, b"R" * 2048)


# ==============================================================================
# Release Fixtures
# ==============================================================================


@pytest.fixture
def sample_index() -> dict:
    """Fixture providing a system-image index.json payload."""
    return {
        "global": {"generated_at": "Mon Oct 12 10:00:00 UTC 2026"},
        "images": [
            {
                "type": "full",
                "version": 40,
                "description": "ubports=20261001",
                "files": [],
            },
            {
                "type": "delta",
                "version": 42,
                "base": 41,
                "files": [],
            },
            {
                "type": "full",
                "version": 42,
                "description": "ubports=20261012",
                "files": [
                    {"path": "/pool/version-42.tar.xz", "checksum": "c" * 64, "size": 300, "order": 2},
                    {"path": "/pool/ubports-aaa.tar.xz", "checksum": "a" * 64, "size": 100, "order": 0},
                    {"path": "/pool/device-bbb.tar.xz", "checksum": "b" * 64, "size": 200, "order": 1},
                ],
            },
            {
                "type": "full",
                "version": 41,
                "description": "ubports=20261005",
                "files": [],
            },
        ],
    }


@pytest.fixture
def sample_release() -> Release:
    """Fixture providing a resolved release of three files."""
    return Release(
        version=42,
        files=(
            ImageFile("/pool/ubports-aaa.tar.xz", size=100),
            ImageFile("/pool/device-bbb.tar.xz", size=200),
            ImageFile("/pool/version-42.tar.xz", size=300),
        ),
        description="ubports=20261012",
        channel="ubports-touch/16.04/stable",
        device="generic_x86",
    )

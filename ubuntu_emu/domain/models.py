"""Domain model for emulator provisioning.

Type-safe objects for partition layouts, release metadata and the device
descriptors consumed by the boot setup.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import urljoin

import yaml

from ubuntu_emu.storage.exceptions import ConfigurationError


# ==============================================================================
# Partition Domain
# ==============================================================================


class FilesystemKind(Enum):
    EXT4 = "ext4"
    VFAT = "vfat"

    @property
    def parted_name(self) -> str:
        """Filesystem type hint understood by ``parted mkpart``."""
        return "fat32" if self is FilesystemKind.VFAT else "ext4"


class TableKind(Enum):
    MSDOS = "msdos"
    GPT = "gpt"


class ImageFormat(Enum):
    RAW = "raw"
    QCOW2 = "qcow2"


@dataclass(frozen=True)
class PartitionDecl:
    """One declared partition. ``size_mb=None`` means rest of disk."""

    label: str
    mount_dir: str
    filesystem: FilesystemKind
    size_mb: int | None

    @property
    def unbounded(self) -> bool:
        return self.size_mb is None


@dataclass(frozen=True)
class PartitionSpec:
    """Ordered partition declarations plus table kind and boot flag.

    ``boot_index`` uses partition numbering (1-based) as parted does.
    """

    table: TableKind
    partitions: tuple[PartitionDecl, ...]
    boot_index: int | None = None

    @property
    def bounded_mb(self) -> int:
        return sum(p.size_mb for p in self.partitions if p.size_mb is not None)


@dataclass(frozen=True)
class Partition:
    """A created partition with the geometry reported by parted."""

    number: int
    label: str
    mount_dir: str
    filesystem: FilesystemKind
    start_bytes: int
    end_bytes: int
    size_bytes: int

    def device_node(self, loop_device: str) -> str:
        """Partition node of an attached loop device (e.g., /dev/loop0p2)."""
        return f"{loop_device}p{self.number}"


# ==============================================================================
# Release Domain
# ==============================================================================


@dataclass(frozen=True)
class ImageFile:
    """A file belonging to a release, as listed in the server index."""

    path: str  # server-relative, e.g. "/pool/ubuntu-1234.tar.xz"
    checksum: str | None = None  # sha256 hex digest
    size: int | None = None
    signature: str | None = None
    server: str | None = None

    @property
    def relative_path(self) -> str:
        return self.path.lstrip("/")

    @property
    def name(self) -> str:
        return Path(self.path).name

    def relative_to_server(self, server: str) -> ImageFile:
        """Bind the file to the server it is downloaded from."""
        if not server:
            raise ValueError("server URL is required")
        return replace(self, server=server.rstrip("/") + "/")

    @property
    def url(self) -> str:
        if not self.server:
            raise ValueError(f"{self.path} is not bound to a server")
        return urljoin(self.server, self.relative_path)

    @classmethod
    def from_index_dict(cls, data: dict[str, Any]) -> ImageFile:
        return cls(
            path=data["path"],
            checksum=data.get("checksum"),
            size=int(data["size"]) if data.get("size") is not None else None,
            signature=data.get("signature"),
        )


@dataclass(frozen=True)
class Release:
    """A resolved image release for one channel/device."""

    version: int
    files: tuple[ImageFile, ...]
    description: str = ""
    channel: str = ""
    device: str = ""

    @classmethod
    def from_index_dict(
        cls, data: dict[str, Any], channel: str = "", device: str = ""
    ) -> Release:
        files = sorted(data.get("files", []), key=lambda f: f.get("order", 0))
        return cls(
            version=int(data["version"]),
            files=tuple(ImageFile.from_index_dict(f) for f in files),
            description=data.get("description", ""),
            channel=channel,
            device=device,
        )


# ==============================================================================
# Device Descriptors
# ==============================================================================


def _load_yaml_mapping(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as error:
        raise ConfigurationError(f"Invalid descriptor {path}: {error}") from error
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid descriptor {path}: expected a mapping")
    return data


@dataclass(frozen=True)
class HardwareDescriptor:
    """Boot requirements of a device, usually read from ``hardware.yaml``.

    Paths are relative to the image's base mount.
    """

    kernel: str
    initrd: str
    dtbs: str = ""
    architecture: str = ""
    bootloader: str = "u-boot"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HardwareDescriptor:
        return cls(
            kernel=data["kernel"],
            initrd=data["initrd"],
            dtbs=data.get("dtbs", "") or "",
            architecture=data.get("architecture", "") or "",
            bootloader=data.get("bootloader", "u-boot") or "u-boot",
        )

    @classmethod
    def from_yaml(cls, path: Path) -> HardwareDescriptor:
        """Load a descriptor from YAML.

        Raises:
            ConfigurationError: If the file is unreadable, not a YAML mapping,
                or lacks kernel or initrd
        """
        data = _load_yaml_mapping(path)
        missing = [key for key in ("kernel", "initrd") if not data.get(key)]
        if missing:
            raise ConfigurationError(f"{path} does not declare {', '.join(missing)}")
        return cls.from_dict(data)


@dataclass(frozen=True)
class OemDescriptor:
    """OEM customisation of a device's boot assets."""

    name: str = ""
    version: str = ""
    platform: str = ""
    dtb: str = ""  # override blob, relative to install_path
    install_path: Path | None = None
    system_parts: tuple[str, ...] = field(default=("a", "b"))

    @classmethod
    def from_dict(cls, data: dict[str, Any], install_path: Path | None = None) -> OemDescriptor:
        hardware = (data.get("oem") or {}).get("hardware") or {}
        return cls(
            name=data.get("name", ""),
            version=str(data.get("version", "")),
            platform=hardware.get("platform", "") or "",
            dtb=hardware.get("dtb", "") or "",
            install_path=install_path,
            system_parts=tuple(data.get("system_parts", ("a", "b"))),
        )

    @classmethod
    def from_yaml(cls, path: Path, install_path: Path | None = None) -> OemDescriptor:
        return cls.from_dict(_load_yaml_mapping(path), install_path=install_path)

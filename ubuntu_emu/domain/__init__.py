"""Domain models for emulator provisioning."""

from __future__ import annotations

from .models import (
    FilesystemKind,
    HardwareDescriptor,
    ImageFile,
    ImageFormat,
    OemDescriptor,
    Partition,
    PartitionDecl,
    PartitionSpec,
    Release,
    TableKind,
)


__all__ = [
    "FilesystemKind",
    "HardwareDescriptor",
    "ImageFile",
    "ImageFormat",
    "OemDescriptor",
    "Partition",
    "PartitionDecl",
    "PartitionSpec",
    "Release",
    "TableKind",
]

"""Custom exceptions for emulator provisioning.

This module defines a hierarchy of exceptions so the workflow can tell
configuration problems apart from catalog, download and disk failures.

Exception Hierarchy:
    EmulatorError (base)
        ├── ConfigurationError
        ├── CatalogError
        ├── DownloadError
        └── StorageError
            ├── ToolError
            ├── PartitioningError
            ├── MountError
            │   └── UnmountFailedError
            ├── FormatError
            └── ExtractionError

None of these are treated as transient: the workflow never retries and
surfaces the first error to its caller.

Usage:
    from ubuntu_emu.storage.exceptions import MountError

    if not loop_device:
        raise MountError("losetup did not return a loop device", image=path)
"""

from __future__ import annotations

from typing import Sequence


class EmulatorError(Exception):
    """Base exception for all provisioning errors."""


class ConfigurationError(EmulatorError):
    """Missing dependency, unsupported device/arch or insufficient privilege."""


class CatalogError(EmulatorError):
    """Channel, device or revision could not be resolved on the image server."""

    def __init__(self, message: str, channel: str = None, device: str = None):
        self.channel = channel
        self.device = device
        super().__init__(message)


class DownloadError(EmulatorError):
    """A release file could not be fetched or failed verification."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot download {path}: {reason}")


class StorageError(EmulatorError):
    """Base exception for disk image operations."""


class ToolError(StorageError):
    """An external tool exited non-zero or timed out."""

    def __init__(self, command: Sequence[str], returncode: int | None, output: str):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        status = "timed out" if returncode is None else f"exit {returncode}"
        message = output or "Command failed"
        super().__init__(f"Command failed ({' '.join(self.command)}, {status}): {message}")


class PartitioningError(StorageError):
    """Partition layout was rejected or the partitioning tool failed."""

    def __init__(self, message: str, image: str = None, output: str = ""):
        self.image = image
        self.output = output
        if output:
            message = f"{message}: {output}"
        super().__init__(message)


class MountError(StorageError):
    """Base exception for loop attach and mount errors."""

    def __init__(self, message: str, image: str = None):
        self.image = image
        super().__init__(message)


class UnmountFailedError(MountError):
    """One or more unmount/detach steps failed."""

    def __init__(self, image: str, errors: Sequence[Exception]):
        self.errors = list(errors)
        details = "; ".join(str(error) for error in self.errors)
        super().__init__(f"Failed to release {image}: {details}", image=image)


class FormatError(StorageError):
    """A boot image could not be parsed."""

    def __init__(self, message: str, path: str = None):
        self.path = path
        super().__init__(message)


class ExtractionError(StorageError):
    """A tarball or image member could not be extracted."""

    def __init__(self, message: str, source: str = None):
        self.source = source
        super().__init__(message)

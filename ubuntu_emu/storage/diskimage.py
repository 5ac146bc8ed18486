"""Disk image lifecycle: create, partition, format, mount, provision, convert.

A DiskImage owns one backing file. It is either unmounted (safe to convert
or move) or mounted (loop device attached, partitions mounted under a
temporary base directory). Mount, format and unmount run as root through the
PrivilegeGuard; the loop device is always detached by the component that
attached it, even when a later step fails.

State machine:
    Created -> Partitioned -> Formatted -> Mounted <-> Unmounted -> Converted/Moved

Example:
    >>> image = DiskImage("sdcard.img", "USERDATA", 3, 4 * GB, privileges=guard)
    >>> image.partition()
    >>> image.format_filesystems()
    >>> image.mount()
    >>> try:
    ...     image.writable()
    ... finally:
    ...     image.unmount()
"""

from __future__ import annotations

import contextlib
import errno
import os
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Iterable, Iterator

from ubuntu_emu.domain import FilesystemKind, ImageFormat, Partition, PartitionSpec, TableKind
from ubuntu_emu.logging import LoggerFactory
from ubuntu_emu.storage import archives
from ubuntu_emu.storage.commands import run_command
from ubuntu_emu.storage.exceptions import (
    ExtractionError,
    MountError,
    StorageError,
    ToolError,
    UnmountFailedError,
)
from ubuntu_emu.storage.partitioning import PartitionPlanner, default_layout
from ubuntu_emu.storage.privileges import PrivilegeGuard

WRITABLE_MARKER = ".writable_image"
ADB_ONLOCK_MARKER = ".adb_onlock"
VFAT_LABEL_MAX = 11


def _volume_label(label: str, filesystem: FilesystemKind) -> str:
    if filesystem is FilesystemKind.VFAT:
        return label.upper()[:VFAT_LABEL_MAX]
    return label


class DiskImage:
    """A backing file plus its partition and mount state."""

    def __init__(
        self,
        location: Path | str,
        label: str,
        part_count: int = 0,
        size_bytes: int = 0,
        *,
        privileges: PrivilegeGuard,
        layout: PartitionSpec | None = None,
        table: TableKind = TableKind.MSDOS,
        root_label: str | None = None,
        filesystem: FilesystemKind = FilesystemKind.EXT4,
        planner: PartitionPlanner | None = None,
        runner: Callable[..., object] = run_command,
        timeout: float | None = None,
    ):
        self.location = Path(location)
        self.label = label
        self.part_count = part_count
        self.size_bytes = size_bytes
        self.privileges = privileges
        self.table = table
        self.root_label = root_label
        self.filesystem = filesystem
        self.format = ImageFormat.RAW
        self.partitions: list[Partition] = []
        self.base_mount: Path | None = None
        self.loop_device: str | None = None
        self._layout = layout
        self._mounted: list[Path] = []
        self._run = runner
        self._timeout = timeout
        self._planner = planner or PartitionPlanner(runner=runner, timeout=timeout)
        self.log = LoggerFactory.for_storage(str(self.location))

    @classmethod
    def existing(cls, location: Path | str, *, privileges: PrivilegeGuard, **kwargs) -> DiskImage:
        """Wrap an existing unpartitioned filesystem image (e.g. system.img)."""
        image = cls(location, "", 0, privileges=privileges, **kwargs)
        if image.location.exists():
            image.size_bytes = image.location.stat().st_size
        return image

    def __repr__(self) -> str:
        state = f"mounted at {self.base_mount}" if self.is_mounted else "unmounted"
        return f"DiskImage({str(self.location)!r}, {state})"

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def layout(self) -> PartitionSpec:
        if self._layout is None:
            self._layout = default_layout(self.part_count, self.table, self.filesystem)
        return self._layout

    @property
    def is_mounted(self) -> bool:
        return self.base_mount is not None

    @property
    def root_partition(self) -> Partition | None:
        if not self.partitions:
            return None
        if self.root_label:
            for partition in self.partitions:
                if partition.label == self.root_label:
                    return partition
            raise StorageError(f"{self.location} has no partition labelled {self.root_label}")
        return self.partitions[0]

    @property
    def mountpoint(self) -> Path | None:
        """Directory holding the root partition while mounted."""
        if self.base_mount is None:
            return None
        root = self.root_partition
        return self.base_mount / root.mount_dir if root else self.base_mount

    def _require_mounted(self) -> Path:
        if not self.is_mounted:
            raise MountError(f"{self.location} is not mounted", image=str(self.location))
        return self.mountpoint

    def _require_unmounted(self, action: str) -> None:
        if self.is_mounted:
            raise StorageError(f"Cannot {action} {self.location} while mounted at {self.base_mount}")

    def _invoke(self, command: list[str]):
        kwargs = {} if self._timeout is None else {"timeout": self._timeout}
        return self._run(command, **kwargs)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(self, size_bytes: int | None = None) -> None:
        """Allocate a sparse backing file of the declared size."""
        if size_bytes is not None:
            self.size_bytes = size_bytes
        if self.size_bytes <= 0:
            raise StorageError(f"Invalid size {self.size_bytes} for {self.location}")
        self.location.parent.mkdir(parents=True, exist_ok=True)
        with open(self.location, "wb") as f:
            f.truncate(self.size_bytes)
        self.format = ImageFormat.RAW
        self.log.debug(f"Created {self.location} ({self.size_bytes} bytes)")

    def partition(self) -> list[Partition]:
        """Create the backing file and write the partition table."""
        self.create()
        self.partitions = self._planner.apply(self.layout, self.location, self.size_bytes)
        return self.partitions

    def format_filesystems(self) -> None:
        """Create a filesystem on every partition (or the whole file)."""
        with self.privileges.escalated():
            if not self.partitions:
                self._mkfs(str(self.location), self.filesystem, self.label)
                return
            with self._attached(partscan=True) as loop:
                for partition in self.partitions:
                    self._mkfs(partition.device_node(loop), partition.filesystem, partition.label)
        self.log.info(f"Formatted {len(self.partitions) or 1} filesystem(s) on {self.location}")

    def _mkfs(self, target: str, filesystem: FilesystemKind, label: str) -> None:
        if filesystem is FilesystemKind.VFAT:
            command = ["mkfs.vfat", "-F", "32"]
        else:
            command = ["mkfs.ext4", "-F"]
        label = _volume_label(label, filesystem)
        if label:
            command += ["-n" if filesystem is FilesystemKind.VFAT else "-L", label]
        self._invoke(command + [target])

    def create_vfat(self) -> None:
        """Create a single vfat filesystem spanning the whole file."""
        self.create()
        self.partitions = []
        self._mkfs(str(self.location), FilesystemKind.VFAT, self.label)

    # ------------------------------------------------------------------
    # Loop devices and mounting
    # ------------------------------------------------------------------

    def _attach(self, partscan: bool) -> str:
        command = ["losetup", "--find", "--show"]
        if partscan:
            command.append("--partscan")
        result = self._invoke(command + [str(self.location)])
        device = result.stdout.strip()
        if not device:
            raise MountError("losetup did not return a loop device", image=str(self.location))
        self.log.debug(f"Attached {self.location} to {device}")
        return device

    def _detach(self, device: str) -> None:
        self._invoke(["losetup", "-d", device])
        self.log.debug(f"Detached {device}")

    @contextlib.contextmanager
    def _attached(self, partscan: bool) -> Iterator[str]:
        try:
            device = self._attach(partscan)
        except ToolError as error:
            raise MountError(f"Cannot attach {self.location}: {error}", image=str(self.location)) from error
        try:
            yield device
        finally:
            self._detach(device)

    def mount(self, read_only: bool = False) -> Path:
        """Attach the image and mount its partitions under a temporary directory.

        Returns:
            The root mountpoint

        Raises:
            MountError: If the loop device cannot be attached or a partition
                cannot be mounted. Anything mounted so far is unmounted and the
                loop device detached before raising.
        """
        if self.is_mounted:
            raise MountError(f"{self.location} is already mounted", image=str(self.location))

        with self.privileges.escalated():
            base = Path(tempfile.mkdtemp(prefix="diskimage"))
            try:
                loop = self._attach(partscan=bool(self.partitions))
            except (ToolError, MountError) as error:
                with contextlib.suppress(OSError):
                    base.rmdir()
                raise MountError(f"Cannot attach {self.location}: {error}", image=str(self.location)) from error

            options = ["-o", "ro"] if read_only else []
            mounted: list[Path] = []
            try:
                if self.partitions:
                    for partition in self.partitions:
                        target = base / partition.mount_dir
                        target.mkdir(parents=True, exist_ok=True)
                        self._invoke(["mount", *options, partition.device_node(loop), str(target)])
                        mounted.append(target)
                else:
                    self._invoke(["mount", *options, loop, str(base)])
                    mounted.append(base)
            except (ToolError, OSError) as error:
                remaining, leftover_loop, release_errors = self._release(mounted, loop, base)
                message = f"Cannot mount {self.location}: {error}"
                if release_errors:
                    # Leftovers stay recorded so unmount() can retry them
                    self.base_mount = base
                    self.loop_device = leftover_loop
                    self._mounted = remaining
                    details = "; ".join(str(release_error) for release_error in release_errors)
                    message += f"; release failed: {details}"
                raise MountError(message, image=str(self.location)) from error

        self.base_mount = base
        self.loop_device = loop
        self._mounted = mounted
        self.log.info(f"Mounted {self.location} at {base}")
        return self.mountpoint

    def _release(
        self, mounted: Iterable[Path], loop: str | None, base: Path
    ) -> tuple[list[Path], str | None, list[Exception]]:
        """Unmount ``mounted`` in reverse and detach ``loop``.

        Returns:
            The targets still mounted, the loop device still attached (or
            None) and the failures met along the way
        """
        errors: list[Exception] = []
        remaining: list[Path] = []
        for target in reversed(list(mounted)):
            try:
                self._invoke(["umount", str(target)])
            except ToolError as error:
                self.log.error(f"Unmount of {target} failed: {error}")
                errors.append(error)
                remaining.insert(0, target)
        if loop:
            try:
                self._detach(loop)
                loop = None
            except ToolError as error:
                self.log.error(f"Detach of {loop} failed: {error}")
                errors.append(error)
        if not errors:
            for target in sorted(base.glob("*"), reverse=True):
                with contextlib.suppress(OSError):
                    target.rmdir()
            with contextlib.suppress(OSError):
                base.rmdir()
        return remaining, loop, errors

    def unmount(self) -> None:
        """Unmount all partitions and detach the loop device.

        Detach is attempted even when an unmount fails; all failures are
        reported together. Steps that failed stay recorded so a second call
        retries them. Calling this on an unmounted image does nothing.

        Raises:
            UnmountFailedError: If any unmount or detach step failed
        """
        if not self.is_mounted:
            return
        with self.privileges.escalated():
            remaining, loop, errors = self._release(self._mounted, self.loop_device, self.base_mount)

        if errors:
            self._mounted = remaining
            self.loop_device = loop
            raise UnmountFailedError(str(self.location), errors)

        self.base_mount = None
        self.loop_device = None
        self._mounted = []
        self.log.info(f"Unmounted {self.location}")

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def provision(self, files: Iterable[Path]) -> None:
        """Extract the rootfs of every release tarball into the mounted root.

        The caller owns unmounting, also when this raises.

        Raises:
            MountError: If the image is not mounted
            ExtractionError: If a tarball cannot be extracted
        """
        root = self._require_mounted()
        with self.privileges.escalated():
            for path in files:
                path = Path(path)
                if not archives.is_tarball(path):
                    self.log.debug(f"Skipping {path.name}, not a tarball")
                    continue
                self.log.info(f"Provisioning {path.name} into {self.location.name}")
                archives.extract_system_tree(path, root)

    def writable(self) -> None:
        """Mark the mounted root as the writable user-data area."""
        root = self._require_mounted()
        with self.privileges.escalated():
            (root / WRITABLE_MARKER).touch()

    def override_adb_inhibit(self) -> None:
        """Keep adb available while the emulator screen is locked."""
        root = self._require_mounted()
        with self.privileges.escalated():
            (root / ADB_ONLOCK_MARKER).touch()

    def extract_file(self, name: str, destination_dir: Path) -> Path:
        """Copy the first file called ``name`` out of the image.

        Mounts read-only when needed and restores the previous mount state.
        The source is read as root; the copy is written as the invoking user.

        Raises:
            ExtractionError: If no such file exists in the image
        """
        was_mounted = self.is_mounted
        if not was_mounted:
            self.mount(read_only=True)
        try:
            with self.privileges.escalated():
                found = None
                for dirpath, _dirnames, filenames in os.walk(self.base_mount):
                    if name in filenames:
                        found = Path(dirpath) / name
                        break
                if found is None:
                    raise ExtractionError(f"{name} not found in {self.location}", source=str(self.location))
                source = open(found, "rb")
            with source, self.privileges.dropped():
                destination_dir = Path(destination_dir)
                destination_dir.mkdir(parents=True, exist_ok=True)
                target = destination_dir / name
                with open(target, "wb") as out:
                    shutil.copyfileobj(source, out)
        finally:
            if not was_mounted:
                self.unmount()
        self.log.debug(f"Extracted {name} from {self.location} to {target}")
        return target

    # ------------------------------------------------------------------
    # Conversion and relocation
    # ------------------------------------------------------------------

    def convert_to_qcow2(self) -> None:
        """Replace the raw backing file with a qcow2 conversion of it."""
        self._require_unmounted("convert")
        if self.format is ImageFormat.QCOW2:
            return
        temporary = self.location.with_name(self.location.name + ".qcow2.tmp")
        try:
            self._invoke(
                ["qemu-img", "convert", "-f", "raw", "-O", "qcow2", str(self.location), str(temporary)]
            )
            os.replace(temporary, self.location)
        except (ToolError, OSError):
            with contextlib.suppress(OSError):
                temporary.unlink()
            raise
        self.format = ImageFormat.QCOW2
        self.log.info(f"Converted {self.location} to qcow2")

    def move(self, destination: Path | str) -> None:
        """Relocate the backing file without filling in its holes.

        A rename when both paths share a filesystem, ``cp --sparse=always``
        followed by removal of the source otherwise.
        """
        self._require_unmounted("move")
        destination = Path(destination)
        with self.privileges.escalated():
            try:
                os.rename(self.location, destination)
            except OSError as error:
                if error.errno != errno.EXDEV:
                    raise
                self._invoke(["cp", "--sparse=always", str(self.location), str(destination)])
                self.location.unlink()
        self.log.debug(f"Moved {self.location} to {destination}")
        self.location = destination

"""Partition table synthesis with parted.

A PartitionSpec is validated before any tool runs, then applied to a backing
file in declaration order so partition numbers (and loop partition nodes)
follow the declared order. Partitions are laid out back to back from a
1 MiB aligned start; an unbounded entry takes the rest of the disk.

Example:
    >>> spec = default_layout(4)
    >>> planner = PartitionPlanner()
    >>> partitions = planner.apply(spec, Path("sdcard.img"), 4 * GB)
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Sequence

from ubuntu_emu.domain import FilesystemKind, Partition, PartitionDecl, PartitionSpec, TableKind
from ubuntu_emu.logging import LoggerFactory
from ubuntu_emu.storage.commands import run_command
from ubuntu_emu.storage.exceptions import PartitioningError, ToolError

log = LoggerFactory.for_storage()

ALIGNMENT_MB = 1

BOOT_LABEL = "system-boot"
SYSTEM_A_LABEL = "system-a"
SYSTEM_B_LABEL = "system-b"
WRITABLE_LABEL = "writable"

BOOT_DIR = "boot"
SYSTEM_A_DIR = "system-a"
SYSTEM_B_DIR = "system-b"
WRITABLE_DIR = "writable"

BOOT_SIZE_MB = 128
SYSTEM_SIZE_MB = 1024


def default_layout(
    part_count: int,
    table: TableKind = TableKind.MSDOS,
    filesystem: FilesystemKind = FilesystemKind.EXT4,
) -> PartitionSpec:
    """Layout derived from a partition count.

    4: boot, system-a, system-b, writable
    3: boot, system-a, writable
    2: boot, writable
    1: writable
    Boot is vfat and flagged bootable; the last partition takes the rest.
    """
    if part_count < 1 or part_count > 4:
        raise PartitioningError(f"Unsupported partition count {part_count}")

    writable = PartitionDecl(WRITABLE_LABEL, WRITABLE_DIR, filesystem, None)
    if part_count == 1:
        return PartitionSpec(table=table, partitions=(writable,))

    parts = [PartitionDecl(BOOT_LABEL, BOOT_DIR, FilesystemKind.VFAT, BOOT_SIZE_MB)]
    if part_count >= 3:
        parts.append(PartitionDecl(SYSTEM_A_LABEL, SYSTEM_A_DIR, filesystem, SYSTEM_SIZE_MB))
    if part_count == 4:
        parts.append(PartitionDecl(SYSTEM_B_LABEL, SYSTEM_B_DIR, filesystem, SYSTEM_SIZE_MB))
    parts.append(writable)
    return PartitionSpec(table=table, partitions=tuple(parts), boot_index=1)


def unbounded_size_mb(spec: PartitionSpec, disk_size_bytes: int) -> int:
    """Size the rest-of-disk partition of ``spec`` gets on a disk this big."""
    return disk_size_bytes // (1024 * 1024) - ALIGNMENT_MB - spec.bounded_mb


def validate_spec(spec: PartitionSpec, disk_size_bytes: int | None = None) -> None:
    """Reject layouts parted would choke on, before touching the image.

    Raises:
        PartitioningError: On an empty layout, an unbounded entry that is not
            last, more than one unbounded entry, a bad boot index, or bounded
            sizes that exceed the disk
    """
    partitions = spec.partitions
    if not partitions:
        raise PartitioningError("Partition layout is empty")

    unbounded = [i for i, part in enumerate(partitions) if part.unbounded]
    if len(unbounded) > 1:
        raise PartitioningError("Only one partition may use the rest of the disk")
    if unbounded and unbounded[0] != len(partitions) - 1:
        raise PartitioningError(
            f"Partition '{partitions[unbounded[0]].label}' uses the rest of the disk "
            "but is not the last partition"
        )
    for part in partitions:
        if part.size_mb is not None and part.size_mb <= 0:
            raise PartitioningError(f"Partition '{part.label}' has invalid size {part.size_mb}")

    if spec.boot_index is not None and not 1 <= spec.boot_index <= len(partitions):
        raise PartitioningError(f"Boot index {spec.boot_index} out of range")

    if disk_size_bytes is not None:
        required_mb = ALIGNMENT_MB + spec.bounded_mb
        available_mb = disk_size_bytes // (1024 * 1024)
        if unbounded:
            required_mb += 1
        if required_mb > available_mb:
            raise PartitioningError(
                f"Layout needs {required_mb}MiB but the disk has {available_mb}MiB"
            )


def build_parted_commands(spec: PartitionSpec, image: Path) -> list[list[str]]:
    """Parted invocations that create ``spec`` on ``image``, in order."""
    commands = [["parted", "-s", str(image), "mklabel", spec.table.value]]
    start = ALIGNMENT_MB
    for part in spec.partitions:
        part_type = part.label if spec.table is TableKind.GPT else "primary"
        if part.unbounded:
            end = "100%"
        else:
            end = f"{start + part.size_mb}MiB"
        commands.append(
            [
                "parted",
                "-s",
                "-a",
                "optimal",
                str(image),
                "mkpart",
                part_type,
                part.filesystem.parted_name,
                f"{start}MiB",
                end,
            ]
        )
        if not part.unbounded:
            start += part.size_mb
    if spec.boot_index is not None:
        commands.append(["parted", "-s", str(image), "set", str(spec.boot_index), "boot", "on"])
    return commands


def parse_parted_machine_output(output: str) -> list[tuple[int, int, int, int]]:
    """Parse ``parted -m unit B print`` into (number, start, end, size) tuples.

    Machine output looks like::

        BYT;
        /tmp/x.img:4294967296B:file:512:512:msdos::;
        1:1048576B:135266303B:134217728B:fat32::boot, lba;
    """
    rows = []
    for line in output.splitlines():
        line = line.strip().rstrip(";")
        fields = line.split(":")
        if len(fields) < 4 or not fields[0].isdigit():
            continue
        try:
            number = int(fields[0])
            start, end, size = (int(value.rstrip("B")) for value in fields[1:4])
        except ValueError:
            continue
        rows.append((number, start, end, size))
    return rows


class PartitionPlanner:
    """Applies PartitionSpecs with parted."""

    def __init__(self, runner: Callable[..., object] = run_command, timeout: float | None = None):
        self._run = runner
        self.timeout = timeout

    def _invoke(self, command: Sequence[str], image: Path):
        kwargs = {} if self.timeout is None else {"timeout": self.timeout}
        try:
            return self._run(command, **kwargs)
        except ToolError as error:
            raise PartitioningError(
                f"Partitioning {image} failed", image=str(image), output=error.output
            ) from error

    def apply(
        self, spec: PartitionSpec, image: Path, disk_size_bytes: int | None = None
    ) -> list[Partition]:
        """Write the partition table and return the created partitions.

        Raises:
            PartitioningError: If validation fails (no tool is run) or parted fails
        """
        validate_spec(spec, disk_size_bytes)
        log.debug(
            f"Partitioning {image} ({spec.table.value}): "
            + ", ".join(p.label for p in spec.partitions)
        )
        for command in build_parted_commands(spec, image):
            self._invoke(command, image)

        result = self._invoke(["parted", "-s", "-m", str(image), "unit", "B", "print"], image)
        geometry = parse_parted_machine_output(result.stdout)
        if len(geometry) != len(spec.partitions):
            raise PartitioningError(
                f"Expected {len(spec.partitions)} partitions on {image}, parted reports "
                f"{len(geometry)}",
                image=str(image),
                output=result.stdout.strip(),
            )

        partitions = [
            Partition(
                number=number,
                label=decl.label,
                mount_dir=decl.mount_dir,
                filesystem=decl.filesystem,
                start_bytes=start,
                end_bytes=end,
                size_bytes=size,
            )
            for decl, (number, start, end, size) in zip(spec.partitions, geometry)
        ]
        log.info(f"Created {len(partitions)} partitions on {image}")
        return partitions

"""Release tarball extraction.

System-image tarballs keep the root filesystem under ``system/`` and device
partition images under ``partitions/``.
"""

from __future__ import annotations

import copy
import tarfile
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator

from ubuntu_emu.logging import LoggerFactory
from ubuntu_emu.storage.exceptions import ExtractionError

log = LoggerFactory.for_storage()

SYSTEM_PREFIX = "system/"
PARTITIONS_PREFIX = "partitions/"
TARBALL_SUFFIXES = (".tar.xz", ".tar.gz", ".tar.bz2", ".tar")


def is_tarball(path: Path) -> bool:
    return str(path).endswith(TARBALL_SUFFIXES)


def _normalize(name: str) -> str:
    while name.startswith("./"):
        name = name[2:]
    return name


def _strip_prefix(members: Iterable[tarfile.TarInfo], prefix: str) -> Iterator[tarfile.TarInfo]:
    for member in members:
        name = _normalize(member.name)
        if not name.startswith(prefix):
            continue
        stripped = name[len(prefix):]
        if not stripped:
            continue
        member = copy.copy(member)
        member.name = stripped
        if member.islnk():
            linkname = _normalize(member.linkname)
            if linkname.startswith(prefix):
                member.linkname = linkname[len(prefix):]
        yield member


def _extractall(tar: tarfile.TarFile, destination: Path, members) -> None:
    # Root filesystems carry device nodes and setuid binaries
    if hasattr(tarfile, "fully_trusted_filter"):
        tar.extractall(destination, members=members, numeric_owner=True, filter="fully_trusted")
    else:
        tar.extractall(destination, members=members, numeric_owner=True)


def extract_system_tree(tarball: Path, destination: Path) -> None:
    """Extract the ``system/`` tree of ``tarball`` into ``destination``.

    Raises:
        ExtractionError: If the archive cannot be read or written out
    """
    log.debug(f"Extracting {tarball} into {destination}")
    try:
        with tarfile.open(tarball) as tar:
            _extractall(tar, destination, list(_strip_prefix(tar.getmembers(), SYSTEM_PREFIX)))
    except (tarfile.TarError, OSError) as error:
        raise ExtractionError(f"Cannot extract {tarball}: {error}", source=str(tarball)) from error


def flat_extract_partitions(tarball: Path, destination: Path) -> list[Path]:
    """Extract regular files under ``partitions/`` directly into ``destination``.

    Returns:
        Paths of the extracted files
    """
    extracted = []
    try:
        with tarfile.open(tarball) as tar:
            for member in tar.getmembers():
                name = _normalize(member.name)
                if not name.startswith(PARTITIONS_PREFIX) or not member.isfile():
                    continue
                target = destination / PurePosixPath(name).name
                source = tar.extractfile(member)
                if source is None:
                    continue
                with source, open(target, "wb") as out:
                    while True:
                        chunk = source.read(1024 * 1024)
                        if not chunk:
                            break
                        out.write(chunk)
                extracted.append(target)
    except (tarfile.TarError, OSError) as error:
        raise ExtractionError(f"Cannot extract {tarball}: {error}", source=str(tarball)) from error
    log.debug(f"Extracted {[p.name for p in extracted]} from {tarball}")
    return extracted


def find_device_tarball(files: Iterable[Path]) -> Path:
    """Pick the device tarball (``device-*.tar.xz``) out of a release's files."""
    for path in files:
        path = Path(path)
        if path.name.startswith("device-") and is_tarball(path):
            return path
    raise ExtractionError("Release does not contain a device tarball")

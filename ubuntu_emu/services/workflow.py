"""End-to-end creation of an emulator instance.

Ordering:
    1. preconditions (dependencies, arch, image sizes, root) before any
       network or disk work
    2. resolve the release and download it
    3. unpack device partition images into the instance directory
    4. build ubuntu-system.img and sdcard.img, provision them
    5. split boot/recovery images, pull build.prop out of system.img
    6. convert disks to qcow2, optional vfat sdcard, stamps

The run holds the invoking user's identity so every file in the instance
directory belongs to that user; only format, mount, provision and unmount
escalate to root.

Nothing is retried. On failure the instance directory is left in place for
diagnosis; every mount made along the way is released by the step that made
it.
"""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import Callable, Iterable

from ubuntu_emu.config.settings import (
    BIN_QEMU_ARM_STATIC,
    DEVICES,
    GB,
    PKG_QEMU_USER_STATIC,
    ProvisionConfig,
)
from ubuntu_emu.domain import HardwareDescriptor, OemDescriptor, Release
from ubuntu_emu.logging import LoggerFactory, operation_context
from ubuntu_emu.services.catalog import Catalog, SystemImageCatalog
from ubuntu_emu.services.chroot import ChrootSetup
from ubuntu_emu.services.downloads import DownloadManager
from ubuntu_emu.storage import archives
from ubuntu_emu.storage.bootimg import BootImageExtractor
from ubuntu_emu.storage.bootsetup import HARDWARE_YAML, BootSetup
from ubuntu_emu.storage.commands import run_command
from ubuntu_emu.storage.diskimage import DiskImage
from ubuntu_emu.storage.exceptions import ConfigurationError, UnmountFailedError
from ubuntu_emu.storage.partitioning import (
    SYSTEM_A_LABEL,
    WRITABLE_LABEL,
    default_layout,
    unbounded_size_mb,
)
from ubuntu_emu.storage.privileges import PrivilegeGuard

BOOT_IMAGE = "boot.img"
RECOVERY_IMAGE = "recovery.img"
SYSTEM_IMAGE = "system.img"
UBUNTU_SYSTEM_IMAGE = "ubuntu-system.img"
SDCARD_IMAGE = "sdcard.img"
SDCARD_PRIME_IMAGE = "sdcardprime.img"
OEM_YAML = "oem.yaml"

BOOT_NAMES = {"kernel": "ubuntu-kernel", "ramdisk": "ramdisk.img", "second": "second.img"}
RECOVERY_NAMES = {
    "kernel": "recovery-kernel",
    "ramdisk": "recovery-ramdisk.img",
    "second": "recovery-second.img",
}

STAMP_FILE = ".stamp"
DEVICE_STAMP_FILE = ".device"

SYSTEM_PART_COUNT = 4
USERDATA_PART_COUNT = 3

REQUIRED_TOOLS = ("parted", "losetup", "mount", "umount", "mkfs.ext4", "mkfs.vfat", "chroot", "cp")


def write_stamp(data_dir: Path, release: Release) -> Path:
    path = data_dir / STAMP_FILE
    path.write_text(
        json.dumps(
            {
                "version": release.version,
                "channel": release.channel,
                "device": release.device,
                "description": release.description,
            },
            indent=2,
            sort_keys=True,
        ),
        encoding="utf-8",
    )
    return path


def write_device_stamp(data_dir: Path, arch: str) -> Path:
    path = data_dir / DEVICE_STAMP_FILE
    path.write_text(arch, encoding="utf-8")
    return path


class ProvisioningWorkflow:
    """Builds the disk image set of one emulator instance."""

    def __init__(
        self,
        config: ProvisionConfig,
        catalog: Catalog | None = None,
        privileges: PrivilegeGuard | None = None,
        downloader: DownloadManager | None = None,
        runner: Callable[..., object] = run_command,
    ):
        self.config = config
        self.privileges = privileges or PrivilegeGuard()
        self.catalog = catalog or SystemImageCatalog(config.server)
        self.downloader = downloader or DownloadManager(
            config.server,
            config.cache_dir,
            self.privileges,
            timeout_seconds=config.download_timeout_seconds,
        )
        self._run = runner

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------

    def verify_dependencies(self) -> None:
        if self.config.arch not in DEVICES:
            raise ConfigurationError("Selected device not supported on this channel")
        if self.config.arch == "armhf" and not Path(BIN_QEMU_ARM_STATIC).exists():
            raise ConfigurationError(
                f"missing dependency {BIN_QEMU_ARM_STATIC} (apt install {PKG_QEMU_USER_STATIC})"
            )
        tools = list(REQUIRED_TOOLS)
        if not self.config.raw_disk:
            tools.append("qemu-img")
        missing = [tool for tool in tools if shutil.which(tool) is None]
        if missing:
            raise ConfigurationError(f"missing tools: {', '.join(missing)}")

    def check_sizes(self) -> None:
        """Make sure ubuntu-system.img fits the writable partition of sdcard.img."""
        system_mb = self.config.system_size_gb * GB // (1024 * 1024)
        writable_mb = unbounded_size_mb(
            default_layout(USERDATA_PART_COUNT), self.config.userdata_size_gb * GB
        )
        if system_mb > writable_mb:
            raise ConfigurationError(
                f"{UBUNTU_SYSTEM_IMAGE} ({system_mb}MiB) does not fit the {writable_mb}MiB "
                f"writable partition of {SDCARD_IMAGE}; raise userdata_size_gb"
            )

    def check_preconditions(self) -> str:
        """Validate the environment; returns the device name for the arch."""
        self.verify_dependencies()
        self.check_sizes()
        device = self.config.device
        self.privileges.require_root()
        return device

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _disk(self, path: Path, label: str, part_count: int, size_gb: int, **kwargs) -> DiskImage:
        return DiskImage(
            path,
            label,
            part_count,
            size_gb * GB,
            privileges=self.privileges,
            runner=self._run,
            timeout=self.config.tool_timeout_seconds,
            **kwargs,
        )

    def resolve_release(self, device: str) -> Release:
        with self.privileges.dropped():
            return self.catalog.get_release(self.config.channel, device, self.config.revision)

    def load_descriptors(self, data_dir: Path) -> tuple[HardwareDescriptor | None, OemDescriptor]:
        hardware = None
        hardware_yaml = data_dir / HARDWARE_YAML
        if hardware_yaml.exists():
            hardware = HardwareDescriptor.from_yaml(hardware_yaml)
        oem_yaml = data_dir / OEM_YAML
        oem = OemDescriptor.from_yaml(oem_yaml, install_path=data_dir) if oem_yaml.exists() else OemDescriptor()
        return hardware, oem

    def _release_after_failure(self, image: DiskImage, log) -> None:
        log.error(f"Releasing {image.location.name} mounted at {image.base_mount}")
        try:
            image.unmount()
        except UnmountFailedError as error:
            log.error(f"Unmount error: {error}")

    def create_system(
        self,
        ubuntu_image: DiskImage,
        sdcard_image: DiskImage,
        files: Iterable[Path],
        hardware: HardwareDescriptor | None = None,
        oem: OemDescriptor | None = None,
    ) -> None:
        """Build the rootfs image and nest it inside the user-data image."""
        log = LoggerFactory.for_workflow(ubuntu_image.location.parent.name)
        files = list(files)
        for image in (ubuntu_image, sdcard_image):
            image.partition()
            image.format_filesystems()

        with self.privileges.escalated():
            ubuntu_image.mount()
            try:
                ubuntu_image.provision(files)
                chroot = ChrootSetup(
                    ubuntu_image.mountpoint,
                    self.config.arch,
                    runner=self._run,
                    timeout=self.config.tool_timeout_seconds,
                )
                chroot.set_password(self.config.password)
                chroot.set_locale(self.config.locale)
                if hardware is not None:
                    BootSetup(
                        ubuntu_image.base_mount,
                        hardware,
                        oem or OemDescriptor(),
                        hardware_yaml=ubuntu_image.location.with_name(HARDWARE_YAML),
                    ).setup_boot()
            except Exception:
                self._release_after_failure(ubuntu_image, log)
                raise
            ubuntu_image.unmount()

            sdcard_image.mount()
            try:
                sdcard_image.writable()
                sdcard_image.override_adb_inhibit()
                ubuntu_image.move(sdcard_image.mountpoint / SYSTEM_IMAGE)
            except Exception:
                self._release_after_failure(sdcard_image, log)
                raise
            sdcard_image.unmount()

    def extract_boot_images(self, data_dir: Path) -> None:
        for image_name, names in ((BOOT_IMAGE, BOOT_NAMES), (RECOVERY_IMAGE, RECOVERY_NAMES)):
            source = data_dir / image_name
            BootImageExtractor(source).extract(data_dir, names)
            source.unlink()

    def extract_build_properties(self, system_image: DiskImage, data_dir: Path) -> Path:
        return system_image.extract_file("build.prop", data_dir / "system")

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def create(self, instance_name: str) -> Path:
        """Create instance ``instance_name`` and return its data directory."""
        if not instance_name:
            raise ConfigurationError("Instance name 'name' is required")
        device = self.check_preconditions()

        with operation_context("create", instance=instance_name) as log:
            with self.privileges.dropped():
                release = self.resolve_release(device)
                log.info(
                    f"Creating \"{instance_name}\" from {self.config.channel} revision {release.version}"
                )
                files = self.downloader.download(release.files)

                data_dir = self.config.instance_dir(instance_name)
                data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

                device_tarball = archives.find_device_tarball(files)
                archives.flat_extract_partitions(device_tarball, data_dir)
                hardware, oem = self.load_descriptors(data_dir)

                ubuntu_image = self._disk(
                    data_dir / UBUNTU_SYSTEM_IMAGE,
                    "UBUNTU",
                    SYSTEM_PART_COUNT,
                    self.config.system_size_gb,
                    root_label=SYSTEM_A_LABEL,
                )
                sdcard_image = self._disk(
                    data_dir / SDCARD_IMAGE,
                    "USERDATA",
                    USERDATA_PART_COUNT,
                    self.config.userdata_size_gb,
                    root_label=WRITABLE_LABEL,
                )
                system_image = DiskImage.existing(
                    data_dir / SYSTEM_IMAGE,
                    privileges=self.privileges,
                    runner=self._run,
                    timeout=self.config.tool_timeout_seconds,
                )

                log.info("Setting up...")
                self.create_system(ubuntu_image, sdcard_image, files, hardware, oem)
                self.extract_boot_images(data_dir)
                self.extract_build_properties(system_image, data_dir)

                if not self.config.raw_disk:
                    log.info("Creating snapshots for disks...")
                    for image in (system_image, sdcard_image):
                        image.convert_to_qcow2()

                if self.config.with_sdcard:
                    log.info("Creating vfat sdcard...")
                    self._disk(
                        data_dir / SDCARD_PRIME_IMAGE, "SDCARD", 0, self.config.sdcard_size_gb
                    ).create_vfat()

                write_stamp(data_dir, release)
                write_device_stamp(data_dir, self.config.arch)
                log.info(f"Successfully created emulator instance {instance_name} in {data_dir}")
        return data_dir

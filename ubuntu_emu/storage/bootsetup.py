"""Boot partition population for u-boot based images.

Kernel, initrd and device tree blobs are copied into ``boot/<slot>/`` for
every system slot (a/b), and the u-boot variables file is rendered into the
boot partition.

Device tree precedence, first match wins:
    1. OEM override blob (OEM descriptor names a dtb and a platform)
    2. ``<platform>.dtb`` from the hardware dtb directory
    3. every file from the hardware dtb directory
A missing dtb directory means the device has no blobs; nothing is copied.
"""

from __future__ import annotations

import shutil
from pathlib import Path

import jinja2

from ubuntu_emu.domain import HardwareDescriptor, OemDescriptor
from ubuntu_emu.logging import LoggerFactory
from ubuntu_emu.storage.exceptions import ConfigurationError
from ubuntu_emu.storage.partitioning import BOOT_DIR

log = LoggerFactory.for_storage()

KERNEL_FILE_NAME = "vmlinuz"
INITRD_FILE_NAME = "initrd.img"
BOOT_CONFIG_NAME = "snappy-system.txt"
HARDWARE_YAML = "hardware.yaml"

SNAPPY_SYSTEM_TEMPLATE = """\
# This is a snappy variables and boot logic file and is entirely generated and
# managed by Snappy. Modifications may break boot
######
# functions to load kernel, initrd and fdt from various env values
loadfiles=run loadkernel; run loadinitrd; run loadfdt
loadkernel=load mmc ${mmcdev}:${mmcpart} ${loadaddr} ${snappy_ab}/${kernel_file}
loadinitrd=load mmc ${mmcdev}:${mmcpart} ${initrd_addr} ${snappy_ab}/${initrd_file}; setenv initrd_size ${filesize}
loadfdt=load mmc ${mmcdev}:${mmcpart} ${fdtaddr} ${snappy_ab}/dtbs/${fdtfile}

# standard kernel and initrd file names; NB: fdtfile is set early from bootcmd
kernel_file={{ kernel }}
initrd_file={{ initrd }}
{{ fdt }}

# extra kernel cmdline args, set via mmcroot
snappy_cmdline=init=/lib/systemd/systemd ro panic=-1 fixrtc

# boot logic
# either "a" or "b"; target partition we want to boot
snappy_ab=a
# stamp file indicating a new version is being tried; removed by s-i after boot
snappy_stamp=snappy-stamp.txt
# either "regular" (normal boot) or "try" when trying a new version
snappy_mode=regular
# if we're trying a new version, check if stamp file is already there to revert
# to other version
snappy_boot=if test "${snappy_mode}" = "try"; then if test -e mmc ${bootpart} ${snappy_stamp}; then if test "${snappy_ab}" = "a"; then setenv snappy_ab "b"; else setenv snappy_ab "a"; fi; else fatwrite mmc ${mmcdev}:${mmcpart} 0x0 ${snappy_stamp} 0; fi; fi; run loadfiles; setenv mmcroot /dev/disk/by-label/system-${snappy_ab} ${snappy_cmdline}; run mmcargs; bootz ${loadaddr} ${initrd_addr}:${initrd_size} ${fdtaddr}
"""

_environment = jinja2.Environment(
    loader=jinja2.BaseLoader(),
    autoescape=False,
    keep_trailing_newline=True,
    undefined=jinja2.StrictUndefined,
)


def render_boot_config(kernel: str, initrd: str, platform: str = "") -> str:
    fdt = f"fdtfile={platform}.dtb" if platform else ""
    template = _environment.from_string(SNAPPY_SYSTEM_TEMPLATE)
    return template.render(kernel=kernel, initrd=initrd, fdt=fdt)


class BootSetup:
    """Installs boot assets into a mounted, partitioned image.

    The kernel, initrd and dtbs paths of the hardware descriptor are relative
    to ``base_mount``, the directory holding every mounted partition (so
    ``system-a/assets/vmlinuz`` names a file on the system-a partition).
    ``hardware_yaml`` is the descriptor file itself; when given it is copied
    next to every slot's kernel.
    """

    def __init__(
        self,
        base_mount: Path,
        hardware: HardwareDescriptor,
        oem: OemDescriptor,
        hardware_yaml: Path | None = None,
    ):
        self.base_mount = Path(base_mount)
        self.hardware = hardware
        self.oem = oem
        self.hardware_yaml = Path(hardware_yaml) if hardware_yaml else None

    @property
    def boot_path(self) -> Path:
        return self.base_mount / BOOT_DIR

    def setup_boot(self) -> None:
        """Populate every system slot and write the boot config."""
        self.generic_boot_setup()
        for slot in self.oem.system_parts:
            self.provision_dtbs(self.boot_path / slot / "dtbs")
        self.generate_boot_config()

    def generic_boot_setup(self) -> None:
        kernel = self.base_mount / self.hardware.kernel
        initrd = self.base_mount / self.hardware.initrd
        for slot in self.oem.system_parts:
            slot_path = self.boot_path / slot
            slot_path.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(kernel, slot_path / KERNEL_FILE_NAME)
            shutil.copyfile(initrd, slot_path / INITRD_FILE_NAME)
            if self.hardware_yaml is not None:
                shutil.copyfile(self.hardware_yaml, slot_path / HARDWARE_YAML)
        log.debug(f"Installed kernel and initrd for slots {', '.join(self.oem.system_parts)}")

    def generate_boot_config(self) -> Path:
        """Render the u-boot variables file into the boot partition."""
        target = self.boot_path / BOOT_CONFIG_NAME
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(
            render_boot_config(KERNEL_FILE_NAME, INITRD_FILE_NAME, self.oem.platform),
            encoding="utf-8",
        )
        return target

    def provision_dtbs(self, boot_dtb_path: Path) -> list[Path]:
        """Copy device tree blobs into ``boot_dtb_path``.

        Returns:
            The installed blobs

        Raises:
            ConfigurationError: If an OEM override is declared without an
                install path
        """
        if not self.hardware.dtbs:
            return []
        dtbs_path = self.base_mount / self.hardware.dtbs
        if not dtbs_path.is_dir():
            return []

        boot_dtb_path = Path(boot_dtb_path)
        boot_dtb_path.mkdir(parents=True, exist_ok=True)
        platform = self.oem.platform
        platform_dtb = dtbs_path / f"{platform}.dtb"

        if self.oem.dtb and platform:
            if self.oem.install_path is None:
                raise ConfigurationError(f"OEM package {self.oem.name} has no install path")
            sources = [(Path(self.oem.install_path) / self.oem.dtb, platform_dtb.name)]
        elif platform and platform_dtb.is_file():
            sources = [(platform_dtb, platform_dtb.name)]
        else:
            sources = [(entry, entry.name) for entry in sorted(dtbs_path.iterdir()) if entry.is_file()]

        installed = []
        for source, name in sources:
            target = boot_dtb_path / name
            shutil.copyfile(source, target)
            installed.append(target)
        log.debug(f"Installed {len(installed)} dtb(s) into {boot_dtb_path}")
        return installed

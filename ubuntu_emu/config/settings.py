"""Provisioning configuration.

Defaults can be overridden by a JSON settings file and by explicit values
from the command line. The resulting ProvisionConfig is passed to every
component that needs it.
"""

from __future__ import annotations

import json
import os
import pwd
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from ubuntu_emu.storage.exceptions import ConfigurationError


SETTINGS_PATH = Path(
    os.environ.get(
        "UBUNTU_EMU_SETTINGS_PATH",
        Path.home() / ".config" / "ubuntu-emu" / "settings.json",
    )
)

DEFAULT_CHANNEL = "ubports-touch/16.04/stable"
DEFAULT_SERVER = "https://system-image.ubports.com"
DEFAULT_ARCH = "i386"
DEFAULT_PASSWORD = "0000"
DEFAULT_TOOL_TIMEOUT_SECONDS = 600

GB = 1024**3

DEVICES: dict[str, str] = {
    "i386": "generic_x86",
    "armhf": "generic",
}

BIN_QEMU_ARM_STATIC = "/usr/bin/qemu-arm-static"
PKG_QEMU_USER_STATIC = "qemu-user-static"


def invoking_home() -> Path:
    """Home directory of the user who ran sudo/pkexec, else our own."""
    for var in ("SUDO_UID", "PKEXEC_UID"):
        uid = os.environ.get(var)
        if uid:
            try:
                return Path(pwd.getpwuid(int(uid)).pw_dir)
            except (KeyError, ValueError):
                break
    return Path.home()


def default_cache_dir() -> Path:
    cache_home = os.environ.get("XDG_CACHE_HOME")
    base = Path(cache_home) if cache_home else invoking_home() / ".cache"
    return base / "ubuntuimage"


def default_data_root() -> Path:
    data_home = os.environ.get("XDG_DATA_HOME")
    base = Path(data_home) if data_home else invoking_home() / ".local" / "share"
    return base / "ubuntu-emulator"


@dataclass
class ProvisionConfig:
    channel: str = DEFAULT_CHANNEL
    server: str = DEFAULT_SERVER
    revision: int = 0
    arch: str = DEFAULT_ARCH
    raw_disk: bool = False
    with_sdcard: bool = False
    password: str = DEFAULT_PASSWORD
    locale: str = ""
    cache_dir: Path = field(default_factory=default_cache_dir)
    data_root: Path = field(default_factory=default_data_root)
    system_size_gb: int = 3
    userdata_size_gb: int = 5
    sdcard_size_gb: int = 2
    tool_timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS
    download_timeout_seconds: float = 3600

    def __post_init__(self) -> None:
        self.cache_dir = Path(self.cache_dir)
        self.data_root = Path(self.data_root)

    @property
    def device(self) -> str:
        try:
            return DEVICES[self.arch]
        except KeyError:
            raise ConfigurationError(
                f"Selected device not supported on this channel (arch {self.arch})"
            ) from None

    def instance_dir(self, instance_name: str) -> Path:
        return self.data_root / instance_name

    @classmethod
    def load(cls, path: Path | None = None, **overrides: Any) -> ProvisionConfig:
        """Build a config from defaults, the settings file and overrides.

        Overrides set to None are ignored so unset CLI flags keep the
        file or default value.
        """
        values: dict[str, Any] = {}
        path = path or SETTINGS_PATH
        if path.exists():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as error:
                raise ConfigurationError(f"Invalid settings file {path}: {error}") from error
            if isinstance(data, dict):
                values.update(data)
        values.update({k: v for k, v in overrides.items() if v is not None})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigurationError(f"Unknown settings: {', '.join(unknown)}")
        return cls(**values)

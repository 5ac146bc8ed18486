"""Root filesystem customisation through chroot.

armhf root filesystems need qemu-arm-static inside the chroot to run their
binaries on an x86 host; it is copied in for the duration of a call.
"""

from __future__ import annotations

import contextlib
import shlex
import shutil
from pathlib import Path
from typing import Callable, Iterator

import jinja2

from ubuntu_emu.config.settings import BIN_QEMU_ARM_STATIC
from ubuntu_emu.logging import LoggerFactory
from ubuntu_emu.storage.commands import run_command
from ubuntu_emu.storage.exceptions import ConfigurationError, ToolError

log = LoggerFactory.for_system()

DEFAULT_USER = "phablet"
LOCALE_CONF = "usr/share/upstart/sessions/emulator-language.conf"

LOCALE_TEMPLATE = """\
description "Set wizard language"
author "ubuntu-emulator"

start on starting ubuntu-system-settings-wizard

task

script
    setenv() {
        initctl set-env --global $1=$2
        gdbus call --session --dest org.freedesktop.DBus --object-path /org/freedesktop/DBus --method org.freedesktop.DBus.UpdateActivationEnvironment "@a{ss} {'$1': '$2'}"
    }

    uid=$(getent passwd $USER|cut -d: -f3)
    if [ -z $uid ];then
        exit 1
    fi
    if [ ! -e $HOME/.cache/.first-lang-set ]; then
    setenv LANGUAGE {{ locale }}
    setenv LC_ALL {{ locale }}
    setenv LANG {{ locale }}
    dbus-send --print-reply --system --dest=org.freedesktop.Accounts /org/freedesktop/Accounts/User$uid org.freedesktop.Accounts.User.SetFormatsLocale string:{{ locale }}
    dbus-send --print-reply --system --dest=org.freedesktop.Accounts /org/freedesktop/Accounts/User$uid org.freedesktop.Accounts.User.SetLanguage string:{{ locale }}
    touch $HOME/.cache/.first-lang-set
    fi
end script

# vim:syntax=upstart
"""

_environment = jinja2.Environment(
    loader=jinja2.BaseLoader(),
    autoescape=False,
    keep_trailing_newline=True,
)


def render_locale_job(locale: str) -> str:
    return _environment.from_string(LOCALE_TEMPLATE).render(locale=locale)


class ChrootSetup:
    """Runs setup commands inside a mounted root filesystem."""

    def __init__(
        self,
        root: Path,
        arch: str,
        runner: Callable[..., object] = run_command,
        timeout: float | None = None,
    ):
        self.root = Path(root)
        self.arch = arch
        self._run = runner
        self._timeout = timeout

    @contextlib.contextmanager
    def _qemu_static(self) -> Iterator[None]:
        if self.arch != "armhf":
            yield
            return
        target = self.root / BIN_QEMU_ARM_STATIC.lstrip("/")
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(BIN_QEMU_ARM_STATIC, target)
        try:
            yield
        finally:
            target.unlink()

    def run(self, shell_command: str):
        """Run ``shell_command`` with /bin/sh inside the chroot."""
        kwargs = {} if self._timeout is None else {"timeout": self._timeout}
        with self._qemu_static():
            return self._run(["chroot", str(self.root), "/bin/sh", "-c", shell_command], **kwargs)

    def set_password(self, password: str, user: str = DEFAULT_USER) -> None:
        log.info(f"Setting up a default password for {user}")
        self.run(f"echo -n {shlex.quote(f'{user}:{password}')} | chpasswd")

    def available_locales(self) -> list[str]:
        result = self.run("locale -a")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def set_locale(self, locale: str) -> Path | None:
        """Install an upstart job that applies ``locale`` on first login.

        Raises:
            ConfigurationError: If the image does not ship the locale
        """
        if not locale:
            return None
        try:
            locales = self.available_locales()
        except ToolError as error:
            raise ConfigurationError(f"Cannot list locales in the image: {error}") from error
        if locale not in locales:
            raise ConfigurationError("the selected locale is not available on the image")

        target = self.root / LOCALE_CONF
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(render_locale_job(locale), encoding="utf-8")
        log.info(f"Locale set to {locale}")
        return target

"""Tests for chroot based root filesystem setup."""

import pytest

from ubuntu_emu.services.chroot import LOCALE_CONF, ChrootSetup, render_locale_job
from ubuntu_emu.storage.exceptions import ConfigurationError, ToolError


@pytest.fixture
def root(tmp_path):
    path = tmp_path / "rootfs"
    path.mkdir()
    return path


class TestPassword:
    def test_set_password(self, root, fake_runner):
        ChrootSetup(root, "i386", runner=fake_runner).set_password("0000")

        assert fake_runner.calls == [
            ["chroot", str(root), "/bin/sh", "-c", "echo -n phablet:0000 | chpasswd"]
        ]

    def test_password_is_quoted(self, root, fake_runner):
        ChrootSetup(root, "i386", runner=fake_runner).set_password("a b;c")

        assert fake_runner.calls[0][-1] == "echo -n 'phablet:a b;c' | chpasswd"

    def test_armhf_copies_qemu_static(self, root, fake_runner, mocker):
        copy = mocker.patch("ubuntu_emu.services.chroot.shutil.copy2")
        seen = []
        target = root / "usr" / "bin" / "qemu-arm-static"

        def runner(command, **kwargs):
            target.write_bytes(b"qemu")
            seen.append(target.exists())
            return fake_runner(command, **kwargs)

        ChrootSetup(root, "armhf", runner=runner).set_password("0000")

        copy.assert_called_once_with("/usr/bin/qemu-arm-static", target)
        assert seen == [True]
        assert not target.exists()


class TestLocale:
    def test_render_inserts_locale_everywhere(self):
        text = render_locale_job("de_DE.utf8")

        assert text.count("de_DE.utf8") == 5
        assert "{{" not in text
        assert "\"@a{ss} {'$1': '$2'}\"" in text

    def test_set_locale(self, root, fake_runner):
        fake_runner.respond(["chroot", str(root), "/bin/sh", "-c", "locale -a"], "C\nC.UTF-8\nen_US.utf8\n")

        path = ChrootSetup(root, "i386", runner=fake_runner).set_locale("en_US.utf8")

        assert path == root / LOCALE_CONF
        assert "setenv LANG en_US.utf8" in path.read_text()

    def test_empty_locale_is_skipped(self, root, fake_runner):
        assert ChrootSetup(root, "i386", runner=fake_runner).set_locale("") is None
        assert fake_runner.calls == []

    def test_unavailable_locale(self, root, fake_runner):
        fake_runner.respond(["chroot"], "C\nen_US.utf8\n")

        with pytest.raises(ConfigurationError, match="not available"):
            ChrootSetup(root, "i386", runner=fake_runner).set_locale("xx_XX.utf8")

        assert not (root / LOCALE_CONF).exists()

    def test_locale_listing_fails(self, root, fake_runner):
        fake_runner.fail_on(["chroot"], ToolError(["chroot"], 127, "/bin/sh: not found"))

        with pytest.raises(ConfigurationError, match="Cannot list locales"):
            ChrootSetup(root, "i386", runner=fake_runner).set_locale("en_US.utf8")

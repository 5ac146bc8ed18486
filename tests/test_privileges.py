"""Tests for scoped privilege transitions."""

import threading
from unittest.mock import patch

import pytest

from ubuntu_emu.storage.exceptions import ConfigurationError
from ubuntu_emu.storage.privileges import PrivilegeGuard, _invoking_identity


class FakeIdentity:
    """Tracks effective ids the way the kernel would for a root process."""

    def __init__(self, euid=0, egid=0):
        self.euid = euid
        self.egid = egid
        self.transitions = []

    def seteuid(self, uid):
        if uid != 0 and self.euid != 0 and uid != self.euid:
            raise PermissionError("not permitted")
        self.euid = uid
        self.transitions.append(("euid", uid))

    def setegid(self, gid):
        if self.euid != 0:
            raise PermissionError("not permitted")
        self.egid = gid
        self.transitions.append(("egid", gid))


@pytest.fixture
def identity():
    fake = FakeIdentity()
    with patch("ubuntu_emu.storage.privileges.os.seteuid", side_effect=fake.seteuid), patch(
        "ubuntu_emu.storage.privileges.os.setegid", side_effect=fake.setegid
    ), patch("ubuntu_emu.storage.privileges.os.geteuid", side_effect=lambda: fake.euid):
        yield fake


class TestInvokingIdentity:
    """Tests for detecting the user behind sudo/pkexec."""

    def test_sudo(self, monkeypatch):
        monkeypatch.setenv("SUDO_UID", "1000")
        monkeypatch.setenv("SUDO_GID", "1001")

        assert _invoking_identity() == (1000, 1001)

    def test_pkexec(self, monkeypatch):
        monkeypatch.delenv("SUDO_UID", raising=False)
        monkeypatch.setenv("PKEXEC_UID", "1000")
        with patch("ubuntu_emu.storage.privileges.pwd.getpwuid") as mock_getpwuid:
            mock_getpwuid.return_value.pw_gid = 100

            assert _invoking_identity() == (1000, 100)

    def test_plain_process(self, monkeypatch):
        monkeypatch.delenv("SUDO_UID", raising=False)
        monkeypatch.delenv("PKEXEC_UID", raising=False)
        with patch("ubuntu_emu.storage.privileges.os.getuid", return_value=1234), patch(
            "ubuntu_emu.storage.privileges.os.getgid", return_value=99
        ):
            assert _invoking_identity() == (1234, 99)


class TestRequireRoot:
    def test_non_root_rejected(self):
        with patch("ubuntu_emu.storage.privileges.os.getuid", return_value=1000):
            with pytest.raises(ConfigurationError, match="root"):
                PrivilegeGuard.require_root()

    def test_root_accepted(self):
        with patch("ubuntu_emu.storage.privileges.os.getuid", return_value=0):
            PrivilegeGuard.require_root()


class TestScopes:
    """Tests for escalated() and dropped()."""

    def test_dropped_restores_root(self, identity):
        guard = PrivilegeGuard(uid=1000, gid=1000)

        with guard.dropped():
            assert (identity.euid, identity.egid) == (1000, 1000)

        assert (identity.euid, identity.egid) == (0, 0)
        # gid is lowered while still root
        assert identity.transitions[:2] == [("egid", 1000), ("euid", 1000)]

    def test_escalated_inside_dropped(self, identity):
        guard = PrivilegeGuard(uid=1000, gid=1000)

        with guard.dropped():
            with guard.escalated():
                assert identity.euid == 0
            assert identity.euid == 1000

        assert identity.euid == 0

    def test_escalated_when_already_root_is_noop(self, identity):
        guard = PrivilegeGuard(uid=1000, gid=1000)

        with guard.escalated():
            pass

        assert identity.transitions == []

    def test_restores_on_exception(self, identity):
        guard = PrivilegeGuard(uid=1000, gid=1000)

        with pytest.raises(RuntimeError):
            with guard.dropped():
                raise RuntimeError("boom")

        assert identity.euid == 0

    def test_escalate_without_root_fails(self, identity):
        identity.euid = 1000
        guard = PrivilegeGuard(uid=1000, gid=1000)

        with patch("ubuntu_emu.storage.privileges.os.seteuid", side_effect=PermissionError("denied")):
            with pytest.raises(ConfigurationError, match="Cannot escalate"):
                guard.escalate()

    def test_scopes_are_serialized(self, identity):
        guard = PrivilegeGuard(uid=1000, gid=1000)
        entered = threading.Event()
        release = threading.Event()
        observed = []

        def hold_dropped():
            with guard.dropped():
                entered.set()
                release.wait(5)

        def try_escalate():
            with guard.escalated():
                observed.append(identity.euid)

        holder = threading.Thread(target=hold_dropped)
        holder.start()
        entered.wait(5)
        contender = threading.Thread(target=try_escalate)
        contender.start()
        contender.join(0.2)

        assert observed == []

        release.set()
        holder.join(5)
        contender.join(5)
        assert observed == [0]

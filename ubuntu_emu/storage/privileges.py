"""Scoped privilege escalation for a root-started process.

The tool is started through sudo or pkexec. Downloads run as the invoking
user; mount, format and chroot work runs as root. Effective ids are
process-wide on Linux (glibc applies seteuid to every thread), so the guard
is a single-owner resource: a scope holds the lock from the first transition
until the previous identity is restored, and no other thread can toggle
identity in between.
"""

from __future__ import annotations

import os
import pwd
import threading
from contextlib import contextmanager
from typing import Iterator

from ubuntu_emu.logging import LoggerFactory
from ubuntu_emu.storage.exceptions import ConfigurationError

log = LoggerFactory.for_system()

ROOT_UID = 0
ROOT_GID = 0


def _invoking_identity() -> tuple[int, int]:
    """uid/gid of the user who started us through sudo or pkexec."""
    sudo_uid = os.environ.get("SUDO_UID")
    if sudo_uid:
        return int(sudo_uid), int(os.environ.get("SUDO_GID", sudo_uid))
    pkexec_uid = os.environ.get("PKEXEC_UID")
    if pkexec_uid:
        uid = int(pkexec_uid)
        try:
            return uid, pwd.getpwuid(uid).pw_gid
        except KeyError:
            return uid, uid
    return os.getuid(), os.getgid()


class PrivilegeGuard:
    """Serialized access to the process' effective identity."""

    def __init__(self, uid: int | None = None, gid: int | None = None):
        if uid is None or gid is None:
            invoking_uid, invoking_gid = _invoking_identity()
            uid = invoking_uid if uid is None else uid
            gid = invoking_gid if gid is None else gid
        self.uid = uid
        self.gid = gid
        self._lock = threading.RLock()

    @staticmethod
    def require_root() -> None:
        if os.getuid() != ROOT_UID:
            raise ConfigurationError("Creation requires sudo/pkexec (root)")

    @property
    def escalated_now(self) -> bool:
        return os.geteuid() == ROOT_UID

    def escalate(self) -> None:
        """Raise effective uid/gid to root."""
        try:
            os.seteuid(ROOT_UID)
            os.setegid(ROOT_GID)
        except PermissionError as error:
            raise ConfigurationError(
                "Cannot escalate privileges; was the process started as root?"
            ) from error
        log.trace("Escalated to root")

    def drop(self) -> None:
        """Lower effective uid/gid to the invoking user."""
        if os.geteuid() != ROOT_UID:
            self.escalate()
        # gid first: once euid is unprivileged setegid is no longer allowed
        os.setegid(self.gid)
        os.seteuid(self.uid)
        log.trace(f"Dropped to uid={self.uid} gid={self.gid}")

    def _restore(self, was_escalated: bool) -> None:
        try:
            if was_escalated:
                self.escalate()
            else:
                self.drop()
        except (OSError, ConfigurationError) as error:
            raise ConfigurationError(f"Failed to restore privileges: {error}") from error

    @contextmanager
    def escalated(self) -> Iterator[None]:
        """Run the enclosed block as root, then restore the previous identity."""
        with self._lock:
            was_escalated = self.escalated_now
            if not was_escalated:
                self.escalate()
            try:
                yield
            finally:
                if not was_escalated:
                    self._restore(was_escalated)

    @contextmanager
    def dropped(self) -> Iterator[None]:
        """Run the enclosed block as the invoking user, then restore."""
        with self._lock:
            was_escalated = self.escalated_now
            if was_escalated:
                self.drop()
            try:
                yield
            finally:
                if was_escalated:
                    self._restore(was_escalated)

"""
Operating system access for account management.

All interaction with the password database and with external account
commands goes through a SystemAccessBase implementation so that the sync
logic can run against a fake system in tests.
"""

import os
import pwd
import grp
import logging
import subprocess
from abc import ABC, abstractmethod
from typing import List, NamedTuple, Optional, Set

logger = logging.getLogger(__name__)


class PasswdEntry(NamedTuple):
    """Subset of a password database entry."""
    name: str
    uid: int
    gid: int
    home: str
    shell: str


class CommandResult(NamedTuple):
    """Outcome of an external command."""
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class SystemAccessBase(ABC):
    """Abstract interface to the accounts of the running system."""

    @abstractmethod
    def getpwnam(self, name: str) -> Optional[PasswdEntry]:
        """Look up a user, returning None when it does not exist."""
        pass

    @abstractmethod
    def getpwall(self) -> List[PasswdEntry]:
        """Return every entry of the password database."""
        pass

    @abstractmethod
    def user_groups(self, name: str) -> List[str]:
        """Return the names of all groups the user belongs to."""
        pass

    @abstractmethod
    def run(self, cmd: List[str]) -> CommandResult:
        """Run a command with no input and capture its output."""
        pass

    @abstractmethod
    def process_login(self) -> Optional[str]:
        """Login name of the process owner, if known."""
        pass

    def session_login(self, sid: str) -> Optional[str]:
        """
        Return the user owning the process of a configuration session.

        Args:
            sid: Process id of the session

        Returns:
            Username, or None if it cannot be determined
        """
        result = self.run(['ps', '-h', '-o', 'user', '-p', str(sid)])
        login = result.stdout.strip() if result.ok else ''
        return login or None

    def logged_in_users(self) -> Set[str]:
        """Return the users that currently have a login session."""
        result = self.run(['who'])
        if not result.ok:
            logger.debug(f"who failed: {result.stderr.strip()}")
            return set()

        users = set()
        for line in result.stdout.splitlines():
            fields = line.split()
            if fields:
                users.add(fields[0])
        return users


class LinuxSystemAccess(SystemAccessBase):
    """SystemAccessBase backed by pwd/grp and subprocess."""

    def getpwnam(self, name: str) -> Optional[PasswdEntry]:
        try:
            entry = pwd.getpwnam(name)
        except KeyError:
            return None
        return self._entry(entry)

    def getpwall(self) -> List[PasswdEntry]:
        return [self._entry(entry) for entry in pwd.getpwall()]

    def user_groups(self, name: str) -> List[str]:
        entry = self.getpwnam(name)
        if entry is None:
            return []

        names = []
        for gid in os.getgrouplist(name, entry.gid):
            try:
                names.append(grp.getgrgid(gid).gr_name)
            except KeyError:
                names.append(str(gid))
        return names

    def run(self, cmd: List[str]) -> CommandResult:
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            completed = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                universal_newlines=True,
                check=False
            )
        except OSError as e:
            return CommandResult(127, '', f"{cmd[0]}: {e}")
        return CommandResult(completed.returncode, completed.stdout, completed.stderr)

    def process_login(self) -> Optional[str]:
        try:
            return os.getlogin()
        except OSError:
            return None

    @staticmethod
    def _entry(entry) -> PasswdEntry:
        return PasswdEntry(entry.pw_name, entry.pw_uid, entry.pw_gid, entry.pw_dir, entry.pw_shell)

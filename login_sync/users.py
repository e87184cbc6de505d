"""
Reconciliation of configured login users with system accounts.

The running and candidate configurations are walked once each: users that
were deleted from the running configuration are removed from the system,
users added or changed in the candidate are created or updated, and any
remaining local account that the configuration does not mention is
dropped.
"""

import os
import logging
from typing import Dict, Any, List, Optional, Set

from login_sync.authorized_keys import write_authorized_keys
from login_sync.configd_client import Database, NodeStatus
from login_sync.levels import level_groups, DEFAULT_LEVEL_FILE
from login_sync.logging_setup import security_logger
from login_sync.system import LinuxSystemAccess

logger = logging.getLogger(__name__)

USER_PATH = "system login user"

# Passes over the configuration, in the order they are applied
DELETE = 'delete'
ADD_OR_CHANGE = 'add_or_change'
PASSES = (
    (DELETE, Database.RUNNING),
    (ADD_OR_CHANGE, Database.CANDIDATE),
)

DEFAULT_SETTINGS = {
    'level_file': DEFAULT_LEVEL_FILE,
    'shell': '/bin/vbash',
    'home_base': '/home',
    'uid_min': 1000,
    'uid_max': 29999,
    'group_marker': 'vyatta',
    'sandbox_service': 'cli-sandbox@{user}.service',
}


class AccountCommandError(Exception):
    """Raised when an account management command fails."""
    pass


class UserSync:
    """
    Applies the login user configuration to the system.

    Args:
        client: Connected ConfigdClient
        system: SystemAccessBase implementation, LinuxSystemAccess if None
        settings: The ``login`` configuration section
    """

    def __init__(self, client, system=None, settings: Optional[Dict[str, Any]] = None):
        self.client = client
        self.system = system or LinuxSystemAccess()
        self.settings = dict(DEFAULT_SETTINGS)
        if settings:
            self.settings.update(settings)

        self.stats = self._new_stats()

    @staticmethod
    def _new_stats() -> Dict[str, int]:
        return {
            'users_added': 0,
            'users_updated': 0,
            'users_deleted': 0,
            'users_disabled': 0,
            'users_kept': 0,
            'orphans_removed': 0,
            'keys_written': 0,
            'warnings': 0
        }

    def update(self) -> Dict[str, int]:
        """
        Synchronize system accounts with the configuration.

        Returns:
            Counters of the actions taken

        Raises:
            ConfigdQueryError: If the configuration cannot be read
            AccountCommandError: If an account command fails
            AuthorizedKeysError: If a key file cannot be written
        """
        self.stats = self._new_stats()
        seen = set()

        for action, db in PASSES:
            if not self.client.node_exists(db, USER_PATH):
                logger.debug(f"No login users in {db} configuration")
                continue

            tree = self.client.tree_get(db, USER_PATH)
            for uconfig in tree.get('user') or []:
                user = uconfig.get('tagnode')
                if not user:
                    continue
                seen.add(user)

                state = self.client.node_get_status(Database.AUTO, f"{USER_PATH} {user}")
                if action == DELETE and state == NodeStatus.DELETED:
                    self.delete_user(user)
                elif action == ADD_OR_CHANGE and state in (NodeStatus.ADDED, NodeStatus.CHANGED):
                    self.update_user(user, uconfig)
                    if write_authorized_keys(user, self.client, self.system):
                        self.stats['keys_written'] += 1

        self.remove_orphans(seen)
        return self.stats

    def update_user(self, user: str, tree: Dict[str, Any]) -> bool:
        """
        Create or modify the account of a configured user.

        Args:
            user: Username
            tree: User configuration subtree

        Returns:
            True if the account was created or modified

        Raises:
            ValueError: If user or tree is missing
            AccountCommandError: If useradd/usermod fails
        """
        if not user:
            raise ValueError("Missing input: user")
        if tree is None:
            raise ValueError("Missing input: config")

        authentication = tree.get('authentication') or {}
        pwd = authentication.get('encrypted-password')
        level = tree.get('level')
        fname = tree.get('full-name')
        home = tree.get('home-directory')
        group = tree.get('group')

        if not pwd:
            self._warn(f"Encrypted password not specified for {user}, locking local login")

        if not level:
            self._warn(f"Level not defined for {user}")
            return False

        # map level to group membership, then configured extras
        groups = level_groups(level, self.settings['level_file'])
        if group:
            groups.extend(group)

        existing = self.system.getpwnam(user)
        if existing is None:
            # new account with home directory and the default users group
            cmd = ['useradd', '-m', '-N']
        else:
            cmd = ['usermod', '-m']

        cmd += ['-s', self.settings['shell']]
        if pwd:
            cmd += ['-p', pwd]
        elif existing is not None:
            # useradd locks by default, usermod needs to be told
            cmd.append('-L')

        if fname is not None:
            cmd += ['-c', fname]

        if home is not None:
            cmd += ['-d', home]
        elif existing is not None and existing.uid == 0:
            cmd += ['-d', '/root']
        else:
            cmd += ['-d', os.path.join(self.settings['home_base'], user)]

        cmd += ['-G', ','.join(groups), user]

        operation = 'create' if existing is None else 'modify'
        result = self.system.run(cmd)
        if not result.ok or result.stderr.strip():
            security_logger.log_user_operation(operation, user, False, result.stderr.strip())
            raise AccountCommandError(
                f"Attempt to change user {user} failed: {result.stderr.strip() or result.returncode}")

        security_logger.log_user_operation(operation, user, True)
        if existing is None:
            self.stats['users_added'] += 1
            logger.info(f"Created user {user}")
        else:
            self.stats['users_updated'] += 1
            logger.info(f"Updated user {user}")
        return True

    def delete_user(self, user: str) -> str:
        """
        Remove the account of a user deleted from the configuration.

        root is only disabled, and the user running the configuration
        session is left in place.

        Returns:
            'disabled', 'kept', 'deleted' or 'absent'

        Raises:
            AccountCommandError: If usermod or userdel fails
        """
        login = self._current_login()

        if user == 'root':
            self._warn("Disabling root account, instead of deleting")
            result = self.system.run(['usermod', '-p', '!', 'root'])
            if not result.ok or result.stderr.strip():
                security_logger.log_user_operation('disable', user, False, result.stderr.strip())
                raise AccountCommandError(
                    f"usermod of root failed: {result.stderr.strip() or result.returncode}")
            security_logger.log_user_operation('disable', user, True)
            self.stats['users_disabled'] += 1
            return 'disabled'

        if login is not None and login == user:
            self._warn(f"Attempting to delete current user: {user}\n"
                       "Not removing user from system to avoid unintentional lockout.\n"
                       "Please reinstate user in config to avoid mismatch with system.")
            security_logger.log_security_event("deletion of session user refused", f"user={user}")
            self.stats['users_kept'] += 1
            return 'kept'

        if self.system.getpwnam(user) is None:
            logger.debug(f"User {user} not present on system")
            return 'absent'

        if user in self.system.logged_in_users():
            self._warn(f"{user} is logged in, forcing logout")
            self.system.run(['pkill', '-HUP', '-u', user])
        self.system.run(['pkill', '-9', '-u', user])

        result = self.system.run(['pam_tally', '--user', user, '--reset', '--quiet'])
        if not result.ok:
            logger.debug(f"pam_tally reset for {user} failed: {result.stderr.strip()}")

        self._stop_sandbox(user)

        result = self.system.run(['userdel', '--remove', user])
        if not result.ok:
            security_logger.log_user_operation('delete', user, False, result.stderr.strip())
            raise AccountCommandError(
                f"userdel of {user} failed: {result.stderr.strip() or result.returncode}")

        security_logger.log_user_operation('delete', user, True)
        self.stats['users_deleted'] += 1
        logger.info(f"Deleted user {user}")
        return 'deleted'

    def local_users(self) -> List[str]:
        """
        Return dynamically allocated accounts managed by this system.

        These are the users in the configured uid range that belong to a
        group whose name contains the group marker.
        """
        uid_min = self.settings['uid_min']
        uid_max = self.settings['uid_max']
        marker = self.settings['group_marker']

        users = []
        for entry in self.system.getpwall():
            if not uid_min <= entry.uid <= uid_max:
                continue
            if not any(marker in group for group in self.system.user_groups(entry.name)):
                continue
            users.append(entry.name)
        return users

    def remove_orphans(self, seen: Set[str]) -> List[str]:
        """
        Remove local accounts that do not appear in the configuration.

        This happens when a user was added but the configuration was not
        saved before a reboot. Home directories are left in place.

        Returns:
            Users that were removed
        """
        removed = []
        for user in self.local_users():
            if user in seen:
                continue

            self._warn(f"Removing {user} not listed in current configuration")
            result = self.system.run(['userdel', user])
            if not result.ok:
                self._warn(f"Attempt to delete user {user} failed\n{result.stderr.strip()}")
                security_logger.log_user_operation('remove orphan', user, False, result.stderr.strip())
                continue

            security_logger.log_user_operation('remove orphan', user, True)
            self.stats['orphans_removed'] += 1
            removed.append(user)
        return removed

    def _stop_sandbox(self, user: str):
        service = self.settings['sandbox_service'].format(user=user)
        if not self.system.run(['systemctl', '-q', 'is-active', service]).ok:
            return

        result = self.system.run(['systemctl', 'stop', service])
        if not result.ok:
            self._warn(f"Failed to stop {service}: {result.stderr.strip()}")

    def _current_login(self) -> Optional[str]:
        """Return the user of the configuration session, falling back to the process login."""
        login = None
        sid = os.environ.get('VYATTA_CONFIG_SID')
        if sid:
            login = self.system.session_login(sid)
        if not login:
            login = self.system.process_login()
        return login

    def _warn(self, message: str):
        self.stats['warnings'] += 1
        logger.warning(message)

#!/usr/bin/env python3
"""
Unit tests for login user reconciliation.

The system is replaced by a fake that records every command, and the
configuration daemon by a mock returning prepared trees.
"""

import os
import sys
import tempfile
import unittest
from unittest.mock import Mock, patch

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from login_sync.configd_client import Database, NodeStatus
from login_sync.system import SystemAccessBase, PasswdEntry, CommandResult
from login_sync.users import UserSync, AccountCommandError


class FakeSystem(SystemAccessBase):
    """In-memory system recording the commands it is asked to run."""

    def __init__(self, users=None, groups=None, login=None):
        self.users = {entry.name: entry for entry in (users or [])}
        self.groups = groups or {}
        self.login = login
        self.commands = []
        self.results = {}
        self.who_output = ''
        self.ps_output = ''

    def getpwnam(self, name):
        return self.users.get(name)

    def getpwall(self):
        return list(self.users.values())

    def user_groups(self, name):
        return self.groups.get(name, [])

    def run(self, cmd):
        self.commands.append(cmd)
        if cmd[0] == 'who':
            return CommandResult(0, self.who_output, '')
        if cmd[0] == 'ps':
            return CommandResult(0, self.ps_output, '')
        return self.results.get(tuple(cmd[:2]), CommandResult(0, '', ''))

    def process_login(self):
        return self.login

    def ran(self, *prefix):
        return [cmd for cmd in self.commands if tuple(cmd[:len(prefix)]) == prefix]


def entry(name, uid, home=None):
    return PasswdEntry(name, uid, 100, home or f'/home/{name}', '/bin/vbash')


class UserSyncTestCase(unittest.TestCase):

    def setUp(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.level', delete=False) as f:
            f.write("admin:vyattaadm,sudo\noperator:vyattaop\n")
            self.level_file = f.name

        self.system = FakeSystem(login='configd')
        self.client = Mock()
        self.settings = {'level_file': self.level_file}

        env = patch.dict(os.environ, {}, clear=False)
        env.start()
        os.environ.pop('VYATTA_CONFIG_SID', None)
        self.addCleanup(env.stop)

        keys = patch('login_sync.users.write_authorized_keys', return_value='/home/x/.ssh/authorized_keys')
        self.mock_write_keys = keys.start()
        self.addCleanup(keys.stop)

    def tearDown(self):
        os.unlink(self.level_file)

    def make_sync(self):
        return UserSync(self.client, self.system, self.settings)


class TestUpdateUser(UserSyncTestCase):
    """Test cases for UserSync.update_user."""

    def test_new_user(self):
        sync = self.make_sync()
        tree = {
            'tagnode': 'alice',
            'level': 'admin',
            'full-name': 'Alice Smith',
            'authentication': {'encrypted-password': '$6$salt$hash'},
        }
        self.assertTrue(sync.update_user('alice', tree))

        self.assertEqual(self.system.commands, [[
            'useradd', '-m', '-N', '-s', '/bin/vbash', '-p', '$6$salt$hash',
            '-c', 'Alice Smith', '-d', '/home/alice', '-G', 'vyattaadm,sudo', 'alice'
        ]])
        self.assertEqual(sync.stats['users_added'], 1)

    def test_existing_user_with_extra_groups(self):
        self.system.users['bob'] = entry('bob', 1001)
        sync = self.make_sync()
        tree = {
            'level': 'operator',
            'group': ['netadmin', 'wheel'],
            'home-directory': '/srv/bob',
            'authentication': {'encrypted-password': '$6$x$y'},
        }
        sync.update_user('bob', tree)

        self.assertEqual(self.system.commands, [[
            'usermod', '-m', '-s', '/bin/vbash', '-p', '$6$x$y',
            '-d', '/srv/bob', '-G', 'vyattaop,netadmin,wheel', 'bob'
        ]])
        self.assertEqual(sync.stats['users_updated'], 1)

    def test_existing_user_without_password_is_locked(self):
        self.system.users['bob'] = entry('bob', 1001)
        sync = self.make_sync()
        with self.assertLogs('login_sync.users', level='WARNING') as logs:
            sync.update_user('bob', {'level': 'operator', 'authentication': {}})

        cmd = self.system.commands[0]
        self.assertIn('-L', cmd)
        self.assertNotIn('-p', cmd)
        self.assertIn('locking local login', logs.output[0])

    def test_new_user_without_password_is_not_explicitly_locked(self):
        sync = self.make_sync()
        sync.update_user('carol', {'level': 'operator'})

        cmd = self.system.commands[0]
        self.assertEqual(cmd[0], 'useradd')
        self.assertNotIn('-L', cmd)
        self.assertNotIn('-p', cmd)

    def test_existing_root_gets_root_home(self):
        self.system.users['root'] = entry('root', 0, home='/root')
        sync = self.make_sync()
        sync.update_user('root', {'level': 'admin', 'authentication': {'encrypted-password': '$6$r$r'}})

        cmd = self.system.commands[0]
        self.assertEqual(cmd[cmd.index('-d') + 1], '/root')

    def test_custom_shell_and_home_base(self):
        self.settings.update({'shell': '/bin/bash', 'home_base': '/export/home'})
        sync = self.make_sync()
        sync.update_user('dave', {'level': 'operator'})

        cmd = self.system.commands[0]
        self.assertEqual(cmd[cmd.index('-s') + 1], '/bin/bash')
        self.assertEqual(cmd[cmd.index('-d') + 1], '/export/home/dave')

    def test_unknown_level_gives_only_configured_groups(self):
        sync = self.make_sync()
        sync.update_user('erin', {'level': 'guest', 'group': ['users']})

        cmd = self.system.commands[0]
        self.assertEqual(cmd[-3:], ['-G', 'users', 'erin'])

    def test_missing_level_skips_user(self):
        sync = self.make_sync()
        with self.assertLogs('login_sync.users', level='WARNING') as logs:
            self.assertFalse(sync.update_user('frank', {'authentication': {'encrypted-password': 'x'}}))

        self.assertEqual(self.system.commands, [])
        self.assertTrue(any('Level not defined for frank' in line for line in logs.output))

    def test_missing_input(self):
        sync = self.make_sync()
        with self.assertRaises(ValueError):
            sync.update_user('', {'level': 'admin'})
        with self.assertRaises(ValueError):
            sync.update_user('alice', None)

    def test_command_stderr_is_fatal(self):
        self.system.results[('useradd', '-m')] = CommandResult(0, '', 'useradd: group wheel does not exist')
        sync = self.make_sync()
        with self.assertRaises(AccountCommandError) as ctx:
            sync.update_user('alice', {'level': 'admin'})
        self.assertIn('Attempt to change user alice failed', str(ctx.exception))
        self.assertIn('group wheel does not exist', str(ctx.exception))

    def test_command_exit_status_is_fatal(self):
        self.system.results[('useradd', '-m')] = CommandResult(1, '', '')
        sync = self.make_sync()
        with self.assertRaises(AccountCommandError):
            sync.update_user('alice', {'level': 'admin'})


class TestDeleteUser(UserSyncTestCase):
    """Test cases for UserSync.delete_user."""

    def test_root_is_disabled_not_deleted(self):
        self.system.users['root'] = entry('root', 0, home='/root')
        sync = self.make_sync()
        with self.assertLogs('login_sync.users', level='WARNING'):
            self.assertEqual(sync.delete_user('root'), 'disabled')

        self.assertEqual(self.system.ran('usermod'), [['usermod', '-p', '!', 'root']])
        self.assertEqual(self.system.ran('userdel'), [])
        self.assertEqual(sync.stats['users_disabled'], 1)

    def test_root_disable_failure_is_fatal(self):
        self.system.results[('usermod', '-p')] = CommandResult(1, '', 'usermod: permission denied')
        sync = self.make_sync()
        with self.assertRaises(AccountCommandError):
            sync.delete_user('root')

    def test_current_login_is_kept(self):
        self.system.users['configd'] = entry('configd', 1005)
        sync = self.make_sync()
        with self.assertLogs('login_sync.users', level='WARNING') as logs:
            self.assertEqual(sync.delete_user('configd'), 'kept')

        self.assertEqual(self.system.ran('userdel'), [])
        self.assertEqual(self.system.ran('pkill'), [])
        self.assertIn('Attempting to delete current user: configd', logs.output[0])

    def test_session_user_is_kept(self):
        self.system.users['alice'] = entry('alice', 1001)
        self.system.ps_output = 'alice\n'
        with patch.dict(os.environ, {'VYATTA_CONFIG_SID': '4242'}):
            sync = self.make_sync()
            with self.assertLogs('login_sync.users', level='WARNING'):
                self.assertEqual(sync.delete_user('alice'), 'kept')

        self.assertEqual(self.system.ran('ps'), [['ps', '-h', '-o', 'user', '-p', '4242']])
        self.assertEqual(self.system.ran('userdel'), [])

    def test_session_lookup_falls_back_to_process_login(self):
        self.system.users['configd'] = entry('configd', 1005)
        self.system.ps_output = ''
        with patch.dict(os.environ, {'VYATTA_CONFIG_SID': '4242'}):
            sync = self.make_sync()
            with self.assertLogs('login_sync.users', level='WARNING'):
                self.assertEqual(sync.delete_user('configd'), 'kept')

    def test_delete_user(self):
        self.system.users['bob'] = entry('bob', 1001)
        sync = self.make_sync()
        self.assertEqual(sync.delete_user('bob'), 'deleted')

        self.assertEqual(self.system.ran('pkill', '-HUP'), [])
        self.assertEqual(self.system.ran('pkill', '-9'), [['pkill', '-9', '-u', 'bob']])
        self.assertEqual(self.system.ran('pam_tally'),
                         [['pam_tally', '--user', 'bob', '--reset', '--quiet']])
        self.assertEqual(self.system.ran('systemctl', '-q'),
                         [['systemctl', '-q', 'is-active', 'cli-sandbox@bob.service']])
        self.assertEqual(self.system.ran('userdel'), [['userdel', '--remove', 'bob']])
        self.assertEqual(sync.stats['users_deleted'], 1)

    def test_logged_in_user_is_logged_out(self):
        self.system.users['bob'] = entry('bob', 1001)
        self.system.who_output = 'bob      pts/0        2026-10-17 09:12 (10.0.0.5)\n'
        sync = self.make_sync()
        with self.assertLogs('login_sync.users', level='WARNING') as logs:
            sync.delete_user('bob')

        self.assertEqual(self.system.ran('pkill', '-HUP'), [['pkill', '-HUP', '-u', 'bob']])
        self.assertIn('bob is logged in, forcing logout', logs.output[0])
        # HUP is sent before the kill
        hup = self.system.commands.index(['pkill', '-HUP', '-u', 'bob'])
        kill = self.system.commands.index(['pkill', '-9', '-u', 'bob'])
        self.assertLess(hup, kill)

    def test_user_name_prefix_is_not_logged_in(self):
        self.system.users['bob'] = entry('bob', 1001)
        self.system.who_output = 'bobby    pts/0        2026-10-17 09:12\n'
        sync = self.make_sync()
        sync.delete_user('bob')
        self.assertEqual(self.system.ran('pkill', '-HUP'), [])

    def test_active_sandbox_is_stopped(self):
        self.system.users['bob'] = entry('bob', 1001)
        sync = self.make_sync()
        sync.delete_user('bob')
        self.assertEqual(self.system.ran('systemctl', 'stop'),
                         [['systemctl', 'stop', 'cli-sandbox@bob.service']])

    def test_inactive_sandbox_is_left_alone(self):
        self.system.users['bob'] = entry('bob', 1001)
        self.system.results[('systemctl', '-q')] = CommandResult(3, '', '')
        sync = self.make_sync()
        sync.delete_user('bob')
        self.assertEqual(self.system.ran('systemctl', 'stop'), [])

    def test_sandbox_stop_failure_is_a_warning(self):
        self.system.users['bob'] = entry('bob', 1001)
        self.system.results[('systemctl', 'stop')] = CommandResult(1, '', 'Failed to stop')
        sync = self.make_sync()
        with self.assertLogs('login_sync.users', level='WARNING'):
            self.assertEqual(sync.delete_user('bob'), 'deleted')

    def test_userdel_failure_is_fatal(self):
        self.system.users['bob'] = entry('bob', 1001)
        self.system.results[('userdel', '--remove')] = CommandResult(8, '', 'userdel: user bob is currently used')
        sync = self.make_sync()
        with self.assertRaises(AccountCommandError) as ctx:
            sync.delete_user('bob')
        self.assertIn('userdel of bob failed', str(ctx.exception))

    def test_absent_user(self):
        sync = self.make_sync()
        self.assertEqual(sync.delete_user('ghost'), 'absent')
        self.assertEqual(self.system.ran('userdel'), [])


class TestLocalUsers(UserSyncTestCase):
    """Test cases for local user discovery and orphan removal."""

    def setUp(self):
        super().setUp()
        self.system.users.update({
            'root': entry('root', 0, home='/root'),
            'daemon': entry('daemon', 1),
            'alice': entry('alice', 1000),
            'bob': entry('bob', 29999),
            'carol': entry('carol', 1500),
            'nobody': entry('nobody', 65534),
        })
        self.system.groups = {
            'root': ['root', 'vyattaadm'],
            'alice': ['users', 'vyattaadm'],
            'bob': ['users', 'vyattaop'],
            'carol': ['users'],
            'nobody': ['vyattaop'],
        }

    def test_local_users(self):
        sync = self.make_sync()
        self.assertEqual(sorted(sync.local_users()), ['alice', 'bob'])

    def test_remove_orphans(self):
        sync = self.make_sync()
        with self.assertLogs('login_sync.users', level='WARNING') as logs:
            removed = sync.remove_orphans({'alice'})

        self.assertEqual(removed, ['bob'])
        self.assertEqual(self.system.ran('userdel'), [['userdel', 'bob']])
        self.assertIn('Removing bob not listed in current configuration', logs.output[0])
        self.assertEqual(sync.stats['orphans_removed'], 1)

    def test_orphan_removal_failure_continues(self):
        self.system.results[('userdel', 'alice')] = CommandResult(8, '', 'userdel: user alice is currently used')
        sync = self.make_sync()
        with self.assertLogs('login_sync.users', level='WARNING') as logs:
            removed = sync.remove_orphans(set())

        self.assertEqual(removed, ['bob'])
        self.assertTrue(any('Attempt to delete user alice failed' in line for line in logs.output))


class TestUpdate(UserSyncTestCase):
    """Test cases for the full UserSync.update pass."""

    def setUp(self):
        super().setUp()
        self.running = {'user': [{'tagnode': 'olduser', 'level': 'operator'},
                                 {'tagnode': 'keep', 'level': 'operator'}]}
        self.candidate = {'user': [{'tagnode': 'keep', 'level': 'operator'},
                                   {'tagnode': 'newuser', 'level': 'admin',
                                    'authentication': {'encrypted-password': '$6$n$n'}}]}
        self.status = {
            'system login user olduser': NodeStatus.DELETED,
            'system login user keep': NodeStatus.UNCHANGED,
            'system login user newuser': NodeStatus.ADDED,
        }

        self.client.node_exists.return_value = True
        self.client.tree_get.side_effect = lambda db, path: (
            self.running if db == Database.RUNNING else self.candidate)
        self.client.node_get_status.side_effect = lambda db, path: self.status[path]

        self.system.users['olduser'] = entry('olduser', 1002)
        self.system.users['keep'] = entry('keep', 1003)
        self.system.groups = {'olduser': ['vyattaop'], 'keep': ['vyattaop']}

    def test_update(self):
        sync = self.make_sync()
        stats = sync.update()

        self.assertEqual(self.system.ran('userdel'), [['userdel', '--remove', 'olduser']])
        self.assertEqual(len(self.system.ran('useradd')), 1)
        self.assertEqual(self.system.ran('useradd')[0][-1], 'newuser')
        self.assertEqual(self.system.ran('usermod'), [])
        self.mock_write_keys.assert_called_once_with('newuser', self.client, self.system)

        self.assertEqual(stats['users_deleted'], 1)
        self.assertEqual(stats['users_added'], 1)
        self.assertEqual(stats['keys_written'], 1)
        self.assertEqual(stats['orphans_removed'], 0)

    def test_counters_are_per_run(self):
        sync = self.make_sync()
        sync.update()
        stats = sync.update()

        self.assertEqual(stats['users_deleted'], 1)
        self.assertEqual(stats['users_added'], 1)
        self.assertEqual(stats['keys_written'], 1)

    def test_deletions_run_before_additions(self):
        sync = self.make_sync()
        sync.update()
        names = [cmd[0] for cmd in self.system.commands]
        self.assertLess(names.index('userdel'), names.index('useradd'))

    def test_status_is_read_from_auto_database(self):
        sync = self.make_sync()
        sync.update()
        for call in self.client.node_get_status.call_args_list:
            self.assertEqual(call[0][0], Database.AUTO)

    def test_changed_user_is_updated(self):
        self.status['system login user keep'] = NodeStatus.CHANGED
        sync = self.make_sync()
        sync.update()
        self.assertEqual(self.system.ran('usermod')[0][-1], 'keep')

    def test_keys_are_written_when_level_missing(self):
        self.candidate['user'][1].pop('level')
        sync = self.make_sync()
        with self.assertLogs('login_sync.users', level='WARNING'):
            sync.update()
        self.assertEqual(self.system.ran('useradd'), [])
        self.mock_write_keys.assert_called_once_with('newuser', self.client, self.system)

    def test_unlisted_local_user_is_removed(self):
        self.system.users['stray'] = entry('stray', 1010)
        self.system.groups['stray'] = ['vyattaop']
        sync = self.make_sync()
        with self.assertLogs('login_sync.users', level='WARNING'):
            stats = sync.update()
        self.assertIn(['userdel', 'stray'], self.system.commands)
        self.assertEqual(stats['orphans_removed'], 1)

    def test_deleted_user_is_not_also_an_orphan(self):
        sync = self.make_sync()
        sync.update()
        self.assertNotIn(['userdel', 'olduser'], self.system.commands)

    def test_empty_configuration(self):
        self.client.node_exists.return_value = False
        sync = self.make_sync()
        with self.assertLogs('login_sync.users', level='WARNING'):
            sync.update()
        self.client.tree_get.assert_not_called()
        # every managed account is an orphan without configuration
        self.assertEqual(sorted(cmd[1] for cmd in self.system.ran('userdel')), ['keep', 'olduser'])

    def test_account_failure_aborts(self):
        self.system.results[('useradd', '-m')] = CommandResult(1, '', 'useradd: failure')
        sync = self.make_sync()
        with self.assertRaises(AccountCommandError):
            sync.update()
        self.mock_write_keys.assert_not_called()


if __name__ == '__main__':
    unittest.main()

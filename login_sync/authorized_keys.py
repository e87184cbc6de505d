"""
SSH authorized_keys generation for configured login users.
"""

import os
import logging
from typing import Dict, Any, List, Optional

from login_sync.configd_client import Database

logger = logging.getLogger(__name__)

HEADER = (
    "# Automatically generated by Vyatta configuration\n"
    "# Do not edit, all changes will be lost\n"
)

SSH_DIR_MODE = 0o750
KEY_FILE_MODE = 0o640


class AuthorizedKeysError(Exception):
    """Raised when an authorized_keys file cannot be written."""
    pass


def format_key(entry: Dict[str, Any]) -> str:
    """Render one public-keys entry as an authorized_keys line."""
    line = f"{entry.get('type') or ''} {entry.get('key') or ''} {entry.get('tagnode') or ''}\n"
    options = entry.get('options')
    if options:
        line = f"{options} {line}"
    return line


def public_keys(client, user: str) -> List[Dict[str, Any]]:
    """Return the configured public keys of a user."""
    path = f"system login user {user} authentication public-keys"
    if not client.node_exists(Database.AUTO, path):
        return []

    subtree = client.tree_get(Database.AUTO, path)
    return subtree.get('public-keys') or []


def write_authorized_keys(user: str, client, system) -> Optional[str]:
    """
    Write ~/.ssh/authorized_keys for a user from its configuration.

    The file is always rewritten so that keys removed from the
    configuration disappear as well.

    Args:
        user: Username
        client: Connected ConfigdClient
        system: SystemAccessBase for the password database

    Returns:
        Path of the written file, or None if the user has no home directory

    Raises:
        AuthorizedKeysError: If the file cannot be written
    """
    entry = system.getpwnam(user)
    if entry is None or not entry.home or not os.path.isdir(entry.home):
        logger.debug(f"No home directory for {user}, skipping authorized_keys")
        return None

    ssh_dir = os.path.join(entry.home, '.ssh')
    key_file = os.path.join(ssh_dir, 'authorized_keys')

    try:
        if not os.path.isdir(ssh_dir):
            os.mkdir(ssh_dir)
            os.chown(ssh_dir, entry.uid, entry.gid)
            os.chmod(ssh_dir, SSH_DIR_MODE)

        keys = public_keys(client, user)
        with open(key_file, 'w') as f:
            f.write(HEADER)
            for key in keys:
                f.write(format_key(key))

        os.chmod(key_file, KEY_FILE_MODE)
        os.chown(key_file, entry.uid, entry.gid)
    except OSError as e:
        raise AuthorizedKeysError(f"open {key_file} failed: {e}")

    logger.info(f"Wrote {len(keys)} public key(s) for {user}")
    return key_file

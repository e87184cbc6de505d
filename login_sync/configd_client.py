"""
Configuration daemon client for reading the login user tree.

This module wraps the system's configd client bindings and exposes the
three calls the sync needs: node existence, subtree retrieval and change
status of a node between the running and candidate configurations.
"""

import json
import time
import logging
import importlib
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

CONFIGD_MODULE = 'vyatta.configd'

# Socket missing or refused while configd is still starting
TRANSIENT_ERRORS = (OSError,)


class ConfigdConnectionError(Exception):
    """Raised when the configuration daemon cannot be reached."""
    pass


class ConfigdQueryError(Exception):
    """Raised when a configuration daemon query fails."""
    pass


class Database:
    """Configuration databases understood by configd."""
    RUNNING = 'RUNNING'
    CANDIDATE = 'CANDIDATE'
    AUTO = 'AUTO'


class NodeStatus:
    """Change status of a configuration node."""
    ADDED = 'ADDED'
    CHANGED = 'CHANGED'
    DELETED = 'DELETED'
    UNCHANGED = 'UNCHANGED'

    ALL = (ADDED, CHANGED, DELETED, UNCHANGED)


class ConfigdClient:
    """
    Client for the configuration daemon.

    Connection is established lazily through connect(); all query methods
    raise ConfigdQueryError on failure.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize configd client with configuration.

        Args:
            config: configd configuration dictionary
        """
        config = config or {}
        self.max_retries = config.get('max_retries', 2)
        self.retry_wait = config.get('retry_wait_seconds', 1)

        self._module = None
        self._client = None

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[float] = None) -> bool:
        """
        Establish connection to configd.

        Socket level failures (OSError) are retried while the daemon starts;
        any other error from the bindings fails at once.

        Args:
            max_retries: Retries after the first attempt (uses config default if None)
            retry_wait: Seconds to wait between attempts (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            ConfigdConnectionError: If the bindings are missing, a non-transient
                error occurs or every attempt fails
        """
        if max_retries is None:
            max_retries = self.max_retries
        if retry_wait is None:
            retry_wait = self.retry_wait

        try:
            self._module = importlib.import_module(CONFIGD_MODULE)
        except ImportError as e:
            raise ConfigdConnectionError(f"Configuration daemon bindings not available: {e}")

        attempts = max(0, max_retries) + 1
        self._client = None
        for attempt in range(1, attempts + 1):
            try:
                self._client = self._module.Client()
                break
            except TRANSIENT_ERRORS as e:
                if attempt == attempts:
                    raise ConfigdConnectionError(
                        f"Unable to connect to the Vyatta Configuration Daemon: {e}")
                logger.info(f"Configuration daemon connection failed on attempt {attempt}, "
                            f"retrying in {retry_wait}s: {e}")
                time.sleep(retry_wait)
            except Exception as e:
                raise ConfigdConnectionError(
                    f"Unable to connect to the Vyatta Configuration Daemon: {type(e).__name__}: {e}")

        if self._client is None:
            raise ConfigdConnectionError("Unable to connect to the Vyatta Configuration Daemon")

        logger.debug("Connected to configuration daemon")
        return True

    def disconnect(self):
        """Drop the daemon connection."""
        self._client = None

    def is_connected(self) -> bool:
        return self._client is not None

    def _require_client(self):
        if self._client is None:
            raise ConfigdConnectionError("Not connected to the configuration daemon")
        return self._client

    def _database(self, db: str):
        client = self._require_client()
        try:
            return getattr(client, db)
        except AttributeError:
            raise ConfigdQueryError(f"Unknown configuration database: {db}")

    def node_exists(self, db: str, path: str) -> bool:
        """Return True if path exists in the given database."""
        client = self._require_client()
        try:
            return bool(client.node_exists(self._database(db), path))
        except ConfigdQueryError:
            raise
        except Exception as e:
            raise ConfigdQueryError(f"node_exists failed for '{path}': {e}")

    def tree_get(self, db: str, path: str) -> Dict[str, Any]:
        """
        Retrieve a configuration subtree.

        Returns:
            Decoded subtree; the top level key is the last path element
        """
        client = self._require_client()
        try:
            raw = client.tree_get(self._database(db), path)
        except ConfigdQueryError:
            raise
        except Exception as e:
            raise ConfigdQueryError(f"tree_get failed for '{path}': {e}")

        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ConfigdQueryError(f"Invalid JSON for '{path}': {e}")

        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ConfigdQueryError(f"Unexpected tree for '{path}': {type(raw).__name__}")
        return raw

    def node_get_status(self, db: str, path: str) -> str:
        """
        Get the change status of a node.

        Returns:
            One of the NodeStatus values
        """
        client = self._require_client()
        try:
            raw = client.node_get_status(self._database(db), path)
        except ConfigdQueryError:
            raise
        except Exception as e:
            raise ConfigdQueryError(f"node_get_status failed for '{path}': {e}")

        for status in NodeStatus.ALL:
            if raw == getattr(client, status, None) or (isinstance(raw, str) and raw.upper() == status):
                return status

        raise ConfigdQueryError(f"Unknown status for '{path}': {raw!r}")

"""
Main entry point for Login User Sync.

Invoked by the configuration system on commit to bring the system accounts
in line with the `system login user` configuration.
"""

import os
import sys
import json
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, Optional

from login_sync.authorized_keys import AuthorizedKeysError
from login_sync.config import load_config, ConfigurationError
from login_sync.configd_client import ConfigdClient, ConfigdConnectionError, ConfigdQueryError
from login_sync.logging_setup import setup_logging, get_logging_stats
from login_sync.users import UserSync, AccountCommandError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ACCOUNT_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_CONFIGD_ERROR = 3
EXIT_UNEXPECTED = 4


class LoginSyncApp:
    """
    Runs one synchronization of login users.

    Loads settings, configures logging, connects to the configuration
    daemon and hands over to UserSync.
    """

    def __init__(self, config_path: Optional[str] = None, system=None):
        """
        Initialize the application.

        Args:
            config_path: Path to configuration file
            system: SystemAccessBase to use instead of the live system
        """
        self.config = None
        self.config_path = config_path
        self.system = system
        self.configd_client = None

        self.sync_stats = {
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0
        }

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            setup_logging(self.config.get('logging', {}))

            logger.info("Starting login user sync")

            self._connect_configd()

            user_sync = UserSync(self.configd_client, self.system, self.config.get('login'))
            self.sync_stats.update(user_sync.update())

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()

            self._log_sync_summary()
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except ConfigdConnectionError as e:
            logger.error(str(e))
            return EXIT_CONFIGD_ERROR
        except (AccountCommandError, AuthorizedKeysError) as e:
            logger.error(str(e))
            return EXIT_ACCOUNT_ERROR
        except ConfigdQueryError as e:
            logger.error(f"Configuration daemon query failed: {e}")
            return EXIT_UNEXPECTED
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        self.config = load_config(self.config_path)

    def _connect_configd(self):
        """Establish the configuration daemon connection."""
        self.configd_client = ConfigdClient(self.config.get('configd', {}))
        try:
            self.configd_client.connect()
        except ConfigdConnectionError:
            self.configd_client = None
            raise

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.sync_stats

        logger.info("=== Login Sync Summary ===")
        logger.info(f"Runtime: {stats['runtime_seconds']:.2f} seconds")
        logger.info(f"Users added: {stats.get('users_added', 0)}")
        logger.info(f"Users updated: {stats.get('users_updated', 0)}")
        logger.info(f"Users deleted: {stats.get('users_deleted', 0)}")
        logger.info(f"Users disabled: {stats.get('users_disabled', 0)}")
        logger.info(f"Users kept: {stats.get('users_kept', 0)}")
        logger.info(f"Orphans removed: {stats.get('orphans_removed', 0)}")
        logger.info(f"Key files written: {stats.get('keys_written', 0)}")
        logger.info(f"Warnings: {stats.get('warnings', 0)}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        level_file = self.config['login']['level_file']
        if os.access(level_file, os.R_OK):
            health_status['checks']['level_file'] = {
                'status': 'pass',
                'message': f'{level_file} is readable'
            }
        else:
            # Not fatal for a sync, users simply get no level groups
            health_status['checks']['level_file'] = {
                'status': 'warn',
                'message': f'{level_file} is not readable'
            }

        try:
            test_client = ConfigdClient(self.config.get('configd', {}))
            test_client.connect(max_retries=0)
            test_client.disconnect()
            health_status['checks']['configd'] = {
                'status': 'pass',
                'message': 'Configuration daemon connection successful'
            }
        except ConfigdConnectionError as e:
            health_status['checks']['configd'] = {
                'status': 'fail',
                'message': f'Configuration daemon connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        health_status['checks']['logging'] = {
            'status': 'info',
            'details': get_logging_stats()
        }

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.configd_client:
            self.configd_client.disconnect()


def main():
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='Synchronize configured login users with system accounts')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')

    args = parser.parse_args()

    app = LoginSyncApp(config_path=args.config)

    if args.health_check:
        health_status = app.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    sys.exit(app.run())


if __name__ == "__main__":
    main()

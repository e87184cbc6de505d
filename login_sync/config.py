"""
Configuration loading and management for Login User Sync.

This module handles loading settings from a YAML file and environment
variables, with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = '/opt/vyatta/etc/login-sync.yaml'


class ConfigurationError(Exception):
    """Raised when configuration is invalid."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings
    ENV_OVERRIDES = {
        'login.level_file': 'LOGIN_SYNC_LEVEL_FILE',
        'logging.level': 'LOGIN_SYNC_LOG_LEVEL',
        'logging.log_dir': 'LOGIN_SYNC_LOG_DIR',
    }

    LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses LOGIN_SYNC_CONFIG env var
                or the system default path
        """
        self.explicit = bool(config_path or os.getenv('LOGIN_SYNC_CONFIG'))
        self.config_path = config_path or os.getenv('LOGIN_SYNC_CONFIG', DEFAULT_CONFIG_PATH)
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        A missing file is only an error when it was asked for explicitly;
        otherwise the built-in defaults are used.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            if self.explicit:
                raise ConfigurationError(f"Configuration file not found: {self.config_path}")
            logger.debug(f"No configuration file at {self.config_path}, using defaults")
            self.config = {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration in {self.config_path} must be a mapping")

        # Apply environment variable overrides
        self._apply_env_overrides()

        # Apply defaults
        self._apply_defaults()

        # Validate configuration
        self._validate()

        logger.debug(f"Configuration loaded from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        # Account defaults
        login_defaults = {
            'level_file': '/opt/vyatta/etc/level',
            'shell': '/bin/vbash',
            'home_base': '/home',
            'uid_min': 1000,
            'uid_max': 29999,
            'group_marker': 'vyatta',
            'sandbox_service': 'cli-sandbox@{user}.service'
        }
        login_config = self._section('login')
        for key, value in login_defaults.items():
            login_config.setdefault(key, value)

        # Configuration daemon defaults
        configd_defaults = {
            'max_retries': 2,
            'retry_wait_seconds': 1
        }
        configd_config = self._section('configd')
        for key, value in configd_defaults.items():
            configd_config.setdefault(key, value)

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': '/var/log/login-sync',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'WARNING'
        }
        logging_config = self._section('logging')
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

    def _section(self, name: str) -> Dict[str, Any]:
        section = self.config.get(name)
        if section is None:
            section = self.config[name] = {}
        elif not isinstance(section, dict):
            raise ConfigurationError(f"Configuration section '{name}' must be a mapping")
        return section

    def _validate(self):
        """Validate configuration values."""
        errors = []

        login_config = self.config['login']
        for field in ('uid_min', 'uid_max'):
            if not isinstance(login_config.get(field), int):
                errors.append(f"login.{field} must be an integer")
        if not errors and login_config['uid_min'] > login_config['uid_max']:
            errors.append("login.uid_min must not exceed login.uid_max")

        for field in ('level_file', 'shell', 'home_base', 'group_marker'):
            if not login_config.get(field):
                errors.append(f"Missing required login field: {field}")

        if '{user}' not in str(login_config.get('sandbox_service', '')):
            errors.append("login.sandbox_service must contain the {user} placeholder")

        configd_config = self.config['configd']
        for field in ('max_retries', 'retry_wait_seconds'):
            value = configd_config.get(field)
            if not isinstance(value, (int, float)) or value < 0:
                errors.append(f"configd.{field} must be a non-negative number")

        logging_config = self.config['logging']
        for field in ('level', 'console_level'):
            if str(logging_config.get(field, '')).upper() not in self.LOG_LEVELS:
                errors.append(f"Unknown log level for logging.{field}: {logging_config.get(field)}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()

"""
Logging setup and configuration for Login User Sync.

This module provides centralized logging configuration with file rotation,
retention policies, and console output for the configuration session that
triggered the sync.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any, List
from datetime import datetime, timedelta

LOG_FILE_NAME = 'login-sync.log'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub password hashes and secrets from log messages."""

    SENSITIVE_KEYWORDS = [
        'encrypted-password', 'encrypted_password', 'password', 'passwd',
        'secret', 'token', 'pwd'
    ]

    # crypt(3) hashes: $1$, $5$, $6$, $y$, $2b$ ...
    CRYPT_HASH = re.compile(r'\$(?:1|2[abxy]?|5|6|y|gy|7)\$[^\s\'",}\]]+')

    # usermod/useradd password argument
    PASSWORD_OPTION = re.compile(r'((?:^|[\s\[,\'"])-p[\'"]?(?:,\s*|\s+)[\'"]?)(?!!)[^\s\'",\]]+')

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            # Merge arguments so that they are scrubbed as well
            if getattr(record, 'args', None):
                msg = record.getMessage()
                record.args = None
            else:
                msg = str(record.msg)

            msg = self.scrub(msg)
            record.msg = msg

        return True

    @classmethod
    def scrub(cls, msg: str) -> str:
        """Return msg with sensitive values replaced by ****."""
        msg = cls.CRYPT_HASH.sub('****', msg)
        msg = cls.PASSWORD_OPTION.sub(r'\1****', msg)

        for keyword in cls.SENSITIVE_KEYWORDS:
            # key=value
            msg = re.sub(rf'({re.escape(keyword)}\s*=\s*)[^\s,}}\]]+', r'\1****', msg, flags=re.IGNORECASE)
            # "key": "value"
            msg = re.sub(rf'(["\']{re.escape(keyword)}["\']\s*:\s*["\'])[^"\']*(["\'])', r'\1****\2', msg,
                         flags=re.IGNORECASE)

        return msg


class LoggingManager:
    """
    Manages logging configuration for the Login User Sync application.

    Provides file-based logging with rotation, retention policies, and
    console output.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
        """
        if self.configured:
            return

        logging_config = config if config else {}

        # Extract configuration values
        log_level = str(logging_config.get('level', 'INFO')).upper()
        self.log_dir = logging_config.get('log_dir', '/var/log/login-sync')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = str(logging_config.get('console_level', 'WARNING')).upper()

        # Create log directory
        self._ensure_log_directory()

        # Configure root logger
        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))

        # Clear any existing handlers
        root_logger.handlers.clear()

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        # Warnings are shown to the operator as plain lines
        console_formatter = logging.Formatter('%(message)s')

        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
        if file_handler is not None:
            file_handler.setLevel(getattr(logging, log_level, logging.INFO))
            file_handler.setFormatter(detailed_formatter)
            file_handler.addFilter(sensitive_filter)
            root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        # Clean up old log files
        self._cleanup_old_logs()

        self.configured = True

        logger = logging.getLogger(__name__)
        logger.debug(f"Logging configured: level={log_level}, dir={self.log_dir}, "
                     f"retention={self.retention_days} days, console={console_enabled}")

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists."""
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                self.log_dir = None

    def _create_file_handler(self, rotation: str):
        """
        Create appropriate file handler based on rotation setting.

        Args:
            rotation: Rotation setting ('daily', 'midnight', or 'none')

        Returns:
            Configured logging handler, or None when no log directory is usable
        """
        if not self.log_dir:
            return None

        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)

        try:
            if str(rotation).lower() in ['daily', 'midnight']:
                handler = logging.handlers.TimedRotatingFileHandler(
                    filename=log_file,
                    when='midnight',
                    interval=1,
                    backupCount=self.retention_days,
                    encoding='utf-8'
                )
                handler.suffix = '%Y-%m-%d'
            else:
                handler = logging.FileHandler(log_file, encoding='utf-8')
        except OSError as e:
            print(f"Warning: Could not open log file {log_file}: {e}")
            return None

        return handler

    def _cleanup_old_logs(self) -> None:
        """Clean up log files older than retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)

        for log_file in glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '*')):
            # Skip the current log file
            if log_file.endswith(LOG_FILE_NAME):
                continue

            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> List[str]:
        """
        Get list of current log files.

        Returns:
            List of log file paths
        """
        if not self.log_dir:
            return []

        return sorted(glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '*')))

    def get_log_stats(self) -> Dict[str, Any]:
        """
        Get statistics about current logging setup.

        Returns:
            Dictionary with logging statistics
        """
        log_files = self.get_log_files()
        total_size = 0

        for log_file in log_files:
            try:
                total_size += os.path.getsize(log_file)
            except OSError:
                continue

        return {
            'configured': self.configured,
            'log_directory': self.log_dir,
            'retention_days': self.retention_days,
            'log_files_count': len(log_files),
            'total_size_bytes': total_size
        }


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


def get_logging_stats() -> Dict[str, Any]:
    """Get logging statistics."""
    return _logging_manager.get_log_stats()


class SecurityAuditLogger:
    """Special logger for account changes."""

    def __init__(self):
        self.logger = logging.getLogger('security')

    def log_user_operation(self, operation: str, username: str, success: bool, details: str = ""):
        """Log account operations for audit trail."""
        status = "SUCCESS" if success else "FAILURE"
        message = f"User operation {status}: {operation} user={username}"
        if details:
            message += f" - {details}"
        self.logger.info(message)

    def log_security_event(self, event: str, details: str = ""):
        """Log general security events."""
        message = f"Security event: {event}"
        if details:
            message += f" - {details}"
        self.logger.warning(message)


# Global security logger instance
security_logger = SecurityAuditLogger()

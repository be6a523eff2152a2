"""
Logging setup and configuration for Identity Sync.

This module provides centralized logging configuration with file rotation,
retention of old log files, scrubbing of credentials from log output and a
dedicated security logger for authentication and lifecycle events.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any, Optional
from datetime import datetime, timedelta


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'secret', 'token',
        'credential', 'pwd', 'api_key', 'password_hash'
    ]

    _ASSIGNMENT_PATTERNS = [
        re.compile(rf'({keyword}\s*=\s*)[^\s,}}\]]+(\s|,|$)', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    _QUOTED_JSON_PATTERNS = [
        re.compile(rf'("{keyword}"\s*:\s*")[^"]*(")', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    _PYTHON_DICT_PATTERNS = [
        re.compile(rf"('{keyword}'\s*:\s*')[^']*(')", re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)

            for pattern in self._ASSIGNMENT_PATTERNS:
                msg = pattern.sub(r'\1****\2', msg)
            for pattern in self._QUOTED_JSON_PATTERNS:
                msg = pattern.sub(r'\1****\2', msg)
            for pattern in self._PYTHON_DICT_PATTERNS:
                msg = pattern.sub(r'\1****\2', msg)

            record.msg = msg

        return True


class LoggingManager:
    """
    Manages logging configuration for the Identity Sync application.

    Provides file-based logging with rotation, retention policies, and
    container-friendly console output.
    """

    LOG_FILE_NAME = 'identity_sync.log'

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Dict[str, Any]]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = logging_config.get('level', 'INFO').upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = logging_config.get('console_level', 'WARNING').upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        )

        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
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

        self._cleanup_old_logs()

        self.configured = True

        logger = logging.getLogger(__name__)
        logger.info(f"Logging configured: level={log_level}, dir={self.log_dir}, "
                    f"retention={self.retention_days} days, console={console_enabled}")

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists."""
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create appropriate file handler based on rotation setting.

        Args:
            rotation: Rotation setting ('daily', 'midnight', or 'none')

        Returns:
            Configured logging handler
        """
        log_file = os.path.join(self.log_dir, self.LOG_FILE_NAME)

        if rotation.lower() in ['daily', 'midnight']:
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

        return handler

    def _cleanup_old_logs(self) -> None:
        """Clean up rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)

        for log_file in glob.glob(os.path.join(self.log_dir, f'{self.LOG_FILE_NAME}.*')):
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def reset(self) -> None:
        """Allow logging to be configured again (used when reloading configuration)."""
        self.configured = False


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


class SecurityAuditLogger:
    """Special logger for security-related events."""

    def __init__(self):
        self.logger = logging.getLogger('security')

    def log_authentication_attempt(self, email: str, origin: str, success: bool):
        """Log authentication attempts."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Authentication {status}: user={email} origin={origin}")

    def log_lockout(self, email: str, remaining_minutes: int):
        self.logger.warning(f"Account locked: user={email} remaining_minutes={remaining_minutes}")

    def log_lifecycle_action(self, action: str, identity_id: str, details: str = ""):
        """Log identity lifecycle transitions."""
        message = f"Lifecycle {action}: identity={identity_id}"
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

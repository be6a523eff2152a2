"""
Configuration loading and management for Identity Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults. It also builds the typed lockout and retention
settings handed to the tracker and lifecycle manager at construction.
"""

import os
import yaml
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Any, Optional

from identity_sync.models import RetentionPolicy

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


@dataclass(frozen=True)
class LockoutConfig:
    """Thresholds for credential-guessing protection."""
    max_attempts: int = 5
    reset_window_minutes: int = 15
    lockout_duration_minutes: int = 30


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'directory.bind_password': 'DIRECTORY_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    ARCHIVE_ORIGINS = ('deactivation', 'anonymization')

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError("Configuration root must be a mapping")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
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
            if key not in current or current[key] is None:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        directory_config = self.config.get('directory') or {}
        for field_name in ['server_url', 'bind_dn', 'bind_password', 'base_dn']:
            if not directory_config.get(field_name):
                errors.append(f"Missing required directory field: {field_name}")

        lockout_config = self.config.get('lockout') or {}
        for field_name in ['max_attempts', 'reset_window_minutes', 'lockout_duration_minutes']:
            value = lockout_config.get(field_name)
            if value is not None and (not isinstance(value, int) or value <= 0):
                errors.append(f"lockout.{field_name} must be a positive integer")

        retention_config = self.config.get('retention') or {}
        for field_name in ['anonymize_after_days', 'archive_after_days', 'delete_after_days']:
            value = retention_config.get(field_name)
            if value is not None and (not isinstance(value, (int, float)) or value < 0):
                errors.append(f"retention.{field_name} must be a non-negative number")

        reassign = retention_config.get('reassign_subordinates')
        if reassign is not None and not isinstance(reassign, bool):
            errors.append("retention.reassign_subordinates must be true or false")

        origin = retention_config.get('archive_measured_from')
        if origin is not None and origin not in self.ARCHIVE_ORIGINS:
            errors.append(f"retention.archive_measured_from must be one of {list(self.ARCHIVE_ORIGINS)}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        directory_defaults = {
            'search_filter': '(&(objectClass=user)(objectCategory=person))',
            'attributes': [
                'sAMAccountName', 'mail', 'givenName', 'sn', 'displayName',
                'employeeID', 'department', 'title', 'manager', 'memberOf',
                'userAccountControl'
            ],
            'domain': None,
            'connection_timeout': 10,
            'receive_timeout': 10,
            'page_size': 1000,
        }
        self._merge_defaults('directory', directory_defaults)

        self._merge_defaults('sync', {
            'external_id_attribute': 'sAMAccountName',
            'run_timeout_seconds': 600,
        })

        lockout_defaults = LockoutConfig()
        self._merge_defaults('lockout', {
            'max_attempts': lockout_defaults.max_attempts,
            'reset_window_minutes': lockout_defaults.reset_window_minutes,
            'lockout_duration_minutes': lockout_defaults.lockout_duration_minutes,
        })

        self._merge_defaults('retention', {
            'anonymize_after_days': 365,
            'archive_after_days': 730,
            'delete_after_days': None,
            'reassign_subordinates': True,
            'archive_measured_from': 'deactivation',
        })

        self._merge_defaults('storage', {
            'database': 'identity_sync.db',
        })

        self._merge_defaults('logging', {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        })

        self._merge_defaults('error_handling', {
            'max_retries': 3,
            'retry_wait_seconds': 5,
        })

        self._merge_defaults('notifications', {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        })

        # Connect retries live under error_handling but the client reads them from its own section
        self.config['directory'].setdefault('error_handling', self.config['error_handling'])

    def _merge_defaults(self, section: str, defaults: Dict[str, Any]):
        section_config = self.config.get(section)
        if section_config is None:
            section_config = {}
            self.config[section] = section_config
        for key, value in defaults.items():
            section_config.setdefault(key, value)


def build_lockout_config(config: Dict[str, Any]) -> LockoutConfig:
    """Build lockout thresholds from the ``lockout`` configuration section."""
    lockout = config.get('lockout') or {}
    defaults = LockoutConfig()
    return LockoutConfig(
        max_attempts=lockout.get('max_attempts', defaults.max_attempts),
        reset_window_minutes=lockout.get('reset_window_minutes', defaults.reset_window_minutes),
        lockout_duration_minutes=lockout.get('lockout_duration_minutes', defaults.lockout_duration_minutes),
    )


def build_retention_policy(config: Dict[str, Any]) -> RetentionPolicy:
    """
    Build the retention policy from the ``retention`` configuration section.

    A missing key keeps the policy default; an explicit null disables the stage.
    """
    retention = config.get('retention') or {}
    defaults = RetentionPolicy()

    def days(key: str, default: Optional[timedelta]) -> Optional[timedelta]:
        if key not in retention:
            return default
        value = retention[key]
        return timedelta(days=value) if value is not None else None

    return RetentionPolicy(
        anonymize_after=days('anonymize_after_days', defaults.anonymize_after),
        archive_after=days('archive_after_days', defaults.archive_after),
        delete_after=days('delete_after_days', defaults.delete_after),
        reassign_subordinates=retention.get('reassign_subordinates', defaults.reassign_subordinates),
        archive_measured_from=retention.get('archive_measured_from', defaults.archive_measured_from),
    )


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

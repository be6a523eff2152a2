#!/usr/bin/env python3
"""
Unit tests for configuration module.

Covers configuration loading, validation, defaults, environment variable
overrides and the builders for lockout thresholds and retention policy.
"""

import os
import sys
import tempfile
import yaml
import unittest
from datetime import timedelta
from unittest.mock import patch
from typing import Dict, Any

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from identity_sync.config import (
    ConfigLoader, ConfigurationError, LockoutConfig, load_config,
    build_lockout_config, build_retention_policy
)


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'directory': {
                'server_url': 'ldaps://dc01.example.com:636',
                'bind_dn': 'CN=svc-identity,OU=Service,DC=example,DC=com',
                'bind_password': 'password',
                'base_dn': 'OU=Staff,DC=example,DC=com',
                'domain': 'example.com'
            },
            'lockout': {
                'max_attempts': 3
            },
            'retention': {
                'anonymize_after_days': 180,
                'delete_after_days': 1095
            },
            'notifications': {
                'enable_email': True,
                'smtp_server': 'smtp.example.com',
                'smtp_password': 'smtppass',
                'email_from': 'identity@example.com',
                'email_to': ['it-ops@example.com']
            }
        }
        self.temp_files = []

    def tearDown(self):
        for path in self.temp_files:
            if os.path.exists(path):
                os.unlink(path)

    def create_test_config(self, config_data: Any) -> str:
        """Create a temporary config file with the given data."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            yaml.safe_dump(config_data, f)
        self.temp_files.append(f.name)
        return f.name

    def test_load_valid_config_file(self):
        config = ConfigLoader(self.create_test_config(self.valid_config)).load()

        self.assertEqual(config['directory']['server_url'], 'ldaps://dc01.example.com:636')
        self.assertEqual(config['lockout']['max_attempts'], 3)
        self.assertEqual(config['retention']['anonymize_after_days'], 180)

    def test_default_values_applied(self):
        config = ConfigLoader(self.create_test_config(self.valid_config)).load()

        self.assertEqual(config['directory']['page_size'], 1000)
        self.assertIn('userAccountControl', config['directory']['attributes'])
        self.assertEqual(config['sync']['external_id_attribute'], 'sAMAccountName')
        self.assertEqual(config['sync']['run_timeout_seconds'], 600)
        self.assertEqual(config['lockout']['reset_window_minutes'], 15)
        self.assertEqual(config['lockout']['lockout_duration_minutes'], 30)
        self.assertEqual(config['retention']['archive_after_days'], 730)
        self.assertEqual(config['retention']['archive_measured_from'], 'deactivation')
        self.assertTrue(config['retention']['reassign_subordinates'])
        self.assertEqual(config['storage']['database'], 'identity_sync.db')
        self.assertEqual(config['logging']['level'], 'INFO')
        self.assertEqual(config['error_handling']['max_retries'], 3)
        self.assertEqual(config['notifications']['smtp_port'], 587)
        self.assertEqual(config['directory']['error_handling']['retry_wait_seconds'], 5)

    def test_load_config_with_environment_overrides(self):
        config_path = self.create_test_config(self.valid_config)
        with patch.dict(os.environ, {
            'DIRECTORY_BIND_PASSWORD': 'env_bind_password',
            'SMTP_PASSWORD': 'env_smtp_password'
        }):
            config = ConfigLoader(config_path).load()

        self.assertEqual(config['directory']['bind_password'], 'env_bind_password')
        self.assertEqual(config['notifications']['smtp_password'], 'env_smtp_password')

    def test_environment_supplies_missing_password(self):
        del self.valid_config['directory']['bind_password']
        config_path = self.create_test_config(self.valid_config)
        with patch.dict(os.environ, {'DIRECTORY_BIND_PASSWORD': 'from_env'}):
            config = ConfigLoader(config_path).load()

        self.assertEqual(config['directory']['bind_password'], 'from_env')

    def test_missing_config_file(self):
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader('/nonexistent/config.yaml').load()
        self.assertIn('Configuration file not found', str(context.exception))

    def test_invalid_yaml_format(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write("directory: [unclosed\n  - : :")
        self.temp_files.append(f.name)

        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(f.name).load()
        self.assertIn('Invalid YAML', str(context.exception))

    def test_non_mapping_root(self):
        with self.assertRaises(ConfigurationError):
            ConfigLoader(self.create_test_config(['not', 'a', 'mapping'])).load()

    def test_missing_required_directory_fields(self):
        del self.valid_config['directory']['base_dn']
        del self.valid_config['directory']['bind_dn']

        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop('DIRECTORY_BIND_PASSWORD', None)
            with self.assertRaises(ConfigurationError) as context:
                ConfigLoader(self.create_test_config(self.valid_config)).load()

        message = str(context.exception)
        self.assertIn('base_dn', message)
        self.assertIn('bind_dn', message)

    def test_missing_directory_section(self):
        del self.valid_config['directory']
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(self.create_test_config(self.valid_config)).load()
        self.assertIn('server_url', str(context.exception))

    def test_invalid_lockout_values(self):
        self.valid_config['lockout'] = {'max_attempts': 0, 'lockout_duration_minutes': 'thirty'}
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(self.create_test_config(self.valid_config)).load()

        self.assertIn('lockout.max_attempts', str(context.exception))
        self.assertIn('lockout.lockout_duration_minutes', str(context.exception))

    def test_invalid_retention_values(self):
        self.valid_config['retention'] = {'archive_after_days': -1, 'archive_measured_from': 'creation'}
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(self.create_test_config(self.valid_config)).load()

        self.assertIn('retention.archive_after_days', str(context.exception))
        self.assertIn('archive_measured_from', str(context.exception))

    def test_reassign_subordinates_must_be_boolean(self):
        self.valid_config['retention'] = {'reassign_subordinates': 'false'}
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(self.create_test_config(self.valid_config)).load()

        self.assertIn('retention.reassign_subordinates', str(context.exception))

    def test_config_from_environment_path(self):
        config_path = self.create_test_config(self.valid_config)
        with patch.dict(os.environ, {'CONFIG_PATH': config_path}):
            loader = ConfigLoader()
        self.assertEqual(loader.config_path, config_path)

    def test_convenience_load_config_function(self):
        config = load_config(self.create_test_config(self.valid_config))
        self.assertIn('directory', config)


class TestConfigBuilders(unittest.TestCase):
    """Test cases for building runtime objects from configuration."""

    def test_lockout_defaults(self):
        self.assertEqual(build_lockout_config({}), LockoutConfig(5, 15, 30))

    def test_lockout_from_section(self):
        lockout = build_lockout_config({'lockout': {'max_attempts': 3, 'lockout_duration_minutes': 60}})
        self.assertEqual(lockout.max_attempts, 3)
        self.assertEqual(lockout.reset_window_minutes, 15)
        self.assertEqual(lockout.lockout_duration_minutes, 60)

    def test_retention_policy(self):
        policy = build_retention_policy({'retention': {
            'anonymize_after_days': 30,
            'archive_after_days': 90,
            'delete_after_days': 400,
            'reassign_subordinates': False,
            'archive_measured_from': 'anonymization'
        }})

        self.assertEqual(policy.anonymize_after, timedelta(days=30))
        self.assertEqual(policy.archive_after, timedelta(days=90))
        self.assertEqual(policy.delete_after, timedelta(days=400))
        self.assertFalse(policy.reassign_subordinates)
        self.assertEqual(policy.archive_measured_from, 'anonymization')

    def test_missing_days_keep_policy_defaults(self):
        policy = build_retention_policy({})

        self.assertEqual(policy.anonymize_after, timedelta(days=365))
        self.assertEqual(policy.archive_after, timedelta(days=730))
        self.assertIsNone(policy.delete_after)
        self.assertTrue(policy.reassign_subordinates)
        self.assertEqual(policy.archive_measured_from, 'deactivation')

    def test_explicit_null_disables_stage(self):
        policy = build_retention_policy({'retention': {'anonymize_after_days': 30, 'archive_after_days': None}})

        self.assertEqual(policy.anonymize_after, timedelta(days=30))
        self.assertIsNone(policy.archive_after)
        self.assertIsNone(policy.delete_after)
        self.assertTrue(policy.reassign_subordinates)


if __name__ == '__main__':
    unittest.main()

#!/usr/bin/env python3
"""
Unit tests for the main orchestrator.

Runs the orchestrator against an in-memory directory and an in-memory
identity store.
"""

import unittest
from unittest.mock import Mock, patch
import sys
import os

# Add parent directory to path to import identity_sync modules
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fakes import FakeDirectory, ad_user, BASE_DN
from identity_sync.main import (
    IdentitySyncOrchestrator, main,
    EXIT_OK, EXIT_COMPLETED_WITH_ERRORS, EXIT_CONFIGURATION_ERROR,
    EXIT_DIRECTORY_ERROR, EXIT_UNEXPECTED_ERROR
)


class TestIdentitySyncOrchestrator(unittest.TestCase):
    """Test cases for IdentitySyncOrchestrator class."""

    def setUp(self):
        """Set up test fixtures."""
        self.test_config = {
            'directory': {
                'server_url': 'ldaps://dc01.test.com',
                'bind_dn': 'CN=svc-identity,DC=test,DC=com',
                'bind_password': 'test_password',
                'base_dn': BASE_DN
            },
            'sync': {
                'external_id_attribute': 'sAMAccountName',
                'run_timeout_seconds': 600
            },
            'retention': {
                'anonymize_after_days': 365,
                'archive_after_days': 730
            },
            'storage': {
                'database': ':memory:'
            },
            'error_handling': {
                'max_retries': 2,
                'retry_wait_seconds': 1
            },
            'notifications': {
                'enable_email': False
            }
        }
        self.directory = FakeDirectory([
            ad_user('boss', display='Team Lead'),
            ad_user('jdoe', manager='Team Lead'),
        ])

        client_patcher = patch('identity_sync.main.DirectoryClient', return_value=self.directory)
        logging_patcher = patch('identity_sync.main.setup_logging')
        self.mock_client_class = client_patcher.start()
        logging_patcher.start()
        self.addCleanup(client_patcher.stop)
        self.addCleanup(logging_patcher.stop)

        self.orchestrator = IdentitySyncOrchestrator(config=self.test_config)
        self.addCleanup(self.orchestrator.close)

    def test_run_sync_success(self):
        exit_code = self.orchestrator.run_sync()

        self.assertEqual(exit_code, EXIT_OK)
        self.assertEqual(self.orchestrator.statistics()['active'], 2)
        client_config = self.mock_client_class.call_args[0][0]
        self.assertEqual(client_config['external_id_attribute'], 'sAMAccountName')

    def test_run_sync_with_record_errors(self):
        self.directory.records.append(ad_user('broken', email=''))

        with patch('identity_sync.main.send_sync_errors') as mock_send_errors:
            exit_code = self.orchestrator.run_sync()

        self.assertEqual(exit_code, EXIT_COMPLETED_WITH_ERRORS)
        mock_send_errors.assert_called_once()
        result, notifications_config = mock_send_errors.call_args[0]
        self.assertEqual(len(result.errors), 1)
        self.assertEqual(notifications_config, {'enable_email': False})

    def test_run_sync_directory_unreachable(self):
        self.directory.fail_connect = True

        with patch('identity_sync.main.send_directory_connection_failure') as mock_send_failure:
            exit_code = self.orchestrator.run_sync()

        self.assertEqual(exit_code, EXIT_DIRECTORY_ERROR)
        mock_send_failure.assert_called_once()
        self.assertEqual(mock_send_failure.call_args[1]['retry_count'], 2)
        self.assertEqual(self.orchestrator.statistics()['active'], 0)

    def test_run_sync_configuration_error(self):
        orchestrator = IdentitySyncOrchestrator(config_path='/nonexistent/config.yaml')

        self.assertEqual(orchestrator.run_sync(), EXIT_CONFIGURATION_ERROR)

    def test_run_sync_unexpected_error(self):
        self.orchestrator._prepare()
        self.orchestrator.reconciler.synchronize = Mock(side_effect=RuntimeError("disk on fire"))

        with patch('identity_sync.main.send_failure_notification') as mock_send_failure:
            exit_code = self.orchestrator.run_sync()

        self.assertEqual(exit_code, EXIT_UNEXPECTED_ERROR)
        self.assertEqual(mock_send_failure.call_args[0][0], "Sync Failed")

    def test_run_sync_search_failure_is_directory_error(self):
        self.directory.fail_search = True

        with patch('identity_sync.main.send_directory_connection_failure') as mock_send_failure:
            exit_code = self.orchestrator.run_sync()

        self.assertEqual(exit_code, EXIT_DIRECTORY_ERROR)
        mock_send_failure.assert_called_once()

    def test_run_sync_storage_failure_is_unexpected_error(self):
        self.orchestrator._prepare()
        self.orchestrator.store.find_identities_by_source = Mock(side_effect=RuntimeError("database is locked"))

        with patch('identity_sync.main.send_directory_connection_failure') as mock_send_connection, \
                patch('identity_sync.main.send_failure_notification') as mock_send_failure:
            exit_code = self.orchestrator.run_sync()

        self.assertEqual(exit_code, EXIT_UNEXPECTED_ERROR)
        mock_send_connection.assert_not_called()
        mock_send_failure.assert_called_once()
        self.assertEqual(mock_send_failure.call_args[0][:2], ("Sync Aborted", "Sync failed: database is locked"))
        self.assertEqual(mock_send_failure.call_args[1]['additional_info']['Cause'], 'UNEXPECTED')

    def test_run_sync_timeout_reports_committed_changes(self):
        self.orchestrator._prepare()
        # Deadline at 600; the second record starts after it has passed
        ticks = iter([0, 0, 0, 1000])
        self.orchestrator.reconciler.timer = lambda: next(ticks)

        with patch('identity_sync.main.send_directory_connection_failure') as mock_send_connection, \
                patch('identity_sync.main.send_failure_notification') as mock_send_failure:
            exit_code = self.orchestrator.run_sync()

        self.assertEqual(exit_code, EXIT_UNEXPECTED_ERROR)
        mock_send_connection.assert_not_called()
        info = mock_send_failure.call_args[1]['additional_info']
        self.assertEqual(info['Cause'], 'TIMEOUT')
        self.assertEqual(info['Identities created'], 1)
        self.assertIn('exceeded 600 seconds', mock_send_failure.call_args[0][1])

    def test_notification_failure_does_not_change_exit_code(self):
        with patch('identity_sync.main.send_sync_summary', side_effect=Exception("SMTP down")):
            self.assertEqual(self.orchestrator.run_sync(), EXIT_OK)

    def test_removed_entry_flows_into_retention(self):
        self.test_config['retention'] = {'anonymize_after_days': 0, 'archive_after_days': 0}
        self.orchestrator.run_sync()
        self.directory.records = [r for r in self.directory.records if r['sAMAccountName'] != 'jdoe']
        self.orchestrator.run_sync()

        exit_code = self.orchestrator.run_retention()

        self.assertEqual(exit_code, EXIT_OK)
        self.assertEqual(self.orchestrator.statistics(), {
            'active': 1, 'deactivated': 1, 'anonymized': 1, 'archived': 1
        })

    def test_unlock(self):
        self.orchestrator.run_sync()
        for _ in range(5):
            self.orchestrator.tracker.record_failure('jdoe@test.com', '10.0.0.1')
        self.assertTrue(self.orchestrator.tracker.check_locked('jdoe@test.com').locked)

        self.assertEqual(self.orchestrator.unlock('jdoe@test.com'), EXIT_OK)
        self.assertFalse(self.orchestrator.tracker.check_locked('jdoe@test.com').locked)
        self.assertEqual(self.orchestrator.unlock('ghost@test.com'), EXIT_COMPLETED_WITH_ERRORS)

    def test_health_check_healthy(self):
        health_status = self.orchestrator.health_check()

        self.assertEqual(health_status['status'], 'healthy')
        self.assertEqual(health_status['checks']['configuration']['status'], 'pass')
        self.assertEqual(health_status['checks']['storage']['status'], 'pass')
        self.assertEqual(health_status['checks']['directory']['status'], 'pass')
        self.assertEqual(health_status['checks']['notifications']['status'], 'skip')

    def test_health_check_directory_down(self):
        self.directory.fail_connect = True

        health_status = self.orchestrator.health_check()

        self.assertEqual(health_status['status'], 'unhealthy')
        self.assertEqual(health_status['checks']['directory']['status'], 'fail')

    def test_health_check_incomplete_notifications(self):
        self.test_config['notifications'] = {'enable_email': True, 'smtp_server': 'smtp.test.com'}

        health_status = self.orchestrator.health_check()

        self.assertEqual(health_status['status'], 'unhealthy')
        self.assertIn('email_from', health_status['checks']['notifications']['message'])

    def test_health_check_bad_configuration(self):
        orchestrator = IdentitySyncOrchestrator(config_path='/nonexistent/config.yaml')

        health_status = orchestrator.health_check()

        self.assertEqual(health_status['status'], 'unhealthy')
        self.assertEqual(health_status['checks']['configuration']['status'], 'fail')


class TestMainEntryPoint(unittest.TestCase):
    """Test cases for the command-line entry point."""

    def setUp(self):
        patcher = patch('identity_sync.main.IdentitySyncOrchestrator')
        self.mock_orchestrator_class = patcher.start()
        self.addCleanup(patcher.stop)
        self.orchestrator = self.mock_orchestrator_class.return_value

    def run_main(self, argv):
        with self.assertRaises(SystemExit) as context:
            main(argv)
        self.orchestrator.close.assert_called_once()
        return context.exception.code

    def test_default_runs_sync(self):
        self.orchestrator.run_sync.return_value = EXIT_OK

        self.assertEqual(self.run_main(['--config', 'custom.yaml']), EXIT_OK)
        self.mock_orchestrator_class.assert_called_once_with(config_path='custom.yaml')
        self.orchestrator.run_retention.assert_not_called()

    def test_sync_and_retain(self):
        self.orchestrator.run_sync.return_value = EXIT_COMPLETED_WITH_ERRORS
        self.orchestrator.run_retention.return_value = EXIT_OK

        self.assertEqual(self.run_main(['--sync-and-retain']), EXIT_COMPLETED_WITH_ERRORS)
        self.orchestrator.run_retention.assert_called_once()

    def test_sync_and_retain_skips_retention_after_fatal_sync(self):
        self.orchestrator.run_sync.return_value = EXIT_DIRECTORY_ERROR

        self.assertEqual(self.run_main(['--sync-and-retain']), EXIT_DIRECTORY_ERROR)
        self.orchestrator.run_retention.assert_not_called()

    def test_retention(self):
        self.orchestrator.run_retention.return_value = EXIT_OK
        self.assertEqual(self.run_main(['--retention']), EXIT_OK)

    def test_unlock(self):
        self.orchestrator.unlock.return_value = EXIT_OK
        self.assertEqual(self.run_main(['--unlock', 'jdoe@test.com']), EXIT_OK)
        self.orchestrator.unlock.assert_called_once_with('jdoe@test.com')

    @patch('builtins.print')
    def test_health_check(self, mock_print):
        self.orchestrator.health_check.return_value = {'status': 'unhealthy', 'checks': {}}
        self.assertEqual(self.run_main(['--health-check']), 1)
        mock_print.assert_called_once()

    @patch('builtins.print')
    def test_stats(self, mock_print):
        self.orchestrator.statistics.return_value = {'active': 3}
        self.assertEqual(self.run_main(['--stats']), 0)
        self.assertIn('"active": 3', mock_print.call_args[0][0])

    def test_actions_are_mutually_exclusive(self):
        with self.assertRaises(SystemExit) as context:
            with patch('sys.stderr'):
                main(['--retention', '--stats'])
        self.assertEqual(context.exception.code, 2)


if __name__ == '__main__':
    unittest.main()

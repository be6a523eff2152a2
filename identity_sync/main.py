"""
Main orchestrator for the Identity Sync application.

This module wires configuration, logging, storage, the directory client, the
reconciliation engine, the attempt tracker and the retention manager together
and exposes them through a command-line interface meant to be run by a scheduler.
"""

import sys
import json
import logging
from datetime import datetime
from typing import Dict, Any, Optional

from identity_sync.audit import AuditLog
from identity_sync.config import (
    load_config, ConfigurationError, build_lockout_config, build_retention_policy
)
from identity_sync.directory import DirectoryClient
from identity_sync.lockout import AttemptTracker
from identity_sync.logging_setup import setup_logging
from identity_sync.notifications import (
    send_failure_notification,
    send_directory_connection_failure,
    send_sync_errors,
    send_sync_summary,
    send_retention_summary,
    test_notification_config
)
from identity_sync.reconcile import DirectoryReconciler
from identity_sync.retention import RetentionManager
from identity_sync.storage import SQLiteIdentityStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_COMPLETED_WITH_ERRORS = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_DIRECTORY_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4


class IdentitySyncOrchestrator:
    """
    Builds the identity components from configuration and runs them.

    Each public ``run_*`` method returns a process exit code.
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[Dict[str, Any]] = None):
        """
        Initialize orchestrator.

        Args:
            config_path: Path to configuration file
            config: Already-loaded configuration (skips file loading)
        """
        self.config_path = config_path
        self.config = config
        self.store = None
        self.audit = None
        self.directory = None
        self.reconciler = None
        self.tracker = None
        self.retention = None

    def _load_configuration(self):
        """Load and validate configuration."""
        if self.config is not None:
            return
        try:
            self.config = load_config(self.config_path)
            logger.debug("Configuration loaded successfully")
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}))

    def _build_components(self):
        if self.store is not None:
            return
        self.store = SQLiteIdentityStore(self.config.get('storage', {}).get('database', ':memory:'))
        self.audit = AuditLog(self.store)
        self.retention = RetentionManager(self.store, self.audit, build_retention_policy(self.config))
        self.tracker = AttemptTracker(self.store, build_lockout_config(self.config), audit=self.audit)

        directory_config = dict(self.config['directory'])
        directory_config.setdefault('external_id_attribute',
                                    self.config.get('sync', {}).get('external_id_attribute', 'sAMAccountName'))
        self.directory = DirectoryClient(directory_config)
        reconcile_config = dict(directory_config)
        reconcile_config.update(self.config.get('sync', {}))
        self.reconciler = DirectoryReconciler(
            self.directory,
            self.store,
            reconcile_config,
            audit=self.audit,
            on_deactivate=self.retention.on_deactivation
        )

    def _prepare(self):
        self._load_configuration()
        self._setup_logging()
        self._build_components()

    def run_sync(self) -> int:
        """
        Run one directory reconciliation.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        start_time = datetime.now()
        try:
            self._prepare()
            logger.info("Starting identity sync")

            result = self.reconciler.synchronize()
            runtime_seconds = (datetime.now() - start_time).total_seconds()
            self._log_sync_summary(result, runtime_seconds)

            if result.directory_failure:
                self._notify(send_directory_connection_failure, result.errors[-1],
                             retry_count=self.config.get('error_handling', {}).get('max_retries', 3))
                return EXIT_DIRECTORY_ERROR

            if result.aborted:
                self._notify(send_failure_notification, "Sync Aborted", result.errors[-1], additional_info={
                    'Cause': result.fatal_kind.value,
                    'Identities created': result.created,
                    'Identities updated': result.updated,
                    'Identities deactivated': result.deactivated,
                    'Impact': 'Sync stopped part way - changes above were committed',
                })
                return EXIT_UNEXPECTED_ERROR

            self._notify(send_sync_summary, result, runtime_seconds)
            if result.errors:
                self._notify(send_sync_errors, result)
                logger.warning(f"Sync completed with {len(result.errors)} record errors")
                return EXIT_COMPLETED_WITH_ERRORS

            logger.info("Sync completed successfully")
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._notify(send_failure_notification, "Sync Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR

    def run_retention(self) -> int:
        """Run one retention pass."""
        try:
            self._prepare()
            report = self.retention.advance()
            self._notify(send_retention_summary, report)
            return EXIT_COMPLETED_WITH_ERRORS if report.errors else EXIT_OK
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except Exception as e:
            logger.error(f"Unexpected error during retention pass: {e}", exc_info=True)
            self._notify(send_failure_notification, "Retention Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR

    def unlock(self, email: str) -> int:
        """Clear the lockout for an account."""
        try:
            self._prepare()
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        if self.tracker.unlock(email):
            return EXIT_OK
        logger.warning("Unlock requested for unknown account")
        return EXIT_COMPLETED_WITH_ERRORS

    def statistics(self) -> Dict[str, int]:
        self._prepare()
        return self.retention.statistics()

    def _notify(self, sender, *args, **kwargs):
        """Send a notification; failures are logged and never raised."""
        try:
            notifications_config = (self.config or {}).get('notifications', {})
            sender(*args, notifications_config, **kwargs)
        except Exception as e:
            logger.error(f"Failed to send notification: {e}")

    def _log_sync_summary(self, result, runtime_seconds: float):
        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime_seconds:.2f} seconds")
        logger.info(f"Identities created: {result.created}")
        logger.info(f"Identities updated: {result.updated}")
        logger.info(f"Identities deactivated: {result.deactivated}")
        logger.info(f"Errors: {len(result.errors)}")
        for error in result.errors:
            logger.info(f"  {error}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of configuration, storage and the directory.

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
        except Exception as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            self._build_components()
            stats = self.retention.statistics()
            health_status['checks']['storage'] = {
                'status': 'pass',
                'message': f"Storage reachable ({stats['active']} active identities)"
            }
        except Exception as e:
            health_status['checks']['storage'] = {
                'status': 'fail',
                'message': f'Storage error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            probe = DirectoryClient(dict(self.config['directory'], error_handling={'max_retries': 1,
                                                                                    'retry_wait_seconds': 1}))
            probe.connect()
            probe.disconnect()
            health_status['checks']['directory'] = {
                'status': 'pass',
                'message': 'Directory connection successful'
            }
        except Exception as e:
            health_status['checks']['directory'] = {
                'status': 'fail',
                'message': f'Directory connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            missing_fields = [f for f in ['smtp_server', 'email_from', 'email_to']
                              if not notifications_config.get(f)]
            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f'Missing notification config: {missing_fields}'
                }
                health_status['status'] = 'unhealthy'
            else:
                health_status['checks']['notifications'] = {
                    'status': 'pass',
                    'message': 'Email notification configuration valid'
                }
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def close(self):
        """Release the directory session and database connection."""
        if self.directory:
            self.directory.disconnect()
        if self.store:
            self.store.close()


def main(argv=None):
    """Main entry point for the application."""
    import argparse

    parser = argparse.ArgumentParser(description='Identity Sync - directory reconciliation and retention')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    action = parser.add_mutually_exclusive_group()
    action.add_argument('--retention', action='store_true',
                        help='Run a retention pass instead of a sync')
    action.add_argument('--sync-and-retain', action='store_true',
                        help='Run a sync followed by a retention pass')
    action.add_argument('--unlock', metavar='EMAIL',
                        help='Clear the lockout for an account')
    action.add_argument('--stats', action='store_true',
                        help='Print identity lifecycle statistics')
    action.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    action.add_argument('--test-email', action='store_true',
                        help='Send test email notification')

    args = parser.parse_args(argv)

    orchestrator = IdentitySyncOrchestrator(config_path=args.config)

    try:
        if args.health_check:
            health_status = orchestrator.health_check()
            print(json.dumps(health_status, indent=2))
            sys.exit(0 if health_status['status'] == 'healthy' else 1)

        elif args.test_email:
            try:
                orchestrator._load_configuration()
            except ConfigurationError as e:
                print(f"Error testing email: {e}")
                sys.exit(EXIT_CONFIGURATION_ERROR)
            if test_notification_config(orchestrator.config.get('notifications', {})):
                print("Test email sent successfully")
                sys.exit(0)
            print("Failed to send test email")
            sys.exit(1)

        elif args.stats:
            try:
                print(json.dumps(orchestrator.statistics(), indent=2))
            except ConfigurationError as e:
                print(f"Configuration error: {e}")
                sys.exit(EXIT_CONFIGURATION_ERROR)
            sys.exit(0)

        elif args.unlock:
            sys.exit(orchestrator.unlock(args.unlock))

        elif args.retention:
            sys.exit(orchestrator.run_retention())

        elif args.sync_and_retain:
            exit_code = orchestrator.run_sync()
            if exit_code in (EXIT_OK, EXIT_COMPLETED_WITH_ERRORS):
                exit_code = max(exit_code, orchestrator.run_retention())
            sys.exit(exit_code)

        else:
            sys.exit(orchestrator.run_sync())
    finally:
        orchestrator.close()


if __name__ == "__main__":
    main()

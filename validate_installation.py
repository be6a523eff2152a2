#!/usr/bin/env python3
"""
Installation check for Identity Sync.

Confirms the runtime dependencies import, the package modules load, and the
storage, lockout and retention components work against an in-memory database.
"""

import sys
import importlib


def check_import(label, import_name=None):
    """Try to import a module and describe the outcome."""
    try:
        importlib.import_module(import_name or label)
        return True, f"✓ {label} available"
    except ImportError as e:
        return False, f"✗ {label} missing: {e}"


def validate_dependencies():
    """Check the third-party libraries the package needs at runtime."""
    print("=== Dependency Validation ===")

    all_ok = True
    for label, import_name in [("ldap3", "ldap3"), ("PyYAML", "yaml")]:
        ok, message = check_import(label, import_name)
        print(f"  {message}")
        all_ok = all_ok and ok
    return all_ok


def validate_core_modules():
    """Import every module of the package."""
    print("\n=== Core Module Validation ===")

    modules = [
        "identity_sync.models",
        "identity_sync.config",
        "identity_sync.logging_setup",
        "identity_sync.retry",
        "identity_sync.directory",
        "identity_sync.storage",
        "identity_sync.audit",
        "identity_sync.lockout",
        "identity_sync.retention",
        "identity_sync.reconcile",
        "identity_sync.notifications",
        "identity_sync.main",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_import(module)
        print(f"  {message}")
        all_ok = all_ok and ok
    return all_ok


def validate_functionality():
    """Exercise the local components without a directory server."""
    print("\n=== Functionality Validation ===")

    try:
        from identity_sync.audit import AuditLog
        from identity_sync.lockout import AttemptTracker
        from identity_sync.models import Identity
        from identity_sync.retention import RetentionManager
        from identity_sync.storage import SQLiteIdentityStore

        store = SQLiteIdentityStore(':memory:')
        store.upsert_identity(Identity(id='check', email='check@example.com',
                                       first_name='Install', last_name='Check'))
        print("  ✓ Identity storage")

        tracker = AttemptTracker(store)
        tracker.record_failure('check@example.com', '127.0.0.1')
        status = tracker.check_locked('check@example.com')
        assert not status.locked and status.attempts_remaining == 4
        print("  ✓ Attempt tracking")

        retention = RetentionManager(store, AuditLog(store))
        retention.on_deactivation('check')
        assert retention.statistics()['deactivated'] == 1
        print("  ✓ Deactivation cascade")

        store.close()
        return True

    except Exception as e:
        print(f"  ✗ Functionality test failed: {e}")
        return False


def validate_cli():
    """Check that the command-line interface starts."""
    print("\n=== CLI Validation ===")

    import subprocess

    result = subprocess.run([sys.executable, "-m", "identity_sync.main", "--help"],
                            capture_output=True, text=True)
    if result.returncode == 0 and '--sync-and-retain' in result.stdout:
        print("  ✓ Help command working")
        return True
    print("  ✗ Help command failed")
    return False


def main():
    """Run all validations."""
    print("Identity Sync - Installation Validation")
    print("=" * 50)

    all_validations = [
        validate_dependencies(),
        validate_core_modules(),
        validate_functionality(),
        validate_cli(),
    ]

    print("\n=== Summary ===")
    if all(all_validations):
        print("✓ All validations passed!")
        print("\nNext steps:")
        print("  1. Copy config.example.yaml to config.yaml and fill in the directory settings")
        print("  2. Test with: identity-sync --health-check")
        print("  3. Run a sync: identity-sync")
        print("  4. Schedule: identity-sync --sync-and-retain")
        return 0

    print("✗ Some validations failed!")
    print("Please resolve the issues above before using the application.")
    return 1


if __name__ == "__main__":
    sys.exit(main())

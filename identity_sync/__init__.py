"""
Identity Sync - Reconcile employee identities from a directory service and govern their lifecycle.

This package keeps a local identity store converged with an LDAP directory,
protects identities against credential guessing, and advances deactivated
identities through anonymization, archival and deletion.
"""

__version__ = "1.0.0"
__author__ = "Identity Sync Team"

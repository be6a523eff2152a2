"""
Authentication attempt tracking and account lockout.

Lockout is derived from the append-only attempt log on every check rather
than stored as a flag, so it expires on its own once the lockout duration
has passed.
"""

import math
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from identity_sync.audit import AuditAction, EntityType, SYSTEM_ACTOR
from identity_sync.config import LockoutConfig
from identity_sync.logging_setup import security_logger
from identity_sync.models import AttemptRecord, LockoutStatus
from identity_sync.storage import IdentityStore, utcnow

logger = logging.getLogger(__name__)

UNKNOWN_ORIGIN = 'unknown'


class AttemptTracker:
    """
    Records authentication attempts and answers lockout queries.

    Args:
        store: Identity store holding identities and the attempt log
        config: Lockout thresholds
        audit: Optional audit sink for administrative unlocks
        clock: Callable returning the current aware datetime
    """

    def __init__(self, store: IdentityStore, config: Optional[LockoutConfig] = None,
                 audit=None, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.config = config or LockoutConfig()
        self.audit = audit
        self.clock = clock or utcnow

    def record_failure(self, email: str, origin_address: Optional[str] = None) -> bool:
        """
        Record a failed attempt for the identity owning ``email``.

        Attempts against unknown emails are dropped.

        Returns:
            True if an attempt record was written
        """
        identity = self.store.find_identity_by_email(email)
        origin = origin_address or UNKNOWN_ORIGIN
        security_logger.log_authentication_attempt(email, origin, success=False)

        if not identity:
            logger.debug("Dropping failed attempt for unknown account")
            return False

        self.store.append_attempt(AttemptRecord(
            identity_id=identity.id,
            email=identity.email,
            origin_address=origin,
            success=False,
            attempted_at=self.clock()
        ))

        status = self.check_locked(identity.email)
        if status.locked:
            security_logger.log_lockout(identity.email, status.remaining_minutes)
        return True

    def record_success(self, identity_id: str, email: str, origin_address: Optional[str] = None) -> None:
        """Record a successful attempt and reset the failure counter."""
        origin = origin_address or UNKNOWN_ORIGIN
        with self.store.transaction():
            self.store.append_attempt(AttemptRecord(
                identity_id=identity_id,
                email=email.strip().lower(),
                origin_address=origin,
                success=True,
                attempted_at=self.clock()
            ))
            cleared = self.store.delete_failed_attempts(identity_id)
        security_logger.log_authentication_attempt(email, origin, success=True)
        if cleared:
            logger.debug(f"Cleared {cleared} failed attempts for {identity_id}")

    def check_locked(self, email: str) -> LockoutStatus:
        """
        Derive the lockout decision for ``email`` from recent failures.

        Unknown emails get the same answer as a clean account so the result
        does not reveal whether an account exists.
        """
        identity = self.store.find_identity_by_email(email)
        if not identity:
            return LockoutStatus(locked=False, attempts_remaining=self.config.max_attempts)

        now = self.clock()
        window_start = now - timedelta(minutes=self.config.reset_window_minutes)
        failures = self.store.find_attempts(identity.id, success=False, since=window_start)

        if len(failures) >= self.config.max_attempts:
            lockout_end = failures[0].attempted_at + timedelta(minutes=self.config.lockout_duration_minutes)
            if now < lockout_end:
                remaining = math.ceil((lockout_end - now).total_seconds() / 60)
                return LockoutStatus(locked=True, remaining_minutes=remaining)

        return LockoutStatus(
            locked=False,
            attempts_remaining=max(0, self.config.max_attempts - len(failures))
        )

    def unlock(self, email: str, actor_id: str = SYSTEM_ACTOR) -> bool:
        """
        Administrative override: purge failure records for the account.

        Returns:
            True if the account exists
        """
        identity = self.store.find_identity_by_email(email)
        if not identity:
            return False

        cleared = self.store.delete_failed_attempts(identity.id)
        logger.info(f"Unlocked account {identity.id} ({cleared} failed attempts cleared)")
        if self.audit:
            self.audit.record(actor_id, AuditAction.ACCOUNT_UNLOCKED, EntityType.USER,
                              identity.id, {'cleared_attempts': cleared})
        return True

    def login_history(self, email: str, limit: int = 20) -> List[AttemptRecord]:
        """Most recent attempts for the account, newest first."""
        identity = self.store.find_identity_by_email(email)
        if not identity:
            return []
        return self.store.find_attempts(identity.id, limit=limit)

    def cleanup_old_attempts(self, days_to_keep: int = 30) -> int:
        """Remove attempt records older than ``days_to_keep`` days."""
        cutoff = self.clock() - timedelta(days=days_to_keep)
        removed = self.store.delete_attempts_before(cutoff)
        logger.info(f"Removed {removed} login attempts older than {days_to_keep} days")
        return removed

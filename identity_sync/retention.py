"""
Retention lifecycle for deactivated identities.

Identities move ACTIVE -> DEACTIVATED -> ANONYMIZED -> ARCHIVED and, when the
policy allows it, are finally deleted. Stages only ever move forward and each
identity's transition is written in one store transaction.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Any, Optional

from identity_sync.audit import AuditAction, EntityType, SYSTEM_ACTOR
from identity_sync.models import ArchiveSnapshot, Identity, RetentionPolicy, RetentionReport
from identity_sync.storage import IdentityStore, utcnow, would_create_cycle

logger = logging.getLogger(__name__)

REASON_DIRECTORY_REMOVED = 'DIRECTORY_ACCOUNT_REMOVED'
REASON_DIRECTORY_DISABLED = 'DIRECTORY_ACCOUNT_DISABLED'
REASON_MANAGER_DEACTIVATED = 'MANAGER_DEACTIVATED'
REASON_MANAGER_DELETED = 'MANAGER_DELETED'

ANONYMOUS_DOMAIN = 'anonymous.local'


class RetentionManager:
    """
    Applies deactivation cascades and advances identities through retention.

    Args:
        store: Identity store
        audit: Audit sink
        policy: Default retention policy for ``advance``
        clock: Callable returning the current aware datetime
    """

    def __init__(self, store: IdentityStore, audit, policy: Optional[RetentionPolicy] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.audit = audit
        self.policy = policy or RetentionPolicy()
        self.clock = clock or utcnow

    def on_deactivation(self, identity_id: str, reason: str = REASON_DIRECTORY_REMOVED,
                        actor_id: str = SYSTEM_ACTOR) -> Optional[Dict[str, Any]]:
        """
        Deactivate an identity and move its dependents off it.

        Subordinates are promoted to the identity's own supervisor when the
        policy asks for it. Open work items about the identity are marked
        incomplete; open items it reviews go to its supervisor when there is one.

        Returns:
            Counts of affected records, or None if the identity does not exist
        """
        identity = self.store.get_identity(identity_id)
        if not identity:
            logger.warning(f"Cannot deactivate unknown identity {identity_id}")
            return None

        now = self.clock()
        new_supervisor_id = identity.supervisor_id
        outcome = {
            'subordinates': 0,
            'work_items_incomplete': 0,
            'work_items_reassigned': 0,
        }

        with self.store.transaction():
            if identity.is_active or identity.deactivated_at is None:
                self.store.update_identity(
                    identity_id,
                    is_active=False,
                    deactivated_at=now,
                    deactivation_reason=reason
                )
                self.audit.record(actor_id, AuditAction.USER_DEACTIVATED, EntityType.USER,
                                  identity_id, {'reason': reason})

            if self.policy.reassign_subordinates:
                outcome['subordinates'] = self._reassign_subordinates(
                    identity, new_supervisor_id, now, REASON_MANAGER_DEACTIVATED
                )
                if outcome['subordinates']:
                    self.audit.record(actor_id, AuditAction.SUBORDINATES_REASSIGNED, EntityType.USER,
                                      identity_id, {
                                          'count': outcome['subordinates'],
                                          'new_supervisor_id': new_supervisor_id,
                                          'reason': reason
                                      })

            for item in self.store.find_open_work_items_for(identity_id):
                if item.subject_id == identity_id:
                    self.store.update_work_item(
                        item.id,
                        status='INCOMPLETE',
                        incomplete_reason=f"Subject account deactivated: {reason}"
                    )
                    outcome['work_items_incomplete'] += 1
                if item.reviewer_id == identity_id and new_supervisor_id:
                    self.store.update_work_item(
                        item.id,
                        reviewer_id=new_supervisor_id,
                        reviewer_changed_at=now
                    )
                    outcome['work_items_reassigned'] += 1

            if outcome['work_items_incomplete'] or outcome['work_items_reassigned']:
                self.audit.record(actor_id, AuditAction.WORK_ITEMS_REASSIGNED, EntityType.USER,
                                  identity_id, dict(outcome, new_reviewer_id=new_supervisor_id))

        logger.info(f"Deactivated identity {identity_id} ({reason}): {outcome}")
        return outcome

    def _reassign_subordinates(self, identity: Identity, new_supervisor_id: Optional[str],
                               now: datetime, reason: str) -> int:
        moved = 0
        for subordinate in self.store.find_dependents_by_supervisor(identity.id):
            if new_supervisor_id and would_create_cycle(self.store, subordinate.id, new_supervisor_id):
                logger.warning(f"Not reassigning {subordinate.id} to {new_supervisor_id}: "
                               f"supervisor chain would loop")
                continue
            self.store.update_identity(
                subordinate.id,
                supervisor_id=new_supervisor_id,
                supervisor_changed_at=now,
                supervisor_changed_reason=reason
            )
            moved += 1
        return moved

    def advance(self, policy: Optional[RetentionPolicy] = None) -> RetentionReport:
        """
        Move every deactivated identity past the policy thresholds forward.

        A failure on one identity is logged and the pass continues.
        """
        policy = policy or self.policy
        now = self.clock()
        report = RetentionReport()

        for identity in self.store.find_inactive_identities():
            try:
                self._advance_identity(identity, policy, now, report)
            except Exception as e:
                report.skipped += 1
                message = f"Retention failed for identity {identity.id}: {e}"
                report.errors.append(message)
                logger.error(message)

        logger.info(f"Retention pass complete: {report.anonymized} anonymized, "
                    f"{report.archived} archived, {report.deleted} deleted, {report.skipped} skipped")
        return report

    def _advance_identity(self, identity: Identity, policy: RetentionPolicy,
                          now: datetime, report: RetentionReport):
        if identity.deactivated_at is None:
            logger.debug(f"Identity {identity.id} is inactive without a deactivation time; skipping")
            return
        since_deactivation = now - identity.deactivated_at

        if (not identity.is_anonymized and policy.anonymize_after is not None
                and since_deactivation >= policy.anonymize_after):
            if self._anonymize(identity.id, now):
                report.anonymized += 1
            identity = self.store.get_identity(identity.id)

        if (identity.is_anonymized and not identity.is_archived
                and policy.archive_after is not None):
            origin = identity.deactivated_at
            if policy.archive_measured_from == 'anonymization':
                origin = identity.anonymized_at or identity.deactivated_at
            if now - origin >= policy.archive_after:
                if self._archive(identity.id, now):
                    report.archived += 1
                identity = self.store.get_identity(identity.id)

        if (identity.is_archived and policy.delete_after is not None
                and since_deactivation >= policy.delete_after):
            if self._delete(identity):
                report.deleted += 1
            else:
                report.skipped += 1

    def _anonymize(self, identity_id: str, now: datetime) -> bool:
        with self.store.transaction():
            current = self.store.get_identity(identity_id)
            if not current or current.is_anonymized or current.is_active:
                return False

            self.store.update_identity(
                identity_id,
                email=f"deleted-{identity_id}@{ANONYMOUS_DOMAIN}",
                first_name='Deleted',
                last_name='User',
                employee_id=f"DELETED-{identity_id}",
                department=None,
                position=None,
                external_id=None,
                is_anonymized=True,
                anonymized_at=now
            )
            self.audit.record(SYSTEM_ACTOR, AuditAction.USER_ANONYMIZED, EntityType.USER, identity_id,
                              {'reason': 'Retention period expired'})
        return True

    def _archive(self, identity_id: str, now: datetime) -> bool:
        with self.store.transaction():
            current = self.store.get_identity(identity_id)
            if not current or not current.is_anonymized or current.is_archived:
                return False

            work_item_count = self.store.count_work_items_for(identity_id)
            if self.store.get_archive_snapshot(identity_id) is None:
                self.store.save_archive_snapshot(ArchiveSnapshot(
                    original_id=identity_id,
                    identity_data=current.to_dict(),
                    work_item_count=work_item_count,
                    archived_at=now
                ))
            self.store.update_identity(identity_id, is_archived=True, archived_at=now)
            self.audit.record(SYSTEM_ACTOR, AuditAction.USER_ARCHIVED, EntityType.USER, identity_id,
                              {'work_item_count': work_item_count})
        return True

    def _delete(self, identity: Identity) -> bool:
        work_item_count = self.store.count_work_items_for(identity.id)
        if work_item_count > 0:
            logger.warning(f"Cannot hard delete identity {identity.id}: "
                           f"{work_item_count} associated work items")
            return False

        with self.store.transaction():
            self.audit.record(SYSTEM_ACTOR, AuditAction.USER_DELETED, EntityType.USER, identity.id,
                              {'archived_at': identity.archived_at})
            self.store.delete_audit_events_by_actor(identity.id)
            self.store.delete_attempts_for(identity.id)
            self._reassign_subordinates(identity, identity.supervisor_id, self.clock(), REASON_MANAGER_DELETED)
            self.store.delete_identity(identity.id)

        logger.info(f"Hard deleted identity {identity.id}")
        return True

    def statistics(self) -> Dict[str, int]:
        """Counts of identities by lifecycle flag."""
        return {
            'active': self.store.count_identities(is_active=True),
            'deactivated': self.store.count_identities(is_active=False),
            'anonymized': self.store.count_identities(is_anonymized=True),
            'archived': self.store.count_identities(is_archived=True),
        }

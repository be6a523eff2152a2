"""
Audit trail for identity lifecycle and account security events.

Recording an audit event never fails the operation that produced it: storage
errors are logged and swallowed here.
"""

import logging
from enum import Enum
from typing import Dict, Any, Optional

from identity_sync.logging_setup import security_logger

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = 'SYSTEM'


class AuditAction(str, Enum):
    USER_CREATED = 'USER_CREATED'
    USER_UPDATED = 'USER_UPDATED'
    USER_DEACTIVATED = 'USER_DEACTIVATED'
    USER_ANONYMIZED = 'USER_ANONYMIZED'
    USER_ARCHIVED = 'USER_ARCHIVED'
    USER_DELETED = 'USER_DELETED'
    SUBORDINATES_REASSIGNED = 'SUBORDINATES_REASSIGNED'
    WORK_ITEMS_REASSIGNED = 'WORK_ITEMS_REASSIGNED'
    ACCOUNT_UNLOCKED = 'ACCOUNT_UNLOCKED'
    DIRECTORY_SYNC = 'DIRECTORY_SYNC'


class EntityType(str, Enum):
    USER = 'USER'
    WORK_ITEM = 'WORK_ITEM'


class AuditLog:
    """Audit sink backed by the identity store's audit table."""

    def __init__(self, store):
        self.store = store

    def record(self, actor_id: str, action, entity_type=None,
               entity_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> bool:
        """
        Record an audit event.

        Args:
            actor_id: Identity (or SYSTEM) performing the action
            action: AuditAction or action name
            entity_type: EntityType or entity type name
            entity_id: Affected entity identifier
            details: JSON-serializable context

        Returns:
            True if the event was stored
        """
        action_name = getattr(action, 'value', action)
        entity_type_name = getattr(entity_type, 'value', entity_type)
        try:
            self.store.append_audit_event(actor_id, action_name, entity_type_name, entity_id, details)
        except Exception as e:
            logger.error(f"Failed to record audit event {action_name} for {entity_id}: {e}")
            return False

        if entity_type_name == EntityType.USER.value and entity_id:
            security_logger.log_lifecycle_action(action_name, entity_id, f"actor={actor_id}")
        return True

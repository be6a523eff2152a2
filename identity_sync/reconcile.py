"""
Directory reconciliation engine.

Pulls the full user set from the directory, converges the local identity store
onto it (create, update, deactivate) and then resolves manager relationships
in a second pass over the same batch.
"""

import time
import uuid
import logging
from typing import Callable, Dict, Iterable, List, Any, Optional, Tuple

from ldap3.core.exceptions import LDAPInvalidDnError
from ldap3.utils.dn import parse_dn

from identity_sync.audit import AuditAction, EntityType, SYSTEM_ACTOR
from identity_sync.directory import DirectoryCapability
from identity_sync.models import DirectoryRecord, FatalKind, Identity, IdentitySource, Role, SyncResult
from identity_sync.retention import REASON_DIRECTORY_DISABLED, REASON_DIRECTORY_REMOVED
from identity_sync.storage import IdentityStore, utcnow, would_create_cycle

logger = logging.getLogger(__name__)

# userAccountControl flag for a disabled account
ACCOUNTDISABLE = 0x2


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class SyncTimeoutError(SyncError):
    """Raised when a sync run exceeds its time budget."""
    pass


def _groups_matching(*patterns: str) -> Callable[[List[str]], bool]:
    def predicate(groups: List[str]) -> bool:
        return any(pattern in group.lower() for group in groups for pattern in patterns)
    return predicate


# Evaluated in order, first match wins
ROLE_RULES: List[Tuple[Callable[[List[str]], bool], Role]] = [
    (_groups_matching('cn=hr', 'human resources'), Role.HR),
    (_groups_matching('cn=managers', 'cn=supervisors'), Role.SUPERVISOR),
    (_groups_matching('cn=admins', 'cn=administrators'), Role.ADMIN),
]


def determine_role(groups: Optional[List[str]], rules=None) -> Role:
    """Derive a role from group memberships using the ordered rules."""
    if not groups:
        return Role.EMPLOYEE
    for predicate, role in (rules if rules is not None else ROLE_RULES):
        if predicate(groups):
            return role
    return Role.EMPLOYEE


def is_account_enabled(user_account_control: Any) -> bool:
    """An account is enabled unless the ACCOUNTDISABLE bit is set."""
    if user_account_control in (None, ''):
        return True
    try:
        return (int(user_account_control) & ACCOUNTDISABLE) == 0
    except (TypeError, ValueError):
        logger.warning(f"Unparseable userAccountControl value: {user_account_control!r}")
        return True


def extract_manager_cn(manager_dn: Optional[str]) -> Optional[str]:
    """Return the first CN value of a manager DN."""
    if not manager_dn:
        return None
    try:
        components = parse_dn(manager_dn)
    except LDAPInvalidDnError:
        logger.debug(f"Invalid manager DN: {manager_dn}")
        return None
    for attribute, value, _separator in components:
        if attribute.upper() == 'CN':
            return value.replace('\\', '')
    return None


def _single(value: Any) -> Optional[str]:
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if isinstance(value, bytes):
        value = value.decode('utf-8', errors='replace')
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _multi(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [_single(v) for v in value if _single(v)]
    single = _single(value)
    return [single] if single else []


def parse_directory_record(raw: Dict[str, Any], id_attribute: str = 'sAMAccountName') -> DirectoryRecord:
    """Project a raw directory entry onto a DirectoryRecord."""
    display_name = _single(raw.get('displayName'))
    name_parts = display_name.split() if display_name else []
    email = _single(raw.get('mail'))
    external_id = _single(raw.get(id_attribute))

    return DirectoryRecord(
        dn=_single(raw.get('dn')) or '',
        external_id=external_id,
        email=email.lower() if email else None,
        first_name=_single(raw.get('givenName')) or (name_parts[0] if name_parts else 'Unknown'),
        last_name=_single(raw.get('sn')) or (' '.join(name_parts[1:]) or 'User'),
        display_name=display_name,
        employee_id=_single(raw.get('employeeID')) or external_id,
        department=_single(raw.get('department')),
        title=_single(raw.get('title')),
        groups=_multi(raw.get('memberOf')),
        manager_ref=_single(raw.get('manager')),
        enabled=is_account_enabled(_single(raw.get('userAccountControl')))
    )


class DirectoryReconciler:
    """
    Converges directory-sourced identities onto the directory's current state.

    Args:
        directory: Directory capability
        store: Identity store
        config: Merged directory and sync settings (base_dn, search_filter,
            attributes, external_id_attribute, run_timeout_seconds)
        audit: Optional audit sink
        on_deactivate: Callback ``(identity_id, reason)`` invoked for each
            identity the run deactivates
        timer: Monotonic clock used for the run timeout
    """

    def __init__(self, directory: DirectoryCapability, store: IdentityStore, config: Dict[str, Any],
                 audit=None, on_deactivate: Optional[Callable[[str, str], Any]] = None,
                 timer: Callable[[], float] = time.monotonic):
        self.directory = directory
        self.store = store
        self.config = config
        self.audit = audit
        self.on_deactivate = on_deactivate
        self.timer = timer

        self.base_dn = config.get('base_dn', '')
        self.search_filter = config.get('search_filter', '(&(objectClass=user)(objectCategory=person))')
        self.attributes = config.get('attributes', [
            'sAMAccountName', 'mail', 'givenName', 'sn', 'displayName', 'employeeID',
            'department', 'title', 'manager', 'memberOf', 'userAccountControl'
        ])
        self.id_attribute = config.get('external_id_attribute', 'sAMAccountName')
        self.run_timeout = config.get('run_timeout_seconds')
        self._deadline = None

    def synchronize(self) -> SyncResult:
        """
        Run one reconciliation pass.

        Returns:
            SyncResult with counts of committed operations and per-record errors
        """
        result = SyncResult()
        self._deadline = self.timer() + self.run_timeout if self.run_timeout else None
        logger.info("Starting directory reconciliation")

        try:
            self.directory.connect()
        except Exception as e:
            logger.error(f"Directory connection failed: {e}")
            self._abort(result, FatalKind.CONNECTION, e)
            self._record_sync(result)
            return result

        try:
            try:
                raw_records = self.directory.search_all(self.base_dn, self.search_filter, self.attributes)
            except Exception as e:
                logger.error(f"Directory search failed: {e}")
                self._abort(result, FatalKind.SEARCH, e)
                return result
            self._check_deadline()

            batch, seen_ids = self._build_batch(raw_records, result)
            existing = {
                identity.external_id: identity
                for identity in self.store.find_identities_by_source(IdentitySource.DIRECTORY)
                if identity.external_id
            }

            upserted = {}
            for external_id, record in batch.items():
                self._check_deadline()
                try:
                    upserted[external_id] = self._upsert(record, existing.get(external_id), result)
                except Exception as e:
                    message = f"Error processing user {record.label}: {e}"
                    result.errors.append(message)
                    logger.error(message)

            self._deactivate_missing(existing, seen_ids, result)
            self._resolve_managers(batch, upserted)

        except SyncTimeoutError as e:
            logger.error(f"Directory reconciliation timed out: {e}")
            self._abort(result, FatalKind.TIMEOUT, e)
        except Exception as e:
            logger.error(f"Directory reconciliation aborted: {e}", exc_info=True)
            self._abort(result, FatalKind.UNEXPECTED, e)
        finally:
            self.directory.disconnect()
            logger.info(f"Reconciliation finished: {result.created} created, {result.updated} updated, "
                        f"{result.deactivated} deactivated, {len(result.errors)} errors")
            self._record_sync(result)

        return result

    def _abort(self, result: SyncResult, kind: FatalKind, error: Exception):
        result.errors.append(f"Sync failed: {error}")
        result.fatal_kind = kind

    def _check_deadline(self):
        if self._deadline is not None and self.timer() > self._deadline:
            raise SyncTimeoutError(f"Run exceeded {self.run_timeout} seconds")

    def _build_batch(self, raw_records: Iterable[Dict[str, Any]],
                     result: SyncResult) -> Tuple[Dict[str, DirectoryRecord], set]:
        """
        Parse the snapshot into records keyed by external identifier.

        Every external identifier seen is returned, including those of
        rejected records, so a malformed entry never causes a deactivation.
        """
        batch = {}
        seen_ids = set()

        for raw in raw_records:
            try:
                record = parse_directory_record(raw, self.id_attribute)
            except Exception as e:
                result.errors.append(f"Error processing user {raw.get('dn', 'unknown')}: {e}")
                continue

            if record.external_id:
                seen_ids.add(record.external_id)

            if not record.external_id or not record.email:
                result.errors.append(f"Skipping user {record.label}: Missing email or username")
                continue

            if record.external_id in batch:
                result.errors.append(f"Skipping user {record.label}: Duplicate identifier {record.external_id}")
                continue

            batch[record.external_id] = record

        logger.debug(f"Parsed {len(batch)} directory records ({len(result.errors)} rejected)")
        return batch, seen_ids

    def _upsert(self, record: DirectoryRecord, existing: Optional[Identity], result: SyncResult) -> str:
        """Create or update the identity for one record. Returns the identity id."""
        now = utcnow()
        profile = {
            'email': record.email,
            'first_name': record.first_name,
            'last_name': record.last_name,
            'employee_id': record.employee_id,
            'department': record.department,
            'position': record.title,
            'role': determine_role(record.groups),
            'is_active': record.enabled,
        }

        if existing:
            newly_disabled = existing.is_active and not record.enabled
            if newly_disabled and not self.on_deactivate:
                profile.update(deactivated_at=now, deactivation_reason=REASON_DIRECTORY_DISABLED)
            elif record.enabled and not existing.is_active:
                profile.update(deactivated_at=None, deactivation_reason=None)

            with self.store.transaction():
                self.store.update_identity(existing.id, **profile)
                if newly_disabled and self.on_deactivate:
                    self.on_deactivate(existing.id, REASON_DIRECTORY_DISABLED)
            result.updated += 1
            logger.debug(f"Updated identity {existing.id} from {record.external_id}")
            return existing.id

        identity = Identity(
            id=uuid.uuid4().hex,
            source=IdentitySource.DIRECTORY,
            external_id=record.external_id,
            password_hash=None,
            deactivated_at=None if record.enabled else now,
            deactivation_reason=None if record.enabled else REASON_DIRECTORY_DISABLED,
            **profile
        )
        self.store.upsert_identity(identity)
        result.created += 1
        logger.info(f"Created identity {identity.id} for {record.external_id}")
        return identity.id

    def _deactivate_missing(self, existing: Dict[str, Identity], seen_ids: set, result: SyncResult):
        """Deactivate active identities whose entry left the directory."""
        for external_id, identity in existing.items():
            if external_id in seen_ids or not identity.is_active:
                continue
            try:
                if self.on_deactivate:
                    self.on_deactivate(identity.id, REASON_DIRECTORY_REMOVED)
                else:
                    self.store.update_identity(
                        identity.id,
                        is_active=False,
                        deactivated_at=utcnow(),
                        deactivation_reason=REASON_DIRECTORY_REMOVED
                    )
                result.deactivated += 1
                logger.info(f"Deactivated identity {identity.id} ({external_id} no longer in directory)")
            except Exception as e:
                message = f"Error deactivating user {external_id}: {e}"
                result.errors.append(message)
                logger.error(message)

    def _resolve_managers(self, batch: Dict[str, DirectoryRecord], upserted: Dict[str, str]):
        """
        Point each identity at its manager's identity.

        Managers are looked up within this batch only; anything that cannot be
        resolved is left for a later run.
        """
        by_dn = {record.dn.lower(): record for record in batch.values() if record.dn}
        by_external_id = {record.external_id.lower(): record for record in batch.values()}
        by_display_name = {}
        ambiguous = set()
        for record in batch.values():
            if not record.display_name:
                continue
            name = record.display_name.lower()
            if name in by_display_name:
                ambiguous.add(name)
            by_display_name[name] = record
        for name in ambiguous:
            logger.warning(f"Display name '{name}' is shared by several entries, not used for manager lookup")
            del by_display_name[name]

        resolved = 0
        for external_id, record in batch.items():
            if not record.manager_ref or external_id not in upserted:
                continue

            manager = by_dn.get(record.manager_ref.lower())
            if manager is None:
                manager_cn = extract_manager_cn(record.manager_ref)
                if not manager_cn:
                    continue
                manager = by_external_id.get(manager_cn.lower()) or by_display_name.get(manager_cn.lower())
            if manager is None or manager.external_id not in upserted:
                logger.debug(f"Manager of {external_id} not found in this batch")
                continue
            if not manager.enabled:
                logger.debug(f"Manager of {external_id} is disabled, supervisor left unchanged")
                continue

            identity_id = upserted[external_id]
            supervisor_id = upserted[manager.external_id]
            try:
                if self._set_supervisor(identity_id, supervisor_id):
                    resolved += 1
            except Exception as e:
                logger.warning(f"Could not set manager for {external_id}: {e}")

        logger.debug(f"Resolved {resolved} manager relationships")

    def _set_supervisor(self, identity_id: str, supervisor_id: str) -> bool:
        if identity_id == supervisor_id:
            return False
        current = self.store.get_identity(identity_id)
        if current is None or current.supervisor_id == supervisor_id:
            return False
        if would_create_cycle(self.store, identity_id, supervisor_id):
            logger.warning(f"Skipping supervisor {supervisor_id} for {identity_id}: hierarchy would loop")
            return False
        self.store.update_identity(identity_id, supervisor_id=supervisor_id)
        return True

    def _record_sync(self, result: SyncResult):
        if self.audit:
            details = result.to_dict()
            details['fatal'] = result.fatal_kind.value if result.fatal_kind else None
            self.audit.record(SYSTEM_ACTOR, AuditAction.DIRECTORY_SYNC, EntityType.USER, None, details)

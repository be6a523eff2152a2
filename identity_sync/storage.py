"""
Identity storage for Identity Sync.

Defines the storage contract the sync engine, attempt tracker and retention
manager rely on, and a SQLite implementation of it. Multi-record cascades run
inside ``transaction()``, which nests through savepoints so an inner failure
only rolls back its own writes.
"""

import json
import sqlite3
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional, Callable, Iterator

from identity_sync.models import (
    Identity, IdentitySource, Role, AttemptRecord, ArchiveSnapshot, WorkItem,
    WORK_ITEM_TERMINAL_PHASE
)

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when a storage operation fails."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def _from_db(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def would_create_cycle(store: 'IdentityStore', identity_id: str, supervisor_id: Optional[str]) -> bool:
    """
    Check whether pointing ``identity_id`` at ``supervisor_id`` closes a loop.

    Walks the supervisor chain upward from the proposed supervisor. A chain
    that already loops without reaching ``identity_id`` is also reported.
    """
    seen = set()
    current = supervisor_id
    while current:
        if current == identity_id or current in seen:
            return True
        seen.add(current)
        supervisor = store.get_identity(current)
        current = supervisor.supervisor_id if supervisor else None
    return False


class IdentityStore(ABC):
    """Storage contract for identities and their dependent records."""

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator['IdentityStore']:
        """Scope a group of writes into one atomic unit."""

    # Identities

    @abstractmethod
    def get_identity(self, identity_id: str) -> Optional[Identity]:
        pass

    @abstractmethod
    def find_identity_by_external_id(self, source: IdentitySource, external_id: str) -> Optional[Identity]:
        pass

    @abstractmethod
    def find_identity_by_email(self, email: str) -> Optional[Identity]:
        pass

    @abstractmethod
    def find_identities_by_source(self, source: IdentitySource) -> List[Identity]:
        pass

    @abstractmethod
    def find_inactive_identities(self) -> List[Identity]:
        pass

    @abstractmethod
    def find_dependents_by_supervisor(self, identity_id: str) -> List[Identity]:
        pass

    @abstractmethod
    def upsert_identity(self, identity: Identity) -> Identity:
        pass

    @abstractmethod
    def update_identity(self, identity_id: str, **fields) -> Identity:
        pass

    @abstractmethod
    def delete_identity(self, identity_id: str) -> None:
        pass

    @abstractmethod
    def count_identities(self, **flags) -> int:
        pass

    # Work items

    @abstractmethod
    def add_work_item(self, item: WorkItem) -> WorkItem:
        pass

    @abstractmethod
    def get_work_item(self, item_id: str) -> Optional[WorkItem]:
        pass

    @abstractmethod
    def find_open_work_items_for(self, identity_id: str) -> List[WorkItem]:
        pass

    @abstractmethod
    def count_work_items_for(self, identity_id: str) -> int:
        pass

    @abstractmethod
    def update_work_item(self, item_id: str, **fields) -> None:
        pass

    # Authentication attempts

    @abstractmethod
    def append_attempt(self, attempt: AttemptRecord) -> AttemptRecord:
        pass

    @abstractmethod
    def find_attempts(self, identity_id: str, success: Optional[bool] = None,
                      since: Optional[datetime] = None, limit: Optional[int] = None) -> List[AttemptRecord]:
        pass

    @abstractmethod
    def delete_failed_attempts(self, identity_id: str) -> int:
        pass

    @abstractmethod
    def delete_attempts_for(self, identity_id: str) -> int:
        pass

    @abstractmethod
    def delete_attempts_before(self, cutoff: datetime) -> int:
        pass

    # Audit trail

    @abstractmethod
    def append_audit_event(self, actor_id: str, action: str, entity_type: Optional[str],
                           entity_id: Optional[str], details: Optional[Dict[str, Any]]) -> None:
        pass

    @abstractmethod
    def find_audit_events(self, entity_id: Optional[str] = None, action: Optional[str] = None,
                          actor_id: Optional[str] = None) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def delete_audit_events_by_actor(self, actor_id: str) -> int:
        pass

    # Archive

    @abstractmethod
    def save_archive_snapshot(self, snapshot: ArchiveSnapshot) -> None:
        pass

    @abstractmethod
    def get_archive_snapshot(self, original_id: str) -> Optional[ArchiveSnapshot]:
        pass


SCHEMA = '''
CREATE TABLE IF NOT EXISTS identities (
    id TEXT PRIMARY KEY,
    source TEXT NOT NULL,
    external_id TEXT,
    email TEXT NOT NULL UNIQUE,
    first_name TEXT NOT NULL,
    last_name TEXT NOT NULL,
    employee_id TEXT,
    department TEXT,
    position TEXT,
    role TEXT NOT NULL,
    supervisor_id TEXT REFERENCES identities(id),
    password_hash TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    is_anonymized INTEGER NOT NULL DEFAULT 0,
    is_archived INTEGER NOT NULL DEFAULT 0,
    deactivated_at TEXT,
    deactivation_reason TEXT,
    supervisor_changed_at TEXT,
    supervisor_changed_reason TEXT,
    anonymized_at TEXT,
    archived_at TEXT,
    created_at TEXT,
    updated_at TEXT,
    UNIQUE (source, external_id)
);
CREATE INDEX IF NOT EXISTS idx_identities_supervisor ON identities(supervisor_id);

CREATE TABLE IF NOT EXISTS work_items (
    id TEXT PRIMARY KEY,
    subject_id TEXT NOT NULL REFERENCES identities(id),
    reviewer_id TEXT REFERENCES identities(id),
    phase TEXT NOT NULL,
    status TEXT NOT NULL,
    incomplete_reason TEXT,
    reviewer_changed_at TEXT
);

CREATE TABLE IF NOT EXISTS login_attempts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    identity_id TEXT,
    email TEXT NOT NULL,
    origin_address TEXT NOT NULL,
    success INTEGER NOT NULL,
    attempted_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_attempts_identity_ts ON login_attempts(identity_id, attempted_at DESC);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    actor_id TEXT NOT NULL,
    action TEXT NOT NULL,
    entity_type TEXT,
    entity_id TEXT,
    details TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS archived_identities (
    original_id TEXT PRIMARY KEY,
    identity_data TEXT NOT NULL,
    work_item_count INTEGER NOT NULL,
    archived_at TEXT NOT NULL
);
'''

IDENTITY_COLUMNS = [
    'id', 'source', 'external_id', 'email', 'first_name', 'last_name', 'employee_id',
    'department', 'position', 'role', 'supervisor_id', 'password_hash', 'is_active',
    'is_anonymized', 'is_archived', 'deactivated_at', 'deactivation_reason',
    'supervisor_changed_at', 'supervisor_changed_reason', 'anonymized_at',
    'archived_at', 'created_at', 'updated_at'
]

DATETIME_COLUMNS = {
    'deactivated_at', 'supervisor_changed_at', 'anonymized_at', 'archived_at',
    'created_at', 'updated_at', 'reviewer_changed_at'
}
BOOLEAN_COLUMNS = {'is_active', 'is_anonymized', 'is_archived'}
WORK_ITEM_COLUMNS = ['id', 'subject_id', 'reviewer_id', 'phase', 'status',
                     'incomplete_reason', 'reviewer_changed_at']


class SQLiteIdentityStore(IdentityStore):
    """
    SQLite-backed identity store.

    A single connection is shared by all callers and guarded by a re-entrant
    lock; writes happen inside ``transaction()``.
    """

    def __init__(self, database: str = ':memory:', clock: Optional[Callable[[], datetime]] = None):
        self.database = database
        self.clock = clock or utcnow
        self._lock = threading.RLock()
        self._depth = 0
        try:
            self._conn = sqlite3.connect(database, isolation_level=None, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute('PRAGMA foreign_keys = ON')
            self._conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open identity database {database}: {e}")
        logger.debug(f"Identity store ready at {database}")

    def close(self):
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator['SQLiteIdentityStore']:
        with self._lock:
            self._depth += 1
            savepoint = f"sp_{self._depth}"
            outermost = self._depth == 1
            try:
                self._conn.execute('BEGIN IMMEDIATE' if outermost else f'SAVEPOINT {savepoint}')
            except sqlite3.Error as e:
                self._depth -= 1
                raise StorageError(f"Could not start transaction: {e}") from e
            try:
                yield self
            except BaseException:
                if outermost:
                    self._conn.execute('ROLLBACK')
                else:
                    self._conn.execute(f'ROLLBACK TO {savepoint}')
                    self._conn.execute(f'RELEASE {savepoint}')
                raise
            else:
                self._conn.execute('COMMIT' if outermost else f'RELEASE {savepoint}')
            finally:
                self._depth -= 1

    def _write(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self.transaction():
            try:
                return self._conn.execute(sql, params)
            except sqlite3.Error as e:
                raise StorageError(f"Write failed: {e}") from e

    def _read(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StorageError(f"Read failed: {e}") from e

    @staticmethod
    def _encode(column: str, value: Any) -> Any:
        if column in DATETIME_COLUMNS:
            return _to_db(value)
        if column in BOOLEAN_COLUMNS:
            return 1 if value else 0
        if isinstance(value, (Role, IdentitySource)):
            return value.value
        return value

    @staticmethod
    def _row_to_identity(row: sqlite3.Row) -> Identity:
        data = dict(row)
        for column in data.keys() & DATETIME_COLUMNS:
            data[column] = _from_db(data[column])
        for column in BOOLEAN_COLUMNS:
            data[column] = bool(data[column])
        data['role'] = Role(data['role'])
        data['source'] = IdentitySource(data['source'])
        return Identity(**data)

    @staticmethod
    def _row_to_work_item(row: sqlite3.Row) -> WorkItem:
        data = dict(row)
        data['reviewer_changed_at'] = _from_db(data['reviewer_changed_at'])
        return WorkItem(**data)

    def _select_identities(self, where: str, params: tuple = ()) -> List[Identity]:
        rows = self._read(f"SELECT * FROM identities WHERE {where}", params)
        return [self._row_to_identity(row) for row in rows]

    # Identities

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        found = self._select_identities("id = ?", (identity_id,))
        return found[0] if found else None

    def find_identity_by_external_id(self, source: IdentitySource, external_id: str) -> Optional[Identity]:
        found = self._select_identities("source = ? AND external_id = ?",
                                        (IdentitySource(source).value, external_id))
        return found[0] if found else None

    def find_identity_by_email(self, email: str) -> Optional[Identity]:
        if not email:
            return None
        found = self._select_identities("email = ?", (email.strip().lower(),))
        return found[0] if found else None

    def find_identities_by_source(self, source: IdentitySource) -> List[Identity]:
        return self._select_identities("source = ? ORDER BY created_at", (IdentitySource(source).value,))

    def find_inactive_identities(self) -> List[Identity]:
        return self._select_identities("is_active = 0 ORDER BY deactivated_at")

    def find_dependents_by_supervisor(self, identity_id: str) -> List[Identity]:
        return self._select_identities("supervisor_id = ?", (identity_id,))

    def upsert_identity(self, identity: Identity) -> Identity:
        now = self.clock()
        if identity.created_at is None:
            identity.created_at = now
        identity.updated_at = now
        identity.email = identity.email.strip().lower()

        values = tuple(self._encode(column, getattr(identity, column)) for column in IDENTITY_COLUMNS)
        placeholders = ', '.join('?' for _ in IDENTITY_COLUMNS)
        assignments = ', '.join(f"{column} = excluded.{column}"
                                for column in IDENTITY_COLUMNS if column not in ('id', 'created_at'))
        self._write(
            f"INSERT INTO identities ({', '.join(IDENTITY_COLUMNS)}) VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {assignments}",
            values
        )
        return identity

    def update_identity(self, identity_id: str, **fields) -> Identity:
        unknown = set(fields) - set(IDENTITY_COLUMNS)
        if unknown or 'id' in fields:
            raise StorageError(f"Cannot update identity fields: {sorted(unknown | ({'id'} & set(fields)))}")
        if 'email' in fields and fields['email']:
            fields['email'] = fields['email'].strip().lower()
        fields['updated_at'] = self.clock()

        assignments = ', '.join(f"{column} = ?" for column in fields)
        params = tuple(self._encode(column, value) for column, value in fields.items())
        with self.transaction():
            cursor = self._write(f"UPDATE identities SET {assignments} WHERE id = ?", params + (identity_id,))
            if cursor.rowcount == 0:
                raise StorageError(f"Identity not found: {identity_id}")
            return self.get_identity(identity_id)

    def delete_identity(self, identity_id: str) -> None:
        self._write("DELETE FROM identities WHERE id = ?", (identity_id,))

    def count_identities(self, **flags) -> int:
        unknown = set(flags) - BOOLEAN_COLUMNS
        if unknown:
            raise StorageError(f"Cannot count by fields: {sorted(unknown)}")
        where = ' AND '.join(f"{column} = ?" for column in flags) or '1 = 1'
        params = tuple(1 if value else 0 for value in flags.values())
        return self._read(f"SELECT COUNT(*) FROM identities WHERE {where}", params)[0][0]

    # Work items

    def add_work_item(self, item: WorkItem) -> WorkItem:
        values = (item.id, item.subject_id, item.reviewer_id, item.phase, item.status,
                  item.incomplete_reason, _to_db(item.reviewer_changed_at))
        self._write(f"INSERT INTO work_items ({', '.join(WORK_ITEM_COLUMNS)}) VALUES (?, ?, ?, ?, ?, ?, ?)", values)
        return item

    def get_work_item(self, item_id: str) -> Optional[WorkItem]:
        rows = self._read("SELECT * FROM work_items WHERE id = ?", (item_id,))
        return self._row_to_work_item(rows[0]) if rows else None

    def find_open_work_items_for(self, identity_id: str) -> List[WorkItem]:
        rows = self._read(
            "SELECT * FROM work_items WHERE (subject_id = ? OR reviewer_id = ?) AND phase != ?",
            (identity_id, identity_id, WORK_ITEM_TERMINAL_PHASE)
        )
        return [self._row_to_work_item(row) for row in rows]

    def count_work_items_for(self, identity_id: str) -> int:
        rows = self._read("SELECT COUNT(*) FROM work_items WHERE subject_id = ? OR reviewer_id = ?",
                          (identity_id, identity_id))
        return rows[0][0]

    def update_work_item(self, item_id: str, **fields) -> None:
        unknown = set(fields) - set(WORK_ITEM_COLUMNS[1:])
        if unknown:
            raise StorageError(f"Cannot update work item fields: {sorted(unknown)}")
        assignments = ', '.join(f"{column} = ?" for column in fields)
        params = tuple(self._encode(column, value) for column, value in fields.items())
        self._write(f"UPDATE work_items SET {assignments} WHERE id = ?", params + (item_id,))

    # Authentication attempts

    def append_attempt(self, attempt: AttemptRecord) -> AttemptRecord:
        cursor = self._write(
            "INSERT INTO login_attempts (identity_id, email, origin_address, success, attempted_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (attempt.identity_id, attempt.email, attempt.origin_address,
             1 if attempt.success else 0, _to_db(attempt.attempted_at))
        )
        return AttemptRecord(
            identity_id=attempt.identity_id,
            email=attempt.email,
            origin_address=attempt.origin_address,
            success=attempt.success,
            attempted_at=attempt.attempted_at,
            id=cursor.lastrowid
        )

    def find_attempts(self, identity_id: str, success: Optional[bool] = None,
                      since: Optional[datetime] = None, limit: Optional[int] = None) -> List[AttemptRecord]:
        clauses = ["identity_id = ?"]
        params = [identity_id]
        if success is not None:
            clauses.append("success = ?")
            params.append(1 if success else 0)
        if since is not None:
            clauses.append("attempted_at >= ?")
            params.append(_to_db(since))
        sql = f"SELECT * FROM login_attempts WHERE {' AND '.join(clauses)} ORDER BY attempted_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        return [
            AttemptRecord(
                identity_id=row['identity_id'],
                email=row['email'],
                origin_address=row['origin_address'],
                success=bool(row['success']),
                attempted_at=_from_db(row['attempted_at']),
                id=row['id']
            )
            for row in self._read(sql, tuple(params))
        ]

    def delete_failed_attempts(self, identity_id: str) -> int:
        return self._write("DELETE FROM login_attempts WHERE identity_id = ? AND success = 0",
                           (identity_id,)).rowcount

    def delete_attempts_for(self, identity_id: str) -> int:
        return self._write("DELETE FROM login_attempts WHERE identity_id = ?", (identity_id,)).rowcount

    def delete_attempts_before(self, cutoff: datetime) -> int:
        return self._write("DELETE FROM login_attempts WHERE attempted_at < ?", (_to_db(cutoff),)).rowcount

    # Audit trail

    def append_audit_event(self, actor_id: str, action: str, entity_type: Optional[str],
                           entity_id: Optional[str], details: Optional[Dict[str, Any]]) -> None:
        self._write(
            "INSERT INTO audit_log (actor_id, action, entity_type, entity_id, details, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (actor_id, action, entity_type, entity_id,
             json.dumps(details, default=str) if details is not None else None,
             _to_db(self.clock()))
        )

    def find_audit_events(self, entity_id: Optional[str] = None, action: Optional[str] = None,
                          actor_id: Optional[str] = None) -> List[Dict[str, Any]]:
        clauses = []
        params = []
        for column, value in (('entity_id', entity_id), ('action', action), ('actor_id', actor_id)):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = ' AND '.join(clauses) or '1 = 1'
        events = []
        for row in self._read(f"SELECT * FROM audit_log WHERE {where} ORDER BY id", tuple(params)):
            event = dict(row)
            event['details'] = json.loads(event['details']) if event['details'] else None
            event['created_at'] = _from_db(event['created_at'])
            events.append(event)
        return events

    def delete_audit_events_by_actor(self, actor_id: str) -> int:
        return self._write("DELETE FROM audit_log WHERE actor_id = ?", (actor_id,)).rowcount

    # Archive

    def save_archive_snapshot(self, snapshot: ArchiveSnapshot) -> None:
        self._write(
            "INSERT INTO archived_identities (original_id, identity_data, work_item_count, archived_at) "
            "VALUES (?, ?, ?, ?)",
            (snapshot.original_id, json.dumps(snapshot.identity_data, default=str),
             snapshot.work_item_count, _to_db(snapshot.archived_at))
        )

    def get_archive_snapshot(self, original_id: str) -> Optional[ArchiveSnapshot]:
        rows = self._read("SELECT * FROM archived_identities WHERE original_id = ?", (original_id,))
        if not rows:
            return None
        row = rows[0]
        return ArchiveSnapshot(
            original_id=row['original_id'],
            identity_data=json.loads(row['identity_data']),
            work_item_count=row['work_item_count'],
            archived_at=_from_db(row['archived_at'])
        )

"""
Data model for Identity Sync.

This module defines the identity record and the value objects exchanged
between the reconciliation engine, the attempt tracker and the retention
lifecycle manager.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Any, Optional


class Role(str, Enum):
    """Closed set of roles an identity can hold."""
    EMPLOYEE = 'EMPLOYEE'
    SUPERVISOR = 'SUPERVISOR'
    HR = 'HR'
    ADMIN = 'ADMIN'


class IdentitySource(str, Enum):
    """Where an identity record originates."""
    DIRECTORY = 'DIRECTORY'
    LOCAL = 'LOCAL'


class LifecycleState(str, Enum):
    ACTIVE = 'ACTIVE'
    DEACTIVATED = 'DEACTIVATED'
    ANONYMIZED = 'ANONYMIZED'
    ARCHIVED = 'ARCHIVED'


# Work item phase after which an item is no longer "open"
WORK_ITEM_TERMINAL_PHASE = 'COMPLETED'


@dataclass
class Identity:
    """The canonical local user record."""
    id: str
    email: str
    first_name: str
    last_name: str
    source: IdentitySource = IdentitySource.LOCAL
    external_id: Optional[str] = None
    employee_id: Optional[str] = None
    department: Optional[str] = None
    position: Optional[str] = None
    role: Role = Role.EMPLOYEE
    supervisor_id: Optional[str] = None
    password_hash: Optional[str] = None
    is_active: bool = True
    is_anonymized: bool = False
    is_archived: bool = False
    deactivated_at: Optional[datetime] = None
    deactivation_reason: Optional[str] = None
    supervisor_changed_at: Optional[datetime] = None
    supervisor_changed_reason: Optional[str] = None
    anonymized_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def lifecycle_state(self) -> LifecycleState:
        if self.is_archived:
            return LifecycleState.ARCHIVED
        if self.is_anonymized:
            return LifecycleState.ANONYMIZED
        if not self.is_active:
            return LifecycleState.DEACTIVATED
        return LifecycleState.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-friendly dictionary."""
        data = asdict(self)
        data['source'] = self.source.value
        data['role'] = self.role.value
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data


@dataclass
class DirectoryRecord:
    """
    Projection of one directory entry for a single sync run.

    Built from a raw search result and discarded once the run completes.
    """
    dn: str
    external_id: Optional[str]
    email: Optional[str]
    first_name: str
    last_name: str
    display_name: Optional[str] = None
    employee_id: Optional[str] = None
    department: Optional[str] = None
    title: Optional[str] = None
    groups: List[str] = field(default_factory=list)
    manager_ref: Optional[str] = None
    enabled: bool = True

    @property
    def label(self) -> str:
        return self.display_name or self.external_id or self.dn or 'unknown'


class FatalKind(str, Enum):
    """What ended a reconciliation run early."""
    CONNECTION = 'CONNECTION'
    SEARCH = 'SEARCH'
    TIMEOUT = 'TIMEOUT'
    UNEXPECTED = 'UNEXPECTED'


@dataclass
class SyncResult:
    """Summary of one reconciliation run."""
    created: int = 0
    updated: int = 0
    deactivated: int = 0
    errors: List[str] = field(default_factory=list)
    fatal_kind: Optional[FatalKind] = None

    @property
    def aborted(self) -> bool:
        return self.fatal_kind is not None

    @property
    def directory_failure(self) -> bool:
        """True when the directory could not be read, before any store write."""
        return self.fatal_kind in (FatalKind.CONNECTION, FatalKind.SEARCH)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'created': self.created,
            'updated': self.updated,
            'deactivated': self.deactivated,
            'errors': list(self.errors),
        }


@dataclass(frozen=True)
class AttemptRecord:
    """One authentication attempt. Append-only."""
    identity_id: Optional[str]
    email: str
    origin_address: str
    success: bool
    attempted_at: datetime
    id: Optional[int] = None


@dataclass
class LockoutStatus:
    """Lockout decision returned to the login handler."""
    locked: bool
    remaining_minutes: Optional[int] = None
    attempts_remaining: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'locked': self.locked}
        if self.remaining_minutes is not None:
            data['remainingMinutes'] = self.remaining_minutes
        if self.attempts_remaining is not None:
            data['attemptsRemaining'] = self.attempts_remaining
        return data


@dataclass(frozen=True)
class RetentionPolicy:
    """
    Time thresholds for advancing deactivated identities.

    A threshold of None disables that stage.
    """
    anonymize_after: Optional[timedelta] = timedelta(days=365)
    archive_after: Optional[timedelta] = timedelta(days=730)
    delete_after: Optional[timedelta] = None
    reassign_subordinates: bool = True
    archive_measured_from: str = 'deactivation'


@dataclass(frozen=True)
class ArchiveSnapshot:
    """Immutable copy of an identity's final state."""
    original_id: str
    identity_data: Dict[str, Any]
    work_item_count: int
    archived_at: datetime


@dataclass
class WorkItem:
    """
    In-flight work item that references identities.

    The subject is the primary party, the reviewer the secondary one.
    """
    id: str
    subject_id: str
    reviewer_id: Optional[str] = None
    phase: str = 'DRAFT'
    status: str = 'OPEN'
    incomplete_reason: Optional[str] = None
    reviewer_changed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.phase != WORK_ITEM_TERMINAL_PHASE


@dataclass
class RetentionReport:
    """Counts produced by one retention pass."""
    anonymized: int = 0
    archived: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

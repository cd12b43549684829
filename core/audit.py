"""
Audit Trail Module
==================

Two independent, append-only audit streams:

- AccessAttemptLog: one entry per permission check, granted or not.
- MutationAuditLog: one entry per change to the access model (roles,
  assignments, permissions, accounts, configuration) and per reported
  security violation.

Both logs keep the newest ``max_entries`` entries. Each append is persisted
first and only then added to the in-memory window, so the window always
mirrors the durable store. Rows beyond the cap are evicted oldest-first in
the same transaction as the insert. After a failed write the window is
re-read from the store before the next append.

Mutation entries are hash-chained: every entry stores the previous entry's
hash and a SHA-256 over that hash plus its own canonical payload, so edits
or deletions in the retained window are detectable with ``verify_chain()``.

Features:
- Durable, bounded retention that survives restarts
- Recency, per-user/performer, per-entity and date-range queries
- Statistics for dashboards
- JSON export for offline retention
"""

import enum
import hashlib
import json
import logging
import threading
import uuid
from collections import Counter, deque
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from models.database import Database
from models.domain import (
    AccessAttempt, ActionType, AuditAction, AuditEntityType, AuthorizationContext,
    FieldChange, MutationAuditEntry, ResourceType, Severity, SystemRoleType, utcnow
)
from models.entities import AccessAttemptRecord, MutationAuditRecord
from . import config
from .exceptions import AuditWriteError

logger = logging.getLogger(__name__)

SYSTEM_PERFORMER = 'SYSTEM'


def _plain(value: Any) -> Any:
    """Reduce a snapshot value to JSON-native types."""
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    return value


def _context_snapshot(context: Optional[AuthorizationContext]) -> Dict[str, Any]:
    """JSON-ready copy of a checked context; unencodable contexts are kept as their repr."""
    if context is None:
        return {}
    try:
        snapshot = _plain(context.to_dict())
        json.dumps(snapshot, ensure_ascii=False, default=str)
    except (TypeError, ValueError, RecursionError) as e:
        logger.warning(f"Context for '{context.user_id}' is not serializable, storing its repr: {e!r}")
        return {'unserializable': repr(context)}
    return snapshot


def _canonical(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)


def compute_hash(hash_prev: str, payload: Dict[str, Any]) -> str:
    """SHA-256 over the previous hash and the canonical payload."""
    return hashlib.sha256((hash_prev + _canonical(payload)).encode('utf-8')).hexdigest()


def _top(counter: Counter, n: int, key_name: str) -> List[Dict[str, Any]]:
    return [{key_name: key, 'count': count} for key, count in counter.most_common(n)]


class _BoundedLog:
    """
    Shared machinery for a durable ring of audit entries.

    Subclasses provide ``record_class`` and the record/entry conversions.
    """

    record_class = None

    def __init__(self, database: Database, max_entries: Optional[int] = None):
        """
        Args:
            database: Durable store for the entries
            max_entries: Retained entry cap (default: config.MAX_AUDIT_ENTRIES)
        """
        self.database = database
        self.max_entries = config.MAX_AUDIT_ENTRIES if max_entries is None else max_entries
        if self.max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.failed_appends = 0
        self._entries: Deque = deque(maxlen=self.max_entries)
        self._lock = threading.Lock()
        # Set when a write failed and the durable store may hold rows the window lacks
        self._stale = False

    # ---- lifecycle -------------------------------------------------------

    def init(self) -> None:
        """Load the newest ``max_entries`` entries from the durable store."""
        with self._lock:
            self._reload()
        logger.debug(f"{type(self).__name__} loaded {len(self._entries)} entries")

    def _reload(self) -> None:
        record_class = self.record_class
        with self.database.get_session() as session:
            records = session.query(record_class).order_by(
                record_class.seq.desc()
            ).limit(self.max_entries).all()
            loaded = [self._from_record(r) for r in reversed(records)]
        self._entries.clear()
        self._entries.extend(loaded)
        self._stale = False

    def close(self) -> None:
        """Drop the in-memory window; durable entries are untouched."""
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def entries(self) -> list:
        """Snapshot of the retained window, oldest first."""
        with self._lock:
            return list(self._entries)

    # ---- write path ------------------------------------------------------

    def _sync(self) -> None:
        """
        Re-read the window after a failed write. Caller holds the lock.

        A failed commit may still have stored the row, so the window is
        rebuilt from the store before the next append relies on it.
        """
        if not self._stale:
            return
        try:
            self._reload()
        except SQLAlchemyError as e:
            logger.warning(f"{type(self).__name__} could not reload its window: {e}")
            return
        logger.info(f"{type(self).__name__} reloaded {len(self._entries)} entries after a failed write")

    def _persist(self, entry) -> None:
        """
        Insert one entry and evict rows beyond the cap. Caller holds the lock.

        Raises:
            AuditWriteError: If the durable append failed; the in-memory
                window is left unchanged and marked for reload
        """
        record_class = self.record_class
        try:
            with self.database.get_session() as session:
                session.add(self._to_record(entry))
                session.flush()
                cutoff = session.query(record_class.seq).order_by(
                    record_class.seq.desc()
                ).offset(self.max_entries).limit(1).scalar()
                if cutoff is not None:
                    session.query(record_class).filter(
                        record_class.seq <= cutoff
                    ).delete(synchronize_session=False)
        except SQLAlchemyError as e:
            self.failed_appends += 1
            self._stale = True
            raise AuditWriteError(f"Could not persist {type(self).__name__} entry {entry.id}: {e}") from e

        self._entries.append(entry)

    # ---- read helpers ----------------------------------------------------

    @staticmethod
    def _newest_first(entries: Iterable, limit: Optional[int]) -> list:
        ordered = list(entries)[::-1]
        return ordered if limit is None else ordered[:limit]

    def by_date_range(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> list:
        """
        Entries with ``start <= timestamp <= end``, oldest first.

        Either bound may be omitted.
        """
        return [
            e for e in self.entries()
            if (start is None or e.timestamp >= start) and (end is None or e.timestamp <= end)
        ]

    def _from_record(self, record):
        raise NotImplementedError

    def _to_record(self, entry):
        raise NotImplementedError


# ============================================================================
# Access attempts
# ============================================================================

class AccessAttemptLog(_BoundedLog):
    """
    Audit log of permission checks.

    The authorization engine appends exactly one entry per check.
    """

    record_class = AccessAttemptRecord

    def record(
        self,
        user_id: str,
        resource: Any,
        action: Any,
        granted: bool,
        reason: Optional[str] = None,
        context: Optional[AuthorizationContext] = None
    ) -> AccessAttempt:
        """
        Append one access attempt.

        Args:
            user_id: Subject that was checked
            resource: Resource kind requested
            action: Action requested
            granted: Verdict
            reason: Denial reason; must be set iff the check was not granted
            context: The context the check evaluated, stored as a snapshot

        Returns:
            The stored AccessAttempt

        Raises:
            AuditWriteError: If the attempt could not be persisted
        """
        attempt = AccessAttempt(
            id=f"attempt-{uuid.uuid4().hex}",
            user_id=user_id,
            resource=_plain(resource),
            action=_plain(action),
            granted=granted,
            timestamp=utcnow(),
            reason=None if granted else reason,
            ip_address=context.ip_address if context else None,
            user_agent=context.user_agent if context else None,
            context=_context_snapshot(context)
        )
        with self._lock:
            self._sync()
            self._persist(attempt)
        return attempt

    def recent(self, limit: int = 100, user_id: Optional[str] = None) -> List[AccessAttempt]:
        """Most recent attempts, newest first, optionally for one user."""
        entries = self.entries()
        if user_id is not None:
            entries = [a for a in entries if a.user_id == user_id]
        return self._newest_first(entries, limit)

    def statistics(self, hours: int = 24, top_n: int = 10) -> Dict[str, Any]:
        """
        Access statistics over the last ``hours``.

        Returns:
            Statistics dictionary
        """
        cutoff = utcnow() - timedelta(hours=hours)
        entries = self.entries()
        window = [a for a in entries if a.timestamp >= cutoff]

        denied = sum(1 for a in window if not a.granted)
        return {
            'period_hours': hours,
            'total_entries': len(entries),
            'total_attempts': len(window),
            'granted_attempts': len(window) - denied,
            'denied_attempts': denied,
            'denial_rate': denied / len(window) if window else 0,
            'top_resources': _top(Counter(a.resource for a in window), top_n, 'resource'),
            'top_users': _top(Counter(a.user_id for a in window), top_n, 'user_id'),
            'failed_appends': self.failed_appends
        }

    def _to_record(self, attempt: AccessAttempt) -> AccessAttemptRecord:
        return AccessAttemptRecord(
            id=attempt.id,
            user_id=attempt.user_id,
            resource=attempt.resource,
            action=attempt.action,
            granted=attempt.granted,
            reason=attempt.reason,
            timestamp=attempt.timestamp,
            ip_address=attempt.ip_address,
            user_agent=attempt.user_agent,
            context=json.dumps(attempt.context, ensure_ascii=False, default=str)
        )

    def _from_record(self, record: AccessAttemptRecord) -> AccessAttempt:
        return AccessAttempt(
            id=record.id,
            user_id=record.user_id,
            resource=record.resource,
            action=record.action,
            granted=bool(record.granted),
            timestamp=record.timestamp,
            reason=record.reason,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            context=json.loads(record.context) if record.context else {}
        )


# ============================================================================
# Access model mutations
# ============================================================================

class MutationAuditLog(_BoundedLog):
    """
    Audit log of access model mutations and security events.

    Each ``log_*`` method appends exactly one entry and returns it. Every
    method accepts ``ip_address`` and ``user_agent`` keywords describing
    where the change originated.
    """

    record_class = MutationAuditRecord

    def _log(
        self,
        entity_type: AuditEntityType,
        entity_id: str,
        action: AuditAction,
        performed_by: str,
        changes: Sequence[Tuple[str, Any, Any]],
        reason: str,
        severity: Optional[Severity] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> MutationAuditEntry:
        snapshot = tuple(FieldChange(name, _plain(old), _plain(new)) for name, old, new in changes)
        with self._lock:
            self._sync()
            hash_prev = self._entries[-1].hash_curr if self._entries else ""
            entry = MutationAuditEntry(
                id=f"audit-{uuid.uuid4().hex}",
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                performed_by=performed_by,
                changes=snapshot,
                reason=reason,
                timestamp=utcnow(),
                severity=severity,
                ip_address=ip_address,
                user_agent=user_agent,
                hash_prev=hash_prev
            )
            entry = replace(entry, hash_curr=compute_hash(hash_prev, entry.payload()))
            self._persist(entry)
        return entry

    # ---- roles -----------------------------------------------------------

    def log_role_creation(
        self,
        role_id: str,
        role_name: str,
        role_type: SystemRoleType,
        performed_by: str,
        description: str = "",
        parent_role_id: Optional[str] = None,
        **origin
    ) -> MutationAuditEntry:
        changes = [('name', None, role_name), ('type', None, role_type)]
        if description:
            changes.append(('description', None, description))
        if parent_role_id:
            changes.append(('parent_role_id', None, parent_role_id))
        return self._log(
            AuditEntityType.ROLE, role_id, AuditAction.CREATE, performed_by, changes,
            f"Created role: {role_name}", **origin
        )

    def log_role_update(
        self,
        role_id: str,
        old_values: Dict[str, Any],
        new_values: Dict[str, Any],
        performed_by: str,
        reason: Optional[str] = None,
        **origin
    ) -> MutationAuditEntry:
        """One FieldChange per field present in either snapshot, in key order."""
        fields = list(old_values) + [k for k in new_values if k not in old_values]
        changes = [(f, old_values.get(f), new_values.get(f)) for f in fields]
        return self._log(
            AuditEntityType.ROLE, role_id, AuditAction.UPDATE, performed_by, changes,
            reason or f"Updated role: {old_values.get('name') or role_id}", **origin
        )

    def log_role_assignment(
        self,
        user_id: str,
        role_id: str,
        role_name: str,
        performed_by: str,
        expires_at: Optional[datetime] = None,
        **origin
    ) -> MutationAuditEntry:
        changes = [
            ('user_id', None, user_id),
            ('role_id', None, role_id),
            ('role_name', None, role_name),
            ('expires_at', None, expires_at),
        ]
        return self._log(
            AuditEntityType.USER_ROLE, f"{user_id}-{role_id}", AuditAction.ASSIGN, performed_by, changes,
            f"Assigned role '{role_name}' to user {user_id}", **origin
        )

    def log_role_revocation(
        self,
        user_id: str,
        role_id: str,
        role_name: str,
        performed_by: str,
        reason: Optional[str] = None,
        **origin
    ) -> MutationAuditEntry:
        changes = [
            ('user_id', user_id, None),
            ('role_id', role_id, None),
            ('role_name', role_name, None),
        ]
        return self._log(
            AuditEntityType.USER_ROLE, f"{user_id}-{role_id}", AuditAction.REVOKE, performed_by, changes,
            reason or f"Revoked role '{role_name}' from user {user_id}", **origin
        )

    # ---- permissions -----------------------------------------------------

    def log_permission_creation(
        self,
        permission_id: str,
        resource: ResourceType,
        action: ActionType,
        conditions: Sequence[Any],
        performed_by: str,
        **origin
    ) -> MutationAuditEntry:
        changes = [
            ('resource', None, resource),
            ('action', None, action),
            ('conditions', None, [c.to_dict() if hasattr(c, 'to_dict') else c for c in conditions]),
        ]
        return self._log(
            AuditEntityType.PERMISSION, permission_id, AuditAction.CREATE, performed_by, changes,
            f"Created permission {_plain(action)} on {_plain(resource)}", **origin
        )

    def log_permission_grant(
        self,
        role_id: str,
        permission_id: str,
        resource: ResourceType,
        action: ActionType,
        performed_by: str,
        **origin
    ) -> MutationAuditEntry:
        changes = [
            ('role_id', None, role_id),
            ('permission_id', None, permission_id),
            ('resource', None, resource),
            ('action', None, action),
        ]
        return self._log(
            AuditEntityType.ROLE_PERMISSION, f"{role_id}-{permission_id}", AuditAction.ASSIGN, performed_by,
            changes, f"Granted {_plain(action)} on {_plain(resource)} to role {role_id}", **origin
        )

    def log_permission_revoke(
        self,
        role_id: str,
        permission_id: str,
        resource: ResourceType,
        action: ActionType,
        performed_by: str,
        **origin
    ) -> MutationAuditEntry:
        changes = [
            ('role_id', role_id, None),
            ('permission_id', permission_id, None),
            ('resource', resource, None),
            ('action', action, None),
        ]
        return self._log(
            AuditEntityType.ROLE_PERMISSION, f"{role_id}-{permission_id}", AuditAction.REVOKE, performed_by,
            changes, f"Revoked {_plain(action)} on {_plain(resource)} from role {role_id}", **origin
        )

    # ---- user accounts ---------------------------------------------------

    def log_user_creation(
        self,
        user_id: str,
        username: str,
        department: Optional[str],
        legacy_role: Optional[str],
        performed_by: str,
        **origin
    ) -> MutationAuditEntry:
        changes = [
            ('username', None, username),
            ('department', None, department),
            ('legacy_role', None, legacy_role),
        ]
        return self._log(
            AuditEntityType.USER, user_id, AuditAction.CREATE, performed_by, changes,
            f"Created user account {username}", **origin
        )

    def log_user_activation(self, user_id: str, performed_by: str, **origin) -> MutationAuditEntry:
        return self._log(
            AuditEntityType.USER, user_id, AuditAction.UPDATE, performed_by,
            [('is_active', False, True)], f"Activated user account {user_id}", **origin
        )

    def log_user_deactivation(
        self,
        user_id: str,
        performed_by: str,
        reason: Optional[str] = None,
        **origin
    ) -> MutationAuditEntry:
        return self._log(
            AuditEntityType.USER, user_id, AuditAction.UPDATE, performed_by,
            [('is_active', True, False)], reason or f"Deactivated user account {user_id}", **origin
        )

    def log_user_lock(self, user_id: str, performed_by: str, reason: str, **origin) -> MutationAuditEntry:
        changes = [
            ('is_locked', False, True),
            ('locked_at', None, utcnow()),
            ('locked_reason', None, reason),
        ]
        return self._log(
            AuditEntityType.USER, user_id, AuditAction.UPDATE, performed_by, changes,
            f"Locked user account {user_id}: {reason}", **origin
        )

    # ---- configuration and security --------------------------------------

    def log_configuration_change(
        self,
        config_key: str,
        old_value: Any,
        new_value: Any,
        performed_by: str,
        reason: Optional[str] = None,
        **origin
    ) -> MutationAuditEntry:
        return self._log(
            AuditEntityType.CONFIG, f"config-{config_key}", AuditAction.UPDATE, performed_by,
            [(config_key, old_value, new_value)], reason or f"Changed system configuration: {config_key}",
            **origin
        )

    def log_security_violation(
        self,
        user_id: str,
        violation_type: str,
        details: str,
        severity: Severity = Severity.MEDIUM,
        **origin
    ) -> MutationAuditEntry:
        """
        Record a security-relevant event. Severity is the caller's call.
        """
        severity = Severity(severity)
        changes = [
            ('violation_type', None, violation_type),
            ('severity', None, severity),
            ('details', None, details),
            ('user_id', None, user_id),
        ]
        return self._log(
            AuditEntityType.SECURITY_EVENT, f"security-{uuid.uuid4().hex[:12]}", AuditAction.UPDATE,
            SYSTEM_PERFORMER, changes, f"Security violation: {violation_type} - {details}",
            severity=severity, **origin
        )

    # ---- queries ---------------------------------------------------------

    def recent(self, limit: int = 100) -> List[MutationAuditEntry]:
        """Most recent entries, newest first."""
        return self._newest_first(self.entries(), limit)

    def by_performer(self, performed_by: str, limit: int = 50) -> List[MutationAuditEntry]:
        return self._newest_first((e for e in self.entries() if e.performed_by == performed_by), limit)

    def by_entity(
        self,
        entity_type: AuditEntityType,
        entity_id: Optional[str] = None,
        limit: int = 50
    ) -> List[MutationAuditEntry]:
        """Entries for an entity type, optionally one entity, newest first."""
        entity_type = AuditEntityType(entity_type)
        return self._newest_first(
            (e for e in self.entries()
             if e.entity_type == entity_type and (entity_id is None or e.entity_id == entity_id)),
            limit
        )

    def security_events(self, limit: int = 50) -> List[MutationAuditEntry]:
        """Security violation entries, newest first."""
        return self.by_entity(AuditEntityType.SECURITY_EVENT, limit=limit)

    def statistics(self, top_n: int = 10) -> Dict[str, Any]:
        """
        Statistics over the retained window.

        Returns:
            Statistics dictionary with totals, top performers and actions
        """
        entries = self.entries()
        cutoff = utcnow() - timedelta(hours=24)
        return {
            'total_entries': len(entries),
            'last_24h': sum(1 for e in entries if e.timestamp >= cutoff),
            'top_performers': _top(Counter(e.performed_by for e in entries), top_n, 'performed_by'),
            'top_actions': _top(Counter(e.action.value for e in entries), top_n, 'action'),
            'security_violations': sum(1 for e in entries if e.entity_type == AuditEntityType.SECURITY_EVENT),
            'failed_appends': self.failed_appends
        }

    def export(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> str:
        """
        Export the retained window, or a date-bounded slice of it, as JSON.

        The document carries ``export_date``, ``total_entries`` and the full
        ``entries`` oldest first.
        """
        entries = self.by_date_range(start, end)
        return json.dumps({
            'export_date': utcnow().isoformat(),
            'total_entries': len(entries),
            'entries': [e.to_dict() for e in entries]
        }, indent=2, ensure_ascii=False, default=str)

    def verify_chain(self) -> List[str]:
        """
        Re-check the hash chain of the durable entries.

        Returns:
            Ids of entries whose stored hash or backward link does not match,
            oldest first; empty if the chain is intact
        """
        with self._lock:
            with self.database.get_session() as session:
                entries = [
                    self._from_record(r)
                    for r in session.query(MutationAuditRecord).order_by(MutationAuditRecord.seq).all()
                ]

        broken = []
        previous = None
        for entry in entries:
            linked = previous is None or entry.hash_prev == previous.hash_curr
            if not linked or entry.hash_curr != compute_hash(entry.hash_prev, entry.payload()):
                broken.append(entry.id)
            previous = entry
        if broken:
            logger.warning(f"Mutation audit chain broken at {len(broken)} entries")
        return broken

    def _to_record(self, entry: MutationAuditEntry) -> MutationAuditRecord:
        return MutationAuditRecord(
            id=entry.id,
            entity_type=entry.entity_type.value,
            entity_id=entry.entity_id,
            action=entry.action.value,
            performed_by=entry.performed_by,
            changes=json.dumps([list(c) for c in entry.changes], ensure_ascii=False, default=str),
            reason=entry.reason,
            severity=entry.severity.value if entry.severity else None,
            timestamp=entry.timestamp,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            hash_prev=entry.hash_prev,
            hash_curr=entry.hash_curr
        )

    def _from_record(self, record: MutationAuditRecord) -> MutationAuditEntry:
        changes = json.loads(record.changes) if record.changes else []
        return MutationAuditEntry(
            id=record.id,
            entity_type=AuditEntityType(record.entity_type),
            entity_id=record.entity_id,
            action=AuditAction(record.action),
            performed_by=record.performed_by,
            changes=tuple(FieldChange(*c) for c in changes),
            reason=record.reason or "",
            timestamp=record.timestamp,
            severity=Severity(record.severity) if record.severity else None,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            hash_prev=record.hash_prev or "",
            hash_curr=record.hash_curr
        )

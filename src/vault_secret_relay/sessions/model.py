"""Session state for one secret-collection request.

``Session`` is the mutable record owned by the engine's store; it is never
handed to callers.  Callers receive ``SessionSnapshot``, a frozen copy taken
under the session lock, so nothing outside the engine can mutate the pending
set or the audit log.
"""

from __future__ import annotations

import dataclasses
import datetime
import enum
import threading
import types
from typing import Iterable, Mapping

from vault_secret_relay.sessions.context import SessionContext


class SessionStatus(str, enum.Enum):
    AWAITING_INPUT = "awaiting_input"
    COMPLETED = "completed"


class KeyStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class AuditAction(str, enum.Enum):
    SECRET_SUBMITTED = "secret_submitted"
    ALL_SECRETS_COMPLETED = "all_secrets_completed"


@dataclasses.dataclass(frozen=True)
class CompletedEntry:
    """Who completed a key and when.  The value itself is never kept."""

    key: str
    submitted_by: str
    timestamp: datetime.datetime


@dataclasses.dataclass(frozen=True)
class AuditRecord:
    action: AuditAction
    timestamp: datetime.datetime
    key: str | None = None
    submitted_by: str | None = None
    remaining_pending: int | None = None

    def to_dict(self) -> dict[str, object]:
        record: dict[str, object] = {
            "action": self.action.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.action is AuditAction.SECRET_SUBMITTED:
            record.update(
                key=self.key,
                submittedBy=self.submitted_by,
                remainingPending=self.remaining_pending,
            )
        else:
            record["completedBy"] = self.submitted_by
        return record


def parse_key_list(raw: str | Iterable[str] | None) -> tuple[str, ...]:
    """Split a comma-separated key list into unique, stripped, non-empty names.

    Order of first occurrence is preserved.  An iterable of names is accepted
    as well and goes through the same cleanup.
    """
    if raw is None:
        return ()
    parts = raw.split(",") if isinstance(raw, str) else raw
    return tuple(dict.fromkeys(p.strip() for p in parts if p and p.strip()))


@dataclasses.dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of a session at one point in time.

    Attributes:
        session_id:                Opaque unique identifier.
        context:                   Registration context.
        pending_keys:              Keys still awaiting a value, in request order.
        completed_entries:         Completed keys, in completion order.
        key_status:                Key name to ``KeyStatus``.
        audit_log:                 Every recorded action, oldest first.
        encryption_key:            Session key material for value encryption.
        keys_requiring_encryption: Keys whose values are encrypted before storage.
        created_at:                UTC creation time.
    """

    session_id: str
    context: SessionContext
    pending_keys: tuple[str, ...]
    completed_entries: tuple[CompletedEntry, ...]
    key_status: Mapping[str, KeyStatus]
    audit_log: tuple[AuditRecord, ...]
    encryption_key: str = dataclasses.field(repr=False)
    keys_requiring_encryption: frozenset[str]
    created_at: datetime.datetime

    @property
    def overall_status(self) -> SessionStatus:
        return SessionStatus.COMPLETED if not self.pending_keys else SessionStatus.AWAITING_INPUT

    @property
    def total_keys(self) -> int:
        return len(self.pending_keys) + len(self.completed_entries)


class Session:
    """Mutable session record.  Only the engine touches it, under ``lock``."""

    def __init__(
        self,
        session_id: str,
        context: SessionContext,
        pending_keys: tuple[str, ...],
        encryption_key: str,
        keys_requiring_encryption: frozenset[str],
        created_at: datetime.datetime,
    ) -> None:
        self.session_id = session_id
        self.context = context
        self.encryption_key = encryption_key
        self.keys_requiring_encryption = keys_requiring_encryption
        self.created_at = created_at
        self.lock = threading.Lock()

        self._pending: list[str] = list(pending_keys)
        self._completed: list[CompletedEntry] = []
        self._key_status: dict[str, KeyStatus] = {k: KeyStatus.PENDING for k in pending_keys}
        self._audit: list[AuditRecord] = []

    @property
    def overall_status(self) -> SessionStatus:
        return SessionStatus.COMPLETED if not self._pending else SessionStatus.AWAITING_INPUT

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def completed_count(self) -> int:
        return len(self._completed)

    def knows(self, key: str) -> bool:
        return key in self._key_status

    def is_pending(self, key: str) -> bool:
        return self._key_status.get(key) is KeyStatus.PENDING

    def complete(self, key: str, submitted_by: str, now: datetime.datetime) -> bool:
        """Move *key* from pending to completed.  Caller holds ``lock``.

        Returns ``True`` when this call emptied the pending set.
        """
        self._pending.remove(key)
        self._completed.append(CompletedEntry(key=key, submitted_by=submitted_by, timestamp=now))
        self._key_status[key] = KeyStatus.COMPLETED
        self._audit.append(
            AuditRecord(
                action=AuditAction.SECRET_SUBMITTED,
                timestamp=now,
                key=key,
                submitted_by=submitted_by,
                remaining_pending=len(self._pending),
            )
        )
        if self._pending:
            return False
        self._audit.append(
            AuditRecord(action=AuditAction.ALL_SECRETS_COMPLETED, timestamp=now, submitted_by=submitted_by)
        )
        return True

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.session_id,
            context=self.context,
            pending_keys=tuple(self._pending),
            completed_entries=tuple(self._completed),
            key_status=types.MappingProxyType(dict(self._key_status)),
            audit_log=tuple(self._audit),
            encryption_key=self.encryption_key,
            keys_requiring_encryption=self.keys_requiring_encryption,
            created_at=self.created_at,
        )

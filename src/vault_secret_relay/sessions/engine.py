"""Session state machine for secret collection.

Pattern: Owned Store, Per-Session Lock
---------------------------------------
All sessions live in a ``SessionStore`` owned by the engine.  The store keeps
two indices, by session id and by workflow run id, and updates both under
one store lock so they always agree.  Callers never see the store or a mutable
``Session``; every engine method returns a ``SessionSnapshot``.

A submission mutates four things together: the pending list, the completed
entries, the per-key status and the audit log.  That transition runs under the
session's own lock, which is held only for the in-memory update and never
across network I/O.  Exactly one submission can observe the pending set going
empty, and only that one reports ``completed_now``.  The downstream dispatch
keys off that flag, never off a later status check.

Expiry: sessions are never removed implicitly.  ``purge_session`` and
``purge_completed`` are the only ways out of the store.
"""

from __future__ import annotations

import dataclasses
import datetime
import logging
import secrets
import string
import threading
import time
from typing import Callable, Iterable

from vault_secret_relay.errors import AlreadyProcessed, InvalidInput, NotFound
from vault_secret_relay.sessions.context import SessionContext
from vault_secret_relay.sessions.model import (
    Session,
    SessionSnapshot,
    SessionStatus,
    parse_key_list,
)

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.digits + string.ascii_lowercase


def generate_session_id() -> str:
    """Return ``sess-<unix ms>-<9 random base36 chars>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"sess-{int(time.time() * 1000)}-{suffix}"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


@dataclasses.dataclass(frozen=True)
class SubmitOutcome:
    """Result of one accepted submission.

    ``completed_now`` is true only for the submission that emptied the
    pending set.
    """

    session: SessionSnapshot
    completed_now: bool


@dataclasses.dataclass(frozen=True)
class PurgeResult:
    purged_count: int
    remaining: int
    purged_session_ids: tuple[str, ...] = ()


@dataclasses.dataclass(frozen=True)
class SessionStats:
    total: int
    awaiting_input: int
    completed: int
    total_pending_secrets: int
    total_completed_secrets: int


class SessionStore:
    """In-memory session storage with a run-id side index."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_id: dict[str, Session] = {}
        self._by_run_id: dict[str, str] = {}

    def add(self, session: Session) -> None:
        run_id = session.context.run_id
        with self._lock:
            if session.session_id in self._by_id:
                raise InvalidInput(f"Duplicate session id {session.session_id}")
            self._by_id[session.session_id] = session
            previous = self._by_run_id.get(run_id)
            self._by_run_id[run_id] = session.session_id
        if previous is not None:
            logger.warning(
                "Run %s re-registered: run id now maps to %s (was %s)",
                run_id, session.session_id, previous,
            )

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._by_id.get(session_id)

    def get_by_run_id(self, run_id: str) -> Session | None:
        with self._lock:
            session_id = self._by_run_id.get(run_id)
            return self._by_id.get(session_id) if session_id is not None else None

    def remove(self, session_id: str) -> Session | None:
        with self._lock:
            return self._remove_locked(session_id)

    def remove_where(self, predicate: Callable[[Session], bool]) -> tuple[list[Session], int]:
        """Remove every session matching *predicate*; return them and the remaining count."""
        with self._lock:
            doomed = [s for s in self._by_id.values() if predicate(s)]
            for session in doomed:
                self._remove_locked(session.session_id)
            return doomed, len(self._by_id)

    def values(self) -> list[Session]:
        with self._lock:
            return list(self._by_id.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)

    def _remove_locked(self, session_id: str) -> Session | None:
        session = self._by_id.pop(session_id, None)
        if session is None:
            return None
        run_id = session.context.run_id
        if self._by_run_id.get(run_id) == session_id:
            del self._by_run_id[run_id]
        return session


class SessionEngine:
    """Creates, advances, queries and purges collection sessions."""

    def __init__(
        self,
        store: SessionStore | None = None,
        clock: Callable[[], datetime.datetime] = _utcnow,
        id_factory: Callable[[], str] = generate_session_id,
    ) -> None:
        self._store = store if store is not None else SessionStore()
        self._clock = clock
        self._id_factory = id_factory

    # -- lifecycle -----------------------------------------------------------

    def create_session(
        self,
        context: SessionContext,
        pending_key_list: str | Iterable[str],
        encryption_key: str,
        keys_requiring_encryption: str | Iterable[str] = (),
    ) -> SessionSnapshot:
        """Register a new session.

        Raises ``InvalidInput`` if the run id is missing or the key list is
        empty after cleanup.
        """
        if not context.run_id:
            raise InvalidInput("Missing required field: workflow.run_id")
        pending = parse_key_list(pending_key_list)
        if not pending:
            raise InvalidInput("Missing required field: secrets_needs_input")

        session = Session(
            session_id=self._id_factory(),
            context=context,
            pending_keys=pending,
            encryption_key=encryption_key,
            keys_requiring_encryption=frozenset(parse_key_list(keys_requiring_encryption)),
            created_at=self._clock(),
        )
        self._store.add(session)
        logger.info(
            "Created session %s for run %s with %d pending secrets: %s",
            session.session_id, context.run_id, len(pending), ", ".join(pending),
        )
        with session.lock:
            return session.snapshot()

    def purge_session(self, session_id: str) -> bool:
        """Remove one session from every index.  Returns ``False`` if absent."""
        session = self._store.remove(session_id)
        if session is None:
            logger.info("Session %s not found for purge", session_id)
            return False
        logger.info("Purged session %s (run %s)", session_id, session.context.run_id)
        return True

    def purge_completed(self) -> PurgeResult:
        """Remove every completed session."""
        purged, remaining = self._store.remove_where(
            lambda s: s.overall_status is SessionStatus.COMPLETED
        )
        ids = tuple(s.session_id for s in purged)
        logger.info("Purged %d completed sessions; %d remaining", len(ids), remaining)
        return PurgeResult(purged_count=len(ids), remaining=remaining, purged_session_ids=ids)

    # -- queries -------------------------------------------------------------

    def get_session(self, session_id: str) -> SessionSnapshot:
        session = self._require(session_id)
        with session.lock:
            return session.snapshot()

    def find_session_by_run_id(self, run_id: str) -> SessionSnapshot:
        session = self._store.get_by_run_id(run_id)
        if session is None:
            raise NotFound(f"Session not found for workflow run {run_id}")
        with session.lock:
            return session.snapshot()

    def list_sessions(self) -> list[SessionSnapshot]:
        snapshots = []
        for session in self._store.values():
            with session.lock:
                snapshots.append(session.snapshot())
        return snapshots

    def stats(self) -> SessionStats:
        total = awaiting = completed = pending_secrets = completed_secrets = 0
        for session in self._store.values():
            with session.lock:
                total += 1
                if session.overall_status is SessionStatus.COMPLETED:
                    completed += 1
                else:
                    awaiting += 1
                pending_secrets += session.pending_count
                completed_secrets += session.completed_count
        return SessionStats(
            total=total,
            awaiting_input=awaiting,
            completed=completed,
            total_pending_secrets=pending_secrets,
            total_completed_secrets=completed_secrets,
        )

    # -- transitions ---------------------------------------------------------

    def ensure_pending(self, session_id: str, key: str) -> SessionSnapshot:
        """Return a snapshot if *key* is still pending, else raise.

        Raises ``NotFound`` for an unknown session or a key the session never
        requested, and ``AlreadyProcessed`` for a completed key.
        """
        session = self._require(session_id)
        with session.lock:
            self._check_pending(session, key)
            return session.snapshot()

    def submit_secret(self, session_id: str, key: str, submitted_by: str) -> SubmitOutcome:
        """Record that *submitted_by* supplied *key*.

        The check and the transition happen under one hold of the session
        lock; a failed check leaves the session untouched.
        """
        session = self._require(session_id)
        with session.lock:
            self._check_pending(session, key)
            completed_now = session.complete(key, submitted_by, self._clock())
            snapshot = session.snapshot()

        logger.info(
            "Session %s: %r submitted by %s, %d pending",
            session_id, key, submitted_by, len(snapshot.pending_keys),
        )
        if completed_now:
            logger.info("All secrets completed for session %s", session_id)
        return SubmitOutcome(session=snapshot, completed_now=completed_now)

    # -- private helpers -----------------------------------------------------

    def _require(self, session_id: str) -> Session:
        session = self._store.get(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found")
        return session

    @staticmethod
    def _check_pending(session: Session, key: str) -> None:
        if not session.knows(key):
            raise NotFound(f"Key {key!r} is not part of session {session.session_id}")
        if not session.is_pending(key):
            raise AlreadyProcessed(f"Key {key!r} already processed")

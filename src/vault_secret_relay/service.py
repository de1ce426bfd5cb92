"""Secret-collection service: wires the engine to its collaborators.

Pattern: Facade
----------------
The HTTP layer talks to one object.  Each operation is a short sequence of
steps across the components:

  register  1. Parse the pipeline payload into a ``SessionContext``.
            2. Reject a Vault location that no submission could write to.
            3. Settle the session encryption key.
            4. Create the session in the engine.

  submit    1. Check the key is still pending (no lock kept).
            2. Verify the caller's team membership for the key.
            3. Process the value (derive, encrypt or pass through).
            4. Merge it into the backing store.
            5. Record the transition in the engine.

Steps 2 to 4 make network calls and run without any session lock.  Only
step 5 changes session state, so a failure in 1 to 4 leaves the session as it
was.  The caller runs ``notify_completion`` for the one submission whose
result has ``all_completed`` set, in the background.
"""

from __future__ import annotations

import dataclasses
import logging
import urllib.parse
from typing import Any, Mapping

from vault_secret_relay.auth.identity import UserIdentity
from vault_secret_relay.config import Settings
from vault_secret_relay.crypto.value_policy import PolicyContext, ValuePolicy, resolve_encryption_key
from vault_secret_relay.dispatch.trigger import DownstreamTrigger, TriggerResult
from vault_secret_relay.errors import Forbidden, InvalidInput, StoreUnavailable, UpstreamDispatchFailed
from vault_secret_relay.policy.team_access import TeamAccessResolver
from vault_secret_relay.sessions.context import SessionContext
from vault_secret_relay.sessions.engine import PurgeResult, SessionEngine, SessionStats
from vault_secret_relay.sessions.model import SessionSnapshot
from vault_secret_relay.vault.store import VaultLocation, VaultStoreClient

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class Registration:
    session: SessionSnapshot
    approval_url: str


@dataclasses.dataclass(frozen=True)
class SessionView:
    """A session as one user sees it: only the pending keys they may supply."""

    session: SessionSnapshot
    authorized_keys: tuple[str, ...]


@dataclasses.dataclass(frozen=True)
class SubmissionResult:
    key: str
    session: SessionSnapshot
    all_completed: bool


class SecretCollectionService:
    """Registers sessions, serves filtered views and accepts submissions."""

    def __init__(
        self,
        engine: SessionEngine,
        access: TeamAccessResolver,
        store: VaultStoreClient,
        value_policy: ValuePolicy,
        trigger: DownstreamTrigger,
        settings: Settings,
    ) -> None:
        self.engine = engine
        self._access = access
        self._store = store
        self._value_policy = value_policy
        self._trigger = trigger
        self._settings = settings

    # -- pipeline side -------------------------------------------------------

    def register(self, metadata: Mapping[str, Any]) -> Registration:
        if not isinstance(metadata, Mapping):
            raise InvalidInput("Registration payload must be a JSON object")

        context = SessionContext.from_metadata(metadata)
        if context.store_location:
            VaultLocation.parse(context.store_location)
        inputs = metadata.get("inputs") if isinstance(metadata.get("inputs"), Mapping) else {}

        encryption_key = str(metadata.get("encryption_key") or "").strip()
        if not encryption_key:
            encryption_key = self._default_encryption_key(context)

        snapshot = self.engine.create_session(
            context,
            metadata.get("secrets_needs_input"),
            encryption_key,
            inputs.get("listOfKeysToBeEncrypted") or (),
        )
        approval_url = str(metadata.get("approval_url") or "") or self._approval_url(context)
        return Registration(session=snapshot, approval_url=approval_url)

    def purge(self, session_id: str) -> bool:
        return self.engine.purge_session(session_id)

    def purge_completed(self) -> PurgeResult:
        return self.engine.purge_completed()

    # -- user side -----------------------------------------------------------

    def view(self, session_id: str, user: UserIdentity) -> SessionView:
        """Return the session with pending keys filtered to what *user* may supply.

        Raises ``Forbidden`` when keys are pending but none are authorized.
        """
        snapshot = self.engine.get_session(session_id)
        authorized = self._access.filter_authorized(user, snapshot.pending_keys, snapshot.context)
        if snapshot.pending_keys and not authorized:
            raise Forbidden(
                "You do not have permission to provide any of the pending secrets",
                pendingCount=len(snapshot.pending_keys),
                authorizedCount=0,
            )
        return SessionView(session=snapshot, authorized_keys=tuple(authorized))

    def session_id_for_run(self, run_id: str) -> str:
        return self.engine.find_session_by_run_id(run_id).session_id

    def submit(self, session_id: str, key: str, value: str, user: UserIdentity) -> SubmissionResult:
        if not key or not value:
            raise InvalidInput("Missing key or value")

        snapshot = self.engine.ensure_pending(session_id, key)
        context = snapshot.context

        if not self._access.verify_access(user, key, context):
            raise Forbidden(f"You do not have permission to update secret {key!r}", key=key)

        processed = self._value_policy.process_value(key, value, PolicyContext.for_session(snapshot))

        if not context.store_location or not context.store_credential:
            raise StoreUnavailable(f"Vault configuration missing for session {session_id}")
        self._store.update_single_key(context.store_location, context.store_credential, key, processed)

        outcome = self.engine.submit_secret(session_id, key, user.username)
        return SubmissionResult(key=key, session=outcome.session, all_completed=outcome.completed_now)

    def list_sessions(self) -> list[SessionSnapshot]:
        return self.engine.list_sessions()

    def stats(self) -> SessionStats:
        return self.engine.stats()

    # -- completion ----------------------------------------------------------

    def notify_completion(self, session: SessionSnapshot) -> TriggerResult | None:
        """Fire the downstream dispatch for a just-completed session.

        Runs after the response is sent, so a dispatch failure is logged and
        returned as ``None`` rather than raised.
        """
        try:
            result = self._trigger.fire(session)
        except UpstreamDispatchFailed as exc:
            logger.error(
                "Downstream dispatch failed for session %s: %s (status=%s)",
                session.session_id, exc, exc.status,
            )
            return None

        if result.ok and not result.skipped and self._settings.dispatch.purge_after_dispatch:
            self.engine.purge_session(session.session_id)
        return result

    # -- private helpers -----------------------------------------------------

    def _default_encryption_key(self, context: SessionContext) -> str:
        default_key = self._settings.encryption.default_key
        if not context.store_location or not context.store_credential:
            return default_key
        return resolve_encryption_key(
            self._store,
            context.store_location,
            context.store_credential,
            default_key,
            context.namespace,
            key_name=self._settings.encryption.encryption_key_name,
        )

    def _approval_url(self, context: SessionContext) -> str:
        query = urllib.parse.urlencode({"msname": context.microservice, "workflow_run_id": context.run_id})
        return f"{self._settings.server.form_url}?{query}"

"""One-shot notification of the downstream workflow after a session completes.

The target workflow depends on the session's build environment (see
``dispatch.workflows`` in ``config/settings.yaml``).  An environment with no
configured workflow is skipped, which is not an error.  Otherwise a single
``workflow_dispatch`` is sent with one string input, ``payload``: the session
context (credentials removed), the completion time, the secret counts and the
audit trail, JSON-encoded.

The dispatch runs with a privileged token, never the submitting user's token.
The token comes from the session context, else from ``GH_DISPATCH_TOKEN``.

``fire`` does not decide *when* to run.  The caller invokes it once, for the
submission the engine reported as ``completed_now``.  A failed dispatch
raises ``UpstreamDispatchFailed`` and leaves the session completed.
"""

from __future__ import annotations

import dataclasses
import datetime
import json
import logging
from typing import Any, Callable

import httpx

from vault_secret_relay.config import DispatchSettings
from vault_secret_relay.errors import UpstreamDispatchFailed
from vault_secret_relay.github.client import GitHubClient
from vault_secret_relay.sessions.model import SessionSnapshot, SessionStatus

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class TriggerResult:
    ok: bool
    skipped: bool = False
    reason: str = ""
    workflow: str | None = None
    status: int | None = None


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class DownstreamTrigger:
    """Dispatches the downstream workflow for a completed session."""

    def __init__(
        self,
        github: GitHubClient,
        settings: DispatchSettings,
        fallback_credential: str = "",
        clock: Callable[[], datetime.datetime] = _utcnow,
    ) -> None:
        self._github = github
        self._settings = settings
        self._fallback_credential = fallback_credential
        self._clock = clock

    def workflow_for(self, build_env: str) -> str | None:
        return self._settings.workflows.get(build_env.lower())

    def build_payload(self, session: SessionSnapshot, completed_at: datetime.datetime) -> dict[str, Any]:
        payload = session.context.public_metadata()
        payload.update(
            status=SessionStatus.COMPLETED.value,
            completedAt=completed_at.isoformat(),
            secrets_stats={
                "total": session.total_keys,
                "completed": len(session.completed_entries),
                "pending": len(session.pending_keys),
            },
            audit=[record.to_dict() for record in session.audit_log],
        )
        return payload

    def fire(self, session: SessionSnapshot) -> TriggerResult:
        """Send the dispatch for *session*, or skip it for unmapped environments."""
        build_env = session.context.build_env
        if session.overall_status is not SessionStatus.COMPLETED:
            reason = f"Session {session.session_id} still has pending secrets"
            logger.warning("Not dispatching: %s", reason)
            return TriggerResult(ok=True, skipped=True, reason=reason)

        workflow = self.workflow_for(build_env)
        if workflow is None:
            reason = f"No downstream workflow configured for build_env={build_env}"
            logger.info("Skipping dispatch for session %s: %s", session.session_id, reason)
            return TriggerResult(ok=True, skipped=True, reason=reason)

        owner, repo, ref = self._settings.owner, self._settings.repository, self._settings.ref
        if not owner or not repo:
            raise UpstreamDispatchFailed(
                f"Missing workflow information: owner={owner!r}, repository={repo!r}"
            )
        credential = session.context.dispatch_credential or self._fallback_credential
        if not credential:
            raise UpstreamDispatchFailed("No dispatch credential available")

        payload = self.build_payload(session, self._clock())
        logger.info(
            "Dispatching %s/%s workflow %s@%s for session %s",
            owner, repo, workflow, ref, session.session_id,
        )
        # OSError covers an unreadable CA bundle or a bad TLS setup.
        try:
            response = self._github.dispatch_workflow(
                credential=credential,
                owner=owner,
                repo=repo,
                workflow_file=workflow,
                ref=ref,
                inputs={"payload": json.dumps(payload)},
            )
        except (httpx.HTTPError, OSError) as exc:
            raise UpstreamDispatchFailed(f"Workflow dispatch request failed: {exc}") from exc

        if not response.is_success:
            raise UpstreamDispatchFailed(
                f"Workflow dispatch failed: {response.status_code}",
                status=response.status_code,
                body=response.text,
            )

        logger.info(
            "Dispatched downstream workflow for session %s (status %s)",
            session.session_id, response.status_code,
        )
        return TriggerResult(ok=True, workflow=workflow, status=response.status_code)

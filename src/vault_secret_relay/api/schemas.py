"""Request models and response shapes for the HTTP API.

Response bodies use the camelCase field names the form and the pipeline
already consume, so they are built as plain dicts here rather than echoed
from internal types.  Nothing in this module emits a credential.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from vault_secret_relay.service import Registration, SessionView, SubmissionResult
from vault_secret_relay.sessions.engine import PurgeResult, SessionStats
from vault_secret_relay.sessions.model import CompletedEntry, SessionSnapshot


class SecretSubmission(BaseModel):
    """Body of ``POST /api/sessions/{id}/secrets``.

    Both fields are optional at the schema level so a missing one surfaces
    as the service's own ``invalid_input`` error instead of a 422.
    """

    key: str | None = None
    value: str | None = None


def _completed(entry: CompletedEntry) -> dict[str, Any]:
    return {
        "key": entry.key,
        "timestamp": entry.timestamp.isoformat(),
        "submittedBy": entry.submitted_by,
    }


def registration_response(registration: Registration) -> dict[str, Any]:
    return {
        "sessionId": registration.session.session_id,
        "approvalUrl": registration.approval_url,
        "status": "created",
        "pendingSecrets": len(registration.session.pending_keys),
    }


def session_view_response(view: SessionView) -> dict[str, Any]:
    session = view.session
    context = session.context
    return {
        "sessionId": session.session_id,
        "metadata": {
            "MSName": context.microservice,
            "buildEnv": context.build_env,
            "releaseVersion": context.release_version,
        },
        "secrets": {
            "pending": list(view.authorized_keys),
            "completed": [_completed(entry) for entry in session.completed_entries],
            "status": {key: status.value for key, status in session.key_status.items()},
        },
        "status": session.overall_status.value,
    }


def submission_response(result: SubmissionResult) -> dict[str, Any]:
    return {
        "ok": True,
        "key": result.key,
        "status": "updated",
        "pendingKeys": list(result.session.pending_keys),
        "allCompleted": result.all_completed,
    }


def session_summary(session: SessionSnapshot) -> dict[str, Any]:
    return {
        "sessionId": session.session_id,
        "workflowRunId": session.context.run_id,
        "status": session.overall_status.value,
        "pendingCount": len(session.pending_keys),
        "completedCount": len(session.completed_entries),
        "createdAt": session.created_at.isoformat(),
        "MSName": session.context.microservice,
    }


def stats_response(stats: SessionStats) -> dict[str, int]:
    return {
        "total": stats.total,
        "awaitingInput": stats.awaiting_input,
        "completed": stats.completed,
        "totalPendingSecrets": stats.total_pending_secrets,
        "totalCompletedSecrets": stats.total_completed_secrets,
    }


def purge_response(result: PurgeResult) -> dict[str, Any]:
    return {
        "purged": result.purged_count,
        "remaining": result.remaining,
        "purgedSessionIds": list(result.purged_session_ids),
    }

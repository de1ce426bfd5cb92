"""FastAPI application exposing the secret-collection service.

Two kinds of caller:

  - The pipeline, authenticated by a shared bearer token, registers and
    purges sessions.
  - Users, authenticated by a signed session token (cookie, or bearer header
    as a fallback), read sessions and submit values.

Handlers are plain ``def`` functions; FastAPI runs them in its thread pool,
so the blocking Vault and GitHub calls inside the service never hold up the
event loop.  The downstream dispatch runs as a background task after the
submission response has been sent.
"""

from __future__ import annotations

import datetime
import logging
from typing import Any

from fastapi import BackgroundTasks, Body, Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse

from vault_secret_relay.api import schemas
from vault_secret_relay.auth.identity import UserIdentity
from vault_secret_relay.auth.token_verifier import SessionTokenVerifier, bearer_token, verify_pipeline_token
from vault_secret_relay.config import AuthSettings
from vault_secret_relay.errors import SecretRelayError
from vault_secret_relay.service import SecretCollectionService

logger = logging.getLogger(__name__)

_STATUS_BY_KIND: dict[str, int] = {
    "invalid_input": 400,
    "unauthorized": 401,
    "forbidden": 403,
    "not_found": 404,
    "already_processed": 409,
    "store_unavailable": 502,
    "upstream_dispatch_failed": 502,
}


def status_for(exc: SecretRelayError) -> int:
    return _STATUS_BY_KIND.get(exc.kind, 500)


def create_app(
    service: SecretCollectionService,
    verifier: SessionTokenVerifier,
    auth: AuthSettings,
) -> FastAPI:
    app = FastAPI(title="Vault Secret Relay", version="0.1.0")

    @app.exception_handler(SecretRelayError)
    async def handle_relay_error(request: Request, exc: SecretRelayError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        else:
            logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.kind, exc)
        return JSONResponse(
            status_code=status,
            content={"error": exc.kind, "message": str(exc), **exc.details},
        )

    def require_pipeline(authorization: str | None = Header(default=None)) -> None:
        verify_pipeline_token(authorization, auth.pipeline_token)

    def require_user(request: Request, authorization: str | None = Header(default=None)) -> UserIdentity:
        token = request.cookies.get(auth.cookie_name) or bearer_token(authorization)
        return verifier.verify(token)

    pipeline = Depends(require_pipeline)
    user_dep = Depends(require_user)

    # -- pipeline routes -----------------------------------------------------

    @app.post("/api/sessions", dependencies=[pipeline])
    def register_session(metadata: Any = Body(default=None)) -> dict[str, Any]:
        registration = service.register(metadata)
        logger.info(
            "Registered session %s for run %s; approval URL %s",
            registration.session.session_id,
            registration.session.context.run_id,
            registration.approval_url,
        )
        return schemas.registration_response(registration)

    @app.post("/api/sessions/purge-completed", dependencies=[pipeline])
    def purge_completed() -> dict[str, Any]:
        return schemas.purge_response(service.purge_completed())

    @app.delete("/api/sessions/{session_id}", dependencies=[pipeline])
    def purge_session(session_id: str) -> dict[str, bool]:
        return {"purged": service.purge(session_id)}

    # -- user routes ---------------------------------------------------------

    @app.get("/api/sessions/stats")
    def session_stats(user: UserIdentity = user_dep) -> dict[str, int]:
        logger.info("Session stats requested by %s", user.username)
        return schemas.stats_response(service.stats())

    @app.get("/api/sessions/by-run-id/{run_id}")
    def session_by_run_id(run_id: str, user: UserIdentity = user_dep) -> dict[str, str]:
        logger.info("User %s looking up session for run %s", user.username, run_id)
        return {"sessionId": service.session_id_for_run(run_id), "workflowRunId": run_id}

    @app.get("/api/sessions")
    def list_sessions(user: UserIdentity = user_dep) -> list[dict[str, Any]]:
        logger.info("All sessions requested by %s", user.username)
        return [schemas.session_summary(s) for s in service.list_sessions()]

    @app.get("/api/sessions/{session_id}")
    def get_session(session_id: str, user: UserIdentity = user_dep) -> dict[str, Any]:
        return schemas.session_view_response(service.view(session_id, user))

    @app.post("/api/sessions/{session_id}/secrets")
    def submit_secret(
        session_id: str,
        submission: schemas.SecretSubmission,
        background_tasks: BackgroundTasks,
        user: UserIdentity = user_dep,
    ) -> dict[str, Any]:
        result = service.submit(session_id, submission.key or "", submission.value or "", user)
        if result.all_completed:
            logger.info("Session %s complete; scheduling downstream dispatch", session_id)
            background_tasks.add_task(service.notify_completion, result.session)
        return schemas.submission_response(result)

    # -- health --------------------------------------------------------------

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "OK",
            "timestamp": datetime.datetime.now(datetime.UTC).isoformat(),
            "stats": schemas.stats_response(service.stats()),
        }

    return app

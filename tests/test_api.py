"""Tests for the HTTP surface, through FastAPI's TestClient."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from conftest import FakeOracle, registration
from vault_secret_relay.api.app import create_app
from vault_secret_relay.auth.token_verifier import SessionTokenVerifier
from vault_secret_relay.config import AuthSettings, Settings
from vault_secret_relay.crypto.value_policy import ValuePolicy
from vault_secret_relay.dispatch.trigger import TriggerResult
from vault_secret_relay.policy.team_access import TeamAccessResolver
from vault_secret_relay.service import SecretCollectionService
from vault_secret_relay.sessions.engine import SessionEngine
from vault_secret_relay.vault.store import VaultStoreClient

PIPELINE = {"Authorization": "Bearer pipe-token"}
JWT_SECRET = "test-jwt-secret"


@pytest.fixture
def trigger() -> MagicMock:
    trigger = MagicMock()
    trigger.fire.return_value = TriggerResult(ok=True, workflow="main.yml", status=204)
    return trigger


@pytest.fixture
def store() -> MagicMock:
    return MagicMock(spec=VaultStoreClient)


@pytest.fixture
def verifier() -> SessionTokenVerifier:
    return SessionTokenVerifier(JWT_SECRET)


@pytest.fixture
def client(
    engine: SessionEngine,
    resolver: TeamAccessResolver,
    store: MagicMock,
    trigger: MagicMock,
    settings: Settings,
    verifier: SessionTokenVerifier,
) -> TestClient:
    service = SecretCollectionService(engine, resolver, store, ValuePolicy(settings.encryption), trigger, settings)
    auth = AuthSettings(pipeline_token="pipe-token", jwt_secret=JWT_SECRET)
    return TestClient(create_app(service, verifier, auth))


def _user(verifier: SessionTokenVerifier, login: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {verifier.issue(login, f'gho-{login}')}"}


def _register(client: TestClient, **overrides) -> str:
    response = client.post("/api/sessions", json=registration(**overrides), headers=PIPELINE)
    assert response.status_code == 200
    return response.json()["sessionId"]


class TestPipelineAuth:
    def test_missing_header_is_401(self, client: TestClient) -> None:
        response = client.post("/api/sessions", json=registration())
        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    def test_wrong_token_is_403(self, client: TestClient) -> None:
        response = client.post("/api/sessions", json=registration(), headers={"Authorization": "Bearer nope"})
        assert response.status_code == 403

    def test_user_token_does_not_work_for_pipeline_routes(
        self, client: TestClient, verifier: SessionTokenVerifier
    ) -> None:
        response = client.post("/api/sessions/purge-completed", headers=_user(verifier, "alice"))
        assert response.status_code == 403


class TestUserAuth:
    def test_missing_token_is_401(self, client: TestClient) -> None:
        assert client.get("/api/sessions/stats").status_code == 401

    def test_forged_token_is_401(self, client: TestClient) -> None:
        forged = SessionTokenVerifier("other-secret").issue("alice", "gho-alice")
        response = client.get("/api/sessions/stats", headers={"Authorization": f"Bearer {forged}"})
        assert response.status_code == 401

    def test_cookie_is_accepted(self, client: TestClient, verifier: SessionTokenVerifier) -> None:
        client.cookies.set("session_token", verifier.issue("alice", "gho-alice"))
        assert client.get("/api/sessions/stats").status_code == 200


class TestRegistration:
    def test_created(self, client: TestClient) -> None:
        response = client.post("/api/sessions", json=registration(), headers=PIPELINE)
        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "created"
        assert body["pendingSecrets"] == 2
        assert body["sessionId"].startswith("sess-")
        assert "workflow_run_id=12345" in body["approvalUrl"]

    def test_missing_run_id_is_400(self, client: TestClient) -> None:
        response = client.post("/api/sessions", json=registration(workflow={}), headers=PIPELINE)
        assert response.status_code == 400
        assert response.json() == {
            "error": "invalid_input",
            "message": "Missing required field: workflow.run_id",
        }

    def test_non_object_body_is_400(self, client: TestClient) -> None:
        response = client.post("/api/sessions", json=["a"], headers=PIPELINE)
        assert response.status_code == 400

    def test_malformed_vault_url_is_400(self, client: TestClient) -> None:
        metadata = registration(computed_config={"vault_url": "vault.example/secret/orders"})
        response = client.post("/api/sessions", json=metadata, headers=PIPELINE)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_input"


class TestCollectionFlow:
    def test_full_flow(
        self, client: TestClient, verifier: SessionTokenVerifier, trigger: MagicMock
    ) -> None:
        session_id = _register(client)
        alice = _user(verifier, "alice")
        carol = _user(verifier, "carol")

        lookup = client.get("/api/sessions/by-run-id/12345", headers=alice).json()
        assert lookup == {"sessionId": session_id, "workflowRunId": "12345"}

        view = client.get(f"/api/sessions/{session_id}", headers=alice).json()
        assert view["secrets"]["pending"] == ["db.password"]
        assert view["metadata"] == {"MSName": "orders-svc", "buildEnv": "dev", "releaseVersion": "1.4.0"}
        assert view["status"] == "awaiting_input"

        first = client.post(
            f"/api/sessions/{session_id}/secrets", json={"key": "db.password", "value": "pw"}, headers=alice
        ).json()
        assert first == {
            "ok": True,
            "key": "db.password",
            "status": "updated",
            "pendingKeys": ["app.api_key"],
            "allCompleted": False,
        }
        trigger.fire.assert_not_called()

        second = client.post(
            f"/api/sessions/{session_id}/secrets", json={"key": "app.api_key", "value": "k"}, headers=carol
        ).json()
        assert second["allCompleted"] is True
        trigger.fire.assert_called_once()

        final = client.get(f"/api/sessions/{session_id}", headers=alice).json()
        assert final["status"] == "completed"
        assert [c["key"] for c in final["secrets"]["completed"]] == ["db.password", "app.api_key"]
        assert final["secrets"]["completed"][1]["submittedBy"] == "carol"
        assert final["secrets"]["status"] == {"db.password": "completed", "app.api_key": "completed"}

    def test_view_with_no_authorized_keys_is_403(
        self, client: TestClient, verifier: SessionTokenVerifier
    ) -> None:
        session_id = _register(client)
        response = client.get(f"/api/sessions/{session_id}", headers=_user(verifier, "bob"))
        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "forbidden"
        assert body["pendingCount"] == 2
        assert body["authorizedCount"] == 0

    def test_unauthorized_submission_is_403(
        self, client: TestClient, verifier: SessionTokenVerifier
    ) -> None:
        session_id = _register(client)
        response = client.post(
            f"/api/sessions/{session_id}/secrets",
            json={"key": "app.api_key", "value": "k"},
            headers=_user(verifier, "alice"),
        )
        assert response.status_code == 403
        assert response.json()["key"] == "app.api_key"

    def test_resubmission_is_409(self, client: TestClient, verifier: SessionTokenVerifier) -> None:
        session_id = _register(client)
        alice = _user(verifier, "alice")
        url = f"/api/sessions/{session_id}/secrets"
        client.post(url, json={"key": "db.password", "value": "pw"}, headers=alice)
        response = client.post(url, json={"key": "db.password", "value": "pw"}, headers=alice)
        assert response.status_code == 409
        assert response.json()["error"] == "already_processed"

    def test_missing_value_is_400(self, client: TestClient, verifier: SessionTokenVerifier) -> None:
        session_id = _register(client)
        response = client.post(
            f"/api/sessions/{session_id}/secrets", json={"key": "db.password"}, headers=_user(verifier, "alice")
        )
        assert response.status_code == 400

    def test_unknown_session_is_404(self, client: TestClient, verifier: SessionTokenVerifier) -> None:
        response = client.get("/api/sessions/sess-missing", headers=_user(verifier, "alice"))
        assert response.status_code == 404

    def test_unknown_run_is_404(self, client: TestClient, verifier: SessionTokenVerifier) -> None:
        response = client.get("/api/sessions/by-run-id/999", headers=_user(verifier, "alice"))
        assert response.status_code == 404

    def test_store_failure_is_502(
        self, client: TestClient, store: MagicMock, verifier: SessionTokenVerifier
    ) -> None:
        from vault_secret_relay.errors import StoreUnavailable

        store.update_single_key.side_effect = StoreUnavailable("Vault update failed", status=503)
        session_id = _register(client)
        response = client.post(
            f"/api/sessions/{session_id}/secrets",
            json={"key": "db.password", "value": "pw"},
            headers=_user(verifier, "alice"),
        )
        assert response.status_code == 502
        assert response.json()["error"] == "store_unavailable"


class TestAdminRoutes:
    def test_stats_and_list(self, client: TestClient, verifier: SessionTokenVerifier) -> None:
        session_id = _register(client)
        alice = _user(verifier, "alice")

        stats = client.get("/api/sessions/stats", headers=alice).json()
        assert stats == {
            "total": 1,
            "awaitingInput": 1,
            "completed": 0,
            "totalPendingSecrets": 2,
            "totalCompletedSecrets": 0,
        }

        listing = client.get("/api/sessions", headers=alice).json()
        assert len(listing) == 1
        assert listing[0]["sessionId"] == session_id
        assert listing[0]["workflowRunId"] == "12345"
        assert listing[0]["pendingCount"] == 2
        assert "s.vault-token" not in str(listing)

    def test_delete_session(self, client: TestClient) -> None:
        session_id = _register(client)
        assert client.delete(f"/api/sessions/{session_id}", headers=PIPELINE).json() == {"purged": True}
        assert client.delete(f"/api/sessions/{session_id}", headers=PIPELINE).json() == {"purged": False}

    def test_purge_completed(self, client: TestClient, verifier: SessionTokenVerifier) -> None:
        done = _register(client, secrets_needs_input="db.password")
        _register(client, workflow={"run_id": "777"})
        client.post(
            f"/api/sessions/{done}/secrets",
            json={"key": "db.password", "value": "pw"},
            headers=_user(verifier, "alice"),
        )

        body = client.post("/api/sessions/purge-completed", headers=PIPELINE).json()
        assert body == {"purged": 1, "remaining": 1, "purgedSessionIds": [done]}

    def test_health_needs_no_auth(self, client: TestClient) -> None:
        body = client.get("/health").json()
        assert body["status"] == "OK"
        assert body["stats"]["total"] == 0
        assert "timestamp" in body


class TestMembershipErrors:
    def test_failing_oracle_denies_rather_than_500(
        self,
        client: TestClient,
        oracle: FakeOracle,
        verifier: SessionTokenVerifier,
    ) -> None:
        session_id = _register(client)
        oracle.error = RuntimeError("GitHub down")
        response = client.get(f"/api/sessions/{session_id}", headers=_user(verifier, "alice"))
        assert response.status_code == 403

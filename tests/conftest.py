"""Shared fixtures for tests."""

from __future__ import annotations

import copy
import datetime
import itertools
import pathlib
from typing import Any

import pytest

from vault_secret_relay.auth.identity import UserIdentity
from vault_secret_relay.config import DispatchSettings, EncryptionSettings, ServerSettings, Settings
from vault_secret_relay.policy.team_access import TeamAccessResolver
from vault_secret_relay.sessions.context import SessionContext
from vault_secret_relay.sessions.engine import SessionEngine

POLICY_PATH = pathlib.Path(__file__).resolve().parents[1] / "policies" / "secret-teams.yaml"
FIXED_NOW = datetime.datetime(2026, 3, 1, 12, 0, tzinfo=datetime.UTC)
VAULT_URL = "https://vault.example:8200/v1/secret/data/orders-svc"

REGISTRATION: dict[str, Any] = {
    "workflow": {
        "run_id": "12345",
        "owner": "Microservices",
        "repository": "orders-svc",
        "ref": "main",
    },
    "inputs": {
        "build_env": "DEV",
        "application_namespace": "orders",
        "MSName": "orders-svc",
        "releaseVersion": "1.4.0",
        "listOfKeysToBeEncrypted": "db.password",
    },
    "environment": {"ORG_NAME": "acme"},
    "computed_config": {"vault_url": VAULT_URL},
    "github_secrets": {"VAULT_TOKEN": "s.vault-token", "GIT_TOKEN": "ghp-dispatch"},
    "secrets_needs_input": "db.password, app.api_key",
    "encryption_key": "pipeline-supplied-key",
}


class FakeOracle:
    """In-memory team membership, keyed by ``(org, team, username)``."""

    def __init__(self, members: set[tuple[str, str, str]] | None = None) -> None:
        self.members = set(members or ())
        self.calls: list[tuple[str, str, str, str]] = []
        self.error: Exception | None = None

    def is_team_member(self, credential: str, org: str, team: str, username: str) -> bool:
        self.calls.append((credential, org, team, username))
        if self.error is not None:
            raise self.error
        return (org, team, username) in self.members


def registration(**overrides: Any) -> dict[str, Any]:
    """Return a deep copy of ``REGISTRATION`` with top-level keys replaced."""
    metadata = copy.deepcopy(REGISTRATION)
    metadata.update(overrides)
    return metadata


def ticking_clock(start: datetime.datetime = FIXED_NOW):
    """Clock returning *start* plus one second per call."""
    counter = itertools.count()
    return lambda: start + datetime.timedelta(seconds=next(counter))


def sequential_ids():
    counter = itertools.count(1)
    return lambda: f"sess-test-{next(counter)}"


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle(
        {
            ("acme", "dba-team", "alice"),
            ("acme", "platform-team", "carol"),
            ("acme", "dba-team", "carol"),
        }
    )


@pytest.fixture
def resolver(oracle: FakeOracle) -> TeamAccessResolver:
    """Return a TeamAccessResolver loaded from the real secret-teams.yaml."""
    return TeamAccessResolver(oracle, policy_path=POLICY_PATH, default_org="fallback-org")


@pytest.fixture
def context() -> SessionContext:
    return SessionContext.from_metadata(registration())


@pytest.fixture
def engine() -> SessionEngine:
    return SessionEngine(clock=ticking_clock(), id_factory=sequential_ids())


@pytest.fixture
def settings() -> Settings:
    return Settings(
        server=ServerSettings(form_url="https://forms.example/approve"),
        encryption=EncryptionSettings(default_key="default-key"),
        dispatch=DispatchSettings(
            owner="Microservices",
            repository="ap-secondhalf",
            ref="main",
            workflows={"dev": "main.yml", "sit": "main.yml"},
        ),
        policy_path=str(POLICY_PATH),
    )


@pytest.fixture
def alice() -> UserIdentity:
    """Member of dba-team only."""
    return UserIdentity(username="alice", access_token="gho-alice")


@pytest.fixture
def bob() -> UserIdentity:
    """Member of no team."""
    return UserIdentity(username="bob", access_token="gho-bob")


@pytest.fixture
def carol() -> UserIdentity:
    """Member of dba-team and platform-team."""
    return UserIdentity(username="carol", access_token="gho-carol")

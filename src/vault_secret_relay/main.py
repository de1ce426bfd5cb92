"""CLI entry point: loads settings, wires the components and serves the API."""

from __future__ import annotations

import argparse
import logging
import pathlib

import uvicorn
from fastapi import FastAPI

from vault_secret_relay.api.app import create_app
from vault_secret_relay.auth.token_verifier import SessionTokenVerifier
from vault_secret_relay.config import DEFAULT_CONFIG_PATH, Settings, load_settings
from vault_secret_relay.crypto.value_policy import ValuePolicy
from vault_secret_relay.dispatch.trigger import DownstreamTrigger
from vault_secret_relay.github.client import GitHubClient
from vault_secret_relay.policy.team_access import TeamAccessResolver
from vault_secret_relay.service import SecretCollectionService
from vault_secret_relay.sessions.engine import SessionEngine
from vault_secret_relay.vault.store import VaultStoreClient

logger = logging.getLogger(__name__)


def resolve_policy_path(
    settings: Settings,
    config_path: pathlib.Path,
    override: str | None = None,
) -> pathlib.Path | None:
    """Pick the team rules file: CLI flag, then settings (relative to the repo root)."""
    if override:
        return pathlib.Path(override)
    if not settings.policy_path:
        return None
    path = pathlib.Path(settings.policy_path)
    if path.is_absolute():
        return path
    return config_path.resolve().parents[1] / path


def build_app(settings: Settings, policy_path: pathlib.Path | None = None) -> FastAPI:
    github = GitHubClient(
        base_url=settings.github.api_url,
        timeout_seconds=settings.github.timeout_seconds,
        verify=settings.github.verify,
    )
    store = VaultStoreClient(
        verify=settings.vault.verify,
        timeout_seconds=settings.vault.timeout_seconds,
    )
    service = SecretCollectionService(
        engine=SessionEngine(),
        access=TeamAccessResolver(github, policy_path, default_org=settings.github.default_org),
        store=store,
        value_policy=ValuePolicy(settings.encryption),
        trigger=DownstreamTrigger(
            github,
            settings.dispatch,
            fallback_credential=settings.github.dispatch_token,
        ),
        settings=settings,
    )

    if not settings.auth.pipeline_token:
        logger.warning("PIPELINE_AUTH_TOKEN is not set; every pipeline request will be rejected")
    if not settings.auth.jwt_secret:
        logger.warning("JWT_SECRET is not set; every user request will be rejected")
    if not settings.encryption.default_key:
        logger.warning("No default encryption key configured")

    return create_app(service, SessionTokenVerifier(settings.auth.jwt_secret), settings.auth)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Vault Secret Relay: collects pipeline secrets from authorized teams into Vault",
    )
    parser.add_argument(
        "--config",
        default=str(DEFAULT_CONFIG_PATH),
        help="Path to settings.yaml",
    )
    parser.add_argument(
        "--policies",
        default=None,
        help="Path to secret-teams.yaml (default: policy_path from settings)",
    )
    parser.add_argument("--host", default=None, help="Bind address (default: from settings)")
    parser.add_argument("--port", type=int, default=None, help="Listen port (default: from settings)")
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    config_path = pathlib.Path(args.config)
    settings = load_settings(config_path)
    app = build_app(settings, resolve_policy_path(settings, config_path, args.policies))

    host = args.host or settings.server.host
    port = args.port or settings.server.port
    logger.info("Serving on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()

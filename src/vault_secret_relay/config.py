"""Service settings loaded from ``config/settings.yaml`` plus the environment.

The YAML file carries the non-secret layout of the deployment (which workflow
to dispatch per environment, which keys get special handling, where the
team rules live).  Credentials are never written to the file: they are read
from environment variables, which also override any value the file sets.

    PIPELINE_AUTH_TOKEN  bearer token the pipeline uses to register sessions
    JWT_SECRET           HS256 secret that signs user session tokens
    GH_BASE_URL          GitHub (Enterprise) API base URL
    GH_PAGES_URL         public URL of the secret-entry form
    GH_DISPATCH_TOKEN    privileged token for workflow dispatch
    ORG_NAME             default organization for team-membership checks
    VAULT_CA_CERT        CA bundle used to verify the Vault TLS certificate
    DEFAULT_ENCRYPTION_KEY  key material used when a pipeline sends none
"""

from __future__ import annotations

import dataclasses
import logging
import os
import pathlib
from typing import Any, Mapping

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = pathlib.Path(__file__).resolve().parents[2] / "config" / "settings.yaml"


class ConfigError(Exception):
    """Raised when the settings file is missing or malformed."""


@dataclasses.dataclass(frozen=True)
class ServerSettings:
    host: str = "0.0.0.0"
    port: int = 3000
    form_url: str = ""


@dataclasses.dataclass(frozen=True)
class AuthSettings:
    pipeline_token: str = ""
    jwt_secret: str = ""
    cookie_name: str = "session_token"


@dataclasses.dataclass(frozen=True)
class GitHubSettings:
    api_url: str = ""
    default_org: str = ""
    dispatch_token: str = ""
    timeout_seconds: float = 10.0
    verify: bool | str = True


@dataclasses.dataclass(frozen=True)
class VaultSettings:
    verify: bool | str = True
    timeout_seconds: int = 30


@dataclasses.dataclass(frozen=True)
class EncryptionSettings:
    """Identifiers of the keys that bypass ordinary encryption.

    Attributes:
        keystore_password_key:  Key whose value is derived from the namespace.
        keystore_environments:  Build environments where that derivation applies.
        encryption_key_name:    Key whose value is the session's own encryption key.
        default_key:            Fallback key material when the pipeline sends none.
    """

    keystore_password_key: str = "app.key-store-password"
    keystore_environments: frozenset[str] = frozenset({"hodc", "pcdc"})
    encryption_key_name: str = "app-config.secret-encryption.encryption-key"
    default_key: str = ""


@dataclasses.dataclass(frozen=True)
class DispatchSettings:
    owner: str = ""
    repository: str = ""
    ref: str = "main"
    workflows: Mapping[str, str] = dataclasses.field(default_factory=dict)
    purge_after_dispatch: bool = False


@dataclasses.dataclass(frozen=True)
class Settings:
    server: ServerSettings = ServerSettings()
    auth: AuthSettings = AuthSettings()
    github: GitHubSettings = GitHubSettings()
    vault: VaultSettings = VaultSettings()
    encryption: EncryptionSettings = EncryptionSettings()
    dispatch: DispatchSettings = DispatchSettings()
    policy_path: str | None = None


def load_settings(
    path: str | pathlib.Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Read *path* (default ``config/settings.yaml``) and apply env overrides."""
    config_path = pathlib.Path(path) if path is not None else DEFAULT_CONFIG_PATH
    env = os.environ if environ is None else environ

    if not config_path.exists():
        raise ConfigError(f"Settings file not found: {config_path}")
    with open(config_path) as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ConfigError("Settings file must contain a mapping at the top level")

    try:
        settings = _build(data, env)
    except (AttributeError, TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid settings in {config_path}: {exc}") from exc

    logger.debug("Loaded settings from %s", config_path)
    return settings


def _build(data: dict[str, Any], env: Mapping[str, str]) -> Settings:
    server = _section(data, "server")
    auth = _section(data, "auth")
    github = _section(data, "github")
    vault = _section(data, "vault")
    encryption = _section(data, "encryption")
    dispatch = _section(data, "dispatch")

    return Settings(
        server=ServerSettings(
            host=server.get("host", "0.0.0.0"),
            port=int(server.get("port", 3000)),
            form_url=env.get("GH_PAGES_URL") or server.get("form_url", ""),
        ),
        auth=AuthSettings(
            pipeline_token=env.get("PIPELINE_AUTH_TOKEN", ""),
            jwt_secret=env.get("JWT_SECRET", ""),
            cookie_name=auth.get("cookie_name", "session_token"),
        ),
        github=GitHubSettings(
            api_url=(env.get("GH_BASE_URL") or github.get("api_url", "")).rstrip("/"),
            default_org=env.get("ORG_NAME") or github.get("default_org", ""),
            dispatch_token=env.get("GH_DISPATCH_TOKEN", ""),
            timeout_seconds=float(github.get("timeout_seconds", 10.0)),
            verify=github.get("verify", True),
        ),
        vault=VaultSettings(
            verify=env.get("VAULT_CA_CERT") or vault.get("verify", True),
            timeout_seconds=int(vault.get("timeout_seconds", 30)),
        ),
        encryption=EncryptionSettings(
            keystore_password_key=encryption.get(
                "keystore_password_key", "app.key-store-password"
            ),
            keystore_environments=frozenset(
                e.lower() for e in encryption.get("keystore_environments", ["hodc", "pcdc"])
            ),
            encryption_key_name=encryption.get(
                "encryption_key_name", "app-config.secret-encryption.encryption-key"
            ),
            default_key=env.get("DEFAULT_ENCRYPTION_KEY") or encryption.get("default_key", ""),
        ),
        dispatch=DispatchSettings(
            owner=dispatch.get("owner", ""),
            repository=dispatch.get("repository", ""),
            ref=dispatch.get("ref", "main"),
            workflows={
                str(k).lower(): str(v) for k, v in (dispatch.get("workflows") or {}).items()
            },
            purge_after_dispatch=bool(dispatch.get("purge_after_dispatch", False)),
        ),
        policy_path=data.get("policy_path"),
    )


def _section(data: dict[str, Any], name: str) -> Mapping[str, Any]:
    """Return the *name* section; an empty ``name:`` entry counts as ``{}``."""
    section = data.get(name) or {}
    if not isinstance(section, Mapping):
        raise TypeError(f"section {name!r} must be a mapping, got {type(section).__name__}")
    return section

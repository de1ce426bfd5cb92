"""Immutable context a pipeline supplies when it registers a session.

Pattern: Composite Context
---------------------------
The registration payload is a loosely structured JSON document produced by
the pipeline.  It is parsed exactly once into a ``SessionContext`` that names
the handful of fields the engine actually consumes:

  1. Where the run came from (run id, repository, ref).
  2. How values are processed (build environment, namespace).
  3. Where values go and with which credentials (Vault location and token,
     dispatch token).

The raw payload is kept alongside as read-only ``metadata`` because the
downstream job receives it in full.  Credentials are stripped from that copy
before it leaves the process (see ``public_metadata``).
"""

from __future__ import annotations

import copy
import dataclasses
from typing import Any, Mapping

# Top-level payload fields holding credentials; never forwarded downstream.
_CREDENTIAL_FIELDS = frozenset({"github_secrets", "encryption_key"})


def _section(metadata: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = metadata.get(name)
    return value if isinstance(value, Mapping) else {}


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


@dataclasses.dataclass(frozen=True)
class SessionContext:
    """Context of one secret-collection request.

    Attributes:
        run_id:              Workflow run that asked for the secrets.
        owner:               Repository owner of the requesting run.
        repository:          Repository of the requesting run.
        ref:                 Git ref of the requesting run.
        build_env:           Lower-cased build environment tag (``dev``, ``sit``, ...).
        namespace:           Application namespace; seeds derived key material.
        org_name:            Organization whose teams gate the keys.
        microservice:        Display name of the service being provisioned.
        release_version:     Display release version.
        store_location:      Vault URL of the secret set.
        store_credential:    Vault token for ``store_location``.
        dispatch_credential: Privileged token for the downstream dispatch.
        metadata:            The raw registration payload.
    """

    run_id: str
    owner: str = ""
    repository: str = ""
    ref: str = ""
    build_env: str = ""
    namespace: str = ""
    org_name: str = ""
    microservice: str = ""
    release_version: str = ""
    store_location: str = ""
    store_credential: str = dataclasses.field(default="", repr=False)
    dispatch_credential: str = dataclasses.field(default="", repr=False)
    metadata: Mapping[str, Any] = dataclasses.field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_metadata(cls, metadata: Mapping[str, Any]) -> SessionContext:
        """Build a context from the pipeline's registration payload."""
        workflow = _section(metadata, "workflow")
        inputs = _section(metadata, "inputs")
        computed = _section(metadata, "computed_config")
        secrets = _section(metadata, "github_secrets")
        environment = _section(metadata, "environment")

        return cls(
            run_id=_text(workflow.get("run_id")),
            owner=_text(workflow.get("owner")),
            repository=_text(workflow.get("repository")),
            ref=_text(workflow.get("ref")),
            build_env=_text(inputs.get("build_env")).lower(),
            namespace=_text(inputs.get("application_namespace")),
            org_name=_text(environment.get("ORG_NAME")),
            microservice=_text(inputs.get("MSName")),
            release_version=_text(inputs.get("releaseVersion")),
            store_location=_text(computed.get("vault_url")),
            store_credential=_text(secrets.get("VAULT_TOKEN")),
            dispatch_credential=_text(secrets.get("GIT_TOKEN")),
            metadata=copy.deepcopy(dict(metadata)),
        )

    def public_metadata(self) -> dict[str, Any]:
        """Return a copy of the raw payload with credential fields removed."""
        return {
            name: copy.deepcopy(value)
            for name, value in self.metadata.items()
            if name not in _CREDENTIAL_FIELDS
        }

"""HTTP client for the GitHub (Enterprise) REST API.

Two calls are needed: a team-membership lookup, which gates access to
individual secret keys, and a workflow dispatch, which notifies the downstream
job once a session completes.  Both take the credential explicitly: the
membership lookup runs with the acting user's own token, the dispatch with a
privileged service token.
"""

from __future__ import annotations

import dataclasses
import logging
import ssl
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class MembershipLookupError(RuntimeError):
    """Raised when GitHub answers a membership lookup with an unexpected status."""


@dataclasses.dataclass
class GitHubClient:
    """Thin synchronous wrapper over the GitHub REST endpoints the service uses."""

    base_url: str
    timeout_seconds: float = 10.0
    verify: bool | str = True
    transport: httpx.BaseTransport | None = None

    def __post_init__(self) -> None:
        if not self.base_url:
            raise ValueError("GitHub base_url must not be empty")
        self.base_url = self.base_url.rstrip("/")

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            verify=self._ssl_verify(),
            transport=self.transport,
        )

    def _ssl_verify(self) -> bool | ssl.SSLContext:
        if isinstance(self.verify, str):
            return ssl.create_default_context(cafile=self.verify)
        return self.verify

    def is_team_member(self, credential: str, org: str, team: str, username: str) -> bool:
        """Return whether *username* is an active member of *org*/*team*.

        A 404 means "not a member".  Other non-success answers raise
        ``MembershipLookupError``.  Transport failures propagate as
        ``httpx.HTTPError``.
        """
        path = f"/orgs/{org}/teams/{team}/memberships/{username}"
        with self._client() as client:
            response = client.get(
                path,
                headers={
                    "Authorization": f"Bearer {credential}",
                    "Accept": "application/vnd.github+json",
                },
            )
        logger.debug("Membership lookup %s -> %s", path, response.status_code)

        if response.status_code == httpx.codes.NOT_FOUND:
            return False
        if not response.is_success:
            raise MembershipLookupError(
                f"GitHub returned {response.status_code} for GET {path}: {response.text}"
            )
        return response.json().get("state") == "active"

    def dispatch_workflow(
        self,
        credential: str,
        owner: str,
        repo: str,
        workflow_file: str,
        ref: str,
        inputs: dict[str, Any],
    ) -> httpx.Response:
        """POST a ``workflow_dispatch`` event and return the raw response.

        GitHub answers 204 on success; status handling is left to the caller.
        """
        path = f"/repos/{owner}/{repo}/actions/workflows/{workflow_file}/dispatches"
        with self._client() as client:
            response = client.post(
                path,
                headers={
                    "Authorization": f"token {credential}",
                    "Accept": "application/vnd.github+json",
                },
                json={"ref": ref, "inputs": inputs},
            )
        logger.debug("Workflow dispatch %s -> %s", path, response.status_code)
        return response


__all__ = ["GitHubClient", "MembershipLookupError"]

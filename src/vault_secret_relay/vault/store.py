"""Read-merge-write access to the secret set kept in Vault's KV v2 engine.

Pattern: Location-Addressed Store
----------------------------------
A session names its backing secret set by a single Vault URL, for example
``https://vault.example:8200/v1/secret/data/orders-svc``, plus a token.  The
URL is split into the Vault address, the KV mount point and the secret path,
and every operation opens a short-lived ``hvac`` client with that token so
Vault enforces the pipeline's own policy on the path.

  - ``fetch`` treats a missing path (404) as an empty set, so the first
    submission for a brand-new service provisions it.
  - ``merge`` overlays updates on the current contents and writes the union.
    Two writers merging into the same path at once can lose a field: the
    last write wins.  This client does not serialize writers.
"""

from __future__ import annotations

import dataclasses
import logging
import urllib.parse
from typing import Any, Mapping

import hvac
import hvac.exceptions
import requests

from vault_secret_relay.errors import InvalidInput, StoreUnavailable

logger = logging.getLogger(__name__)

# hvac raises one exception class per HTTP status it recognizes.
_STATUS_BY_ERROR: tuple[tuple[type[hvac.exceptions.VaultError], int], ...] = (
    (hvac.exceptions.InvalidRequest, 400),
    (hvac.exceptions.Unauthorized, 401),
    (hvac.exceptions.Forbidden, 403),
    (hvac.exceptions.InvalidPath, 404),
    (hvac.exceptions.RateLimitExceeded, 429),
    (hvac.exceptions.InternalServerError, 500),
    (hvac.exceptions.VaultNotInitialized, 501),
    (hvac.exceptions.BadGateway, 502),
    (hvac.exceptions.VaultDown, 503),
)


def _status_of(exc: hvac.exceptions.VaultError) -> int | None:
    for error_cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return status
    return None


@dataclasses.dataclass(frozen=True)
class VaultLocation:
    """A KV v2 secret addressed by URL."""

    address: str
    mount_point: str
    path: str

    @classmethod
    def parse(cls, location: str) -> VaultLocation:
        """Split ``<scheme>://<host>/v1/<mount>/data/<path>``.

        Raises ``InvalidInput`` for anything that is not a KV v2 data URL.
        """
        parts = urllib.parse.urlsplit(location or "")
        segments = [s for s in parts.path.split("/") if s]
        if (
            parts.scheme not in ("http", "https")
            or not parts.netloc
            or len(segments) < 4
            or segments[0] != "v1"
            or segments[2] != "data"
        ):
            raise InvalidInput(f"Not a Vault KV v2 data URL: {location!r}")
        return cls(
            address=f"{parts.scheme}://{parts.netloc}",
            mount_point=segments[1],
            path="/".join(segments[3:]),
        )

    def __str__(self) -> str:
        return f"{self.address}/v1/{self.mount_point}/data/{self.path}"


class VaultStoreClient:
    """Fetches, merges and pushes secret sets in Vault."""

    def __init__(self, verify: bool | str = True, timeout_seconds: int = 30) -> None:
        self._verify = verify
        self._timeout = timeout_seconds

    def fetch(self, location: str, credential: str) -> dict[str, Any]:
        """Return the current key/value set at *location*.

        A missing path yields ``{}``.  Any other failure raises
        ``StoreUnavailable`` carrying the status and response body.
        """
        target = VaultLocation.parse(location)
        client = self._client(target, credential)
        try:
            response = client.secrets.kv.v2.read_secret_version(
                path=target.path,
                mount_point=target.mount_point,
                raise_on_deleted_version=True,
            )
        except hvac.exceptions.InvalidPath:
            logger.info("Path %s not found; treating it as an empty secret set", target)
            return {}
        except hvac.exceptions.VaultError as exc:
            raise self._unavailable("fetch", target, exc) from exc
        except requests.exceptions.RequestException as exc:
            raise StoreUnavailable(f"Vault fetch failed for {target}: {exc}") from exc

        data = (response.get("data") or {}).get("data") or {}
        logger.info("Fetched %d existing secrets from %s", len(data), target)
        return dict(data)

    def merge(self, location: str, credential: str, updates: Mapping[str, Any]) -> dict[str, Any]:
        """Overlay *updates* on the current set at *location* and write it back.

        Returns the merged set that was written.
        """
        target = VaultLocation.parse(location)
        current = self.fetch(location, credential)
        added = [k for k in updates if k not in current]
        merged = {**current, **updates}

        client = self._client(target, credential)
        try:
            client.secrets.kv.v2.create_or_update_secret(
                path=target.path,
                secret=merged,
                mount_point=target.mount_point,
            )
        except hvac.exceptions.VaultError as exc:
            raise self._unavailable("update", target, exc) from exc
        except requests.exceptions.RequestException as exc:
            raise StoreUnavailable(f"Vault update failed for {target}: {exc}") from exc

        logger.info(
            "Wrote %d keys to %s (%d added, %d updated)",
            len(merged), target, len(added), len(updates) - len(added),
        )
        return merged

    def update_single_key(self, location: str, credential: str, key: str, value: Any) -> dict[str, Any]:
        return self.merge(location, credential, {key: value})

    # -- private helpers -----------------------------------------------------

    def _client(self, target: VaultLocation, credential: str) -> hvac.Client:
        return hvac.Client(
            url=target.address,
            token=credential,
            verify=self._verify,
            timeout=self._timeout,
        )

    @staticmethod
    def _unavailable(
        operation: str, target: VaultLocation, exc: hvac.exceptions.VaultError
    ) -> StoreUnavailable:
        status = _status_of(exc)
        body = getattr(exc, "text", None) or str(exc)
        logger.error("Vault %s failed for %s: status=%s", operation, target, status)
        return StoreUnavailable(
            f"Vault {operation} failed for {target}: {status} {exc}",
            status=status,
            body=body,
        )

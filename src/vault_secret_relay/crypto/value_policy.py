"""Decides what is written to the store for each submitted secret value.

Pattern: Ordered Decision Table
--------------------------------
``ValuePolicy`` holds an ordered list of ``(name, predicate, action)`` rules
evaluated top to bottom; the first matching predicate decides.  The order is:

  1. ``keystore_password``  the keystore password key, in a designated
     environment, is replaced by a value derived from the namespace.
  2. ``encryption_key``     the encryption-key key stores the session key.
  3. ``encrypt``            keys listed for encryption are encrypted.
  4. ``passthrough``        everything else is stored as submitted.

Rules 1 and 2 ignore the submitted value entirely.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Callable

from vault_secret_relay.config import EncryptionSettings
from vault_secret_relay.crypto import envelope
from vault_secret_relay.errors import InvalidInput, StoreUnavailable
from vault_secret_relay.sessions.model import SessionSnapshot
from vault_secret_relay.vault.store import VaultStoreClient

logger = logging.getLogger(__name__)

PLACEHOLDER_KEY = "TBD"


@dataclasses.dataclass(frozen=True)
class PolicyContext:
    """Session facts the decision table needs."""

    build_env: str
    namespace: str
    encryption_key: str = dataclasses.field(repr=False)
    keys_requiring_encryption: frozenset[str] = frozenset()

    @classmethod
    def for_session(cls, session: SessionSnapshot) -> PolicyContext:
        return cls(
            build_env=session.context.build_env,
            namespace=session.context.namespace,
            encryption_key=session.encryption_key,
            keys_requiring_encryption=session.keys_requiring_encryption,
        )


Predicate = Callable[[str, PolicyContext], bool]
Action = Callable[[str, PolicyContext], str]


@dataclasses.dataclass(frozen=True)
class ValueRule:
    name: str
    predicate: Predicate
    action: Action


class ValuePolicy:
    """Applies the decision table to a submitted ``(key, plaintext)`` pair."""

    def __init__(self, settings: EncryptionSettings | None = None) -> None:
        self._settings = settings or EncryptionSettings()
        self._rules: tuple[ValueRule, ...] = self._build_rules()

    @property
    def rules(self) -> tuple[ValueRule, ...]:
        return self._rules

    def match(self, key: str, context: PolicyContext) -> ValueRule:
        """Return the first rule whose predicate accepts *key*."""
        for rule in self._rules:
            if rule.predicate(key, context):
                return rule
        return self._rules[-1]

    def process_value(self, key: str, plaintext: str, context: PolicyContext) -> str:
        rule = self.match(key, context)
        logger.info("Processing %r with rule %s", key, rule.name)
        return rule.action(plaintext, context)

    # -- rules ---------------------------------------------------------------

    def _build_rules(self) -> tuple[ValueRule, ...]:
        cfg = self._settings
        return (
            ValueRule(
                name="keystore_password",
                predicate=lambda key, ctx: (
                    key == cfg.keystore_password_key
                    and ctx.build_env.lower() in cfg.keystore_environments
                ),
                action=lambda _plain, ctx: envelope.derive_key_from_namespace(f"{ctx.namespace}-jks"),
            ),
            ValueRule(
                name="encryption_key",
                predicate=lambda key, _ctx: key == cfg.encryption_key_name,
                action=lambda _plain, ctx: ctx.encryption_key,
            ),
            ValueRule(
                name="encrypt",
                predicate=lambda key, ctx: key in ctx.keys_requiring_encryption,
                action=lambda plain, ctx: envelope.encrypt(plain, ctx.encryption_key),
            ),
            ValueRule(
                name="passthrough",
                predicate=lambda _key, _ctx: True,
                action=lambda plain, _ctx: plain,
            ),
        )


def resolve_encryption_key(
    store: VaultStoreClient,
    location: str,
    credential: str,
    default_key: str,
    namespace: str,
    key_name: str = EncryptionSettings.encryption_key_name,
) -> str:
    """Pick the session encryption key when the pipeline did not send one.

    Looks up *key_name* in the existing secret set at *location*:

      - a real stored value is reused;
      - the placeholder ``TBD`` means derive one from *namespace*;
      - anything else, including an unreachable store or an unparseable
        *location*, falls back to *default_key*.
    """
    try:
        current = store.fetch(location, credential)
    except (StoreUnavailable, InvalidInput) as exc:
        logger.error("Could not read encryption key from store, using default: %s", exc)
        return default_key

    stored = str(current.get(key_name) or "").strip()
    if stored and stored != PLACEHOLDER_KEY:
        logger.info("Using encryption key already stored at %s", location)
        return stored
    if stored == PLACEHOLDER_KEY:
        logger.info("Stored encryption key is a placeholder; deriving from namespace")
        return envelope.derive_key_from_namespace(namespace)
    logger.info("No stored encryption key; using default")
    return default_key

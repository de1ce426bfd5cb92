"""Tests for the value decision table and encryption-key resolution."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from vault_secret_relay.config import EncryptionSettings
from vault_secret_relay.crypto import envelope
from vault_secret_relay.crypto.value_policy import PolicyContext, ValuePolicy, ValueRule, resolve_encryption_key
from vault_secret_relay.errors import StoreUnavailable
from vault_secret_relay.vault.store import VaultStoreClient

KEYSTORE = "app.key-store-password"
ENC_KEY_NAME = "app-config.secret-encryption.encryption-key"


def _ctx(build_env: str = "dev", encrypt: frozenset[str] = frozenset()) -> PolicyContext:
    return PolicyContext(
        build_env=build_env,
        namespace="orders",
        encryption_key="session-key",
        keys_requiring_encryption=encrypt,
    )


@pytest.fixture
def policy() -> ValuePolicy:
    return ValuePolicy(EncryptionSettings(default_key="default-key"))


class TestDecisionTable:
    def test_rule_order(self, policy: ValuePolicy) -> None:
        assert [r.name for r in policy.rules] == ["keystore_password", "encryption_key", "encrypt", "passthrough"]

    @pytest.mark.parametrize("env", ["hodc", "PCDC"])
    def test_keystore_password_derived_in_designated_env(self, policy: ValuePolicy, env: str) -> None:
        value = policy.process_value(KEYSTORE, "typed-by-user", _ctx(build_env=env))
        assert value == envelope.derive_key_from_namespace("orders-jks")

    def test_keystore_password_elsewhere_falls_through(self, policy: ValuePolicy) -> None:
        assert policy.process_value(KEYSTORE, "typed-by-user", _ctx(build_env="dev")) == "typed-by-user"

    def test_keystore_derivation_beats_encryption_list(self, policy: ValuePolicy) -> None:
        ctx = _ctx(build_env="hodc", encrypt=frozenset({KEYSTORE}))
        assert policy.match(KEYSTORE, ctx).name == "keystore_password"

    def test_encryption_key_name_stores_session_key(self, policy: ValuePolicy) -> None:
        assert policy.process_value(ENC_KEY_NAME, "ignored", _ctx()) == "session-key"

    def test_listed_key_is_encrypted(self, policy: ValuePolicy) -> None:
        value = policy.process_value("db.password", "hunter2", _ctx(encrypt=frozenset({"db.password"})))
        assert envelope.is_encrypted(value)
        assert envelope.decrypt(value, "session-key") == "hunter2"

    def test_other_keys_pass_through(self, policy: ValuePolicy) -> None:
        assert policy.process_value("feature.flags", "on", _ctx()) == "on"

    def test_custom_settings_change_the_table(self) -> None:
        policy = ValuePolicy(EncryptionSettings(keystore_password_key="jks.pw", keystore_environments=frozenset({"prod"})))
        assert policy.match("jks.pw", _ctx(build_env="prod")).name == "keystore_password"
        assert policy.match(KEYSTORE, _ctx(build_env="hodc")).name == "passthrough"

    @pytest.mark.parametrize("key", ["anything.else", ""])
    def test_unmatched_key_gets_passthrough(self, policy: ValuePolicy, key: str) -> None:
        assert policy.match(key, _ctx()).name == "passthrough"

    def test_last_rule_is_the_fallback_when_nothing_matches(self) -> None:
        class StrictPolicy(ValuePolicy):
            def _build_rules(self) -> tuple[ValueRule, ...]:
                never = ValueRule(name="never", predicate=lambda _k, _c: False, action=lambda p, _c: p)
                last = ValueRule(name="last", predicate=lambda _k, _c: False, action=lambda p, _c: p.upper())
                return (never, last)

        policy = StrictPolicy()
        assert policy.match("db.password", _ctx()).name == "last"
        assert policy.process_value("db.password", "pw", _ctx()) == "PW"


class TestResolveEncryptionKey:
    def _store(self, data: dict | None = None, error: Exception | None = None) -> MagicMock:
        store = MagicMock()
        if error is not None:
            store.fetch.side_effect = error
        else:
            store.fetch.return_value = data or {}
        return store

    def test_stored_key_is_reused(self) -> None:
        store = self._store({ENC_KEY_NAME: "stored-key"})
        assert resolve_encryption_key(store, "loc", "tok", "default", "orders") == "stored-key"
        store.fetch.assert_called_once_with("loc", "tok")

    def test_placeholder_derives_from_namespace(self) -> None:
        store = self._store({ENC_KEY_NAME: "TBD"})
        assert resolve_encryption_key(store, "loc", "tok", "default", "orders") == (
            envelope.derive_key_from_namespace("orders")
        )

    def test_absent_key_uses_default(self) -> None:
        assert resolve_encryption_key(self._store({}), "loc", "tok", "default", "orders") == "default"

    def test_unreachable_store_uses_default(self) -> None:
        store = self._store(error=StoreUnavailable("down", status=503))
        assert resolve_encryption_key(store, "loc", "tok", "default", "orders") == "default"

    def test_unparseable_location_uses_default(self) -> None:
        key = resolve_encryption_key(VaultStoreClient(), "https://vault.example/not-kv", "tok", "default", "orders")
        assert key == "default"

    def test_custom_key_name(self) -> None:
        store = self._store({"my.key": "k2"})
        assert resolve_encryption_key(store, "loc", "tok", "default", "orders", key_name="my.key") == "k2"

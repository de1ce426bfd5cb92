"""Team-based access control for individual secret keys.

Pattern: Ordered Rule List
---------------------------
A YAML file (``policies/secret-teams.yaml``) maps key-name patterns to the
team whose members may supply those keys.  The file is loaded once at startup
into an immutable tuple of rules and evaluated linearly on every check:

  - Matching is a case-insensitive substring test; the first rule wins.
  - The ``*`` rule is mandatory and always evaluated last, so resolution is
    total.
  - New patterns are added as data, not code.

Membership itself is decided by an external oracle (GitHub team membership).
Every membership check fails closed: a lookup error denies the key and never
aborts a batch of keys.
"""

from __future__ import annotations

import dataclasses
import logging
import pathlib
from typing import Any, Iterable, Protocol

import yaml

from vault_secret_relay.auth.identity import UserIdentity
from vault_secret_relay.sessions.context import SessionContext

logger = logging.getLogger(__name__)

WILDCARD = "*"


@dataclasses.dataclass(frozen=True)
class GroupConfig:
    """The team required for keys matching ``pattern``.

    Attributes:
        pattern: Substring matched against the key name, or ``*``.
        team:    Team slug within the session's organization.
    """

    pattern: str
    team: str


class PolicyError(Exception):
    """Raised when the team rules file is malformed."""


class MembershipOracle(Protocol):
    def is_team_member(self, credential: str, org: str, team: str, username: str) -> bool:
        ...


class TeamAccessResolver:
    """Loads ``secret-teams.yaml`` and answers per-key access questions."""

    def __init__(
        self,
        oracle: MembershipOracle,
        policy_path: str | pathlib.Path | None = None,
        default_org: str = "",
    ) -> None:
        if policy_path is None:
            policy_path = pathlib.Path(__file__).resolve().parents[3] / "policies" / "secret-teams.yaml"
        self._policy_path = pathlib.Path(policy_path)
        self._oracle = oracle
        self._default_org = default_org
        self._rules, self._fallback = self._load()

    @property
    def rules(self) -> tuple[GroupConfig, ...]:
        """All rules in evaluation order, fallback last."""
        return self._rules + (self._fallback,)

    def resolve_required_group(self, key: str) -> GroupConfig:
        """Return the team rule governing *key*.  Never fails."""
        key_lower = key.lower()
        for rule in self._rules:
            if rule.pattern.lower() in key_lower:
                logger.debug("Key %r matches pattern %r, requires team %s", key, rule.pattern, rule.team)
                return rule
        logger.debug("Key %r uses default team %s", key, self._fallback.team)
        return self._fallback

    def verify_access(self, user: UserIdentity, key: str, context: SessionContext) -> bool:
        """Return whether *user* may supply *key* for the session in *context*.

        Returns ``False`` when no organization is known or the membership
        lookup fails for any reason.
        """
        group = self.resolve_required_group(key)
        org = context.org_name or self._default_org
        if not org:
            logger.error("No organization configured for run %s; denying key %r", context.run_id, key)
            return False

        try:
            allowed = self._oracle.is_team_member(user.access_token, org, group.team, user.username)
        except Exception as exc:
            logger.error(
                "Membership lookup failed for user=%s team=%s/%s: %s",
                user.username, org, group.team, exc,
            )
            return False

        if allowed:
            logger.info("User %s authorized for key %r (team %s)", user.username, key, group.team)
        else:
            logger.info("User %s NOT authorized for key %r (not in team %s)", user.username, key, group.team)
        return allowed

    def filter_authorized(
        self,
        user: UserIdentity,
        keys: Iterable[str],
        context: SessionContext,
    ) -> list[str]:
        """Return the subset of *keys* that *user* may supply, in input order."""
        keys = list(keys)
        authorized = [key for key in keys if self.verify_access(user, key, context)]
        logger.info(
            "User %s authorized for %d of %d keys", user.username, len(authorized), len(keys)
        )
        return authorized

    # -- private helpers -----------------------------------------------------

    def _load(self) -> tuple[tuple[GroupConfig, ...], GroupConfig]:
        if not self._policy_path.exists():
            raise PolicyError(f"Team rules file not found: {self._policy_path}")
        with open(self._policy_path) as fh:
            data = yaml.safe_load(fh)
        if not isinstance(data, dict) or not isinstance(data.get("rules"), list):
            raise PolicyError("Team rules file must contain a top-level 'rules' list")

        rules: list[GroupConfig] = []
        fallback: GroupConfig | None = None
        for entry in data["rules"]:
            rule = self._parse_rule(entry)
            if rule.pattern == WILDCARD:
                fallback = rule
            else:
                rules.append(rule)

        if fallback is None:
            raise PolicyError("Team rules file must define a '*' fallback rule")
        return tuple(rules), fallback

    @staticmethod
    def _parse_rule(entry: Any) -> GroupConfig:
        if not isinstance(entry, dict):
            raise PolicyError(f"Malformed rule: {entry!r}")
        pattern = entry.get("pattern")
        team = entry.get("team")
        if not pattern or not team:
            raise PolicyError(f"Rule needs both 'pattern' and 'team': {entry!r}")
        return GroupConfig(pattern=str(pattern), team=str(team))

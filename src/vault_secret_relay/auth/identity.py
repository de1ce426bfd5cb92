"""Authenticated identity of a human submitting secrets.

Pattern: Identity Propagation
------------------------------
The OAuth login flow happens elsewhere and ends with a signed session token
carrying the user's login and their GitHub access token.  Once that token is
verified, a single ``UserIdentity`` is threaded through every downstream call
that acts for the user: the per-key team check and the completed-entry record.
A component that does not receive a ``UserIdentity`` cannot act for a user.

The identity is immutable.  A refreshed login produces a new identity.
"""

from __future__ import annotations

import dataclasses
import datetime


@dataclasses.dataclass(frozen=True)
class UserIdentity:
    """Immutable snapshot of an authenticated user.

    Attributes:
        username:     GitHub login of the user.
        access_token: The user's own GitHub token, used for membership checks.
        expires_at:   UTC expiry of the session token, if it carried one.
    """

    username: str
    access_token: str
    expires_at: datetime.datetime | None = None

    @property
    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return datetime.datetime.now(datetime.UTC) >= self.expires_at

    def __str__(self) -> str:
        return f"UserIdentity(user={self.username}, expired={self.is_expired})"

    def __repr__(self) -> str:
        return str(self)

"""Caller authentication for the two kinds of clients the service talks to.

Pipeline callers
    Present a shared bearer token (``PIPELINE_AUTH_TOKEN``).  The comparison is
    constant-time.  A missing header is ``Unauthorized``; a wrong token is
    ``Forbidden``.

Human callers
    Present the HS256 session token minted by the login flow, either in the
    ``session_token`` cookie or as an ``Authorization: Bearer`` header.  The
    token carries ``login`` (username) and ``at`` (the user's GitHub access
    token).
"""

from __future__ import annotations

import datetime
import hmac
import logging

import jwt

from vault_secret_relay.auth.identity import UserIdentity
from vault_secret_relay.errors import Forbidden, Unauthorized

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "Bearer "


def bearer_token(authorization: str | None) -> str | None:
    """Return the token of an ``Authorization: Bearer`` header, if any."""
    if not authorization or not authorization.startswith(_BEARER_PREFIX):
        return None
    return authorization[len(_BEARER_PREFIX):].strip() or None


def verify_pipeline_token(authorization: str | None, expected: str) -> None:
    """Check a pipeline request's bearer token against *expected*.

    Raises ``Unauthorized`` if the header is missing or malformed and
    ``Forbidden`` if the token does not match.
    """
    token = bearer_token(authorization)
    if token is None:
        logger.info("Pipeline request missing or invalid authorization header")
        raise Unauthorized("Missing or invalid authorization header")
    if not expected or not hmac.compare_digest(token.encode(), expected.encode()):
        logger.info("Pipeline request with invalid token")
        raise Forbidden("Invalid pipeline token")


class SessionTokenVerifier:
    """Verifies user session tokens and produces a ``UserIdentity``."""

    def __init__(self, secret: str, algorithm: str = "HS256") -> None:
        self._secret = secret
        self._algorithm = algorithm

    def verify(self, token: str | None) -> UserIdentity:
        """Decode *token* and return the identity it carries.

        Raises ``Unauthorized`` if the token is absent, expired, forged or
        missing the expected claims.
        """
        if not token:
            raise Unauthorized("Missing session token")
        if not self._secret:
            raise Unauthorized("Session tokens are not accepted: no signing secret configured")

        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError as exc:
            raise Unauthorized("Session token has expired") from exc
        except jwt.InvalidTokenError as exc:
            raise Unauthorized(f"Invalid session token: {exc}") from exc

        username = claims.get("login")
        access_token = claims.get("at")
        if not username or not access_token:
            raise Unauthorized("Session token is missing the login or access token claim")

        expires_at = None
        if "exp" in claims:
            expires_at = datetime.datetime.fromtimestamp(int(claims["exp"]), datetime.UTC)

        logger.debug("Session token verified for user %s", username)
        return UserIdentity(username=username, access_token=access_token, expires_at=expires_at)

    def issue(self, username: str, access_token: str, ttl_seconds: int = 900) -> str:
        """Mint a session token; the login flow and tests use this."""
        now = datetime.datetime.now(datetime.UTC)
        claims = {
            "login": username,
            "at": access_token,
            "iat": now,
            "exp": now + datetime.timedelta(seconds=ttl_seconds),
        }
        return jwt.encode(claims, self._secret, algorithm=self._algorithm)

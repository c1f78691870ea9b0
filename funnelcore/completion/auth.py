"""
Caller authentication.

The orchestrator only needs "who is calling", so resolution sits behind
CallerResolver.  Credentials are the raw Authorization header value.

  JwtCallerResolver     HS256 bearer tokens, user id from the ``sub`` claim
  StaticCallerResolver  fixed token -> user id table (dev / tests)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import jwt

logger = logging.getLogger("completion.auth")

BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class CallerIdentity:
    user_id: str


def extract_bearer_token(credentials: str | None) -> str | None:
    if not credentials or not credentials.startswith(BEARER_PREFIX):
        return None
    token = credentials[len(BEARER_PREFIX):].strip()
    return token or None


class CallerResolver(ABC):
    @abstractmethod
    def resolve_caller(self, credentials: str | None) -> CallerIdentity | None:
        """Return the authenticated caller, or None when unauthenticated."""


class JwtCallerResolver(CallerResolver):
    def __init__(self, secret: str, audience: str | None = None, algorithm: str = "HS256") -> None:
        if not secret:
            raise ValueError("JWT secret must not be empty")
        self._secret = secret
        self._audience = audience
        self._algorithm = algorithm

    def resolve_caller(self, credentials: str | None) -> CallerIdentity | None:
        token = extract_bearer_token(credentials)
        if token is None:
            return None
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                audience=self._audience,
                options={"verify_aud": self._audience is not None},
            )
        except jwt.ExpiredSignatureError:
            logger.info("Rejected expired token")
            return None
        except jwt.InvalidTokenError as exc:
            logger.warning("Rejected invalid token: %s", exc)
            return None

        user_id = payload.get("sub")
        if not user_id:
            logger.warning("Rejected token without sub claim")
            return None
        return CallerIdentity(user_id=str(user_id))


class StaticCallerResolver(CallerResolver):
    def __init__(self, tokens: dict[str, str] | None = None) -> None:
        self._tokens = dict(tokens or {})

    def add_token(self, token: str, user_id: str) -> None:
        self._tokens[token] = user_id

    def resolve_caller(self, credentials: str | None) -> CallerIdentity | None:
        token = extract_bearer_token(credentials)
        if token is None:
            return None
        user_id = self._tokens.get(token)
        return CallerIdentity(user_id=user_id) if user_id else None

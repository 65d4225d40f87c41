"""Bearer-token authentication for the plrsync server.

Requests carry ``Authorization: Bearer <token>``. An Authenticator resolves
the token to a principal id, which then identifies the record owner and
keys the rate limiter. Keying on the principal rather than the raw token
keeps one bucket per user when tokens rotate.
"""

from __future__ import annotations

import hmac
import logging
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional

from .errors import AuthError

logger = logging.getLogger(__name__)


def parse_bearer(header: Optional[str]) -> str:
    """Extract the token from an Authorization header.

    Raises:
        AuthError: If the header is missing or not a bearer credential
    """
    if not header:
        raise AuthError("No authorization header")
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("Authorization header must be 'Bearer <token>'")
    return token.strip()


class Authenticator(ABC):
    """Resolves a bearer token to a principal id."""

    @abstractmethod
    def authenticate(self, token: str) -> str:
        """Get the principal id a token belongs to.

        Raises:
            AuthError: If the token is not valid
        """
        pass

    def authenticate_header(self, header: Optional[str]) -> str:
        """Resolve an Authorization header to a principal id."""
        return self.authenticate(parse_bearer(header))


class StaticTokenAuthenticator(Authenticator):
    """Authenticator backed by a fixed token -> principal table."""

    def __init__(self, tokens: Optional[Mapping[str, str]] = None) -> None:
        self._tokens: Dict[str, str] = dict(tokens or {})

    def add_token(self, token: str, principal_id: str) -> None:
        self._tokens[token] = principal_id

    def authenticate(self, token: str) -> str:
        for known, principal_id in self._tokens.items():
            if hmac.compare_digest(known.encode("utf-8"), token.encode("utf-8")):
                return principal_id
        logger.warning("Rejected request with unknown token")
        raise AuthError("Invalid authorization token")

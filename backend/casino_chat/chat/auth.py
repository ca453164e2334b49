"""Bearer-token authentication for the chat service.

Tokens are opaque strings mapped to identities in ``chat.secrets.yaml``::

    tokens:
      tok-alice:
        user_id: u-alice
        username: alice
      tok-mod:
        user_id: u-mod
        username: pitboss
        is_moderator: true
"""
import logging
from typing import Dict, Optional

from fastapi import Header, HTTPException, Request

from casino_chat.config import TokenGrant

logger = logging.getLogger(__name__)


class TokenVerifier:
    """Resolves bearer tokens to the identities they were issued for."""

    def __init__(self, tokens: Dict[str, TokenGrant]) -> None:
        self._tokens = dict(tokens)

    def verify(self, token: Optional[str]) -> Optional[TokenGrant]:
        if not token:
            return None
        return self._tokens.get(token)

    def __len__(self) -> int:
        return len(self._tokens)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer ...`` header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def current_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> TokenGrant:
    """FastAPI dependency: the identity behind the request's bearer token.

    Raises:
        HTTPException 401: Missing or unknown token.
    """
    verifier: TokenVerifier = request.app.state.verifier
    grant = verifier.verify(bearer_token(authorization))
    if grant is None:
        logger.info("[Auth] Rejected request to %s", request.url.path)
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return grant

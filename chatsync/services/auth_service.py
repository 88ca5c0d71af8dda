"""
Caller identity for the chat core.

The core never manages credentials. It only asks an AuthProvider who the
caller is. Two ways of producing one are supported:

- Signed bearer tokens (HS256 JWT by default), verified with python-jose
- Trusted headers, for deployments behind a gateway that already authenticated
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from jose import ExpiredSignatureError, JWTError, jwt

from chatsync.core.errors import Unauthorized
from chatsync.core.logging import get_logger

logger = get_logger(__name__)


class AuthProvider(Protocol):
    def current_user_id(self) -> Optional[str]:
        ...

    def current_display_name(self) -> Optional[str]:
        ...


@dataclass(frozen=True)
class StaticIdentity:
    """An already-resolved caller."""

    user_id: Optional[str] = None
    display_name: Optional[str] = None

    def current_user_id(self) -> Optional[str]:
        return self.user_id

    def current_display_name(self) -> Optional[str]:
        return self.display_name


class TokenAuthenticator:
    """Issues and verifies signed identity tokens."""

    def __init__(self, secret: str, algorithm: str = "HS256"):
        if not secret:
            logger.warning("AUTH_SECRET is empty - every bearer token will be rejected")
        self.secret = secret
        self.algorithm = algorithm

    def issue(self, user_id: str, display_name: Optional[str] = None, expires_in: int = 3600) -> str:
        """Create a token for ``user_id`` (used by tooling and tests)."""
        now = datetime.now(timezone.utc)
        claims = {
            "sub": user_id,
            "iat": now,
            "exp": now + timedelta(seconds=expires_in),
        }
        if display_name:
            claims["name"] = display_name
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    def identify(self, token: Optional[str]) -> StaticIdentity:
        """
        Verify ``token`` and return the caller it names.

        Raises:
            Unauthorized: Missing, expired, malformed or badly signed token,
            or a token without a subject
        """
        if not token or not self.secret:
            raise Unauthorized("Not authenticated")
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            raise Unauthorized("Session expired")
        except JWTError as e:
            logger.info(f"Rejected token: {e}")
            raise Unauthorized("Invalid token")

        user_id = claims.get("sub")
        if not user_id:
            raise Unauthorized("Token has no subject")
        return StaticIdentity(user_id=user_id, display_name=claims.get("name"))


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()

"""
Authenticated principal for the rating-submission path.

Tokens are issued by the external identity provider; this module only verifies them
and turns the subject into the opaque user hash stored with each rating.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from app.config import JWT_ALGORITHM, JWT_SECRET_KEY
from app.urls import hash_user

# Bearer token security; missing headers are reported as 401 below rather than 403
security = HTTPBearer(auto_error=False)


@dataclass
class Principal:
    subject: str

    @property
    def user_id_hash(self) -> str:
        return hash_user(self.subject)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_access_token(subject: str, expires_in: timedelta = timedelta(hours=1)) -> str:
    """Issue a token the way the identity provider does. Used by tests and local tooling."""
    expire = datetime.now(timezone.utc) + expires_in
    return jwt.encode({"sub": subject, "exp": expire}, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    """
    Raises:
        HTTPException: 401 when the token is expired, malformed or has no subject
    """
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise _unauthorized("Token expired. Please refresh your session.")
    except JWTError:
        raise _unauthorized("Invalid token. Please log in again.")

    if not payload.get("sub"):
        raise _unauthorized("Token has no subject.")
    return payload


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Principal:
    """Dependency for routes that require an authenticated principal."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise _unauthorized("Authorization required. Please log in to submit ratings.")
    payload = decode_token(credentials.credentials)
    return Principal(subject=str(payload["sub"]))

"""
JWT authentication for the flags & experiments API.

Feature-gated clients call the evaluation, assignment and conversion routes
with any valid token; flag and experiment administration requires the
"admin" role.
"""

from datetime import datetime, timedelta
from typing import Optional
from fastapi import HTTPException, Security, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import BaseModel

from fitflags.config import settings


security_scheme = HTTPBearer(
    scheme_name="Bearer",
    description="JWT token authentication. Get a token from POST /auth/token",
    auto_error=False,
)


class TokenData(BaseModel):
    """Decoded token information available in routes."""
    user_id: str
    role: str
    exp: datetime


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user_id: str
    role: str


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"}
    )


def create_access_token(
    user_id: str,
    role: str = "user",
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a signed access token.

    Example:
        token = create_access_token("user-123", role="admin")
    """
    issued_at = datetime.utcnow()
    expire = issued_at + (expires_delta or timedelta(minutes=settings.jwt_expiration_minutes))
    payload = {
        "sub": user_id,
        "role": role,
        "exp": expire,
        "iat": issued_at,
        "type": "access"
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> TokenData:
    """
    Decode and validate a token.

    Raises:
        HTTPException: 401 if the token is invalid, expired or has no subject
    """
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        raise _unauthorized(f"Invalid or expired token: {str(e)}")

    user_id = payload.get("sub")
    if user_id is None:
        raise _unauthorized("Invalid token: missing subject")

    exp = payload.get("exp")
    return TokenData(
        user_id=user_id,
        role=payload.get("role", "user"),
        exp=datetime.utcfromtimestamp(exp) if exp else datetime.utcnow()
    )


async def verify_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security_scheme)
) -> TokenData:
    """FastAPI dependency that validates the bearer token."""
    if not credentials:
        raise _unauthorized("Missing authentication token")
    return decode_token(credentials.credentials)


async def require_admin(
    current_user: TokenData = Depends(verify_token)
) -> TokenData:
    """FastAPI dependency for flag and experiment administration."""
    if current_user.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_user

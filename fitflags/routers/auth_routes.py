"""
Token endpoint.

Identity management lives outside this service; the accounts below only
exist so operators and client apps can mint tokens in development.
"""

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field
from passlib.context import CryptContext

from fitflags.auth import create_access_token, TokenResponse
from fitflags.config import settings

router = APIRouter(
    prefix="/auth",
    tags=["authentication"]
)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1)


# Development accounts: flag administrator and a client application.
SERVICE_ACCOUNTS = {
    "admin": {
        "password_hash": pwd_context.hash("admin123"),
        "role": "admin"
    },
    "fitness-app": {
        "password_hash": pwd_context.hash("client123"),
        "role": "user"
    },
}


@router.post("/token", response_model=TokenResponse)
async def login(request: LoginRequest):
    """
    Authenticate and receive a JWT token.

    **Development credentials:**
    - Admin: username=`admin`, password=`admin123`
    - Client: username=`fitness-app`, password=`client123`
    """
    account = SERVICE_ACCOUNTS.get(request.username)
    if not account or not pwd_context.verify(request.password, account["password_hash"]):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
            headers={"WWW-Authenticate": "Bearer"}
        )

    return TokenResponse(
        access_token=create_access_token(user_id=request.username, role=account["role"]),
        token_type="bearer",
        expires_in=settings.jwt_expiration_minutes * 60,
        user_id=request.username,
        role=account["role"]
    )

"""
Regulation Engine - Authentication Seam

Identity is issued elsewhere. This module only verifies HS256 bearer
tokens and hands the `sub` claim to the routers as the user id.
Internal scheduler endpoints use a shared key header instead.
"""
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import INTERNAL_API_KEY, JWT_ALGORITHM, JWT_SECRET_KEY

ACCESS_TOKEN_EXPIRE_HOURS = 24

# Bearer token security
security = HTTPBearer()


def create_access_token(user_id: str, expires_in: Optional[timedelta] = None) -> str:
    """Issue a token. Used by tooling and tests; production tokens come from the identity service."""
    expire = datetime.utcnow() + (expires_in or timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS))
    return jwt.encode({"sub": user_id, "exp": expire}, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """
    Dependency returning the authenticated user id.
    Expired or malformed tokens are rejected by jose during decode.
    """
    payload = decode_token(credentials.credentials)
    user_id = payload.get("sub") if payload else None
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id


async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for scheduler endpoints."""
    if x_internal_key != INTERNAL_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True

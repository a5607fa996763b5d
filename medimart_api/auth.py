# medimart_api/auth.py

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from medimart_api import settings

logger = logging.getLogger(__name__)

# JWT Configuration
ALGORITHM = "HS256"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")


class Role(str, Enum):
    CUSTOMER = "CUSTOMER"
    STAFF = "STAFF"
    ADMIN = "ADMIN"


STAFF_ROLES = {Role.STAFF.value, Role.ADMIN.value}


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """
    Create a JWT access token with optional expiration.

    Args:
        data (dict): Claims to encode. ``sub`` carries the user id and ``role`` the user role.
        expires_delta (timedelta, optional): Token lifetime. Defaults to ACCESS_TOKEN_EXPIRE_MINUTES.

    Returns:
        str: The encoded JWT.
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, str(settings.SECRET_KEY), algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """
    Decodes a JWT and returns the user it identifies.

    Raises:
        JWTError: If the token is malformed, expired or signed with another key.
        ValueError: If the token carries no subject.
    """
    payload = jwt.decode(token, str(settings.SECRET_KEY), algorithms=[ALGORITHM])
    user_id = payload.get("sub")
    if not user_id:
        raise ValueError("Token has no subject")
    return {"user_id": str(user_id), "role": payload.get("role", Role.CUSTOMER.value)}


# Dependency to get current user
async def get_current_user(
    token: Annotated[str, Depends(oauth2_scheme)]
) -> dict:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid authentication credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        return decode_access_token(token)
    except (JWTError, ValueError):
        raise credentials_exception


# Dependency to get current staff or admin user
async def get_current_staff_user(
    user: Annotated[dict, Depends(get_current_user)]
) -> dict:
    if user["role"] not in STAFF_ROLES:
        raise HTTPException(status_code=403, detail="Insufficient permissions.")
    return user


def is_staff(user: dict) -> bool:
    return user.get("role") in STAFF_ROLES

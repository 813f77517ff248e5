"""
STAFF AUTHENTICATION

Billing staff routes take a bearer JWT (HS256, PyJWT) whose payload carries
`user_id` and `role`. Policy, job and integrity routes additionally need one
of ADMIN_ROLES. The public /pay/{token} routes do not use this module.
"""

from datetime import datetime, timedelta
from typing import Optional
import jwt
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import os

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me-billing-engine-secret")
ALGORITHM = "HS256"
TOKEN_LIFETIME = timedelta(minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30")))

ADMIN_ROLES = ("admin", "accountant")

bearer = HTTPBearer()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"}
    )


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    claims = dict(data)
    claims["exp"] = datetime.utcnow() + (expires_delta if expires_delta is not None else TOKEN_LIFETIME)
    claims["type"] = "access"
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        claims = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Session expired. Please sign in again.")
    except jwt.InvalidTokenError:
        raise _unauthorized("Could not validate credentials")

    if claims.get("type") != "access" or not claims.get("user_id"):
        raise _unauthorized("Invalid authentication credentials")
    return claims


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(bearer)) -> dict:
    return decode_access_token(credentials.credentials)


async def get_admin_user(current_user: dict = Depends(get_current_user)) -> dict:
    """Staff allowed to change billing policy and run housekeeping jobs"""
    if current_user.get("role") not in ADMIN_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Billing administration requires an admin or accountant role"
        )
    return current_user

"""
Bearer token verification.

Tokens are issued by the login service (OTP flow) and carry the user id in ``userId``
(or ``sub``) and an optional ``role`` claim. This module only verifies them.
"""
import logging
import os
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from errors import AuthenticationError, PermissionDeniedError

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    id: str
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def decode_token(token: str) -> CurrentUser:
    secret = os.getenv("JWT_SECRET")
    if not secret:
        raise AuthenticationError("Authentication is not configured")
    algorithm = os.getenv("JWT_ALGORITHM", "HS256")
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.info("Rejected token: %s", e)
        raise AuthenticationError("Invalid or expired token")

    user_id = payload.get("userId") or payload.get("sub")
    if not user_id:
        raise AuthenticationError("Token carries no user id")
    return CurrentUser(id=str(user_id), role=payload.get("role"))


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> CurrentUser:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Authorization token required")
    return decode_token(credentials.credentials)


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise PermissionDeniedError()
    return user

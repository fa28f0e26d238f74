"""Authentication utilities."""
from dataclasses import dataclass
from typing import Optional
from fastapi import Depends, Header
from jose import jwt, JWTError, ExpiredSignatureError
from sqlalchemy.orm import Session
import logging

from config import JWT_SECRET, JWT_ALGORITHM
from database import get_db
from errors import Forbidden, Unauthorized
from models import User
from monitoring import auth_failures_counter, auth_attempts_counter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrentUser:
    """Identity carried by a verified access token."""
    id: int
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def decode_token(token: str) -> dict:
    """Decode and verify a JWT, raising JWTError on failure."""
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])


def verify_token(authorization: Optional[str] = Header(None)) -> CurrentUser:
    """
    Verify the bearer token of a request.

    Args:
        authorization: Authorization header value

    Returns:
        The authenticated user

    Raises:
        Unauthorized: If token is invalid or missing
    """
    auth_attempts_counter.add(1, {"type": "bearer_token"})

    if authorization is None:
        auth_failures_counter.add(1, {"reason": "missing_header"})
        logger.warning("Authentication failed: Missing authorization header")
        raise Unauthorized("Authentication required")

    # Extract token (Bearer <token>)
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        auth_failures_counter.add(1, {"reason": "invalid_format"})
        logger.warning("Authentication failed: Invalid authorization header format")
        raise Unauthorized("Authentication required")

    try:
        payload = decode_token(parts[1])
    except ExpiredSignatureError:
        auth_failures_counter.add(1, {"reason": "expired"})
        raise Unauthorized("Token expired, please log in again")
    except JWTError:
        auth_failures_counter.add(1, {"reason": "invalid_token"})
        logger.warning("Authentication failed: Invalid token")
        raise Unauthorized("Invalid token")

    user_id = payload.get("id")
    if user_id is None:
        auth_failures_counter.add(1, {"reason": "missing_subject"})
        raise Unauthorized("Invalid token")

    return CurrentUser(id=int(user_id), role=payload.get("role", "user"))


def require_admin(
    user: CurrentUser = Depends(verify_token),
    db: Session = Depends(get_db)
) -> CurrentUser:
    """
    Allow only admins whose admin record still exists.

    Raises:
        Forbidden: If the token role or the user record is not admin
    """
    if not user.is_admin:
        raise Forbidden("Admin access required")

    admin = db.query(User).filter(User.id == user.id, User.role == "admin").first()
    if admin is None:
        logger.warning("Admin token without admin record", extra={"user_id": user.id})
        raise Forbidden("Admin record not found")

    return user

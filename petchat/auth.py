import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from jose import jwt as jose_jwt
from sqlalchemy.orm import Session

from .config import ACCESS_TOKEN_EXPIRE_MINUTES, JWT_ALGORITHM, SECRET_KEY
from .database import get_db
from .models import User
from .shared.validators import parse_id

logger = logging.getLogger(__name__)

security = HTTPBearer()


def create_access_token(user_id: int, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a signed access token for a user

    Args:
        user_id: Database id of the user, stored in the ``sub`` claim
        expires_delta: Token lifetime (defaults to ACCESS_TOKEN_EXPIRE_MINUTES)
    """
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {"sub": str(user_id), "exp": expire}
    return jose_jwt.encode(to_encode, SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[dict[str, Any]]:
    """
    Verify and decode an access token

    Returns:
        Decoded payload if valid, None if invalid or expired
    """
    try:
        return jose_jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        return None


def authenticate_token(token: Optional[str], db: Session) -> Optional[User]:
    """Resolve a bearer token to an active user, or None"""
    if not token:
        return None

    payload = decode_access_token(token)
    if not payload:
        return None

    user_id = parse_id(payload.get("sub"))
    if not user_id:
        logger.warning(f"⚠️ Token missing user ID claim. Available claims: {list(payload.keys())}")
        return None

    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_active:
        logger.warning(f"⚠️ Token for unknown or inactive user {user_id}")
        return None
    return user


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Get current user from bearer token"""

    if not credentials:
        logger.error("❌ No credentials provided")
        raise HTTPException(
            status_code=401,
            detail="Not authenticated. Please provide a valid Bearer token in the Authorization header.",
        )

    user = authenticate_token(credentials.credentials, db)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token or user not active.")

    logger.debug(f"✅ User authenticated: {user.email}")
    return user

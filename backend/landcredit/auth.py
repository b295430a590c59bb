"""
Land-Change Credit Engine - Authentication Utilities
JWT bearer tokens and the identity dependencies used by the routers
"""
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from .config import ACCESS_TOKEN_EXPIRE_HOURS, ALGORITHM, SECRET_KEY
from .database import get_db
from .models.db_models import UserDB
from .models.domain import Actor, UserRole

# Bearer token security
security = HTTPBearer()


def create_access_token(user_id: str, email: str, role: str = UserRole.CONTRIBUTOR.value) -> str:
    """Create a JWT access token with role claim."""
    expire = datetime.utcnow() + timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS)
    to_encode = {
        "sub": user_id,
        "email": email,
        "role": role,
        "exp": expire
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT token. Expiry is enforced by jose."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> Actor:
    """
    Dependency resolving the bearer token to an Actor.
    The role comes from the user row, not from the token claim.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise credentials_exception

    user_id: str = payload.get("sub")
    if user_id is None:
        raise credentials_exception

    user = db.query(UserDB).filter(UserDB.id == user_id).first()
    if user is None:
        raise credentials_exception

    return Actor(id=user.id, role=user.role, display_name=user.display_name or user.email)


async def require_verifier(actor: Actor = Depends(get_current_actor)) -> Actor:
    """
    Dependency to require verifier role.
    Use this on review-only routes.
    """
    if not actor.is_verifier:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Verifier access required"
        )
    return actor

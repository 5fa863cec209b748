# core/security.py
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Dict, Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from core.billing_utils import utcnow
from core.config import settings
from models.models import MemberRole


# ========================================
# 🔑 JWT / APP CONFIG
# ========================================
SECRET_KEY = settings.SECRET_KEY
ALGORITHM = settings.ALGORITHM or "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = getattr(settings, "ACCESS_TOKEN_EXPIRE_MINUTES", 60)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class Actor:
    user_id: str
    box_id: Optional[int] = None
    role: Optional[str] = None


# ========================================
# 🔑 Token Helpers
# ========================================
def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode JWT and return payload."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token.",
            headers={"WWW-Authenticate": "Bearer"},
        )


# ========================================
# 👤 Authentication & Role Checks
# ========================================
def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Actor:
    """Extract the calling actor from the bearer token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = decode_token(credentials.credentials)
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    box_id = payload.get("box_id")
    return Actor(
        user_id=str(user_id),
        box_id=int(box_id) if box_id is not None else None,
        role=payload.get("role"),
    )


def require_box_owner(box_id: int, actor: Actor) -> Actor:
    """Only the owner of the box may manage its billing."""
    if actor.box_id != box_id or actor.role != MemberRole.OWNER.value:
        raise HTTPException(status_code=403, detail="Only box owners can manage billing.")
    return actor


def create_token_for_actor(user_id: str, box_id: int, role: str = MemberRole.OWNER.value) -> str:
    return create_access_token({"sub": user_id, "box_id": box_id, "role": role})

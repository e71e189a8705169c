"""
auth.py – bearer-token guards for the HP exam portal

Tokens are minted by the upstream backend; the portal only verifies them,
reads the caller's role, and forwards the raw token on every upstream call.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from config import ADMIN_ROLES, JWT_ALGORITHM, SECRET_KEY

TOKEN_EXPIRE_DAYS = 7


# ── JWT helpers ───────────────────────────────────────────────────────────────

def create_access_token(
    user_id: int,
    email: str,
    role: str = "student",
    expires_in: Optional[timedelta] = None,
) -> str:
    """Mint a token in the backend's format (used by local tooling and tests)."""
    expire = datetime.now(timezone.utc) + (expires_in or timedelta(days=TOKEN_EXPIRE_DAYS))
    payload = {
        "sub":   str(user_id),
        "email": email,
        "role":  role,
        "exp":   expire,
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None


def _user_from_payload(payload: dict, token: str) -> Optional[dict]:
    sub = payload.get("sub")
    if sub is None:
        return None
    return {
        "user_id": str(sub),
        "email":   payload.get("email", ""),
        "role":    payload.get("role") or "student",
        "token":   token,
    }


# ── FastAPI security scheme ───────────────────────────────────────────────────

_bearer = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> dict:
    """Dependency: raises HTTP 401 if token is missing or invalid.
    Returns ``{"user_id": str, "email": str, "role": str, "token": str}``."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = decode_token(credentials.credentials)
    user = _user_from_payload(payload, credentials.credentials) if payload else None
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> Optional[dict]:
    """Dependency: returns user dict if token valid, else None (no error raised)."""
    if not credentials:
        return None
    payload = decode_token(credentials.credentials)
    if not payload:
        return None
    return _user_from_payload(payload, credentials.credentials)


def require_admin(current_user: dict = Depends(get_current_user)) -> dict:
    """Dependency: raises HTTP 403 unless the caller has an admin role."""
    if current_user["role"] not in ADMIN_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")
    return current_user

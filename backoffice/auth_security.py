from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from passlib.context import CryptContext

from .config import JWT_ALGORITHM, JWT_EXPIRE_MINUTES, JWT_SECRET

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@dataclass(frozen=True)
class TokenClaims:
    email: str
    role: str


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str | None) -> bool:
    # hash absent ou illisible (compte importé) : refus simple
    if not password_hash:
        return False
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        return False


def create_access_token(email: str, role: str, now: datetime | None = None) -> str:
    """
    Jeton d'accès : `sub` = e-mail du compte, `role` = user/admin.
    Datetime timezone-aware pour éviter les décalages sur `iat` / `exp`.
    """
    now = now or datetime.now(timezone.utc)
    expire = now + timedelta(minutes=JWT_EXPIRE_MINUTES)

    payload: dict[str, Any] = {
        "sub": email,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def clean_token(raw: str | None) -> str:
    """Retire espaces, guillemets et un éventuel préfixe `Bearer` collé par le client."""
    token = (raw or "").strip().strip('"').strip("'")
    if token.lower().startswith("bearer "):
        token = token[7:].strip()
    return token


def read_token(raw: str | None) -> TokenClaims | None:
    token = clean_token(raw)
    if not token:
        return None
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None

    email = payload.get("sub")
    if not isinstance(email, str) or not email:
        return None
    return TokenClaims(email=email, role=str(payload.get("role") or "user"))

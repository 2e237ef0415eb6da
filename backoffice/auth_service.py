from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from .auth_models import Account, Role
from .auth_security import hash_password, verify_password
from .db import db_session
from .errors import ConflictError, ValidationError
from .logging_config import mask_email

logger = logging.getLogger(__name__)


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def create_account(
    email: str,
    password: str,
    first_name: str = "",
    last_name: str = "",
    role: Role = Role.USER,
) -> str:
    email = normalize_email(email)
    if not email or not password:
        raise ValidationError("L'email et le mot de passe sont obligatoires.")

    with db_session() as s:
        exists = s.execute(select(Account).where(Account.email == email)).scalar_one_or_none()
        if exists:
            raise ConflictError("Un compte existe déjà pour cet email.")

        a = Account(
            email=email,
            password_hash=hash_password(password),
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            role=role,
            is_active=True,
        )
        s.add(a)
        s.flush()
        logger.info("Compte créé: %s (%s)", mask_email(email), role.value)
        return a.id


def authenticate(email: str, password: str) -> Account | None:
    email = normalize_email(email)
    with db_session() as s:
        a = s.execute(select(Account).where(Account.email == email)).scalar_one_or_none()
        if not a or not a.is_active:
            return None
        if not verify_password(password, a.password_hash):
            return None
        return a


def find_by_email(email: str | None, session: Session | None = None) -> Account | None:
    """Annuaire des comptes : None si aucun compte actif pour cet email.

    Avec `session`, la lecture se fait dans la transaction de l'appelant.
    """
    email = normalize_email(email)
    if not email:
        return None
    if session is not None:
        return _active_account(session, email)
    with db_session() as s:
        return _active_account(s, email)


def _active_account(s: Session, email: str) -> Account | None:
    a = s.execute(select(Account).where(Account.email == email)).scalar_one_or_none()
    if a is None or not a.is_active:
        return None
    return a

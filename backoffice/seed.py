from __future__ import annotations

import logging

from sqlalchemy import select

from .auth_models import Account, Role
from .auth_security import hash_password
from .config import ADMIN_EMAIL, ADMIN_PASSWORD
from .db import Base, db_session, engine
from .logging_config import mask_email

# Import pour enregistrer les tables métier dans le metadata
from . import models  # noqa: F401

logger = logging.getLogger(__name__)


def init_db(bind=None) -> None:
    """Crée les tables si elles n'existent pas."""
    Base.metadata.create_all(bind=bind or engine)


def seed_admin(email: str | None = None, password: str | None = None) -> str | None:
    """
    Compte administrateur (idempotent) :
    - rien à faire sans email ou mot de passe configurés
    - un compte existant est promu admin, son mot de passe n'est pas touché
    """
    email = (email or ADMIN_EMAIL).strip().lower()
    password = password or ADMIN_PASSWORD
    if not email or not password:
        logger.info("ADMIN_EMAIL / ADMIN_PASSWORD absents, pas de compte admin créé")
        return None

    with db_session() as s:
        a = s.execute(select(Account).where(Account.email == email)).scalar_one_or_none()
        if a is None:
            a = Account(
                email=email,
                password_hash=hash_password(password),
                first_name="Admin",
                last_name="",
                role=Role.ADMIN,
                is_active=True,
            )
            s.add(a)
            s.flush()
            logger.info("Compte admin créé: %s", mask_email(email))
        elif a.role != Role.ADMIN:
            a.role = Role.ADMIN
            logger.info("Compte %s promu admin", mask_email(email))
        return a.id

from __future__ import annotations

import datetime as dt
import enum
import uuid

from sqlalchemy import Boolean, DateTime, Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


def new_uuid() -> str:
    return str(uuid.uuid4())


class Role(enum.Enum):
    ADMIN = "admin"
    USER = "user"


class Account(Base):
    """
    Compte utilisateur (annuaire des comptes).
    - email unique, en minuscules : c'est l'identité du client côté rendez-vous
    - password_hash bcrypt (passlib)
    """
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    email: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    role: Mapped[Role] = mapped_column(Enum(Role), default=Role.USER, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.now, nullable=False)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

from __future__ import annotations

import enum
import uuid
import datetime as dt

from sqlalchemy import Boolean, Date, DateTime, Enum, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def new_uuid() -> str:
    return str(uuid.uuid4())


class AppointmentStatus(enum.Enum):
    PENDING = "En attente"
    CONFIRMED = "Confirmé"
    COMPLETED = "Terminé"
    CANCELLED = "Annulé"
    EXPIRED = "Expiré"


class AdminOpinion(enum.Enum):
    FAVORABLE = "Favorable"
    UNFAVORABLE = "Défavorable"


class CancelledBy(enum.Enum):
    ADMIN = "admin"
    USER = "user"
    SYSTEM = "system"


class StepName(enum.Enum):
    ADMISSION = "DEMANDE ADMISSION"
    VISA = "DEMANDE VISA"
    TRAVEL = "PREPARATIF VOYAGE"


class StepStatus(enum.Enum):
    PENDING = "En attente"
    IN_PROGRESS = "En cours"
    COMPLETED = "Terminé"
    REJECTED = "Rejeté"
    CANCELLED = "Annulé"


class ProcedureStatus(enum.Enum):
    IN_PROGRESS = "En cours"
    COMPLETED = "Terminée"
    REJECTED = "Refusée"
    CANCELLED = "Annulée"


# Statuts qui n'occupent plus de créneau
FREEING_STATUSES = (AppointmentStatus.CANCELLED, AppointmentStatus.EXPIRED)
TERMINAL_STATUSES = (AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.EXPIRED)

# Ordre logique des étapes d'une procédure
STEP_ORDER = (StepName.ADMISSION, StepName.VISA, StepName.TRAVEL)
FINAL_STEP_STATUSES = (StepStatus.COMPLETED, StepStatus.REJECTED, StepStatus.CANCELLED)
FINAL_PROCEDURE_STATUSES = (ProcedureStatus.COMPLETED, ProcedureStatus.REJECTED, ProcedureStatus.CANCELLED)

EDUCATION_LEVELS = ("Bac", "Bac+1", "Bac+2", "Licence", "Master I", "Master II", "Doctorat")
DESTINATIONS = ("France", "Russie", "Chypre", "Chine", "Maroc", "Algérie", "Turquie", "Autre")
FILIERES = ("Informatique", "Médecine", "Droit", "Commerce", "Ingénierie", "Architecture", "Autre")
OTHER = "Autre"

# Les Enum SQLAlchemy stockent le *nom* du membre
_ACTIVE_SLOT = text("status NOT IN ('CANCELLED', 'EXPIRED')")
_CONFIRMED = text("status = 'CONFIRMED'")


class Appointment(Base):
    __tablename__ = "rendez_vous"
    __table_args__ = (
        # Filet de sécurité du check applicatif (lecture puis écriture, non atomique) :
        # un seul rendez-vous actif par créneau, un seul confirmé par e-mail
        Index("uq_rdv_creneau_actif", "date", "time", unique=True,
              sqlite_where=_ACTIVE_SLOT, postgresql_where=_ACTIVE_SLOT),
        Index("uq_rdv_email_confirme", "email", unique=True,
              sqlite_where=_CONFIRMED, postgresql_where=_CONFIRMED),
        Index("ix_rdv_status_date", "status", "date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)

    first_name: Mapped[str] = mapped_column(String(50), nullable=False)
    last_name: Mapped[str] = mapped_column(String(50), nullable=False)
    email: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    telephone: Mapped[str] = mapped_column(String(20), nullable=False)

    destination: Mapped[str] = mapped_column(String(100), nullable=False)
    destination_autre: Mapped[str | None] = mapped_column(String(100), nullable=True)
    niveau_etude: Mapped[str] = mapped_column(String(20), nullable=False)
    filiere: Mapped[str] = mapped_column(String(100), nullable=False)
    filiere_autre: Mapped[str | None] = mapped_column(String(100), nullable=True)

    date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    time: Mapped[str] = mapped_column(String(5), nullable=False)

    status: Mapped[AppointmentStatus] = mapped_column(
        Enum(AppointmentStatus), default=AppointmentStatus.CONFIRMED, nullable=False
    )
    avis_admin: Mapped[AdminOpinion | None] = mapped_column(Enum(AdminOpinion), nullable=True)

    cancelled_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_by: Mapped[CancelledBy | None] = mapped_column(Enum(CancelledBy), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.now, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.now, nullable=False)

    def __repr__(self) -> str:
        return f"Appointment({self.date} {self.time}, {self.status.name})"


class Procedure(Base):
    __tablename__ = "procedures"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    appointment_id: Mapped[str] = mapped_column(ForeignKey("rendez_vous.id"), nullable=False, unique=True)

    # Copie des données client au moment de la création
    first_name: Mapped[str] = mapped_column(String(50), nullable=False)
    last_name: Mapped[str] = mapped_column(String(50), nullable=False)
    email: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    telephone: Mapped[str] = mapped_column(String(20), nullable=False)
    destination: Mapped[str] = mapped_column(String(100), nullable=False)
    destination_autre: Mapped[str | None] = mapped_column(String(100), nullable=True)
    filiere: Mapped[str] = mapped_column(String(100), nullable=False)
    filiere_autre: Mapped[str | None] = mapped_column(String(100), nullable=True)
    niveau_etude: Mapped[str] = mapped_column(String(20), nullable=False)

    status: Mapped[ProcedureStatus] = mapped_column(
        Enum(ProcedureStatus), default=ProcedureStatus.IN_PROGRESS, nullable=False
    )
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    deletion_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.now, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.now, nullable=False)

    steps: Mapped[list["ProcedureStep"]] = relationship(
        back_populates="procedure",
        cascade="all, delete-orphan",
        order_by="ProcedureStep.position",
        lazy="selectin",
    )

    def step(self, name: StepName) -> "ProcedureStep | None":
        return next((s for s in self.steps if s.name == name), None)

    def __repr__(self) -> str:
        return f"Procedure({self.email}, {self.status.name})"


class ProcedureStep(Base):
    __tablename__ = "procedure_steps"
    __table_args__ = (UniqueConstraint("procedure_id", "name", name="uq_step_procedure_nom"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    procedure_id: Mapped[str] = mapped_column(ForeignKey("procedures.id"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    name: Mapped[StepName] = mapped_column(Enum(StepName), nullable=False)
    status: Mapped[StepStatus] = mapped_column(Enum(StepStatus), default=StepStatus.PENDING, nullable=False)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.now, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.now, nullable=False)
    completed_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)

    procedure: Mapped["Procedure"] = relationship(back_populates="steps")


class ContactMessage(Base):
    __tablename__ = "contact_messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    first_name: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    email: Mapped[str] = mapped_column(String(100), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    admin_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    responded_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)
    responded_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.now, nullable=False)

"""Données et constructeurs partagés par les tests."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime

from backoffice.appointments import AppointmentRequest
from backoffice.db import db_session
from backoffice.models import Appointment, AppointmentStatus

# lundi 4 mars 2030, jour ouvré sans fermeture
MONDAY = date(2030, 3, 4)
TUESDAY = date(2030, 3, 5)
SATURDAY = date(2030, 3, 9)
NOW = datetime(2030, 3, 4, 8, 0)

USER_EMAIL = "awa.diallo@example.com"
OTHER_EMAIL = "moussa.keita@example.com"
ADMIN_EMAIL = "admin@paname.test"
PASSWORD = "secret123"


@dataclass
class SentMail:
    to: str
    subject: str
    html: str
    reply_to: str | None = None


@dataclass
class RecordingTransport:
    """Transport mail en mémoire ; `fail` simule une panne du fournisseur."""

    fail: bool = False
    sent: list[SentMail] = field(default_factory=list)

    def send(self, to: str, subject: str, html: str, reply_to: str | None = None) -> bool:
        if self.fail:
            raise RuntimeError("SMTP indisponible")
        self.sent.append(SentMail(to, subject, html, reply_to))
        return True

    def subjects(self, to: str | None = None) -> list[str]:
        return [m.subject for m in self.sent if to is None or m.to == to]


def booking(**overrides) -> AppointmentRequest:
    data = dict(
        first_name="Awa",
        last_name="Diallo",
        email=USER_EMAIL,
        telephone="+22376000000",
        destination="France",
        niveau_etude="Licence",
        filiere="Informatique",
        date=TUESDAY.isoformat(),
        time="10:00",
    )
    data.update(overrides)
    return AppointmentRequest(**data)


def insert_appointment(**overrides) -> Appointment:
    """Insère un rendez-vous sans passer par les règles métier."""
    data = dict(
        first_name="Awa",
        last_name="Diallo",
        email=USER_EMAIL,
        telephone="+22376000000",
        destination="France",
        niveau_etude="Licence",
        filiere="Informatique",
        date=TUESDAY,
        time="10:00",
        status=AppointmentStatus.CONFIRMED,
        created_at=NOW,
        updated_at=NOW,
    )
    data.update(overrides)
    with db_session() as s:
        rdv = Appointment(**data)
        s.add(rdv)
    return rdv


def reload(model, obj_id):
    with db_session() as s:
        return s.get(model, obj_id)

"""Calendrier des créneaux : jours ouvrés, créneaux libres, dates réservables.

Lecture seule. Les erreurs de la source des jours fériés ne remontent jamais :
on retombe sur la liste fixe des fermetures de l'agence.
"""
from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo

import holidays
from sqlalchemy import and_, func, select

from .config import BUSINESS_TIMEZONE, HOLIDAY_COUNTRY
from .db import db_session
from .errors import ValidationError
from .models import Appointment, FREEING_STATUSES

logger = logging.getLogger(__name__)


MAX_SLOTS_PER_DAY = 24
DEFAULT_HORIZON_DAYS = 60

# 16 créneaux de 30 minutes, de 09:00 à 16:30
TIME_SLOTS: tuple[str, ...] = tuple(f"{h:02d}:{m:02d}" for h in range(9, 17) for m in (0, 30))

# Fermetures propres à l'agence (MM-DD)
FIXED_CLOSURES = ("01-01", "05-01", "09-22", "12-25")

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


# =========================
# Horloge
# =========================
def local_now() -> datetime:
    """Heure locale de l'agence, sans tzinfo (les dates sont stockées naïves)."""
    return datetime.now(ZoneInfo(BUSINESS_TIMEZONE)).replace(tzinfo=None)


# =========================
# Jours fériés
# =========================
def _fixed_closures(year: int) -> set[date]:
    return {date.fromisoformat(f"{year}-{md}") for md in FIXED_CLOSURES}


def _public_holidays(year: int) -> set[date]:
    return set(holidays.country_holidays(HOLIDAY_COUNTRY, years=year).keys())


@lru_cache(maxsize=16)
def holidays_for_year(year: int) -> frozenset[date]:
    days = _fixed_closures(year)
    try:
        days |= _public_holidays(year)
    except Exception:
        logger.warning("Jours fériés %s/%s indisponibles, liste fixe utilisée", HOLIDAY_COUNTRY, year, exc_info=True)
    return frozenset(days)


def is_holiday(day: date) -> bool:
    return day in holidays_for_year(day.year)


def is_weekend(day: date) -> bool:
    return day.weekday() >= 5


def is_business_day(day: date) -> bool:
    return not is_weekend(day) and not is_holiday(day)


# =========================
# Parsing / validation
# =========================
def parse_date(value: date | str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise ValidationError("Format de date invalide (AAAA-MM-JJ)", {"date": value}) from None


def is_valid_slot(time: str | None) -> bool:
    return time in TIME_SLOTS


def slot_minutes(time: str) -> int:
    h, m = time.split(":")
    return int(h) * 60 + int(m)


def validate_time_slot(time: str | None) -> str:
    if not time or not _TIME_RE.match(time):
        raise ValidationError("Format d'heure invalide (HH:MM)", {"time": time})
    if not is_valid_slot(time):
        raise ValidationError("Créneau horaire invalide (09h00-16h30, toutes les 30 minutes)", {"time": time})
    return time


def validate_booking_date(day: date, today: date | None = None) -> None:
    """Week-end, jour férié ou date passée -> ValidationError."""
    today = today or local_now().date()
    if is_weekend(day):
        raise ValidationError("Les réservations sont fermées le week-end", {"date": day.isoformat()})
    if is_holiday(day):
        raise ValidationError("Les réservations sont fermées les jours fériés", {"date": day.isoformat()})
    if day < today:
        raise ValidationError("Impossible de réserver à une date passée", {"date": day.isoformat()})


def slot_datetime(day: date, time: str) -> datetime:
    return datetime.combine(day, datetime.strptime(time, "%H:%M").time())


# =========================
# Occupation (avec session)
# =========================
def _occupying(day: date):
    return and_(Appointment.date == day, Appointment.status.not_in(FREEING_STATUSES))


def occupied_times(s, day: date) -> set[str]:
    return set(s.scalars(select(Appointment.time).where(_occupying(day))))


def count_for_date(s, day: date) -> int:
    return s.scalar(select(func.count(Appointment.id)).where(_occupying(day))) or 0


def slot_taken(s, day: date, time: str, exclude_id: str | None = None) -> bool:
    q = select(Appointment.id).where(_occupying(day), Appointment.time == time)
    if exclude_id:
        q = q.where(Appointment.id != exclude_id)
    return s.execute(q.limit(1)).first() is not None


# =========================
# API publique
# =========================
def list_slots_for_date(day: date, now: datetime | None = None) -> list[str]:
    """Créneaux libres ; pour aujourd'hui, seulement ceux strictement après `now`."""
    if not is_business_day(day):
        return []
    now = now or local_now()

    with db_session() as s:
        taken = occupied_times(s, day)

    slots = [t for t in TIME_SLOTS if t not in taken]
    if day == now.date():
        current = now.hour * 60 + now.minute
        slots = [t for t in slots if slot_minutes(t) > current]
    return slots


def list_bookable_dates(horizon_days: int = DEFAULT_HORIZON_DAYS, today: date | None = None) -> list[date]:
    today = today or local_now().date()
    candidates = [today + timedelta(days=i) for i in range(horizon_days)]
    candidates = [d for d in candidates if is_business_day(d)]
    if not candidates:
        return []

    with db_session() as s:
        rows = s.execute(
            select(Appointment.date, func.count(Appointment.id))
            .where(
                Appointment.date >= candidates[0],
                Appointment.date <= candidates[-1],
                Appointment.status.not_in(FREEING_STATUSES),
            )
            .group_by(Appointment.date)
        ).all()
    counts = {d: n for d, n in rows}
    return [d for d in candidates if counts.get(d, 0) < MAX_SLOTS_PER_DAY]


def is_slot_free(day: date, time: str, exclude_id: str | None = None) -> bool:
    with db_session() as s:
        return not slot_taken(s, day, time, exclude_id)

"""
Cycle de vie des rendez-vous.

Machine à états :
    En attente -> Confirmé | Annulé | Expiré
    Confirmé   -> Terminé  | Annulé | Expiré
Terminé, Annulé et Expiré sont terminaux. Un rendez-vous n'est jamais supprimé.

Toutes les vérifications ont lieu avant la moindre écriture ; les
notifications partent après le commit et leurs échecs sont seulement journalisés.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from .auth_service import find_by_email, normalize_email
from .calendar import (
    MAX_SLOTS_PER_DAY,
    count_for_date,
    local_now,
    parse_date,
    slot_datetime,
    slot_taken,
    validate_booking_date,
    validate_time_slot,
)
from .db import Page, check_paging, db_session
from .errors import ConflictError, NotFoundError, PermissionDeniedError, StateError, ValidationError
from .logging_config import mask_email
from .models import (
    AdminOpinion,
    Appointment,
    AppointmentStatus,
    CancelledBy,
    DESTINATIONS,
    EDUCATION_LEVELS,
    FILIERES,
    FREEING_STATUSES,
    OTHER,
)
from .notifications import get_dispatcher

logger = logging.getLogger(__name__)


CANCELLATION_THRESHOLD_HOURS = 2
EXPIRATION_BUFFER_MINUTES = 10
COMPLETION_MAX_AGE_DAYS = 7

DEFAULT_CANCEL_REASON = {
    CancelledBy.ADMIN: "Annulé par l'administrateur",
    CancelledBy.USER: "Annulé par l'utilisateur",
    CancelledBy.SYSTEM: "Annulé automatiquement",
}

ALLOWED_TRANSITIONS: dict[AppointmentStatus, tuple[AppointmentStatus, ...]] = {
    AppointmentStatus.PENDING: (AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED, AppointmentStatus.EXPIRED),
    AppointmentStatus.CONFIRMED: (AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.EXPIRED),
}

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[1-9]\d{1,14}$")

UPDATABLE_FIELDS = frozenset({
    "first_name", "last_name", "email", "telephone",
    "destination", "destination_autre", "filiere", "filiere_autre", "niveau_etude",
    "date", "time", "status", "avis_admin",
})


# =========================
# DTO
# =========================
@dataclass
class AppointmentRequest:
    first_name: str
    last_name: str
    email: str
    telephone: str
    destination: str
    niveau_etude: str
    filiere: str
    date: date | str
    time: str
    destination_autre: str | None = None
    filiere_autre: str | None = None


# =========================
# Règles
# =========================
def is_expired(rdv: Appointment, now: datetime) -> bool:
    """Expiré en base, ou horaire + 10 min dépassé pour un rendez-vous encore actif."""
    if rdv.status == AppointmentStatus.EXPIRED:
        return True
    if rdv.status not in (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED):
        return False
    return now > slot_datetime(rdv.date, rdv.time) + timedelta(minutes=EXPIRATION_BUFFER_MINUTES)


def is_future(rdv: Appointment, now: datetime) -> bool:
    return slot_datetime(rdv.date, rdv.time) > now


def coerce_status(value: AppointmentStatus | str) -> AppointmentStatus:
    if isinstance(value, AppointmentStatus):
        return value
    for st in AppointmentStatus:
        if value in (st.value, st.name):
            return st
    raise ValidationError("Statut invalide", {"status": value})


def coerce_opinion(value: AdminOpinion | str | None) -> AdminOpinion | None:
    if value is None or isinstance(value, AdminOpinion):
        return value
    for op in AdminOpinion:
        if value in (op.value, op.name):
            return op
    raise ValidationError("Avis admin invalide", {"avis_admin": value})


def check_transition(
    rdv: Appointment,
    new_status: AppointmentStatus,
    avis_admin: AdminOpinion | None,
    is_admin: bool,
    now: datetime,
) -> None:
    current = rdv.status
    if new_status not in ALLOWED_TRANSITIONS.get(current, ()):
        raise StateError(f"Transition de statut invalide: {current.value} → {new_status.value}")

    if new_status == AppointmentStatus.CONFIRMED and not is_admin:
        raise PermissionDeniedError("Seuls les administrateurs peuvent confirmer des rendez-vous")
    if new_status != AppointmentStatus.COMPLETED:
        return

    if not is_admin:
        raise PermissionDeniedError("Seuls les administrateurs peuvent marquer un rendez-vous comme terminé")
    if avis_admin is None:
        raise ValidationError("L'avis admin est obligatoire pour terminer un rendez-vous")
    if is_future(rdv, now):
        raise StateError(
            "Impossible de marquer comme terminé un rendez-vous futur. "
            "Seuls les rendez-vous dont la date/heure est passée peuvent être terminés."
        )
    if slot_datetime(rdv.date, rdv.time) < now - timedelta(days=COMPLETION_MAX_AGE_DAYS):
        raise StateError("Impossible de marquer comme terminé un rendez-vous trop ancien (plus d'une semaine)")


def _clean_choice(value: str | None, other: str | None, allowed: tuple[str, ...], label: str) -> tuple[str, str | None]:
    value = (value or "").strip()
    if value == OTHER:
        other = (other or "").strip()
        if not other:
            raise ValidationError(f'La {label} "Autre" nécessite une précision')
        return value, other
    if value not in allowed:
        raise ValidationError(
            f'{label.capitalize()} invalide. Valeurs autorisées: {", ".join(a for a in allowed if a != OTHER)}, ou "Autre"',
            {label: value},
        )
    return value, None


def _clean_email(email: str | None) -> str:
    email = normalize_email(email)
    if not EMAIL_RE.match(email):
        raise ValidationError("Adresse email invalide", {"email": email})
    return email


def _clean_phone(telephone: str | None) -> str:
    phone = re.sub(r"[\s.-]", "", telephone or "")
    if not PHONE_RE.match(phone):
        raise ValidationError("Numéro de téléphone invalide", {"telephone": telephone})
    return phone


def _clean_name(value: str | None, label: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"Le {label} est obligatoire")
    if len(value) > 50:
        raise ValidationError(f"Le {label} ne peut pas dépasser 50 caractères")
    return value


def _clean_level(value: str | None) -> str:
    if value not in EDUCATION_LEVELS:
        raise ValidationError("Niveau d'étude invalide", {"niveau_etude": value})
    return value


def clean_request(req: AppointmentRequest) -> dict[str, Any]:
    destination, destination_autre = _clean_choice(req.destination, req.destination_autre, DESTINATIONS, "destination")
    filiere, filiere_autre = _clean_choice(req.filiere, req.filiere_autre, FILIERES, "filière")
    return {
        "first_name": _clean_name(req.first_name, "prénom"),
        "last_name": _clean_name(req.last_name, "nom"),
        "email": _clean_email(req.email),
        "telephone": _clean_phone(req.telephone),
        "destination": destination,
        "destination_autre": destination_autre,
        "filiere": filiere,
        "filiere_autre": filiere_autre,
        "niveau_etude": _clean_level(req.niveau_etude),
        "date": parse_date(req.date),
        "time": (req.time or "").strip(),
    }


def _check_slot(s, day: date, time: str, now: datetime, exclude_id: str | None = None) -> None:
    validate_booking_date(day, now.date())
    validate_time_slot(time)
    if day == now.date() and slot_datetime(day, time) <= now:
        raise ValidationError("Vous ne pouvez pas réserver un créneau passé", {"time": time})
    if slot_taken(s, day, time, exclude_id):
        raise ConflictError("Ce créneau horaire n'est pas disponible", {"date": day.isoformat(), "time": time})


def _confirmed_for(s, email: str, exclude_id: str | None = None) -> Appointment | None:
    q = select(Appointment).where(Appointment.email == email, Appointment.status == AppointmentStatus.CONFIRMED)
    if exclude_id:
        q = q.where(Appointment.id != exclude_id)
    return s.scalars(q.limit(1)).first()


def _flush(s) -> None:
    try:
        s.flush()
    except IntegrityError:
        # index partiels : créneau actif ou e-mail déjà confirmé
        raise ConflictError("Ce créneau ou ce rendez-vous confirmé existe déjà") from None


def _get_or_404(s, appointment_id: str) -> Appointment:
    rdv = s.get(Appointment, appointment_id)
    if not rdv:
        raise NotFoundError("Rendez-vous non trouvé", {"id": appointment_id})
    return rdv


def _apply_cancel(rdv: Appointment, by: CancelledBy, reason: str | None, now: datetime) -> None:
    rdv.status = AppointmentStatus.CANCELLED
    rdv.cancelled_at = now
    rdv.cancelled_by = by
    rdv.cancellation_reason = (reason or "").strip() or DEFAULT_CANCEL_REASON[by]


def _apply_status(s, rdv: Appointment, new_status: AppointmentStatus, avis: AdminOpinion | None, is_admin: bool, now: datetime) -> None:
    if new_status == AppointmentStatus.CONFIRMED and _confirmed_for(s, rdv.email, exclude_id=rdv.id):
        raise ConflictError("Ce client a déjà un rendez-vous confirmé")

    if new_status == AppointmentStatus.CANCELLED:
        _apply_cancel(rdv, CancelledBy.ADMIN if is_admin else CancelledBy.USER, None, now)
    else:
        rdv.status = new_status
    if new_status == AppointmentStatus.COMPLETED:
        rdv.avis_admin = avis


def _notify(event: str, *args) -> None:
    try:
        getattr(get_dispatcher(), event)(*args)
    except Exception:
        logger.exception("Notification %s non envoyée", event)


def _after_status_change(rdv: Appointment) -> None:
    _notify("appointment_status_update", rdv)
    if rdv.status == AppointmentStatus.COMPLETED and rdv.avis_admin == AdminOpinion.FAVORABLE:
        _create_procedure_if_eligible(rdv)


def _create_procedure_if_eligible(rdv: Appointment) -> None:
    from . import procedures

    try:
        if procedures.find_active_for_email(rdv.email) is not None:
            logger.info("Procédure déjà active pour %s, aucune création", mask_email(rdv.email))
            return
        procedures.create_from_appointment(rdv.id)
    except Exception:
        logger.exception("Création de procédure échouée pour le rendez-vous %s", rdv.id)


# =========================
# Opérations
# =========================
def create(
    req: AppointmentRequest,
    requester_email: str | None,
    is_admin: bool = False,
    now: datetime | None = None,
) -> Appointment:
    """
    Réserve un créneau. Le rendez-vous est créé directement en statut Confirmé.
    Ordre des contrôles : données -> compte -> propriétaire -> calendrier ->
    rendez-vous confirmé existant -> créneau -> capacité du jour.
    """
    now = now or local_now()
    data = clean_request(req)
    email = data["email"]

    with db_session() as s:
        if find_by_email(email, session=s) is None:
            raise PermissionDeniedError("Vous devez avoir un compte pour prendre un rendez-vous.")
        if not is_admin and email != normalize_email(requester_email):
            raise PermissionDeniedError("L'email doit correspondre exactement à votre compte de connexion")

        day, time = data["date"], data["time"]
        validate_booking_date(day, now.date())
        validate_time_slot(time)
        if day == now.date() and slot_datetime(day, time) <= now:
            raise ValidationError("Vous ne pouvez pas réserver un créneau passé", {"time": time})

        existing = _confirmed_for(s, email)
        if existing is not None and is_expired(existing, now):
            # passé sans balayage d'expiration : clos avant la nouvelle réservation
            existing.status = AppointmentStatus.EXPIRED
            existing.updated_at = now
            _flush(s)
            logger.info("Rendez-vous %s expiré à la réservation suivante", existing.id)
            existing = None
        if existing is not None:
            raise ConflictError("Vous avez déjà un rendez-vous confirmé")
        if slot_taken(s, day, time):
            raise ConflictError("Ce créneau horaire n'est pas disponible", {"date": day.isoformat(), "time": time})
        if count_for_date(s, day) >= MAX_SLOTS_PER_DAY:
            raise ConflictError("Tous les créneaux sont complets pour cette date", {"date": day.isoformat()})

        rdv = Appointment(**data, status=AppointmentStatus.CONFIRMED, created_at=now, updated_at=now)
        s.add(rdv)
        _flush(s)

    logger.info("Rendez-vous créé pour %s le %s à %s", mask_email(email), day.isoformat(), time)
    _notify("appointment_confirmation", rdv)
    return rdv


def update_details(
    appointment_id: str,
    patch: dict[str, Any],
    requester_email: str | None,
    is_admin: bool = False,
    now: datetime | None = None,
) -> Appointment:
    unknown = set(patch) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError("Champs non modifiables", {"fields": sorted(unknown)})
    now = now or local_now()
    requester = normalize_email(requester_email)

    with db_session() as s:
        rdv = _get_or_404(s, appointment_id)

        if is_expired(rdv, now):
            raise StateError("Impossible de modifier un rendez-vous expiré")
        if rdv.status == AppointmentStatus.COMPLETED:
            raise StateError("Impossible de modifier un rendez-vous terminé")
        if not is_admin and rdv.email != requester:
            raise PermissionDeniedError("Vous ne pouvez modifier que vos propres rendez-vous")

        changes: dict[str, Any] = {}

        if patch.get("email") is not None:
            new_email = _clean_email(patch["email"])
            if new_email != rdv.email:
                if find_by_email(new_email, session=s) is None:
                    raise PermissionDeniedError("Le nouvel email doit correspondre à un compte existant")
                if not is_admin and new_email != requester:
                    raise PermissionDeniedError("Vous ne pouvez pas changer l'email du rendez-vous")
                changes["email"] = new_email

        new_status = coerce_status(patch["status"]) if patch.get("status") is not None else None
        avis = coerce_opinion(patch.get("avis_admin"))
        if new_status == rdv.status:
            new_status = None
        if new_status is not None:
            check_transition(rdv, new_status, avis, is_admin, now)

        if "date" in patch or "time" in patch:
            day = parse_date(patch["date"]) if patch.get("date") else rdv.date
            time = (patch.get("time") or rdv.time).strip()
            if (day, time) != (rdv.date, rdv.time):
                _check_slot(s, day, time, now, exclude_id=rdv.id)
                changes["date"], changes["time"] = day, time

        for name in ("first_name", "last_name"):
            if patch.get(name) is not None:
                changes[name] = _clean_name(patch[name], "prénom" if name == "first_name" else "nom")
        if patch.get("telephone") is not None:
            changes["telephone"] = _clean_phone(patch["telephone"])
        if patch.get("niveau_etude") is not None:
            changes["niveau_etude"] = _clean_level(patch["niveau_etude"])
        if "destination" in patch or "destination_autre" in patch:
            changes["destination"], changes["destination_autre"] = _clean_choice(
                patch.get("destination") or rdv.destination,
                patch.get("destination_autre", rdv.destination_autre),
                DESTINATIONS,
                "destination",
            )
        if "filiere" in patch or "filiere_autre" in patch:
            changes["filiere"], changes["filiere_autre"] = _clean_choice(
                patch.get("filiere") or rdv.filiere,
                patch.get("filiere_autre", rdv.filiere_autre),
                FILIERES,
                "filière",
            )

        target_email = changes.get("email", rdv.email)
        if "email" in changes and (new_status or rdv.status) == AppointmentStatus.CONFIRMED:
            if _confirmed_for(s, target_email, exclude_id=rdv.id):
                raise ConflictError("Ce client a déjà un rendez-vous confirmé")

        for key, value in changes.items():
            setattr(rdv, key, value)
        if new_status is not None:
            _apply_status(s, rdv, new_status, avis, is_admin, now)
        rdv.updated_at = now
        _flush(s)

    logger.info("Rendez-vous %s modifié (%s)", rdv.id, ", ".join(sorted(changes)) or "statut")
    if new_status is not None:
        _after_status_change(rdv)
    return rdv


def update_status(
    appointment_id: str,
    new_status: AppointmentStatus | str,
    avis_admin: AdminOpinion | str | None = None,
    requester_email: str | None = None,
    is_admin: bool = False,
    now: datetime | None = None,
) -> Appointment:
    """Changement de statut ; confirmer ou terminer reste réservé aux administrateurs."""
    now = now or local_now()
    status = coerce_status(new_status)
    avis = coerce_opinion(avis_admin)

    with db_session() as s:
        rdv = _get_or_404(s, appointment_id)
        if not is_admin and rdv.email != normalize_email(requester_email):
            raise PermissionDeniedError("Vous ne pouvez modifier que vos propres rendez-vous")
        if is_expired(rdv, now):
            raise StateError("Impossible de modifier le statut d'un rendez-vous expiré")
        check_transition(rdv, status, avis, is_admin, now)
        _apply_status(s, rdv, status, avis, is_admin, now)
        rdv.updated_at = now
        _flush(s)

    logger.info("Rendez-vous %s -> %s (par %s)", rdv.id, status.value, mask_email(requester_email))
    _after_status_change(rdv)
    return rdv


def cancel(
    appointment_id: str,
    requester_email: str | None,
    is_admin: bool = False,
    reason: str | None = None,
    now: datetime | None = None,
) -> Appointment:
    now = now or local_now()

    with db_session() as s:
        rdv = _get_or_404(s, appointment_id)

        if is_expired(rdv, now):
            raise StateError("Impossible d'annuler un rendez-vous expiré")
        if rdv.status == AppointmentStatus.COMPLETED:
            raise StateError("Impossible d'annuler un rendez-vous terminé")
        if rdv.status == AppointmentStatus.CANCELLED:
            raise StateError("Ce rendez-vous est déjà annulé")

        if not is_admin:
            if rdv.email != normalize_email(requester_email):
                raise PermissionDeniedError("Vous ne pouvez annuler que vos propres rendez-vous")
            if rdv.status != AppointmentStatus.CONFIRMED:
                raise StateError("Vous ne pouvez annuler que les rendez-vous confirmés")
            if slot_datetime(rdv.date, rdv.time) - now <= timedelta(hours=CANCELLATION_THRESHOLD_HOURS):
                raise StateError(
                    "Vous ne pouvez plus annuler votre rendez-vous à moins de 2 heures de l'heure prévue"
                )

        _apply_cancel(rdv, CancelledBy.ADMIN if is_admin else CancelledBy.USER, reason, now)
        rdv.updated_at = now

    logger.info("Rendez-vous %s annulé par %s", rdv.id, rdv.cancelled_by.value)
    _notify("appointment_status_update", rdv)
    return rdv


def confirm(
    appointment_id: str,
    requester_email: str | None,
    is_admin: bool = False,
    now: datetime | None = None,
) -> Appointment:
    now = now or local_now()

    with db_session() as s:
        rdv = _get_or_404(s, appointment_id)
        if not is_admin:
            raise PermissionDeniedError("La confirmation des rendez-vous est réservée aux administrateurs")
        if rdv.status != AppointmentStatus.PENDING:
            raise StateError("Seuls les rendez-vous en attente peuvent être confirmés")
        if is_expired(rdv, now):
            raise StateError("Impossible de confirmer un rendez-vous expiré")

        _apply_status(s, rdv, AppointmentStatus.CONFIRMED, None, True, now)
        rdv.updated_at = now
        _flush(s)

    logger.info("Rendez-vous %s confirmé par %s", rdv.id, mask_email(requester_email))
    _notify("appointment_status_update", rdv)
    return rdv


# =========================
# Lectures
# =========================
def get(appointment_id: str, requester_email: str | None = None, is_admin: bool = False) -> Appointment:
    with db_session() as s:
        rdv = _get_or_404(s, appointment_id)
    # un utilisateur ne voit pas l'existence des rendez-vous des autres
    if not is_admin and rdv.email != normalize_email(requester_email):
        raise NotFoundError("Rendez-vous non trouvé", {"id": appointment_id})
    return rdv


def list_appointments(
    page: int = 1,
    limit: int = 10,
    status: AppointmentStatus | str | None = None,
    day: date | str | None = None,
    search: str | None = None,
) -> Page:
    """Liste admin ; annulés et expirés exclus sauf filtre explicite sur le statut."""
    check_paging(page, limit)
    conds = []
    if status:
        conds.append(Appointment.status == coerce_status(status))
    else:
        conds.append(Appointment.status.not_in(FREEING_STATUSES))
    if day:
        conds.append(Appointment.date == parse_date(day))
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        conds.append(
            or_(
                Appointment.email.ilike(pattern),
                Appointment.destination.ilike(pattern),
                Appointment.first_name.ilike(pattern),
                Appointment.last_name.ilike(pattern),
            )
        )

    with db_session() as s:
        where = and_(*conds)
        total = s.scalar(select(func.count(Appointment.id)).where(where)) or 0
        items = list(
            s.scalars(
                select(Appointment)
                .where(where)
                .order_by(Appointment.date.asc(), Appointment.time.asc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
        )
    return Page(items, total, page, limit)


def list_for_email(
    email: str,
    page: int = 1,
    limit: int = 10,
    status: AppointmentStatus | str | None = None,
) -> Page:
    check_paging(page, limit)
    email = normalize_email(email)

    with db_session() as s:
        if find_by_email(email, session=s) is None:
            raise PermissionDeniedError("Aucun compte trouvé pour cet email.")

        where = and_(
            Appointment.email == email,
            Appointment.status == coerce_status(status) if status else Appointment.status.not_in(FREEING_STATUSES),
        )
        total = s.scalar(select(func.count(Appointment.id)).where(where)) or 0
        items = list(
            s.scalars(
                select(Appointment)
                .where(where)
                .order_by(Appointment.date.desc(), Appointment.time.asc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
        )

    logger.debug("%s rendez-vous trouvés pour %s", len(items), mask_email(email))
    return Page(items, total, page, limit)


def current_confirmed_for(email: str) -> Appointment | None:
    with db_session() as s:
        return _confirmed_for(s, normalize_email(email))


def appointment_stats(today: date | None = None) -> dict[str, Any]:
    today = today or local_now().date()
    with db_session() as s:
        total = s.scalar(select(func.count(Appointment.id))) or 0
        by_status = dict(
            s.execute(select(Appointment.status, func.count(Appointment.id)).group_by(Appointment.status)).all()
        )
        today_count = s.scalar(
            select(func.count(Appointment.id)).where(
                Appointment.date == today, Appointment.status.not_in(FREEING_STATUSES)
            )
        ) or 0
        upcoming = s.scalar(
            select(func.count(Appointment.id)).where(
                Appointment.date > today,
                Appointment.status.in_((AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED)),
            )
        ) or 0
        popular = s.execute(
            select(Appointment.time, func.count(Appointment.id).label("n"))
            .where(Appointment.status.not_in(FREEING_STATUSES))
            .group_by(Appointment.time)
            .order_by(func.count(Appointment.id).desc(), Appointment.time.asc())
            .limit(5)
        ).all()
        unique_users = s.scalar(select(func.count(func.distinct(Appointment.email)))) or 0

    return {
        "total": total,
        "by_status": {st.value: by_status.get(st, 0) for st in AppointmentStatus},
        "today": today_count,
        "upcoming": upcoming,
        "unique_users": unique_users,
        "popular_slots": [{"time": t, "count": n} for t, n in popular],
    }


# =========================
# Maintenance
# =========================
def sync_user_email(old_email: str, new_email: str, now: datetime | None = None) -> int:
    """Reporte un changement d'e-mail de compte sur tous ses rendez-vous."""
    old, new = normalize_email(old_email), _clean_email(new_email)
    now = now or local_now()
    with db_session() as s:
        try:
            result = s.execute(
                update(Appointment)
                .where(Appointment.email == old)
                .values(email=new, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        except IntegrityError:
            raise ConflictError("Les deux adresses ont chacune un rendez-vous confirmé") from None
        count = result.rowcount or 0
    logger.info("Synchronisation email %s -> %s : %s rendez-vous", mask_email(old), mask_email(new), count)
    return count


def expire_past_days(today: date | None = None, now: datetime | None = None) -> int:
    """Passe en Expiré les rendez-vous actifs des jours précédents."""
    now = now or local_now()
    today = today or now.date()
    with db_session() as s:
        result = s.execute(
            update(Appointment)
            .where(
                Appointment.status.in_((AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED)),
                Appointment.date < today,
            )
            .values(status=AppointmentStatus.EXPIRED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
    logger.info("%s anciens rendez-vous marqués comme expirés", count)
    return count

"""
Moteur des étapes de procédure d'admission.

Trois étapes dans un ordre fixe : DEMANDE ADMISSION -> DEMANDE VISA ->
PREPARATIF VOYAGE. Les règles (ordre, cascades, statut global) sont des
fonctions pures sur l'objet Procedure, appelées explicitement avant le commit.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from .calendar import local_now
from .db import Page, check_paging, db_session
from .errors import ConflictError, NotFoundError, PermissionDeniedError, StateError, ValidationError
from .logging_config import mask_email, mask_id
from .models import (
    AdminOpinion,
    Appointment,
    AppointmentStatus,
    FINAL_PROCEDURE_STATUSES,
    FINAL_STEP_STATUSES,
    Procedure,
    ProcedureStatus,
    ProcedureStep,
    STEP_ORDER,
    StepName,
    StepStatus,
)
from .notifications import get_dispatcher

logger = logging.getLogger(__name__)


REASON_MIN_LENGTH = 5
REASON_MAX_LENGTH = 500
USER_CANCEL_REASON = "Annulée par l'utilisateur"
ADMIN_CANCEL_REASON = "Annulée par l'administrateur"

# statuts d'étape qui se propagent aux étapes dépendantes
_BLOCKING = (StepStatus.REJECTED, StepStatus.CANCELLED)


@dataclass
class StepPatch:
    status: StepStatus | str | None = None
    rejection_reason: str | None = None


def coerce_step_name(value: StepName | str) -> StepName:
    if isinstance(value, StepName):
        return value
    for name in StepName:
        if value in (name.value, name.name):
            return name
    raise NotFoundError(f'Étape "{value}" non trouvée dans cette procédure', {"step": value})


def coerce_step_status(value: StepStatus | str | None) -> StepStatus | None:
    if value is None or isinstance(value, StepStatus):
        return value
    for st in StepStatus:
        if value in (st.value, st.name):
            return st
    raise ValidationError("Statut d'étape invalide", {"status": value})


def _next_step(name: StepName) -> StepName | None:
    i = STEP_ORDER.index(name)
    return STEP_ORDER[i + 1] if i + 1 < len(STEP_ORDER) else None


def _previous_step(name: StepName) -> StepName | None:
    i = STEP_ORDER.index(name)
    return STEP_ORDER[i - 1] if i > 0 else None


# =========================
# Règles pures
# =========================
def validate_step_transition(
    proc: Procedure,
    step_name: StepName,
    new_status: StepStatus | None,
    reason: str | None = None,
) -> ProcedureStep:
    step = proc.step(step_name)
    if step is None:
        raise NotFoundError(f'Étape "{step_name.value}" non trouvée dans cette procédure')

    if new_status == StepStatus.REJECTED and len((reason or "").strip()) < REASON_MIN_LENGTH:
        raise ValidationError(
            f'La raison du refus est obligatoire (au moins {REASON_MIN_LENGTH} caractères) lorsque le statut est "Rejeté"'
        )
    if new_status is None:
        return step

    admission = proc.step(StepName.ADMISSION)
    if admission is not None and admission.status in _BLOCKING and new_status != admission.status:
        raise StateError(
            f"Impossible de modifier l'étape \"{step_name.value}\" car la demande d'admission est "
            f"{admission.status.value.lower()}"
        )

    if step_name == StepName.TRAVEL:
        visa = proc.step(StepName.VISA)
        if visa is not None and visa.status in _BLOCKING and new_status != visa.status:
            raise StateError(
                f"Impossible de modifier les préparatifs de voyage car la demande de visa est {visa.status.value.lower()}"
            )

    if step.status in FINAL_STEP_STATUSES and step.status != new_status:
        raise StateError(f"Impossible de modifier une étape {step.status.value.lower()}")

    previous = _previous_step(step_name)
    if previous is not None and new_status in (StepStatus.IN_PROGRESS, StepStatus.COMPLETED):
        before = proc.step(previous)
        if before is None or before.status != StepStatus.COMPLETED:
            raise StateError(
                f'L\'étape "{previous.value}" doit être terminée avant de pouvoir modifier "{step_name.value}"'
            )
    return step


def _finish_step(step: ProcedureStep, status: StepStatus, reason: str | None, now: datetime) -> None:
    """Passe une étape dans un statut final ; la raison existante est conservée."""
    step.status = status
    if reason and not step.rejection_reason:
        step.rejection_reason = reason
    step.updated_at = now
    if step.completed_at is None:
        step.completed_at = now


def apply_step_update(
    proc: Procedure,
    step_name: StepName,
    new_status: StepStatus | None,
    reason: str | None,
    now: datetime,
) -> ProcedureStep:
    """Applique la modification, puis les cascades et l'avancement automatique."""
    step = proc.step(step_name)
    reason = (reason or "").strip() or None

    if reason:
        step.rejection_reason = reason
    if new_status is not None:
        step.status = new_status
        if new_status in FINAL_STEP_STATUSES and step.completed_at is None:
            step.completed_at = now
    step.updated_at = now

    if new_status in _BLOCKING:
        if step_name == StepName.ADMISSION:
            targets = [st for st in proc.steps if st is not step]
        elif step_name == StepName.VISA:
            targets = [st for st in proc.steps if st.name == StepName.TRAVEL]
        else:
            targets = []
        for target in targets:
            if target.status not in FINAL_STEP_STATUSES:
                _finish_step(target, new_status, step.rejection_reason, now)

    if new_status == StepStatus.COMPLETED:
        following = _next_step(step_name)
        nxt = proc.step(following) if following else None
        if nxt is not None and nxt.status == StepStatus.PENDING:
            nxt.status = StepStatus.IN_PROGRESS
            nxt.updated_at = now
    return step


def derive_status(proc: Procedure, now: datetime) -> ProcedureStatus:
    """Recalcule le statut global à partir des étapes. Idempotent."""
    steps = list(proc.steps)
    admission = proc.step(StepName.ADMISSION)

    if admission is not None and admission.status in _BLOCKING:
        for st in steps:
            if st.status != admission.status:
                st.status = admission.status
                if not st.rejection_reason and admission.rejection_reason:
                    st.rejection_reason = admission.rejection_reason
                st.updated_at = now
                if st.completed_at is None:
                    st.completed_at = now
        if admission.status == StepStatus.REJECTED:
            proc.status = ProcedureStatus.REJECTED
            proc.rejection_reason = admission.rejection_reason
        else:
            proc.status = ProcedureStatus.CANCELLED
        return proc.status

    rejected = next((st for st in steps if st.status == StepStatus.REJECTED), None)
    if rejected is not None:
        proc.status = ProcedureStatus.REJECTED
        proc.rejection_reason = rejected.rejection_reason
    elif any(st.status == StepStatus.CANCELLED for st in steps):
        proc.status = ProcedureStatus.CANCELLED
    elif steps and all(st.status == StepStatus.COMPLETED for st in steps):
        proc.status = ProcedureStatus.COMPLETED
        if proc.completed_at is None:
            proc.completed_at = now
    else:
        proc.status = ProcedureStatus.IN_PROGRESS
    return proc.status


def initial_steps(now: datetime) -> list[ProcedureStep]:
    return [
        ProcedureStep(
            position=i,
            name=name,
            status=StepStatus.IN_PROGRESS if name == StepName.ADMISSION else StepStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        for i, name in enumerate(STEP_ORDER, start=1)
    ]


# =========================
# Helpers session
# =========================
def _get_or_404(s, procedure_id: str) -> Procedure:
    proc = s.get(Procedure, procedure_id)
    if not proc:
        raise NotFoundError("Procédure non trouvée", {"id": procedure_id})
    return proc


def _active_for_email(s, email: str) -> Procedure | None:
    return s.scalars(
        select(Procedure)
        .where(Procedure.email == email, Procedure.status != ProcedureStatus.CANCELLED)
        .order_by(Procedure.created_at.desc())
        .limit(1)
    ).first()


def _cancel_all(proc: Procedure, reason: str, now: datetime) -> None:
    proc.status = ProcedureStatus.CANCELLED
    proc.rejection_reason = reason
    for st in proc.steps:
        if st.status in (StepStatus.IN_PROGRESS, StepStatus.PENDING):
            st.status = StepStatus.CANCELLED
            st.rejection_reason = reason
            st.updated_at = now
            st.completed_at = now
    proc.updated_at = now


def _notify(event: str, *args) -> None:
    try:
        getattr(get_dispatcher(), event)(*args)
    except Exception:
        logger.exception("Notification %s non envoyée", event)


# =========================
# Opérations
# =========================
def create_from_appointment(appointment_id: str, now: datetime | None = None) -> Procedure:
    """Crée la procédure d'un rendez-vous Terminé + Favorable (une seule active par e-mail)."""
    now = now or local_now()

    with db_session() as s:
        rdv = s.get(Appointment, appointment_id)
        if not rdv:
            raise NotFoundError("Rendez-vous non trouvé", {"id": appointment_id})
        if rdv.status != AppointmentStatus.COMPLETED:
            raise StateError("Le rendez-vous doit être terminé")
        if rdv.avis_admin != AdminOpinion.FAVORABLE:
            raise StateError("L'avis administratif doit être favorable")
        if _active_for_email(s, rdv.email) is not None:
            raise ConflictError("Une procédure existe déjà pour ce client")
        if s.scalar(select(Procedure.id).where(Procedure.appointment_id == rdv.id)):
            raise ConflictError("Une procédure existe déjà pour ce rendez-vous")

        proc = Procedure(
            appointment_id=rdv.id,
            first_name=rdv.first_name,
            last_name=rdv.last_name,
            email=rdv.email,
            telephone=rdv.telephone,
            destination=rdv.destination,
            destination_autre=rdv.destination_autre,
            filiere=rdv.filiere,
            filiere_autre=rdv.filiere_autre,
            niveau_etude=rdv.niveau_etude,
            status=ProcedureStatus.IN_PROGRESS,
            created_at=now,
            updated_at=now,
            steps=initial_steps(now),
        )
        s.add(proc)
        try:
            s.flush()
        except IntegrityError:
            raise ConflictError("Une procédure existe déjà pour ce rendez-vous") from None

    logger.info("Procédure %s créée pour %s", mask_id(proc.id), mask_email(proc.email))
    _notify("procedure_created", proc, rdv)
    return proc


def update_step(
    procedure_id: str,
    step_name: StepName | str,
    patch: StepPatch,
    now: datetime | None = None,
) -> Procedure:
    """
    validation -> ordre -> application -> cascade -> avancement -> statut global
    -> persistance -> notification.
    """
    now = now or local_now()
    name = coerce_step_name(step_name)
    status = coerce_step_status(patch.status)

    with db_session() as s:
        proc = _get_or_404(s, procedure_id)
        validate_step_transition(proc, name, status, patch.rejection_reason)
        apply_step_update(proc, name, status, patch.rejection_reason, now)
        derive_status(proc, now)
        proc.updated_at = now

    logger.info(
        "Procédure %s : étape %s -> %s (statut %s)",
        mask_id(proc.id), name.value, status.value if status else "inchangé", proc.status.value,
    )
    _notify("procedure_update", proc)
    return proc


def cancel_by_user(
    procedure_id: str,
    requester_email: str | None,
    reason: str | None = None,
    now: datetime | None = None,
) -> Procedure:
    now = now or local_now()
    reason = (reason or "").strip() or USER_CANCEL_REASON

    with db_session() as s:
        proc = _get_or_404(s, procedure_id)
        if proc.email != (requester_email or "").strip().lower():
            logger.warning("Annulation non autorisée de %s par %s", mask_id(proc.id), mask_email(requester_email))
            raise PermissionDeniedError("Vous ne pouvez annuler que vos propres procédures")
        if proc.status in FINAL_PROCEDURE_STATUSES:
            raise StateError("Procédure déjà finalisée")
        _cancel_all(proc, reason, now)

    logger.info("Procédure %s annulée par %s", mask_id(proc.id), mask_email(requester_email))
    _notify("procedure_cancelled", proc)
    return proc


def admin_soft_delete(procedure_id: str, reason: str | None = None, now: datetime | None = None) -> Procedure:
    """Annulation administrateur, sans notification au client."""
    now = now or local_now()
    reason = (reason or "").strip() or ADMIN_CANCEL_REASON

    with db_session() as s:
        proc = _get_or_404(s, procedure_id)
        if proc.status in FINAL_PROCEDURE_STATUSES:
            raise StateError("Procédure déjà finalisée")
        _cancel_all(proc, reason, now)
        proc.deletion_reason = reason

    logger.info("Procédure %s annulée (admin)", mask_id(proc.id))
    return proc


def reject(procedure_id: str, reason: str | None, now: datetime | None = None) -> Procedure:
    now = now or local_now()
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("La raison du rejet est obligatoire")
    if len(reason) < REASON_MIN_LENGTH:
        raise ValidationError(f"La raison doit contenir au moins {REASON_MIN_LENGTH} caractères")
    if len(reason) > REASON_MAX_LENGTH:
        raise ValidationError(f"La raison ne doit pas dépasser {REASON_MAX_LENGTH} caractères")

    with db_session() as s:
        proc = _get_or_404(s, procedure_id)
        if proc.status in FINAL_PROCEDURE_STATUSES:
            raise StateError("Procédure déjà finalisée")

        proc.status = ProcedureStatus.REJECTED
        proc.rejection_reason = reason
        if proc.completed_at is None:
            proc.completed_at = now
        for st in proc.steps:
            st.status = StepStatus.REJECTED
            st.rejection_reason = reason
            st.updated_at = now
            if st.completed_at is None:
                st.completed_at = now
        proc.updated_at = now

    logger.info("Procédure %s rejetée", mask_id(proc.id))
    _notify("procedure_update", proc)
    return proc


# =========================
# Lectures
# =========================
def get_details(procedure_id: str, requester_email: str | None = None, is_admin: bool = False) -> Procedure:
    with db_session() as s:
        proc = _get_or_404(s, procedure_id)
    if not is_admin and proc.email != (requester_email or "").strip().lower():
        raise PermissionDeniedError("Accès non autorisé")
    return proc


def find_active_for_email(email: str) -> Procedure | None:
    with db_session() as s:
        return _active_for_email(s, (email or "").strip().lower())


def list_for_email(email: str, page: int = 1, limit: int = 10) -> Page:
    check_paging(page, limit)
    email = (email or "").strip().lower()
    if not email:
        raise ValidationError("Email est requis")
    return _page(Procedure.email == email, page, limit)


def list_procedures(page: int = 1, limit: int = 10, email: str | None = None) -> Page:
    check_paging(page, limit)
    where = Procedure.email == email.strip().lower() if email else None
    return _page(where, page, limit)


def _page(where, page: int, limit: int) -> Page:
    count_q = select(func.count(Procedure.id))
    q = select(Procedure).order_by(Procedure.created_at.desc())
    if where is not None:
        count_q = count_q.where(where)
        q = q.where(where)
    with db_session() as s:
        total = s.scalar(count_q) or 0
        items = list(s.scalars(q.offset((page - 1) * limit).limit(limit)))
    return Page(items, total, page, limit)


def procedures_overview() -> dict[str, Any]:
    with db_session() as s:
        total = s.scalar(select(func.count(Procedure.id))) or 0
        by_status = dict(s.execute(select(Procedure.status, func.count(Procedure.id)).group_by(Procedure.status)).all())
        by_destination = s.execute(
            select(Procedure.destination, func.count(Procedure.id))
            .group_by(Procedure.destination)
            .order_by(func.count(Procedure.id).desc())
        ).all()
    return {
        "total": total,
        "by_status": {st.value: by_status.get(st, 0) for st in ProcedureStatus},
        "by_destination": [{"destination": d, "count": n} for d, n in by_destination],
    }

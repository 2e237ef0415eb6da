from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel, Field

from . import appointments, contacts, procedures
from .appointments import AppointmentRequest
from .auth_models import Account
from .auth_security import create_access_token, read_token
from .auth_service import authenticate, create_account, find_by_email
from .calendar import list_bookable_dates, list_slots_for_date, parse_date
from .config import SchedulerSettings
from .contacts import ContactRequest
from .db import Page
from .errors import BackofficeError, PermissionDeniedError
from .jobs import JobScheduler
from .logging_config import configure_logging
from .models import Appointment, ContactMessage, Procedure
from .notifications import build_dispatcher, set_dispatcher
from .procedures import StepPatch
from .seed import init_db, seed_admin

logger = logging.getLogger(__name__)

# OAuth2 Bearer (Authorization: Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

app = FastAPI(title="Paname Consulting API", version="1.0.0")

_scheduler: JobScheduler | None = None
_mail_pool: ThreadPoolExecutor | None = None



# Startup / shutdown

@app.on_event("startup")
def startup() -> None:
    global _scheduler, _mail_pool
    configure_logging()
    # tables + compte admin (idempotent)
    init_db()
    seed_admin()

    _mail_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="mail")
    set_dispatcher(build_dispatcher(executor=_mail_pool))

    settings = SchedulerSettings.from_env()
    if settings.enabled:
        _scheduler = JobScheduler(settings)
        _scheduler.start()
    else:
        logger.info("Scheduler désactivé (SCHEDULER_ENABLED)")


@app.on_event("shutdown")
def shutdown() -> None:
    global _scheduler, _mail_pool
    if _scheduler is not None:
        _scheduler.stop()
        _scheduler = None
    if _mail_pool is not None:
        _mail_pool.shutdown(wait=True)
        _mail_pool = None
    set_dispatcher(None)


@app.exception_handler(BackofficeError)
async def backoffice_error_handler(request: Request, exc: BackofficeError) -> JSONResponse:
    if exc.status_code >= 403:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())



# Schémas auth

class RegisterIn(BaseModel):
    email: str
    password: str = Field(..., min_length=6)
    first_name: str = ""
    last_name: str = ""


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


class MeOut(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    role: str
    is_active: bool



# Schémas métier

class AppointmentCreateIn(BaseModel):
    first_name: str
    last_name: str
    email: str
    telephone: str
    destination: str
    destination_autre: str | None = None
    niveau_etude: str
    filiere: str
    filiere_autre: str | None = None
    # "YYYY-MM-DD", validé par le calendrier (400 si invalide)
    date: str
    time: str


class StatusIn(BaseModel):
    status: str
    avis_admin: str | None = None


class ReasonIn(BaseModel):
    reason: str | None = None


class StepUpdateIn(BaseModel):
    status: str | None = None
    rejection_reason: str | None = None


class ContactIn(BaseModel):
    email: str
    message: str
    first_name: str | None = None
    last_name: str | None = None


class ReplyIn(BaseModel):
    response: str



# Sérialisation

def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def appointment_flat(rdv: Appointment) -> dict[str, Any]:
    return {
        "id": rdv.id,
        "first_name": rdv.first_name,
        "last_name": rdv.last_name,
        "email": rdv.email,
        "telephone": rdv.telephone,
        "destination": rdv.destination,
        "destination_autre": rdv.destination_autre,
        "niveau_etude": rdv.niveau_etude,
        "filiere": rdv.filiere,
        "filiere_autre": rdv.filiere_autre,
        "date": rdv.date.isoformat(),
        "time": rdv.time,
        "status": rdv.status.value,
        "avis_admin": rdv.avis_admin.value if rdv.avis_admin else None,
        "cancelled_at": _iso(rdv.cancelled_at),
        "cancelled_by": rdv.cancelled_by.value if rdv.cancelled_by else None,
        "cancellation_reason": rdv.cancellation_reason,
        "created_at": _iso(rdv.created_at),
        "updated_at": _iso(rdv.updated_at),
    }


def procedure_flat(proc: Procedure) -> dict[str, Any]:
    return {
        "id": proc.id,
        "appointment_id": proc.appointment_id,
        "first_name": proc.first_name,
        "last_name": proc.last_name,
        "email": proc.email,
        "telephone": proc.telephone,
        "destination": proc.destination,
        "destination_autre": proc.destination_autre,
        "filiere": proc.filiere,
        "filiere_autre": proc.filiere_autre,
        "niveau_etude": proc.niveau_etude,
        "status": proc.status.value,
        "rejection_reason": proc.rejection_reason,
        "deletion_reason": proc.deletion_reason,
        "completed_at": _iso(proc.completed_at),
        "created_at": _iso(proc.created_at),
        "updated_at": _iso(proc.updated_at),
        "steps": [
            {
                "name": st.name.value,
                "status": st.status.value,
                "rejection_reason": st.rejection_reason,
                "completed_at": _iso(st.completed_at),
                "updated_at": _iso(st.updated_at),
            }
            for st in proc.steps
        ],
    }


def contact_flat(msg: ContactMessage) -> dict[str, Any]:
    return {
        "id": msg.id,
        "first_name": msg.first_name,
        "last_name": msg.last_name,
        "email": msg.email,
        "message": msg.message,
        "is_read": msg.is_read,
        "admin_response": msg.admin_response,
        "responded_at": _iso(msg.responded_at),
        "responded_by": msg.responded_by,
        "created_at": _iso(msg.created_at),
    }


def page_flat(page: Page, flat) -> dict[str, Any]:
    return {
        "data": [flat(x) for x in page.items],
        "total": page.total,
        "page": page.page,
        "limit": page.limit,
        "total_pages": page.total_pages,
    }



# Dépendances auth

def get_current_user(token: str = Depends(oauth2_scheme)) -> Account:
    claims = read_token(token)
    if claims is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token invalide")

    # le rôle fait foi en base, pas dans le jeton
    a = find_by_email(claims.email)
    if not a:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Utilisateur invalide")
    return a


def require_admin(user: Account = Depends(get_current_user)) -> Account:
    if not user.is_admin:
        raise PermissionDeniedError("Accès refusé : admin requis")
    return user



# Endpoints AUTH

@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterIn) -> dict[str, Any]:
    account_id = create_account(payload.email, payload.password, payload.first_name, payload.last_name)
    return {"ok": True, "account_id": account_id}


@app.post("/api/auth/login", response_model=TokenOut)
def login(form: OAuth2PasswordRequestForm = Depends()) -> TokenOut:
    a = authenticate(form.username, form.password)
    if not a:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Identifiants invalides")

    token = create_access_token(a.email, a.role.value)
    return TokenOut(access_token=token)


@app.get("/api/me", response_model=MeOut)
def me(user: Account = Depends(get_current_user)) -> MeOut:
    return MeOut(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        role=user.role.value,
        is_active=user.is_active,
    )



# Endpoints PUBLICS (sans JWT)

@app.get("/api/slots")
def api_slots(day: str = Query(..., alias="date")) -> dict[str, Any]:
    d = parse_date(day)
    return {"date": d.isoformat(), "slots": list_slots_for_date(d)}


@app.get("/api/dates")
def api_dates() -> list[str]:
    return [d.isoformat() for d in list_bookable_dates()]


@app.post("/api/contact", status_code=201)
def api_contact(payload: ContactIn) -> dict[str, Any]:
    msg = contacts.create(
        ContactRequest(
            email=payload.email,
            message=payload.message,
            first_name=payload.first_name,
            last_name=payload.last_name,
        )
    )
    return contact_flat(msg)



# Endpoints PROTÉGÉS (JWT) : rendez-vous

@app.post("/api/appointments", status_code=201)
def api_create_appointment(payload: AppointmentCreateIn, user: Account = Depends(get_current_user)) -> dict[str, Any]:
    rdv = appointments.create(
        AppointmentRequest(**payload.model_dump()),
        requester_email=user.email,
        is_admin=user.is_admin,
    )
    return appointment_flat(rdv)


@app.get("/api/appointments")
def api_list_appointments(
    page: int = 1,
    limit: int = 10,
    status_filter: str | None = Query(None, alias="status"),
    day: str | None = Query(None, alias="date"),
    search: str | None = None,
    user: Account = Depends(require_admin),
) -> dict[str, Any]:
    result = appointments.list_appointments(page=page, limit=limit, status=status_filter, day=day, search=search)
    return page_flat(result, appointment_flat)


@app.get("/api/appointments/mine")
def api_my_appointments(
    page: int = 1,
    limit: int = 10,
    status_filter: str | None = Query(None, alias="status"),
    user: Account = Depends(get_current_user),
) -> dict[str, Any]:
    result = appointments.list_for_email(user.email, page=page, limit=limit, status=status_filter)
    return page_flat(result, appointment_flat)


@app.get("/api/appointments/stats")
def api_appointment_stats(user: Account = Depends(require_admin)) -> dict[str, Any]:
    return appointments.appointment_stats()


@app.get("/api/appointments/{appointment_id}")
def api_get_appointment(appointment_id: str, user: Account = Depends(get_current_user)) -> dict[str, Any]:
    rdv = appointments.get(appointment_id, requester_email=user.email, is_admin=user.is_admin)
    return appointment_flat(rdv)


@app.patch("/api/appointments/{appointment_id}")
def api_update_appointment(
    appointment_id: str,
    patch: dict[str, Any] = Body(...),
    user: Account = Depends(get_current_user),
) -> dict[str, Any]:
    rdv = appointments.update_details(appointment_id, patch, requester_email=user.email, is_admin=user.is_admin)
    return appointment_flat(rdv)


@app.put("/api/appointments/{appointment_id}/status")
def api_appointment_status(
    appointment_id: str,
    payload: StatusIn,
    user: Account = Depends(require_admin),
) -> dict[str, Any]:
    rdv = appointments.update_status(
        appointment_id,
        payload.status,
        avis_admin=payload.avis_admin,
        requester_email=user.email,
        is_admin=user.is_admin,
    )
    return appointment_flat(rdv)


@app.put("/api/appointments/{appointment_id}/cancel")
def api_cancel_appointment(
    appointment_id: str,
    payload: ReasonIn | None = None,
    user: Account = Depends(get_current_user),
) -> dict[str, Any]:
    rdv = appointments.cancel(
        appointment_id,
        requester_email=user.email,
        is_admin=user.is_admin,
        reason=payload.reason if payload else None,
    )
    return appointment_flat(rdv)


@app.put("/api/appointments/{appointment_id}/confirm")
def api_confirm_appointment(appointment_id: str, user: Account = Depends(get_current_user)) -> dict[str, Any]:
    rdv = appointments.confirm(appointment_id, requester_email=user.email, is_admin=user.is_admin)
    return appointment_flat(rdv)



# Endpoints PROTÉGÉS (JWT) : procédures

@app.get("/api/procedures")
def api_list_procedures(
    page: int = 1,
    limit: int = 10,
    email: str | None = None,
    user: Account = Depends(require_admin),
) -> dict[str, Any]:
    return page_flat(procedures.list_procedures(page=page, limit=limit, email=email), procedure_flat)


@app.get("/api/procedures/mine")
def api_my_procedures(page: int = 1, limit: int = 10, user: Account = Depends(get_current_user)) -> dict[str, Any]:
    return page_flat(procedures.list_for_email(user.email, page=page, limit=limit), procedure_flat)


@app.get("/api/procedures/overview")
def api_procedures_overview(user: Account = Depends(require_admin)) -> dict[str, Any]:
    return procedures.procedures_overview()


@app.get("/api/procedures/{procedure_id}")
def api_get_procedure(procedure_id: str, user: Account = Depends(get_current_user)) -> dict[str, Any]:
    proc = procedures.get_details(procedure_id, requester_email=user.email, is_admin=user.is_admin)
    return procedure_flat(proc)


@app.put("/api/procedures/{procedure_id}/steps/{step_name}")
def api_update_step(
    procedure_id: str,
    step_name: str,
    payload: StepUpdateIn,
    user: Account = Depends(require_admin),
) -> dict[str, Any]:
    proc = procedures.update_step(
        procedure_id, step_name, StepPatch(status=payload.status, rejection_reason=payload.rejection_reason)
    )
    return procedure_flat(proc)


@app.put("/api/procedures/{procedure_id}/cancel")
def api_cancel_procedure(
    procedure_id: str,
    payload: ReasonIn | None = None,
    user: Account = Depends(get_current_user),
) -> dict[str, Any]:
    proc = procedures.cancel_by_user(procedure_id, user.email, reason=payload.reason if payload else None)
    return procedure_flat(proc)


@app.put("/api/procedures/{procedure_id}/reject")
def api_reject_procedure(
    procedure_id: str,
    payload: ReasonIn,
    user: Account = Depends(require_admin),
) -> dict[str, Any]:
    return procedure_flat(procedures.reject(procedure_id, payload.reason))


@app.delete("/api/procedures/{procedure_id}")
def api_delete_procedure(
    procedure_id: str,
    reason: str | None = None,
    user: Account = Depends(require_admin),
) -> dict[str, Any]:
    return procedure_flat(procedures.admin_soft_delete(procedure_id, reason=reason))



# Endpoints PROTÉGÉS (JWT) : messages de contact (admin)

@app.get("/api/contact")
def api_list_contacts(
    page: int = 1,
    limit: int = 10,
    is_read: bool | None = None,
    search: str | None = None,
    user: Account = Depends(require_admin),
) -> dict[str, Any]:
    return page_flat(contacts.list_messages(page=page, limit=limit, is_read=is_read, search=search), contact_flat)


@app.get("/api/contact/stats")
def api_contact_stats(user: Account = Depends(require_admin)) -> dict[str, int]:
    return contacts.contact_stats()


@app.get("/api/contact/{message_id}")
def api_get_contact(message_id: str, user: Account = Depends(require_admin)) -> dict[str, Any]:
    return contact_flat(contacts.get(message_id))


@app.patch("/api/contact/{message_id}/read")
def api_read_contact(message_id: str, user: Account = Depends(require_admin)) -> dict[str, Any]:
    return contact_flat(contacts.mark_as_read(message_id))


@app.post("/api/contact/{message_id}/reply")
def api_reply_contact(message_id: str, payload: ReplyIn, user: Account = Depends(require_admin)) -> dict[str, Any]:
    msg = contacts.reply(message_id, payload.response, admin_email=user.email, is_admin=user.is_admin)
    return contact_flat(msg)


@app.delete("/api/contact/{message_id}")
def api_delete_contact(message_id: str, user: Account = Depends(require_admin)) -> dict[str, Any]:
    contacts.remove(message_id)
    return {"ok": True}

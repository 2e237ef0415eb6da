from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, func, or_, select, true

from .calendar import local_now
from .db import Page, check_paging, db_session
from .errors import NotFoundError, PermissionDeniedError, ValidationError
from .logging_config import mask_email, mask_id
from .models import ContactMessage
from .notifications import get_dispatcher

logger = logging.getLogger(__name__)


MESSAGE_MAX_LENGTH = 5000
NAME_MAX_LENGTH = 50


@dataclass
class ContactRequest:
    email: str
    message: str
    first_name: str | None = None
    last_name: str | None = None


def _optional_name(value: str | None, label: str) -> str:
    value = (value or "").strip()
    if len(value) > NAME_MAX_LENGTH:
        raise ValidationError(f"Le {label} ne peut pas dépasser {NAME_MAX_LENGTH} caractères")
    return value


def _get_or_404(s, message_id: str) -> ContactMessage:
    msg = s.get(ContactMessage, message_id)
    if not msg:
        raise NotFoundError("Message de contact non trouvé", {"id": message_id})
    return msg


def create(req: ContactRequest, now: datetime | None = None) -> ContactMessage:
    """Enregistre le message puis prévient l'admin et accuse réception à l'expéditeur."""
    email = (req.email or "").strip().lower()
    message = (req.message or "").strip()
    if "@" not in email:
        raise ValidationError("Adresse email invalide", {"email": req.email})
    if not message:
        raise ValidationError("Le message ne peut pas être vide")
    if len(message) > MESSAGE_MAX_LENGTH:
        raise ValidationError(f"Le message ne doit pas dépasser {MESSAGE_MAX_LENGTH} caractères")
    first_name = _optional_name(req.first_name, "prénom")
    last_name = _optional_name(req.last_name, "nom")

    with db_session() as s:
        msg = ContactMessage(
            first_name=first_name,
            last_name=last_name,
            email=email,
            message=message,
            created_at=now or local_now(),
        )
        s.add(msg)
        s.flush()

    logger.info("Message de contact créé pour %s", mask_email(email))
    try:
        dispatcher = get_dispatcher()
        dispatcher.contact_admin_notification(msg)
        dispatcher.contact_confirmation(msg)
    except Exception:
        logger.exception("Notifications du message %s non envoyées", mask_id(msg.id))
    return msg


def list_messages(
    page: int = 1,
    limit: int = 10,
    is_read: bool | None = None,
    search: str | None = None,
) -> Page:
    check_paging(page, limit)
    conds = []
    if is_read is not None:
        conds.append(ContactMessage.is_read.is_(is_read))
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        conds.append(
            or_(
                ContactMessage.email.ilike(pattern),
                ContactMessage.first_name.ilike(pattern),
                ContactMessage.last_name.ilike(pattern),
                ContactMessage.message.ilike(pattern),
            )
        )

    with db_session() as s:
        where = and_(true(), *conds)
        total = s.scalar(select(func.count(ContactMessage.id)).where(where)) or 0
        items = list(
            s.scalars(
                select(ContactMessage)
                .where(where)
                .order_by(ContactMessage.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
        )
    return Page(items, total, page, limit)


def get(message_id: str) -> ContactMessage:
    with db_session() as s:
        return _get_or_404(s, message_id)


def mark_as_read(message_id: str) -> ContactMessage:
    with db_session() as s:
        msg = _get_or_404(s, message_id)
        msg.is_read = True
    return msg


def reply(message_id: str, text: str | None, admin_email: str | None, is_admin: bool, now: datetime | None = None) -> ContactMessage:
    if not is_admin:
        raise PermissionDeniedError("Accès refusé : admin requis")
    text = (text or "").strip()
    if not text:
        raise ValidationError("La réponse ne peut pas être vide")

    with db_session() as s:
        msg = _get_or_404(s, message_id)
        msg.admin_response = text
        msg.responded_at = now or local_now()
        msg.responded_by = admin_email
        msg.is_read = True

    logger.info("Réponse au message %s par %s", mask_id(msg.id), mask_email(admin_email))
    get_dispatcher().contact_reply(msg, text)
    return msg


def remove(message_id: str) -> None:
    with db_session() as s:
        s.delete(_get_or_404(s, message_id))
    logger.info("Message de contact %s supprimé", mask_id(message_id))


def _count(s, *conds) -> int:
    return s.scalar(select(func.count(ContactMessage.id)).where(*conds)) or 0


def contact_stats(now: datetime | None = None) -> dict[str, int]:
    now = now or local_now()
    start_of_month = datetime(now.year, now.month, 1)
    if now.month == 1:
        start_of_last_month = datetime(now.year - 1, 12, 1)
    else:
        start_of_last_month = datetime(now.year, now.month - 1, 1)

    with db_session() as s:
        return {
            "total": _count(s),
            "unread": _count(s, ContactMessage.is_read.is_(False)),
            "read": _count(s, ContactMessage.is_read.is_(True)),
            "responded": _count(s, ContactMessage.admin_response.is_not(None)),
            "this_month": _count(s, ContactMessage.created_at >= start_of_month),
            "last_month": _count(
                s,
                ContactMessage.created_at >= start_of_last_month,
                ContactMessage.created_at < start_of_month,
            ),
        }

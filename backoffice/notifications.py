"""
Dispatcher des notifications e-mail.

Une méthode par événement métier. Chaque méthode renvoie True/False et ne lève
jamais : un échec d'envoi est journalisé puis ignoré, il n'annule jamais
l'opération qui l'a déclenché (appelée après le commit).
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor

from . import email_templates as tpl
from .calendar import local_now
from .config import EmailSettings
from .logging_config import mask_email
from .mail import MailTransport, build_transport
from .models import (
    AdminOpinion,
    Appointment,
    AppointmentStatus,
    CancelledBy,
    ContactMessage,
    OTHER,
    Procedure,
    ProcedureStatus,
    StepStatus,
)

logger = logging.getLogger(__name__)


def effective_destination(obj: Appointment | Procedure) -> str:
    return obj.destination_autre if obj.destination == OTHER and obj.destination_autre else obj.destination


def effective_filiere(obj: Appointment | Procedure) -> str:
    return obj.filiere_autre if obj.filiere == OTHER and obj.filiere_autre else obj.filiere


_CANCELLED_BY_PHRASE = {
    CancelledBy.ADMIN: "par notre équipe",
    CancelledBy.USER: "à votre demande",
    CancelledBy.SYSTEM: "automatiquement",
}


class NotificationDispatcher:
    def __init__(self, settings: EmailSettings, transport: MailTransport, executor: Executor | None = None):
        self.settings = settings
        self.transport = transport
        self.executor = executor

    # ===== envoi =====
    def _subject(self, title: str) -> str:
        return f"{title} - {self.settings.app_name}"

    def _page(self, header: str, content: str, first_name: str) -> str:
        return tpl.base_template(self.settings.app_name, self.settings.frontend_url, header, content, first_name)

    def _deliver(self, to: str, subject: str, html: str, context: str, reply_to: str | None) -> bool:
        try:
            ok = self.transport.send(to, subject, html, reply_to=reply_to)
        except Exception:
            logger.exception("Erreur notification (%s) vers %s", context, mask_email(to))
            return False
        if ok:
            logger.info("Notification envoyée (%s) à %s", context, mask_email(to))
        else:
            logger.error("Échec envoi notification (%s) à %s", context, mask_email(to))
        return ok

    def _send(self, to: str | None, subject: str, html: str, context: str, reply_to: str | None = None) -> bool:
        if not to:
            logger.warning("Notification %r ignorée : destinataire absent", context)
            return False
        if self.executor is not None:
            # le rendu est fait avant : le thread d'envoi ne touche plus aux objets ORM
            try:
                self.executor.submit(self._deliver, to, subject, html, context, reply_to)
            except RuntimeError:
                logger.exception("Notification %r non planifiée", context)
                return False
            return True
        return self._deliver(to, subject, html, context, reply_to)

    # ===== rendez-vous =====
    def appointment_confirmation(self, rdv: Appointment) -> bool:
        content = tpl.appointment_confirmation_content(rdv.date, rdv.time, self._location())
        return self._send(
            rdv.email,
            self._subject("Confirmation de votre rendez-vous"),
            self._page("Rendez-vous Confirmé", content, rdv.first_name),
            "confirmation-rendezvous",
        )

    def appointment_reminder(self, rdv: Appointment) -> bool:
        content = tpl.appointment_reminder_content(rdv.time, self._location())
        return self._send(
            rdv.email,
            self._subject("Rappel - Rendez-vous aujourd'hui"),
            self._page("Rappel de Rendez-vous", content, rdv.first_name),
            "rappel-rendezvous",
        )

    def appointment_status_update(self, rdv: Appointment) -> bool:
        status = rdv.status
        header = "Mise à jour de Rendez-vous"

        if status == AppointmentStatus.CONFIRMED:
            subject = "Rendez-vous Confirmé"
            content = tpl.appointment_confirmed_content(rdv.date, rdv.time)
        elif status == AppointmentStatus.CANCELLED:
            subject = header = "Rendez-vous Annulé"
            phrase = _CANCELLED_BY_PHRASE.get(rdv.cancelled_by, "à votre demande")
            content = tpl.appointment_cancelled_content(
                rdv.date, rdv.time, phrase, rdv.cancellation_reason, self.settings.frontend_url
            )
        elif status == AppointmentStatus.COMPLETED:
            header = "Rendez-vous Terminé"
            favorable = rdv.avis_admin == AdminOpinion.FAVORABLE
            subject = "Rendez-vous Terminé - Avis Favorable" if favorable else "Rendez-vous Terminé"
            content = tpl.appointment_completed_content(favorable)
        elif status == AppointmentStatus.PENDING:
            subject = "Statut Modifié - En Attente"
            header = "Rendez-vous en Attente"
            content = tpl.appointment_pending_content()
        else:
            subject = header = "Rendez-vous Expiré"
            content = tpl.appointment_expired_content(rdv.date, rdv.time, self.settings.frontend_url)

        return self._send(
            rdv.email,
            self._subject(subject),
            self._page(header, content, rdv.first_name),
            f"mise-a-jour-statut:{status.name}",
        )

    # ===== procédures =====
    def procedure_created(self, proc: Procedure, rdv: Appointment | None = None) -> bool:
        content = tpl.procedure_created_content(
            effective_destination(proc), effective_filiere(proc), rdv.date if rdv is not None else None
        )
        return self._send(
            proc.email,
            self._subject("Votre procédure est lancée"),
            self._page("Procédure Créée", content, proc.first_name),
            "creation-procedure",
        )

    def procedure_update(self, proc: Procedure) -> bool:
        steps = list(proc.steps)
        current = next((st for st in steps if st.status == StepStatus.IN_PROGRESS), None)
        done = sum(1 for st in steps if st.status == StepStatus.COMPLETED)
        percent = round(done / len(steps) * 100) if steps else 0

        if proc.status == ProcedureStatus.COMPLETED:
            subject = "Procédure Terminée"
            header = "Procédure Finalisée"
            content = tpl.procedure_completed_content(
                proc.status.value, effective_destination(proc), effective_filiere(proc)
            )
        elif proc.status == ProcedureStatus.REJECTED:
            subject = header = "Procédure Rejetée"
            content = tpl.procedure_rejected_content(proc.status.value, effective_destination(proc), proc.rejection_reason)
        elif proc.status == ProcedureStatus.CANCELLED:
            return self.procedure_cancelled(proc)
        elif current is not None:
            subject = "Mise à jour de votre procédure"
            header = "Mise à jour de Procédure"
            content = tpl.procedure_progress_content(
                percent, current.name.value, proc.status.value, effective_destination(proc)
            )
        else:
            logger.debug("Procédure %s sans étape en cours, pas de notification", proc.id)
            return False

        return self._send(
            proc.email,
            self._subject(subject),
            self._page(header, content, proc.first_name),
            f"mise-a-jour-procedure:{proc.status.name}",
        )

    def procedure_cancelled(self, proc: Procedure) -> bool:
        reason = proc.deletion_reason or proc.rejection_reason
        content = tpl.procedure_cancelled_content(effective_destination(proc), reason)
        return self._send(
            proc.email,
            self._subject("Annulation de votre procédure"),
            self._page("Procédure Annulée", content, proc.first_name),
            "annulation-procedure",
        )

    # ===== contact =====
    def contact_admin_notification(self, msg: ContactMessage) -> bool:
        if not self.settings.admin_email:
            logger.warning("Email admin non configuré, notification de contact ignorée")
            return False
        content = tpl.contact_admin_content(msg.first_name, msg.last_name, msg.email, msg.message, local_now())
        return self._send(
            self.settings.admin_email,
            self._subject("Nouveau message de contact"),
            self._page("Nouveau Message Contact", content, "Équipe"),
            "notification-contact-admin",
            reply_to=msg.email,
        )

    def contact_confirmation(self, msg: ContactMessage) -> bool:
        return self._send(
            msg.email,
            self._subject("Confirmation de votre message"),
            self._page("Confirmation de Réception", tpl.contact_confirmation_content(), msg.first_name or "Cher client"),
            "confirmation-contact",
        )

    def contact_reply(self, msg: ContactMessage, reply: str) -> bool:
        return self._send(
            msg.email,
            self._subject("Réponse à votre message"),
            self._page("Réponse de notre équipe", tpl.contact_reply_content(reply), msg.first_name or "Cher client"),
            "reponse-contact",
        )

    def _location(self) -> str:
        return f"{self.settings.app_name} - {self.settings.office_location}"


# =========================
# Dispatcher du processus
# =========================
_dispatcher: NotificationDispatcher | None = None
_lock = threading.Lock()


def build_dispatcher(settings: EmailSettings | None = None, executor: Executor | None = None) -> NotificationDispatcher:
    settings = settings or EmailSettings.from_env()
    return NotificationDispatcher(settings, build_transport(settings), executor=executor)


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    with _lock:
        if _dispatcher is None:
            _dispatcher = build_dispatcher()
        return _dispatcher


def set_dispatcher(dispatcher: NotificationDispatcher | None) -> None:
    global _dispatcher
    with _lock:
        _dispatcher = dispatcher

"""Tâches planifiées (APScheduler).

- 09:00 : rappel des rendez-vous confirmés du jour
- toutes les 10 minutes : expiration des rendez-vous dépassés (+10 min), jours
  précédents compris si un passage a été manqué
- toutes les heures : annulation des « En attente » créés il y a plus de 5 h

Chaque corps de tâche est appelable directement et renvoie un compteur.
Une seule instance doit porter le scheduler (SCHEDULER_ENABLED) : aucun
verrou distribué n'empêche les doublons entre processus.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select, update

from .appointments import DEFAULT_CANCEL_REASON, EXPIRATION_BUFFER_MINUTES, expire_past_days
from .calendar import local_now, slot_datetime
from .config import SchedulerSettings
from .db import db_session
from .models import Appointment, AppointmentStatus, CancelledBy
from .notifications import get_dispatcher

logger = logging.getLogger(__name__)


AUTO_CANCEL_PENDING_HOURS = 5

_ACTIVE = (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED)


# =========================
# Corps des tâches
# =========================
def send_daily_reminders(now: datetime | None = None) -> int:
    today = (now or local_now()).date()
    with db_session() as s:
        todays = list(
            s.scalars(
                select(Appointment)
                .where(Appointment.date == today, Appointment.status == AppointmentStatus.CONFIRMED)
                .order_by(Appointment.time.asc())
            )
        )

    sent = 0
    dispatcher = get_dispatcher()
    for rdv in todays:
        try:
            if dispatcher.appointment_reminder(rdv):
                sent += 1
        except Exception:
            logger.exception("Rappel non envoyé pour le rendez-vous %s", rdv.id)
    logger.info("Rappels du %s : %s/%s envoyés", today.isoformat(), sent, len(todays))
    return sent


def expire_overdue_appointments(now: datetime | None = None) -> int:
    now = now or local_now()
    grace = timedelta(minutes=EXPIRATION_BUFFER_MINUTES)

    with db_session() as s:
        candidates = list(
            s.scalars(select(Appointment.id).where(Appointment.date <= now.date(), Appointment.status.in_(_ACTIVE)))
        )

    expired = 0
    for appointment_id in candidates:
        try:
            with db_session() as s:
                rdv = s.get(Appointment, appointment_id)
                # relu dans sa propre transaction : le statut a pu changer depuis
                if rdv is None or rdv.status not in _ACTIVE:
                    continue
                if now <= slot_datetime(rdv.date, rdv.time) + grace:
                    continue
                rdv.status = AppointmentStatus.EXPIRED
                rdv.updated_at = now
            expired += 1
            get_dispatcher().appointment_status_update(rdv)
        except Exception:
            logger.exception("Expiration impossible pour le rendez-vous %s", appointment_id)

    if expired:
        logger.info("%s rendez-vous automatiquement expirés", expired)
    return expired


def auto_cancel_stale_pending(now: datetime | None = None) -> int:
    now = now or local_now()
    cutoff = now - timedelta(hours=AUTO_CANCEL_PENDING_HOURS)

    with db_session() as s:
        result = s.execute(
            update(Appointment)
            .where(Appointment.status == AppointmentStatus.PENDING, Appointment.created_at < cutoff)
            .values(
                status=AppointmentStatus.CANCELLED,
                cancelled_at=now,
                cancelled_by=CancelledBy.SYSTEM,
                cancellation_reason=DEFAULT_CANCEL_REASON[CancelledBy.SYSTEM],
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0

    if count:
        logger.info("%s rendez-vous en attente annulés (délai de %sh dépassé)", count, AUTO_CANCEL_PENDING_HOURS)
    return count


# =========================
# Scheduler
# =========================
class JobScheduler:
    def __init__(self, settings: SchedulerSettings | None = None):
        self.settings = settings or SchedulerSettings.from_env()
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.running:
            logger.warning("Scheduler déjà démarré")
            return

        st = self.settings
        scheduler = BackgroundScheduler(timezone=st.timezone, job_defaults=dict(st.job_defaults))
        scheduler.add_job(
            send_daily_reminders,
            CronTrigger(hour=st.reminder_hour, minute=st.reminder_minute, timezone=st.timezone),
            id="daily_reminders",
            name="Rappels quotidiens",
            replace_existing=True,
        )
        scheduler.add_job(
            expire_overdue_appointments,
            IntervalTrigger(minutes=st.expiry_interval_minutes, timezone=st.timezone),
            id="expire_overdue",
            name="Expiration des rendez-vous",
            replace_existing=True,
        )
        scheduler.add_job(
            auto_cancel_stale_pending,
            CronTrigger(minute=0, timezone=st.timezone),
            id="auto_cancel_pending",
            name="Annulation des rendez-vous en attente",
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Scheduler démarré (%s, rappels à %02d:%02d)", st.timezone, st.reminder_hour, st.reminder_minute
        )

    def stop(self, wait: bool = True) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Scheduler arrêté")
        self._scheduler = None

    def job_ids(self) -> list[str]:
        if self._scheduler is None:
            return []
        return [job.id for job in self._scheduler.get_jobs()]


JOBS = {
    "reminders": send_daily_reminders,
    "expire": expire_overdue_appointments,
    "expire-past": expire_past_days,
    "auto-cancel": auto_cancel_stale_pending,
}

from __future__ import annotations

import argparse
import sys

from . import appointments, procedures
from .appointments import AppointmentRequest
from .auth_models import Role
from .auth_service import create_account
from .calendar import list_bookable_dates, list_slots_for_date, parse_date
from .errors import BackofficeError
from .jobs import JOBS
from .logging_config import configure_logging
from .models import AdminOpinion, AppointmentStatus
from .procedures import StepPatch
from .seed import init_db, seed_admin


def cmd_init(args: argparse.Namespace) -> None:
    init_db()
    admin_id = seed_admin()
    print("Base initialisée." + (f" Admin : {admin_id}" if admin_id else ""))


def cmd_create_admin(args: argparse.Namespace) -> None:
    account_id = create_account(args.email, args.password, args.first_name, args.last_name, role=Role.ADMIN)
    print(f"Admin créé : {account_id}")


def cmd_slots(args: argparse.Namespace) -> None:
    day = parse_date(args.date)
    slots = list_slots_for_date(day)
    if not slots:
        print(f"Aucun créneau disponible le {day.isoformat()}.")
        return
    print(" ".join(slots))


def cmd_dates(args: argparse.Namespace) -> None:
    for d in list_bookable_dates(horizon_days=args.days):
        print(d.isoformat())


def cmd_book(args: argparse.Namespace) -> None:
    rdv = appointments.create(
        AppointmentRequest(
            first_name=args.first_name,
            last_name=args.last_name,
            email=args.email,
            telephone=args.telephone,
            destination=args.destination,
            destination_autre=args.destination_autre,
            niveau_etude=args.niveau_etude,
            filiere=args.filiere,
            filiere_autre=args.filiere_autre,
            date=args.date,
            time=args.time,
        ),
        requester_email=None,
        is_admin=True,
    )
    print(f"Rendez-vous {rdv.id} : {rdv.date.isoformat()} {rdv.time} ({rdv.status.value})")


def cmd_cancel(args: argparse.Namespace) -> None:
    rdv = appointments.cancel(args.appointment_id, requester_email=None, is_admin=True, reason=args.reason)
    print(f"Rendez-vous {rdv.id} annulé.")


def cmd_complete(args: argparse.Namespace) -> None:
    opinion = AdminOpinion.UNFAVORABLE if args.unfavorable else AdminOpinion.FAVORABLE
    rdv = appointments.update_status(
        args.appointment_id, AppointmentStatus.COMPLETED, avis_admin=opinion, is_admin=True
    )
    print(f"Rendez-vous {rdv.id} terminé ({opinion.value}).")
    proc = procedures.find_active_for_email(rdv.email)
    if proc is not None:
        print(f"Procédure active : {proc.id} ({proc.status.value})")


def cmd_step(args: argparse.Namespace) -> None:
    proc = procedures.update_step(
        args.procedure_id,
        args.step,
        StepPatch(status=args.status, rejection_reason=args.reason),
    )
    print(f"Procédure {proc.id} : {proc.status.value}")
    for st in proc.steps:
        print(f"  {st.name.value:<20} {st.status.value}")


def cmd_run_job(args: argparse.Namespace) -> None:
    count = JOBS[args.job]()
    print(f"{args.job} : {count}")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="backoffice", description="CLI back office Paname Consulting")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Crée la base et le compte admin")
    p_init.set_defaults(func=cmd_init)

    p_admin = sub.add_parser("create-admin", help="Crée un compte administrateur")
    p_admin.add_argument("--email", required=True)
    p_admin.add_argument("--password", required=True)
    p_admin.add_argument("--first-name", default="")
    p_admin.add_argument("--last-name", default="")
    p_admin.set_defaults(func=cmd_create_admin)

    p_slots = sub.add_parser("slots", help="Créneaux libres d'une date")
    p_slots.add_argument("date", help="YYYY-MM-DD")
    p_slots.set_defaults(func=cmd_slots)

    p_dates = sub.add_parser("dates", help="Dates réservables")
    p_dates.add_argument("--days", type=int, default=60)
    p_dates.set_defaults(func=cmd_dates)

    p_book = sub.add_parser("book", help="Réserve un rendez-vous (en tant qu'admin)")
    p_book.add_argument("--first-name", required=True)
    p_book.add_argument("--last-name", required=True)
    p_book.add_argument("--email", required=True)
    p_book.add_argument("--telephone", required=True)
    p_book.add_argument("--destination", required=True)
    p_book.add_argument("--destination-autre", default=None)
    p_book.add_argument("--niveau-etude", required=True)
    p_book.add_argument("--filiere", required=True)
    p_book.add_argument("--filiere-autre", default=None)
    p_book.add_argument("--date", required=True, help="YYYY-MM-DD")
    p_book.add_argument("--time", required=True, help="HH:MM")
    p_book.set_defaults(func=cmd_book)

    p_cancel = sub.add_parser("cancel", help="Annule un rendez-vous (admin)")
    p_cancel.add_argument("appointment_id")
    p_cancel.add_argument("--reason", default=None)
    p_cancel.set_defaults(func=cmd_cancel)

    p_complete = sub.add_parser("complete", help="Termine un rendez-vous avec avis")
    p_complete.add_argument("appointment_id")
    p_complete.add_argument("--unfavorable", action="store_true", help="Avis défavorable (pas de procédure)")
    p_complete.set_defaults(func=cmd_complete)

    p_step = sub.add_parser("step", help="Met à jour une étape de procédure")
    p_step.add_argument("procedure_id")
    p_step.add_argument("step", help="ex: 'DEMANDE ADMISSION' ou ADMISSION")
    p_step.add_argument("--status", required=True, help="ex: 'Terminé' ou COMPLETED")
    p_step.add_argument("--reason", default=None)
    p_step.set_defaults(func=cmd_step)

    p_job = sub.add_parser("run-job", help="Exécute une tâche planifiée une fois")
    p_job.add_argument("job", choices=sorted(JOBS))
    p_job.set_defaults(func=cmd_run_job)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging()
    init_db()  # garantit les tables
    try:
        args.func(args)
    except BackofficeError as e:
        print(f"Erreur : {e.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

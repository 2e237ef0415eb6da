"""Tests du dispatcher de notifications, des transports mail et des gabarits."""

import smtplib
from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest

from backoffice import mail
from backoffice.config import EmailSettings
from backoffice.email_templates import esc, format_date_long
from backoffice.mail import NullTransport, ResendTransport, SmtpTransport, build_transport
from backoffice.models import (
    Appointment,
    AppointmentStatus,
    CancelledBy,
    ContactMessage,
    Procedure,
    ProcedureStatus,
    ProcedureStep,
    StepName,
    StepStatus,
)
from backoffice.notifications import NotificationDispatcher, effective_destination

from tests.helpers import ADMIN_EMAIL, TUESDAY, USER_EMAIL, RecordingTransport


def make_appointment(**overrides) -> Appointment:
    data = dict(
        id="rdv-1",
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
    )
    data.update(overrides)
    return Appointment(**data)


def make_procedure(step_statuses, status=ProcedureStatus.IN_PROGRESS, **overrides) -> Procedure:
    proc = Procedure(
        id="proc-1",
        first_name="Awa",
        last_name="Diallo",
        email=USER_EMAIL,
        telephone="+22376000000",
        destination="Autre",
        destination_autre="Canada",
        filiere="Informatique",
        niveau_etude="Licence",
        status=status,
        **overrides,
    )
    proc.steps = [
        ProcedureStep(position=i, name=name, status=st)
        for i, (name, st) in enumerate(zip((StepName.ADMISSION, StepName.VISA, StepName.TRAVEL), step_statuses), 1)
    ]
    return proc


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def dispatcher(email_settings, transport):
    return NotificationDispatcher(email_settings, transport)


# =========================
# Gabarits
# =========================
def test_french_long_date():
    assert format_date_long(date(2030, 3, 4)) == "lundi 4 mars 2030"
    assert format_date_long(date(2030, 8, 15)) == "jeudi 15 août 2030"


def test_user_text_is_escaped(dispatcher, transport):
    msg = ContactMessage(first_name="<b>Awa</b>", last_name="", email=USER_EMAIL, message="<script>alert(1)</script>")
    dispatcher.contact_admin_notification(msg)

    html = transport.sent[0].html
    assert "<script>" not in html
    assert esc("<script>alert(1)</script>") in html


def test_effective_destination_uses_precision():
    assert effective_destination(make_procedure([StepStatus.IN_PROGRESS] * 3)) == "Canada"
    assert effective_destination(make_appointment()) == "France"


# =========================
# Dispatcher
# =========================
def test_confirmation_email(dispatcher, transport):
    assert dispatcher.appointment_confirmation(make_appointment()) is True

    sent = transport.sent[0]
    assert sent.to == USER_EMAIL
    assert sent.subject == "Confirmation de votre rendez-vous - Paname Consulting"
    assert "mardi 5 mars 2030" in sent.html
    assert "Kalaban Coura" in sent.html


@pytest.mark.parametrize(
    "status, subject",
    [
        (AppointmentStatus.CONFIRMED, "Rendez-vous Confirmé"),
        (AppointmentStatus.PENDING, "Statut Modifié - En Attente"),
        (AppointmentStatus.EXPIRED, "Rendez-vous Expiré"),
        (AppointmentStatus.COMPLETED, "Rendez-vous Terminé"),
    ],
)
def test_status_update_subjects(dispatcher, transport, status, subject):
    dispatcher.appointment_status_update(make_appointment(status=status))
    assert transport.subjects() == [f"{subject} - Paname Consulting"]


def test_cancelled_email_names_the_actor(dispatcher, transport):
    rdv = make_appointment(
        status=AppointmentStatus.CANCELLED, cancelled_by=CancelledBy.SYSTEM, cancellation_reason="Annulé automatiquement"
    )
    dispatcher.appointment_status_update(rdv)

    assert transport.subjects() == ["Rendez-vous Annulé - Paname Consulting"]
    assert "automatiquement" in transport.sent[0].html


def test_procedure_progress_email(dispatcher, transport):
    proc = make_procedure([StepStatus.COMPLETED, StepStatus.IN_PROGRESS, StepStatus.PENDING])
    assert dispatcher.procedure_update(proc) is True

    html = transport.sent[0].html
    assert transport.subjects() == ["Mise à jour de votre procédure - Paname Consulting"]
    assert "33%" in html
    assert "DEMANDE VISA" in html
    assert "Canada" in html


def test_procedure_update_without_current_step_sends_nothing(dispatcher, transport):
    proc = make_procedure([StepStatus.COMPLETED, StepStatus.COMPLETED, StepStatus.PENDING])
    assert dispatcher.procedure_update(proc) is False
    assert transport.sent == []


def test_procedure_cancel_email_uses_reason(dispatcher, transport):
    proc = make_procedure([StepStatus.CANCELLED] * 3, status=ProcedureStatus.CANCELLED, rejection_reason="Projet abandonné")
    dispatcher.procedure_update(proc)

    assert transport.subjects() == ["Annulation de votre procédure - Paname Consulting"]
    assert "Projet abandonné" in transport.sent[0].html


def test_contact_admin_notification(dispatcher, transport):
    msg = ContactMessage(first_name="Awa", last_name="Diallo", email=USER_EMAIL, message="Bonjour")
    assert dispatcher.contact_admin_notification(msg) is True

    sent = transport.sent[0]
    assert sent.to == ADMIN_EMAIL
    assert sent.reply_to == USER_EMAIL


def test_contact_admin_notification_without_admin_email(transport):
    dispatcher = NotificationDispatcher(EmailSettings(admin_email=None), transport)
    msg = ContactMessage(first_name="Awa", last_name="", email=USER_EMAIL, message="Bonjour")
    assert dispatcher.contact_admin_notification(msg) is False
    assert transport.sent == []


def test_missing_recipient_is_skipped(dispatcher, transport):
    assert dispatcher.appointment_reminder(make_appointment(email="")) is False
    assert transport.sent == []


def test_transport_exception_is_swallowed(email_settings):
    dispatcher = NotificationDispatcher(email_settings, RecordingTransport(fail=True))
    assert dispatcher.appointment_confirmation(make_appointment()) is False


def test_executor_delivery(email_settings, transport):
    with ThreadPoolExecutor(max_workers=1) as pool:
        dispatcher = NotificationDispatcher(email_settings, transport, executor=pool)
        assert dispatcher.appointment_reminder(make_appointment()) is True
    assert transport.subjects() == ["Rappel - Rendez-vous aujourd'hui - Paname Consulting"]


def test_closed_executor_reports_failure(email_settings, transport):
    pool = ThreadPoolExecutor(max_workers=1)
    pool.shutdown()
    dispatcher = NotificationDispatcher(email_settings, transport, executor=pool)
    assert dispatcher.appointment_reminder(make_appointment()) is False


# =========================
# Transports
# =========================
class FakeSMTP:
    instances: list["FakeSMTP"] = []

    def __init__(self, host, port, timeout=None, context=None):
        self.host, self.port, self.timeout = host, port, timeout
        self.calls: list[str] = []
        self.sent: list[tuple] = []
        FakeSMTP.instances.append(self)

    def starttls(self, context=None):
        self.calls.append("starttls")

    def login(self, user, password):
        self.calls.append("login")

    def sendmail(self, sender, recipients, body):
        self.sent.append((sender, recipients, body))

    def quit(self):
        self.calls.append("quit")


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(smtplib, "SMTP_SSL", FakeSMTP)
    return FakeSMTP


def smtp_settings(**overrides) -> EmailSettings:
    data = dict(host="smtp.example.com", user="noreply@paname.test", password="pw", from_address="noreply@paname.test")
    data.update(overrides)
    return EmailSettings(**data)


def test_build_transport_selection():
    assert isinstance(build_transport(EmailSettings()), NullTransport)
    assert isinstance(build_transport(smtp_settings()), SmtpTransport)
    assert isinstance(build_transport(EmailSettings(resend_api_key="re_test")), ResendTransport)


def test_null_transport_reports_failure():
    assert NullTransport().send(USER_EMAIL, "Sujet", "<p>x</p>") is False


def test_smtp_starttls_with_timeout(fake_smtp):
    ok = SmtpTransport(smtp_settings(timeout_seconds=15)).send(USER_EMAIL, "Sujet", "<p>x</p>", reply_to=ADMIN_EMAIL)

    assert ok is True
    server = fake_smtp.instances[0]
    assert server.port == 587
    assert server.timeout == 15
    assert server.calls == ["starttls", "login", "quit"]
    sender, recipients, body = server.sent[0]
    assert sender == "noreply@paname.test"
    assert recipients == [USER_EMAIL]
    assert "Reply-To: admin@paname.test" in body


def test_smtp_implicit_ssl_on_465(fake_smtp):
    SmtpTransport(smtp_settings(port=465)).send(USER_EMAIL, "Sujet", "<p>x</p>")
    assert fake_smtp.instances[0].calls == ["login", "quit"]


def test_smtp_failure_returns_false(monkeypatch):
    def refuse(*args, **kwargs):
        raise smtplib.SMTPConnectError(421, "indisponible")

    monkeypatch.setattr(smtplib, "SMTP", refuse)
    assert SmtpTransport(smtp_settings()).send(USER_EMAIL, "Sujet", "<p>x</p>") is False


def test_resend_transport(monkeypatch):
    captured = {}

    def fake_send(params):
        captured.update(params)
        return {"id": "email_123"}

    monkeypatch.setattr(mail.resend.Emails, "send", fake_send)
    ok = ResendTransport(EmailSettings(resend_api_key="re_test")).send(
        USER_EMAIL, "Sujet", "<p>x</p>", reply_to=ADMIN_EMAIL
    )

    assert ok is True
    assert captured["to"] == [USER_EMAIL]
    assert captured["reply_to"] == ADMIN_EMAIL
    assert captured["from"] == "Paname Consulting <noreply@localhost>"


def test_resend_failure_returns_false(monkeypatch):
    def boom(params):
        raise RuntimeError("quota dépassé")

    monkeypatch.setattr(mail.resend.Emails, "send", boom)
    assert ResendTransport(EmailSettings(resend_api_key="re_test")).send(USER_EMAIL, "Sujet", "<p>x</p>") is False

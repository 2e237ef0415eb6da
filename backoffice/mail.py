"""Transport d'e-mail : SMTP (smtplib), Resend, ou rien si non configuré.

Un transport renvoie True/False et ne lève jamais : le dispatcher de
notifications s'appuie sur ce contrat.
"""
from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import parseaddr
from typing import Protocol

import resend

from .config import EmailSettings
from .logging_config import mask_email

logger = logging.getLogger(__name__)


class MailTransport(Protocol):
    def send(self, to: str, subject: str, html: str, reply_to: str | None = None) -> bool:
        ...


class SmtpTransport:
    def __init__(self, settings: EmailSettings):
        self.settings = settings

    def _connect(self) -> smtplib.SMTP:
        st = self.settings
        context = ssl.create_default_context()
        # SSL implicite sur 465 (ou EMAIL_SECURE=true), STARTTLS sinon
        if st.port == 465 or st.secure:
            server: smtplib.SMTP = smtplib.SMTP_SSL(st.host, st.port, context=context, timeout=st.timeout_seconds)
        else:
            server = smtplib.SMTP(st.host, st.port, timeout=st.timeout_seconds)
            server.starttls(context=context)
        if st.user and st.password:
            server.login(st.user, st.password)
        return server

    def send(self, to: str, subject: str, html: str, reply_to: str | None = None) -> bool:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.settings.sender
        msg["To"] = to
        if reply_to:
            msg["Reply-To"] = reply_to
        msg.attach(MIMEText(html, "html", "utf-8"))

        try:
            server = self._connect()
            try:
                server.sendmail(parseaddr(self.settings.sender)[1], [to], msg.as_string())
            finally:
                server.quit()
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Envoi SMTP échoué vers %s: %s", mask_email(to), e)
            return False

        logger.info("E-mail envoyé via SMTP à %s", mask_email(to))
        return True


class ResendTransport:
    def __init__(self, settings: EmailSettings):
        self.settings = settings
        resend.api_key = settings.resend_api_key

    def send(self, to: str, subject: str, html: str, reply_to: str | None = None) -> bool:
        params = {
            "from": self.settings.sender,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if reply_to:
            params["reply_to"] = reply_to

        try:
            response = resend.Emails.send(params)
        except Exception as e:
            logger.error("Envoi Resend échoué vers %s: %s", mask_email(to), e)
            return False

        logger.info("E-mail envoyé via Resend à %s (%s)", mask_email(to), response.get("id") if isinstance(response, dict) else response)
        return True


class NullTransport:
    """Aucun fournisseur configuré : on journalise et on signale l'échec."""

    def send(self, to: str, subject: str, html: str, reply_to: str | None = None) -> bool:
        logger.warning("E-mail non configuré, envoi ignoré: %r -> %s", subject, mask_email(to))
        return False


def build_transport(settings: EmailSettings) -> MailTransport:
    if settings.host and settings.user:
        return SmtpTransport(settings)
    if settings.resend_api_key:
        return ResendTransport(settings)
    return NullTransport()

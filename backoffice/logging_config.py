from __future__ import annotations

import logging

from .config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure le logging racine une seule fois (API, CLI, jobs)."""
    logging.basicConfig(level=(level or LOG_LEVEL).upper(), format=LOG_FORMAT)
    # bruit des bibliothèques tierces
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def mask_email(email: str | None) -> str:
    """j***n@domaine.com : jamais d'adresse en clair dans les logs."""
    if not email:
        return "***"
    local, _, domain = email.partition("@")
    if not local or not domain:
        return "***"
    if len(local) <= 2:
        return f"{local[0]}***@{domain}"
    return f"{local[0]}***{local[-1]}@{domain}"


def mask_id(value: str | None) -> str:
    if not value or len(value) < 8:
        return "***"
    return f"{value[:4]}***{value[-4:]}"

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

# .env à la racine du projet (à côté de pyproject.toml)
PROJECT_ROOT = Path(__file__).resolve().parents[1]
load_dotenv(PROJECT_ROOT / ".env")


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{PROJECT_ROOT / 'backoffice.sqlite'}")

# Pays utilisé pour le calendrier des jours fériés (code ISO, lib `holidays`)
HOLIDAY_COUNTRY = os.getenv("HOLIDAY_COUNTRY", "ML")

# Heure locale de l'agence : créneaux, rappels et expirations
BUSINESS_TIMEZONE = os.getenv("BUSINESS_TIMEZONE", "Africa/Bamako")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# JWT (à définir dans l'environnement en production)
JWT_SECRET = os.getenv("JWT_SECRET", "CHANGE_ME_DEV_SECRET")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_MINUTES = _env_int("JWT_EXPIRE_MINUTES", 60)

# Compte admin créé au démarrage (seed idempotent)
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")


@dataclass(frozen=True)
class EmailSettings:
    """Configuration du dispatcher de notifications et du transport mail."""

    host: str | None = None
    port: int = 587
    user: str | None = None
    password: str | None = None
    secure: bool = False
    from_address: str | None = None
    timeout_seconds: int = 20
    resend_api_key: str | None = None
    admin_email: str | None = None
    frontend_url: str = "http://localhost:5173"
    app_name: str = "Paname Consulting"
    office_location: str = "Kalaban Coura"

    @property
    def sender(self) -> str:
        address = self.from_address or self.user or "noreply@localhost"
        if "<" in address:
            return address
        return f"{self.app_name} <{address}>"

    @classmethod
    def from_env(cls) -> "EmailSettings":
        return cls(
            host=os.getenv("EMAIL_HOST") or None,
            port=_env_int("EMAIL_PORT", 587),
            user=os.getenv("EMAIL_USER") or None,
            password=os.getenv("EMAIL_PASS") or None,
            secure=_env_bool("EMAIL_SECURE"),
            from_address=os.getenv("EMAIL_FROM") or None,
            timeout_seconds=_env_int("EMAIL_TIMEOUT_SECONDS", 20),
            resend_api_key=os.getenv("RESEND_API_KEY") or None,
            # sans ADMIN_EMAIL, les messages de contact partent vers la boîte expéditrice
            admin_email=os.getenv("ADMIN_EMAIL") or os.getenv("EMAIL_USER") or None,
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:5173"),
            app_name=os.getenv("APP_NAME", "Paname Consulting"),
            office_location=os.getenv("OFFICE_LOCATION", "Kalaban Coura"),
        )


@dataclass(frozen=True)
class SchedulerSettings:
    enabled: bool = False
    timezone: str = "Africa/Bamako"
    reminder_hour: int = 9
    reminder_minute: int = 0
    expiry_interval_minutes: int = 10
    job_defaults: dict = field(default_factory=lambda: {"coalesce": True, "max_instances": 1})

    @classmethod
    def from_env(cls) -> "SchedulerSettings":
        return cls(
            enabled=_env_bool("SCHEDULER_ENABLED"),
            timezone=BUSINESS_TIMEZONE,
            reminder_hour=_env_int("REMINDER_HOUR", 9),
            reminder_minute=_env_int("REMINDER_MINUTE", 0),
        )

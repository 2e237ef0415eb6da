"""Configuration pytest : base SQLite en mémoire, dispatcher enregistreur, jours fériés figés."""
import os

# avant tout import du paquet (config lue au chargement)
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ["SCHEDULER_ENABLED"] = "false"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from backoffice import calendar
from backoffice.auth_models import Role
from backoffice.auth_service import create_account
from backoffice.config import EmailSettings
from backoffice.db import Base, SessionLocal
from backoffice.notifications import NotificationDispatcher, set_dispatcher
from backoffice.seed import init_db

from tests.helpers import ADMIN_EMAIL, OTHER_EMAIL, PASSWORD, USER_EMAIL, RecordingTransport


@pytest.fixture(autouse=True)
def db():
    """Base neuve pour chaque test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal.configure(bind=engine)
    init_db(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def fixed_holidays(monkeypatch):
    """Seules les fermetures fixes de l'agence comptent comme jours fériés."""
    monkeypatch.setattr(calendar, "_public_holidays", lambda year: set())
    calendar.holidays_for_year.cache_clear()
    yield
    calendar.holidays_for_year.cache_clear()


@pytest.fixture
def email_settings():
    return EmailSettings(admin_email=ADMIN_EMAIL, frontend_url="https://paname.test")


@pytest.fixture(autouse=True)
def mailbox(email_settings):
    transport = RecordingTransport()
    set_dispatcher(NotificationDispatcher(email_settings, transport))
    yield transport
    set_dispatcher(None)


@pytest.fixture
def user():
    return create_account(USER_EMAIL, PASSWORD, "Awa", "Diallo")


@pytest.fixture
def other_user():
    return create_account(OTHER_EMAIL, PASSWORD, "Moussa", "Keita")


@pytest.fixture
def admin():
    return create_account(ADMIN_EMAIL, PASSWORD, "Admin", "", role=Role.ADMIN)

"""Tests des comptes, des jetons et du compte admin initial."""

from datetime import datetime, timedelta, timezone

import pytest

from backoffice.auth_models import Account, Role
from backoffice.auth_security import clean_token, create_access_token, read_token, verify_password
from backoffice.auth_service import authenticate, create_account, find_by_email
from backoffice.errors import ConflictError, ValidationError
from backoffice.seed import seed_admin

from tests.helpers import PASSWORD, USER_EMAIL, reload


def test_token_carries_email_and_role():
    claims = read_token(create_access_token(USER_EMAIL, "admin"))
    assert claims.email == USER_EMAIL
    assert claims.role == "admin"


def test_expired_or_garbage_token_is_rejected():
    old = create_access_token(USER_EMAIL, "user", now=datetime.now(timezone.utc) - timedelta(days=2))
    assert read_token(old) is None
    assert read_token("pas-un-jwt") is None
    assert read_token("") is None


def test_clean_token_strips_quotes_and_prefix():
    assert clean_token(' "Bearer abc.def" ') == "abc.def"
    assert clean_token("'abc'") == "abc"


def test_unreadable_hash_does_not_raise():
    assert verify_password(PASSWORD, "") is False
    assert verify_password(PASSWORD, "pas-un-hash") is False


def test_create_account_normalizes_email(user):
    assert find_by_email("  AWA.Diallo@Example.com ") is not None
    with pytest.raises(ConflictError):
        create_account(USER_EMAIL.upper(), "autre-mdp")
    with pytest.raises(ValidationError):
        create_account("", PASSWORD)


def test_authenticate(user):
    assert authenticate(USER_EMAIL, PASSWORD).id == user
    assert authenticate(USER_EMAIL, "mauvais") is None
    assert authenticate("inconnu@example.com", PASSWORD) is None


def test_seed_admin_is_idempotent():
    assert seed_admin(email="", password="") is None

    first = seed_admin(email="Boss@Paname.test", password="motdepasse")
    assert seed_admin(email="boss@paname.test", password="autre") == first
    assert reload(Account, first).role == Role.ADMIN
    assert authenticate("boss@paname.test", "motdepasse") is not None


def test_seed_admin_promotes_existing_account(user):
    assert seed_admin(email=USER_EMAIL, password="ignoré") == user
    assert reload(Account, user).role == Role.ADMIN

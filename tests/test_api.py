"""Tests de l'API HTTP (FastAPI TestClient)."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from backoffice import procedures
from backoffice.api_main import app
from backoffice.calendar import is_business_day, local_now
from backoffice.models import AdminOpinion, AppointmentStatus

from tests.helpers import ADMIN_EMAIL, OTHER_EMAIL, PASSWORD, SATURDAY, USER_EMAIL, insert_appointment


@pytest.fixture
def client():
    # sans `with` : pas d'événement startup (base et dispatcher viennent des fixtures)
    return TestClient(app)


def token_for(client, email: str) -> dict[str, str]:
    r = client.post("/api/auth/login", data={"username": email, "password": PASSWORD})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


@pytest.fixture
def user_headers(client, user):
    return token_for(client, USER_EMAIL)


@pytest.fixture
def other_headers(client, other_user):
    return token_for(client, OTHER_EMAIL)


@pytest.fixture
def admin_headers(client, admin):
    return token_for(client, ADMIN_EMAIL)


def next_business_day():
    day = local_now().date() + timedelta(days=1)
    while not is_business_day(day):
        day += timedelta(days=1)
    return day


def booking_payload(**overrides) -> dict:
    data = {
        "first_name": "Awa",
        "last_name": "Diallo",
        "email": USER_EMAIL,
        "telephone": "+22376000000",
        "destination": "France",
        "niveau_etude": "Licence",
        "filiere": "Informatique",
        "date": next_business_day().isoformat(),
        "time": "10:00",
    }
    data.update(overrides)
    return data


# =========================
# Auth
# =========================
def test_register_login_me(client):
    r = client.post(
        "/api/auth/register",
        json={"email": "Fatou@Example.com", "password": "motdepasse", "first_name": "Fatou"},
    )
    assert r.status_code == 201

    headers = token_for(client, "fatou@example.com")
    me = client.get("/api/me", headers=headers).json()
    assert me["email"] == "fatou@example.com"
    assert me["role"] == "user"


def test_register_duplicate_is_conflict(client, user):
    r = client.post("/api/auth/register", json={"email": USER_EMAIL, "password": "motdepasse"})
    assert r.status_code == 409
    assert r.json()["error"] == "ConflictError"


def test_login_with_wrong_password(client, user):
    r = client.post("/api/auth/login", data={"username": USER_EMAIL, "password": "mauvais"})
    assert r.status_code == 401


def test_protected_routes_need_token(client):
    assert client.get("/api/me").status_code == 401
    assert client.get("/api/appointments/mine", headers={"Authorization": "Bearer pas-un-jwt"}).status_code == 401


# =========================
# Créneaux
# =========================
def test_slots_and_dates(client):
    r = client.get("/api/slots", params={"date": SATURDAY.isoformat()})
    assert r.status_code == 200
    assert r.json()["slots"] == []

    day = next_business_day()
    slots = client.get("/api/slots", params={"date": day.isoformat()}).json()["slots"]
    assert len(slots) == 16

    dates = client.get("/api/dates").json()
    assert day.isoformat() in dates


def test_bad_date_is_validation_error(client):
    r = client.get("/api/slots", params={"date": "demain"})
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "ValidationError"
    assert set(body) == {"error", "message", "details"}


# =========================
# Rendez-vous
# =========================
def test_book_list_and_cancel(client, user_headers, admin_headers):
    r = client.post("/api/appointments", json=booking_payload(), headers=user_headers)
    assert r.status_code == 201, r.text
    rdv = r.json()
    assert rdv["status"] == "Confirmé"

    again = client.post("/api/appointments", json=booking_payload(time="11:00"), headers=user_headers)
    assert again.status_code == 409

    mine = client.get("/api/appointments/mine", headers=user_headers).json()
    assert [a["id"] for a in mine["data"]] == [rdv["id"]]

    assert client.get("/api/appointments", headers=user_headers).status_code == 403
    listed = client.get("/api/appointments", headers=admin_headers).json()
    assert listed["total"] == 1

    r = client.put(f"/api/appointments/{rdv['id']}/cancel", json={"reason": "Empêchement"}, headers=user_headers)
    assert r.status_code == 200
    assert r.json()["status"] == "Annulé"
    assert r.json()["cancelled_by"] == "user"


def test_booking_for_someone_else_is_forbidden(client, user_headers, other_user):
    r = client.post("/api/appointments", json=booking_payload(email=OTHER_EMAIL), headers=user_headers)
    assert r.status_code == 403


def test_other_clients_appointment_is_not_found(client, user_headers, other_headers):
    rdv = client.post("/api/appointments", json=booking_payload(), headers=user_headers).json()
    assert client.get(f"/api/appointments/{rdv['id']}", headers=other_headers).status_code == 404
    assert client.get(f"/api/appointments/{rdv['id']}", headers=user_headers).status_code == 200


def test_admin_cannot_complete_future_appointment(client, user_headers, admin_headers):
    rdv = client.post("/api/appointments", json=booking_payload(), headers=user_headers).json()
    r = client.put(
        f"/api/appointments/{rdv['id']}/status",
        json={"status": "Terminé", "avis_admin": "Favorable"},
        headers=admin_headers,
    )
    assert r.status_code == 400
    assert r.json()["error"] == "StateError"


def test_patch_appointment(client, user_headers):
    rdv = client.post("/api/appointments", json=booking_payload(), headers=user_headers).json()
    r = client.patch(f"/api/appointments/{rdv['id']}", json={"time": "14:00"}, headers=user_headers)
    assert r.status_code == 200
    assert r.json()["time"] == "14:00"

    r = client.patch(f"/api/appointments/{rdv['id']}", json={"id": "x"}, headers=user_headers)
    assert r.status_code == 400


def test_stats_are_admin_only(client, user_headers, admin_headers):
    assert client.get("/api/appointments/stats", headers=user_headers).status_code == 403
    stats = client.get("/api/appointments/stats", headers=admin_headers).json()
    assert stats["total"] == 0


# =========================
# Procédures
# =========================
@pytest.fixture
def procedure(user):
    rdv = insert_appointment(status=AppointmentStatus.COMPLETED, avis_admin=AdminOpinion.FAVORABLE)
    return procedures.create_from_appointment(rdv.id)


def test_procedure_steps_through_api(client, procedure, user_headers, admin_headers):
    mine = client.get("/api/procedures/mine", headers=user_headers).json()
    assert mine["data"][0]["steps"][0] == {
        "name": "DEMANDE ADMISSION",
        "status": "En cours",
        "rejection_reason": None,
        "completed_at": None,
        "updated_at": mine["data"][0]["steps"][0]["updated_at"],
    }

    url = f"/api/procedures/{procedure.id}/steps/DEMANDE ADMISSION"
    assert client.put(url, json={"status": "Terminé"}, headers=user_headers).status_code == 403
    r = client.put(url, json={"status": "Terminé"}, headers=admin_headers)
    assert r.status_code == 200
    assert [st["status"] for st in r.json()["steps"]] == ["Terminé", "En cours", "En attente"]

    r = client.put(f"/api/procedures/{procedure.id}/steps/DEMANDE BOURSE", json={"status": "Terminé"}, headers=admin_headers)
    assert r.status_code == 404


def test_procedure_reject_and_cancel(client, procedure, user_headers, other_headers, admin_headers):
    r = client.put(f"/api/procedures/{procedure.id}/reject", json={"reason": "non"}, headers=admin_headers)
    assert r.status_code == 400

    assert client.get(f"/api/procedures/{procedure.id}", headers=other_headers).status_code == 403
    r = client.put(f"/api/procedures/{procedure.id}/cancel", json={}, headers=user_headers)
    assert r.status_code == 200
    assert r.json()["status"] == "Annulée"

    overview = client.get("/api/procedures/overview", headers=admin_headers).json()
    assert overview["by_status"]["Annulée"] == 1


def test_admin_delete_procedure(client, procedure, admin_headers):
    r = client.delete(f"/api/procedures/{procedure.id}", params={"reason": "Doublon"}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["deletion_reason"] == "Doublon"


# =========================
# Contact
# =========================
def test_contact_flow(client, user_headers, admin_headers, mailbox):
    r = client.post("/api/contact", json={"email": USER_EMAIL, "message": "Bonjour, des places en Chine ?"})
    assert r.status_code == 201
    message_id = r.json()["id"]

    assert client.get("/api/contact", headers=user_headers).status_code == 403
    assert client.get("/api/contact", headers=admin_headers).json()["total"] == 1

    r = client.post(f"/api/contact/{message_id}/reply", json={"response": "Oui, plusieurs."}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["admin_response"] == "Oui, plusieurs."
    assert r.json()["responded_by"] == ADMIN_EMAIL

    assert client.get("/api/contact/stats", headers=admin_headers).json()["responded"] == 1
    assert client.delete(f"/api/contact/{message_id}", headers=admin_headers).json() == {"ok": True}
    assert client.get(f"/api/contact/{message_id}", headers=admin_headers).status_code == 404

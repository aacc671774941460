from datetime import date
from urllib.parse import parse_qs, urlparse

import pytest

from users import USERS, calculate_age

REGISTRATION = {
    "email": "sam@example.com",
    "password": "correct-horse",
    "phoneNumber": "+14155550100",
    "username": "samdoes",
    "firstName": "Sam",
    "lastName": "Doe",
    "dateOfBirth": "1990-04-12",
    "address": "1 Main St",
    "city": "Springfield",
    "state": "IL",
    "zipcode": "62701",
}


def register(client, **overrides):
    return client.post("/users/register", json={**REGISTRATION, **overrides})


def test_calculate_age():
    assert calculate_age(date(2000, 6, 15), today=date(2018, 6, 14)) == 17
    assert calculate_age(date(2000, 6, 15), today=date(2018, 6, 15)) == 18


def test_register_login_and_profile(client, mailer, store):
    resp = register(client)
    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "User created. Verification email sent."
    uid = body["uid"]

    profile = store.get(USERS, uid)
    assert profile["verified"] is False
    assert profile["name"] == "Sam Doe"
    assert profile["accountType"] == "individual"
    assert "password" not in profile

    assert [email for email, _ in mailer.sent] == ["sam@example.com"]

    resp = client.get("/users/profile", headers={"Authorization": f"Bearer {body['token']}"})
    assert resp.status_code == 200
    assert resp.json()["data"]["username"] == "samdoes"

    resp = client.post("/users/login", json={"email": "sam@example.com", "password": "correct-horse"})
    assert resp.status_code == 200
    login = resp.json()
    assert login["user"] == {"uid": uid, "email": "sam@example.com", "name": "Sam Doe", "role": "user"}
    assert client.get("/users/profile", headers={"Authorization": f"Bearer {login['token']}"}).status_code == 200


def test_login_rejects_wrong_password(client):
    register(client)
    resp = client.post("/users/login", json={"email": "sam@example.com", "password": "wrong-horse"})
    assert resp.status_code == 401
    assert resp.json()["error"] == "Invalid email or password"


def test_verify_email_link(client, mailer, store):
    uid = register(client).json()["uid"]
    _, link = mailer.sent[0]
    token = parse_qs(urlparse(link).query)["token"][0]

    resp = client.get("/users/verify-email", params={"token": token})
    assert resp.status_code == 200
    assert store.get(USERS, uid)["verified"] is True
    assert client.get("/users/verify-email", params={"token": "bogus"}).status_code == 403


def test_register_requires_adult(client):
    resp = register(client, dateOfBirth=date(date.today().year - 10, 1, 1).isoformat())
    assert resp.status_code == 400
    assert resp.json()["error"] == "You must be at least 18 years old to register"


@pytest.mark.parametrize("field,value", [
    ("phoneNumber", "4155550100"),
    ("username", "no spaces"),
    ("password", "short"),
    ("email", "not-an-email"),
    ("accountType", "government"),
])
def test_register_validation(client, field, value):
    resp = register(client, **{field: value})
    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_error"


def test_username_and_phone_must_be_unique(client):
    register(client)
    resp = register(client, email="other@example.com", phoneNumber="+14155550199")
    assert resp.status_code == 400
    assert resp.json()["error"] == "Username already in use"

    resp = register(client, email="other@example.com", username="someoneelse")
    assert resp.status_code == 400
    assert resp.json()["error"] == "Phone number already in use"


def test_reregistering_updates_profile_for_the_owner_only(client, store):
    uid = register(client).json()["uid"]

    resp = register(client, password="not-the-password", city="Shelbyville")
    assert resp.status_code == 401
    assert store.get(USERS, uid)["city"] == "Springfield"

    resp = register(client, city="Shelbyville")
    assert resp.status_code == 200
    assert resp.json()["message"] == "User updated"
    assert resp.json()["uid"] == uid
    assert store.get(USERS, uid)["city"] == "Shelbyville"
    assert store.get(USERS, uid)["verified"] is False


def test_profile_update(client, auth_header):
    uid = register(client).json()["uid"]
    register(client, email="kim@example.com", username="kimk", phoneNumber="+14155550111")

    resp = client.patch("/users/profile", json={"city": "Capital City"}, headers=auth_header(uid))
    assert resp.status_code == 200
    assert resp.json()["data"]["city"] == "Capital City"

    resp = client.patch("/users/profile", json={"username": "kimk"}, headers=auth_header(uid))
    assert resp.status_code == 400
    assert client.patch("/users/profile", json={}, headers=auth_header(uid)).status_code == 400


def test_profile_missing(client, auth_header):
    resp = client.get("/users/profile", headers=auth_header("ghost"))
    assert resp.status_code == 404

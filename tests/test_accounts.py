from datetime import datetime, timedelta

import pytest

from shopfront import accounts
from shopfront.errors import AuthenticationError, ConflictError, ValidationError


def register(client, **overrides):
    payload = {"username": "alice", "email": "Alice@Example.com", "password": "secret123"}
    payload.update(overrides)
    return client.post("/api/auth/register", json=payload)


def test_register_and_login(client, mailer):
    response = register(client)

    assert response.status_code == 201
    assert response.get_json()["user"]["email"] == "alice@example.com"
    assert response.get_json()["user"]["role"] == "customer"
    assert mailer.subjects() == ["Welcome to Shopfront!"]

    login = client.post(
        "/api/auth/login", json={"email": "alice@example.com", "password": "secret123"}
    )
    assert login.status_code == 200
    token = login.get_json()["token"]

    profile = client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"})
    assert profile.get_json()["user"]["username"] == "alice"


def test_register_duplicate_email(client):
    register(client)

    response = register(client, username="alice2")

    assert response.status_code == 409


def test_register_rejects_staff_roles(client):
    response = register(client, role="admin")

    assert response.status_code == 400


def test_login_with_wrong_password(client):
    register(client)

    response = client.post(
        "/api/auth/login", json={"email": "alice@example.com", "password": "nope"}
    )

    assert response.status_code == 401


def test_password_reset_flow(client, mailer):
    register(client)

    response = client.post("/api/auth/forgot-password", json={"email": "alice@example.com"})
    assert response.status_code == 200
    reset_text = mailer.sent[-1]["text"]
    assert "http://shop.test/reset-password?token=" in reset_text
    token = reset_text.split("token=", 1)[1].strip()

    response = client.post(
        "/api/auth/reset-password", json={"token": token, "newPassword": "newsecret"}
    )
    assert response.status_code == 200

    login = client.post(
        "/api/auth/login", json={"email": "alice@example.com", "password": "newsecret"}
    )
    assert login.status_code == 200

    reused = client.post(
        "/api/auth/reset-password", json={"token": token, "newPassword": "another1"}
    )
    assert reused.status_code == 400


def test_forgot_password_for_unknown_email(client, mailer):
    response = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})

    assert response.status_code == 200
    assert mailer.sent == []


def test_expired_reset_token(db, make_user):
    user = make_user("alice")
    token, _ = accounts.begin_password_reset(db, user, 60)
    db.users.update_one(
        {"_id": user["_id"]},
        {"$set": {"reset_token_expiry": datetime.utcnow() - timedelta(minutes=1)}},
    )

    with pytest.raises(ValidationError):
        accounts.reset_password(db, token, "newsecret")


def test_change_password(db, make_user):
    user = make_user("alice")

    with pytest.raises(AuthenticationError):
        accounts.change_password(db, user, "wrong", "newsecret")

    accounts.change_password(db, user, "secret123", "newsecret")
    assert accounts.authenticate(db, "alice@example.com", "newsecret")["_id"] == user["_id"]


def test_register_duplicate_username(db):
    accounts.register_user(db, {"username": "alice", "email": "a@example.com", "password": "secret123"})

    with pytest.raises(ConflictError):
        accounts.register_user(
            db, {"username": "alice", "email": "b@example.com", "password": "secret123"}
        )


def test_role_management(client, auth_headers, make_user):
    admin = make_user("root", role="admin")
    cal = make_user("cal")

    forbidden = client.put(
        f"/api/admin/users/{cal['_id']}/role", json={"role": "admin"}, headers=auth_headers(cal)
    )
    assert forbidden.status_code == 403

    response = client.put(
        f"/api/admin/users/{cal['_id']}/role", json={"role": "manager"}, headers=auth_headers(admin)
    )
    assert response.status_code == 200
    assert response.get_json()["user"]["role"] == "manager"

    invalid = client.put(
        f"/api/admin/users/{cal['_id']}/role", json={"role": "owner"}, headers=auth_headers(admin)
    )
    assert invalid.status_code == 400


def test_token_for_deleted_user(client, db, auth_headers, make_user):
    ghost = make_user("ghost")
    headers = auth_headers(ghost)
    db.users.delete_one({"_id": ghost["_id"]})

    response = client.get("/api/auth/profile", headers=headers)

    assert response.status_code == 401

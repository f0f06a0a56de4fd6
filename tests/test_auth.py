"""
Session and token issuing against a PostGIS store.
"""

import threading
import time

from conftest import PASSWORD, authHeader, makeUser
from bustrack.src import authentication, exceptions
from bustrack.src.db import RefreshToken, User, sessionMaker
from bustrack.src.enums import UserRole

REGISTRATION = {
    "username": "nimal_p",
    "email_id": "Nimal@Example.lk",
    "password": "Secret123",
    "first_name": "Nimal",
    "last_name": "Perera",
    "phone_number": "+94771234567",
}


def login(client, identifier, password=PASSWORD):
    return client.post(
        "/api/v1/auth/login", json={"login": identifier, "password": password}
    )


def test_register_forces_user_role(client, db, audit_events):
    response = client.post(
        "/api/v1/auth/register", json=dict(REGISTRATION, role="admin")
    )
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["user"]["role"] == "user"
    assert data["user"]["email_id"] == "nimal@example.lk"
    assert "password" not in data["user"]
    assert data["tokens"]["token_type"] == "Bearer"
    assert data["tokens"]["expires_in"] == 900
    assert all("password" not in event for event in audit_events)

    duplicate = client.post("/api/v1/auth/register", json=REGISTRATION)
    assert duplicate.status_code == 409


def test_login_by_username_or_email(client, db):
    makeUser(db, "kamal")
    assert login(client, "kamal").status_code == 200
    response = login(client, "KAMAL@example.lk")
    assert response.status_code == 200
    db.expire_all()
    assert db.query(User).one().last_login is not None


def test_wrong_password_never_locks_the_account(client, db):
    makeUser(db, "kamal")
    for _ in range(3):
        response = login(client, "kamal", "Wrong123")
        assert response.status_code == 401
        assert response.headers["X-Error"] == "InvalidCredentials"

    # There is no lockout, the account stays active and usable
    db.expire_all()
    assert db.query(User).one().is_active is True
    assert login(client, "kamal").status_code == 200


def test_unknown_and_inactive_accounts(client, db):
    makeUser(db, "sunil", is_active=False)
    assert login(client, "nobody").status_code == 401
    response = login(client, "sunil")
    assert response.status_code == 401
    assert response.headers["X-Error"] == "InactiveAccount"


def test_refresh_rotates_tokens(client, db):
    makeUser(db, "kamal")
    tokens = login(client, "kamal").json()["data"]["tokens"]

    response = client.post(
        "/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
    )
    assert response.status_code == 200
    rotated = response.json()["data"]
    assert rotated["refresh_token"] != tokens["refresh_token"]

    # The old refresh token is single use
    replay = client.post(
        "/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
    )
    assert replay.status_code == 401

    # An access token is not a refresh token
    wrongType = client.post(
        "/api/v1/auth/refresh", json={"refresh_token": tokens["access_token"]}
    )
    assert wrongType.status_code == 401


def test_refresh_fails_for_deactivated_account(client, db):
    user = makeUser(db, "kamal")
    tokens = login(client, "kamal").json()["data"]["tokens"]
    user.is_active = False
    db.commit()
    response = client.post(
        "/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
    )
    assert response.status_code == 401


def test_at_most_five_refresh_tokens(client, db):
    makeUser(db, "kamal")
    issued = [login(client, "kamal").json()["data"]["tokens"] for _ in range(7)]
    stored = {x.token for x in db.query(RefreshToken).all()}
    assert len(stored) == 5
    assert stored == {x["refresh_token"] for x in issued[2:]}


def test_logout_revokes_refresh_token(client, db):
    user = makeUser(db, "kamal")
    tokens = login(client, "kamal").json()["data"]["tokens"]
    response = client.post(
        "/api/v1/auth/logout",
        json={"refresh_token": tokens["refresh_token"]},
        headers=authHeader(user),
    )
    assert response.status_code == 200
    assert db.query(RefreshToken).count() == 0

    # Logging out twice is harmless
    again = client.post(
        "/api/v1/auth/logout",
        json={"refresh_token": tokens["refresh_token"]},
        headers=authHeader(user),
    )
    assert again.status_code == 200


def test_profile_and_password(client, db):
    user = makeUser(db, "kamal")
    profile = client.put(
        "/api/v1/auth/me", json={"first_name": "Kamal"}, headers=authHeader(user)
    )
    assert profile.json()["data"]["first_name"] == "Kamal"

    wrong = client.put(
        "/api/v1/auth/password",
        json={"current_password": "Nope1234", "new_password": "Changed123"},
        headers=authHeader(user),
    )
    assert wrong.status_code == 400
    assert wrong.headers["X-Error"] == "IncorrectPassword"

    changed = client.put(
        "/api/v1/auth/password",
        json={"current_password": PASSWORD, "new_password": "Changed123"},
        headers=authHeader(user),
    )
    assert changed.status_code == 200
    assert login(client, "kamal").status_code == 401
    assert login(client, "kamal", "Changed123").status_code == 200


def test_deactivated_user_loses_access_immediately(client, db):
    user = makeUser(db, "kamal")
    headers = authHeader(user)
    assert client.get("/api/v1/auth/me", headers=headers).status_code == 200
    user.is_active = False
    db.commit()
    response = client.get("/api/v1/auth/me", headers=headers)
    assert response.status_code == 401
    assert response.headers["X-Error"] == "InactiveAccount"


def test_admin_manages_accounts(client, db, admin):
    created = client.post(
        "/api/v1/admin/users",
        json=dict(REGISTRATION, role="operator"),
        headers=authHeader(admin),
    )
    assert created.status_code == 400
    assert created.headers["X-Error"] == "MissingParameter"

    created = client.post(
        "/api/v1/admin/users",
        json=dict(REGISTRATION, role="driver"),
        headers=authHeader(admin),
    )
    assert created.status_code == 201
    userId = created.json()["data"]["id"]

    stats = client.get("/api/v1/admin/users/stats", headers=authHeader(admin))
    roles = {x["role"]: x for x in stats.json()["data"]["role_stats"]}
    assert roles["driver"]["active"] == 1
    assert roles["admin"]["total"] == 1

    selfDelete = client.delete(
        f"/api/v1/admin/users/{admin.id}", headers=authHeader(admin)
    )
    assert selfDelete.status_code == 400
    deleted = client.delete(f"/api/v1/admin/users/{userId}", headers=authHeader(admin))
    assert deleted.status_code == 200


def test_non_admin_cannot_list_accounts(client, db):
    user = makeUser(db, "kamal", UserRole.DRIVER)
    response = client.get("/api/v1/admin/users", headers=authHeader(user))
    assert response.status_code == 403


def test_concurrent_refresh_honours_token_once(db):
    user = makeUser(db, "kamal")
    tokens = authentication.issueTokens(db, user)
    outcome = []

    def rotate():
        session = sessionMaker()
        try:
            authentication.refreshTokens(session, tokens["refresh_token"])
            outcome.append("rotated")
        except exceptions.InvalidToken:
            outcome.append("rejected")
        finally:
            session.close()

    # A rotation in flight holds the stored row until it commits
    inFlight = sessionMaker()
    stored = (
        inFlight.query(RefreshToken)
        .filter(RefreshToken.token == tokens["refresh_token"])
        .with_for_update()
        .one()
    )
    inFlight.delete(stored)
    inFlight.flush()

    worker = threading.Thread(target=rotate)
    worker.start()
    time.sleep(0.5)
    inFlight.commit()
    inFlight.close()
    worker.join(timeout=10)

    assert outcome == ["rejected"]

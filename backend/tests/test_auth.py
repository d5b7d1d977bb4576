"""
Tests for the authentication endpoints (/api/auth).

Tests cover:
- Registration, duplicate detection, verification email delivery
- Login, refresh token rotation, logout
- Email verification and password reset flows
- Password change and profile updates
- The 401 error envelope and the verified-email requirement
"""

import logging
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
from tests.conftest import TEST_PASSWORD, RecordingEmailService, create_auth_token

logger = logging.getLogger(__name__)

NEW_PASSWORD = "NewPassword456"


def register(client: TestClient, email: str = "dana@test.com", username: str = "dana"):
    return client.post(
        "/api/auth/register",
        json={
            "email": email,
            "username": username,
            "password": TEST_PASSWORD,
            "first_name": "Dana",
        },
    )


def login(client: TestClient, email: str, password: str = TEST_PASSWORD, remember_me: bool = False):
    return client.post(
        "/api/auth/login",
        json={"email": email, "password": password, "remember_me": remember_me},
    )


# ============== Registration ==============


def test_register_creates_unverified_user_and_sends_email(
    client: TestClient, test_db: Session, email_service: RecordingEmailService
):
    response = register(client, email="Dana@Test.com")

    assert response.status_code == 201, f"Expected 201, got {response.status_code}: {response.json()}"
    user = response.json()["user"]
    assert user["email"] == "dana@test.com"
    assert user["email_verified"] is False
    assert user["subscription_tier"] == "FREE"
    assert "password_hash" not in user

    db_user = test_db.query(models.User).filter(models.User.email == "dana@test.com").one()
    assert db_user.email_verify_token
    messages = email_service.sent_to("dana@test.com")
    assert len(messages) == 1
    assert db_user.email_verify_token in messages[0].get_body(("plain",)).get_content()
    logger.info("✓ Registration stores the user and sends a verification link")


def test_register_duplicate_email_conflicts(client: TestClient, user_a: models.User):
    response = register(client, email=user_a.email, username="someone_else")

    assert response.status_code == 409
    assert response.json()["error"] == "conflict"
    logger.info("✓ Duplicate email rejected with 409")


def test_register_duplicate_username_conflicts(client: TestClient, user_a: models.User):
    response = register(client, email="new@test.com", username=user_a.username)

    assert response.status_code == 409
    logger.info("✓ Duplicate username rejected with 409")


@pytest.mark.parametrize("password", ["short1A", "alllowercase1", "ALLUPPERCASE1", "NoDigitsHere"])
def test_register_rejects_weak_passwords(client: TestClient, password: str):
    response = client.post(
        "/api/auth/register",
        json={"email": "weak@test.com", "username": "weak", "password": password},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "validation_error"
    assert any(field["field"] == "password" for field in body["fields"])


def test_register_rolls_back_when_verification_email_fails(
    client: TestClient, test_db: Session, email_service: RecordingEmailService
):
    email_service.fail = True

    response = register(client)

    assert response.status_code == 502, f"Expected 502, got {response.status_code}: {response.json()}"
    assert response.json()["error"] == "delivery_failed"
    assert test_db.query(models.User).filter(models.User.email == "dana@test.com").first() is None
    logger.info("✓ Failed verification email leaves no account behind")


# ============== Login / Refresh / Logout ==============


def test_login_returns_tokens(client: TestClient, user_a: models.User, test_db: Session):
    response = login(client, "ALICE@test.com")

    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    body = response.json()
    assert body["user"]["id"] == user_a.id
    assert body["tokens"]["token_type"] == "bearer"
    assert body["tokens"]["access_token"]
    assert test_db.query(models.Session).filter(models.Session.user_id == user_a.id).count() == 1

    profile = client.get(
        "/api/auth/profile",
        headers={"Authorization": f"Bearer {body['tokens']['access_token']}"},
    )
    assert profile.status_code == 200
    assert profile.json()["username"] == "alice"
    logger.info("✓ Login issues a usable access token and persists a session")


def test_login_remember_me_sets_refresh_cookie(client: TestClient, user_a: models.User):
    response = login(client, user_a.email, remember_me=True)

    assert response.status_code == 200
    assert response.cookies.get("refresh_token") == response.json()["tokens"]["refresh_token"]


def test_login_wrong_password_is_unauthenticated(client: TestClient, user_a: models.User):
    response = login(client, user_a.email, password="WrongPassword1")

    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Bearer"
    assert response.json() == {
        "error": "unauthenticated",
        "detail": "Invalid email or password",
        "fields": [],
    }
    logger.info("✓ Wrong password yields the 401 envelope")


def test_login_unknown_email_gets_same_message(client: TestClient):
    response = login(client, "nobody@test.com")

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid email or password"


def test_login_inactive_user_rejected(client: TestClient, user_a: models.User, test_db: Session):
    user_a.is_active = False
    test_db.commit()

    response = login(client, user_a.email)

    assert response.status_code == 401


def test_refresh_rotates_token(client: TestClient, user_a: models.User):
    first = login(client, user_a.email).json()["tokens"]

    response = client.post("/api/auth/refresh-token", json={"refresh_token": first["refresh_token"]})
    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    rotated = response.json()["tokens"]
    assert rotated["refresh_token"] != first["refresh_token"]

    # The presented token stopped working
    replay = client.post("/api/auth/refresh-token", json={"refresh_token": first["refresh_token"]})
    assert replay.status_code == 401

    again = client.post("/api/auth/refresh-token", json={"refresh_token": rotated["refresh_token"]})
    assert again.status_code == 200
    logger.info("✓ Refresh rotation invalidates the old token")


def test_refresh_rejects_access_token(client: TestClient, user_a: models.User):
    response = client.post("/api/auth/refresh-token", json={"refresh_token": create_auth_token(user_a)})

    assert response.status_code == 401


def test_refresh_without_token(client: TestClient):
    response = client.post("/api/auth/refresh-token", json={})

    assert response.status_code == 401


def test_logout_deletes_session(client: TestClient, user_a: models.User, test_db: Session):
    tokens = login(client, user_a.email).json()["tokens"]

    response = client.post("/api/auth/logout", json={"refresh_token": tokens["refresh_token"]})
    assert response.status_code == 200
    assert test_db.query(models.Session).filter(models.Session.user_id == user_a.id).count() == 0

    refresh = client.post("/api/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]})
    assert refresh.status_code == 401
    logger.info("✓ Logout ends the session")


def test_logout_without_token_still_succeeds(client: TestClient):
    response = client.post("/api/auth/logout")

    assert response.status_code == 200


# ============== Email verification ==============


def test_verify_email_marks_user_verified(
    client: TestClient, test_db: Session, email_service: RecordingEmailService
):
    register(client)
    user = test_db.query(models.User).filter(models.User.email == "dana@test.com").one()
    token = user.email_verify_token

    response = client.post("/api/auth/verify-email", json={"token": token})

    assert response.status_code == 200
    test_db.refresh(user)
    assert user.email_verified is True
    assert user.email_verify_token is None
    # Verification + welcome
    assert len(email_service.sent_to("dana@test.com")) == 2

    reused = client.post("/api/auth/verify-email", json={"token": token})
    assert reused.status_code == 422
    logger.info("✓ Verification consumes its token")


def test_verify_email_succeeds_when_welcome_email_fails(
    client: TestClient, test_db: Session, email_service: RecordingEmailService
):
    register(client)
    user = test_db.query(models.User).filter(models.User.email == "dana@test.com").one()
    email_service.fail = True

    response = client.post("/api/auth/verify-email", json={"token": user.email_verify_token})

    assert response.status_code == 200
    test_db.refresh(user)
    assert user.email_verified is True


def test_unverified_user_rejected_when_verification_required(
    client: TestClient, test_db: Session, user_a: models.User, monkeypatch
):
    monkeypatch.setattr("auth.dependencies.REQUIRE_VERIFIED_EMAIL", True)
    user_a.email_verified = False
    test_db.commit()

    response = client.get("/api/auth/profile", headers={"Authorization": f"Bearer {create_auth_token(user_a)}"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Email address has not been verified"


# ============== Password reset / change ==============


def test_forgot_password_answers_identically(
    client: TestClient, user_a: models.User, email_service: RecordingEmailService
):
    known = client.post("/api/auth/forgot-password", json={"email": user_a.email})
    unknown = client.post("/api/auth/forgot-password", json={"email": "nobody@test.com"})

    assert known.status_code == unknown.status_code == 200
    assert known.json() == unknown.json()
    assert len(email_service.sent_to(user_a.email)) == 1
    assert email_service.sent_to("nobody@test.com") == []
    logger.info("✓ Forgot-password does not reveal registered addresses")


def test_reset_password_flow(client: TestClient, user_a: models.User, test_db: Session):
    session_tokens = login(client, user_a.email).json()["tokens"]
    client.post("/api/auth/forgot-password", json={"email": user_a.email})
    test_db.refresh(user_a)
    reset_token = user_a.password_reset_token
    assert reset_token
    assert user_a.email_verify_token is None

    response = client.post(
        "/api/auth/reset-password",
        json={"token": reset_token, "new_password": NEW_PASSWORD},
    )
    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"

    assert test_db.query(models.Session).filter(models.Session.user_id == user_a.id).count() == 0
    refresh = client.post("/api/auth/refresh-token", json={"refresh_token": session_tokens["refresh_token"]})
    assert refresh.status_code == 401
    assert login(client, user_a.email).status_code == 401
    assert login(client, user_a.email, password=NEW_PASSWORD).status_code == 200

    reused = client.post("/api/auth/reset-password", json={"token": reset_token, "new_password": NEW_PASSWORD})
    assert reused.status_code == 422
    logger.info("✓ Reset sets the password, ends sessions, and consumes the token")


def test_reset_token_does_not_disturb_verification_token(
    client: TestClient, test_db: Session
):
    register(client)
    user = test_db.query(models.User).filter(models.User.email == "dana@test.com").one()
    verify_token_value = user.email_verify_token

    client.post("/api/auth/forgot-password", json={"email": "dana@test.com"})

    response = client.post("/api/auth/verify-email", json={"token": verify_token_value})
    assert response.status_code == 200
    logger.info("✓ Verification and reset tokens are independent")


def test_forgot_password_delivery_failure(
    client: TestClient, user_a: models.User, test_db: Session, email_service: RecordingEmailService
):
    email_service.fail = True

    response = client.post("/api/auth/forgot-password", json={"email": user_a.email})

    assert response.status_code == 502
    test_db.refresh(user_a)
    assert user_a.password_reset_token is None


def test_change_password_keeps_current_session(client: TestClient, user_a: models.User, test_db: Session):
    current = login(client, user_a.email).json()["tokens"]
    other = login(client, user_a.email).json()["tokens"]

    response = client.post(
        "/api/auth/change-password",
        json={
            "current_password": TEST_PASSWORD,
            "new_password": NEW_PASSWORD,
            "refresh_token": current["refresh_token"],
        },
        headers={"Authorization": f"Bearer {current['access_token']}"},
    )
    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"

    assert client.post("/api/auth/refresh-token", json={"refresh_token": other["refresh_token"]}).status_code == 401
    assert client.post("/api/auth/refresh-token", json={"refresh_token": current["refresh_token"]}).status_code == 200
    assert login(client, user_a.email, password=NEW_PASSWORD).status_code == 200
    logger.info("✓ Password change revokes other sessions only")


def test_change_password_wrong_current(client: TestClient, headers_a):
    response = client.post(
        "/api/auth/change-password",
        json={"current_password": "WrongPassword1", "new_password": NEW_PASSWORD},
        headers=headers_a,
    )

    assert response.status_code == 422
    assert response.json()["fields"] == [{"field": "current_password", "message": "Current password is incorrect"}]


# ============== Profile ==============


def test_profile_requires_authentication(client: TestClient):
    response = client.get("/api/auth/profile")

    assert response.status_code == 401
    assert response.json()["error"] == "unauthenticated"


def test_profile_rejects_garbage_token(client: TestClient):
    response = client.get("/api/auth/profile", headers={"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 401


def test_update_profile(client: TestClient, headers_a):
    response = client.put(
        "/api/auth/profile",
        json={"first_name": "Alicia", "timezone": "Europe/Berlin"},
        headers=headers_a,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["first_name"] == "Alicia"
    assert body["timezone"] == "Europe/Berlin"
    assert body["username"] == "alice"


def test_update_profile_username_taken(client: TestClient, headers_a, user_b: models.User):
    response = client.put("/api/auth/profile", json={"username": user_b.username}, headers=headers_a)

    assert response.status_code == 409
    logger.info("✓ Username uniqueness enforced on profile update")

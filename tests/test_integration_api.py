"""HTTP boundary tests: register, login, verify, refresh, logout, invitations, reset."""

import pytest
from fastapi.testclient import TestClient

from passgate import app as app_module
from passgate.service.runtime import get_runtime
from passgate.storage.models import Profile

PASSWORD = "qwerty1"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def registered(client):
    response = client.post(
        "/v1/register",
        json={"email": "ada@example.com", "password": PASSWORD, "name": "Ada", "surname": "Lovelace"},
    )
    assert response.status_code == 200
    return response.json()["data"]["user_id"]


def _login(client, email="ada@example.com", password=PASSWORD, fingerprint="device-1", **params):
    return client.post(
        "/v1/login",
        params=params,
        json={"email": email, "password": password, "fingerprint": fingerprint},
    )


def _moderator_token(client, partition="global"):
    runtime = get_runtime()
    runtime.store.create_active_account(
        Profile(name="Mod", surname="Erator"),
        "mod@example.com",
        partition,
        runtime.auth.hash_password("mod-password"),
        role=runtime.settings.elevated_role,
    )
    response = _login(
        client, "mod@example.com", "mod-password", "mod-device", partition=partition
    )
    return response.json()["data"]["access_token"]


class TestSessionEndpoints:
    def test_login_sets_path_scoped_refresh_cookie(self, client, registered):
        response = _login(client)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user_id"] == registered
        assert data["access_token"] and data["refresh_token"]
        cookie = response.headers["set-cookie"]
        assert cookie.startswith("refresh_token=")
        assert "Path=/v1/refresh_tokens" in cookie
        assert "HttpOnly" in cookie

    def test_auth_refresh_and_logout(self, client, registered):
        tokens = _login(client).json()["data"]

        verified = client.post(
            "/v1/auth", json={"access_token": tokens["access_token"], "fingerprint": "device-1"}
        )
        assert verified.status_code == 200
        assert verified.json()["data"]["user_id"] == registered

        refreshed = client.post(
            "/v1/refresh_tokens",
            json={"fingerprint": "device-1", "refresh_token": tokens["refresh_token"]},
        )
        assert refreshed.status_code == 200
        assert refreshed.json()["data"]["refresh_token"] != tokens["refresh_token"]

        replay = client.post(
            "/v1/refresh_tokens",
            json={"fingerprint": "device-1", "refresh_token": tokens["refresh_token"]},
        )
        assert replay.status_code == 404
        assert replay.json()["error"]["code"] == "NOT_FOUND"

        for _ in range(2):
            logout = client.post(
                "/v1/logout", json={"user_id": registered, "fingerprint": "device-1"}
            )
            assert logout.status_code == 200

        after = client.post(
            "/v1/auth", json={"access_token": tokens["access_token"], "fingerprint": "device-1"}
        )
        assert after.status_code == 404

    def test_logout_with_access_token(self, client, registered):
        tokens = _login(client).json()["data"]
        response = client.post(
            "/v1/logout",
            json={"access_token": tokens["access_token"], "fingerprint": "device-1"},
        )
        assert response.status_code == 200
        assert get_runtime().store.list_sessions(registered) == []

    def test_logout_requires_exactly_one_owner_source(self, client):
        response = client.post("/v1/logout", json={"fingerprint": "device-1"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "BAD_REQUEST"

    def test_refresh_without_token(self, client):
        response = client.post("/v1/refresh_tokens", json={"fingerprint": "device-1"})
        assert response.status_code == 400

    def test_session_cap_response(self, client, registered):
        cap = get_runtime().settings.max_sessions_per_account
        for i in range(cap):
            assert _login(client, fingerprint=f"device-{i}").status_code == 200

        response = _login(client, fingerprint="device-extra")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "NEED_PASSWORD_RESET"

    def test_duplicate_device_conflict(self, client, registered):
        _login(client)
        response = _login(client)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "DUPLICATE_SESSION"

    def test_wrong_password(self, client, registered):
        response = _login(client, password="not-the-password")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_CREDENTIAL"

    def test_unknown_account(self, client):
        response = _login(client, email="ghost@example.com")
        assert response.status_code == 404
        assert response.json()["status"] == "error"


class TestAccountEndpoints:
    def test_invalid_body_is_bad_request(self, client):
        response = client.post(
            "/v1/register",
            json={"email": "not-an-email", "password": "123", "name": "A", "surname": "B"},
        )
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "BAD_REQUEST"
        assert {d["loc"] for d in body["error"]["details"]} >= {"body/email", "body/password"}

    def test_duplicate_register(self, client, registered):
        response = client.post(
            "/v1/register",
            json={"email": "ada@example.com", "password": PASSWORD, "name": "A", "surname": "B"},
        )
        assert response.status_code == 409

    def test_invitation_flow(self, client, outbox):
        token = _moderator_token(client)
        invite = client.post(
            "/v1/registration_invite",
            json={
                "access_token": token,
                "email": "new@example.com",
                "name": "New",
                "surname": "Member",
                "link_to_register_form": "https://app.example.com/register",
            },
        )
        assert invite.status_code == 200
        assert "secret" not in invite.json()["data"]
        secret = outbox.sent[-1]["source"]["secretCode"]

        premature = _login(client, email="new@example.com")
        assert premature.status_code == 401

        redeem = client.post(
            "/v1/register",
            json={
                "email": "new@example.com",
                "password": PASSWORD,
                "name": "New",
                "surname": "Member",
                "invitation_code": secret,
            },
        )
        assert redeem.status_code == 200
        assert _login(client, email="new@example.com").status_code == 200

        again = client.post(
            "/v1/register",
            json={
                "email": "new@example.com",
                "password": PASSWORD,
                "name": "New",
                "surname": "Member",
                "invitation_code": secret,
            },
        )
        assert again.status_code == 409

    def test_invite_elevated_role_forbidden(self, client):
        token = _moderator_token(client)
        response = client.post(
            "/v1/registration_invite",
            json={
                "access_token": token,
                "email": "new@example.com",
                "name": "New",
                "surname": "Member",
                "role": "moderator",
                "link_to_register_form": "https://app.example.com/register",
            },
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "NOT_ENOUGH_RIGHTS"

    def test_redeem_without_invitation(self, client):
        response = client.post(
            "/v1/register",
            json={
                "email": "ghost@example.com",
                "password": PASSWORD,
                "name": "G",
                "surname": "H",
                "invitation_code": "6f1c1f7e-6a53-4f0e-9a43-3f3b6c7f9a10",
            },
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "NO_INVITATION_FOR_USER"

    def test_password_reset_flow(self, client, registered, outbox):
        forgot = client.post(
            "/v1/password_forgot",
            json={"email": "ada@example.com", "link_to_reset_form": "https://app.example.com/reset"},
        )
        assert forgot.status_code == 200
        secret = outbox.sent[-1]["source"]["secretCode"]

        wrong = client.post(
            "/v1/reset_password",
            json={
                "user_id": registered,
                "secret_code": "6f1c1f7e-6a53-4f0e-9a43-3f3b6c7f9a10",
                "password": "new-password",
            },
        )
        assert wrong.status_code == 401
        assert wrong.json()["error"]["code"] == "INVALID_SECRET"

        reset = client.post(
            "/v1/reset_password",
            json={"user_id": registered, "secret_code": secret, "password": "new-password"},
        )
        assert reset.status_code == 200
        assert _login(client).status_code == 401
        assert _login(client, password="new-password").status_code == 200

    def test_users_and_user_info(self, client, registered):
        listing = client.get("/v1/users", params={"role": "default"})
        assert listing.status_code == 200
        assert listing.json()["data"]["items"] == [registered]

        other = client.get("/v1/users", params={"role": "default", "partition": "elsewhere"})
        assert other.json()["data"]["items"] == []

        info = client.get("/v1/user_info", params={"user_id": registered})
        assert info.status_code == 200
        assert info.json()["data"]["email"] == "ada@example.com"
        assert info.json()["data"]["partition"] == "global"

    def test_user_info_validation_and_missing(self, client):
        assert client.get("/v1/user_info", params={"user_id": "nope"}).status_code == 400
        missing = client.get(
            "/v1/user_info", params={"user_id": "6f1c1f7e-6a53-4f0e-9a43-3f3b6c7f9a10"}
        )
        assert missing.status_code == 404


def test_request_id_is_echoed(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.json()["checks"]["database"]["type"] == "memory"


def test_unknown_route_uses_envelope(client):
    response = client.get("/v1/nope")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"

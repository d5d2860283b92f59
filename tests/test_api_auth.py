"""Integration tests for /api/v1/auth/* -- status codes, envelopes and cookies.

Covers:
- register: 201, refresh cookie attributes, no secrets in the body, 400 on
  duplicate or invalid input
- login: 200, 401 for unknown email and wrong password alike, 423 once locked
- bearer-protected routes return 401 without a valid access token
- refresh via body: rotation and replay rejection
- logout / logout-all / sessions / me
- change, forgot and reset password over HTTP
- the register -> login -> me -> verify-email -> verify again scenario
- admin-only audit log listing
- rate limiting returns 429 once the per-IP budget is spent
"""

import pytest
from conftest import STRONG_PASSWORD, bearer, refresh_cookie

from api.limiter import limiter

AUTH = "/api/v1/auth"


def _refresh(client, token):
    return client.post(f"{AUTH}/refresh", json={"refresh_token": token})


class TestRegister:
    def test_created(self, client, register):
        result = register()
        resp = result["resp"]
        body = resp.json()
        assert body["user"]["username"] == "alice"
        assert body["user"]["email"] == "a@x.com"
        assert body["user"]["role"] == "user"
        assert body["user"]["is_verified"] is False
        assert body["token_type"] == "bearer"
        assert body["expires_in"] == 900
        assert "password" not in resp.text
        assert "hashed_password" not in resp.text
        assert resp.headers["Cache-Control"] == "no-store"

    def test_refresh_cookie_attributes(self, client, register):
        resp = register()["resp"]
        cookie = next(h for h in resp.headers.get_list("set-cookie") if h.startswith("refresh_token="))
        assert "HttpOnly" in cookie
        assert "SameSite=strict" in cookie
        assert "Secure" in cookie

    def test_admin_role_is_downgraded(self, client, register):
        assert register(role="admin")["user"]["role"] == "user"

    @pytest.mark.parametrize("role", ["administrator_superuser_x", 5, ["admin"], {"name": "admin"}])
    def test_unusable_role_is_downgraded(self, client, register, role):
        assert register(role=role)["user"]["role"] == "user"

    def test_moderator_role_is_kept(self, client, register):
        assert register(role="moderator")["user"]["role"] == "moderator"

    def test_duplicate_email(self, client, register):
        register()
        resp = client.post(
            f"{AUTH}/register",
            json={"username": "alice2", "email": "A@X.com", "password": STRONG_PASSWORD},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "duplicate_key"
        assert resp.json()["error"]["message"] == "Email already registered."

    def test_duplicate_username(self, client, register):
        register()
        resp = client.post(
            f"{AUTH}/register",
            json={"username": "alice", "email": "b@x.com", "password": STRONG_PASSWORD},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Username already taken."

    @pytest.mark.parametrize(
        "payload",
        [
            {"username": "al", "email": "a@x.com", "password": STRONG_PASSWORD},
            {"username": "bad name", "email": "a@x.com", "password": STRONG_PASSWORD},
            {"username": "a" * 31, "email": "a@x.com", "password": STRONG_PASSWORD},
            {"username": "alice", "email": "not-an-email", "password": STRONG_PASSWORD},
            {"username": "alice", "email": "a@x.com", "password": "Ab1!"},
            {"username": "alice", "email": "a@x.com", "password": "abcd1234!"},
            {"username": "alice", "email": "a@x.com", "password": "Abcdefgh!"},
            {"username": "alice", "email": "a@x.com", "password": "Abcd1234"},
            {"email": "a@x.com", "password": STRONG_PASSWORD},
        ],
    )
    def test_validation(self, client, payload):
        resp = client.post(f"{AUTH}/register", json=payload)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"


class TestLogin:
    def test_success(self, client, register, login):
        register()
        result = login()
        assert result["resp"].status_code == 200
        assert result["access_token"]
        assert result["refresh_token"]
        assert result["resp"].json()["user"]["email"] == "a@x.com"

    def test_unknown_email_and_wrong_password_match(self, client, register, login):
        register()
        unknown = login(email="nobody@x.com")["resp"]
        wrong = login(password="Wrong123!")["resp"]
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()
        assert unknown.json()["error"]["code"] == "invalid_credentials"

    def test_lockout(self, client, register, login):
        register()
        for _ in range(5):
            assert login(password="Wrong123!")["resp"].status_code == 401
        locked = login()["resp"]
        assert locked.status_code == 423
        assert locked.json()["error"]["code"] == "account_locked"
        assert "minutes" in locked.json()["error"]["message"]


class TestProtectedRoutes:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/me"),
            ("get", "/sessions"),
            ("post", "/logout"),
            ("post", "/logout-all"),
            ("post", "/resend-verification"),
            ("get", "/audit-logs"),
        ],
    )
    def test_requires_bearer(self, client, method, path):
        resp = getattr(client, method)(f"{AUTH}{path}")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_refresh_token_is_not_a_bearer_credential(self, client, register):
        result = register()
        assert client.get(f"{AUTH}/me", headers=bearer(result["refresh_token"])).status_code == 401

    def test_garbage_bearer(self, client):
        assert client.get(f"{AUTH}/me", headers=bearer("garbage")).status_code == 401


class TestRefreshAndSessions:
    def test_rotation_and_replay(self, client, register, login):
        register()
        first = login()["refresh_token"]
        resp = _refresh(client, first)
        assert resp.status_code == 200
        assert resp.json()["access_token"]
        assert resp.headers["Cache-Control"] == "no-store"
        second = refresh_cookie(resp)
        assert second and second != first

        replay = _refresh(client, first)
        assert replay.status_code == 401
        assert _refresh(client, second).status_code == 200

    def test_missing_refresh_token(self, client):
        resp = client.post(f"{AUTH}/refresh")
        assert resp.status_code == 401

    def test_logout_revokes_refresh_token(self, client, register, login):
        register()
        session = login()
        resp = client.post(
            f"{AUTH}/logout",
            json={"refresh_token": session["refresh_token"]},
            headers=bearer(session["access_token"]),
        )
        assert resp.status_code == 200
        assert _refresh(client, session["refresh_token"]).status_code == 401

    def test_sessions_listing_hides_tokens(self, client, register, login):
        register()
        login(user_agent="phone")
        laptop = login(user_agent="laptop")
        resp = client.get(f"{AUTH}/sessions", headers=bearer(laptop["access_token"]))
        assert resp.status_code == 200
        sessions = resp.json()["sessions"]
        assert [s["user_agent"] for s in sessions] == ["phone", "laptop"]
        assert [s["is_current"] for s in sessions] == [False, True]
        assert laptop["refresh_token"] not in resp.text
        assert "token" not in sessions[0]

    def test_logout_all(self, client, register, login):
        register()
        login()
        latest = login()
        resp = client.post(f"{AUTH}/logout-all", headers=bearer(latest["access_token"]))
        assert resp.status_code == 200
        me = client.get(f"{AUTH}/me", headers=bearer(latest["access_token"])).json()
        assert me["session_count"] == 0
        assert _refresh(client, latest["refresh_token"]).status_code == 401

    def test_session_cap_over_http(self, client, register, login):
        register()
        results = [login(user_agent=f"device-{i}") for i in range(6)]
        me = client.get(f"{AUTH}/me", headers=bearer(results[-1]["access_token"])).json()
        assert me["session_count"] == 5
        sessions = client.get(f"{AUTH}/sessions", headers=bearer(results[-1]["access_token"])).json()["sessions"]
        assert [s["user_agent"] for s in sessions] == [f"device-{i}" for i in range(1, 6)]


class TestPasswords:
    def test_change_password(self, client, register, login):
        result = register()
        headers = bearer(result["access_token"])
        resp = client.post(
            f"{AUTH}/change-password",
            json={"current_password": STRONG_PASSWORD, "new_password": "Newpass1!"},
            headers=headers,
        )
        assert resp.status_code == 200
        assert login(password="Newpass1!")["resp"].status_code == 200

    def test_change_password_wrong_current(self, client, register):
        result = register()
        resp = client.post(
            f"{AUTH}/change-password",
            json={"current_password": "Wrong123!", "new_password": "Newpass1!"},
            headers=bearer(result["access_token"]),
        )
        assert resp.status_code == 401

    def test_change_password_weak_new(self, client, register):
        result = register()
        resp = client.post(
            f"{AUTH}/change-password",
            json={"current_password": STRONG_PASSWORD, "new_password": "weak"},
            headers=bearer(result["access_token"]),
        )
        assert resp.status_code == 400

    def test_forgot_password_does_not_enumerate(self, client, register):
        register()
        known = client.post(f"{AUTH}/forgot-password", json={"email": "a@x.com"})
        unknown = client.post(f"{AUTH}/forgot-password", json={"email": "nobody@x.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()

    def test_reset_password(self, client, register, login, email_sender):
        register()
        session = login()
        client.post(f"{AUTH}/forgot-password", json={"email": "a@x.com"})
        token = email_sender.last_token("Reset Your Password")

        resp = client.post(f"{AUTH}/reset-password", json={"token": token, "new_password": "Newpass1!"})
        assert resp.status_code == 200
        assert _refresh(client, session["refresh_token"]).status_code == 401
        assert login(password="Newpass1!")["resp"].status_code == 200

        again = client.post(f"{AUTH}/reset-password", json={"token": token, "new_password": "Other123!"})
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "invalid_token"

    def test_reset_password_history(self, client, register, email_sender):
        register()
        client.post(f"{AUTH}/forgot-password", json={"email": "a@x.com"})
        token = email_sender.last_token("Reset Your Password")
        resp = client.post(f"{AUTH}/reset-password", json={"token": token, "new_password": STRONG_PASSWORD})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"


class TestEmailVerificationScenario:
    def test_example_scenario(self, client, email_sender):
        resp = client.post(
            f"{AUTH}/register",
            json={"username": "alice", "email": "a@x.com", "password": "Abcd123!"},
        )
        assert resp.status_code == 201

        resp = client.post(f"{AUTH}/login", json={"email": "a@x.com", "password": "Abcd123!"})
        assert resp.status_code == 200
        access_token = resp.json()["access_token"]

        me = client.get(f"{AUTH}/me", headers=bearer(access_token)).json()
        assert me["role"] == "user"
        assert me["is_verified"] is False

        token = email_sender.last_token("Verify Your Email Address")
        assert client.get(f"{AUTH}/verify-email", params={"token": token}).status_code == 200
        me = client.get(f"{AUTH}/me", headers=bearer(access_token)).json()
        assert me["is_verified"] is True

        again = client.get(f"{AUTH}/verify-email", params={"token": token})
        assert again.status_code == 400

    def test_resend_verification(self, client, register, email_sender):
        result = register()
        old = email_sender.last_token()
        resp = client.post(f"{AUTH}/resend-verification", headers=bearer(result["access_token"]))
        assert resp.status_code == 200
        new = email_sender.last_token()
        assert new != old
        assert client.get(f"{AUTH}/verify-email", params={"token": old}).status_code == 400
        assert client.get(f"{AUTH}/verify-email", params={"token": new}).status_code == 200

        resp = client.post(f"{AUTH}/resend-verification", headers=bearer(result["access_token"]))
        assert resp.status_code == 400

    def test_verify_email_requires_token(self, client):
        assert client.get(f"{AUTH}/verify-email").status_code == 400


class TestAuditLogs:
    def test_forbidden_for_non_admin(self, client, register):
        result = register()
        resp = client.get(f"{AUTH}/audit-logs", headers=bearer(result["access_token"]))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_admin_listing(self, client, register, login, user_store):
        result = register()
        user_store.update_user(result["user"]["id"], role="admin")
        login(password="Wrong123!")

        resp = client.get(f"{AUTH}/audit-logs", headers=bearer(result["access_token"]))
        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 2
        assert [e["action"] for e in body["entries"]] == ["login", "register"]
        assert body["entries"][0]["status"] == "failure"

        filtered = client.get(
            f"{AUTH}/audit-logs",
            params={"action": "register"},
            headers=bearer(result["access_token"]),
        ).json()
        assert filtered["total"] == 1


class TestRateLimit:
    def test_login_is_rate_limited(self, client):
        limiter.enabled = True
        try:
            statuses = [
                client.post(f"{AUTH}/login", json={"email": "nobody@x.com", "password": "x"}).status_code
                for _ in range(11)
            ]
        finally:
            limiter.enabled = False
            limiter.reset()
        assert statuses[:10] == [401] * 10
        assert statuses[10] == 429

"""Integration tests for the HTTP auth surface.

Tests the complete flow including:
- Register, login and bearer access
- Refresh rotation and reuse detection
- Session listing and revocation
- Password reset and change
- Bootstrap and role-gated admin routes
- OAuth start/callback
- Rate limits
"""

import pytest
from fastapi.testclient import TestClient

from rayauth import app as app_module
from rayauth.service.runtime import get_runtime

PASSWORD = "Secret1"


@pytest.fixture
def client():
    with TestClient(app_module.app) as test_client:
        yield test_client


def _register(client, email="user@example.com", password=PASSWORD, **extra):
    response = client.post("/v1/auth/register", json={"email": email, "password": password, **extra})
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegisterAndLogin:
    def test_register_returns_tokens(self, client):
        """Registration answers with tokens, a session and the user summary."""
        data = _register(client, first_name="Awa", last_name="Kone")

        assert data["access_token"] and data["refresh_token"]
        assert data["token_type"] == "bearer"
        assert data["user"]["role"] == "VENDEUR"
        assert data["user"]["tenant_id"] == get_runtime().settings.default_tenant_id

    def test_register_rejects_short_password(self, client):
        """Passwords under 6 characters fail validation."""
        response = client.post(
            "/v1/auth/register", json={"email": "user@example.com", "password": "abc"}
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"

    def test_register_duplicate_is_conflict(self, client):
        """A second registration for the same email answers 409."""
        _register(client)

        response = client.post(
            "/v1/auth/register", json={"email": "USER@example.com", "password": PASSWORD}
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_login_and_me(self, client):
        """A login token opens /me."""
        _register(client, first_name="Awa")
        login = client.post(
            "/v1/auth/login",
            json={"email": "user@example.com", "password": PASSWORD},
            headers={"User-Agent": "Mozilla/5.0 (Windows NT 10.0)"},
        )
        assert login.status_code == 200
        token = login.json()["data"]["access_token"]

        me = client.get("/v1/auth/me", headers=_bearer(token))

        assert me.status_code == 200
        profile = me.json()["data"]
        assert profile["email"] == "user@example.com"
        assert profile["first_name"] == "Awa"
        assert profile["last_login"] is not None

    def test_bad_credentials_are_generic(self, client):
        """Unknown email and wrong password give the same 401 body."""
        _register(client)

        unknown = client.post(
            "/v1/auth/login", json={"email": "ghost@example.com", "password": PASSWORD}
        )
        wrong = client.post(
            "/v1/auth/login", json={"email": "user@example.com", "password": "Wrong99"}
        )

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"]

    def test_lockout_after_five_failures(self, client):
        """The sixth attempt is refused as locked even with the right password."""
        _register(client)
        for _ in range(5):
            client.post("/v1/auth/login", json={"email": "user@example.com", "password": "Wrong99"})

        response = client.post(
            "/v1/auth/login", json={"email": "user@example.com", "password": PASSWORD}
        )

        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "account_locked"
        assert error["details"]["retry_after_minutes"] in (14, 15)

    def test_me_requires_bearer(self, client):
        """/me without a token is a 401 envelope."""
        response = client.get("/v1/auth/me")

        assert response.status_code == 401
        assert response.json()["status"] == "error"

    def test_refresh_token_rejected_as_bearer(self, client):
        """A refresh token cannot authenticate a request."""
        data = _register(client)

        response = client.get("/v1/auth/me", headers=_bearer(data["refresh_token"]))

        assert response.status_code == 401


class TestRefreshFlow:
    def test_refresh_rotates(self, client):
        """Refresh returns a new pair on the same session."""
        data = _register(client)

        response = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})

        assert response.status_code == 200
        refreshed = response.json()["data"]
        assert refreshed["session_id"] == data["session_id"]
        assert refreshed["refresh_token"] != data["refresh_token"]

    def test_reuse_revokes_all_sessions(self, client):
        """Replaying a rotated refresh token revokes every session."""
        data = _register(client)
        rotated = client.post(
            "/v1/auth/refresh", json={"refresh_token": data["refresh_token"]}
        ).json()["data"]

        replay = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        after = client.post("/v1/auth/refresh", json={"refresh_token": rotated["refresh_token"]})

        assert replay.status_code == 401
        assert "revoked" in replay.json()["error"]["message"]
        assert after.status_code == 401


class TestSessions:
    def test_list_and_revoke(self, client):
        """Sessions can be listed and revoked individually; foreign ids are 404."""
        first = _register(client)
        second = client.post(
            "/v1/auth/login", json={"email": "user@example.com", "password": PASSWORD}
        ).json()["data"]
        headers = _bearer(first["access_token"])

        listing = client.get("/v1/auth/sessions", headers=headers).json()["data"]["items"]
        assert {s["id"] for s in listing} == {first["session_id"], second["session_id"]}
        assert all("refresh_token_hash" not in s for s in listing)

        revoked = client.delete(f"/v1/auth/sessions/{second['session_id']}", headers=headers)
        missing = client.delete("/v1/auth/sessions/does-not-exist", headers=headers)

        assert revoked.status_code == 200
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "not_found"

    def test_session_cap(self, client):
        """No more than five sessions stay active per user."""
        data = _register(client)
        for _ in range(6):
            client.post("/v1/auth/login", json={"email": "user@example.com", "password": PASSWORD})

        listing = client.get("/v1/auth/sessions", headers=_bearer(data["access_token"]))

        assert len(listing.json()["data"]["items"]) == 5

    def test_revoke_others_and_logout_all(self, client):
        """revoke-others keeps the current session; logout-all clears the rest."""
        first = _register(client)
        client.post("/v1/auth/login", json={"email": "user@example.com", "password": PASSWORD})
        headers = _bearer(first["access_token"])

        others = client.post(
            "/v1/auth/sessions/revoke-others",
            json={"current_session_id": first["session_id"]},
            headers=headers,
        ).json()["data"]
        everything = client.post("/v1/auth/logout-all", headers=headers).json()["data"]

        assert others["revoked_count"] == 1
        assert everything["revoked_sessions"] == 1

    def test_logout_named_session(self, client):
        """Logout deactivates the named session so its refresh token dies."""
        data = _register(client)

        response = client.post(
            "/v1/auth/logout",
            json={"session_id": data["session_id"]},
            headers=_bearer(data["access_token"]),
        )
        refresh = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})

        assert response.status_code == 200
        assert refresh.status_code == 401


class TestPasswordFlows:
    def test_forgot_and_reset(self, client, monkeypatch):
        """The emailed token resets the password and ends every session."""
        data = _register(client)
        monkeypatch.setattr("rayauth.service.auth.secrets.token_hex", lambda n: "f" * (2 * n))

        forgot = client.post("/v1/auth/forgot-password", json={"email": "user@example.com"})
        reset = client.post(
            "/v1/auth/reset-password", json={"token": "f" * 64, "new_password": "Brand9New"}
        )
        old_login = client.post(
            "/v1/auth/login", json={"email": "user@example.com", "password": PASSWORD}
        )
        new_login = client.post(
            "/v1/auth/login", json={"email": "user@example.com", "password": "Brand9New"}
        )
        stale_refresh = client.post(
            "/v1/auth/refresh", json={"refresh_token": data["refresh_token"]}
        )

        assert forgot.status_code == 200
        assert reset.status_code == 200
        assert old_login.status_code == 401
        assert new_login.status_code == 200
        assert stale_refresh.status_code == 401

    def test_forgot_password_is_generic(self, client):
        """Unknown emails get the same 200 answer."""
        _register(client)

        known = client.post("/v1/auth/forgot-password", json={"email": "user@example.com"})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "ghost@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_reset_requires_strong_password(self, client):
        """Reset passwords need 8+ characters, an uppercase letter and a digit."""
        response = client.post(
            "/v1/auth/reset-password", json={"token": "abc", "new_password": "alllowercase"}
        )

        assert response.status_code == 422

    def test_reset_with_unknown_token(self, client):
        """An unknown token is a 400."""
        response = client.post(
            "/v1/auth/reset-password", json={"token": "nope", "new_password": "Brand9New"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "bad_request"

    def test_change_password(self, client):
        """Changing the password keeps the current session usable."""
        data = _register(client)
        headers = _bearer(data["access_token"])

        changed = client.post(
            "/v1/auth/change-password",
            json={"current_password": PASSWORD, "new_password": "Brand9New"},
            headers=headers,
        )
        me = client.get("/v1/auth/me", headers=headers)

        assert changed.status_code == 200
        assert me.status_code == 200

    def test_forgot_password_rate_limited(self, client):
        """The fourth forgot-password request in the window is refused."""
        for _ in range(3):
            assert client.post(
                "/v1/auth/forgot-password", json={"email": "user@example.com"}
            ).status_code == 200

        response = client.post("/v1/auth/forgot-password", json={"email": "user@example.com"})

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert "Retry-After" in response.headers


class TestBootstrapAndAdmin:
    def _bootstrap(self, client, **extra):
        payload = {
            "activation_code": "RAYA2026",
            "tenant_name": "Boutique Abidjan",
            "email": "owner@example.com",
            "password": PASSWORD,
            **extra,
        }
        return client.post("/v1/auth/bootstrap", json=payload)

    def test_verify_code(self, client):
        """The verify-code endpoint reports validity without side effects."""
        good = client.post("/v1/auth/bootstrap/verify-code", json={"code": "raya2026"})
        bad = client.post("/v1/auth/bootstrap/verify-code", json={"code": "nope"})

        assert good.json()["data"]["valid"] is True
        assert bad.json()["data"]["valid"] is False

    def test_bootstrap_creates_pdg(self, client):
        """Bootstrap returns a PDG session plus the new tenant."""
        response = self._bootstrap(client)

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["user"]["role"] == "PDG"
        assert data["tenant"]["tenant_code"].startswith("BOUTIQUE-")
        assert data["user"]["tenant_id"] == data["tenant"]["id"]

    def test_bootstrap_bad_code(self, client):
        """A wrong activation code is a 400."""
        response = self._bootstrap(client, activation_code="WRONG")

        assert response.status_code == 400

    def test_admin_stats_role_gate(self, client):
        """PDG reaches the stats route; a VENDEUR is forbidden."""
        pdg = self._bootstrap(client).json()["data"]
        vendeur = _register(client)

        allowed = client.get("/v1/admin/sessions/stats", headers=_bearer(pdg["access_token"]))
        denied = client.get("/v1/admin/sessions/stats", headers=_bearer(vendeur["access_token"]))

        assert allowed.status_code == 200
        assert allowed.json()["data"]["total_active"] == 2
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "forbidden"


class TestOAuthRoutes:
    @pytest.fixture(autouse=True)
    def _configure_google(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_CLIENT_ID", "google-client")
        monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "google-secret")
        monkeypatch.setenv(
            "OAUTH_REDIRECT_URI", "http://localhost:8000/v1/auth/oauth/{provider}/callback"
        )
        from rayauth.service.runtime import reset_runtime_for_tests

        reset_runtime_for_tests()

    def test_start_and_callback(self, client):
        """A registered code completes the flow and signs the user in."""
        start = client.get("/v1/auth/oauth/google/start").json()["data"]
        get_runtime().auth.oauth.register_oauth_code(
            "google", "code-1", {"id": "g-1", "email": "oauth@example.com", "given_name": "Ama"}
        )

        callback = client.get(
            "/v1/auth/oauth/google/callback", params={"code": "code-1", "state": start["state"]}
        )

        assert callback.status_code == 200
        data = callback.json()["data"]
        assert data["is_new_user"] is True
        assert data["user"]["oauth_provider"] == "google"

    def test_callback_with_unknown_state(self, client):
        """A forged state is a 401."""
        response = client.get(
            "/v1/auth/oauth/google/callback", params={"code": "x", "state": "forged"}
        )

        assert response.status_code == 401

    def test_unsupported_provider(self, client):
        """Unknown providers are a 400."""
        response = client.get("/v1/auth/oauth/facebook/start")

        assert response.status_code == 400

"""End-to-end tests for the /auth routes over the in-memory store."""

import pytest
from fastapi.testclient import TestClient

from taskauth import app as app_module
from taskauth.service.runtime import get_runtime

PASSWORD = "Passw0rd1"


@pytest.fixture
def client():
    with TestClient(app_module.app) as test_client:
        yield test_client


def _register(client, username="alice", email="alice@x.com", password=PASSWORD, **extra):
    return client.post(
        "/auth/register",
        json={"username": username, "email": email, "password": password, **extra},
    )


def _login(client, email="alice@x.com", password=PASSWORD, **extra):
    return client.post("/auth/login", json={"email": email, "password": password, **extra})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _error_code(resp):
    return resp.json()["error"]["code"]


class TestRegister:
    def test_register_returns_user_tokens_and_session(self, client):
        resp = _register(client, firstName="Alice", lastName="Liddell")
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["user"]["username"] == "alice"
        assert data["user"]["fullName"] == "Alice Liddell"
        assert data["tokens"]["expiresIn"] == "30m"
        assert data["tokens"]["accessToken"] != data["tokens"]["refreshToken"]
        assert data["session"]["loginMethod"] == "registration"
        assert data["session"]["isCurrent"] is True
        assert "password" not in str(data["user"]).lower()

    def test_duplicate_email_and_username(self, client):
        assert _register(client).status_code == 201

        resp = _register(client, username="alice2")
        assert resp.status_code == 409
        assert _error_code(resp) == "USER_EXISTS"
        assert resp.json()["error"]["details"]["field"] == "email"

        resp = _register(client, email="other@x.com")
        assert resp.status_code == 409
        assert resp.json()["error"]["details"]["field"] == "username"

    def test_validation_errors_are_400(self, client):
        resp = _register(client, email="not-an-email")
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["message"] == "Validation failed"
        assert any(d["field"] == "email" for d in error["details"])

        resp = _register(client, password="alllowercase1")
        assert resp.status_code == 400

        resp = _register(client, username="no spaces!")
        assert resp.status_code == 400


class TestLogin:
    def test_login_succeeds(self, client):
        _register(client)
        resp = _login(client, rememberMe=True)
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["session"]["loginMethod"] == "password"
        assert data["user"]["lastLogin"] is not None

    def test_unknown_email_matches_wrong_password(self, client):
        _register(client)
        unknown = _login(client, email="nobody@x.com")
        wrong = _login(client, password="Wrong1pass")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"]
        assert _error_code(wrong) == "INVALID_CREDENTIALS"

    def test_lockout_after_five_failures(self, client):
        """The fifth failure locks the account; the right password is then refused."""
        _register(client)
        for _ in range(4):
            resp = _login(client, password="Wrong1pass")
            assert resp.status_code == 401
            assert _error_code(resp) == "INVALID_CREDENTIALS"

        resp = _login(client, password="Wrong1pass")
        assert resp.status_code == 423
        assert _error_code(resp) == "ACCOUNT_LOCKED"
        assert resp.json()["error"]["details"]["lockedUntil"]

        resp = _login(client)
        assert resp.status_code == 423
        assert _error_code(resp) == "ACCOUNT_LOCKED"

    def test_login_throttled_per_address(self, client):
        limit = get_runtime().settings.login_rate_limit
        for _ in range(limit):
            assert _login(client, email="nobody@x.com").status_code == 401

        resp = _login(client, email="nobody@x.com")
        assert resp.status_code == 429
        assert _error_code(resp) == "RATE_LIMIT_EXCEEDED"
        retry_after = int(resp.headers["Retry-After"])
        assert retry_after >= 1
        assert resp.json()["error"]["details"]["retryAfter"] == retry_after

        # A client-supplied forwarding header does not open a fresh window
        resp = client.post(
            "/auth/login",
            json={"email": "nobody@x.com", "password": PASSWORD},
            headers={"X-Forwarded-For": "203.0.113.9"},
        )
        assert resp.status_code == 429

    def test_spoofed_forwarding_headers_share_one_window(self, client):
        limit = get_runtime().settings.login_rate_limit
        statuses = [
            client.post(
                "/auth/login",
                json={"email": "nobody@x.com", "password": PASSWORD},
                headers={"X-Forwarded-For": f"10.0.{i // 250}.{i % 250}"},
            ).status_code
            for i in range(limit + 2)
        ]
        assert statuses[:limit] == [401] * limit
        assert statuses[limit:] == [429, 429]

    def test_forwarded_address_honoured_behind_trusted_proxy(self, client, monkeypatch):
        monkeypatch.setattr(get_runtime().settings, "trusted_proxies", ["testclient"])
        limit = get_runtime().settings.login_rate_limit
        for _ in range(limit):
            _login(client, email="nobody@x.com")
        assert _login(client, email="nobody@x.com").status_code == 429

        resp = client.post(
            "/auth/login",
            json={"email": "nobody@x.com", "password": PASSWORD},
            headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
        )
        assert resp.status_code == 401


class TestRefresh:
    def test_rotation_and_reuse_detection(self, client):
        """Replaying a rotated refresh token kills the whole session."""
        _register(client)
        first = _login(client).json()["data"]["tokens"]

        resp = client.post("/auth/refresh", json={"refreshToken": first["refreshToken"]})
        assert resp.status_code == 200
        second = resp.json()["data"]["tokens"]
        assert second["refreshToken"] != first["refreshToken"]
        assert client.get("/auth/me", headers=_bearer(second["accessToken"])).status_code == 200

        resp = client.post("/auth/refresh", json={"refreshToken": first["refreshToken"]})
        assert resp.status_code == 401
        assert _error_code(resp) == "TOKEN_REUSE_DETECTED"

        resp = client.get("/auth/me", headers=_bearer(first["accessToken"]))
        assert resp.status_code == 401
        assert _error_code(resp) == "SESSION_INVALID"

        resp = client.post("/auth/refresh", json={"refreshToken": second["refreshToken"]})
        assert resp.status_code == 401
        assert _error_code(resp) == "SESSION_INVALID"

    def test_missing_and_invalid_refresh_token(self, client):
        resp = client.post("/auth/refresh", json={})
        assert resp.status_code == 401
        assert _error_code(resp) == "REFRESH_TOKEN_MISSING"

        resp = client.post("/auth/refresh")
        assert _error_code(resp) == "REFRESH_TOKEN_MISSING"

        resp = client.post("/auth/refresh", json={"refreshToken": "garbage"})
        assert resp.status_code == 401
        assert _error_code(resp) == "REFRESH_TOKEN_INVALID"

    def test_access_token_cannot_refresh(self, client):
        tokens = _register(client).json()["data"]["tokens"]
        resp = client.post("/auth/refresh", json={"refreshToken": tokens["accessToken"]})
        assert _error_code(resp) == "REFRESH_TOKEN_INVALID"


class TestGate:
    def test_missing_and_invalid_tokens(self, client):
        resp = client.get("/auth/me")
        assert resp.status_code == 401
        assert _error_code(resp) == "TOKEN_MISSING"

        resp = client.get("/auth/me", headers=_bearer("not-a-jwt"))
        assert _error_code(resp) == "TOKEN_INVALID"

    def test_refresh_token_rejected_as_access(self, client):
        tokens = _register(client).json()["data"]["tokens"]
        resp = client.get("/auth/me", headers=_bearer(tokens["refreshToken"]))
        assert resp.status_code == 401
        assert _error_code(resp) == "TOKEN_INVALID"

    def test_me(self, client):
        data = _register(client).json()["data"]
        resp = client.get("/auth/me", headers=_bearer(data["tokens"]["accessToken"]))
        assert resp.status_code == 200
        me = resp.json()["data"]
        assert me["user"]["id"] == data["user"]["id"]
        assert me["session"]["id"] == data["session"]["id"]


class TestLogout:
    def test_logout_then_token_is_dead(self, client):
        tokens = _register(client).json()["data"]["tokens"]
        resp = client.post("/auth/logout", headers=_bearer(tokens["accessToken"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["message"] == "Logged out successfully"

        resp = client.get("/auth/me", headers=_bearer(tokens["accessToken"]))
        assert _error_code(resp) == "SESSION_INVALID"
        resp = client.post("/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert _error_code(resp) == "SESSION_INVALID"

    def test_logout_all(self, client):
        first = _register(client).json()["data"]["tokens"]
        second = _login(client).json()["data"]["tokens"]

        resp = client.post("/auth/logout-all", headers=_bearer(second["accessToken"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["revoked"] == 2
        for tokens in (first, second):
            resp = client.get("/auth/me", headers=_bearer(tokens["accessToken"]))
            assert resp.status_code == 401


class TestSessions:
    def test_list_hides_refresh_material(self, client):
        first = _register(client).json()["data"]
        _login(client, rememberMe=True)

        resp = client.get("/auth/sessions", headers=_bearer(first["tokens"]["accessToken"]))
        assert resp.status_code == 200
        sessions = resp.json()["data"]["sessions"]
        assert len(sessions) == 2
        current = [s for s in sessions if s["isCurrent"]]
        assert [s["id"] for s in current] == [first["session"]["id"]]
        for sess in sessions:
            assert "refreshTokenHash" not in sess
            assert "tokenFamily" not in sess
            assert set(sess["deviceInfo"]) == {"userAgent", "ip", "fingerprint", "location"}
            assert sess["isSuspicious"] is False

    def test_revoke_other_session(self, client):
        first = _register(client).json()["data"]
        second = _login(client).json()["data"]
        headers = _bearer(first["tokens"]["accessToken"])

        resp = client.delete(f"/auth/sessions/{second['session']['id']}", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["data"]["message"] == "Session revoked"

        resp = client.get("/auth/me", headers=_bearer(second["tokens"]["accessToken"]))
        assert _error_code(resp) == "SESSION_INVALID"

        resp = client.delete(f"/auth/sessions/{second['session']['id']}", headers=headers)
        assert resp.status_code == 404
        assert _error_code(resp) == "SESSION_NOT_FOUND"

    def test_cannot_revoke_someone_elses_session(self, client):
        alice = _register(client).json()["data"]
        bob = _register(client, username="bob", email="bob@x.com").json()["data"]
        resp = client.delete(
            f"/auth/sessions/{bob['session']['id']}",
            headers=_bearer(alice["tokens"]["accessToken"]),
        )
        assert resp.status_code == 404


class TestChangePassword:
    def test_other_sessions_get_password_changed(self, client):
        first = _register(client).json()["data"]["tokens"]
        second = _login(client).json()["data"]["tokens"]

        resp = client.put(
            "/auth/change-password",
            json={"currentPassword": PASSWORD, "newPassword": "N3wPassword"},
            headers=_bearer(first["accessToken"]),
        )
        assert resp.status_code == 200
        fresh = resp.json()["data"]["tokens"]

        resp = client.get("/auth/me", headers=_bearer(second["accessToken"]))
        assert resp.status_code == 401
        assert _error_code(resp) == "PASSWORD_CHANGED"

        assert client.get("/auth/me", headers=_bearer(fresh["accessToken"])).status_code == 200
        assert _login(client).status_code == 401
        assert _login(client, password="N3wPassword").status_code == 200

    def test_wrong_current_password(self, client):
        tokens = _register(client).json()["data"]["tokens"]
        resp = client.put(
            "/auth/change-password",
            json={"currentPassword": "Wrong1pass", "newPassword": "N3wPassword"},
            headers=_bearer(tokens["accessToken"]),
        )
        assert resp.status_code == 400
        assert _error_code(resp) == "INVALID_CURRENT_PASSWORD"

    def test_unchanged_password_rejected(self, client):
        tokens = _register(client).json()["data"]["tokens"]
        resp = client.put(
            "/auth/change-password",
            json={"currentPassword": PASSWORD, "newPassword": PASSWORD},
            headers=_bearer(tokens["accessToken"]),
        )
        assert resp.status_code == 400
        assert _error_code(resp) == "VALIDATION_ERROR"


class TestAdmin:
    def _admin_tokens(self, client):
        data = _register(client, username="root", email="root@x.com").json()["data"]
        get_runtime().store.set_user_admin(data["user"]["id"], True)
        return data["tokens"]

    def test_non_admin_forbidden(self, client):
        tokens = _register(client).json()["data"]["tokens"]
        resp = client.post("/auth/admin/sessions/cleanup", headers=_bearer(tokens["accessToken"]))
        assert resp.status_code == 403
        assert _error_code(resp) == "INSUFFICIENT_PERMISSIONS"

    def test_cleanup(self, client):
        tokens = self._admin_tokens(client)
        resp = client.post("/auth/admin/sessions/cleanup", headers=_bearer(tokens["accessToken"]))
        assert resp.status_code == 200
        assert resp.json()["data"] == {"removed": 0}

    def test_deactivate_user(self, client):
        admin = self._admin_tokens(client)
        alice = _register(client).json()["data"]

        resp = client.put(
            f"/auth/admin/users/{alice['user']['id']}/active",
            json={"isActive": False},
            headers=_bearer(admin["accessToken"]),
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["isActive"] is False

        resp = client.get("/auth/me", headers=_bearer(alice["tokens"]["accessToken"]))
        assert _error_code(resp) == "SESSION_INVALID"
        resp = _login(client)
        assert resp.status_code == 401
        assert _error_code(resp) == "ACCOUNT_DEACTIVATED"

    def test_unknown_user(self, client):
        admin = self._admin_tokens(client)
        resp = client.put(
            "/auth/admin/users/does-not-exist/active",
            json={"isActive": False},
            headers=_bearer(admin["accessToken"]),
        )
        assert resp.status_code == 404
        assert _error_code(resp) == "NOT_FOUND"


class TestAppSurface:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"

    def test_request_id_echoed(self, client):
        resp = client.get("/auth/me", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.json()["request_id"] == "req-123"

    def test_security_headers(self, client):
        resp = client.get("/health")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["Cache-Control"] == "no-store"

    def test_unknown_route_uses_envelope(self, client):
        resp = client.get("/auth/nope")
        assert resp.status_code == 404
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "NOT_FOUND"


def test_main_runs_uvicorn(monkeypatch):
    calls = []
    monkeypatch.setattr(app_module.uvicorn, "run", lambda app, **kw: calls.append((app, kw)))
    app_module.main()
    settings = app_module._settings
    assert calls == [(app_module.app, {"host": settings.host, "port": settings.port})]
